"""Exception types raised by the recognition core."""

from __future__ import annotations

from typing import Optional


class CoverscanError(Exception):
    """Base class for all coverscan errors."""


class DecodeError(CoverscanError):
    """Image bytes could not be decoded into pixels."""


class LengthMismatch(CoverscanError, ValueError):
    """Two fingerprints were produced under different grid parameters."""


class FetchError(CoverscanError):
    """An image or catalog download failed (auth, not found, network)."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class StoreIOError(CoverscanError, OSError):
    """Durable catalog read/write failed."""


class ConfigError(CoverscanError, ValueError):
    """Invalid or missing configuration."""

"""Perceptual fingerprint codec.

A fingerprint is a mean-luminance hash over a fixed square grayscale grid:
the decoded image is converted to grayscale, resized to ``8 * hash_bits``
pixels per side and reduced to ``hash_bits x hash_bits`` cells, one bit per
cell (brighter than the grid mean). The result is serialised as hex.

Only decoded pixels feed the hash, so re-encoding the same visual content at
another JPEG quality or file size lands on the same (or a very close)
fingerprint. Aspect ratio is not preserved; callers crop to a square first.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Optional

import imagehash
from PIL import Image

from coverscan.errors import DecodeError, LengthMismatch
from coverscan.types import Fingerprint

LOGGER = logging.getLogger("coverscan.hashing.codec")

DEFAULT_HASH_BITS = 8


def hamming_distance(a: Fingerprint, b: Fingerprint) -> int:
    """Count differing bits between two hex fingerprints of equal length."""
    if len(a) != len(b):
        raise LengthMismatch(f"Fingerprint lengths differ: {len(a)} vs {len(b)} hex chars")
    try:
        hash_a = imagehash.hex_to_hash(a)
        hash_b = imagehash.hex_to_hash(b)
    except ValueError as exc:
        raise LengthMismatch(f"Not a square-grid fingerprint: {a!r} / {b!r}") from exc
    return int(hash_a - hash_b)


def similarity(distance: int, total_bits: int) -> float:
    """Linear decay from 1.0 at distance 0, floored at 0."""
    if total_bits <= 0:
        raise ValueError("total_bits must be positive")
    return min(1.0, max(0.0, 1.0 - float(distance) / float(total_bits)))


class HashCodec:
    """Computes and compares fingerprints under one fixed grid size."""

    def __init__(self, hash_bits: int = DEFAULT_HASH_BITS) -> None:
        if hash_bits < 2:
            raise ValueError("hash_bits must be >= 2")
        self.hash_bits = int(hash_bits)
        self.grid_px = 8 * self.hash_bits

    @property
    def total_bits(self) -> int:
        return self.hash_bits * self.hash_bits

    @property
    def hex_length(self) -> int:
        return (self.total_bits + 3) // 4

    def _decode(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise DecodeError("Empty image buffer")
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                img.load()
                gray = img.convert("L")
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Unable to decode image ({len(image_bytes)} bytes): {exc}") from exc
        return gray.resize((self.grid_px, self.grid_px), Image.LANCZOS)

    def compute_fingerprint(self, image_bytes: bytes) -> Fingerprint:
        """Fingerprint raw encoded image bytes (JPEG, PNG, ...)."""
        normalized = self._decode(image_bytes)
        return str(imagehash.average_hash(normalized, hash_size=self.hash_bits))

    def fingerprint_file(self, path: Path) -> Fingerprint:
        return self.compute_fingerprint(Path(path).read_bytes())

    def distance(self, a: Fingerprint, b: Fingerprint) -> int:
        return hamming_distance(a, b)

    def similarity(self, distance: int, total_bits: Optional[int] = None) -> float:
        return similarity(distance, total_bits or self.total_bits)

"""Pipeline configuration: defaults, YAML file, CLI overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from coverscan.errors import ConfigError
from coverscan.io_utils import load_yaml

LOGGER = logging.getLogger("coverscan.config")

DEFAULT_CONFIG_PATH = Path("configs/pipeline.yaml")


@dataclass
class PipelineConfig:
    # Fingerprint grid, fixed for the whole catalog
    hash_bits: int = 8
    # Match policy
    match_threshold: int = 15
    confidence_floor: float = 0.70
    auto_accept: float = 0.85
    diagnostic_threshold: int = 30
    diagnostic_limit: int = 5
    # Continuous capture
    sample_interval: float = 1.5
    escalation_timeout: float = 5.0
    required_consecutive: int = 2
    crop_fraction: float = 0.75
    # Catalog rebuild
    checkpoint_every: int = 10
    pause_every: int = 10
    pause_seconds: float = 2.0
    catalog_path: Path = Path("data/covers-database.json")

    def validate(self) -> "PipelineConfig":
        if self.hash_bits < 2:
            raise ConfigError(f"hash_bits must be >= 2 (got {self.hash_bits})")
        total_bits = self.hash_bits * self.hash_bits
        for name in ("match_threshold", "diagnostic_threshold"):
            value = getattr(self, name)
            if value < 0 or value > total_bits:
                raise ConfigError(f"{name} must be within [0, {total_bits}] (got {value})")
        for name in ("confidence_floor", "auto_accept"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1] (got {value})")
        for name in ("sample_interval", "escalation_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive (got {getattr(self, name)})")
        if not 0.0 < self.crop_fraction <= 1.0:
            raise ConfigError(f"crop_fraction must be within (0, 1] (got {self.crop_fraction})")
        for name in ("required_consecutive", "checkpoint_every", "pause_every", "diagnostic_limit"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be >= 1 (got {getattr(self, name)})")
        if self.pause_seconds < 0:
            raise ConfigError(f"pause_seconds must be >= 0 (got {self.pause_seconds})")
        if self.auto_accept < self.confidence_floor:
            LOGGER.warning(
                "auto_accept=%.2f is below confidence_floor=%.2f; every plausible match will count toward auto-accept",
                self.auto_accept,
                self.confidence_floor,
            )
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name: f for f in fields(cls)}
        defaults = cls()
        values: Dict[str, Any] = {}
        for key, raw in data.items():
            if key not in known:
                LOGGER.warning("Ignoring unknown pipeline config key %r", key)
                continue
            if raw is None:
                continue
            values[key] = _coerce(key, raw, type(getattr(defaults, key)))
        return replace(defaults, **values).validate()


def _coerce(key: str, raw: Any, target: type) -> Any:
    try:
        if issubclass(target, Path):
            return Path(raw)
        if target is int and isinstance(raw, float) and not raw.is_integer():
            raise ValueError(f"{raw} is not an integer")
        return target(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {raw!r} ({exc})") from exc


def load_pipeline_config(
    path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PipelineConfig:
    """Resolve config: CLI overrides win over the YAML file, which wins over defaults."""
    data: Dict[str, Any] = {}
    if path is not None:
        if path.exists():
            data.update(load_yaml(path))
        elif path != DEFAULT_CONFIG_PATH:
            raise ConfigError(f"Pipeline config not found: {path}")
        else:
            LOGGER.debug("Default config %s missing; using built-in defaults", path)
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value
    config = PipelineConfig.from_mapping(data)
    LOGGER.debug("Resolved pipeline config: %s", config)
    return config


def discogs_credentials(env: Optional[Mapping[str, str]] = None) -> Tuple[str, str]:
    """Return (username, token) from DISCOGS_USERNAME / DISCOGS_USER_TOKEN."""
    env = os.environ if env is None else env
    username = (env.get("DISCOGS_USERNAME") or "").strip()
    token = (env.get("DISCOGS_USER_TOKEN") or "").strip()
    missing = [
        name
        for name, value in (("DISCOGS_USERNAME", username), ("DISCOGS_USER_TOKEN", token))
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing Discogs configuration: {', '.join(missing)}")
    return username, token

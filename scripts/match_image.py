#!/usr/bin/env python3
"""CLI for matching a single sleeve photo against the catalog."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import cv2
import numpy as np

from coverscan.capture import center_square_crop, encode_jpeg
from coverscan.catalog.store import CatalogStore
from coverscan.config import DEFAULT_CONFIG_PATH, load_pipeline_config
from coverscan.errors import ConfigError, DecodeError, StoreIOError
from coverscan.hashing.codec import HashCodec
from coverscan.io_utils import dump_json, setup_logging
from coverscan.recognition.matcher import MatchEngine, MatchPolicy


LOGGER = logging.getLogger("scripts.match_image")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Match one image against the cover catalog")
    parser.add_argument("image", type=Path, help="Photo of a record sleeve")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Pipeline configuration YAML")
    parser.add_argument("--catalog", type=Path, default=None, help="Catalog snapshot path")
    parser.add_argument("--match-threshold", type=int, default=None, help="Max differing bits for a match")
    parser.add_argument("--confidence-floor", type=float, default=None, help="Min similarity for a match")
    parser.add_argument(
        "--crop-fraction",
        type=float,
        default=None,
        help="Crop a centered square of this fraction of the short side before hashing",
    )
    parser.add_argument("--output", type=Path, default=None, help="Write the JSON report here")
    return parser.parse_args(argv)


def load_image_bytes(path: Path, crop_fraction: Optional[float] = None) -> bytes:
    data = path.read_bytes()
    if crop_fraction is None:
        return data
    frame = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        raise DecodeError(f"Unable to decode image: {path}")
    return encode_jpeg(center_square_crop(frame, crop_fraction))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        config = load_pipeline_config(
            args.config,
            {
                "catalog_path": args.catalog,
                "match_threshold": args.match_threshold,
                "confidence_floor": args.confidence_floor,
            },
        )
        store = CatalogStore.from_config(config)
        catalog = store.open()
        engine = MatchEngine(codec=HashCodec(config.hash_bits), policy=MatchPolicy.from_config(config))
        report = engine.match_image(load_image_bytes(args.image, args.crop_fraction), catalog.entries)
    except (ConfigError, StoreIOError) as exc:
        LOGGER.error("%s", exc)
        return 2
    except (DecodeError, OSError) as exc:
        LOGGER.error("Could not read %s: %s", args.image, exc)
        return 3

    payload = report.to_dict()
    if report.no_fingerprints:
        LOGGER.warning("Catalog has no fingerprints; rebuild it with --hash")
    if args.output is not None:
        dump_json(args.output, payload)
    print(json.dumps(payload, indent=2))
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())

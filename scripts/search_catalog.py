#!/usr/bin/env python3
"""CLI for searching, summarising and exporting the cover catalog."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from coverscan.catalog.store import CatalogStore
from coverscan.config import DEFAULT_CONFIG_PATH, load_pipeline_config
from coverscan.errors import ConfigError, StoreIOError
from coverscan.io_utils import setup_logging


LOGGER = logging.getLogger("scripts.search_catalog")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Search the cover catalog by artist and title")
    parser.add_argument("--artist", type=str, default=None)
    parser.add_argument("--title", type=str, default=None)
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Pipeline configuration YAML")
    parser.add_argument("--catalog", type=Path, default=None, help="Catalog snapshot path")
    parser.add_argument("--stats", action="store_true", help="Print catalog statistics instead of results")
    parser.add_argument("--export", type=Path, default=None, help="Write the full catalog listing to CSV")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()

    try:
        config = load_pipeline_config(args.config, {"catalog_path": args.catalog})
        store = CatalogStore.from_config(config)
        store.open()
    except (ConfigError, StoreIOError) as exc:
        LOGGER.error("%s", exc)
        return 2

    if args.export is not None:
        store.export_table(args.export)
    if args.stats:
        print(json.dumps(store.stats().to_dict(), indent=2))
        return 0

    results = store.search(args.artist, args.title)
    for entry in results:
        year = entry.year or "----"
        fingerprint = "#" if entry.has_fingerprint else " "
        print(f"{fingerprint} {entry.catalog_id:>10}  {year}  {entry.artist} - {entry.title}")
    LOGGER.info("%d matching releases", len(results))
    return 0 if results else 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""CLI for rebuilding the cover catalog from a Discogs collection."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from coverscan.catalog.sources import DiscogsCollectionSource, ImageFetcher, TokenBucket
from coverscan.catalog.store import CatalogStore
from coverscan.config import DEFAULT_CONFIG_PATH, PipelineConfig, discogs_credentials, load_pipeline_config
from coverscan.errors import ConfigError, FetchError, StoreIOError
from coverscan.io_utils import setup_logging


LOGGER = logging.getLogger("scripts.build_catalog")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild the cover catalog from your Discogs collection")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Pipeline configuration YAML",
    )
    parser.add_argument(
        "--catalog",
        type=Path,
        default=None,
        help="Catalog snapshot path (overrides catalog_path from config)",
    )
    parser.add_argument(
        "--hash",
        dest="compute_fingerprints",
        action="store_true",
        help="Download cover art and compute fingerprints (slow, rate limited)",
    )
    parser.add_argument("--checkpoint-every", type=int, default=None)
    parser.add_argument("--pause-every", type=int, default=None)
    parser.add_argument(
        "--pause-seconds",
        type=float,
        default=None,
        help="Seconds to pause after every --pause-every releases",
    )
    parser.add_argument(
        "--requests-per-minute",
        type=float,
        default=60.0,
        help="Client-side rate limit for Discogs API and image requests",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "catalog_path": args.catalog,
        "checkpoint_every": args.checkpoint_every,
        "pause_every": args.pause_every,
        "pause_seconds": args.pause_seconds,
    }


def run(args: argparse.Namespace, config: PipelineConfig, source, fetcher) -> int:
    records = source.fetch_all()
    if not records:
        LOGGER.error("No releases found: the Discogs collection appears to be empty")
        return 1
    LOGGER.info("Fetched %d releases from Discogs", len(records))

    store = CatalogStore.from_config(config, fetcher=fetcher)
    catalog = store.rebuild(
        records,
        compute_fingerprints=args.compute_fingerprints,
        progress=not args.no_progress,
    )
    stats = store.stats()
    LOGGER.info(
        "Catalog written to %s: %d releases, %d with artwork, %d fingerprinted (built_at=%s)",
        store.path,
        catalog.count,
        stats.entries_with_artwork,
        stats.entries_with_fingerprints,
        stats.built_at,
    )
    if store.last_report is not None and store.last_report.failed:
        LOGGER.warning(
            "%d releases could not be fingerprinted: %s",
            store.last_report.failed,
            store.last_report.failed_ids,
        )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_pipeline_config(args.config, _overrides(args))
        username, token = discogs_credentials()
        bucket = TokenBucket(rate_per_minute=args.requests_per_minute)
        source = DiscogsCollectionSource(username, token, bucket=bucket)
        fetcher = ImageFetcher(bucket=bucket)
        return run(args, config, source, fetcher)
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2
    except FetchError as exc:
        LOGGER.error("Discogs request failed: %s", exc)
        return 3
    except StoreIOError as exc:
        LOGGER.error("Catalog write failed: %s", exc)
        return 4


if __name__ == "__main__":
    sys.exit(main())

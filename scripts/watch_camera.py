#!/usr/bin/env python3
"""CLI for continuous-capture recognition from a camera."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from coverscan.capture import VideoCaptureFrameSource
from coverscan.catalog.sources import FrameSource, SecondaryRecognizer
from coverscan.catalog.store import CatalogStore
from coverscan.config import DEFAULT_CONFIG_PATH, PipelineConfig, load_pipeline_config
from coverscan.errors import ConfigError, StoreIOError
from coverscan.io_utils import dump_json, setup_logging
from coverscan.recognition.scheduler import RecognitionScheduler
from coverscan.types import RecognitionOutcome, SecondaryResult, SessionUpdate


LOGGER = logging.getLogger("scripts.watch_camera")


class UnavailableSecondaryRecognizer:
    """Stand-in when no secondary recognizer is wired up: escalation finds nothing."""

    def identify(self, image_bytes: bytes) -> SecondaryResult:
        return SecondaryResult(error="no secondary recognizer configured")


def _device(value: str):
    return int(value) if value.isdigit() else value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recognise a record sleeve held up to the camera")
    parser.add_argument("--device", type=_device, default=0, help="Camera index or stream URL")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Pipeline configuration YAML")
    parser.add_argument("--catalog", type=Path, default=None, help="Catalog snapshot path")
    parser.add_argument("--sample-interval", type=float, default=None)
    parser.add_argument("--escalation-timeout", type=float, default=None)
    parser.add_argument(
        "--wait",
        type=float,
        default=30.0,
        help="Extra seconds to wait for the escalation result after the deadline",
    )
    parser.add_argument("--output", type=Path, default=None, help="Write the outcome JSON here")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def outcome_payload(outcome: RecognitionOutcome) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": outcome.kind, "session_id": outcome.session_id}
    if outcome.candidate is not None:
        payload["match"] = outcome.candidate.to_dict()
    if outcome.secondary is not None:
        payload["secondary"] = {
            "artist": outcome.secondary.artist,
            "title": outcome.secondary.title,
            "error": outcome.secondary.error,
        }
        payload["catalog_matches"] = [
            {"catalog_id": entry.catalog_id, "artist": entry.artist, "title": entry.title}
            for entry in outcome.catalog_matches
        ]
    return payload


def run(
    args: argparse.Namespace,
    config: PipelineConfig,
    frame_source: FrameSource,
    secondary: SecondaryRecognizer,
) -> int:
    store = CatalogStore.from_config(config)
    catalog = store.open()
    if not catalog.fingerprinted():
        LOGGER.warning("Catalog %s has no fingerprints; only escalation can succeed", store.path)

    done = threading.Event()
    outcomes: List[RecognitionOutcome] = []
    errors: List[BaseException] = []

    def on_update(update: SessionUpdate) -> None:
        LOGGER.debug(
            "phase=%s confidence=%s streak=%s",
            update.phase.value,
            update.confidence,
            update.consecutive_count,
        )

    def on_outcome(outcome: RecognitionOutcome) -> None:
        outcomes.append(outcome)
        done.set()

    def on_error(exc: BaseException) -> None:
        errors.append(exc)
        done.set()

    scheduler = RecognitionScheduler.from_config(
        config,
        frame_source=frame_source,
        secondary=secondary,
        catalog=store.live,
        store=store,
        on_update=on_update,
        on_outcome=on_outcome,
        on_error=on_error,
    )
    try:
        scheduler.start()
        finished = done.wait(config.escalation_timeout + args.wait)
    finally:
        scheduler.shutdown()

    if errors:
        LOGGER.error("Capture failed: %s", errors[0])
        return 3
    if not finished or not outcomes:
        LOGGER.error("No outcome within %.1fs", config.escalation_timeout + args.wait)
        return 3

    outcome = outcomes[0]
    payload = outcome_payload(outcome)
    if args.output is not None:
        dump_json(args.output, payload)
    print(json.dumps(payload, indent=2))
    if outcome.confirmed or outcome.catalog_matches:
        return 0
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_pipeline_config(
            args.config,
            {
                "catalog_path": args.catalog,
                "sample_interval": args.sample_interval,
                "escalation_timeout": args.escalation_timeout,
            },
        )
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2

    frame_source = VideoCaptureFrameSource(args.device, crop_fraction=config.crop_fraction)
    try:
        return run(args, config, frame_source, UnavailableSecondaryRecognizer())
    except StoreIOError as exc:
        LOGGER.error("%s", exc)
        return 2
    finally:
        frame_source.release()


if __name__ == "__main__":
    sys.exit(main())

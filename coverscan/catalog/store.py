"""Catalog build/load utilities.

The catalog is a single JSON document (entries + ``built_at`` + ``count``)
replaced wholesale on every write. A rebuild with fingerprinting walks the
collection one release at a time, pausing periodically to stay under the
image host's rate limit and checkpointing the partial catalog so an
interrupted run still leaves something searchable.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import pandas as pd
from tqdm import tqdm

from coverscan.catalog.sources import ImageSource
from coverscan.config import PipelineConfig
from coverscan.errors import ConfigError, DecodeError, FetchError, StoreIOError
from coverscan.hashing.codec import HashCodec
from coverscan.io_utils import dump_json_atomic, ensure_dir, load_json
from coverscan.types import (
    Catalog,
    CatalogEntry,
    CatalogStats,
    RebuildReport,
    SourceRecord,
    utc_now_iso,
)

LOGGER = logging.getLogger("coverscan.catalog.store")

_LEADING_ARTICLE = re.compile(r"^the\s+")
_PUNCTUATION = re.compile(r"[^\w\s-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, drop a leading "the", strip punctuation, collapse whitespace."""
    if not name:
        return ""
    text = name.strip().lower()
    text = _LEADING_ARTICLE.sub("", text)
    text = _PUNCTUATION.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def _field_matches(query: str, candidate: str) -> bool:
    if query == candidate:
        return True
    if not query or not candidate:
        return False
    return query in candidate or candidate in query


class LiveCatalog:
    """The in-memory catalog every match call reads; swapped, never edited."""

    def __init__(self, catalog: Optional[Catalog] = None) -> None:
        self._catalog = catalog if catalog is not None else Catalog.empty()
        self._lock = threading.Lock()

    def current(self) -> Catalog:
        with self._lock:
            return self._catalog

    __call__ = current

    def install(self, catalog: Catalog) -> None:
        with self._lock:
            previous = self._catalog
            self._catalog = catalog
        LOGGER.info(
            "Installed catalog built_at=%s (%d entries, was %d)",
            catalog.built_at,
            catalog.count,
            previous.count,
        )


class CatalogStore:
    """Durable catalog snapshot plus the offline rebuild job."""

    def __init__(
        self,
        path: Path,
        codec: Optional[HashCodec] = None,
        fetcher: Optional[ImageSource] = None,
        live: Optional[LiveCatalog] = None,
        checkpoint_every: int = 10,
        pause_every: int = 10,
        pause_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.codec = codec or HashCodec()
        self.fetcher = fetcher
        self.live = live or LiveCatalog()
        self.checkpoint_every = max(1, int(checkpoint_every))
        self.pause_every = max(1, int(pause_every))
        self.pause_seconds = pause_seconds
        self._sleep = sleep
        self._write_lock = threading.Lock()
        self.last_report: Optional[RebuildReport] = None

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        fetcher: Optional[ImageSource] = None,
        live: Optional[LiveCatalog] = None,
    ) -> "CatalogStore":
        return cls(
            path=config.catalog_path,
            codec=HashCodec(config.hash_bits),
            fetcher=fetcher,
            live=live,
            checkpoint_every=config.checkpoint_every,
            pause_every=config.pause_every,
            pause_seconds=config.pause_seconds,
        )

    # ------------------------------------------------------------------ I/O

    def load(self) -> Catalog:
        """Read the snapshot; a missing snapshot is an empty catalog."""
        if not self.path.exists():
            LOGGER.info("No catalog at %s; starting empty", self.path)
            return Catalog.empty()
        try:
            payload = load_json(self.path)
            catalog = Catalog.from_dict(payload)
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreIOError(f"Failed to read catalog {self.path}: {exc}") from exc
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StoreIOError(f"Malformed catalog {self.path}: {exc}") from exc
        LOGGER.debug("Loaded catalog %s (%d entries)", self.path, catalog.count)
        return catalog

    def open(self) -> Catalog:
        """Load the snapshot and install it as the live catalog."""
        catalog = self.load()
        self.live.install(catalog)
        return catalog

    def save(self, catalog: Catalog) -> None:
        """Atomically replace the snapshot."""
        with self._write_lock:
            try:
                ensure_dir(self.path.parent)
                dump_json_atomic(self.path, catalog.to_dict())
            except (OSError, TypeError, ValueError) as exc:
                raise StoreIOError(f"Failed to write catalog {self.path}: {exc}") from exc
        LOGGER.debug("Saved catalog %s (%d entries)", self.path, catalog.count)

    # -------------------------------------------------------------- rebuild

    def rebuild(
        self,
        records: Iterable[SourceRecord],
        compute_fingerprints: bool = False,
        progress: bool = False,
    ) -> Catalog:
        """Map source records to entries, optionally fingerprint them, persist, install."""
        entries: List[CatalogEntry] = [CatalogEntry.from_source(record) for record in records]
        report = RebuildReport(total=len(entries))
        self.last_report = report

        if compute_fingerprints:
            if self.fetcher is None:
                raise ConfigError("An image fetcher is required to compute fingerprints")
            iterator = tqdm(
                enumerate(entries),
                total=len(entries),
                desc="Hashing covers",
                unit="release",
                disable=not progress,
            )
            for idx, entry in iterator:
                if idx > 0 and idx % self.pause_every == 0:
                    LOGGER.debug("Pausing %.1fs after %d releases", self.pause_seconds, idx)
                    self._sleep(self.pause_seconds)

                if self._fingerprint_entry(entry):
                    report.hashed += 1
                else:
                    report.failed += 1
                    report.failed_ids.append(entry.catalog_id)

                if (idx + 1) % self.checkpoint_every == 0:
                    self.save(Catalog(entries=entries, built_at=utc_now_iso()))
                    report.checkpoints += 1
                    LOGGER.info(
                        "Checkpoint %d: %d/%d releases processed (%d hashed, %d failed)",
                        report.checkpoints,
                        idx + 1,
                        report.total,
                        report.hashed,
                        report.failed,
                    )

        catalog = Catalog(entries=entries, built_at=utc_now_iso())
        self.save(catalog)
        self.live.install(catalog)
        LOGGER.info(
            "Catalog built: %d releases (%d hashed, %d failed, %d checkpoints)",
            report.total,
            report.hashed,
            report.failed,
            report.checkpoints,
        )
        return catalog

    def _fingerprint_entry(self, entry: CatalogEntry) -> bool:
        """Hash the cover, falling back to the thumbnail. Never raises for one bad image."""
        attempts = (
            ("cover", "primary_fingerprint", entry.cover_url),
            ("thumbnail", "thumb_fingerprint", entry.thumb_url),
        )
        for kind, attr, url in attempts:
            if not url:
                continue
            try:
                fingerprint = self.codec.compute_fingerprint(self.fetcher.fetch(url))
            except (FetchError, DecodeError) as exc:
                LOGGER.warning("Failed to hash %s for %s - %s: %s", kind, entry.artist, entry.title, exc)
                continue
            except Exception:
                LOGGER.exception("Unexpected error hashing %s for %s - %s", kind, entry.artist, entry.title)
                continue
            setattr(entry, attr, fingerprint)
            entry.last_updated = utc_now_iso()
            return True
        if not entry.has_artwork:
            LOGGER.warning("No artwork URL for %s - %s", entry.artist, entry.title)
        return False

    # --------------------------------------------------------------- lookup

    def search(self, artist: Optional[str] = None, title: Optional[str] = None) -> List[CatalogEntry]:
        """Name lookup: exact normalized match per field, else containment either way.

        A field that normalizes to nothing places no constraint.
        """
        catalog = self.live.current()
        if not artist and not title:
            return list(catalog.entries)

        query_artist = normalize_name(artist) or None
        query_title = normalize_name(title) or None
        results: List[CatalogEntry] = []
        for entry in catalog.entries:
            if query_artist is not None and not _field_matches(query_artist, normalize_name(entry.artist)):
                continue
            if query_title is not None and not _field_matches(query_title, normalize_name(entry.title)):
                continue
            results.append(entry)
        return results

    def get(self, catalog_id: int) -> Optional[CatalogEntry]:
        for entry in self.live.current().entries:
            if entry.catalog_id == catalog_id:
                return entry
        return None

    def stats(self) -> CatalogStats:
        catalog = self.live.current()
        return CatalogStats(
            count=catalog.count,
            built_at=catalog.built_at,
            entries_with_artwork=sum(1 for entry in catalog.entries if entry.has_artwork),
            entries_with_fingerprints=sum(1 for entry in catalog.entries if entry.has_fingerprint),
        )

    def export_table(self, path: Path) -> Path:
        """Write the catalog listing as CSV."""
        rows = [
            {
                "catalog_id": entry.catalog_id,
                "master_id": entry.master_id,
                "artist": entry.artist,
                "title": entry.title,
                "year": entry.year,
                "labels": "; ".join(entry.labels),
                "formats": "; ".join(entry.formats),
                "has_primary_fingerprint": bool(entry.primary_fingerprint),
                "has_thumb_fingerprint": bool(entry.thumb_fingerprint),
                "last_updated": entry.last_updated,
            }
            for entry in self.live.current().entries
        ]
        columns = [
            "catalog_id",
            "master_id",
            "artist",
            "title",
            "year",
            "labels",
            "formats",
            "has_primary_fingerprint",
            "has_thumb_fingerprint",
            "last_updated",
        ]
        df = pd.DataFrame(rows, columns=columns)
        ensure_dir(Path(path).parent)
        df.to_csv(path, index=False)
        LOGGER.info("Exported %d catalog entries to %s", len(df), path)
        return Path(path)

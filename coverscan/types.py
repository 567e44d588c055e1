"""Common dataclasses and type aliases used across the coverscan package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

# Hex-encoded perceptual hash
Fingerprint = str


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _optional_int(value: Any) -> Optional[int]:
    if value in (None, "", 0):
        return None
    return int(value)


@dataclass
class SourceRecord:
    """One release as delivered by the catalog source."""

    id: int
    artist: str
    title: str
    master_id: Optional[int] = None
    year: Optional[int] = None
    labels: List[str] = field(default_factory=list)
    formats: List[str] = field(default_factory=list)
    cover_url: Optional[str] = None
    thumb_url: Optional[str] = None


@dataclass
class CatalogEntry:
    """A physical release known to the user, optionally fingerprinted."""

    catalog_id: int
    artist: str
    title: str
    master_id: Optional[int] = None
    year: Optional[int] = None
    labels: List[str] = field(default_factory=list)
    formats: List[str] = field(default_factory=list)
    cover_url: Optional[str] = None
    thumb_url: Optional[str] = None
    primary_fingerprint: Optional[Fingerprint] = None
    thumb_fingerprint: Optional[Fingerprint] = None
    last_updated: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_source(cls, record: SourceRecord) -> "CatalogEntry":
        return cls(
            catalog_id=int(record.id),
            artist=record.artist or "Unknown",
            title=record.title,
            master_id=_optional_int(record.master_id),
            year=_optional_int(record.year),
            labels=list(record.labels),
            formats=list(record.formats),
            cover_url=record.cover_url or None,
            thumb_url=record.thumb_url or None,
        )

    @property
    def fingerprints(self) -> List[Fingerprint]:
        """Available fingerprints, primary first."""
        return [fp for fp in (self.primary_fingerprint, self.thumb_fingerprint) if fp]

    @property
    def has_fingerprint(self) -> bool:
        return bool(self.primary_fingerprint or self.thumb_fingerprint)

    @property
    def has_artwork(self) -> bool:
        return bool(self.cover_url or self.thumb_url)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog_id": self.catalog_id,
            "master_id": self.master_id,
            "artist": self.artist,
            "title": self.title,
            "year": self.year,
            "labels": list(self.labels),
            "formats": list(self.formats),
            "cover_url": self.cover_url,
            "thumb_url": self.thumb_url,
            "primary_fingerprint": self.primary_fingerprint,
            "thumb_fingerprint": self.thumb_fingerprint,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CatalogEntry":
        return cls(
            catalog_id=int(payload["catalog_id"]),
            artist=payload.get("artist") or "Unknown",
            title=payload.get("title") or "",
            master_id=_optional_int(payload.get("master_id")),
            year=_optional_int(payload.get("year")),
            labels=list(payload.get("labels") or []),
            formats=list(payload.get("formats") or []),
            cover_url=payload.get("cover_url") or None,
            thumb_url=payload.get("thumb_url") or None,
            primary_fingerprint=payload.get("primary_fingerprint") or None,
            thumb_fingerprint=payload.get("thumb_fingerprint") or None,
            last_updated=payload.get("last_updated") or utc_now_iso(),
        )


@dataclass
class Catalog:
    """The full collection plus the time it was built."""

    entries: List[CatalogEntry] = field(default_factory=list)
    built_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def empty(cls) -> "Catalog":
        return cls(entries=[])

    @property
    def count(self) -> int:
        return len(self.entries)

    def fingerprinted(self) -> List[CatalogEntry]:
        return [entry for entry in self.entries if entry.has_fingerprint]

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "built_at": self.built_at,
            "count": self.count,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Catalog":
        entries = [CatalogEntry.from_dict(item) for item in payload.get("entries") or []]
        return cls(entries=entries, built_at=payload.get("built_at") or utc_now_iso())


@dataclass
class CatalogStats:
    count: int
    built_at: str
    entries_with_artwork: int
    entries_with_fingerprints: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "built_at": self.built_at,
            "entries_with_artwork": self.entries_with_artwork,
            "entries_with_fingerprints": self.entries_with_fingerprints,
        }


@dataclass
class RebuildReport:
    """Counters collected while rebuilding the catalog."""

    total: int = 0
    hashed: int = 0
    failed: int = 0
    checkpoints: int = 0
    failed_ids: List[int] = field(default_factory=list)


@dataclass
class MatchCandidate:
    """A catalog entry scored against one query fingerprint."""

    entry: CatalogEntry
    distance: int
    similarity: float

    @property
    def confidence(self) -> str:
        return confidence_label(self.similarity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog_id": self.entry.catalog_id,
            "artist": self.entry.artist,
            "title": self.entry.title,
            "distance": self.distance,
            "similarity": round(self.similarity, 4),
            "confidence": self.confidence,
        }


def confidence_label(similarity: float) -> str:
    """Bucket a similarity score into high / medium / low."""
    if similarity > 0.85:
        return "high"
    if similarity > 0.75:
        return "medium"
    return "low"


class Phase(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    CONFIRMING = "confirming"
    ESCALATING = "escalating"


class Verdict(str, Enum):
    """Classification of one sampled frame."""

    NO_MATCH = "no_match"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class RecognitionSession:
    """State for one continuous-capture activation."""

    session_id: int
    started_at: float
    escalation_deadline_at: float
    consecutive_high_confidence: int = 0
    last_verdict: Optional[Verdict] = None
    last_confidence: Optional[float] = None
    last_frame: Optional[bytes] = None
    samples_taken: int = 0


@dataclass
class SessionUpdate:
    """Notification emitted on every phase change and sample verdict."""

    session_id: int
    phase: Phase
    confidence: Optional[float] = None
    consecutive_count: Optional[int] = None


@dataclass
class SecondaryResult:
    """Answer from the secondary recognizer; empty when nothing was found."""

    artist: Optional[str] = None
    title: Optional[str] = None
    error: Optional[str] = None

    @property
    def identified(self) -> bool:
        return bool(self.artist and self.title)


@dataclass
class RecognitionOutcome:
    """Final result of a session: confirmed by fingerprint, or escalated."""

    kind: str
    session_id: int
    candidate: Optional[MatchCandidate] = None
    secondary: Optional[SecondaryResult] = None
    catalog_matches: List[CatalogEntry] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.kind == "confirmed"


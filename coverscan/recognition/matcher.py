"""Hamming-distance matcher over catalog fingerprints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from coverscan.config import PipelineConfig
from coverscan.hashing.codec import HashCodec, hamming_distance, similarity
from coverscan.types import CatalogEntry, Fingerprint, MatchCandidate

LOGGER = logging.getLogger("coverscan.recognition.matcher")


@dataclass
class MatchPolicy:
    """Thresholds for the matcher.

    ``match_threshold`` bounds the search (max differing bits) while
    ``confidence_floor`` filters the answer by similarity; the two are
    independent and may disagree. ``auto_accept`` is the similarity one
    sample needs to count toward automatic confirmation.
    """

    match_threshold: int = 15
    confidence_floor: float = 0.70
    auto_accept: float = 0.85
    diagnostic_threshold: int = 30
    diagnostic_limit: int = 5

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "MatchPolicy":
        return cls(
            match_threshold=config.match_threshold,
            confidence_floor=config.confidence_floor,
            auto_accept=config.auto_accept,
            diagnostic_threshold=config.diagnostic_threshold,
            diagnostic_limit=config.diagnostic_limit,
        )


@dataclass
class MatchReport:
    """Outcome of matching one query against the catalog, with near misses."""

    query: Fingerprint
    best: Optional[MatchCandidate] = None
    closest: List[MatchCandidate] = field(default_factory=list)
    fingerprinted_entries: int = 0

    @property
    def success(self) -> bool:
        return self.best is not None

    @property
    def no_fingerprints(self) -> bool:
        return self.fingerprinted_entries == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "query": self.query,
            "match": self.best.to_dict() if self.best else None,
            "closest": [candidate.to_dict() for candidate in self.closest],
            "fingerprinted_entries": self.fingerprinted_entries,
            "no_fingerprints": self.no_fingerprints,
        }


class MatchEngine:
    """Ranks catalog entries by distance to a query fingerprint."""

    def __init__(self, codec: Optional[HashCodec] = None, policy: Optional[MatchPolicy] = None) -> None:
        self.codec = codec or HashCodec()
        self.policy = policy or MatchPolicy()

    def score(self, query: Fingerprint, entry: CatalogEntry) -> Optional[int]:
        """Smallest distance between the query and any of the entry's fingerprints."""
        distances = [hamming_distance(query, fp) for fp in entry.fingerprints]
        return min(distances) if distances else None

    def find_candidates(
        self,
        query: Fingerprint,
        entries: Iterable[CatalogEntry],
        max_distance: Optional[int] = None,
    ) -> List[MatchCandidate]:
        """All fingerprinted entries within ``max_distance``, best first.

        Ties keep catalog order (``list.sort`` is stable).
        """
        limit = self.policy.match_threshold if max_distance is None else max_distance
        total_bits = self.codec.total_bits
        candidates: List[MatchCandidate] = []
        for entry in entries:
            distance = self.score(query, entry)
            if distance is None or distance > limit:
                continue
            candidates.append(
                MatchCandidate(entry=entry, distance=distance, similarity=similarity(distance, total_bits))
            )
        candidates.sort(key=lambda candidate: candidate.distance)
        return candidates

    def find_best(
        self,
        query: Fingerprint,
        entries: Iterable[CatalogEntry],
        max_distance: Optional[int] = None,
    ) -> Optional[MatchCandidate]:
        candidates = self.find_candidates(query, entries, max_distance)
        return candidates[0] if candidates else None

    def evaluate(self, query: Fingerprint, entries: Iterable[CatalogEntry]) -> MatchReport:
        """Best plausible match, or the closest misses when nothing clears the floor."""
        fingerprinted = [entry for entry in entries if entry.has_fingerprint]
        report = MatchReport(query=query, fingerprinted_entries=len(fingerprinted))
        if not fingerprinted:
            LOGGER.debug("No fingerprinted entries in catalog")
            return report

        best = self.find_best(query, fingerprinted, self.policy.match_threshold)
        if best is not None and best.similarity >= self.policy.confidence_floor:
            report.best = best
            return report

        near = self.find_candidates(query, fingerprinted, self.policy.diagnostic_threshold)
        report.closest = near[: self.policy.diagnostic_limit]
        if report.closest:
            top = report.closest[0]
            LOGGER.debug(
                "No match; closest was %s - %s at %d bits (%.0f%%)",
                top.entry.artist,
                top.entry.title,
                top.distance,
                top.similarity * 100,
            )
        return report

    def match_image(self, image_bytes: bytes, entries: Iterable[CatalogEntry]) -> MatchReport:
        return self.evaluate(self.codec.compute_fingerprint(image_bytes), entries)

"""Upstream collaborators for the catalog: Discogs collection and image download.

Also declares the narrow interfaces the recognition core consumes, so tests and
alternative hosts can plug in their own frame sources and secondary
recognizers.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import requests

from coverscan.errors import ConfigError, FetchError
from coverscan.types import SecondaryResult, SourceRecord

LOGGER = logging.getLogger("coverscan.catalog.sources")

DISCOGS_API = "https://api.discogs.com"
USER_AGENT = "coverscan/0.1 (+https://github.com/coverscan)"

# Discogs' image CDN answers 403 to bare clients
IMAGE_HEADERS: Dict[str, str] = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://www.discogs.com/",
}


class CatalogSource(Protocol):
    def fetch_all(self) -> List[SourceRecord]:
        ...


class ImageSource(Protocol):
    def fetch(self, url: str) -> bytes:
        ...


class FrameSource(Protocol):
    def capture(self) -> bytes:
        ...


class SecondaryRecognizer(Protocol):
    def identify(self, image_bytes: bytes) -> SecondaryResult:
        ...


class TokenBucket:
    """Client-side rate limiter shared by every call to one upstream host."""

    def __init__(self, rate_per_minute: float = 60, capacity: Optional[float] = None) -> None:
        self.rate = rate_per_minute / 60.0  # tokens per second
        self.capacity = capacity or rate_per_minute
        self.tokens = float(self.capacity)
        self.last = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self, tokens: float = 1) -> bool:
        with self.lock:
            now = time.monotonic()
            self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
            self.last = now
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    def wait(self, tokens: float = 1) -> None:
        while not self.acquire(tokens):
            time.sleep(0.05)


class ImageFetcher:
    """Downloads cover images, retrying the throttling responses Discogs emits."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        retries: int = 2,
        backoff_seconds: float = 1.0,
        bucket: Optional[TokenBucket] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.backoff_seconds = backoff_seconds
        self.bucket = bucket
        self._sleep = sleep

    def fetch(self, url: str) -> bytes:
        if not url or not url.strip():
            raise FetchError("Empty image URL", url=url)
        last_error: Optional[FetchError] = None
        for attempt in range(self.retries + 1):
            if attempt > 0:
                self._sleep(self.backoff_seconds * attempt)
            if self.bucket is not None:
                self.bucket.wait()
            try:
                response = self.session.get(url, headers=IMAGE_HEADERS, timeout=self.timeout)
            except requests.Timeout as exc:
                raise FetchError("Request timeout", url=url) from exc
            except requests.RequestException as exc:
                last_error = FetchError(f"Network error: {exc}", url=url)
                LOGGER.debug("Attempt %d for %s failed: %s", attempt + 1, url, exc)
                continue

            status = response.status_code
            if 200 <= status < 300:
                if not response.content:
                    raise FetchError("Empty response body", url=url, status=status)
                return response.content
            if status == 404:
                raise FetchError("Image not found (404)", url=url, status=status)
            if status == 403 or status >= 500:
                last_error = FetchError(f"HTTP {status} for image URL", url=url, status=status)
                LOGGER.warning(
                    "HTTP %d on attempt %d/%d (%s...)",
                    status,
                    attempt + 1,
                    self.retries + 1,
                    url[:50],
                )
                continue
            raise FetchError(f"HTTP {status} for image URL", url=url, status=status)

        raise last_error or FetchError("Failed to download image after retries", url=url)


def _release_to_record(release: Dict[str, Any]) -> SourceRecord:
    info = release.get("basic_information") or {}
    artists = info.get("artists") or []
    return SourceRecord(
        id=int(info.get("id") or release["id"]),
        master_id=info.get("master_id") or None,
        artist=(artists[0].get("name") if artists else None) or "Unknown",
        title=info.get("title") or "",
        year=info.get("year") or None,
        labels=[label.get("name", "") for label in info.get("labels") or []],
        formats=[fmt.get("name", "") for fmt in info.get("formats") or []],
        cover_url=info.get("cover_image") or None,
        thumb_url=info.get("thumb") or None,
    )


class DiscogsCollectionSource:
    """Reads every release in a user's Discogs collection (folder 0 = All)."""

    def __init__(
        self,
        username: str,
        token: str,
        session: Optional[requests.Session] = None,
        per_page: int = 100,
        timeout: float = 20.0,
        bucket: Optional[TokenBucket] = None,
    ) -> None:
        if not username or not token:
            raise ConfigError("Discogs username and user token are required")
        self.username = username
        self.token = token
        self.session = session or requests.Session()
        self.per_page = per_page
        self.timeout = timeout
        self.bucket = bucket

    def _request(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Discogs token={self.token}",
            "User-Agent": USER_AGENT,
        }
        url = path if path.startswith("http") else f"{DISCOGS_API}{path}"
        if self.bucket is not None:
            self.bucket.wait()
        try:
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise FetchError(f"Could not connect to Discogs API: {exc}", url=url) from exc
        if response.status_code == 401:
            raise FetchError("Discogs authentication failed", url=url, status=401)
        if response.status_code == 404:
            raise FetchError(f"Discogs user not found: {self.username}", url=url, status=404)
        if response.status_code != 200:
            raise FetchError(f"Discogs API error {response.status_code}", url=url, status=response.status_code)
        return response.json()

    def fetch_page(self, page: int) -> Dict[str, Any]:
        return self._request(
            f"/users/{self.username}/collection/folders/0/releases",
            {"page": page, "per_page": self.per_page, "sort": "artist", "sort_order": "asc"},
        )

    def fetch_all(self) -> List[SourceRecord]:
        records: List[SourceRecord] = []
        page = 1
        while True:
            payload = self.fetch_page(page)
            releases = payload.get("releases") or []
            records.extend(_release_to_record(release) for release in releases)
            pages = int((payload.get("pagination") or {}).get("pages") or 1)
            LOGGER.info("Fetched collection page %d/%d (%d releases)", page, pages, len(releases))
            if page >= pages:
                break
            page += 1
        return records

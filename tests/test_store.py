import json

import pandas as pd
import pytest

from coverscan import io_utils
from coverscan.catalog.store import CatalogStore, LiveCatalog, normalize_name
from coverscan.errors import ConfigError, FetchError, StoreIOError
from coverscan.types import Catalog, CatalogEntry, SourceRecord


class StubFetcher:
    def __init__(self, images, failing=()):
        self.images = images
        self.failing = set(failing)
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        if url in self.failing:
            raise FetchError("HTTP 403 for image URL", url=url, status=403)
        return self.images[url]


class Interrupted(BaseException):
    pass


def make_records(count):
    return [
        SourceRecord(
            id=1000 + idx,
            artist=f"Artist {idx}",
            title=f"Album {idx}",
            cover_url=f"https://img.example/{idx}.jpg",
            thumb_url=f"https://img.example/{idx}-thumb.jpg",
        )
        for idx in range(count)
    ]


def test_load_missing_snapshot_is_empty(tmp_path):
    store = CatalogStore(tmp_path / "missing.json")

    catalog = store.load()

    assert catalog.count == 0
    assert store.stats().count == 0


def test_save_and_load_roundtrip(tmp_path):
    path = tmp_path / "data" / "catalog.json"
    store = CatalogStore(path)
    catalog = Catalog(
        entries=[
            CatalogEntry(
                catalog_id=1,
                artist="Can",
                title="Tago Mago",
                master_id=123,
                year=1971,
                labels=["United Artists"],
                formats=["Vinyl"],
                cover_url="https://img.example/1.jpg",
                primary_fingerprint="ff00ff00ff00ff00",
            )
        ],
        built_at="2024-01-01T00:00:00+00:00",
    )

    store.save(catalog)

    assert store.load() == catalog
    assert [p.name for p in path.parent.iterdir()] == ["catalog.json"]
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["count"] == 1
    assert payload["built_at"] == "2024-01-01T00:00:00+00:00"


def test_malformed_snapshot_raises(tmp_path):
    path = tmp_path / "catalog.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreIOError):
        CatalogStore(path).load()

    path.write_text(json.dumps({"entries": [{"artist": "No id"}]}), encoding="utf-8")
    with pytest.raises(StoreIOError):
        CatalogStore(path).load()


def test_rebuild_with_failures_checkpoints_and_pauses(tmp_path, make_cover):
    records = make_records(23)
    images = {}
    for idx, record in enumerate(records):
        images[record.cover_url] = make_cover(idx)
        images[record.thumb_url] = make_cover(idx, size=64)
    failing = {url for idx in (5, 14) for url in (records[idx].cover_url, records[idx].thumb_url)}
    sleeps = []
    store = CatalogStore(
        tmp_path / "catalog.json",
        fetcher=StubFetcher(images, failing),
        checkpoint_every=10,
        pause_every=10,
        pause_seconds=2.0,
        sleep=sleeps.append,
    )

    catalog = store.rebuild(records, compute_fingerprints=True)

    assert catalog.count == 23
    unhashed = [entry.catalog_id for entry in catalog.entries if not entry.has_fingerprint]
    assert unhashed == [1005, 1014]
    assert all(entry.primary_fingerprint for entry in catalog.entries if entry.catalog_id not in (1005, 1014))
    assert store.last_report.hashed == 21
    assert store.last_report.failed == 2
    assert store.last_report.failed_ids == [1005, 1014]
    assert store.last_report.checkpoints == 2
    assert sleeps == [2.0, 2.0]
    assert store.load().count == 23
    assert store.live.current() is catalog


def test_interrupted_rebuild_leaves_checkpoint(tmp_path, make_cover):
    records = make_records(15)
    images = {record.cover_url: make_cover(idx) for idx, record in enumerate(records)}

    class InterruptingFetcher(StubFetcher):
        def fetch(self, url):
            if url == records[12].cover_url:
                raise Interrupted()
            return super().fetch(url)

    store = CatalogStore(tmp_path / "catalog.json", fetcher=InterruptingFetcher(images), sleep=lambda _: None)

    with pytest.raises(Interrupted):
        store.rebuild(records, compute_fingerprints=True)

    snapshot = store.load()
    assert snapshot.count == 15
    assert len(snapshot.fingerprinted()) == 10
    assert store.live.current().count == 0


def test_thumbnail_fallback(tmp_path, make_cover):
    record = make_records(1)[0]
    fetcher = StubFetcher(
        {record.cover_url: b"not an image", record.thumb_url: make_cover(2, size=64)},
    )
    store = CatalogStore(tmp_path / "catalog.json", fetcher=fetcher)

    catalog = store.rebuild([record], compute_fingerprints=True)

    entry = catalog.entries[0]
    assert entry.primary_fingerprint is None
    assert entry.thumb_fingerprint is not None
    assert entry.fingerprints == [entry.thumb_fingerprint]
    assert fetcher.calls == [record.cover_url, record.thumb_url]


def test_rebuild_without_hashing(tmp_path):
    store = CatalogStore(tmp_path / "catalog.json")

    catalog = store.rebuild(make_records(3))

    assert catalog.count == 3
    assert catalog.fingerprinted() == []
    assert store.stats().entries_with_artwork == 3
    assert store.stats().entries_with_fingerprints == 0
    assert store.last_report.checkpoints == 0


def test_rebuild_hashing_requires_fetcher(tmp_path):
    with pytest.raises(ConfigError):
        CatalogStore(tmp_path / "catalog.json").rebuild(make_records(1), compute_fingerprints=True)


@pytest.fixture
def beatles_store(tmp_path):
    live = LiveCatalog(
        Catalog(
            entries=[
                CatalogEntry(catalog_id=1, artist="The Beatles", title="Abbey Road"),
                CatalogEntry(catalog_id=2, artist="Beatles", title="Abbey Road (Remastered)"),
                CatalogEntry(catalog_id=3, artist="Pink Floyd", title="The Dark Side Of The Moon"),
                CatalogEntry(
                    catalog_id=4, artist="AC/DC", title="Back In Black", cover_url="https://img.example/4.jpg"
                ),
            ]
        )
    )
    return CatalogStore(tmp_path / "catalog.json", live=live)


def test_normalize_name():
    assert normalize_name("  The  Beatles! ") == "beatles"
    assert normalize_name("AC/DC") == "acdc"
    assert normalize_name("Jay-Z") == "jay-z"
    assert normalize_name("Theatre Of Hate") == "theatre of hate"
    assert normalize_name(None) == ""


def test_search_exact_and_containment(beatles_store):
    ids = [entry.catalog_id for entry in beatles_store.search("the beatles", "abbey road")]
    assert ids == [1, 2]

    assert [e.catalog_id for e in beatles_store.search(artist="pink floyd")] == [3]
    assert [e.catalog_id for e in beatles_store.search(title="dark side of the moon")] == [3]
    assert [e.catalog_id for e in beatles_store.search("ACDC", "Back in Black")] == [4]
    assert beatles_store.search("The Beatles", "Let It Be") == []
    assert len(beatles_store.search()) == 4


def test_get_and_stats(beatles_store):
    assert beatles_store.get(3).artist == "Pink Floyd"
    assert beatles_store.get(42) is None

    stats = beatles_store.stats()
    assert stats.count == 4
    assert stats.entries_with_artwork == 1
    assert stats.entries_with_fingerprints == 0


def test_export_table(tmp_path, beatles_store):
    out = beatles_store.export_table(tmp_path / "exports" / "catalog.csv")

    df = pd.read_csv(out)
    assert len(df) == 4
    assert list(df["artist"])[:2] == ["The Beatles", "Beatles"]
    assert "has_primary_fingerprint" in df.columns


def test_open_installs_snapshot(tmp_path):
    path = tmp_path / "catalog.json"
    CatalogStore(path).save(Catalog(entries=[CatalogEntry(catalog_id=7, artist="Neu!", title="Neu! 75")]))
    live = LiveCatalog()
    store = CatalogStore(path, live=live)

    store.open()

    assert live().count == 1
    assert store.search(artist="neu")[0].catalog_id == 7


def test_search_ignores_fields_that_normalize_to_nothing(beatles_store):
    assert len(beatles_store.search(artist="!!!")) == 4
    assert [e.catalog_id for e in beatles_store.search("!!!", "abbey road")] == [1, 2]


@pytest.mark.parametrize("target", ["replace", "dump"])
def test_failed_save_keeps_previous_snapshot(tmp_path, monkeypatch, target):
    path = tmp_path / "catalog.json"
    store = CatalogStore(path)
    previous = Catalog(entries=[CatalogEntry(catalog_id=1, artist="Can", title="Soon Over Babaluma")])
    store.save(previous)

    def fail(*args, **kwargs):
        raise OSError("disk full")

    if target == "replace":
        monkeypatch.setattr(io_utils.os, "replace", fail)
    else:
        monkeypatch.setattr(io_utils.json, "dump", fail)

    with pytest.raises(StoreIOError):
        store.save(Catalog(entries=[CatalogEntry(catalog_id=2, artist="Faust", title="IV")]))

    monkeypatch.undo()
    assert store.load() == previous
    assert [p.name for p in tmp_path.iterdir()] == ["catalog.json"]

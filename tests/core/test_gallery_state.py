from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import List
from unittest.mock import MagicMock

import pytest
from PIL import Image

from visionary.core.gallery_state import EmptyResultPolicy, GalleryManager, build_manager
from visionary.core.photos_library import LibraryAsset
from visionary.core.scan import DirectorySource, PermissionDeniedError
from visionary.state.models import UNANALYZED, CandidateMedia, GalleryStatus
from visionary.util.telemetry import read_events
from visionary.vision import VisionClient


def _names(items) -> List[str]:
    return [item.name for item in items]


def _refuse(_message: str) -> bool:
    raise AssertionError("confirmation should not be requested")


class FakeLibrary:
    """Serves disjoint pages of assets like the native media index."""

    def __init__(self, count: int):
        self.assets = [
            LibraryAsset(identifier=f"/library/originals/{i % 3}/IMG_{i:04d}.JPG", mime_type="image/jpeg", creation_date=None)
            for i in range(count)
        ]
        self.requests: List[dict] = []

    def get_medias(self, quantity, offset=0, album_identifier=None, sort="creationDate"):
        self.requests.append({"quantity": quantity, "offset": offset, "album": album_identifier})
        return self.assets[offset : offset + quantity]

    def get_albums(self):
        return []


def test_ingest_skips_existing_names_and_puts_newest_first(make_manager, make_candidate, store):
    manager = make_manager()

    added = manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg"), make_candidate("a.jpg")])
    assert _names(added) == ["a.jpg", "b.jpg"]
    assert _names(manager.items) == ["b.jpg", "a.jpg"]

    again = manager.ingest([make_candidate("b.jpg"), make_candidate("c.mp4", "video/mp4")])
    assert _names(again) == ["c.mp4"]
    assert _names(manager.items) == ["c.mp4", "b.jpg", "a.jpg"]
    assert len({item.name for item in manager.items}) == len(manager.items)

    persisted = store.load()
    assert persisted is not None
    assert _names(persisted) == ["c.mp4", "b.jpg", "a.jpg"]


def test_reingesting_present_names_is_a_noop(make_manager, make_candidate):
    manager = make_manager()
    manager.ingest([make_candidate("a.jpg")])
    before = [item.to_dict() for item in manager.items]

    assert manager.ingest([make_candidate("a.jpg")]) == []
    assert [item.to_dict() for item in manager.items] == before


def test_ingest_assigns_sentinel_metadata_and_unique_ids(make_manager, make_candidate, analyzer):
    manager = make_manager()
    manager.ingest([make_candidate(f"img{i}.jpg") for i in range(20)])

    ids = {item.id for item in manager.items}
    assert len(ids) == 20
    assert all(len(item_id) == 32 for item_id in ids)
    assert all(item.metadata.description == UNANALYZED for item in manager.items)
    assert analyzer.analyze_calls == []


def test_ensure_indexed_without_pending_items_is_a_noop(make_manager, analyzer):
    manager = make_manager()
    manager.confirm = _refuse

    assert manager.ensure_indexed() == []
    assert analyzer.analyze_calls == []


def test_ensure_indexed_declined_leaves_collection_untouched(make_manager, make_candidate, analyzer, store):
    manager = make_manager(confirm=False)
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])
    before = [item.to_dict() for item in manager.items]
    stored_before = store.path("visionary_gallery_data").read_bytes()

    assert manager.ensure_indexed() is None
    assert [item.to_dict() for item in manager.items] == before
    assert store.path("visionary_gallery_data").read_bytes() == stored_before
    assert analyzer.analyze_calls == []


def test_partial_failures_keep_sentinel_and_do_not_abort(make_manager, make_candidate, analyzer_factory):
    analyzer = analyzer_factory(fail=["bad.jpg"])
    progress: List[tuple] = []
    manager = make_manager(analyzer=analyzer, progress=lambda current, total: progress.append((current, total)))
    manager.ingest([make_candidate(name) for name in ["one.jpg", "bad.jpg", "two.jpg", "three.jpg"]])

    updated = manager.ensure_indexed()

    assert updated is not None
    assert len(updated) == 4
    sentinel = [item.name for item in updated if item.metadata.description == UNANALYZED]
    assert sentinel == ["bad.jpg"]
    assert sum(1 for item in updated if not item.is_unanalyzed) == 3
    index_progress = progress[-5:]
    assert index_progress == [(0, 4), (1, 4), (2, 4), (3, 4), (4, 4)]
    assert manager.status == GalleryStatus.IDLE


def test_ensure_indexed_processes_items_in_collection_order(make_manager, make_candidate, analyzer):
    manager = make_manager()
    manager.ingest([make_candidate(name) for name in ["a.jpg", "b.jpg", "c.jpg"]])

    manager.ensure_indexed()

    assert [data for data, _ in analyzer.analyze_calls] == [b"c.jpg", b"b.jpg", b"a.jpg"]


def test_ensure_indexed_is_idempotent(make_manager, make_candidate, analyzer):
    manager = make_manager()
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])

    manager.ensure_indexed()
    calls_after_first = len(analyzer.analyze_calls)
    manager.confirm = _refuse
    manager.ensure_indexed()

    assert calls_after_first == 2
    assert len(analyzer.analyze_calls) == 2


def test_unreadable_item_keeps_sentinel(make_manager, make_candidate, analyzer):
    def read_bytes(item):
        if item.name == "gone.jpg":
            raise FileNotFoundError(item.url)
        return item.name.encode("utf-8")

    manager = make_manager(read_bytes=read_bytes)
    manager.ingest([make_candidate("gone.jpg"), make_candidate("here.jpg")])

    updated = manager.ensure_indexed()

    by_name = {item.name: item for item in updated}
    assert by_name["gone.jpg"].is_unanalyzed
    assert by_name["here.jpg"].metadata.description == "a picture of here.jpg"
    assert len(analyzer.analyze_calls) == 1


def test_indexing_records_telemetry(make_manager, make_candidate, analyzer_factory, tmp_path):
    events_path = tmp_path / "events.jsonl"
    manager = make_manager(analyzer=analyzer_factory(fail=["b.jpg"]), telemetry_path=events_path)
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])

    manager.ensure_indexed()

    events = read_events(events_path)
    assert [event.event for event in events] == ["start", "item_failed", "item", "complete"]
    assert events[-1].details == {"failed": 1}


def test_text_search_without_ai_matches_names_in_order(make_manager, make_candidate, analyzer):
    manager = make_manager()
    manager.ingest([make_candidate("photo2.jpg"), make_candidate("beach.png"), make_candidate("photo1.jpg")])
    assert _names(manager.items) == ["photo1.jpg", "beach.png", "photo2.jpg"]

    results = manager.search_by_text("PHOTO", ai_enabled=False)

    assert _names(results) == ["photo1.jpg", "photo2.jpg"]
    assert _names(manager.view()) == ["photo1.jpg", "photo2.jpg"]
    assert analyzer.analyze_calls == []
    assert analyzer.rank_calls == []


def test_empty_query_clears_filter(make_manager, make_candidate):
    manager = make_manager()
    manager.ingest([make_candidate("photo1.jpg"), make_candidate("beach.png")])
    manager.search_by_text("beach", ai_enabled=False)
    assert manager.filtered is not None

    results = manager.search_by_text("   ", ai_enabled=False)

    assert manager.filtered is None
    assert len(results) == 2


def test_ai_search_follows_ranking_order(make_manager, make_candidate, analyzer_factory):
    def ranking(query, items):
        return ["unknown-id"] + [item.id for item in reversed(items)] + [items[0].id]

    analyzer = analyzer_factory(ranking=ranking)
    manager = make_manager(analyzer=analyzer)
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg"), make_candidate("c.jpg")])

    results = manager.search_by_text("anything", ai_enabled=True)

    assert _names(results) == ["a.jpg", "b.jpg", "c.jpg"]
    query, ranked_ids = analyzer.rank_calls[0]
    assert query == "anything"
    assert len(ranked_ids) == 3
    assert all(not item.is_unanalyzed for item in manager.items)


def test_ai_search_declined_keeps_previous_filter(make_manager, make_candidate, analyzer):
    manager = make_manager(confirm=False)
    manager.ingest([make_candidate("photo1.jpg"), make_candidate("beach.png")])
    manager.search_by_text("beach", ai_enabled=False)
    previous = manager.view()

    assert manager.search_by_text("sunset", ai_enabled=True) is None
    assert manager.view() == previous
    assert analyzer.rank_calls == []


@pytest.mark.parametrize(
    "policy, expected",
    [(EmptyResultPolicy.SHOW_NOTHING, []), (EmptyResultPolicy.SHOW_ALL, ["b.jpg", "a.jpg"])],
)
def test_empty_ranking_policy(make_manager, make_candidate, analyzer_factory, policy, expected):
    manager = make_manager(analyzer=analyzer_factory(ranking=lambda query, items: []), empty_results=policy)
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])

    results = manager.search_by_text("nothing matches", ai_enabled=True)

    assert _names(results) == expected
    if policy == EmptyResultPolicy.SHOW_ALL:
        assert manager.filtered is None
    else:
        assert manager.filtered == []


def test_image_search_declined_with_ai_off_does_nothing(make_manager, make_candidate, analyzer):
    manager = make_manager(confirm=False)
    manager.ingest([make_candidate("a.jpg")])

    assert manager.search_by_image(b"query.jpg", "image/jpeg") is None
    assert analyzer.analyze_calls == []
    assert manager.filtered is None
    assert manager.ai_enabled is False


def test_image_search_enables_ai_and_ranks_by_visual_profile(make_manager, make_candidate, analyzer):
    manager = make_manager()
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])

    manager.search_by_image(b"query.jpg", "image/png")

    assert manager.ai_enabled is True
    assert analyzer.analyze_calls[-1] == (b"query.jpg", "image/png")
    query, _ = analyzer.rank_calls[-1]
    assert query == "Visual profile: a picture of query.jpg. Keywords: query"
    assert manager.filtered is not None


def test_image_search_with_failed_query_analysis_returns_no_matches(make_manager, make_candidate, analyzer_factory):
    analyzer = analyzer_factory(fail=["query.jpg"])
    manager = make_manager(analyzer=analyzer)
    manager.set_ai_mode(True)
    manager.ingest([make_candidate("a.jpg")])

    results = manager.search_by_image(b"query.jpg", "image/jpeg")

    assert results == []
    assert analyzer.rank_calls == []


def test_clear_filter_restores_full_view(make_manager, make_candidate):
    manager = make_manager()
    manager.ingest([make_candidate("a.jpg"), make_candidate("b.jpg")])
    manager.search_by_text("a.jpg", ai_enabled=False)

    assert _names(manager.clear_filter()) == ["b.jpg", "a.jpg"]
    assert manager.filtered is None


def test_ai_search_without_client_raises(make_manager, make_candidate):
    manager = make_manager(analyzer=None)
    manager.ingest([make_candidate("a.jpg")])

    with pytest.raises(RuntimeError):
        manager.search_by_text("a", ai_enabled=True)
    assert manager.items[0].is_unanalyzed


def test_library_pagination_appends_disjoint_pages(make_manager):
    library = FakeLibrary(7)
    manager = make_manager()

    first = manager.sync_library(library, page_size=4)
    second = manager.sync_library(library, load_more=True, page_size=4)

    assert len(first) == 4
    assert len(second) == 3
    assert [request["offset"] for request in library.requests] == [0, 4]
    assert len(manager.items) == 7
    assert len({item.source_id for item in manager.items}) == 7
    assert len({item.id for item in manager.items}) == 7
    assert [item.source_id for item in manager.items] == [asset.identifier for asset in library.assets]


def test_library_fresh_load_replaces_collection(make_manager, make_candidate):
    library = FakeLibrary(3)
    manager = make_manager()
    manager.ingest([make_candidate("manual.jpg")])
    manager.search_by_text("manual", ai_enabled=False)

    manager.sync_library(library, album_id="album-1", page_size=10)

    assert len(manager.items) == 3
    assert manager.filtered is None
    assert manager.current_album_id == "album-1"
    assert library.requests[0]["album"] == "album-1"


def test_sync_directory_permission_denied_mutates_nothing(make_manager, make_candidate, store, tmp_path):
    manager = make_manager()
    manager.ingest([make_candidate("a.jpg")])
    before = [item.to_dict() for item in manager.items]

    with pytest.raises(PermissionDeniedError):
        manager.sync_directory(DirectorySource(tmp_path / "missing"))

    assert [item.to_dict() for item in manager.items] == before
    assert store.load_credential() is None


def test_sync_and_resync_directory(make_manager, store, tmp_path):
    gallery = tmp_path / "gallery"
    (gallery / "nested").mkdir(parents=True)
    (gallery / "a.jpg").write_bytes(b"a")
    (gallery / "nested" / "b.mp4").write_bytes(b"b")
    (gallery / "notes.txt").write_text("skip", encoding="utf-8")
    manager = make_manager()

    added = manager.sync_directory(DirectorySource(gallery))
    assert sorted(_names(added)) == ["a.jpg", "b.mp4"]
    assert store.load_credential() == gallery.resolve()

    (gallery / "c.gif").write_bytes(b"c")
    again = manager.resync_directory()
    assert _names(again) == ["c.gif"]
    assert again[0].kind.value == "animated-image"


def test_resync_without_saved_directory_raises(make_manager):
    with pytest.raises(PermissionDeniedError):
        make_manager().resync_directory()


def test_build_manager_loads_persisted_items_without_api_key(monkeypatch, tmp_path, make_candidate):
    monkeypatch.delenv("VISIONARY_TEST_KEY", raising=False)
    cfg = {"storage_dir": str(tmp_path / "store"), "api_key_env": "VISIONARY_TEST_KEY", "empty_results": "show_all"}
    first = build_manager(cfg)
    first.ingest([make_candidate("kept.jpg")])

    second = build_manager(cfg)

    assert isinstance(second, GalleryManager)
    assert second.analyzer is None
    assert second.empty_results == EmptyResultPolicy.SHOW_ALL
    assert _names(second.items) == ["kept.jpg"]
    assert second.telemetry_path == Path(cfg["storage_dir"]) / "index_events.jsonl"


def test_gallery_with_video_settles_after_one_confirmed_pass(store, tmp_path: Path, make_clip):
    photo = tmp_path / "a.png"
    Image.new("RGB", (40, 30), color=(10, 120, 30)).save(photo)
    clip = make_clip(tmp_path / "clip.avi")

    reply = json.dumps(
        {"description": "a field", "tags": ["field"], "dominantColors": ["green"], "objects": [], "mood": "calm"}
    )
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=reply))]
    )
    prompts: List[str] = []

    def confirm(message: str) -> bool:
        prompts.append(message)
        return True

    manager = GalleryManager(store, VisionClient(client=client), confirm=confirm)
    manager.ingest(
        [
            CandidateMedia(name="a.png", path=photo, mime_type="image/png"),
            CandidateMedia(name="clip.avi", path=clip, mime_type="video/x-msvideo"),
        ]
    )

    for _ in range(3):
        assert manager.ensure_indexed() is not None

    assert len(prompts) == 1
    assert manager.unindexed() == []
    assert client.chat.completions.create.call_count == 2

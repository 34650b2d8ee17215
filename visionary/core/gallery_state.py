from __future__ import annotations

import logging
import time
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from visionary.config import resolve_api_key
from visionary.core.photos_library import PhotosLibrary
from visionary.core.scan import DirectorySource, PermissionDeniedError
from visionary.state.models import Album, CandidateMedia, GalleryStatus, MediaItem, MediaMetadata
from visionary.store import LocalStore
from visionary.util.telemetry import IndexEvent, append_event, index_events_path
from visionary.vision import VisionClient, compose_similarity_query

logger = logging.getLogger(__name__)

ConfirmFn = Callable[[str], bool]
ProgressFn = Callable[[int, int], None]
ReadBytesFn = Callable[[MediaItem], bytes]

DEFAULT_PAGE_SIZE = 1000

IMAGE_SEARCH_PROMPT = "Image similarity search requires AI analysis. Enable AI mode and proceed?"


class EmptyResultPolicy(str, Enum):
    """
    What an empty ranking does to the filtered view. The remote client reports
    ranking failures as an empty list, so this also decides how failures look.
    """

    SHOW_NOTHING = "show_nothing"
    SHOW_ALL = "show_all"

    @classmethod
    def parse(cls, value: object) -> "EmptyResultPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            logger.warning("Unknown empty_results policy %r, using %s", value, cls.SHOW_NOTHING.value)
            return cls.SHOW_NOTHING


class Analyzer(Protocol):
    def analyze(self, data: bytes, mime_type: str) -> MediaMetadata:
        ...

    def rank(self, query: str, items: Sequence[MediaItem]) -> List[str]:
        ...


def _decline(_message: str) -> bool:
    return False


def read_item_bytes(item: MediaItem) -> bytes:
    return Path(item.url).read_bytes()


def index_prompt(pending: int) -> str:
    return (
        f"AI search requires analyzing {pending} items. "
        "This sends each file to the analysis service and may take time. Start indexing?"
    )


class GalleryManager:
    """
    Single owner of the gallery collection, albums, filtered view and AI mode.

    Every mutation goes through this object and is persisted right after it
    happens. Indexing is sequential: one remote call in flight at a time.
    """

    def __init__(
        self,
        store: LocalStore,
        analyzer: Optional[Analyzer],
        *,
        confirm: Optional[ConfirmFn] = None,
        progress: Optional[ProgressFn] = None,
        empty_results: EmptyResultPolicy = EmptyResultPolicy.SHOW_NOTHING,
        telemetry_path: Optional[Path] = None,
        read_bytes: Optional[ReadBytesFn] = None,
    ):
        self.store = store
        self.analyzer = analyzer
        self.confirm: ConfirmFn = confirm or _decline
        self.progress = progress
        self.empty_results = empty_results
        self.telemetry_path = telemetry_path
        self.read_bytes: ReadBytesFn = read_bytes or read_item_bytes

        self._items: List[MediaItem] = []
        self.albums: List[Album] = []
        self.current_album_id: Optional[str] = None
        self.filtered: Optional[List[MediaItem]] = None
        self.ai_enabled = False
        self.status = GalleryStatus.IDLE
        self.progress_current = 0
        self.progress_total = 0

    # -- read side --

    @property
    def items(self) -> List[MediaItem]:
        return list(self._items)

    def view(self) -> List[MediaItem]:
        if self.filtered is not None:
            return list(self.filtered)
        return list(self._items)

    def unindexed(self) -> List[MediaItem]:
        return [item for item in self._items if item.is_unanalyzed]

    def get(self, item_id: str) -> Optional[MediaItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def progress_snapshot(self) -> Dict[str, object]:
        return {
            "status": self.status.value,
            "current": self.progress_current,
            "total": self.progress_total,
        }

    # -- persistence --

    def load(self) -> int:
        items = self.store.load()
        if items is None:
            return 0
        self._items = items
        self.filtered = None
        logger.info("Loaded %d gallery items from %s", len(items), self.store.root)
        return len(items)

    def _persist(self) -> None:
        self.store.save(self._items)

    def _report(self, current: int, total: int) -> None:
        self.progress_current = current
        self.progress_total = total
        if self.progress is not None:
            self.progress(current, total)

    def _record(self, event: IndexEvent) -> None:
        if self.telemetry_path is None:
            return
        try:
            append_event(self.telemetry_path, event)
        except OSError as exc:
            logger.warning("Failed to record index event: %s", exc)

    # -- ingestion --

    def ingest(self, candidates: Iterable[CandidateMedia]) -> List[MediaItem]:
        """
        Add candidates whose name is not in the collection yet, newest first.

        Nothing is analyzed here; new items carry the ``Unanalyzed`` sentinel.
        """
        existing = {item.name for item in self._items}
        fresh: List[CandidateMedia] = []
        for candidate in candidates:
            if candidate.name in existing:
                continue
            existing.add(candidate.name)
            fresh.append(candidate)

        if not fresh:
            return []

        self.status = GalleryStatus.UPLOADING
        total = len(fresh)
        self._report(0, total)
        added: List[MediaItem] = []
        try:
            for position, candidate in enumerate(fresh, start=1):
                added.append(candidate.to_item())
                self._report(position, total)
        finally:
            self.status = GalleryStatus.IDLE

        self._items = list(reversed(added)) + self._items
        self._persist()
        logger.info("Ingested %d new items (%d total)", len(added), len(self._items))
        return added

    def sync_directory(self, source: DirectorySource) -> List[MediaItem]:
        """
        Walk ``source`` and ingest what it finds, remembering the directory
        for later re-syncs. A denied permission aborts before any mutation.
        """
        candidates = source.candidates()
        self.store.save_credential(source.root)
        return self.ingest(candidates)

    def resync_directory(self) -> List[MediaItem]:
        root = self.store.load_credential()
        if root is None:
            raise PermissionDeniedError("No gallery directory has been granted yet")
        return self.sync_directory(DirectorySource(root))

    def load_albums(self, library: PhotosLibrary) -> List[Album]:
        self.albums = library.get_albums()
        return list(self.albums)

    def sync_library(
        self,
        library: PhotosLibrary,
        album_id: Optional[str] = None,
        *,
        load_more: bool = False,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> List[MediaItem]:
        """
        Fetch one page from the native library.

        A fresh load replaces the collection with the first page; ``load_more``
        uses the current item count as offset and appends the next page.
        """
        offset = len(self._items) if load_more else 0
        assets = library.get_medias(quantity=page_size, offset=offset, album_identifier=album_id)

        if not load_more:
            self._items = []
            self.filtered = None
        self.current_album_id = album_id

        known = {item.source_id for item in self._items if item.source_id}
        added: List[MediaItem] = []
        for asset in assets:
            if asset.identifier in known:
                continue
            known.add(asset.identifier)
            added.append(asset.to_candidate().to_item())

        self._items.extend(added)
        self._persist()
        logger.info("Fetched %d library items at offset %d (%d total)", len(added), offset, len(self._items))
        return added

    # -- indexing --

    def _require_analyzer(self) -> Analyzer:
        if self.analyzer is None:
            raise RuntimeError("AI mode needs an analysis client; set the API key named by api_key_env")
        return self.analyzer

    def _index_item(self, analyzer: Analyzer, item: MediaItem) -> bool:
        try:
            data = self.read_bytes(item)
        except OSError as exc:
            logger.warning("Could not read %s for analysis: %s", item.name, exc)
            return False

        metadata = analyzer.analyze(data, item.analysis_mime())
        if metadata.is_failure or metadata.is_unanalyzed:
            logger.warning("Analysis failed for %s", item.name)
            return False

        for position, current in enumerate(self._items):
            if current.id == item.id:
                self._items[position] = replace(current, metadata=metadata)
                break
        self._persist()
        return True

    def ensure_indexed(self) -> Optional[List[MediaItem]]:
        """
        Analyze every item still carrying the sentinel description.

        Returns the updated collection, or ``None`` when the user declined.
        Per-item failures keep the sentinel and do not stop the batch.
        """
        pending = self.unindexed()
        if not pending:
            return self.items

        analyzer = self._require_analyzer()
        if not self.confirm(index_prompt(len(pending))):
            logger.info("Indexing of %d items declined", len(pending))
            return None

        total = len(pending)
        failed = 0
        self.status = GalleryStatus.INDEXING
        self._report(0, total)
        self._record(IndexEvent(stage="index", event="start", total=total))
        try:
            for position, item in enumerate(pending, start=1):
                started = time.perf_counter()
                ok = self._index_item(analyzer, item)
                if not ok:
                    failed += 1
                self._report(position, total)
                self._record(
                    IndexEvent(
                        stage="index",
                        event="item" if ok else "item_failed",
                        processed=position,
                        total=total,
                        item_id=item.id,
                        duration_ms=(time.perf_counter() - started) * 1000.0,
                    )
                )
                logger.debug("Indexed %d/%d (%s)", position, total, item.name)
        finally:
            self.status = GalleryStatus.IDLE

        self._record(IndexEvent(stage="index", event="complete", processed=total, total=total, details={"failed": failed}))
        logger.info("Indexing finished: %d analyzed, %d failed", total - failed, failed)
        return self.items

    # -- search --

    def _apply_ranking(self, ids: Sequence[str], pool: Sequence[MediaItem]) -> List[MediaItem]:
        by_id = {item.id: item for item in pool}
        ranked: List[MediaItem] = []
        seen = set()
        for item_id in ids:
            if item_id in seen or item_id not in by_id:
                continue
            seen.add(item_id)
            ranked.append(by_id[item_id])

        if not ranked and self.empty_results == EmptyResultPolicy.SHOW_ALL:
            self.filtered = None
            return self.view()
        self.filtered = ranked
        return list(ranked)

    def search_by_text(self, query: str, ai_enabled: Optional[bool] = None) -> Optional[List[MediaItem]]:
        """
        Filter the gallery by ``query``.

        Without AI this is a case-insensitive substring match on names. With
        AI the collection is indexed first and the remote ranking decides the
        result order. Returns ``None`` when indexing was declined.
        """
        use_ai = self.ai_enabled if ai_enabled is None else ai_enabled
        if not query.strip():
            self.filtered = None
            return self.view()

        if not use_ai:
            lower = query.lower()
            self.filtered = [item for item in self._items if lower in item.name.lower()]
            return list(self.filtered)

        analyzer = self._require_analyzer()
        updated = self.ensure_indexed()
        if updated is None:
            return None

        self.status = GalleryStatus.SEARCHING
        try:
            ids = analyzer.rank(query, updated)
        finally:
            self.status = GalleryStatus.IDLE
        return self._apply_ranking(ids, updated)

    def search_by_image(self, data: bytes, mime_type: str) -> Optional[List[MediaItem]]:
        """
        Rank the gallery by similarity to an example image. Turns AI mode on
        after confirmation; returns ``None`` if either prompt is declined.
        """
        if not self.ai_enabled:
            if not self.confirm(IMAGE_SEARCH_PROMPT):
                return None
            self.ai_enabled = True

        analyzer = self._require_analyzer()
        updated = self.ensure_indexed()
        if updated is None:
            return None

        self.status = GalleryStatus.SEARCHING
        try:
            profile = analyzer.analyze(data, mime_type)
            if profile.is_failure:
                logger.warning("Query image could not be analyzed")
                ids: List[str] = []
            else:
                ids = analyzer.rank(compose_similarity_query(profile), updated)
        finally:
            self.status = GalleryStatus.IDLE
        return self._apply_ranking(ids, updated)

    def clear_filter(self) -> List[MediaItem]:
        self.filtered = None
        return self.view()

    def set_ai_mode(self, enabled: bool) -> bool:
        self.ai_enabled = bool(enabled)
        return self.ai_enabled


def build_manager(
    cfg: Dict[str, object],
    *,
    confirm: Optional[ConfirmFn] = None,
    progress: Optional[ProgressFn] = None,
    analyzer: Optional[Analyzer] = None,
) -> GalleryManager:
    """
    Wire a manager from a loaded config. The analysis client is only created
    when an API key is available; non-AI operations work without one.
    """
    storage_dir = Path(str(cfg.get("storage_dir") or ".visionary")).expanduser()
    if analyzer is None:
        api_key = resolve_api_key(cfg)
        if api_key:
            analyzer = VisionClient(
                model=str(cfg.get("model") or "gpt-4o-mini"),
                api_key=api_key,
                max_edge=int(cfg.get("max_edge") or 1024),
            )
    manager = GalleryManager(
        LocalStore(storage_dir),
        analyzer,
        confirm=confirm,
        progress=progress,
        empty_results=EmptyResultPolicy.parse(cfg.get("empty_results", EmptyResultPolicy.SHOW_NOTHING.value)),
        telemetry_path=index_events_path(storage_dir) if cfg.get("telemetry", True) else None,
    )
    manager.load()
    return manager


__all__ = [
    "build_manager",
    "GalleryManager",
    "EmptyResultPolicy",
    "Analyzer",
    "index_prompt",
    "read_item_bytes",
    "IMAGE_SEARCH_PROMPT",
    "DEFAULT_PAGE_SIZE",
]

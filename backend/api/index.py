from __future__ import annotations

import base64
import binascii
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel, Field

from visionary.config import load_config
from visionary.core.gallery_state import GalleryManager, build_manager
from visionary.core.photos_library import PhotosLibrary
from visionary.core.scan import DirectorySource, PermissionDeniedError
from visionary.state.models import MediaItem
from visionary.util.telemetry import index_events_path, read_events

app = FastAPI(title="Visionary Gallery API", version="0.1.0")

logger = logging.getLogger("backend.api.index")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class GalleryResponse(BaseModel):
    items: List[dict]
    total: int
    filtered: bool
    ai_enabled: bool
    unindexed: int
    has_saved_directory: bool
    status: Dict[str, object]


class SyncRequest(BaseModel):
    root: str | None = None
    resync: bool = False


class SyncResponse(BaseModel):
    added: int
    total: int


class AlbumsResponse(BaseModel):
    albums: List[dict]


class LibraryLoadRequest(BaseModel):
    album_id: str | None = None
    load_more: bool = False
    page_size: int | None = Field(None, ge=1)


class IndexRequest(BaseModel):
    confirm: bool = False


class IndexResponse(BaseModel):
    status: str
    pending: int
    total: int


class IndexStatusResponse(BaseModel):
    status: str
    current: int
    total: int
    events: List[dict] = Field(default_factory=list)


class SearchRequest(BaseModel):
    query: str = ""
    ai: bool | None = None
    confirm: bool = False


class ImageSearchRequest(BaseModel):
    data: str = Field(..., min_length=1)
    mime_type: str = Field(..., pattern="^image/")
    confirm: bool = False


class SearchResponse(BaseModel):
    status: str
    items: List[dict] = Field(default_factory=list)
    total: int = 0


class AiModeRequest(BaseModel):
    enabled: bool


STATE_LOCK = threading.RLock()
MANAGER: GalleryManager | None = None


def get_manager() -> GalleryManager:
    global MANAGER
    with STATE_LOCK:
        if MANAGER is None:
            MANAGER = build_manager(load_config())
        return MANAGER


@contextmanager
def _confirming(answer: bool) -> Iterator[GalleryManager]:
    """
    Hold the state lock and answer every confirmation prompt with ``answer``
    for the duration of one request.
    """
    with STATE_LOCK:
        manager = get_manager()
        previous = manager.confirm
        manager.confirm = lambda _message: answer
        try:
            yield manager
        finally:
            manager.confirm = previous


def _serialize(items: List[MediaItem]) -> List[dict]:
    return [item.to_dict() for item in items]


def _library() -> PhotosLibrary:
    cfg = load_config()
    return PhotosLibrary(cfg.get("library_path"))


def _pending_count(manager: GalleryManager) -> int:
    return len(manager.unindexed())


@app.get("/api/health")
def health() -> dict:
    return {"ok": True}


@app.get("/api/routes")
def list_routes() -> List[str]:
    return sorted(route.path for route in app.routes if isinstance(route, APIRoute))


@app.get("/api/gallery", response_model=GalleryResponse)
def get_gallery(filtered: bool = True) -> GalleryResponse:
    with STATE_LOCK:
        manager = get_manager()
        items = manager.view() if filtered else manager.items
        return GalleryResponse(
            items=_serialize(items),
            total=len(items),
            filtered=manager.filtered is not None,
            ai_enabled=manager.ai_enabled,
            unindexed=_pending_count(manager),
            has_saved_directory=manager.store.has_credential(),
            status=manager.progress_snapshot(),
        )


@app.get("/api/media/{item_id}")
def get_media(item_id: str) -> FileResponse:
    with STATE_LOCK:
        item = get_manager().get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Unknown media item")
    path = Path(item.url)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Media file is no longer available")
    return FileResponse(path, media_type=item.mime_type)


@app.post("/api/sync", response_model=SyncResponse)
def sync_directory(request: SyncRequest) -> SyncResponse:
    with STATE_LOCK:
        manager = get_manager()
        try:
            if request.resync:
                added = manager.resync_directory()
            elif request.root:
                added = manager.sync_directory(DirectorySource(request.root))
            else:
                raise HTTPException(status_code=400, detail="Provide a root directory or set resync")
        except PermissionDeniedError as exc:
            logger.warning("Directory sync aborted: %s", exc)
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        return SyncResponse(added=len(added), total=len(manager.items))


@app.get("/api/albums", response_model=AlbumsResponse)
def get_albums() -> AlbumsResponse:
    with STATE_LOCK:
        manager = get_manager()
        try:
            albums = manager.load_albums(_library())
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except sqlite3.Error as exc:
            logger.error("Failed to load albums: %s", exc)
            raise HTTPException(status_code=502, detail=f"Failed to access photo library: {exc}") from exc
        return AlbumsResponse(albums=[album.to_dict() for album in albums])


@app.post("/api/albums/load", response_model=SyncResponse)
def load_library_page(request: LibraryLoadRequest) -> SyncResponse:
    cfg = load_config()
    page_size = request.page_size or int(cfg.get("page_size", 1000))
    with STATE_LOCK:
        manager = get_manager()
        try:
            added = manager.sync_library(
                PhotosLibrary(cfg.get("library_path")),
                request.album_id,
                load_more=request.load_more,
                page_size=page_size,
            )
        except FileNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except sqlite3.Error as exc:
            logger.error("Library sync failed: %s", exc)
            raise HTTPException(status_code=502, detail=f"Failed to access photo library: {exc}") from exc
        return SyncResponse(added=len(added), total=len(manager.items))


@app.post("/api/index", response_model=IndexResponse)
def index_gallery(request: IndexRequest) -> IndexResponse:
    with _confirming(request.confirm) as manager:
        pending = _pending_count(manager)
        try:
            updated = manager.ensure_indexed()
        except RuntimeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if updated is None:
            return IndexResponse(status="confirmation_required", pending=pending, total=len(manager.items))
        status = "up_to_date" if pending == 0 else "indexed"
        return IndexResponse(status=status, pending=_pending_count(manager), total=len(updated))


@app.get("/api/index/status", response_model=IndexStatusResponse)
def index_status(limit: int = 20) -> IndexStatusResponse:
    # Read without STATE_LOCK: /api/index holds it for the whole run, and the
    # counters are each replaced by a single assignment.
    manager = MANAGER if MANAGER is not None else get_manager()
    snapshot = manager.progress_snapshot()
    cfg = load_config()
    events = read_events(index_events_path(cfg.get("storage_dir", ".visionary")), limit=limit)
    return IndexStatusResponse(
        status=str(snapshot["status"]),
        current=int(snapshot["current"]),
        total=int(snapshot["total"]),
        events=[
            {
                "event": event.event,
                "processed": event.processed,
                "total": event.total,
                "item_id": event.item_id,
                "timestamp": event.timestamp,
            }
            for event in events
        ],
    )


@app.post("/api/search", response_model=SearchResponse)
def search_text(request: SearchRequest) -> SearchResponse:
    with _confirming(request.confirm) as manager:
        try:
            results = manager.search_by_text(request.query, request.ai)
        except RuntimeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if results is None:
            return SearchResponse(status="confirmation_required", total=_pending_count(manager))
        return SearchResponse(status="ok", items=_serialize(results), total=len(results))


@app.post("/api/search/image", response_model=SearchResponse)
def search_image(request: ImageSearchRequest) -> SearchResponse:
    try:
        data = base64.b64decode(request.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Image data must be base64 encoded") from exc
    with _confirming(request.confirm) as manager:
        try:
            results = manager.search_by_image(data, request.mime_type)
        except RuntimeError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if results is None:
            return SearchResponse(status="confirmation_required", total=_pending_count(manager))
        return SearchResponse(status="ok", items=_serialize(results), total=len(results))


@app.delete("/api/search", response_model=SearchResponse)
def clear_search() -> SearchResponse:
    with STATE_LOCK:
        items = get_manager().clear_filter()
    return SearchResponse(status="ok", items=_serialize(items), total=len(items))


@app.post("/api/ai-mode")
def set_ai_mode(request: AiModeRequest) -> dict:
    with STATE_LOCK:
        enabled = get_manager().set_ai_mode(request.enabled)
    return {"ai_enabled": enabled}


__all__ = ["app", "get_manager"]

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

UNANALYZED = "Unanalyzed"
ANALYSIS_FAILED = "Analysis failed"


class MediaKind(str, Enum):
    """
    Kinds of media shown in the gallery.
    """

    IMAGE = "image"
    VIDEO = "video"
    ANIMATED = "animated-image"

    @classmethod
    def from_mime(cls, mime_type: str | None) -> "MediaKind":
        mime = (mime_type or "").lower()
        if "gif" in mime:
            return cls.ANIMATED
        if mime.startswith("video/"):
            return cls.VIDEO
        return cls.IMAGE


class GalleryStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    INDEXING = "indexing"
    SEARCHING = "searching"


def new_item_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


def _str_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(entry) for entry in value if entry is not None]


@dataclass
class MediaMetadata:
    """
    AI-generated description of a single media item.

    Items start with the ``Unanalyzed`` sentinel and keep it until an analysis
    succeeds.
    """

    description: str = UNANALYZED
    tags: List[str] = field(default_factory=list)
    dominant_colors: List[str] = field(default_factory=list)
    objects: List[str] = field(default_factory=list)
    mood: str = "unknown"

    @classmethod
    def unanalyzed(cls) -> "MediaMetadata":
        return cls()

    @classmethod
    def failed(cls) -> "MediaMetadata":
        return cls(description=ANALYSIS_FAILED, tags=["error"], mood="error")

    @property
    def is_unanalyzed(self) -> bool:
        return self.description == UNANALYZED

    @property
    def is_failure(self) -> bool:
        return self.description == ANALYSIS_FAILED

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "tags": list(self.tags),
            "dominant_colors": list(self.dominant_colors),
            "objects": list(self.objects),
            "mood": self.mood,
        }

    def to_wire(self) -> dict:
        return {
            "description": self.description,
            "tags": list(self.tags),
            "dominantColors": list(self.dominant_colors),
            "objects": list(self.objects),
            "mood": self.mood,
        }

    @classmethod
    def from_dict(cls, payload: Optional[dict]) -> "MediaMetadata":
        if not isinstance(payload, dict):
            return cls.unanalyzed()
        colors = payload.get("dominant_colors", payload.get("dominantColors"))
        return cls(
            description=str(payload.get("description") or UNANALYZED),
            tags=_str_list(payload.get("tags")),
            dominant_colors=_str_list(colors),
            objects=_str_list(payload.get("objects")),
            mood=str(payload.get("mood") or "unknown"),
        )


@dataclass
class MediaItem:
    """
    One photo or video tracked by the gallery.
    """

    id: str
    url: str
    kind: MediaKind
    name: str
    timestamp: int = field(default_factory=_now_ms)
    metadata: MediaMetadata = field(default_factory=MediaMetadata.unanalyzed)
    mime_type: Optional[str] = None
    source_id: Optional[str] = None

    @property
    def is_unanalyzed(self) -> bool:
        return self.metadata.is_unanalyzed

    def analysis_mime(self) -> str:
        if self.mime_type:
            return self.mime_type
        return "video/mp4" if self.kind == MediaKind.VIDEO else "image/jpeg"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "type": self.kind.value,
            "name": self.name,
            "timestamp": int(self.timestamp),
            "metadata": self.metadata.to_dict(),
            "mime_type": self.mime_type,
            "source_id": self.source_id,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "MediaItem":
        raw_kind = payload.get("type")
        if raw_kind == "gif":
            kind = MediaKind.ANIMATED
        else:
            try:
                kind = MediaKind(raw_kind)
            except ValueError:
                kind = MediaKind.IMAGE
        return cls(
            id=str(payload.get("id") or new_item_id()),
            url=str(payload.get("url", "")),
            kind=kind,
            name=str(payload.get("name", "")),
            timestamp=int(payload.get("timestamp") or _now_ms()),
            metadata=MediaMetadata.from_dict(payload.get("metadata")),
            mime_type=payload.get("mime_type"),
            source_id=payload.get("source_id"),
        )


@dataclass
class Album:
    """
    Album listed by the native photo library. Read-only after load.
    """

    id: str
    name: str
    count: int = 0
    thumbnail_url: Optional[str] = None
    thumbnail_kind: Optional[MediaKind] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "count": int(self.count),
            "thumbnail_url": self.thumbnail_url,
            "thumbnail_kind": self.thumbnail_kind.value if self.thumbnail_kind else None,
        }


@dataclass
class CandidateMedia:
    """
    Source-neutral descriptor of a file that may become a MediaItem.
    """

    name: str
    path: Path
    mime_type: str
    created: Optional[datetime] = None
    source_id: Optional[str] = None

    @property
    def kind(self) -> MediaKind:
        return MediaKind.from_mime(self.mime_type)

    def timestamp_ms(self) -> int:
        if self.created is None:
            return _now_ms()
        return int(self.created.timestamp() * 1000)

    def to_item(self) -> MediaItem:
        return MediaItem(
            id=new_item_id(),
            url=str(self.path),
            kind=self.kind,
            name=self.name,
            timestamp=self.timestamp_ms(),
            metadata=MediaMetadata.unanalyzed(),
            mime_type=self.mime_type,
            source_id=self.source_id,
        )

from __future__ import annotations

import logging
import mimetypes
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import exifread

from visionary.state.models import CandidateMedia
from visionary.utils import safe_datetime_parse

logger = logging.getLogger(__name__)

# Types the platform table is known to miss or map inconsistently.
EXTRA_MIME_TYPES: Dict[str, str] = {
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".dng": "image/x-adobe-dng",
    ".m4v": "video/x-m4v",
    ".mkv": "video/x-matroska",
    ".3gp": "video/3gpp",
}


class PermissionDeniedError(PermissionError):
    """Raised when the gallery directory is missing or no longer readable."""


def classify_mime(name: str) -> Optional[str]:
    suffix = Path(name).suffix.lower()
    if suffix in EXTRA_MIME_TYPES:
        return EXTRA_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(name)
    return guessed


def is_media_mime(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type.startswith("image/") or mime_type.startswith("video/") or "gif" in mime_type


def _read_created(path: Path) -> Optional[datetime]:
    try:
        with path.open("rb") as fh:
            tags = exifread.process_file(fh, details=False)
    except Exception:
        tags = {}
    stamp = tags.get("EXIF DateTimeOriginal") or tags.get("Image DateTime")
    if stamp:
        parsed = safe_datetime_parse(str(stamp))
        if parsed:
            return parsed
    try:
        return datetime.fromtimestamp(path.stat().st_mtime)
    except OSError:
        return None


def _normalize_root(root: str | Path) -> Path:
    root_path = Path(root).expanduser()
    if not root_path.is_absolute():
        root_path = (Path.cwd() / root_path).resolve()
    return root_path


def walk_media(root: str | Path) -> List[CandidateMedia]:
    """
    Return every qualifying media file under ``root``.

    Traversal uses an explicit stack so deep trees never hit the recursion
    limit. Hidden entries and symlinked directories are skipped; unreadable
    subdirectories are logged and skipped.
    """
    root_path = _normalize_root(root)
    collected: List[CandidateMedia] = []
    stack: List[Path] = [root_path]

    while stack:
        current = stack.pop()
        try:
            entries = sorted(os.scandir(current), key=lambda entry: entry.name)
        except OSError as exc:
            logger.warning("Skipping unreadable directory %s: %s", current, exc)
            continue

        subdirs: List[Path] = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir(follow_symlinks=False):
                subdirs.append(Path(entry.path))
                continue
            if not entry.is_file():
                continue
            mime_type = classify_mime(entry.name)
            if not is_media_mime(mime_type):
                continue
            path = Path(entry.path)
            collected.append(
                CandidateMedia(
                    name=entry.name,
                    path=path,
                    mime_type=mime_type,
                    created=_read_created(path),
                )
            )
        # reversed so the stack pops subdirectories in name order
        stack.extend(reversed(subdirs))

    logger.debug("Found %d media files under %s", len(collected), root_path)
    return collected


class DirectorySource:
    """
    Media source backed by a user-granted local directory.
    """

    def __init__(self, root: str | Path):
        self.root = _normalize_root(root)

    def check_permission(self) -> None:
        if not self.root.exists():
            raise PermissionDeniedError(f"Gallery directory not found: {self.root}")
        if not self.root.is_dir():
            raise PermissionDeniedError(f"Gallery path is not a directory: {self.root}")
        if not os.access(self.root, os.R_OK | os.X_OK):
            raise PermissionDeniedError(f"Read access denied for {self.root}")

    def candidates(self) -> List[CandidateMedia]:
        self.check_permission()
        return walk_media(self.root)


__all__ = [
    "DirectorySource",
    "PermissionDeniedError",
    "classify_mime",
    "is_media_mime",
    "walk_media",
]

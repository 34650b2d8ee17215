from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Iterable, List, Optional

from visionary.state.models import MediaItem
from visionary.utils import ensure_dir, write_json_atomic

logger = logging.getLogger(__name__)

ITEMS_KEY = "visionary_gallery_data"
CREDENTIAL_KEY = "gallery_handle"


class LocalStore:
    """Key-value persistence for the gallery under ``root``.

    Write failures are logged and swallowed; the in-memory collection stays
    authoritative for the session.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()

    def path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def _write(self, key: str, payload) -> bool:
        try:
            ensure_dir(self.root)
            write_json_atomic(self.path(key), payload)
        except OSError as exc:
            logger.warning("Failed to save %s to %s: %s", key, self.root, exc)
            return False
        return True

    def _read(self, key: str):
        path = self.path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load %s from %s: %s", key, path, exc)
            return None

    def save(self, items: Iterable[MediaItem]) -> bool:
        return self._write(ITEMS_KEY, [item.to_dict() for item in items])

    def load(self) -> Optional[List[MediaItem]]:
        data = self._read(ITEMS_KEY)
        if not isinstance(data, list):
            return None
        items: List[MediaItem] = []
        for entry in data:
            if isinstance(entry, dict):
                items.append(MediaItem.from_dict(entry))
        return items

    def save_credential(self, root: str | Path) -> bool:
        payload = {"path": str(Path(root).expanduser().resolve()), "granted_at": time.time()}
        return self._write(CREDENTIAL_KEY, payload)

    def load_credential(self) -> Optional[Path]:
        data = self._read(CREDENTIAL_KEY)
        if not isinstance(data, dict) or not data.get("path"):
            return None
        return Path(str(data["path"]))

    def has_credential(self) -> bool:
        return self.load_credential() is not None


__all__ = ["LocalStore", "ITEMS_KEY", "CREDENTIAL_KEY"]

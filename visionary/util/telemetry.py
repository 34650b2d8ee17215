from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

INDEX_EVENTS_FILE = "index_events.jsonl"


@dataclass(slots=True)
class IndexEvent:
    """
    Structured event describing indexing progress.
    """

    stage: str
    event: str
    processed: int = 0
    total: int = 0
    item_id: str | None = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=lambda: time.time())
    details: dict[str, object] | None = None

    def to_json(self) -> str:
        payload = asdict(self)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "IndexEvent":
        data = json.loads(raw)
        return cls(
            stage=str(data.get("stage", "")),
            event=str(data.get("event", "")),
            processed=int(data.get("processed", 0)),
            total=int(data.get("total", 0)),
            item_id=data.get("item_id"),
            duration_ms=float(data.get("duration_ms", 0.0)),
            timestamp=float(data.get("timestamp", time.time())),
            details=data.get("details") or None,
        )


def index_events_path(storage_dir: Path | str) -> Path:
    """
    Return the JSONL event file inside the gallery storage directory.
    """
    return Path(storage_dir).expanduser() / INDEX_EVENTS_FILE


def append_event(path: Path, event: IndexEvent) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(event.to_json())
        handle.write("\n")


def read_events(path: Path, limit: Optional[int] = None) -> List[IndexEvent]:
    """
    Read events from disk, optionally truncating to the most recent N.
    Malformed lines are skipped.
    """
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        lines = handle.readlines()
    if limit is not None and limit >= 0:
        lines = lines[-limit:] if limit else []
    events: List[IndexEvent] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            events.append(IndexEvent.from_json(line))
        except (ValueError, TypeError):
            continue
    return events


__all__ = ["IndexEvent", "index_events_path", "append_event", "read_events", "INDEX_EVENTS_FILE"]

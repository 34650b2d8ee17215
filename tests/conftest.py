import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

# Ensure the project root is on sys.path so `import visionary` works without installation.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from visionary.core.gallery_state import GalleryManager  # noqa: E402
from visionary.state.models import CandidateMedia, MediaItem, MediaMetadata  # noqa: E402
from visionary.store import LocalStore  # noqa: E402


class FakeAnalyzer:
    """
    Stands in for the remote client. Item bytes are the item name, so
    ``fail`` lists the names whose analysis should fail.
    """

    def __init__(self, fail: Sequence[str] = (), ranking: Optional[Callable[[str, List[MediaItem]], List[str]]] = None):
        self.fail = set(fail)
        self.ranking = ranking
        self.analyze_calls: List[tuple] = []
        self.rank_calls: List[tuple] = []

    def analyze(self, data: bytes, mime_type: str) -> MediaMetadata:
        self.analyze_calls.append((data, mime_type))
        text = data.decode("utf-8", errors="ignore")
        if text in self.fail:
            return MediaMetadata.failed()
        return MediaMetadata(
            description=f"a picture of {text}",
            tags=[text.split(".")[0]],
            dominant_colors=["blue"],
            objects=["thing"],
            mood="calm",
        )

    def rank(self, query: str, items: Sequence[MediaItem]) -> List[str]:
        self.rank_calls.append((query, [item.id for item in items]))
        if self.ranking is not None:
            return self.ranking(query, list(items))
        return [item.id for item in items if query.lower() in item.metadata.description.lower()]


def candidate(name: str, mime_type: str = "image/jpeg", source_id: str | None = None) -> CandidateMedia:
    return CandidateMedia(name=name, path=Path("/gallery") / name, mime_type=mime_type, source_id=source_id)


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "storage")


@pytest.fixture
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def make_manager(store: LocalStore, analyzer: FakeAnalyzer):
    def _make(confirm: bool = True, **kwargs) -> GalleryManager:
        kwargs.setdefault("read_bytes", lambda item: item.name.encode("utf-8"))
        return GalleryManager(
            store,
            kwargs.pop("analyzer", analyzer),
            confirm=lambda _message: confirm,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_candidate():
    return candidate


@pytest.fixture
def analyzer_factory():
    return FakeAnalyzer


def write_clip(path: Path, frames: int = 6, size=(64, 48)) -> Path:
    """Write a small Motion-JPEG AVI; each frame is a flat colour."""
    import cv2
    import numpy as np

    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 5.0, size)
    try:
        for index in range(frames):
            frame = np.full((size[1], size[0], 3), (index * 40 % 256, 80, 200), dtype=np.uint8)
            writer.write(frame)
    finally:
        writer.release()
    return path


@pytest.fixture
def make_clip():
    return write_clip

from __future__ import annotations

import base64
import json
import logging
import mimetypes
import tempfile
from io import BytesIO
from pathlib import Path
from typing import List, Sequence

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ValidationError

from visionary.state.models import MediaItem, MediaMetadata

logger = logging.getLogger(__name__)

ANALYZE_PROMPT = """Analyze this media for a private digital archive.
Provide an accurate and exhaustive description of the content: subjects, clothing,
environment, actions and any visible text. Tags must be short searchable keywords.
Respond ONLY with JSON matching the provided schema."""

RANK_PROMPT = """System: Semantic Search Engine. Query: "{query}".
Compare this query against the following media descriptions.
Return JSON of the form {{"ids": [...]}} listing the matching item ids sorted by
relevance (most relevant first). Omit items that do not match."""

METADATA_SCHEMA = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "dominantColors": {"type": "array", "items": {"type": "string"}},
        "objects": {"type": "array", "items": {"type": "string"}},
        "mood": {"type": "string"},
    },
    "required": ["description", "tags", "dominantColors", "objects", "mood"],
    "additionalProperties": False,
}

RANK_SCHEMA = {
    "type": "object",
    "properties": {"ids": {"type": "array", "items": {"type": "string"}}},
    "required": ["ids"],
    "additionalProperties": False,
}


class AnalysisPayload(BaseModel):
    description: str
    tags: List[str]
    dominantColors: List[str]
    objects: List[str]
    mood: str

    def to_metadata(self) -> MediaMetadata:
        return MediaMetadata(
            description=self.description.strip(),
            tags=[tag.strip() for tag in self.tags if tag.strip()],
            dominant_colors=list(self.dominantColors),
            objects=list(self.objects),
            mood=self.mood.strip() or "unknown",
        )


def _encode_image(data: bytes, mime_type: str, max_edge: int) -> tuple[str, str]:
    """
    Return (mime, base64) for upload: first frame, RGB JPEG, bounded edge.

    Falls back to the raw bytes when Pillow cannot decode the payload.
    """
    try:
        with Image.open(BytesIO(data)) as image:
            image.seek(0)
            frame = image.convert("RGB")
            frame.thumbnail((max_edge, max_edge))
            buffer = BytesIO()
            frame.save(buffer, format="JPEG", quality=90)
        return "image/jpeg", base64.b64encode(buffer.getvalue()).decode("utf-8")
    except (UnidentifiedImageError, OSError, ValueError):
        logger.debug("Pillow could not decode %s payload; sending raw bytes", mime_type)
        return mime_type, base64.b64encode(data).decode("utf-8")


def extract_video_frame(data: bytes, mime_type: str) -> bytes | None:
    """
    Return a JPEG of the frame halfway through the clip, or the first frame
    when seeking fails. ``None`` means OpenCV could not decode the payload.

    OpenCV only opens files, so the bytes are staged in a temporary directory.
    """
    import cv2

    suffix = mimetypes.guess_extension(mime_type or "") or ".mp4"
    with tempfile.TemporaryDirectory(prefix="visionary-frame-") as tmp:
        clip = Path(tmp) / f"clip{suffix}"
        clip.write_bytes(data)
        cap = cv2.VideoCapture(str(clip), cv2.CAP_FFMPEG)
        try:
            if not cap.isOpened():
                return None
            frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
            if frame_count > 1:
                cap.set(cv2.CAP_PROP_POS_FRAMES, frame_count // 2)
            ok, frame = cap.read()
            if not ok and frame_count > 1:
                cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ok, frame = cap.read()
        finally:
            cap.release()
    if not ok or frame is None:
        return None
    encoded, buffer = cv2.imencode(".jpg", frame)
    if not encoded:
        return None
    return buffer.tobytes()


def parse_metadata(text: str | None) -> MediaMetadata:
    if not text:
        raise ValueError("Empty response from analysis model")
    payload = AnalysisPayload.model_validate_json(text)
    metadata = payload.to_metadata()
    if not metadata.description:
        raise ValueError("Analysis response has an empty description")
    return metadata


def parse_ranked_ids(text: str | None) -> List[str]:
    """
    Accept either a bare JSON array or ``{"ids": [...]}``. Non-string entries
    and repeats are dropped.
    """
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("ids")
    if not isinstance(data, list):
        raise ValueError("Ranking response is not a list of ids")
    ids: List[str] = []
    seen = set()
    for entry in data:
        if not isinstance(entry, str) or entry in seen:
            continue
        seen.add(entry)
        ids.append(entry)
    return ids


def compose_similarity_query(metadata: MediaMetadata) -> str:
    return f"Visual profile: {metadata.description}. Keywords: {', '.join(metadata.tags)}"


class VisionClient:
    """
    Remote analysis over the OpenAI API.

    Both calls report failure by value: ``analyze`` returns
    ``MediaMetadata.failed()`` and ``rank`` returns an empty list.
    """

    def __init__(self, model: str = "gpt-4o-mini", api_key: str | None = None, client=None, max_edge: int = 1024):
        self.model = model
        self.max_edge = max_edge
        if client is None:
            if not api_key:
                raise RuntimeError("OpenAI API key is missing. Set OPENAI_API_KEY or api_key_env in config.yaml.")
            from openai import OpenAI

            client = OpenAI(api_key=api_key)
        self._client = client

    def _complete(self, content: list, schema: dict, schema_name: str) -> str | None:
        response = self._client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema, "strict": True},
            },
            temperature=0.2,
        )
        return response.choices[0].message.content

    def analyze(self, data: bytes, mime_type: str) -> MediaMetadata:
        mime_type = mime_type or ""
        if not mime_type.startswith(("image/", "video/")):
            logger.warning("Cannot analyze %s media with the vision endpoint", mime_type or "unknown")
            return MediaMetadata.failed()
        try:
            if mime_type.startswith("video/"):
                frame = extract_video_frame(data, mime_type)
                if frame is None:
                    logger.warning("No decodable frame in %s payload", mime_type)
                    return MediaMetadata.failed()
                data, mime_type = frame, "image/jpeg"
            upload_mime, encoded = _encode_image(data, mime_type, self.max_edge)
            content = [
                {"type": "text", "text": ANALYZE_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{upload_mime};base64,{encoded}"}},
            ]
            text = self._complete(content, METADATA_SCHEMA, "media_metadata")
            return parse_metadata(text)
        except (ValidationError, ValueError) as exc:
            logger.warning("Analysis response rejected: %s", exc)
        except Exception as exc:
            logger.warning("Analysis request failed: %s", exc)
        return MediaMetadata.failed()

    def rank(self, query: str, items: Sequence[MediaItem]) -> List[str]:
        context = [
            {"id": item.id, "description": item.metadata.description, "tags": list(item.metadata.tags)}
            for item in items
        ]
        if not context:
            return []
        content = [
            {"type": "text", "text": RANK_PROMPT.format(query=query)},
            {"type": "text", "text": json.dumps(context, ensure_ascii=False)},
        ]
        try:
            text = self._complete(content, RANK_SCHEMA, "ranked_ids")
            return parse_ranked_ids(text)
        except ValueError as exc:
            logger.warning("Ranking response rejected: %s", exc)
        except Exception as exc:
            logger.warning("Ranking request failed: %s", exc)
        return []


__all__ = [
    "VisionClient",
    "AnalysisPayload",
    "parse_metadata",
    "parse_ranked_ids",
    "compose_similarity_query",
    "extract_video_frame",
]

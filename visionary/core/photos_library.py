"""
Read albums and paged asset listings from an Apple Photos library.

The library database is opened read-only; files are never opened here, so a
page of assets costs one query regardless of file sizes.
"""
from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from visionary.state.models import Album, CandidateMedia, MediaKind

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY = Path.home() / "Pictures" / "Photos Library.photoslibrary"

UTI_MIME_TYPES: Dict[str, str] = {
    "public.jpeg": "image/jpeg",
    "public.png": "image/png",
    "public.heic": "image/heic",
    "public.heif": "image/heif",
    "public.tiff": "image/tiff",
    "com.compuserve.gif": "image/gif",
    "org.webmproject.webp": "image/webp",
    "com.apple.quicktime-movie": "video/quicktime",
    "public.mpeg-4": "video/mp4",
    "com.apple.m4v-video": "video/x-m4v",
}

# ZASSET.ZKIND
_KIND_VIDEO = 1
# ZGENERICALBUM.ZKIND for user-created albums
_USER_ALBUM_KIND = 2

# seconds between 1970-01-01 and 2001-01-01
_APPLE_EPOCH_OFFSET = 978307200

_JUNCTION_RE = re.compile(r"^Z_(\d+)ASSETS$")

# Albums without a UUID are keyed by their primary key, in listing and filtering alike.
_ALBUM_KEY = "COALESCE(G.ZUUID, CAST(G.Z_PK AS TEXT))"

_ASSET_COLUMNS = """
    A.Z_PK,
    A.ZDIRECTORY,
    A.ZFILENAME,
    A.ZUNIFORMTYPEIDENTIFIER,
    A.ZDATECREATED,
    A.ZKIND,
    A.ZCLOUDBATCHPUBLISHDATE
"""


@dataclass
class LibraryAsset:
    """
    One row of a media page: the path-like identifier, mime type and creation
    date of an asset.
    """

    identifier: str
    mime_type: str
    creation_date: Optional[datetime]

    @property
    def name(self) -> str:
        return self.identifier.rstrip("/").split("/")[-1] or "Unknown"

    def to_candidate(self) -> CandidateMedia:
        return CandidateMedia(
            name=self.name,
            path=Path(self.identifier),
            mime_type=self.mime_type,
            created=self.creation_date,
            source_id=self.identifier,
        )

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "mimeType": self.mime_type,
            "creationDate": self.creation_date.isoformat() if self.creation_date else None,
        }


def list_libraries() -> List[Path]:
    """Find Photos libraries on this machine."""
    pictures = Path.home() / "Pictures"
    if not pictures.is_dir():
        return []
    return sorted(pictures.glob("*.photoslibrary"))


def apple_epoch_to_datetime(ts: float | None) -> Optional[datetime]:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts + _APPLE_EPOCH_OFFSET, tz=timezone.utc)
    except (ValueError, OSError, OverflowError):
        return None


def mime_for_asset(uti: Optional[str], kind: Optional[int]) -> str:
    if uti and uti in UTI_MIME_TYPES:
        return UTI_MIME_TYPES[uti]
    return "video/quicktime" if kind == _KIND_VIDEO else "image/jpeg"


def _detect_album_junction(conn: sqlite3.Connection) -> Optional[Tuple[str, str, str]]:
    """Find the album/asset junction table; its number varies by Photos version."""
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    for (table,) in rows:
        match = _JUNCTION_RE.match(table)
        if not match:
            continue
        album_col = f"Z_{match.group(1)}ALBUMS"
        columns = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
        if album_col not in columns:
            continue
        for column in sorted(columns):
            if column.startswith("Z_") and column.endswith("ASSETS") and not column.startswith("Z_FOK"):
                return table, album_col, column
    return None


class PhotosLibrary:
    """
    Native media-library source over ``<library>/database/Photos.sqlite``.
    """

    def __init__(self, library_path: str | Path | None = None):
        self.library = Path(library_path).expanduser() if library_path else DEFAULT_LIBRARY
        self.db_path = self.library / "database" / "Photos.sqlite"

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise FileNotFoundError(f"Photos database not found: {self.db_path}")
        return sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)

    def _asset_path(self, directory: str, filename: str, cloud_batch_date) -> Path:
        if directory.startswith("/"):
            return Path(directory) / filename
        if cloud_batch_date is not None:
            return self.library / "scopes" / "cloudsharing" / "data" / directory / filename
        return self.library / "originals" / directory / filename

    def _row_to_asset(self, row) -> Optional[LibraryAsset]:
        _pk, directory, filename, uti, date_created, kind, cloud_batch_date = row
        if not directory or not filename:
            return None
        path = self._asset_path(directory, filename, cloud_batch_date)
        return LibraryAsset(
            identifier=str(path),
            mime_type=mime_for_asset(uti, kind),
            creation_date=apple_epoch_to_datetime(date_created),
        )

    def get_albums(self) -> List[Album]:
        conn = self._connect()
        try:
            junction = _detect_album_junction(conn)
            rows = conn.execute(
                f"""
                SELECT G.Z_PK, {_ALBUM_KEY}, G.ZTITLE, G.ZCACHEDCOUNT, G.ZKEYASSET
                FROM ZGENERICALBUM AS G
                WHERE G.ZKIND = ?
                  AND G.ZTRASHEDSTATE = 0
                  AND G.ZTITLE IS NOT NULL
                ORDER BY G.ZTITLE
                """,
                (_USER_ALBUM_KIND,),
            ).fetchall()

            albums: List[Album] = []
            for album_pk, album_key, title, cached_count, key_asset in rows:
                count = cached_count
                if count is None and junction is not None:
                    table, album_col, _ = junction
                    count = conn.execute(
                        f"SELECT COUNT(*) FROM {table} WHERE {album_col} = ?", (album_pk,)
                    ).fetchone()[0]

                thumbnail: Optional[LibraryAsset] = None
                if key_asset is not None:
                    cover = conn.execute(
                        f"SELECT {_ASSET_COLUMNS} FROM ZASSET AS A WHERE A.Z_PK = ?", (key_asset,)
                    ).fetchone()
                    if cover:
                        thumbnail = self._row_to_asset(cover)

                albums.append(
                    Album(
                        id=album_key,
                        name=str(title),
                        count=int(count or 0),
                        thumbnail_url=thumbnail.identifier if thumbnail else None,
                        thumbnail_kind=MediaKind.from_mime(thumbnail.mime_type) if thumbnail else None,
                    )
                )
        finally:
            conn.close()
        logger.info("Loaded %d albums from %s", len(albums), self.library)
        return albums

    def get_medias(
        self,
        quantity: int,
        offset: int = 0,
        album_identifier: Optional[str] = None,
        sort: str = "creationDate",
    ) -> List[LibraryAsset]:
        """
        Return up to ``quantity`` assets starting at ``offset``, newest first.
        """
        if sort != "creationDate":
            raise ValueError(f"Unsupported sort order: {sort}")
        quantity = max(int(quantity), 0)
        offset = max(int(offset), 0)
        if quantity == 0:
            return []

        conn = self._connect()
        try:
            params: list = []
            join = ""
            if album_identifier:
                junction = _detect_album_junction(conn)
                if junction is None:
                    logger.warning("No album junction table in %s", self.db_path)
                    return []
                table, album_col, asset_col = junction
                join = (
                    f"JOIN {table} AS J ON J.{asset_col} = A.Z_PK "
                    f"JOIN ZGENERICALBUM AS G ON G.Z_PK = J.{album_col} "
                )
                params.append(album_identifier)
            query = (
                f"SELECT {_ASSET_COLUMNS} FROM ZASSET AS A {join}"
                "WHERE A.ZTRASHEDSTATE = 0 "
                "AND COALESCE(A.ZDIRECTORY, '') != '' AND COALESCE(A.ZFILENAME, '') != '' "
                + (f"AND {_ALBUM_KEY} = ? " if album_identifier else "")
                + "ORDER BY A.ZDATECREATED DESC, A.Z_PK DESC LIMIT ? OFFSET ?"
            )
            params.extend([quantity, offset])
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        assets: List[LibraryAsset] = []
        for row in rows:
            asset = self._row_to_asset(row)
            if asset is not None:
                assets.append(asset)
        logger.debug("Fetched %d assets (offset=%d, album=%s)", len(assets), offset, album_identifier)
        return assets


__all__ = [
    "LibraryAsset",
    "PhotosLibrary",
    "list_libraries",
    "apple_epoch_to_datetime",
    "mime_for_asset",
    "DEFAULT_LIBRARY",
]

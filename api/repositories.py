"""
Database-backed request and video stores.

Both stores accept column patches keyed either by column name or by the
domain attribute name (``owner_id``, ``storage_key``, ``original_video_id``,
...). Unknown keys are a programming error and raise ValueError before any
query runs. Driver errors are wrapped in PersistenceError.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import sqlalchemy as sa
from databases import Database

from api.database import requests, videos
from api.enums import RequestStatus
from api.interfaces import RequestStore, VideoStore
from api.models import ConversionRequest, VideoAsset

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A store operation failed in the database layer."""

    pass


class RecordNotFoundError(PersistenceError):
    """The requested row does not exist."""

    def __init__(self, table: str, record_id: int):
        super().__init__(f"{table} record {record_id} not found")
        self.table = table
        self.record_id = record_id


class StaleRecordError(PersistenceError):
    """A conditional update lost against a concurrent writer."""

    def __init__(self, record_id: int, expected_version: Optional[int]):
        super().__init__(f"request {record_id} is no longer at version {expected_version}")
        self.record_id = record_id
        self.expected_version = expected_version


_SHARED_ALIASES = {
    "owner_id": "user_id",
    "resolution_width": "resolution_x",
    "resolution_height": "resolution_y",
}

REQUEST_COLUMN_ALIASES = {
    **_SHARED_ALIASES,
    "original_video_id": "original_file_id",
    "converted_video_id": "converted_file_id",
}
REQUEST_CREATE_COLUMNS = frozenset(
    [
        "user_id",
        "video_name",
        "bitrate",
        "resolution_x",
        "resolution_y",
        "ratio_x",
        "ratio_y",
        "status",
        "details",
    ]
)
REQUEST_UPDATE_COLUMNS = frozenset(
    [
        "video_name",
        "bitrate",
        "resolution_x",
        "resolution_y",
        "ratio_x",
        "ratio_y",
        "status",
        "details",
        "original_file_id",
        "converted_file_id",
    ]
)

VIDEO_COLUMN_ALIASES = {
    **_SHARED_ALIASES,
    "size_bytes": "size",
    "storage_key": "service_id",
}
VIDEO_CREATE_COLUMNS = frozenset(
    ["user_id", "name", "size", "bitrate", "resolution_x", "resolution_y", "ratio_x", "ratio_y", "service_id"]
)
ZERO_DEFAULT_COLUMNS = ("bitrate", "resolution_x", "resolution_y", "ratio_x", "ratio_y")

# Ownership and the storage handle are fixed once a video is stored
VIDEO_UPDATE_COLUMNS = VIDEO_CREATE_COLUMNS - {"user_id", "service_id"}


def normalize_fields(
    fields: Mapping[str, Any],
    allowed: frozenset,
    aliases: Mapping[str, str],
) -> Dict[str, Any]:
    """Map aliases to column names and reject anything outside ``allowed``."""
    values: Dict[str, Any] = {}
    for key, value in fields.items():
        column = aliases.get(key, key)
        if column not in allowed:
            raise ValueError(f"Field '{key}' cannot be written")
        if isinstance(value, RequestStatus):
            value = value.value
        values[column] = value
    return values


def fill_zero_defaults(values: Dict[str, Any]) -> Dict[str, Any]:
    """Set omitted conversion parameters to 0; inserts through ``databases`` skip column defaults."""
    for column in ZERO_DEFAULT_COLUMNS:
        if values.get(column) is None:
            values[column] = 0
    return values


class DatabaseRequestStore(RequestStore):
    """RequestStore over the ``requests`` table."""

    def __init__(self, db: Database):
        self._db = db

    async def create(self, fields: Mapping[str, Any]) -> ConversionRequest:
        values = fill_zero_defaults(normalize_fields(fields, REQUEST_CREATE_COLUMNS, REQUEST_COLUMN_ALIASES))
        values.setdefault("status", RequestStatus.IN_REVIEW.value)
        values.setdefault("details", "")
        values["version"] = 1
        values["created_at"] = datetime.now(timezone.utc)

        try:
            request_id = await self._db.execute(requests.insert().values(**values))
        except Exception as e:
            raise PersistenceError(f"Failed to create request: {e}") from e

        logger.debug(f"Created request {request_id} for user {values.get('user_id')}")
        return await self.retrieve(request_id)

    async def retrieve(self, request_id: int) -> ConversionRequest:
        try:
            row = await self._db.fetch_one(requests.select().where(requests.c.id == request_id))
        except Exception as e:
            raise PersistenceError(f"Failed to retrieve request {request_id}: {e}") from e

        if row is None:
            raise RecordNotFoundError("requests", request_id)
        return ConversionRequest.from_mapping(dict(row._mapping))

    async def update(
        self,
        request_id: int,
        fields: Mapping[str, Any],
        expected_version: Optional[int] = None,
    ) -> ConversionRequest:
        values = normalize_fields(fields, REQUEST_UPDATE_COLUMNS, REQUEST_COLUMN_ALIASES)
        if not values:
            return await self.retrieve(request_id)

        query = requests.update().where(requests.c.id == request_id)
        if expected_version is not None:
            query = query.where(requests.c.version == expected_version)
        query = query.values(
            **values,
            version=requests.c.version + 1,
            updated_at=datetime.now(timezone.utc),
        ).returning(requests.c.id)

        try:
            row = await self._db.fetch_one(query)
        except Exception as e:
            raise PersistenceError(f"Failed to update request {request_id}: {e}") from e

        if row is None:
            # Raises RecordNotFoundError when the row is gone altogether
            await self.retrieve(request_id)
            raise StaleRecordError(request_id, expected_version)

        return await self.retrieve(request_id)

    async def list_for_owner(self, owner_id: int, limit: int = 50, offset: int = 0) -> List[ConversionRequest]:
        """Most recent requests of one owner, newest first."""
        query = (
            requests.select()
            .where(requests.c.user_id == owner_id)
            .order_by(sa.desc(requests.c.id))
            .limit(limit)
            .offset(offset)
        )
        try:
            rows = await self._db.fetch_all(query)
        except Exception as e:
            raise PersistenceError(f"Failed to list requests for user {owner_id}: {e}") from e
        return [ConversionRequest.from_mapping(dict(row._mapping)) for row in rows]


class DatabaseVideoStore(VideoStore):
    """VideoStore over the ``videos`` table."""

    def __init__(self, db: Database):
        self._db = db

    async def create(self, fields: Mapping[str, Any]) -> VideoAsset:
        values = normalize_fields(fields, VIDEO_CREATE_COLUMNS, VIDEO_COLUMN_ALIASES)
        for column in ("user_id", "name", "service_id"):
            if values.get(column) is None:
                raise ValueError(f"Field '{column}' is required to create a video")
        fill_zero_defaults(values)
        if values.get("size") is None:
            values["size"] = 0
        values["created_at"] = datetime.now(timezone.utc)

        try:
            video_id = await self._db.execute(videos.insert().values(**values))
        except Exception as e:
            raise PersistenceError(f"Failed to create video: {e}") from e

        return await self.retrieve(video_id)

    async def retrieve(self, video_id: int) -> VideoAsset:
        try:
            row = await self._db.fetch_one(videos.select().where(videos.c.id == video_id))
        except Exception as e:
            raise PersistenceError(f"Failed to retrieve video {video_id}: {e}") from e

        if row is None:
            raise RecordNotFoundError("videos", video_id)
        return VideoAsset.from_mapping(dict(row._mapping))

    async def update(self, video_id: int, fields: Mapping[str, Any]) -> VideoAsset:
        values = normalize_fields(fields, VIDEO_UPDATE_COLUMNS, VIDEO_COLUMN_ALIASES)
        if not values:
            return await self.retrieve(video_id)

        query = videos.update().where(videos.c.id == video_id).values(**values).returning(videos.c.id)
        try:
            row = await self._db.fetch_one(query)
        except Exception as e:
            raise PersistenceError(f"Failed to update video {video_id}: {e}") from e

        if row is None:
            raise RecordNotFoundError("videos", video_id)
        return await self.retrieve(video_id)

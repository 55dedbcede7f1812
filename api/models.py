"""
Domain records for conversion requests and video assets.

Stores return these typed rows instead of raw mappings, so callers never have
to check what kind of record came back. Column names in the database follow
the worker wire format (``user_id``, ``size``, ``service_id``,
``original_file_id``), the attributes here use the domain names.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Mapping, Optional

from api.enums import RequestStatus

logger = logging.getLogger(__name__)


def _ensure_utc_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a naive or aware datetime to UTC (None passes through)."""
    if dt is None:
        return None
    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt)
    if dt.tzinfo is None:
        # SQLite hands back naive values; they were written as UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class ConversionParams:
    """Desired output parameters. A zero pair means "keep the source value"."""

    bitrate: int = 0
    resolution_width: int = 0
    resolution_height: int = 0
    ratio_x: int = 0
    ratio_y: int = 0


@dataclass
class FileBlob:
    """An uploaded file: a readable binary stream plus its declared name and size."""

    name: str
    size: int
    stream: BinaryIO
    content_type: Optional[str] = None


@dataclass
class VideoAsset:
    """Metadata and storage handle for an original or converted video file."""

    id: int
    owner_id: int
    name: str
    storage_key: str
    size_bytes: int = 0
    bitrate: int = 0
    resolution_width: int = 0
    resolution_height: int = 0
    ratio_x: int = 0
    ratio_y: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "VideoAsset":
        """Create a VideoAsset from a ``videos`` row mapping."""
        return cls(
            id=row["id"],
            owner_id=row["user_id"],
            name=row["name"],
            storage_key=row["service_id"],
            size_bytes=row.get("size") or 0,
            bitrate=row.get("bitrate") or 0,
            resolution_width=row.get("resolution_x") or 0,
            resolution_height=row.get("resolution_y") or 0,
            ratio_x=row.get("ratio_x") or 0,
            ratio_y=row.get("ratio_y") or 0,
            created_at=_ensure_utc_datetime(row.get("created_at")),
        )


@dataclass
class ConversionRequest:
    """
    Durable record of one transcode job.

    ``status`` starts at IN_REVIEW and moves to COMPLETED or FAILED. A FAILED
    request always carries a non-empty ``details``. ``version`` increases with
    every update and is used for conditional terminal transitions.
    """

    id: int
    owner_id: int
    video_name: str
    status: RequestStatus = RequestStatus.IN_REVIEW
    details: str = ""
    bitrate: int = 0
    resolution_width: int = 0
    resolution_height: int = 0
    ratio_x: int = 0
    ratio_y: int = 0
    original_video_id: Optional[int] = None
    converted_video_id: Optional[int] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Populated by the submitter once the original upload is persisted
    original_video: Optional[VideoAsset] = field(default=None, repr=False, compare=False)

    @property
    def params(self) -> ConversionParams:
        return ConversionParams(
            bitrate=self.bitrate,
            resolution_width=self.resolution_width,
            resolution_height=self.resolution_height,
            ratio_x=self.ratio_x,
            ratio_y=self.ratio_y,
        )

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "ConversionRequest":
        """Create a ConversionRequest from a ``requests`` row mapping."""
        return cls(
            id=row["id"],
            owner_id=row["user_id"],
            video_name=row["video_name"],
            status=RequestStatus(row["status"]),
            details=row.get("details") or "",
            bitrate=row.get("bitrate") or 0,
            resolution_width=row.get("resolution_x") or 0,
            resolution_height=row.get("resolution_y") or 0,
            ratio_x=row.get("ratio_x") or 0,
            ratio_y=row.get("ratio_y") or 0,
            original_video_id=row.get("original_file_id"),
            converted_video_id=row.get("converted_file_id"),
            version=row.get("version") or 1,
            created_at=_ensure_utc_datetime(row.get("created_at")),
            updated_at=_ensure_utc_datetime(row.get("updated_at")),
        )

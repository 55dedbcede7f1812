"""Pydantic schemas for the messages exchanged with conversion workers."""

import json
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.models import ConversionRequest, VideoAsset

# Wire field name -> videos column name patchable from a worker descriptor
_DESCRIPTOR_COLUMNS = {
    "name": "name",
    "size": "size",
    "bitrate": "bitrate",
    "resolution_x": "resolution_x",
    "resolution_y": "resolution_y",
    "ratio_x": "ratio_x",
    "ratio_y": "ratio_y",
    "service_id": "service_id",
}


def _pair(first: int, second: int) -> Optional[str]:
    """Render "A:B", or None when both parts are zero."""
    if first == 0 and second == 0:
        return None
    return f"{first}:{second}"


class ConversionJobMessage(BaseModel):
    """Work item published for the conversion workers."""

    request_id: int = Field(..., gt=0)
    user_id: int = Field(..., description="Owner of the request; converted assets inherit it")
    bitrate: int = Field(default=0, ge=0)
    resolution: Optional[str] = Field(default=None, description='Target size as "W:H"')
    ratio: Optional[str] = Field(default=None, description='Target aspect ratio as "X:Y"')
    video_id: int = Field(..., gt=0)
    video_service_id: str = Field(..., min_length=1, description="Storage key of the original upload")

    @classmethod
    def from_request(cls, request: ConversionRequest, video: VideoAsset) -> "ConversionJobMessage":
        return cls(
            request_id=request.id,
            user_id=request.owner_id,
            bitrate=request.bitrate,
            resolution=_pair(request.resolution_width, request.resolution_height),
            ratio=_pair(request.ratio_x, request.ratio_y),
            video_id=video.id,
            video_service_id=video.storage_key,
        )

    def to_payload(self) -> bytes:
        """Serialize to the JSON document the workers read (unset pairs omitted)."""
        return self.model_dump_json(exclude_none=True).encode("utf-8")


class VideoDescriptor(BaseModel):
    """Video metadata as reported by a worker.

    Used both for the converted asset (a full descriptor) and for the patch of
    the original asset (an id plus whichever technical fields were measured).
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    name: Optional[str] = Field(default=None, max_length=255)
    size: Optional[int] = Field(default=None, ge=0)
    bitrate: Optional[int] = Field(default=None, ge=0)
    resolution_x: Optional[int] = Field(default=None, ge=0)
    resolution_y: Optional[int] = Field(default=None, ge=0)
    ratio_x: Optional[int] = Field(default=None, ge=0)
    ratio_y: Optional[int] = Field(default=None, ge=0)
    service_id: Optional[str] = Field(default=None, max_length=512)

    def to_fields(self) -> Dict[str, Any]:
        """Column patch containing only the fields the worker actually sent."""
        sent = self.model_dump(exclude_unset=True, exclude_none=True)
        return {column: sent[wire] for wire, column in _DESCRIPTOR_COLUMNS.items() if wire in sent}


class ConversionResultMessage(BaseModel):
    """Result document a worker publishes when a job finishes."""

    model_config = ConfigDict(extra="ignore")

    request_id: int
    original_video: Optional[VideoDescriptor] = None
    converted_video: Optional[VideoDescriptor] = None
    error: Optional[str] = None

    @field_validator("error")
    @classmethod
    def empty_error_is_absent(cls, v):
        """Workers send "" for "no error"."""
        return v or None

    @classmethod
    def from_payload(cls, raw: bytes) -> "ConversionResultMessage":
        """Decode a raw payload; raises ValueError on anything that is not a result object."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"result payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("result payload is not a JSON object")
        # pydantic.ValidationError is a ValueError subclass
        return cls.model_validate(data)

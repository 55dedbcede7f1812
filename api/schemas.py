"""Pydantic schemas for the conversion request API."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from api.models import ConversionParams, ConversionRequest, VideoAsset


class ConversionRequestForm(BaseModel):
    """Target parameters submitted with an upload.

    At least one of bitrate, resolution or ratio must be given, and resolution
    and ratio are only accepted as complete pairs.
    """

    bitrate: int = Field(default=0, ge=0, le=10_000_000_000, description="Target bitrate in bits/s")
    resolution_x: int = Field(default=0, ge=0, le=16384)
    resolution_y: int = Field(default=0, ge=0, le=16384)
    ratio_x: int = Field(default=0, ge=0, le=1000)
    ratio_y: int = Field(default=0, ge=0, le=1000)

    @model_validator(mode="after")
    def check_pairs(self):
        if (self.resolution_x == 0) != (self.resolution_y == 0):
            raise ValueError("resolution_x and resolution_y must be given together")
        if (self.ratio_x == 0) != (self.ratio_y == 0):
            raise ValueError("ratio_x and ratio_y must be given together")
        if self.bitrate == 0 and self.resolution_x == 0 and self.ratio_x == 0:
            raise ValueError("at least one of bitrate, resolution or ratio is required")
        return self

    def to_params(self) -> ConversionParams:
        return ConversionParams(
            bitrate=self.bitrate,
            resolution_width=self.resolution_x,
            resolution_height=self.resolution_y,
            ratio_x=self.ratio_x,
            ratio_y=self.ratio_y,
        )


class VideoResponse(BaseModel):
    """Video asset as returned by the API."""

    id: int
    name: str
    size: int
    bitrate: int
    resolution_x: int
    resolution_y: int
    ratio_x: int
    ratio_y: int
    service_id: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_video(cls, video: VideoAsset) -> "VideoResponse":
        return cls(
            id=video.id,
            name=video.name,
            size=video.size_bytes,
            bitrate=video.bitrate,
            resolution_x=video.resolution_width,
            resolution_y=video.resolution_height,
            ratio_x=video.ratio_x,
            ratio_y=video.ratio_y,
            service_id=video.storage_key,
            created_at=video.created_at,
        )


class ConversionRequestResponse(BaseModel):
    """Conversion request as returned by the API."""

    id: int
    video_name: str
    status: str
    details: Optional[str] = None
    bitrate: int
    resolution_x: int
    resolution_y: int
    ratio_x: int
    ratio_y: int
    original_video_id: Optional[int] = None
    converted_video_id: Optional[int] = None
    original_video: Optional[VideoResponse] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: ConversionRequest) -> "ConversionRequestResponse":
        return cls(
            id=request.id,
            video_name=request.video_name,
            status=request.status.value,
            details=request.details or None,
            bitrate=request.bitrate,
            resolution_x=request.resolution_width,
            resolution_y=request.resolution_height,
            ratio_x=request.ratio_x,
            ratio_y=request.ratio_y,
            original_video_id=request.original_video_id,
            converted_video_id=request.converted_video_id,
            original_video=VideoResponse.from_video(request.original_video) if request.original_video else None,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )


class ConversionRequestListResponse(BaseModel):
    requests: List[ConversionRequestResponse]
    limit: int
    offset: int


class SubmissionFailedResponse(BaseModel):
    """Body returned when the request was stored but could not be submitted."""

    detail: str
    request: Optional[ConversionRequestResponse] = None

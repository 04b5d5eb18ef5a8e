from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    version: Optional[str] = None
    job_backend: Optional[str] = None
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnvCheckResponse(BaseModel):
    transcoder_backend: str
    ffmpeg: bool
    ffprobe: bool
    docker: bool
    heif_convert: bool


class UploadUrlRequest(BaseModel):
    filename: str = Field(..., min_length=1, json_schema_extra={"example": "IMG_0001.HEIC"})
    mime_type: str = Field(..., min_length=1, json_schema_extra={"example": "image/heic"})
    size: int = Field(..., ge=0, json_schema_extra={"example": 2481734})
    captured_at: Optional[datetime] = Field(
        default=None,
        description="Capture time from client metadata (EXIF or container).",
    )


class AssetResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    bucket: str
    key: str
    mime_type: str
    size: int
    captured_at: Optional[datetime]
    status: str = Field(description="pending | processing | processed | failed")
    error: Optional[str]
    processed_key: Optional[str]
    processed_mime_type: Optional[str]
    processed_size: Optional[int]
    thumbnail_key: Optional[str]
    thumbnail_mime_type: Optional[str]
    thumbnail_size: Optional[int]
    thumbnail_width: Optional[int]
    thumbnail_height: Optional[int]
    created_at: datetime
    updated_at: datetime


class UploadUrlResponse(BaseModel):
    upload_url: str
    method: str = "PUT"
    headers: Optional[dict[str, str]] = None
    asset: AssetResponse


class ProcessAcceptedResponse(BaseModel):
    enqueued: bool = True
    asset_id: str


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: int


class DeleteResponse(BaseModel):
    success: bool


__all__ = [
    "HealthResponse",
    "EnvCheckResponse",
    "UploadUrlRequest",
    "UploadUrlResponse",
    "AssetResponse",
    "ProcessAcceptedResponse",
    "DownloadUrlResponse",
    "DeleteResponse",
]

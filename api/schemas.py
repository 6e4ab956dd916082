from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, field_validator


class RenditionResponse(BaseModel):
    label: str
    video_bitrate: int  # bits per second
    audio_bitrate: int  # bits per second
    playlist_path: str


class VideoResponse(BaseModel):
    id: str
    title: str
    description: str = ""
    original_filename: str
    size_bytes: int
    mime_type: str
    duration: int
    status: str  # ready, unprocessed
    source_path: Optional[str] = None
    created_at: Optional[datetime] = None
    renditions: List[RenditionResponse] = []
    hls_playlist: Optional[str] = None  # master playlist URL (ready assets only)
    stream_url: str  # base URL for every file of the asset

    @field_validator("description", mode="before")
    @classmethod
    def default_description(cls, v):
        return v if v is not None else ""

    @field_validator("created_at", mode="before")
    @classmethod
    def default_created_at(cls, v):
        return v if v is not None else datetime.now(timezone.utc)


class UploadResponse(BaseModel):
    success: bool = True
    message: str
    video: VideoResponse


class VideoListResponse(BaseModel):
    success: bool = True
    count: int
    videos: List[VideoResponse]


class VideoDetailResponse(BaseModel):
    success: bool = True
    video: VideoResponse


class DeleteResponse(BaseModel):
    success: bool = True
    message: str
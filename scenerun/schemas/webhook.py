"""Video-build webhook payload."""

from typing import Optional

from pydantic import BaseModel, Field


class VideoBuildEvent(BaseModel):
    video_build_id: int
    status: str
    progress_percent: Optional[int] = Field(default=None, ge=0, le=100)
    download_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class WebhookAck(BaseModel):
    success: bool = True
    message: str
    previous_status: Optional[str] = None
    status: str

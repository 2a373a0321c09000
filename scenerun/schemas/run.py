"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from scenerun.config import settings

OUTPUT_PRESETS = ("yt_long", "short_vertical")


class NarrationVoice(BaseModel):
    provider: str = "google"
    voice_id: str = "ja-JP-Neural2-B"


class RunConfig(BaseModel):
    """Snapshot frozen on the run at creation."""

    experience_tag: str = "scenerun_v1"
    target_scene_count: int = Field(default=5, ge=3, le=10)
    split_mode: Literal["ai", "preserve"] = "ai"
    output_preset: str = "yt_long"
    narration_voice: NarrationVoice = Field(default_factory=NarrationVoice)
    bgm_mode: Literal["none", "auto"] = "none"
    style_preset_id: Optional[int] = None
    selected_character_ids: List[int] = Field(default_factory=list)


class RunStartRequest(BaseModel):
    """Schema for starting a run."""

    text: str
    title: Optional[str] = Field(default=None, max_length=200)
    output_preset: Optional[str] = None
    target_scene_count: Optional[int] = Field(default=None, ge=3, le=10)
    narration_voice: Optional[NarrationVoice] = None
    style_preset_id: Optional[int] = None
    selected_character_ids: Optional[List[int]] = None

    @field_validator("text")
    @classmethod
    def text_length(cls, value: str) -> str:
        trimmed = value.strip()
        if len(trimmed) < settings.MIN_TEXT_LENGTH:
            raise ValueError(f"text must be at least {settings.MIN_TEXT_LENGTH} characters")
        if len(trimmed) > settings.MAX_TEXT_LENGTH:
            raise ValueError(f"text must be at most {settings.MAX_TEXT_LENGTH} characters")
        return trimmed

    @field_validator("output_preset")
    @classmethod
    def known_preset(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in OUTPUT_PRESETS:
            raise ValueError(f"output_preset must be one of {', '.join(OUTPUT_PRESETS)}")
        return value


class RunStartResponse(BaseModel):
    """Response after starting a run."""

    run_id: int
    project_id: int
    phase: str
    config: RunConfig


class ActiveRunResponse(BaseModel):
    run_id: int
    project_id: int
    phase: str


class RunSummary(BaseModel):
    run_id: int
    project_id: int
    phase: str
    is_archived: bool
    error_code: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class AdvanceResponse(BaseModel):
    """Result of one Advance, retry or cancel call."""

    run_id: int
    previous_phase: str
    new_phase: str
    action: str
    message: str


class RunError(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None
    phase: Optional[str] = None


class RunStatusResponse(BaseModel):
    """Aggregated progress across formatting, scenes, images, audio and video."""

    run_id: int
    project_id: int
    phase: str
    config: RunConfig
    retry_count: int
    locked_until: Optional[datetime] = None
    error: Optional[RunError] = None
    progress: Dict[str, Any]
    timestamps: Dict[str, Optional[datetime]]

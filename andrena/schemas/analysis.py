"""Pydantic schemas for the analysis endpoint."""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator

from andrena.models.engine import InferenceResult
from andrena.services.audio.types import MediaRequest


class AnalysisRequest(BaseModel):
    """Inbound payload definition for /analyze."""

    url: AnyHttpUrl = Field(..., description="Page or media URL understood by yt-dlp.")
    format: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Optional yt-dlp format selector, e.g. 'bestaudio[ext=m4a]'.",
    )
    quality: Literal["best", "worst"] = Field(
        default="best",
        description="Pick the best or the smallest audio stream when no format is given.",
    )

    @field_validator("format")
    @classmethod
    def _strip_format(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        text = value.strip()
        return text or None

    def to_media_request(self) -> MediaRequest:
        return MediaRequest(url=str(self.url), format_hint=self.format, quality_hint=self.quality)


class SourceDescription(BaseModel):
    source_id: Optional[str] = None
    title: Optional[str] = None
    uploader: Optional[str] = None
    description: Optional[str] = None
    reported_duration_seconds: Optional[float] = None
    extension: Optional[str] = None


class AnalysisResponse(BaseModel):
    """Outbound payload for analysis results."""

    scores: dict[str, float]
    top_label: str
    model_version: str
    input_duration_seconds: float = Field(..., gt=0.0)
    window_count: int = Field(..., ge=1)
    source: Optional[SourceDescription] = None

    @classmethod
    def from_result(cls, result: InferenceResult) -> "AnalysisResponse":
        return cls.model_validate(result.to_dict())


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    model_version: Optional[str] = None

"""Value objects passed between the fetch and extraction stages."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional
from urllib.parse import urlparse

import numpy as np

QualityHint = Literal["best", "worst"]

_FORMAT_BY_QUALITY: dict[str, str] = {
    "best": "bestaudio/best",
    "worst": "worstaudio/worst",
}


@dataclass(frozen=True, slots=True)
class MediaRequest:
    """Remote locator plus optional downloader hints for one pipeline run."""

    url: str
    format_hint: Optional[str] = None
    quality_hint: QualityHint = "best"

    def __post_init__(self) -> None:
        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Unsupported media locator '{self.url}'. Use an http(s) URL.")
        if self.quality_hint not in _FORMAT_BY_QUALITY:
            raise ValueError("quality_hint must be 'best' or 'worst'")

    @property
    def format_selector(self) -> str:
        if self.format_hint:
            return self.format_hint
        return _FORMAT_BY_QUALITY[self.quality_hint]


@dataclass(frozen=True, slots=True)
class SourceInfo:
    """Descriptive metadata reported by the downloader."""

    source_id: Optional[str] = None
    title: Optional[str] = None
    uploader: Optional[str] = None
    description: Optional[str] = None
    reported_duration_seconds: Optional[float] = None
    extension: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RawMedia:
    """Downloaded media bytes and the detected container tag."""

    data: bytes
    container: str
    source: SourceInfo = field(default_factory=SourceInfo)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class AudioBuffer:
    """Mono float32 waveform at a fixed sample rate."""

    samples: np.ndarray
    sample_rate: int
    channels: int = 1

    def __post_init__(self) -> None:
        if self.samples.ndim != 1:
            raise ValueError("AudioBuffer samples must be one-dimensional")
        if self.samples.size == 0:
            raise ValueError("AudioBuffer cannot be empty")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.samples.setflags(write=False)

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration_seconds(self) -> float:
        return self.num_samples / float(self.sample_rate)

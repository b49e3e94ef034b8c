"""Application configuration utilities."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Centralized runtime settings sourced from environment variables."""

    api_key: Optional[str] = Field(None, alias="ANDRENA_API_KEY")
    log_level: str = Field("INFO", alias="ANDRENA_LOG_LEVEL")

    target_sample_rate: int = Field(16000, alias="ANDRENA_SAMPLE_RATE")
    min_audio_duration_seconds: float = Field(0.5, alias="ANDRENA_MIN_DURATION")
    max_audio_duration_seconds: float = Field(600.0, alias="ANDRENA_MAX_DURATION")
    inference_window_seconds: float = Field(10.0, alias="ANDRENA_INFERENCE_WINDOW")

    request_deadline_seconds: float = Field(180.0, alias="ANDRENA_REQUEST_DEADLINE")
    fetch_timeout_seconds: float = Field(120.0, alias="ANDRENA_FETCH_TIMEOUT")
    fetch_max_attempts: int = Field(3, alias="ANDRENA_FETCH_MAX_ATTEMPTS")
    fetch_backoff_seconds: float = Field(1.0, alias="ANDRENA_FETCH_BACKOFF")
    fetch_backoff_max_seconds: float = Field(8.0, alias="ANDRENA_FETCH_BACKOFF_MAX")
    max_remote_media_bytes: int = Field(256 * 1024 * 1024, alias="ANDRENA_MAX_MEDIA_BYTES")
    downloader_path: str = Field("yt-dlp", alias="ANDRENA_DOWNLOADER")
    scratch_dir: Optional[str] = Field(None, alias="ANDRENA_SCRATCH_DIR")

    worker_count: Optional[int] = Field(None, alias="ANDRENA_WORKERS")
    ort_intra_op_threads: int = Field(1, alias="ANDRENA_ORT_THREADS")

    hf_model_name: str = Field("MelodyMachine/Deepfake-audio-detection-V2", alias="ANDRENA_HF_MODEL")
    hf_cache_dir: str = Field(".cache/hf", alias="ANDRENA_HF_CACHE")
    onnx_model_path: str = Field("onnx-model/model/model.onnx", alias="ANDRENA_ONNX_PATH")
    onnx_download_url: Optional[str] = Field(None, alias="ANDRENA_ONNX_URL")
    model_version: Optional[str] = Field(None, alias="ANDRENA_MODEL_VERSION")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True

    @field_validator(
        "target_sample_rate",
        "min_audio_duration_seconds",
        "max_audio_duration_seconds",
        "inference_window_seconds",
        "request_deadline_seconds",
        "fetch_timeout_seconds",
        "fetch_max_attempts",
        "max_remote_media_bytes",
        "ort_intra_op_threads",
    )
    @classmethod
    def _require_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("fetch_backoff_seconds", "fetch_backoff_max_seconds")
    @classmethod
    def _require_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("worker_count")
    @classmethod
    def _validate_workers(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value <= 0:
            raise ValueError("must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance to avoid repeated parsing."""
    return Settings()

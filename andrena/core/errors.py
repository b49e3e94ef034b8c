"""Error taxonomy shared by every pipeline stage.

Each error carries a ``kind`` (a string enum usable in logs and API
payloads) and the CLI ``exit_code`` for its category.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_USAGE = 2
EXIT_FETCH = 3
EXIT_DECODE = 4
EXIT_INFERENCE = 5
EXIT_TIMEOUT = 6
EXIT_MODEL_LOAD = 7


class FetchErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    NETWORK_FAILURE = "NetworkFailure"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    TIMEOUT = "Timeout"


class DecodeErrorKind(str, Enum):
    CORRUPT_STREAM = "CorruptStream"
    UNSUPPORTED_CODEC = "UnsupportedCodec"
    EMPTY_MEDIA = "EmptyMedia"


class InferenceErrorKind(str, Enum):
    SHAPE_MISMATCH = "ShapeMismatch"
    BACKEND_FAILURE = "BackendFailure"


class PipelineStage(str, Enum):
    FETCH = "fetch"
    EXTRACT = "extract"
    INFER = "infer"


class AndrenaError(RuntimeError):
    """Base class for all andrena failures."""

    exit_code: int = EXIT_UNEXPECTED
    kind: Enum | str = "Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def kind_name(self) -> str:
        return self.kind.value if isinstance(self.kind, Enum) else str(self.kind)


class FetchError(AndrenaError):
    """Raised when the media downloader cannot produce a usable file."""

    exit_code = EXIT_FETCH

    def __init__(self, kind: FetchErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in (FetchErrorKind.NETWORK_FAILURE, FetchErrorKind.TIMEOUT)


class DecodeError(AndrenaError):
    """Raised when fetched media cannot be turned into an audio buffer."""

    exit_code = EXIT_DECODE

    def __init__(self, kind: DecodeErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class ModelLoadError(AndrenaError):
    """Raised when model artefacts or the compute backend are unavailable."""

    exit_code = EXIT_MODEL_LOAD
    kind = "ModelLoadError"


class InferenceError(AndrenaError):
    """Raised when a forward pass fails."""

    exit_code = EXIT_INFERENCE

    def __init__(self, kind: InferenceErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class PipelineError(AndrenaError):
    """A stage failure tagged with the stage it originated from."""

    def __init__(self, stage: PipelineStage, cause: AndrenaError) -> None:
        super().__init__(f"{stage.value} stage failed: {cause.message}")
        self.stage = stage
        self.cause = cause
        self.kind = cause.kind
        self.exit_code = cause.exit_code


class PipelineTimeout(PipelineError):
    """The overall request deadline expired while ``stage`` was active."""

    def __init__(self, stage: Optional[PipelineStage], deadline_seconds: float) -> None:
        AndrenaError.__init__(
            self,
            f"request exceeded deadline of {deadline_seconds:.2f}s"
            + (f" during {stage.value}" if stage else ""),
        )
        self.stage = stage
        self.cause = None
        self.kind = "PipelineTimeout"
        self.exit_code = EXIT_TIMEOUT
        self.deadline_seconds = deadline_seconds

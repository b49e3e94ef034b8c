"""Audio service package."""

from .extraction import AudioExtractor  # noqa: F401
from .fetcher import MediaFetcher, detect_container  # noqa: F401
from .types import AudioBuffer, MediaRequest, RawMedia, SourceInfo  # noqa: F401

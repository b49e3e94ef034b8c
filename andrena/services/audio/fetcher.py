"""Remote media download through the external ``yt-dlp`` executable."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import math
import os
import shutil
import signal
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from andrena.core.config import Settings
from andrena.core.errors import FetchError, FetchErrorKind
from andrena.services.audio.types import MediaRequest, RawMedia, SourceInfo

logger = logging.getLogger(__name__)

OUTPUT_TEMPLATE = "media.%(ext)s"
PRINT_TEMPLATE = "after_move:%(.{id,title,uploader,description,duration,ext,filepath})j"

_NOT_FOUND_MARKERS = (
    "http error 404",
    "http error 410",
    "video unavailable",
    "private video",
    "has been removed",
    "does not exist",
    "this video is not available",
)
_UNSUPPORTED_MARKERS = (
    "unsupported url",
    "requested format is not available",
    "no video formats found",
    "max-filesize",
    "drm protected",
)
_TIMEOUT_MARKERS = ("timed out", "read timeout")


def detect_container(data: bytes, fallback: Optional[str] = None) -> str:
    """Identify the container from magic bytes, falling back to the file extension."""

    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[:4] == b"fLaC":
        return "flac"
    if data[:4] == b"OggS":
        return "ogg"
    if data[:4] == b"\x1a\x45\xdf\xa3":
        return "webm"
    if data[4:8] == b"ftyp":
        return "mp4"
    if data[:3] == b"ID3" or (len(data) > 1 and data[0] == 0xFF and (data[1] & 0xE0) == 0xE0):
        return "mp3"
    return (fallback or "unknown").lower().lstrip(".")


def classify_downloader_failure(stderr: str) -> FetchErrorKind:
    text = stderr.lower()
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return FetchErrorKind.NOT_FOUND
    if any(marker in text for marker in _UNSUPPORTED_MARKERS):
        return FetchErrorKind.UNSUPPORTED_FORMAT
    if any(marker in text for marker in _TIMEOUT_MARKERS):
        return FetchErrorKind.TIMEOUT
    return FetchErrorKind.NETWORK_FAILURE


@dataclass(slots=True)
class MediaFetcher:
    """Download media with ``yt-dlp`` into scratch storage and return its bytes.

    Every attempt gets its own scratch directory which is removed before the
    attempt returns, raises or is cancelled. A still-running downloader is
    killed and reaped on timeout and on cancellation.
    """

    downloader_path: str
    timeout_seconds: float
    max_bytes: int
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_max_seconds: float = 8.0
    scratch_root: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "MediaFetcher":
        return cls(
            downloader_path=settings.downloader_path,
            timeout_seconds=settings.fetch_timeout_seconds,
            max_bytes=settings.max_remote_media_bytes,
            max_attempts=settings.fetch_max_attempts,
            backoff_seconds=settings.fetch_backoff_seconds,
            backoff_max_seconds=settings.fetch_backoff_max_seconds,
            scratch_root=settings.scratch_dir,
        )

    def check_available(self) -> str:
        """Return the resolved downloader path or raise when it is missing."""

        resolved = shutil.which(self.downloader_path)
        if resolved is None:
            raise FetchError(
                FetchErrorKind.NOT_FOUND,
                f"Downloader executable '{self.downloader_path}' is not on PATH.",
            )
        return resolved

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    async def fetch(self, request: MediaRequest) -> RawMedia:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._fetch_once(request)
            except FetchError as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    logger.warning(
                        "Fetch of '%s' failed after %d attempt(s): %s (%s)",
                        request.url,
                        attempt,
                        exc.kind_name,
                        exc.message,
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Fetch attempt %d/%d for '%s' failed with %s; retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    request.url,
                    exc.kind_name,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _fetch_once(self, request: MediaRequest) -> RawMedia:
        async with self._scratch_directory() as scratch:
            stdout, stderr, returncode = await self._run_downloader(request, scratch)
            if returncode != 0:
                kind = classify_downloader_failure(stderr)
                detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
                raise FetchError(kind, f"Downloader failed for '{request.url}': {detail}")

            descriptor = self._parse_descriptor(stdout)
            media_path = self._resolve_media_path(descriptor, scratch)
            size = media_path.stat().st_size
            if size == 0:
                raise FetchError(FetchErrorKind.UNSUPPORTED_FORMAT, "Downloader produced an empty file.")
            if size > self.max_bytes:
                raise FetchError(
                    FetchErrorKind.UNSUPPORTED_FORMAT,
                    f"Downloaded media is {size} bytes, above the {self.max_bytes} byte limit.",
                )
            data = await asyncio.to_thread(media_path.read_bytes)

        source = self._source_info(descriptor, media_path)
        container = detect_container(data, fallback=source.extension)
        logger.info("Fetched %d bytes (%s) from '%s'", len(data), container, request.url)
        return RawMedia(data=data, container=container, source=source)

    @contextlib.asynccontextmanager
    async def _scratch_directory(self) -> AsyncIterator[Path]:
        if self.scratch_root:
            Path(self.scratch_root).mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix="andrena-", dir=self.scratch_root))
        try:
            yield path
        finally:
            shutil.rmtree(path, ignore_errors=True)

    def _build_command(self, request: MediaRequest, scratch: Path) -> list[str]:
        return [
            self.downloader_path,
            "--no-playlist",
            "--no-progress",
            "--no-simulate",
            "-f",
            request.format_selector,
            "--max-filesize",
            str(self.max_bytes),
            "--socket-timeout",
            str(max(1, math.ceil(self.timeout_seconds))),
            "-o",
            str(scratch / OUTPUT_TEMPLATE),
            "--print",
            PRINT_TEMPLATE,
            "--",
            request.url,
        ]

    async def _run_downloader(self, request: MediaRequest, scratch: Path) -> tuple[str, str, int]:
        command = self._build_command(request, scratch)
        logger.debug("Running downloader: %s", command)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise FetchError(
                FetchErrorKind.NOT_FOUND,
                f"Unable to start downloader '{self.downloader_path}': {exc}",
            ) from exc

        completed = False
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
            completed = True
        except asyncio.TimeoutError as exc:
            raise FetchError(
                FetchErrorKind.TIMEOUT,
                f"Downloader exceeded {self.timeout_seconds:.2f}s for '{request.url}'.",
            ) from exc
        finally:
            # Helpers such as ffmpeg keep the pipes open after yt-dlp itself exits.
            if not completed:
                await self._kill(process)

        return (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            process.returncode,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        await process.wait()
        logger.info("Killed downloader process %s", process.pid)

    @staticmethod
    def _parse_descriptor(stdout: str) -> dict[str, Any]:
        lines = [line for line in stdout.splitlines() if line.strip()]
        if not lines:
            raise FetchError(
                FetchErrorKind.UNSUPPORTED_FORMAT,
                "Downloader reported no file; the media may exceed the size limit or lack an audio stream.",
            )
        try:
            descriptor = json.loads(lines[-1])
        except json.JSONDecodeError as exc:
            raise FetchError(FetchErrorKind.UNSUPPORTED_FORMAT, "Malformed downloader output.") from exc
        if not isinstance(descriptor, dict) or not isinstance(descriptor.get("filepath"), str):
            raise FetchError(FetchErrorKind.UNSUPPORTED_FORMAT, "Downloader output lacks a file path.")
        return descriptor

    @staticmethod
    def _resolve_media_path(descriptor: dict[str, Any], scratch: Path) -> Path:
        media_path = Path(descriptor["filepath"]).resolve()
        if scratch.resolve() not in media_path.parents or not media_path.is_file():
            raise FetchError(
                FetchErrorKind.UNSUPPORTED_FORMAT,
                f"Downloader reported an unexpected file '{media_path}'.",
            )
        return media_path

    @staticmethod
    def _source_info(descriptor: dict[str, Any], media_path: Path) -> SourceInfo:
        duration = descriptor.get("duration")
        return SourceInfo(
            source_id=descriptor.get("id"),
            title=descriptor.get("title"),
            uploader=descriptor.get("uploader"),
            description=descriptor.get("description"),
            reported_duration_seconds=float(duration) if isinstance(duration, (int, float)) else None,
            extension=descriptor.get("ext") or media_path.suffix.lstrip(".") or None,
        )

"""Pipeline coordinator: fetch, extract and infer one request under a deadline."""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import os
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

from andrena.core.config import Settings
from andrena.core.errors import (
    AndrenaError,
    DecodeError,
    DecodeErrorKind,
    FetchError,
    FetchErrorKind,
    InferenceError,
    InferenceErrorKind,
    PipelineError,
    PipelineStage,
    PipelineTimeout,
)
from andrena.models.engine import InferenceEngine, InferenceResult
from andrena.pipeline.state import PipelineRun, PipelineState
from andrena.services.audio import AudioBuffer, AudioExtractor, MediaFetcher, MediaRequest, RawMedia

logger = logging.getLogger(__name__)

T = TypeVar("T")
A = TypeVar("A")


class Fetcher(Protocol):
    async def fetch(self, request: MediaRequest) -> RawMedia: ...


def default_worker_count() -> int:
    return os.cpu_count() or 1


def unexpected_stage_error(stage: PipelineStage, exc: Exception) -> AndrenaError:
    """Map an exception outside the taxonomy onto the stage's backend failure kind."""
    message = f"{type(exc).__name__}: {exc}"
    if stage is PipelineStage.FETCH:
        return FetchError(FetchErrorKind.NETWORK_FAILURE, message)
    if stage is PipelineStage.EXTRACT:
        return DecodeError(DecodeErrorKind.CORRUPT_STREAM, message)
    return InferenceError(InferenceErrorKind.BACKEND_FAILURE, message)


class PipelineCoordinator:
    """Run requests through the three stages, each request owning its buffers.

    Extraction and inference are CPU-bound and share one bounded thread pool.
    The fetch stage is an asyncio subprocess, so a slow download never holds
    a pool worker.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        extractor: AudioExtractor,
        engine: InferenceEngine,
        executor: Executor,
        deadline_seconds: float,
    ) -> None:
        if not deadline_seconds > 0:
            raise ValueError("deadline_seconds must be positive")
        self.fetcher = fetcher
        self.extractor = extractor
        self.engine = engine
        self.deadline_seconds = deadline_seconds
        self._executor = executor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        engine: InferenceEngine,
        fetcher: Optional[Fetcher] = None,
    ) -> "PipelineCoordinator":
        extractor = AudioExtractor(
            target_sample_rate=engine.handle.sample_rate,
            min_duration_seconds=settings.min_audio_duration_seconds,
            max_duration_seconds=settings.max_audio_duration_seconds,
        )
        executor = ThreadPoolExecutor(
            max_workers=settings.worker_count or default_worker_count(),
            thread_name_prefix="andrena-worker",
        )
        return cls(
            fetcher=fetcher or MediaFetcher.from_settings(settings),
            extractor=extractor,
            engine=engine,
            executor=executor,
            deadline_seconds=settings.request_deadline_seconds,
        )

    async def process(self, request: MediaRequest, deadline_seconds: Optional[float] = None) -> InferenceResult:
        return await self.execute(PipelineRun(request), deadline_seconds)

    async def execute(self, run: PipelineRun, deadline_seconds: Optional[float] = None) -> InferenceResult:
        """Drive ``run`` to a terminal state and return its result.

        Raises ``PipelineError`` wrapping the failing stage's error, or
        ``PipelineTimeout`` when the deadline expires first. The active
        stage is cancelled on expiry, which kills a running downloader and
        stops inference at the next window boundary.
        """

        deadline = self.deadline_seconds if deadline_seconds is None else deadline_seconds
        if not deadline > 0:
            raise ValueError(f"deadline_seconds must be positive, got {deadline}")
        logger.info("Run %s: processing '%s'", run.run_id, run.request.url)
        try:
            result = await asyncio.wait_for(self._run_stages(run), timeout=deadline)
        except asyncio.TimeoutError as exc:
            stage = run.active_stage
            if not run.is_terminal:
                run.fail("PipelineTimeout")
            logger.warning(
                "Run %s: deadline of %.2fs expired during %s",
                run.run_id,
                deadline,
                stage.value if stage else "startup",
            )
            raise PipelineTimeout(stage, deadline) from exc

        logger.info(
            "Run %s: done, top label %s over %.2fs of audio",
            run.run_id,
            result.top_label,
            result.input_duration_seconds,
        )
        return result

    async def _run_stages(self, run: PipelineRun) -> InferenceResult:
        run.advance(PipelineState.FETCHING)
        media: RawMedia = await self._stage(run, PipelineStage.FETCH, self.fetcher.fetch(run.request))

        run.advance(PipelineState.EXTRACTING)
        buffer: AudioBuffer = await self._stage(
            run, PipelineStage.EXTRACT, self._in_pool(self.extractor.extract, media)
        )

        run.advance(PipelineState.INFERRING)
        abandoned = threading.Event()
        infer = functools.partial(self.engine.infer, should_stop=abandoned.is_set)
        result: InferenceResult = await self._stage(
            run, PipelineStage.INFER, self._in_pool(infer, buffer), abandoned
        )

        run.advance(PipelineState.DONE)
        return dataclasses.replace(result, source=media.source)

    async def _stage(
        self,
        run: PipelineRun,
        stage: PipelineStage,
        awaitable: Awaitable[T],
        abandoned: Optional[threading.Event] = None,
    ) -> T:
        try:
            return await awaitable
        except asyncio.CancelledError:
            if abandoned is not None:
                abandoned.set()
            raise
        except AndrenaError as exc:
            cause = exc
        except Exception as exc:
            logger.exception("Run %s: unexpected error in %s stage", run.run_id, stage.value)
            cause = unexpected_stage_error(stage, exc)
            cause.__cause__ = exc

        run.fail(cause.kind_name)
        logger.warning("Run %s: %s stage failed with %s: %s", run.run_id, stage.value, cause.kind_name, cause.message)
        raise PipelineError(stage, cause) from cause

    def _in_pool(self, func: Callable[[A], T], argument: A) -> Awaitable[T]:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, func, argument)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

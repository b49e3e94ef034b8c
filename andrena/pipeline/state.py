"""Per-request state machine for the fetch, extract, infer sequence."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from andrena.core.errors import PipelineStage
from andrena.services.audio.types import MediaRequest

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    INFERRING = "inferring"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.PENDING: frozenset({PipelineState.FETCHING, PipelineState.FAILED}),
    PipelineState.FETCHING: frozenset({PipelineState.EXTRACTING, PipelineState.FAILED}),
    PipelineState.EXTRACTING: frozenset({PipelineState.INFERRING, PipelineState.FAILED}),
    PipelineState.INFERRING: frozenset({PipelineState.DONE, PipelineState.FAILED}),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}

STAGE_BY_STATE: dict[PipelineState, PipelineStage] = {
    PipelineState.FETCHING: PipelineStage.FETCH,
    PipelineState.EXTRACTING: PipelineStage.EXTRACT,
    PipelineState.INFERRING: PipelineStage.INFER,
}


class InvalidTransition(RuntimeError):
    """Raised when a run attempts to skip or revisit a stage."""


@dataclass
class PipelineRun:
    """Tracks where one request currently is in the pipeline."""

    request: MediaRequest
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: PipelineState = PipelineState.PENDING
    failure_kind: Optional[str] = None
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.PENDING])

    @property
    def active_stage(self) -> Optional[PipelineStage]:
        return STAGE_BY_STATE.get(self.state)

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, target: PipelineState) -> None:
        if target is PipelineState.FAILED:
            raise InvalidTransition("Use fail() to record a failure kind.")
        self._move(target)

    def fail(self, kind: str) -> None:
        self._move(PipelineState.FAILED)
        self.failure_kind = kind

    def _move(self, target: PipelineState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {target.value}.")
        logger.debug("Run %s: %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

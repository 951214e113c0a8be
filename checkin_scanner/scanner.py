"""
Scan session state machine

The scanner screen owns one ScanSession value. Every change goes through
`transition(state, event)`, a pure function; ScanSessionController runs
the validate-then-commit pipeline and feeds its outcomes back as events.

Outcome events carry the generation they were started under. A scan or a
reset bumps the generation, so results from superseded work are dropped
instead of overwriting the newer state.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Union

from .models import ScanPhase, ScanSession
from .services import AttendanceCommitter, AttendanceValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scanned:
    token: str


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class ValidationFailed:
    generation: int
    reason: str


@dataclass(frozen=True)
class Committed:
    generation: int


@dataclass(frozen=True)
class CommitFailed:
    generation: int
    detail: str


ScanEvent = Union[Scanned, Reset, ValidationFailed, Committed, CommitFailed]


def transition(state: ScanSession, event: ScanEvent) -> ScanSession:
    """
    Compute the next session state

    Scanned and Reset are accepted in any phase. Outcome events only apply
    while validating and only for the current generation; otherwise the
    state is returned unchanged.
    """
    if isinstance(event, Reset):
        return ScanSession(generation=state.generation + 1)

    if isinstance(event, Scanned):
        return ScanSession(
            phase=ScanPhase.VALIDATING,
            scanned_data=event.token,
            generation=state.generation + 1,
        )

    if not isinstance(event, (Committed, ValidationFailed, CommitFailed)):
        raise TypeError(f"Unknown scan event: {event!r}")

    if state.phase is not ScanPhase.VALIDATING or event.generation != state.generation:
        return state

    if isinstance(event, Committed):
        return state.evolve(phase=ScanPhase.SUCCESS, success=True, error=None)
    if isinstance(event, ValidationFailed):
        return state.evolve(phase=ScanPhase.FAILED, success=False, error=event.reason)
    return state.evolve(phase=ScanPhase.FAILED, success=False, error=event.detail)


class ScanSessionController:
    """
    Drives one scanner screen

    Exposes `on_token_scanned`, `reset_session`, the current `state` and
    an observable `states()` stream. Not thread safe: call it from the
    event loop that runs its coroutines.
    """

    def __init__(self, validator: AttendanceValidator, committer: AttendanceCommitter):
        self.validator = validator
        self.committer = committer
        self._state = ScanSession()
        self._watchers: List[asyncio.Queue] = []
        self._closed = False

    @property
    def state(self) -> ScanSession:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def _dispatch(self, event: ScanEvent) -> ScanSession:
        new_state = transition(self._state, event)
        if new_state != self._state:
            self._state = new_state
            for queue in self._watchers:
                queue.put_nowait(new_state)
        elif not isinstance(event, (Scanned, Reset)):
            logger.debug("Dropped stale %s for generation %s", type(event).__name__, event.generation)
        return self._state

    async def on_token_scanned(self, raw: str) -> ScanSession:
        """
        Process one scanned payload

        Returns:
            The session state once this scan's pipeline has finished. When
            a later scan or a reset superseded it, that newer state.
        """
        generation = self._dispatch(Scanned(raw)).generation

        validation = await self.validator.validate(raw)
        if not validation.ok:
            logger.warning("Scan rejected: %s", validation.message)
            return self._dispatch(ValidationFailed(generation, validation.message))

        if generation != self._state.generation:
            logger.info("Scan superseded before commit, registration %s left untouched",
                        validation.data.id)
            return self._state

        result = await self.committer.commit(validation.data.id)
        if result.ok:
            logger.info("Checked in registration %s", validation.data.id)
            return self._dispatch(Committed(generation))
        return self._dispatch(CommitFailed(generation, result.message))

    def reset_session(self) -> ScanSession:
        return self._dispatch(Reset())

    async def states(self) -> AsyncIterator[ScanSession]:
        """Yield the current state, then every later one until close()"""
        if self._closed:
            yield self._state
            return
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(self._state)
        self._watchers.append(queue)
        try:
            while True:
                state: Optional[ScanSession] = await queue.get()
                if state is None:
                    return
                yield state
        finally:
            self._watchers.remove(queue)

    def close(self) -> None:
        """Tear the session down: reset it and end every states() stream"""
        if self._closed:
            return
        self.reset_session()
        self._closed = True
        for queue in self._watchers:
            queue.put_nowait(None)

"""Job state machine and cooperative cancellation.

A Job is the unit of work for one analyze command. Its state only moves
along the transitions in ``_TRANSITIONS``; anything else raises. Cancellation
is signalled through a CancellationToken that every stage receives, and any
awaited provider call is raced against it so a cancel aborts the call.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Dict, FrozenSet, List, Optional, TypeVar

T = TypeVar("T")


class JobState(str, Enum):
    STARTED = "started"
    SCANNING = "scanning"
    SCREENING = "screening"
    HALTED = "halted"
    CLASSIFYING = "classifying"
    ROUTING = "routing"
    OPTIMIZING = "optimizing"
    GENERATING = "generating"
    PROVIDER_FAILOVER = "provider_failover"
    QUALITY_RETRY = "quality_retry"
    VALIDATING = "validating"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.HALTED, JobState.COMPLETE, JobState.CANCELLED, JobState.ERROR}
)

_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.STARTED: frozenset({JobState.SCANNING}),
    JobState.SCANNING: frozenset({JobState.SCREENING}),
    JobState.SCREENING: frozenset({JobState.HALTED, JobState.CLASSIFYING}),
    JobState.CLASSIFYING: frozenset({JobState.ROUTING}),
    JobState.ROUTING: frozenset({JobState.OPTIMIZING}),
    JobState.OPTIMIZING: frozenset({JobState.GENERATING}),
    JobState.GENERATING: frozenset({JobState.PROVIDER_FAILOVER, JobState.VALIDATING}),
    JobState.PROVIDER_FAILOVER: frozenset({JobState.GENERATING}),
    JobState.VALIDATING: frozenset({JobState.QUALITY_RETRY, JobState.COMPLETE}),
    JobState.QUALITY_RETRY: frozenset({JobState.GENERATING}),
}


class InvalidTransition(Exception):
    """Raised when a job is moved along a transition the machine forbids."""

    def __init__(self, current: JobState, target: JobState) -> None:
        self.current = current
        self.target = target
        self.detail = "Illegal job transition {} -> {}".format(current.value, target.value)
        super().__init__(self.detail)


class JobCancelled(Exception):
    """Raised inside a job when its cancellation token fires."""

    def __init__(self, job_id: str = "") -> None:
        self.job_id = job_id
        self.detail = "Job {} was cancelled".format(job_id) if job_id else "Job was cancelled"
        super().__init__(self.detail)


class CancellationToken:
    """One-shot cancellation signal shared by every stage of a job."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending work is cancelled (which closes any
        in-flight HTTP request) and JobCancelled is raised.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work.done():
            return work.result()
        work.cancel()
        await asyncio.wait({work})
        if not work.cancelled():
            # The call finished while being cancelled; its outcome is moot.
            work.exception()
        raise JobCancelled()

    async def iterate(self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """Re-yield items from ``source`` until it ends or the token fires."""
        iterator = source.__aiter__()
        try:
            while True:
                item = await self.guard(_next_or_done(iterator))
                if item is _DONE:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


_DONE = object()


async def _next_or_done(iterator: AsyncIterator[T]):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _DONE


@dataclass
class Job:
    """One analyze-then-generate run on a connection."""

    session_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.STARTED
    token: CancellationToken = field(default_factory=CancellationToken)
    text: str = ""
    candidate_index: int = 0
    history: List[JobState] = field(default_factory=list)
    conversation_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: JobState) -> None:
        """Move to ``target``.

        Cancelled and Error are reachable from every non-terminal state.

        Raises:
            InvalidTransition: If the move is not allowed.
        """
        if self.terminal:
            raise InvalidTransition(self.state, target)
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if target not in allowed and target not in (JobState.CANCELLED, JobState.ERROR):
            raise InvalidTransition(self.state, target)
        self.history.append(self.state)
        self.state = target

    def append_text(self, fragment: str) -> None:
        self.text += fragment

    def clear_text(self) -> None:
        self.text = ""

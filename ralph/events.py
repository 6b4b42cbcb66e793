"""Events published by the orchestrator and the end-of-run reply channel.

Events travel outward over a thread-safe FIFO queue, in emission order.
``AwaitingUserChoice`` and ``Complete`` are each emitted once per run, in
that order, as the last two events.

The completion decision travels inward over a one-shot channel: the
consumer answers through the ``reply`` sender carried by
``AwaitingUserChoice``. A sender that is closed, or garbage-collected,
without sending resolves the receiver to None.
"""

import asyncio
import concurrent.futures
from dataclasses import dataclass, field

from ralph.checkpoint import CompletionOption
from ralph.models import LoopState, StreamEvent


@dataclass(frozen=True)
class StoryProgress:
    """A story attempt is starting."""

    story_id: str
    title: str
    current: int
    total: int
    attempt: int = 1


@dataclass(frozen=True)
class StoryEvent:
    """Agent output for a story, forwarded as produced."""

    story_id: str
    event: StreamEvent


@dataclass(frozen=True)
class AttemptFailed:
    """An attempt ended without completing; the workspace was reverted."""

    story_id: str
    attempt: int
    reason: str | None = None


@dataclass(frozen=True)
class Error:
    message: str


@dataclass(frozen=True)
class MaxRetriesExceeded:
    story_id: str


@dataclass(frozen=True)
class AwaitingUserChoice:
    """The run has stopped and needs a keep/cleanup decision."""

    reply: "ReplySender" = field(repr=False)


@dataclass(frozen=True)
class Complete:
    """Last event of a run."""

    state: LoopState


LoopEvent = (
    StoryProgress
    | StoryEvent
    | AttemptFailed
    | Error
    | MaxRetriesExceeded
    | AwaitingUserChoice
    | Complete
)


# =============================================================================
# One-shot reply channel
# =============================================================================


class ReplySender:
    """Sending half of a one-shot channel. At most one value is delivered."""

    def __init__(self, future: concurrent.futures.Future) -> None:
        self._future = future

    @property
    def closed(self) -> bool:
        return self._future.done()

    def send(self, option: CompletionOption) -> bool:
        """Deliver the decision.

        Returns:
            False if a value was already sent or the channel was closed
        """
        try:
            self._future.set_result(option)
        except concurrent.futures.InvalidStateError:
            return False
        return True

    def close(self) -> None:
        """Drop the channel without a decision."""
        try:
            self._future.set_result(None)
        except concurrent.futures.InvalidStateError:
            pass

    def __del__(self) -> None:
        self.close()


class ReplyReceiver:
    """Receiving half of a one-shot channel."""

    def __init__(self, future: concurrent.futures.Future) -> None:
        self._future = future

    async def recv(self) -> CompletionOption | None:
        """Wait for the decision; None means the sender was dropped."""
        return await asyncio.wrap_future(self._future)

    def wait(self, timeout: float | None = None) -> CompletionOption | None:
        """Blocking variant of recv() for non-async callers.

        Raises:
            TimeoutError: If no decision arrives within the timeout
        """
        return self._future.result(timeout=timeout)


def oneshot() -> tuple[ReplySender, ReplyReceiver]:
    """Create a connected sender/receiver pair."""
    future: concurrent.futures.Future = concurrent.futures.Future()
    return ReplySender(future), ReplyReceiver(future)

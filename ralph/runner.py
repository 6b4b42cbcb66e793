"""Run the orchestrator on a dedicated thread.

The host (CLI or any synchronous caller) keeps its own thread free: it reads
events from ``handle.events``, answers the completion handshake, and can
request a cooperative stop or force a shutdown.

    handle = start_loop(orchestrator)
    while True:
        event = handle.events.get()
        ...
        if isinstance(event, Complete):
            break
    handle.join()
"""

import asyncio
import logging
import queue
import threading

from ralph.events import LoopEvent
from ralph.models import LoopState
from ralph.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class LoopHandle:
    """Host-side handle to an orchestrator running on its own thread.

    Attributes:
        orchestrator: The orchestrator being run
        events: Ordered queue of LoopEvents produced by the run
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self.events: queue.Queue[LoopEvent] = orchestrator.events
        self._thread = threading.Thread(
            target=self._thread_main, name="ralph-loop", daemon=True
        )
        self._started = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._result: LoopState | None = None
        self._error: BaseException | None = None
        self._cancelled = False

    def start(self) -> None:
        self._thread.start()
        self._started.wait()

    # -------------------------------------------------------------------------
    # Thread side
    # -------------------------------------------------------------------------

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._main())
        except asyncio.CancelledError:
            logger.warning("Story loop was shut down before completing")
        except Exception as e:
            logger.exception("Story loop crashed")
            self._error = e
        finally:
            # Unblock start() even if the loop failed before _main ran
            self._started.set()

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.current_task()
        self._started.set()
        self._result = await self.orchestrator.run()

    # -------------------------------------------------------------------------
    # Host side
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    @property
    def result(self) -> LoopState | None:
        """Final loop state, or None if the run did not finish normally."""
        return self._result

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def stop(self) -> None:
        """Request a cooperative stop after the current attempt."""
        self.orchestrator.request_stop()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop thread to finish.

        Returns:
            True if the thread has finished
        """
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def shutdown(self, grace_seconds: float) -> bool:
        """Stop cooperatively, escalating to cancellation after a grace period.

        Cancellation unwinds the running attempt, which kills the agent
        process; this call does not wait for that to finish.

        Returns:
            True if the loop finished within the grace period
        """
        self.stop()
        if self.join(grace_seconds):
            return True
        self.cancel()
        return False

    def cancel(self) -> None:
        """Cancel the loop task immediately, without waiting."""
        loop, task = self._loop, self._task
        if loop is None or task is None or loop.is_closed():
            return
        logger.warning("Cancelling story loop")
        self._cancelled = True
        try:
            loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            # Loop closed between the check and the call
            pass


def start_loop(orchestrator: Orchestrator) -> LoopHandle:
    """Start the orchestrator on a dedicated thread with its own event loop."""
    handle = LoopHandle(orchestrator)
    handle.start()
    return handle

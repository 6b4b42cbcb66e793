"""Story loop orchestration.

Drives one change from start to finish:

    1. Ensure the shared learnings file exists
    2. Create the checkpoint branch
    3. For each incomplete story: prompt the agent, stream its output,
       evaluate the promise signal, then commit a checkpoint (success) or
       revert and retry with the failure reason (failure)
    4. Ask the consumer whether to keep or clean up the branch
    5. Resolve the branch and emit Complete

Failures during an attempt (agent timeout, spawn failure, malformed output)
count against the story's retries exactly like an explicit FAILED
signal. Failures outside an attempt (init, backlog access, revert) abort the
story loop, but the completion handshake and Complete still happen.

A stop request is honored before the next attempt starts; it never
interrupts an attempt in progress.
"""

import asyncio
import logging
import queue
import threading
import time
from pathlib import Path

from opentelemetry import trace

from ralph import telemetry
from ralph.agent import CodingAgent
from ralph.checkpoint import Checkpoint, CompletionOption
from ralph.config import LoopConfig
from ralph.errors import AgentError, CheckpointError, ParseError, WorkSourceError
from ralph.events import (
    AttemptFailed,
    AwaitingUserChoice,
    Complete,
    Error,
    LoopEvent,
    MaxRetriesExceeded,
    StoryEvent,
    StoryProgress,
    oneshot,
)
from ralph.learnings import ensure_learnings_file, read_learnings
from ralph.models import Done, LoopOutcome, LoopState, Message, Prompt, Story
from ralph.prompt import build_prompt
from ralph.signals import Signal, SignalKind, detect_signal
from ralph.source import WorkItemSource

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs the story loop for one change.

    Usage:
        orchestrator = Orchestrator("add-auth", source, agent, config=config)
        state = await orchestrator.run()

    Events are put on ``orchestrator.events`` as they happen; call
    ``request_stop()`` from any thread to end the run after the current
    attempt.

    Attributes:
        change_name: Change being processed
        source: Work-item source supplying stories
        agent: Coding agent backend
        checkpoint: Checkpoint manager for the working branch
        events: Outward event queue
        state: Live loop state, owned by the loop
    """

    def __init__(
        self,
        change_name: str,
        source: WorkItemSource,
        agent: CodingAgent,
        config: LoopConfig | None = None,
        checkpoint: Checkpoint | None = None,
        events: "queue.Queue[LoopEvent] | None" = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.change_name = change_name
        self.source = source
        self.agent = agent
        self.config = config or LoopConfig()
        self.checkpoint = checkpoint or Checkpoint(
            change_name,
            workspace=self.config.workspace,
            timeout=self.config.command_timeout_seconds,
        )
        self.events: queue.Queue[LoopEvent] = events if events is not None else queue.Queue()
        self.tracer = tracer or trace.get_tracer("ralph")
        self.state = LoopState(change_name=change_name)

        self._stop = threading.Event()
        self._checkpointed: set[str] = set()
        self._already_complete = 0

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the loop to stop before its next attempt. Thread-safe."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> LoopState:
        """Run the loop to a terminal state and perform the handshake.

        Returns:
            Final snapshot of the loop state, with ``outcome`` set
        """
        with self.tracer.start_as_current_span("ralph.run") as span:
            span.set_attribute("change.name", self.change_name)
            span.set_attribute("loop.max_retries", self.config.max_retries)

            self.state.outcome = await self._run_stories()
            logger.info(f"Story loop finished: {self.state.outcome.value}")

            option = await self._await_choice()
            try:
                await self.checkpoint.cleanup(option)
            except CheckpointError as e:
                logger.error(f"Checkpoint cleanup failed: {e}")
                self._emit(Error(f"Checkpoint cleanup failed: {e}"))

            span.set_attribute("loop.outcome", self.state.outcome.value)
            span.set_attribute("loop.completed_stories", self.state.completed_stories)
            span.set_attribute("loop.total_tokens", self.state.total_tokens)
            span.set_attribute("loop.total_cost_usd", self.state.total_cost_usd)
            span.set_attribute("loop.completion_option", option.value)

            final = self.state.snapshot()
            self._emit(Complete(final))
            return final

    async def _run_stories(self) -> LoopOutcome:
        learnings_file: Path | None = None
        try:
            learnings_file = await asyncio.to_thread(
                ensure_learnings_file, self.change_name, self.config.learnings_dir
            )
        except OSError as e:
            # Prompts go out without learnings rather than blocking the run
            logger.warning(f"Learnings file unavailable: {e}")
            self._emit(Error(f"Learnings file unavailable: {e}"))

        try:
            await self.checkpoint.init()
        except CheckpointError as e:
            logger.error(f"Checkpoint init failed: {e}")
            self._emit(Error(f"Failed to initialize checkpoint: {e}"))
            return LoopOutcome.ABORTED

        try:
            return await self._story_loop(learnings_file)
        except (WorkSourceError, CheckpointError) as e:
            logger.error(f"Story loop aborted: {e}")
            self._emit(Error(str(e)))
            return LoopOutcome.ABORTED
        except Exception as e:
            logger.exception("Unexpected error in story loop")
            self._emit(Error(f"Unexpected error: {e}"))
            return LoopOutcome.ABORTED

    async def _story_loop(self, learnings_file: Path | None) -> LoopOutcome:
        completed, total = await self.source.story_counts()
        self._already_complete = completed
        self.state.total_stories = total

        failure_reason: str | None = None

        while True:
            if self.stop_requested:
                logger.info("Stop requested; ending story loop")
                return LoopOutcome.USER_STOPPED

            story = await self.source.next_incomplete_story()
            if story is None:
                return LoopOutcome.ALL_COMPLETE

            if story.id in self._checkpointed:
                raise WorkSourceError(
                    f"Story {story.id} is still incomplete after its checkpoint; "
                    "its tasks were not marked done"
                )

            if story.id != self.state.current_story_id:
                self.state.current_story_id = story.id
                self.state.retry_count = 0
                failure_reason = None

            attempt = self.state.retry_count + 1
            current = self._already_complete + self.state.completed_stories + 1
            self._emit(
                StoryProgress(
                    story_id=story.id,
                    title=story.title,
                    current=current,
                    total=max(self.state.total_stories, current),
                    attempt=attempt,
                )
            )

            with self.tracer.start_as_current_span("ralph.story") as story_span:
                story_span.set_attribute("story.id", story.id)
                story_span.set_attribute("story.title", story.title)
                story_span.set_attribute("story.attempt", attempt)

                signal = await self._attempt(story, attempt, failure_reason, learnings_file)
                story_span.set_attribute("story.signal", signal.kind.value)

                if signal.succeeded:
                    await self.source.mark_story_complete(story.id)
                    await self.checkpoint.commit_checkpoint(story.id)
                    self._checkpointed.add(story.id)
                    self.state.completed_stories += 1
                    self.state.retry_count = 0
                    failure_reason = None
                    _record_story(story.id, "complete")
                    continue

                self.state.retry_count += 1
                # Failed-attempt changes never survive, even when giving up
                await self.checkpoint.revert()
                _record_revert()

                if self.state.retry_count >= self.config.max_retries:
                    logger.warning(
                        f"Story {story.id} failed {self.state.retry_count} time(s); giving up"
                    )
                    _record_story(story.id, "failed")
                    self._emit(MaxRetriesExceeded(story_id=story.id))
                    return LoopOutcome.MAX_RETRIES_EXCEEDED

                failure_reason = signal.reason
                self._emit(AttemptFailed(story_id=story.id, attempt=attempt, reason=signal.reason))

    # -------------------------------------------------------------------------
    # Attempt
    # -------------------------------------------------------------------------

    async def _attempt(
        self,
        story: Story,
        attempt: int,
        failure_reason: str | None,
        learnings_file: Path | None,
    ) -> Signal:
        """Run one agent attempt at a story and evaluate its signal."""
        context = await self.source.context_for(story.id)
        learnings = None
        if learnings_file is not None:
            learnings = await asyncio.to_thread(
                read_learnings, self.change_name, self.config.learnings_dir
            )

        prompt = build_prompt(
            story,
            context,
            tool_hint=self.source.tool_usage_hint(),
            learnings_file=learnings_file,
            learnings=learnings,
            failure_reason=failure_reason,
        )

        start = time.monotonic()
        with self.tracer.start_as_current_span("ralph.attempt") as span:
            span.set_attribute("story.id", story.id)
            span.set_attribute("attempt.number", attempt)
            span.set_attribute("attempt.retry", failure_reason is not None)

            outcome = "error"
            try:
                output, parse_errors = await asyncio.wait_for(
                    self._stream(story, prompt),
                    timeout=self.config.agent_timeout_seconds,
                )
            except TimeoutError:
                message = f"Agent timed out after {self.config.agent_timeout_seconds:g}s"
                logger.warning(f"Story {story.id}: {message}")
                self._emit(Error(f"Story {story.id}: {message}"))
                signal = Signal(SignalKind.FAILED, message)
            except AgentError as e:
                logger.warning(f"Story {story.id}: agent error: {e}")
                self._emit(Error(f"Story {story.id}: agent error: {e}"))
                signal = Signal(SignalKind.FAILED, str(e))
            else:
                signal = detect_signal(output)
                if signal.kind is SignalKind.NONE and parse_errors:
                    signal = Signal(
                        SignalKind.FAILED,
                        f"Agent produced {len(parse_errors)} malformed output line(s): "
                        f"{parse_errors[0]}",
                    )
                outcome = signal.kind.value

            duration = time.monotonic() - start
            span.set_attribute("attempt.outcome", outcome)
            span.set_attribute("attempt.duration_seconds", duration)
            if signal.reason:
                span.set_attribute("attempt.reason", signal.reason[:200])

        _record_attempt(outcome, duration)
        logger.info(
            f"Story {story.id} attempt {attempt}: {signal.kind.value}"
            + (f" ({signal.reason})" if signal.reason else "")
        )
        return signal

    async def _stream(self, story: Story, prompt: Prompt) -> tuple[str, list[ParseError]]:
        """Drive one agent stream to the end, forwarding its events.

        Returns:
            Accumulated output text and any malformed-line errors
        """
        parts: list[str] = []
        parse_errors: list[ParseError] = []

        async with self.agent.run(prompt) as stream:
            async for item in stream:
                if isinstance(item, ParseError):
                    parse_errors.append(item)
                    self._emit(Error(f"Story {story.id}: {item}"))
                    continue

                self._emit(StoryEvent(story_id=story.id, event=item))

                if isinstance(item, Message):
                    parts.append(item.text)
                elif isinstance(item, Done):
                    response = item.response
                    parts.append(response.content)
                    self.state.total_tokens += response.tokens
                    self.state.total_cost_usd += response.cost
                    _record_usage(response.tokens, response.cost)

        return "\n".join(parts), parse_errors

    # -------------------------------------------------------------------------
    # Completion handshake
    # -------------------------------------------------------------------------

    async def _await_choice(self) -> CompletionOption:
        """Ask the consumer to keep or clean up the working branch.

        A dropped reply channel means KEEP; work is never discarded
        implicitly.
        """
        with self.tracer.start_as_current_span("ralph.handshake") as span:
            sender, receiver = oneshot()
            self._emit(AwaitingUserChoice(reply=sender))
            # Only the event may keep the sender alive, so dropping it is seen
            del sender

            option = await receiver.recv()
            if option is None:
                logger.warning("Completion choice was dropped; keeping the working branch")
                option = CompletionOption.KEEP

            span.set_attribute("handshake.option", option.value)
            return option

    def _emit(self, event: LoopEvent) -> None:
        self.events.put(event)


# =============================================================================
# Metrics
# =============================================================================


def _record_story(story_id: str, status: str) -> None:
    try:
        telemetry.stories_counter.add(1, {"status": status})
    except (AttributeError, NameError):
        # Counters not initialized - telemetry disabled
        pass


def _record_attempt(outcome: str, duration: float) -> None:
    try:
        telemetry.attempts_counter.add(1, {"outcome": outcome})
        telemetry.attempt_duration.record(duration, {"outcome": outcome})
    except (AttributeError, NameError):
        pass


def _record_revert() -> None:
    try:
        telemetry.reverts_counter.add(1)
    except (AttributeError, NameError):
        pass


def _record_usage(tokens: int, cost_usd: float) -> None:
    try:
        telemetry.tokens_counter.add(tokens)
        telemetry.cost_counter.add(cost_usd)
    except (AttributeError, NameError):
        pass

"""Data models for the story loop.

Defines dataclasses for backlog items (stories, tasks, scenarios), agent
prompts and responses, the events produced by a single agent run, and the
loop state reported to consumers.
"""

from dataclasses import dataclass, field, replace
from enum import Enum

# =============================================================================
# Backlog items
# =============================================================================


@dataclass(frozen=True)
class Task:
    """A single actionable task within a story."""

    id: str
    description: str
    done: bool = False


@dataclass(frozen=True)
class Story:
    """A unit of backlog work processed per loop iteration."""

    id: str
    title: str
    tasks: tuple[Task, ...] = ()

    @property
    def is_complete(self) -> bool:
        """True if the story has tasks and all of them are done."""
        return bool(self.tasks) and all(t.done for t in self.tasks)

    @property
    def completed_tasks(self) -> int:
        return sum(1 for t in self.tasks if t.done)


@dataclass(frozen=True)
class Scenario:
    """A verification scenario with Given/When/Then steps."""

    name: str
    capability: str
    given: tuple[str, ...] = ()
    when: str = ""
    then: tuple[str, ...] = ()


@dataclass(frozen=True)
class VerifyCommands:
    """Verification commands the agent should run before signaling."""

    checks: tuple[str, ...] = ()
    tests: str = ""


@dataclass(frozen=True)
class StoryContext:
    """Everything an agent needs to work on one story."""

    story: Story
    scenarios: tuple[Scenario, ...] = ()
    proposal_text: str = ""
    design_text: str = ""
    verify_commands: VerifyCommands = field(default_factory=VerifyCommands)

    @property
    def tasks(self) -> tuple[Task, ...]:
        return self.story.tasks


# =============================================================================
# Agent interaction
# =============================================================================


@dataclass(frozen=True)
class Prompt:
    """Two-part prompt handed to the coding agent. Built fresh per attempt."""

    system: str
    user: str


@dataclass(frozen=True)
class Response:
    """Summary metadata of one completed agent run.

    Captures the terminal ``result`` record of the agent's stream-json output.
    """

    content: str
    turns: int = 0
    tokens: int = 0
    cost: float = 0.0


@dataclass(frozen=True)
class Message:
    """Incremental agent output."""

    text: str


@dataclass(frozen=True)
class Done:
    """Terminal event of a single agent run; nothing follows it."""

    response: Response


StreamEvent = Message | Done


# =============================================================================
# Loop state
# =============================================================================


class LoopOutcome(str, Enum):
    """Run-level terminal state."""

    ALL_COMPLETE = "all_complete"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    USER_STOPPED = "user_stopped"
    ABORTED = "aborted"


@dataclass
class LoopState:
    """Progress of a run. Owned by the orchestrator, published as snapshots.

    Attributes:
        change_name: Change whose backlog is being processed
        current_story_id: Story currently being attempted, if any
        total_stories: Number of stories in the backlog
        completed_stories: Stories that reached a checkpoint commit
        retry_count: Failed attempts so far for the current story
        total_tokens: Tokens used across all attempts
        total_cost_usd: Cost across all attempts
        outcome: Terminal state once the run has finished
    """

    change_name: str
    current_story_id: str | None = None
    total_stories: int = 0
    completed_stories: int = 0
    retry_count: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    outcome: LoopOutcome | None = None

    def snapshot(self) -> "LoopState":
        """Return an independent copy safe to hand to another thread."""
        return replace(self)

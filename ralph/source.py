"""Work-item source interface.

The loop never parses backlog files itself; it asks a WorkItemSource for the
next story, the context needed to prompt for it, and records completion back
through it. One concrete source is chosen when the orchestrator is built.
"""

from abc import ABC, abstractmethod

from ralph.models import Story, StoryContext


class WorkItemSource(ABC):
    """Backlog of stories for one change.

    Implementations raise WorkSourceError when the backlog cannot be read or
    updated.
    """

    @abstractmethod
    async def next_incomplete_story(self) -> Story | None:
        """Return the first story with unfinished tasks, or None when done."""

    @abstractmethod
    async def context_for(self, story_id: str) -> StoryContext:
        """Return tasks, scenarios, change documents and verify commands."""

    @abstractmethod
    def tool_usage_hint(self) -> str:
        """Tool-specific instructions folded into every prompt."""

    @abstractmethod
    async def mark_story_complete(self, story_id: str) -> None:
        """Record that a story's attempt signaled completion.

        Called before the story's checkpoint commit, so any backlog file
        changes land in that checkpoint.
        """

    async def story_counts(self) -> tuple[int, int]:
        """Return (completed, total) story counts.

        Sources that cannot count stories report (0, 0).
        """
        return 0, 0

"""OpenSpec change directories as a work-item source.

A change lives in ``openspec/changes/<name>/``:

    proposal.md           motivation and scope
    design.md             technical decisions
    tasks.md              stories and tasks
    specs/<cap>/spec.md   requirements with verification scenarios

tasks.md format:
    ## 1. Project Setup          story "1"
    - [ ] 1.1 Create module      open task
    - [x] 1.2 Add config         finished task

spec.md format:
    ### Requirement: Name
    #### Scenario: Name
    - **GIVEN** ...
    - **WHEN** ...
    - **THEN** ...
    - **AND** ...

tasks.md is read fresh on every query since agents edit it while working.
"""

import asyncio
import logging
import re
from pathlib import Path

from ralph.errors import WorkSourceError
from ralph.models import Scenario, Story, StoryContext, Task, VerifyCommands
from ralph.source import WorkItemSource

logger = logging.getLogger(__name__)

STORY_HEADER = re.compile(r"^##\s+(\d+)\.\s+(.+)$")
TASK_LINE = re.compile(r"^- \[([ xX])\] (\S+)(?: (.*))?$")
STEP_KEYWORDS = ("GIVEN", "WHEN", "THEN", "AND")


# =============================================================================
# Parsing
# =============================================================================


def parse_tasks_md(content: str) -> list[Story]:
    """Parse tasks.md into stories.

    Headers whose id is not numeric are not stories; tasks under them (or
    before the first story) are ignored.
    """
    stories: list[Story] = []
    current: tuple[str, str] | None = None
    tasks: list[Task] = []

    def flush() -> None:
        if current is not None:
            stories.append(Story(id=current[0], title=current[1], tasks=tuple(tasks)))

    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("## "):
            flush()
            tasks = []
            header = STORY_HEADER.match(stripped)
            current = (header.group(1), header.group(2).strip()) if header else None
            continue

        task = parse_task_line(stripped)
        if task is not None and current is not None:
            tasks.append(task)

    flush()
    return stories


def parse_task_line(line: str) -> Task | None:
    """Parse "- [ ] 1.1 Description" into a Task, or None if not a task."""
    match = TASK_LINE.match(line)
    if not match:
        return None
    return Task(
        id=match.group(2),
        description=(match.group(3) or "").strip(),
        done=match.group(1) in ("x", "X"),
    )


def extract_step(line: str) -> str:
    """Strip the bullet and GIVEN/WHEN/THEN/AND keyword from a step line."""
    text = line.strip().lstrip("-").strip()
    text = text.removeprefix("**").strip()
    for keyword in STEP_KEYWORDS:
        if text.upper().startswith(keyword):
            return text[len(keyword) :].removeprefix("**").strip()
    return text


def parse_spec_md(content: str, capability: str) -> list[Scenario]:
    """Parse the scenarios of one capability's spec.md."""
    scenarios: list[Scenario] = []
    name: str | None = None
    given: list[str] = []
    when = ""
    then: list[str] = []

    def flush() -> None:
        if name is not None:
            scenarios.append(
                Scenario(
                    name=name,
                    capability=capability,
                    given=tuple(given),
                    when=when,
                    then=tuple(then),
                )
            )

    for line in content.splitlines():
        stripped = line.strip()

        if stripped.startswith("### Requirement:"):
            flush()
            name = None
            continue

        if stripped.startswith("#### Scenario:"):
            flush()
            name = stripped.removeprefix("#### Scenario:").strip()
            given, when, then = [], "", []
            continue

        if name is None or not stripped.startswith("-"):
            continue

        keyword = stripped.lstrip("-").strip().removeprefix("**").upper()
        step = extract_step(stripped)
        if not step:
            continue
        if keyword.startswith("GIVEN"):
            given.append(step)
        elif keyword.startswith("WHEN"):
            when = step
        elif keyword.startswith("THEN"):
            then.append(step)
        elif keyword.startswith("AND"):
            # AND continues whichever clause came last
            (then if when else given).append(step)

    flush()
    return scenarios


def infer_verify_commands(root: Path) -> VerifyCommands:
    """Pick verification commands from the project's build files."""
    if (root / "pyproject.toml").exists() or (root / "setup.py").exists():
        return VerifyCommands(checks=("python -m mypy .",), tests="python -m pytest")
    if (root / "Cargo.toml").exists():
        return VerifyCommands(
            checks=("cargo check", "cargo clippy -- -D warnings"), tests="cargo test"
        )
    if (root / "package.json").exists():
        return VerifyCommands(checks=("npm run lint",), tests="npm test")
    return VerifyCommands()


def mark_tasks_done(content: str, story_id: str) -> str:
    """Return tasks.md content with every task of one story checked."""
    lines = content.splitlines(keepends=True)
    in_story = False
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith("## "):
            header = STORY_HEADER.match(stripped)
            in_story = bool(header) and header.group(1) == story_id
            continue
        if in_story and stripped.startswith("- [ ] "):
            lines[i] = line.replace("- [ ] ", "- [x] ", 1)
    return "".join(lines)


# =============================================================================
# Source
# =============================================================================


class OpenSpecSource(WorkItemSource):
    """Work-item source backed by an OpenSpec change directory.

    Args:
        change_name: Change under ``openspec/changes/``
        root: Project root containing the ``openspec`` directory
        verify_commands: Overrides the commands inferred from build files
    """

    def __init__(
        self,
        change_name: str,
        root: Path | None = None,
        verify_commands: VerifyCommands | None = None,
    ) -> None:
        self.change_name = change_name
        self.root = root if root is not None else Path.cwd()
        self.verify_commands = verify_commands

    @property
    def change_dir(self) -> Path:
        return self.root / "openspec" / "changes" / self.change_name

    @property
    def tasks_file(self) -> Path:
        return self.change_dir / "tasks.md"

    async def stories(self) -> list[Story]:
        content = await asyncio.to_thread(self._read_tasks)
        return parse_tasks_md(content)

    async def next_incomplete_story(self) -> Story | None:
        for story in await self.stories():
            # A story without tasks has nothing for an agent to do
            if story.tasks and not story.is_complete:
                return story
        return None

    async def context_for(self, story_id: str) -> StoryContext:
        return await asyncio.to_thread(self._load_context, story_id)

    async def mark_story_complete(self, story_id: str) -> None:
        await asyncio.to_thread(self._mark_complete, story_id)

    async def story_counts(self) -> tuple[int, int]:
        stories = await self.stories()
        return sum(1 for s in stories if s.is_complete), len(stories)

    def tool_usage_hint(self) -> str:
        change_dir = self.change_dir
        return f"""## OpenSpec Change

The change files are located at: `{change_dir}`

- `{change_dir}/proposal.md` - Motivation and scope
- `{change_dir}/design.md` - Technical decisions
- `{change_dir}/tasks.md` - Stories and tasks to implement
- `{change_dir}/specs/` - Detailed requirements

Mark each task complete as you finish it by editing `{change_dir}/tasks.md`:
change `- [ ]` to `- [x]` on the task's line, for example
`- [ ] 1.1 Task description` becomes `- [x] 1.1 Task description`.
"""

    def _read_tasks(self) -> str:
        if not self.tasks_file.exists():
            raise WorkSourceError(f"tasks.md not found at: {self.tasks_file}")
        try:
            return self.tasks_file.read_text(encoding="utf-8")
        except OSError as e:
            raise WorkSourceError(f"Failed to read {self.tasks_file}: {e}") from e

    def _read_optional(self, name: str) -> str:
        path = self.change_dir / name
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def _load_scenarios(self) -> tuple[Scenario, ...]:
        specs_dir = self.change_dir / "specs"
        if not specs_dir.is_dir():
            return ()
        scenarios: list[Scenario] = []
        for spec_file in sorted(specs_dir.glob("*/spec.md")):
            content = spec_file.read_text(encoding="utf-8")
            scenarios.extend(parse_spec_md(content, spec_file.parent.name))
        return tuple(scenarios)

    def _load_context(self, story_id: str) -> StoryContext:
        stories = parse_tasks_md(self._read_tasks())
        story = next((s for s in stories if s.id == story_id), None)
        if story is None:
            raise WorkSourceError(f"Story not found: {story_id}")

        try:
            return StoryContext(
                story=story,
                scenarios=self._load_scenarios(),
                proposal_text=self._read_optional("proposal.md"),
                design_text=self._read_optional("design.md"),
                verify_commands=self.verify_commands or infer_verify_commands(self.root),
            )
        except OSError as e:
            raise WorkSourceError(f"Failed to read change {self.change_name}: {e}") from e

    def _mark_complete(self, story_id: str) -> None:
        content = self._read_tasks()
        updated = mark_tasks_done(content, story_id)
        if updated == content:
            return
        try:
            self.tasks_file.write_text(updated, encoding="utf-8")
        except OSError as e:
            raise WorkSourceError(f"Failed to update {self.tasks_file}: {e}") from e
        logger.info(f"Marked tasks of story {story_id} complete in {self.tasks_file}")

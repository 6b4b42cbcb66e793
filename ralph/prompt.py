"""Prompt construction for one story attempt.

The system part carries the rules of the loop (single-story scope, the
promise protocol, where to record learnings, tool instructions from the
work-item source). The user part carries the story itself: tasks, change
context, verification scenarios and commands, and the reason the previous
attempt failed when retrying.
"""

from pathlib import Path

from ralph.models import Prompt, Scenario, Story, StoryContext, Task, VerifyCommands
from ralph.signals import COMPLETE_TOKEN

FAILED_EXAMPLE = "<promise>FAILED: {reason}</promise>"

# Proposal/design text beyond this many characters is truncated
MAX_CONTEXT_CHARS = 4000


def build_prompt(
    story: Story,
    context: StoryContext,
    tool_hint: str = "",
    learnings_file: Path | None = None,
    learnings: str | None = None,
    failure_reason: str | None = None,
) -> Prompt:
    """Build the two-part prompt for an attempt at a story.

    Args:
        story: Story being attempted
        context: Tasks, scenarios and change documents for the story
        tool_hint: Tool-specific instructions from the work-item source
        learnings_file: Shared learnings file agents should append to
        learnings: Current learnings content, if any has been recorded
        failure_reason: Reason the previous attempt failed, when retrying

    Returns:
        Prompt with system and user parts
    """
    return Prompt(
        system=_build_system(story, tool_hint, learnings_file, learnings),
        user=_build_user(story, context, failure_reason),
    )


def _build_system(
    story: Story,
    tool_hint: str,
    learnings_file: Path | None,
    learnings: str | None,
) -> str:
    sections = [
        f"""You are working autonomously inside a loop that implements a change one
story at a time. Each story runs in a fresh session; work that is not finished
when you stop is discarded and the story is retried.

## Rules

- Complete all tasks in **Story {story.id} only**. Do not work on other stories.
- The orchestrator will handle the next story after you complete this one.
- Do not commit, branch, or otherwise change git history. The orchestrator
  checkpoints your work when you signal completion.

## Completion Signal

After completing all tasks in this story:

1. Run the verification commands.
2. If all verification passes, output: `{COMPLETE_TOKEN}`
3. If verification fails, fix issues and re-verify before signaling.
4. If you cannot complete the story, output: `{FAILED_EXAMPLE}`
   with a short reason. The reason is passed to the next attempt.

**Important**: Only output `{COMPLETE_TOKEN}` after ALL tasks in this story
are done AND verification passes.
"""
    ]

    if learnings_file is not None:
        sections.append(
            f"""## Shared Learnings

Record discoveries, decisions, and gotchas that later stories should know
about by appending them to `{learnings_file}`. Keep entries short and do not
remove existing entries.
"""
        )

    if learnings:
        sections.append(f"## Learnings From Previous Stories\n\n{learnings.strip()}\n")

    if tool_hint:
        sections.append(tool_hint.strip() + "\n")

    return "\n".join(sections)


def _build_user(story: Story, context: StoryContext, failure_reason: str | None) -> str:
    sections = [
        f"# Working on Story {story.id}: {story.title}\n",
        "## Tasks to Complete\n",
        _format_tasks(context.tasks or story.tasks),
    ]

    if context.proposal_text.strip():
        sections.append("## Proposal\n")
        sections.append(_excerpt(context.proposal_text) + "\n")

    if context.design_text.strip():
        sections.append("## Design\n")
        sections.append(_excerpt(context.design_text) + "\n")

    sections.append("## Verification Scenarios\n")
    sections.append(
        "Focus on scenarios relevant to this story's tasks. "
        "You don't need to verify unrelated scenarios.\n"
    )
    sections.append(_format_scenarios(context.scenarios))

    verification = _format_verify_commands(context.verify_commands)
    if verification:
        sections.append("## Verification Commands\n")
        sections.append(verification)

    if failure_reason:
        sections.append("## Previous attempt failed\n")
        sections.append(
            "The previous attempt at this story failed and its changes were "
            f"discarded. Reason given:\n\n> {failure_reason}\n\n"
            "Address this before signaling completion.\n"
        )

    return "\n".join(sections)


def _format_tasks(tasks: tuple[Task, ...]) -> str:
    if not tasks:
        return "(No tasks defined)\n"
    lines = [f"- {'[x]' if t.done else '[ ]'} {t.id} {t.description}" for t in tasks]
    return "\n".join(lines) + "\n"


def _format_scenarios(scenarios: tuple[Scenario, ...]) -> str:
    if not scenarios:
        return "(No scenarios defined)\n"

    lines = []
    for scenario in scenarios:
        lines.append(f"### {scenario.name} ({scenario.capability})\n")
        for given in scenario.given:
            lines.append(f"- **GIVEN** {given}")
        if scenario.when:
            lines.append(f"- **WHEN** {scenario.when}")
        for then in scenario.then:
            lines.append(f"- **THEN** {then}")
        lines.append("")
    return "\n".join(lines)


def _format_verify_commands(verify: VerifyCommands) -> str:
    parts = []
    if verify.checks:
        parts.append("Run these checks after implementing:\n")
        for check in verify.checks:
            parts.append(f"```bash\n{check}\n```")
    if verify.tests:
        parts.append(f"\nRun tests:\n```bash\n{verify.tests}\n```")
    return "\n".join(parts) + "\n" if parts else ""


def _excerpt(text: str) -> str:
    text = text.strip()
    if len(text) <= MAX_CONTEXT_CHARS:
        return text
    return text[:MAX_CONTEXT_CHARS].rstrip() + "\n\n[... truncated]"

"""Tests for prompt construction."""

from pathlib import Path

import pytest

from ralph.models import Scenario, Story, StoryContext, Task, VerifyCommands
from ralph.prompt import MAX_CONTEXT_CHARS, build_prompt


@pytest.fixture
def story() -> Story:
    return Story(
        id="2",
        title="Login endpoint",
        tasks=(
            Task("2.1", "Add route", done=True),
            Task("2.2", "Validate credentials"),
        ),
    )


@pytest.fixture
def context(story: Story) -> StoryContext:
    return StoryContext(
        story=story,
        scenarios=(
            Scenario(
                name="Valid login",
                capability="auth",
                given=("a registered user",),
                when="they post valid credentials",
                then=("a token is returned", "the token expires in 1h"),
            ),
        ),
        proposal_text="Users need to log in.",
        design_text="Use JWT tokens.",
        verify_commands=VerifyCommands(checks=("ruff check .",), tests="pytest"),
    )


class TestSystemPrompt:
    """Tests for the system part of the prompt."""

    def test_scopes_work_to_the_story(self, story, context):
        prompt = build_prompt(story, context)

        assert "Complete all tasks in **Story 2 only**" in prompt.system

    def test_describes_promise_protocol(self, story, context):
        prompt = build_prompt(story, context)

        assert "<promise>COMPLETE</promise>" in prompt.system
        assert "<promise>FAILED: {reason}</promise>" in prompt.system

    def test_includes_tool_hint(self, story, context):
        prompt = build_prompt(story, context, tool_hint="## Tool Instructions\nEdit tasks.md")

        assert "## Tool Instructions\nEdit tasks.md" in prompt.system

    def test_learnings_file_instructions(self, story, context):
        path = Path("/tmp/ralphtool/x-learnings.md")

        prompt = build_prompt(story, context, learnings_file=path)

        assert str(path) in prompt.system
        assert "## Shared Learnings" in prompt.system

    def test_learnings_content(self, story, context):
        prompt = build_prompt(story, context, learnings="- ids are strings")

        assert "## Learnings From Previous Stories" in prompt.system
        assert "- ids are strings" in prompt.system

    def test_no_learnings_sections_by_default(self, story, context):
        prompt = build_prompt(story, context)

        assert "Learnings" not in prompt.system


class TestUserPrompt:
    """Tests for the user part of the prompt."""

    def test_story_header(self, story, context):
        prompt = build_prompt(story, context)

        assert prompt.user.startswith("# Working on Story 2: Login endpoint")

    def test_task_checklist(self, story, context):
        prompt = build_prompt(story, context)

        assert "- [x] 2.1 Add route" in prompt.user
        assert "- [ ] 2.2 Validate credentials" in prompt.user

    def test_no_tasks_placeholder(self):
        story = Story(id="1", title="Empty")

        prompt = build_prompt(story, StoryContext(story=story))

        assert "(No tasks defined)" in prompt.user
        assert "(No scenarios defined)" in prompt.user

    def test_change_documents(self, story, context):
        prompt = build_prompt(story, context)

        assert "## Proposal\n\nUsers need to log in." in prompt.user
        assert "## Design\n\nUse JWT tokens." in prompt.user

    def test_long_documents_are_truncated(self, story):
        context = StoryContext(story=story, design_text="x" * (MAX_CONTEXT_CHARS + 100))

        prompt = build_prompt(story, context)

        assert "[... truncated]" in prompt.user
        assert "x" * (MAX_CONTEXT_CHARS + 1) not in prompt.user

    def test_scenarios(self, story, context):
        prompt = build_prompt(story, context)

        assert "Focus on scenarios relevant to this story" in prompt.user
        assert "### Valid login (auth)" in prompt.user
        assert "- **GIVEN** a registered user" in prompt.user
        assert "- **WHEN** they post valid credentials" in prompt.user
        assert "- **THEN** the token expires in 1h" in prompt.user

    def test_verify_commands(self, story, context):
        prompt = build_prompt(story, context)

        assert "```bash\nruff check .\n```" in prompt.user
        assert "```bash\npytest\n```" in prompt.user

    def test_failure_reason_on_retry(self, story, context):
        prompt = build_prompt(story, context, failure_reason="disk full")

        assert "## Previous attempt failed" in prompt.user
        assert "disk full" in prompt.user

    def test_no_failure_section_without_reason(self, story, context):
        prompt = build_prompt(story, context, failure_reason=None)

        assert "Previous attempt failed" not in prompt.user

"""Tests for the agent process stream.

Stream tests spawn a small Python script standing in for the agent, so the
real subprocess lifecycle is exercised.
"""

import json
import os
import sys
import textwrap

import pytest

from ralph.agent import (
    AgentStream,
    ClaudeAgent,
    format_tool_call,
    parse_stream_line,
)
from ralph.errors import ParseError, ProcessSpawnError
from ralph.models import Done, Message, Prompt, Response


def assistant_text(text: str) -> str:
    return json.dumps(
        {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}
    )


def result_record(content: str = "All done", turns: int = 3, cost: float = 0.25) -> str:
    return json.dumps(
        {
            "type": "result",
            "result": content,
            "num_turns": turns,
            "total_cost_usd": cost,
            "usage": {"input_tokens": 1000, "output_tokens": 234},
        }
    )


def fake_agent(lines: list[str], then: str = "") -> list[str]:
    """argv for a process printing lines (flushed), then running `then`."""
    script = "import sys, time\n"
    for line in lines:
        script += f"print({line!r}, flush=True)\n"
    script += then
    return [sys.executable, "-c", script]


async def collect(stream: AgentStream) -> list:
    async with stream:
        return [item async for item in stream]


class TestFormatToolCall:
    """Tests for format_tool_call()."""

    def test_read_shows_filename(self):
        assert format_tool_call("Read", {"file_path": "/src/app/config.py"}) == "→ Reading config.py..."

    def test_edit_and_write(self):
        assert format_tool_call("Edit", {"file_path": "a/b.py"}) == "→ Editing b.py..."
        assert format_tool_call("Write", {}) == "→ Writing file..."

    def test_bash_truncates_long_commands(self):
        result = format_tool_call("Bash", {"command": "x" * 80})

        assert result == f"→ Running: {'x' * 50}..."

    def test_search_tools(self):
        assert format_tool_call("Grep", {"pattern": "TODO"}) == "→ Searching for TODO..."
        assert format_tool_call("Glob", {"pattern": "*.py"}) == "→ Finding *.py..."

    def test_unknown_tool(self):
        assert format_tool_call("WebFetch", {}) == "→ WebFetch..."


class TestParseStreamLine:
    """Tests for parse_stream_line()."""

    def test_assistant_text_becomes_message(self):
        assert parse_stream_line(assistant_text("Working on it")) == Message("Working on it")

    def test_tool_only_assistant_record_is_summarized(self):
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "tool_use", "name": "Read", "input": {"file_path": "x/tasks.md"}},
                        {"type": "tool_use", "name": "Bash", "input": {"command": "pytest"}},
                    ]
                },
            }
        )

        assert parse_stream_line(line) == Message("→ Reading tasks.md...\n→ Running: pytest")

    def test_result_becomes_done(self):
        event = parse_stream_line(result_record())

        assert event == Done(Response(content="All done", turns=3, tokens=1234, cost=0.25))

    def test_result_with_missing_fields(self):
        event = parse_stream_line(json.dumps({"type": "result"}))

        assert event == Done(Response(content=""))

    def test_other_record_types_are_ignored(self):
        assert parse_stream_line(json.dumps({"type": "system", "subtype": "init"})) is None
        assert parse_stream_line(json.dumps({"type": "user", "message": {}})) is None
        assert parse_stream_line(json.dumps({"type": "something_new"})) is None

    def test_malformed_json_raises_parse_error(self):
        with pytest.raises(ParseError) as exc_info:
            parse_stream_line("{not json")

        assert exc_info.value.line == "{not json"

    def test_non_object_raises_parse_error(self):
        with pytest.raises(ParseError):
            parse_stream_line("[1, 2, 3]")

    @pytest.mark.parametrize(
        "record",
        [
            {"type": "result", "result": "x", "num_turns": "many"},
            {"type": "result", "result": "x", "total_cost_usd": "free"},
            {"type": "result", "result": "x", "usage": "lots"},
            {"type": "result", "result": "x", "usage": {"input_tokens": [1]}},
            {"type": "result", "result": {"text": "x"}},
            {"type": "assistant", "message": "hello"},
            {"type": "assistant", "message": {"content": 42}},
        ],
    )
    def test_wrong_field_types_raise_parse_error(self, record):
        line = json.dumps(record)

        with pytest.raises(ParseError) as exc_info:
            parse_stream_line(line)

        assert exc_info.value.line == line

    def test_wrong_types_in_ignored_records_are_ignored(self):
        assert parse_stream_line(json.dumps({"type": "system", "message": "hello"})) is None


class TestAgentStream:
    """Tests for AgentStream against a real subprocess."""

    @pytest.mark.asyncio
    async def test_yields_messages_then_done(self):
        stream = AgentStream(
            fake_agent(
                [
                    json.dumps({"type": "system", "subtype": "init"}),
                    assistant_text("step one"),
                    assistant_text("<promise>COMPLETE</promise>"),
                    result_record(),
                ]
            )
        )

        items = await collect(stream)

        assert items == [
            Message("step one"),
            Message("<promise>COMPLETE</promise>"),
            Done(Response(content="All done", turns=3, tokens=1234, cost=0.25)),
        ]

    @pytest.mark.asyncio
    async def test_nothing_after_done(self):
        """Output after the result record is never yielded."""
        stream = AgentStream(
            fake_agent([result_record(), assistant_text("late"), result_record("again")])
        )

        items = await collect(stream)

        assert len(items) == 1
        assert isinstance(items[0], Done)

    @pytest.mark.asyncio
    async def test_malformed_line_yields_parse_error(self):
        stream = AgentStream(fake_agent([assistant_text("hi"), "garbage line", result_record()]))

        items = await collect(stream)

        assert items[0] == Message("hi")
        assert isinstance(items[1], ParseError)
        assert items[1].line == "garbage line"
        assert isinstance(items[2], Done)

    @pytest.mark.asyncio
    async def test_ends_without_done_on_exit(self):
        stream = AgentStream(fake_agent([assistant_text("crashing")], then="sys.exit(1)\n"))

        items = await collect(stream)

        assert items == [Message("crashing")]
        assert stream.returncode == 1

    @pytest.mark.asyncio
    async def test_early_abandonment_terminates_process(self):
        stream = AgentStream(fake_agent([assistant_text("thinking")], then="time.sleep(60)\n"))

        async with stream:
            first = await stream.__anext__()

        assert first == Message("thinking")
        assert stream.returncode is not None

    @pytest.mark.asyncio
    async def test_exception_in_consumer_terminates_process(self):
        stream = AgentStream(fake_agent([assistant_text("thinking")], then="time.sleep(60)\n"))

        with pytest.raises(RuntimeError):
            async with stream:
                async for _ in stream:
                    raise RuntimeError("consumer failed")

        assert stream.returncode is not None

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self):
        stream = AgentStream(fake_agent([], then="time.sleep(60)\n"))
        await stream.start()

        await stream.aclose()
        await stream.aclose()

        assert stream.returncode is not None
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_missing_executable_raises_spawn_error(self):
        stream = AgentStream(["ralph-no-such-agent-xyz", "-p", "hi"])

        with pytest.raises(ProcessSpawnError, match="not found"):
            async with stream:
                pass

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, tmp_path):
        script = textwrap.dedent(
            """
            import json, os
            print(json.dumps({"type": "result", "result": os.getcwd()}), flush=True)
            """
        )
        stream = AgentStream([sys.executable, "-c", script], cwd=tmp_path)

        items = await collect(stream)

        assert items[0].response.content == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_badly_typed_result_yields_parse_error(self):
        bad_result = json.dumps({"type": "result", "result": "x", "num_turns": "many"})
        stream = AgentStream(fake_agent([assistant_text("hi"), bad_result]))

        items = await collect(stream)

        assert items[0] == Message("hi")
        assert isinstance(items[1], ParseError)
        assert items[1].line == bad_result

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")
    async def test_agent_runs_in_its_own_process_group(self):
        """A terminal Ctrl-C sent to the loop's group never reaches the agent."""
        stream = AgentStream(fake_agent([], then="time.sleep(60)\n"))

        async with stream:
            pid = stream._process.pid
            assert os.getpgid(pid) != os.getpgrp()
            assert os.getpgid(pid) == pid


class TestClaudeAgent:
    """Tests for ClaudeAgent command construction."""

    def test_build_args(self):
        agent = ClaudeAgent(max_turns=20)

        args = agent.build_args(Prompt(system="rules", user="do story 1"))

        assert args == [
            "claude",
            "-p",
            "do story 1",
            "--append-system-prompt",
            "rules",
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            "--max-turns",
            "20",
        ]

    def test_build_args_with_model(self):
        agent = ClaudeAgent(model="sonnet")

        args = agent.build_args(Prompt(system="s", user="u"))

        assert args[-2:] == ["--model", "sonnet"]

    def test_run_returns_unstarted_stream(self, tmp_path):
        agent = ClaudeAgent(command="my-claude", cwd=tmp_path)

        stream = agent.run(Prompt(system="s", user="u"))

        assert isinstance(stream, AgentStream)
        assert stream.argv[0] == "my-claude"
        assert stream.cwd == tmp_path
        assert stream.returncode is None

    def test_is_available(self):
        assert ClaudeAgent(command=sys.executable).is_available()
        assert not ClaudeAgent(command="ralph-no-such-agent-xyz").is_available()

"""Coding agent backends and their streamed output.

A backend turns a Prompt into an AgentStream: a running agent process whose
stream-json stdout is exposed as an async sequence of events. Each pull reads
one line on a worker thread, so a silent agent never blocks the event loop.

Stream items:
    Message(text)       an assistant record (text, or a tool-call summary)
    Done(Response)      the terminal "result" record; the stream ends after it
    ParseError          a line that is not valid stream-json

Other record types ("system", "user", ...) are ignored.

The agent process is terminated on every exit route: after Done, on end of
output, when the ``async with`` block exits (including cancellation and
exceptions), and as a last resort when the stream is garbage-collected.
"""

import asyncio
import json
import logging
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from types import TracebackType
from typing import IO, Any

from ralph.errors import ParseError, ProcessSpawnError
from ralph.models import Done, Message, Prompt, Response

logger = logging.getLogger(__name__)

# Seconds an agent gets to exit on its own before being terminated/killed
EXIT_GRACE_SECONDS = 2.0

StreamItem = Message | Done | ParseError


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."

    elif tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    elif tool_name == "Grep":
        pattern = tool_input.get("pattern", "")
        return f"→ Searching for {pattern}..."

    elif tool_name == "Glob":
        pattern = tool_input.get("pattern", "")
        return f"→ Finding {pattern}..."

    else:
        return f"→ {tool_name}..."


def _assistant_text(record: dict[str, Any]) -> str:
    """Extract display text from an assistant record.

    Text blocks win; a record with only tool calls is summarized with one
    line per call.
    """
    message = record.get("message") or {}
    if not isinstance(message, dict):
        raise TypeError(f"'message' is {type(message).__name__}, expected an object")

    content = message.get("content") or []
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        raise TypeError(f"'content' is {type(content).__name__}, expected a list")

    texts: list[str] = []
    tools: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            texts.append(str(item.get("text") or ""))
        elif item.get("type") == "tool_use":
            tool_input = item.get("input")
            tools.append(
                format_tool_call(
                    str(item.get("name") or ""),
                    tool_input if isinstance(tool_input, dict) else {},
                )
            )

    if any(t.strip() for t in texts):
        return "\n".join(texts)
    return "\n".join(tools)


def _result_response(record: dict[str, Any]) -> Response:
    usage = record.get("usage") or {}
    if not isinstance(usage, dict):
        raise TypeError(f"'usage' is {type(usage).__name__}, expected an object")

    content = record.get("result") or ""
    if not isinstance(content, str):
        raise TypeError(f"'result' is {type(content).__name__}, expected a string")

    return Response(
        content=content,
        turns=int(record.get("num_turns") or 0),
        tokens=int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0),
        cost=float(record.get("total_cost_usd") or 0.0),
    )


def parse_stream_line(line: str) -> Message | Done | None:
    """Classify one line of stream-json output.

    Returns:
        Message for assistant records, Done for the result record, None for
        record types the loop does not care about.

    Raises:
        ParseError: If the line is not a JSON object, or an assistant/result
            record has fields of the wrong type
    """
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise ParseError(f"Malformed agent output: {e}", line) from e

    if not isinstance(record, dict):
        raise ParseError("Malformed agent output: expected a JSON object", line)

    record_type = record.get("type")

    try:
        if record_type == "assistant":
            text = _assistant_text(record)
            return Message(text) if text else None

        if record_type == "result":
            return Done(_result_response(record))
    except (TypeError, ValueError, AttributeError) as e:
        raise ParseError(f"Malformed {record_type} record: {e}", line) from e

    return None


class AgentStream:
    """Live output of one spawned agent process.

    Usage:
        async with agent.run(prompt) as stream:
            async for item in stream:
                ...

    The process is spawned on entry (or on the first pull) and is always
    released when the block exits.
    """

    def __init__(self, argv: list[str], cwd: Path | None = None) -> None:
        self.argv = argv
        self.cwd = cwd
        self._process: subprocess.Popen | None = None
        self._stderr: IO[bytes] | None = None
        self._finished = False
        self._released = False
        self._reading = False

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    async def start(self) -> None:
        """Spawn the agent process (idempotent).

        Raises:
            ProcessSpawnError: If the executable is missing or cannot start
        """
        if self._process is not None:
            return

        self._stderr = tempfile.TemporaryFile()
        try:
            self._process = await asyncio.to_thread(
                subprocess.Popen,
                self.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
                text=True,
                errors="replace",
                bufsize=1,
                cwd=self.cwd,
                # Own session: a terminal Ctrl-C reaches only the loop, which
                # lets the attempt finish or terminates it itself.
                start_new_session=True,
            )
        except FileNotFoundError as e:
            self._stderr.close()
            raise ProcessSpawnError(f"Agent executable not found: {self.argv[0]}") from e
        except OSError as e:
            self._stderr.close()
            raise ProcessSpawnError(f"Failed to start agent: {e}") from e

        logger.debug(f"Agent started (pid {self._process.pid})")

    def __aiter__(self) -> "AgentStream":
        return self

    async def __anext__(self) -> StreamItem:
        if self._finished:
            raise StopAsyncIteration
        await self.start()
        assert self._process is not None and self._process.stdout is not None

        while True:
            self._reading = True
            line = await asyncio.to_thread(self._readline)
            if self._finished:
                # Closed while the read was in flight.
                raise StopAsyncIteration
            if not line:
                self._finished = True
                await self._release(graceful=True)
                self._log_abnormal_exit()
                raise StopAsyncIteration

            line = line.strip()
            if not line:
                continue

            try:
                event = parse_stream_line(line)
            except ParseError as e:
                logger.warning(f"Unparseable agent output: {line[:200]}")
                return e

            if event is None:
                continue

            if isinstance(event, Done):
                self._finished = True
                await self._release(graceful=True)
                self._close_stderr()
            return event

    def _readline(self) -> str:
        assert self._process is not None and self._process.stdout is not None
        try:
            return self._process.stdout.readline()
        finally:
            self._reading = False

    async def __aenter__(self) -> "AgentStream":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the stream, terminating the agent if it is still running."""
        self._finished = True
        # Signal synchronously first so the process dies even if the
        # await below is cancelled.
        self._signal_terminate()
        await self._release(graceful=False)
        self._close_stderr()

    def close(self) -> None:
        """Synchronous variant of aclose() for non-async callers."""
        self._finished = True
        self._signal_terminate()
        self._reap(graceful=False)
        self._close_stderr()

    def _signal_terminate(self) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            logger.debug(f"Terminating agent (pid {process.pid})")
            process.terminate()

    async def _release(self, graceful: bool) -> None:
        await asyncio.to_thread(self._reap, graceful)

    def _reap(self, graceful: bool) -> None:
        if self._released or self._process is None:
            return
        process = self._process
        try:
            process.wait(timeout=EXIT_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            if graceful:
                process.terminate()
                try:
                    process.wait(timeout=EXIT_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()
            else:
                process.kill()
                process.wait()
        self._released = True
        # A reader thread still blocked in readline() sees EOF and exits on
        # its own; closing the pipe under it would fail that read.
        if process.stdout is not None and not self._reading:
            process.stdout.close()

    def _close_stderr(self) -> None:
        if self._stderr is not None and not self._stderr.closed:
            self._stderr.close()

    def _log_abnormal_exit(self) -> None:
        if self._stderr is None or self._stderr.closed:
            return
        self._stderr.seek(0)
        tail = self._stderr.read()[-500:].decode("utf-8", errors="replace").strip()
        self._close_stderr()
        logger.warning(
            f"Agent output ended without a result (exit {self.returncode})"
            + (f": {tail}" if tail else "")
        )

    def __del__(self) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            process.kill()


class CodingAgent(ABC):
    """Coding agent backend. One concrete backend is chosen per run."""

    @abstractmethod
    def run(self, prompt: Prompt) -> AgentStream:
        """Create a stream that spawns the agent for this prompt."""


class ClaudeAgent(CodingAgent):
    """Claude Code backend using ``--output-format stream-json``.

    The system part of the prompt is appended to Claude's own system prompt;
    the user part is the ``-p`` prompt.
    """

    def __init__(
        self,
        command: str = "claude",
        max_turns: int = 50,
        model: str | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.command = command
        self.max_turns = max_turns
        self.model = model
        self.cwd = cwd

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def build_args(self, prompt: Prompt) -> list[str]:
        args = [
            self.command,
            "-p",
            prompt.user,
            "--append-system-prompt",
            prompt.system,
            "--output-format",
            "stream-json",
            "--verbose",  # Required for stream-json with -p
            "--dangerously-skip-permissions",
            "--max-turns",
            str(self.max_turns),
        ]
        if self.model:
            args.extend(["--model", self.model])
        return args

    def run(self, prompt: Prompt) -> AgentStream:
        return AgentStream(self.build_args(prompt), cwd=self.cwd)

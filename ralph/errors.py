"""Shared error types for the ralph package.

Every error carries a machine-readable ``code`` so callers (and the CLI)
can classify failures without string matching.
"""


class RalphError(Exception):
    """Base exception for ralph errors.

    Use this for user-facing errors that should have actionable messages.
    """

    code = "RALPH_ERROR"


class ConfigError(RalphError):
    """Invalid loop configuration."""

    code = "CONFIG_ERROR"


class LockError(RalphError):
    """The change is already being processed by another live process."""

    code = "LOCK_ERROR"


# =============================================================================
# Command execution
# =============================================================================


class CommandError(RalphError):
    """An external command could not be completed."""

    code = "COMMAND_ERROR"

    def __init__(self, message: str, command: str = ""):
        super().__init__(message)
        self.command = command


class CommandTimeout(CommandError):
    """The command did not finish within its timeout."""

    code = "COMMAND_TIMEOUT"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"Command '{command}' timed out after {timeout:g}s", command)
        self.timeout = timeout


class CommandNotFound(CommandError):
    """The executable does not exist on PATH."""

    code = "COMMAND_NOT_FOUND"

    def __init__(self, program: str):
        super().__init__(f"Command not found: {program}", program)
        self.program = program


class CommandFailed(CommandError):
    """The command exited with a non-zero status."""

    code = "COMMAND_FAILED"

    def __init__(self, command: str, stderr: str, exit_code: int | None):
        super().__init__(f"Command '{command}' failed: {stderr}", command)
        self.stderr = stderr
        self.exit_code = exit_code


# =============================================================================
# Agent process
# =============================================================================


class AgentError(RalphError):
    """The coding agent process misbehaved."""

    code = "AGENT_ERROR"


class ProcessSpawnError(AgentError):
    """The agent executable could not be started."""

    code = "PROCESS_SPAWN_ERROR"


class ParseError(AgentError):
    """A line of structured agent output could not be parsed.

    Besides being raisable, instances are yielded as items by an
    AgentStream so the consumer sees malformed output instead of
    losing it.
    """

    code = "PARSE_ERROR"

    def __init__(self, message: str, line: str = ""):
        super().__init__(message)
        self.line = line


# =============================================================================
# Checkpoints and work items
# =============================================================================


class CheckpointError(RalphError):
    """A checkpoint operation failed; the cause is chained."""

    code = "CHECKPOINT_ERROR"


class WorkSourceError(RalphError):
    """The work-item source could not supply stories or context."""

    code = "WORK_SOURCE_ERROR"

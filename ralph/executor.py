"""Timeout-bounded execution of external commands.

Every blocking command (git, backlog queries, agent helpers) runs on a worker
thread via ``asyncio.to_thread`` and is raced against its timeout, so a hung
subprocess can never stall the event loop that services cancellation and
event delivery.

The subprocess itself is started with the same timeout, which makes the
worker kill the child once the caller has stopped waiting for it.
"""

import asyncio
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ralph.config import DEFAULT_COMMAND_TIMEOUT
from ralph.errors import CommandError, CommandFailed, CommandNotFound, CommandTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandOutput:
    """Captured result of a finished command."""

    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _run_blocking(
    argv: list[str], timeout: float, cwd: Path | None
) -> subprocess.CompletedProcess:
    return subprocess.run(
        argv,
        capture_output=True,
        text=True,
        errors="replace",
        stdin=subprocess.DEVNULL,
        timeout=timeout,
        cwd=cwd,
        # Ctrl-C in the terminal must not abort a git step mid-way
        start_new_session=True,
    )


async def run_command(
    program: str,
    args: list[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    cwd: Path | None = None,
    check: bool = True,
) -> CommandOutput:
    """Run an external command off the event loop with a timeout.

    Args:
        program: Executable to run
        args: Arguments passed to the executable
        timeout: Seconds to wait before giving up on the command
        cwd: Working directory for the command
        check: If True, a non-zero exit status raises CommandFailed

    Returns:
        CommandOutput with decoded stdout/stderr and the exit status

    Raises:
        CommandTimeout: If the command exceeds the timeout
        CommandNotFound: If the executable does not exist
        CommandFailed: If check is True and the command exits non-zero
        CommandError: If the command could not be executed for another reason
    """
    argv = [program, *args]
    command = " ".join(argv)
    logger.debug(f"Running: {command}")

    try:
        completed = await asyncio.wait_for(
            asyncio.to_thread(_run_blocking, argv, timeout, cwd),
            timeout=timeout,
        )
    except (TimeoutError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Command timed out after {timeout:g}s: {command}")
        raise CommandTimeout(command, timeout) from e
    except FileNotFoundError as e:
        raise CommandNotFound(program) from e
    except OSError as e:
        raise CommandError(f"Command '{command}' could not be executed: {e}", command) from e

    output = CommandOutput(
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        returncode=completed.returncode,
    )

    if check and not output.ok:
        stderr = output.stderr.strip()
        logger.warning(f"Command failed ({output.returncode}): {command}: {stderr}")
        raise CommandFailed(command, stderr, output.returncode)

    return output


async def run_stdout(
    program: str,
    args: list[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    cwd: Path | None = None,
) -> str:
    """Run a command and return its stripped stdout.

    Raises the same errors as run_command with check=True.
    """
    output = await run_command(program, args, timeout=timeout, cwd=cwd)
    return output.stdout.strip()

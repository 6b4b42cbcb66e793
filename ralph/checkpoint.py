"""Branch-based checkpoints for the story loop.

A run works on a dedicated ``ralph/<change>`` branch. Each story that
signals completion is committed as a checkpoint; a failed attempt is thrown
away with a hard reset back to the last checkpoint. When the run ends the
branch is either kept as-is or squashed back onto the branch the run started
from, leaving the accumulated work as uncommitted changes.

Branch layout:
    <original>            branch checked out when the run started
      └─ ralph/<change>   "initial state" commit (pre-existing dirty state)
           ├─ "checkpoint: 1"
           └─ "checkpoint: 2" ...

All git invocations go through ralph.executor and are timeout-bounded.
"""

import logging
from enum import Enum
from pathlib import Path

from ralph.config import DEFAULT_COMMAND_TIMEOUT
from ralph.errors import CheckpointError, CommandError
from ralph.executor import CommandOutput, run_command

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "ralph/"
INITIAL_COMMIT_MESSAGE = "initial state"


class CompletionOption(str, Enum):
    """End-of-run decision for the checkpoint branch."""

    CLEANUP = "cleanup"  # back to the original branch, changes uncommitted
    KEEP = "keep"  # stay on the working branch with checkpoint commits


async def git_dir(workspace: Path | None = None, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Path:
    """Return the absolute ``.git`` directory of the workspace.

    Run state kept here (lock files) is never picked up by ``git add -A``.

    Raises:
        CheckpointError: If the workspace is not inside a git repository
    """
    try:
        output = await run_command(
            "git", ["rev-parse", "--absolute-git-dir"], timeout=timeout, cwd=workspace
        )
    except CommandError as e:
        raise CheckpointError(f"Not a git repository: {workspace or Path.cwd()}") from e
    return Path(output.stdout.strip())


class Checkpoint:
    """Checkpoint manager using a working branch and commits.

    Usage:
        checkpoint = Checkpoint("add-auth", workspace=Path("."))
        await checkpoint.init()
        ...
        await checkpoint.commit_checkpoint("1")   # story succeeded
        await checkpoint.revert()                 # attempt failed
        ...
        await checkpoint.cleanup(CompletionOption.CLEANUP)

    Attributes:
        change_name: Name of the change being worked on
        workspace: Git work tree the commands run in
        timeout: Per-command timeout in seconds
        original_branch: Branch (or commit) checked out before init()
    """

    def __init__(
        self,
        change_name: str,
        workspace: Path | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.change_name = change_name
        self.workspace = workspace
        self.timeout = timeout
        self.original_branch: str | None = None

    @property
    def working_branch(self) -> str:
        return f"{BRANCH_PREFIX}{self.change_name}"

    async def init(self) -> None:
        """Create the working branch and an "initial state" commit.

        Records the current branch, force-creates ``ralph/<change>`` at HEAD
        and commits everything present (possibly nothing) so that later
        reverts and the final squash have a well-defined base.

        Raises:
            CheckpointError: If any git step fails
        """
        current = (await self._git("rev-parse", "--abbrev-ref", "HEAD")).stdout.strip()
        if current == "HEAD":
            # Detached HEAD: remember the commit so cleanup can return to it.
            current = (await self._git("rev-parse", "HEAD")).stdout.strip()
        if current == self.working_branch:
            raise CheckpointError(
                f"Already on {self.working_branch}. Check out the branch the work "
                "should land on before starting a new run."
            )

        self.original_branch = current
        await self._git("checkout", "-B", self.working_branch)
        await self._git("add", "-A")
        await self._git("commit", "--allow-empty", "--no-verify", "-m", INITIAL_COMMIT_MESSAGE)
        logger.info(f"Checkpoint branch {self.working_branch} created from {current}")

    async def commit_checkpoint(self, story_id: str) -> None:
        """Commit all changes as the checkpoint for a completed story.

        The commit is created even when nothing changed, so every completed
        story has exactly one checkpoint commit.
        """
        message = f"checkpoint: {story_id}"
        await self._git("add", "-A")
        await self._git("commit", "--allow-empty", "--no-verify", "-m", message)
        logger.info(f"Checkpoint committed for story {story_id}")

    async def revert(self) -> None:
        """Discard everything since the last checkpoint.

        Resets tracked files to HEAD and removes untracked files and
        directories (ignored files are left alone).
        """
        await self._git("reset", "--hard", "HEAD")
        await self._git("clean", "-fd")
        logger.warning(f"Workspace reverted to last checkpoint on {self.working_branch}")

    async def cleanup(self, option: CompletionOption) -> None:
        """Resolve the working branch at the end of a run.

        Args:
            option: CLEANUP squashes the working branch onto the original
                branch as uncommitted changes and deletes it; KEEP leaves
                everything as it is.

        Raises:
            CheckpointError: If init() was never run or a git step fails
        """
        if option is CompletionOption.KEEP:
            logger.info(f"Keeping {self.working_branch} with its checkpoint commits")
            return

        if self.original_branch is None:
            raise CheckpointError("No original branch stored - was init() called?")

        await self._git("checkout", self.original_branch)
        await self._git("merge", "--squash", self.working_branch)
        # Unstage so the work shows up as plain modifications.
        await self._git("reset", "-q", "HEAD")
        await self._git("branch", "-D", self.working_branch)
        logger.info(
            f"Squashed {self.working_branch} onto {self.original_branch} "
            "as uncommitted changes"
        )

    async def _git(self, *args: str) -> CommandOutput:
        try:
            return await run_command(
                "git", list(args), timeout=self.timeout, cwd=self.workspace
            )
        except CommandError as e:
            raise CheckpointError(f"git {' '.join(args)} failed: {e}") from e

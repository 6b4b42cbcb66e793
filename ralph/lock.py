"""Lock manager for change execution.

Provides PID-based locking so two loops never work on the same change (and
therefore the same checkpoint branch) at once.
"""

import os
from pathlib import Path
from types import TracebackType

from ralph.errors import LockError


class ChangeLock:
    """PID-based lock for one change.

    The lock file holds the PID of the process running the loop.

    Usage:
        with ChangeLock(state_dir, "add-auth"):
            # Run loop - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, change_name: str) -> None:
        self.lock_path = state_dir / f"{change_name}.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock.

        The lock file is created exclusively, so two loops starting at the
        same moment cannot both win. Stale locks (from dead processes or with
        garbage content) are removed and taken over.

        Returns:
            True if lock acquired, False if held by another running process
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.get_holder_pid()
                if holder is not None and self._is_process_running(holder):
                    return False
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            return True

        # Another process re-created the lock between unlink and open
        return False

    def release(self) -> None:
        """Release the lock. Safe to call even if lock doesn't exist."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """Get PID of lock holder, or None if missing or unreadable."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but we don't have permission to signal it
            return True

    def __enter__(self) -> "ChangeLock":
        """Acquire lock on context entry.

        Raises:
            LockError: If lock is already held by a running process
        """
        if not self.acquire():
            holder_pid = self.get_holder_pid()
            raise LockError(f"Change already being processed (PID: {holder_pid})")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()

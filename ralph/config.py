"""Configuration for the story loop.

Provides centralized configuration with sensible defaults. Loop behaviour
(retries, timeouts, agent settings) is passed explicitly as run parameters;
only telemetry settings are read from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from ralph.errors import ConfigError

DEFAULT_MAX_RETRIES = 3
DEFAULT_COMMAND_TIMEOUT = 30.0


@dataclass
class LoopConfig:
    """Configuration for one orchestrator run.

    Attributes:
        max_retries: Attempts allowed per story before the run gives up
        command_timeout_seconds: Timeout applied to every external command
        agent_timeout_seconds: Wall-clock bound on a single agent attempt
        agent_command: Coding agent executable
        max_turns: Maximum agent conversation turns per attempt
        model: Agent model to use, or None for the agent's default
        workspace: Git work tree the agent operates on
        state_dir: Directory for lock files, or None for ``<git-dir>/ralph``
        learnings_dir: Directory holding shared learnings files
        stop_grace_seconds: How long a host waits for a cooperative stop
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT
    agent_timeout_seconds: float = 3600.0

    # Agent settings
    agent_command: str = "claude"
    max_turns: int = 50
    model: str | None = None

    # Filesystem
    workspace: Path = field(default_factory=Path.cwd)
    state_dir: Path | None = None
    learnings_dir: Path = field(default_factory=lambda: Path("/tmp/ralphtool"))

    stop_grace_seconds: float = 10.0

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "ralph"

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ConfigError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.command_timeout_seconds <= 0:
            raise ConfigError("command_timeout_seconds must be positive")
        if self.agent_timeout_seconds <= 0:
            raise ConfigError("agent_timeout_seconds must be positive")
        if self.max_turns < 1:
            raise ConfigError(f"max_turns must be at least 1, got {self.max_turns}")

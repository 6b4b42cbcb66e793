"""CLI for the story loop.

Provides command-line interface for running a change's stories through a
coding agent and for inspecting its backlog.
"""

import asyncio
import logging
import queue
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from ralph.agent import ClaudeAgent
from ralph.checkpoint import CompletionOption, git_dir
from ralph.config import DEFAULT_COMMAND_TIMEOUT, DEFAULT_MAX_RETRIES, LoopConfig
from ralph.errors import CheckpointError, ConfigError, LockError, WorkSourceError
from ralph.events import (
    AttemptFailed,
    AwaitingUserChoice,
    Complete,
    Error,
    LoopEvent,
    MaxRetriesExceeded,
    StoryEvent,
    StoryProgress,
)
from ralph.lock import ChangeLock
from ralph.models import Done, LoopOutcome, LoopState, Message
from ralph.openspec import OpenSpecSource
from ralph.orchestrator import Orchestrator
from ralph.runner import LoopHandle, start_loop
from ralph.telemetry import create_metrics, setup_telemetry

console = Console()

# Seconds between checks for a finished loop while waiting for events
EVENT_POLL_SECONDS = 0.2

# Seconds a forced shutdown waits for the agent to be killed before exiting
FORCE_EXIT_WAIT_SECONDS = 2.0


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


@click.group()
@click.version_option(package_name="ralph-loop")
def cli() -> None:
    """Ralph - Autonomous story loop for AI coding agents."""
    pass


@cli.command()
@click.argument("change")
@click.option(
    "--max-retries",
    default=DEFAULT_MAX_RETRIES,
    show_default=True,
    help="Attempts per story before giving up",
)
@click.option(
    "--timeout",
    "command_timeout",
    default=DEFAULT_COMMAND_TIMEOUT,
    show_default=True,
    help="Timeout in seconds for each git/backlog command",
)
@click.option(
    "--agent-timeout",
    default=3600.0,
    show_default=True,
    help="Timeout in seconds for a single agent attempt",
)
@click.option("--max-turns", default=50, show_default=True, help="Agent turns per attempt")
@click.option(
    "-m",
    "--model",
    type=click.Choice(["haiku", "sonnet", "opus"]),
    default=None,
    help="Claude model for story execution (default: Claude's default)",
)
@click.option(
    "--on-complete",
    type=click.Choice(["ask", "keep", "cleanup"]),
    default="ask",
    show_default=True,
    help="What to do with the ralph/<change> branch when the loop ends",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def run(
    change: str,
    max_retries: int,
    command_timeout: float,
    agent_timeout: float,
    max_turns: int,
    model: str | None,
    on_complete: str,
    verbose: bool,
) -> None:
    """Run the stories of CHANGE through the coding agent."""
    _configure_logging(verbose)

    try:
        config = LoopConfig(
            max_retries=max_retries,
            command_timeout_seconds=command_timeout,
            agent_timeout_seconds=agent_timeout,
            max_turns=max_turns,
            model=model,
        )
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)

    source = OpenSpecSource(change, root=config.workspace)
    if not source.tasks_file.exists():
        console.print(f"[red]Error:[/red] tasks.md not found at {source.tasks_file}")
        sys.exit(1)

    agent = ClaudeAgent(
        command=config.agent_command,
        max_turns=config.max_turns,
        model=config.model,
        cwd=config.workspace,
    )
    if not agent.is_available():
        console.print(
            f"[red]Error:[/red] '{config.agent_command}' not found. "
            "Is Claude Code installed and in PATH?"
        )
        sys.exit(1)

    state_dir = config.state_dir
    if state_dir is None:
        try:
            state_dir = (
                asyncio.run(git_dir(config.workspace, config.command_timeout_seconds)) / "ralph"
            )
        except CheckpointError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(1)

    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    try:
        with ChangeLock(state_dir, change):
            console.print(f"[bold]Starting change:[/bold] {change}")
            orchestrator = Orchestrator(change, source, agent, config=config, tracer=tracer)
            handle = start_loop(orchestrator)
            state = _consume_events(handle, on_complete, config.stop_grace_seconds)
    except LockError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if state is None:
        console.print("[red]Loop was shut down before it finished.[/red]")
        sys.exit(130)
    sys.exit(0 if state.outcome is LoopOutcome.ALL_COMPLETE else 1)


def _consume_events(handle: LoopHandle, on_complete: str, grace_seconds: float) -> LoopState | None:
    """Render events until the run completes or is shut down.

    First Ctrl-C requests a stop after the current attempt; a second one
    shuts the loop down without waiting for the current attempt.

    Returns:
        Final loop state, or None if the loop was shut down
    """
    interrupts = 0

    while True:
        try:
            try:
                event = handle.events.get(timeout=EVENT_POLL_SECONDS)
            except queue.Empty:
                if not handle.running and handle.events.empty():
                    return handle.result
                continue

            if isinstance(event, Complete):
                _print_summary(event.state)
                handle.join(grace_seconds)
                return event.state

            if isinstance(event, AwaitingUserChoice):
                _answer_choice(event, on_complete)
            else:
                _render_event(event)

        except KeyboardInterrupt:
            interrupts += 1
            if interrupts == 1:
                console.print(
                    "\n[yellow]Stopping after the current attempt "
                    "(Ctrl-C again to force)...[/yellow]"
                )
                handle.stop()
            else:
                console.print("\n[red]Forcing shutdown...[/red]")
                handle.shutdown(0)
                # The loop thread is a daemon; give the cancelled attempt a
                # moment to terminate the agent before the interpreter exits.
                handle.join(FORCE_EXIT_WAIT_SECONDS)
                return None


def _answer_choice(event: AwaitingUserChoice, on_complete: str) -> None:
    if on_complete != "ask":
        event.reply.send(CompletionOption(on_complete))
        return

    try:
        choice = Prompt.ask(
            "\nKeep the ralph branch with its checkpoint commits, "
            "or clean up (squash onto the original branch, uncommitted)?",
            choices=[o.value for o in CompletionOption],
            default=CompletionOption.KEEP.value,
            console=console,
        )
    except (KeyboardInterrupt, EOFError):
        console.print("\n[yellow]No choice made; keeping the branch.[/yellow]")
        event.reply.close()
        return
    event.reply.send(CompletionOption(choice))


def _render_event(event: LoopEvent) -> None:
    if isinstance(event, StoryProgress):
        retry = f" [yellow](attempt {event.attempt})[/yellow]" if event.attempt > 1 else ""
        console.print(
            f"\n[bold]Story {event.current}/{event.total}:[/bold] "
            f"{escape(event.story_id)}. {escape(event.title)}{retry}"
        )

    elif isinstance(event, StoryEvent):
        if isinstance(event.event, Message):
            for line in event.event.text.splitlines():
                if line.strip():
                    console.print(f"           {escape(line)}", style="dim")
        elif isinstance(event.event, Done):
            response = event.event.response
            console.print(
                f"  Agent finished ({response.turns} turns, "
                f"{response.tokens / 1000:.1f}k tokens, ${response.cost:.2f})"
            )

    elif isinstance(event, AttemptFailed):
        reason = f": {escape(event.reason)}" if event.reason else " without a completion signal"
        console.print(
            f"[yellow]Attempt {event.attempt} failed{reason}. "
            "Workspace reverted, retrying.[/yellow]"
        )

    elif isinstance(event, MaxRetriesExceeded):
        console.print(
            f"[bold red]Story {escape(event.story_id)} exceeded its retries; "
            "stopping.[/bold red]"
        )

    elif isinstance(event, Error):
        console.print(f"[red]Error:[/red] {escape(event.message)}")


def _print_summary(state: LoopState) -> None:
    """Print run summary."""
    status_color = {
        LoopOutcome.ALL_COMPLETE: "green",
        LoopOutcome.MAX_RETRIES_EXCEEDED: "red",
        LoopOutcome.USER_STOPPED: "yellow",
        LoopOutcome.ABORTED: "red",
    }
    outcome = state.outcome or LoopOutcome.ABORTED
    color = status_color[outcome]
    label = outcome.value.replace("_", " ").upper()

    console.print(f"\n[bold {color}]{label}[/bold {color}]")
    console.print(f"  Stories: {state.completed_stories} completed this run")
    console.print(f"  Tokens: {state.total_tokens / 1000:.1f}k")
    console.print(f"  Cost: ${state.total_cost_usd:.2f}")


@cli.command()
@click.argument("change")
def stories(change: str) -> None:
    """Show the stories of CHANGE and their task progress."""
    source = OpenSpecSource(change)
    try:
        items = asyncio.run(source.stories())
    except WorkSourceError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    if not items:
        console.print(f"[yellow]No stories found for {change}[/yellow]")
        return

    table = Table(title=f"Stories: {change}")
    table.add_column("Story")
    table.add_column("Title")
    table.add_column("Tasks", justify="right")
    table.add_column("Status")

    for story in items:
        status = "[green]complete[/green]" if story.is_complete else "pending"
        table.add_row(
            story.id,
            escape(story.title),
            f"{story.completed_tasks}/{len(story.tasks)}",
            status,
        )

    console.print(table)


def main() -> None:
    """Main entry point for the ralph CLI."""
    cli()


if __name__ == "__main__":
    main()

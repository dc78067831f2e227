"""CLI entrypoint for ralph-loop.

Typical flow:
    ralph init "Add a dark mode toggle to the settings page"
    ralph plan <session-id>
    ralph run <session-id>

or all three at once with ``ralph auto "..."``.
"""

from __future__ import annotations

import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from . import __version__
from .agent_runner import AgentRunner
from .config import Config, ExitCode
from .errors import (
    AgentNotFoundError,
    PlanningError,
    RalphError,
    SessionError,
    SessionNotPlannedError,
)
from .orchestrator import LoopOutcome, LoopResult, Orchestrator
from .planner import plan_session, refine_session
from .run_log import RunLogger
from .session import SessionStore, working_directory

# Initialize Typer app
app = typer.Typer(
    name="ralph",
    help="Run a coding agent in a loop with fresh context per iteration.",
    add_completion=False,
)

console = Console()

_RESUMABLE_OUTCOMES = (
    LoopOutcome.BLOCKED,
    LoopOutcome.REVIEW_EXHAUSTED,
    LoopOutcome.VERIFICATION_EXHAUSTED,
)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ralph version {__version__}")
        raise typer.Exit()


def _load_config(verbose: bool = False) -> Config:
    """Load configuration for the current directory and set up logging."""
    config = Config.from_env(Path.cwd())
    setup_logging(verbose or config.log_level.upper() == "DEBUG")
    return config


def _check_config(config: Config) -> None:
    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)


def _make_runner(config: Config) -> AgentRunner:
    """Create the agent runner used by plan and run."""
    return AgentRunner(
        working_dir=config.working_dir,
        agent_command=config.agent_command,
        model=config.model,
        console=console,
    )


def _ensure_agent(runner: AgentRunner) -> None:
    if not runner.check_installed():
        console.print(f"[red]Error:[/red] '{runner.agent_command}' is not installed or not in PATH")
        console.print("[dim]Install the Claude Code CLI, or set RALPH_AGENT_COMMAND[/dim]")
        raise typer.Exit(1)


def _resolve_session(store: SessionStore, session_id: Optional[str]) -> str:
    try:
        return store.resolve_id(session_id)
    except SessionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _apply_run_options(
    config: Config,
    max_iterations: Optional[int],
    no_review: bool,
    no_verify: bool,
    review_attempts: Optional[int],
    verify_attempts: Optional[int],
) -> None:
    if max_iterations is not None:
        config.max_iterations = max_iterations
    if no_review:
        config.review.enabled = False
    if no_verify:
        config.verify.enabled = False
    if review_attempts is not None:
        config.review.max_attempts = review_attempts
    if verify_attempts is not None:
        config.verify.max_attempts = verify_attempts


def _warn_working_directory(store: SessionStore, session_id: str, config: Config) -> None:
    """Warn when a session is run from a different directory than it was created in."""
    recorded = working_directory(store.read(session_id))
    if not recorded:
        return
    if os.path.realpath(recorded) != os.path.realpath(config.working_dir):
        console.print(
            f"[yellow]Warning:[/yellow] session was created in {recorded}, "
            f"but you are running it from {config.working_dir}"
        )


def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def _run_loop(
    config: Config,
    store: SessionStore,
    runner: AgentRunner,
    session_id: str,
    message: Optional[str] = None,
    reset_attempts: bool = False,
) -> LoopResult:
    """Run the orchestrator for a session and print the resume hint if needed."""
    _warn_working_directory(store, session_id, config)

    orchestrator = Orchestrator(
        config,
        store,
        runner,
        session_id,
        console=console,
        run_logger=RunLogger(config.logs_dir, session_id),
        message=message,
        reset_attempts=reset_attempts,
    )

    # SIGTERM gets the same checkpoint-and-exit treatment as Ctrl+C.
    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        result = orchestrator.run()
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        if isinstance(e, SessionNotPlannedError):
            console.print(f"[yellow]Run 'ralph plan {session_id}' first.[/yellow]")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if result.outcome in _RESUMABLE_OUTCOMES:
        console.print(f"[dim]To resume: ralph run {session_id} --reset-attempts[/dim]")
    elif result.outcome is LoopOutcome.MAX_ITERATIONS:
        console.print(f"[dim]To continue: ralph run {session_id}[/dim]")
    return result


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Run a coding agent in a loop with fresh context per iteration."""
    pass


@app.command()
def init(
    task: Optional[str] = typer.Argument(
        None,
        help="Description of your task (markdown). With --iterate, guidance for the refinement.",
    ),
    session: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Custom session id (otherwise auto-generated).",
    ),
    iterate: Optional[int] = typer.Option(
        None,
        "--iterate",
        "-i",
        help="Refine an existing session's task with this many agent passes.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Create a new session for a task, or refine an existing one."""
    config = _load_config(verbose)
    store = SessionStore(config.session_dir)

    if iterate is not None:
        _refine(config, store, session, iterate, task)
        return

    if not task:
        console.print("[red]Error:[/red] a task description is required")
        raise typer.Exit(1)

    try:
        session_id = store.create(task, session)
    except SessionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"\n[green]Session created:[/green] {session_id}")
    console.print(f"[dim]File: {store.path(session_id)}[/dim]")
    console.print(f"[dim]Next: ralph plan {session_id}[/dim]")


def _refine(
    config: Config,
    store: SessionStore,
    session_id: Optional[str],
    passes: int,
    guidance: Optional[str],
) -> None:
    _check_config(config)
    sid = _resolve_session(store, session_id)

    runner = _make_runner(config)
    _ensure_agent(runner)

    console.print(f"\n[bold]Refining session {sid}[/bold] [dim]({passes} pass(es))[/dim]")
    try:
        refine_session(store, runner, sid, config, passes=passes, guidance=guidance)
    except (SessionError, PlanningError, AgentNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Exiting...[/yellow]")
        raise typer.Exit(int(ExitCode.INTERRUPTED))

    console.print(f"\n[green]Session refined:[/green] {sid}")
    console.print(f"[dim]Next: ralph plan {sid}[/dim]")


@app.command()
def plan(
    session_id: Optional[str] = typer.Argument(
        None,
        help="Session to plan (auto-detected if only one session exists).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Plan again even if the session has already started running.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Break a session's task down into actionable steps."""
    config = _load_config(verbose)
    _check_config(config)
    store = SessionStore(config.session_dir)
    sid = _resolve_session(store, session_id)

    runner = _make_runner(config)
    _ensure_agent(runner)

    console.print(f"\n[bold]Planning session {sid}[/bold]")
    try:
        plan_session(store, runner, sid, config, force=force)
    except (SessionError, PlanningError, AgentNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"\n[green]Session planned:[/green] {sid}")
    console.print(f"[dim]Next: ralph run {sid}[/dim]")


@app.command()
def run(
    session_id: Optional[str] = typer.Argument(
        None,
        help="Session to run (auto-detected if only one session exists).",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum build iterations for this run (default: 50).",
    ),
    no_review: bool = typer.Option(
        False,
        "--no-review",
        help="Skip the code review stage of the done-gate.",
    ),
    no_verify: bool = typer.Option(
        False,
        "--no-verify",
        help="Skip the black-box verification stage of the done-gate.",
    ),
    review_attempts: Optional[int] = typer.Option(
        None,
        "--review-attempts",
        help="Review attempt budget (default: 3).",
    ),
    verify_attempts: Optional[int] = typer.Option(
        None,
        "--verify-attempts",
        help="Verification attempt budget (default: 3).",
    ),
    reset_attempts: bool = typer.Option(
        False,
        "--reset-attempts",
        help="Reset both gate budgets before starting (resume a blocked session).",
    ),
    message: Optional[str] = typer.Option(
        None,
        "--message",
        "-m",
        help="Note for the build agent's first iteration of this run.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run (or resume) the build loop for a planned session."""
    config = _load_config(verbose)
    _apply_run_options(config, max_iterations, no_review, no_verify, review_attempts, verify_attempts)
    _check_config(config)

    store = SessionStore(config.session_dir)
    sid = _resolve_session(store, session_id)

    runner = _make_runner(config)
    _ensure_agent(runner)

    result = _run_loop(config, store, runner, sid, message=message, reset_attempts=reset_attempts)
    raise typer.Exit(result.exit_code)


@app.command()
def auto(
    task: str = typer.Argument(..., help="Description of your task (markdown)."),
    session: Optional[str] = typer.Option(
        None,
        "--session",
        "-s",
        help="Custom session id (otherwise auto-generated).",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        help="Maximum build iterations (default: 50).",
    ),
    no_review: bool = typer.Option(
        False,
        "--no-review",
        help="Skip the code review stage of the done-gate.",
    ),
    no_verify: bool = typer.Option(
        False,
        "--no-verify",
        help="Skip the black-box verification stage of the done-gate.",
    ),
    review_attempts: Optional[int] = typer.Option(
        None,
        "--review-attempts",
        help="Review attempt budget (default: 3).",
    ),
    verify_attempts: Optional[int] = typer.Option(
        None,
        "--verify-attempts",
        help="Verification attempt budget (default: 3).",
    ),
    message: Optional[str] = typer.Option(
        None,
        "--message",
        "-m",
        help="Note for the build agent's first iteration.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Create, plan and run a session in one go."""
    config = _load_config(verbose)
    _apply_run_options(config, max_iterations, no_review, no_verify, review_attempts, verify_attempts)
    _check_config(config)

    store = SessionStore(config.session_dir)
    runner = _make_runner(config)
    _ensure_agent(runner)

    try:
        sid = store.create(task, session)
        console.print(f"\n[green]Session created:[/green] {sid}")
        console.print(f"\n[bold]Planning session {sid}[/bold]")
        plan_session(store, runner, sid, config)
    except (SessionError, PlanningError, AgentNotFoundError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Exiting...[/yellow]")
        raise typer.Exit(int(ExitCode.INTERRUPTED))

    result = _run_loop(config, store, runner, sid, message=message)
    raise typer.Exit(result.exit_code)


@app.command()
def sessions(
    clean: bool = typer.Option(
        False,
        "--clean",
        help="Delete all sessions.",
    ),
) -> None:
    """List sessions, or delete them all."""
    config = _load_config()
    store = SessionStore(config.session_dir)

    if clean:
        count = store.delete_all()
        if count:
            console.print(f"[green]Deleted {count} session(s).[/green]")
        else:
            console.print("[dim]No sessions to delete.[/dim]")
        return

    infos = store.list()
    if not infos:
        console.print("[dim]No sessions.[/dim]")
        console.print("[yellow]Run 'ralph init \"your task\"' to create one.[/yellow]")
        return

    table = Table(title=f"Sessions ({len(infos)})", show_header=True, header_style="bold")
    table.add_column("ID", style="green", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Stage", style="dim", no_wrap=True)
    table.add_column("Iterations", justify="right")
    table.add_column("Created")
    table.add_column("Directory", style="dim")

    status_styles = {"DONE": "green", "BLOCKED": "red", "IN_PROGRESS": "yellow"}
    for info in infos:
        style = status_styles.get(info.status, "dim")
        table.add_row(
            info.session_id,
            f"[{style}]{info.status}[/{style}]",
            info.stage,
            str(info.iterations),
            info.created_at,
            info.working_directory,
        )

    console.print(table)
    console.print(f"[dim]Session directory: {config.session_dir}[/dim]")


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session to show."),
) -> None:
    """Print a session file."""
    config = _load_config()
    store = SessionStore(config.session_dir)

    try:
        content = store.read(session_id)
    except SessionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    console.print(f"[dim]{store.path(session_id)}[/dim]\n")
    console.print(Markdown(content))


if __name__ == "__main__":
    app()

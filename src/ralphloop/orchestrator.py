"""Iteration orchestrator: the build loop and its done-gate.

Each iteration invokes the build agent with the full session content, counts
the iteration, and resolves the session status. A ``done`` claim is not taken
at face value; it triggers the done-gate:

1. start the application server if the Verification section declares one;
2. run the review stage;
3. run the verification stage;
4. tear the server down, run the stop command and remove verifier artifacts.

A failing gate stage writes its feedback into the session and sends the loop
back to building. An exhausted gate budget ends the run with the session
marked ``blocked``.

The orchestrator is the only writer of the session's metadata block while it
runs; agent edits to that block are discarded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from rich.console import Console
from rich.panel import Panel

from .agent_runner import AgentRunner, ToolProfile
from .config import Config, ExitCode
from .errors import SessionError, SessionNotPlannedError
from .gates import GateOutcome
from .prompts import build_iteration_prompt
from .review import ReviewStage
from .run_log import RunLogger
from .server import (
    ServerHandle,
    cleanup_verification_artifacts,
    run_stop_command,
    start_server,
    stop_server,
    wait_for_ready,
)
from .session import (
    SessionMetadata,
    SessionStore,
    VerificationSection,
    extract_verification_section,
    is_planned,
    parse_metadata,
    replace_metadata,
    validate_verification,
    working_directory,
)
from .status import Status, resolve_status
from .verify import VerificationStage

logger = logging.getLogger(__name__)


class LoopOutcome(str, Enum):
    """How a run ended."""

    SUCCESS = "success"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max_iterations"
    VERIFICATION_EXHAUSTED = "verification_exhausted"
    REVIEW_EXHAUSTED = "review_exhausted"
    INTERRUPTED = "interrupted"


_EXIT_CODES = {
    LoopOutcome.SUCCESS: ExitCode.SUCCESS,
    LoopOutcome.BLOCKED: ExitCode.BLOCKED,
    LoopOutcome.MAX_ITERATIONS: ExitCode.MAX_ITERATIONS,
    LoopOutcome.VERIFICATION_EXHAUSTED: ExitCode.VERIFICATION_EXHAUSTED,
    LoopOutcome.REVIEW_EXHAUSTED: ExitCode.REVIEW_EXHAUSTED,
    LoopOutcome.INTERRUPTED: ExitCode.INTERRUPTED,
}


@dataclass
class LoopResult:
    """Result of one orchestrator run."""

    outcome: LoopOutcome
    iterations_run: int
    message: str = ""

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return int(_EXIT_CODES[self.outcome])

    @property
    def success(self) -> bool:
        """Whether the task was accepted as done."""
        return self.outcome is LoopOutcome.SUCCESS


class Orchestrator:
    """Drives one session through build iterations and the done-gate."""

    def __init__(
        self,
        config: Config,
        store: SessionStore,
        runner: AgentRunner,
        session_id: str,
        console: Optional[Console] = None,
        run_logger: Optional[RunLogger] = None,
        message: Optional[str] = None,
        reset_attempts: bool = False,
    ):
        """Initialize the orchestrator.

        Args:
            config: Loop configuration.
            store: Session store.
            runner: Runner used for every agent invocation.
            session_id: Session to drive.
            console: Console for operator-facing output.
            run_logger: Optional per-run JSON logger.
            message: Operator note added to the first build prompt of this run.
            reset_attempts: Clear both gate budgets before starting.
        """
        self.config = config
        self.store = store
        self.runner = runner
        self.session_id = session_id
        self.console = console or Console()
        self.run_logger = run_logger
        self.message = message
        self.reset_attempts = reset_attempts

        stage_kwargs = dict(
            store=store,
            runner=runner,
            working_dir=config.working_dir,
            prompts_dir=config.prompts_dir,
            console=self.console,
            run_logger=run_logger,
        )
        self.review_stage = ReviewStage(max_attempts=config.review.max_attempts, **stage_kwargs)
        self.verification_stage = VerificationStage(
            max_attempts=config.verify.max_attempts, **stage_kwargs
        )

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def run(self) -> LoopResult:
        """Run build iterations until done, blocked, exhausted or out of iterations.

        Returns:
            LoopResult describing how the run ended.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionNotPlannedError: If the session has not been planned.
            InvalidVerificationError: If verification is enabled and the
                session's Verification section is unusable.
        """
        already_done = self._prepare()
        self._print_banner()
        if already_done:
            return self._finish(LoopResult(LoopOutcome.SUCCESS, 0, "Session is already done"))

        max_iterations = self.config.max_iterations
        iterations_run = 0

        try:
            for iteration in range(1, max_iterations + 1):
                self.console.rule(f"[blue]Iteration {iteration}/{max_iterations}[/blue]", style="blue")
                exit_code = self._run_build_iteration(iteration)
                iterations_run = iteration

                status = resolve_status(self.store, self.session_id)
                if self.run_logger:
                    total = self.store.metadata(self.session_id).iterations
                    self.run_logger.log_iteration(iteration, total, exit_code, status.value)

                if status is Status.CONTINUE:
                    continue

                if status is Status.BLOCKED:
                    self.store.update(self.session_id, {"stage": "blocked"})
                    return self._finish(
                        LoopResult(LoopOutcome.BLOCKED, iterations_run, "Task blocked - human intervention needed")
                    )

                outcome = self._run_done_gate()
                if outcome is LoopOutcome.SUCCESS:
                    return self._finish(
                        LoopResult(outcome, iterations_run, f"Task completed after {iterations_run} iteration(s)")
                    )
                if outcome is LoopOutcome.REVIEW_EXHAUSTED:
                    return self._finish(
                        LoopResult(outcome, iterations_run, "Review attempts exhausted - session blocked")
                    )
                if outcome is LoopOutcome.VERIFICATION_EXHAUSTED:
                    return self._finish(
                        LoopResult(outcome, iterations_run, "Verification attempts exhausted - session blocked")
                    )
                # Gate failed with budget left: feedback is in the session.
        except KeyboardInterrupt:
            self._checkpoint_interrupted()
            return self._finish(LoopResult(LoopOutcome.INTERRUPTED, iterations_run, "Interrupted"))

        return self._finish(
            LoopResult(
                LoopOutcome.MAX_ITERATIONS,
                iterations_run,
                f"Max iterations ({max_iterations}) reached",
            )
        )

    def _prepare(self) -> bool:
        """Validate the session and move it to ``running``.

        Returns:
            True if the session is already done and nothing should run.
        """
        content = self.store.read(self.session_id)
        if not is_planned(content):
            raise SessionNotPlannedError(self.session_id)

        if self.config.verify.enabled:
            validate_verification(extract_verification_section(content))

        metadata = parse_metadata(content)
        if metadata is None:
            # Sessions written before machine stages existed.
            metadata = SessionMetadata(
                stage="planned",
                session_id=self.session_id,
                working_directory=working_directory(content),
            )

        if metadata.stage == "done":
            logger.info(f"Session {self.session_id} is already done")
            return True

        if metadata.stage in ("reviewing", "verifying"):
            logger.warning(
                f"Session was interrupted while {metadata.stage}; the attempt stays counted"
            )

        changes: dict = {"stage": "running"}
        if self.reset_attempts:
            changes["review_attempts"] = 0
            changes["verification_attempts"] = 0
        self.store.write(self.session_id, replace_metadata(content, replace(metadata, **changes)))
        return False

    def _run_build_iteration(self, iteration: int) -> int:
        """Invoke the build agent once and count the iteration.

        The metadata block is snapshotted before the agent runs and written
        back afterwards, so agent edits to it never stick. The iteration is
        only counted if the agent invocation completed.

        Returns:
            The build agent's exit code.
        """
        content = self.store.read(self.session_id)
        snapshot = parse_metadata(content)
        if snapshot is None:
            raise SessionError(f"Session '{self.session_id}' lost its metadata block")

        prompt = build_iteration_prompt(
            self.store.path(self.session_id),
            content,
            iteration,
            self.config.max_iterations,
            self.message if iteration == 1 else None,
        )

        completed = False
        try:
            result = self.runner.run("", prompt, ToolProfile.full_access(), "builder")
            completed = True
        finally:
            self._restore_metadata(snapshot, count_iteration=completed)

        if not result.success:
            logger.warning(f"Build agent exited with code {result.exit_code}; continuing")
            self._log_error(f"Build agent exited with code {result.exit_code}", {"iteration": iteration})
        return result.exit_code

    def _restore_metadata(self, snapshot: SessionMetadata, count_iteration: bool) -> None:
        content = self.store.read(self.session_id)
        if parse_metadata(content) != snapshot:
            logger.warning("Session metadata was edited by the agent; restoring it")
        if count_iteration:
            snapshot = replace(snapshot, iterations=snapshot.iterations + 1)
        self.store.write(self.session_id, replace_metadata(content, snapshot))

    # -------------------------------------------------------------------------
    # Done-gate
    # -------------------------------------------------------------------------

    def _run_done_gate(self) -> Optional[LoopOutcome]:
        """Run review and verification for a done claim.

        Returns:
            SUCCESS, REVIEW_EXHAUSTED or VERIFICATION_EXHAUSTED to end the
            run, or None to go back to building.
        """
        self.console.print("\n[bold]Done claimed - running done-gate[/bold]")

        content = self.store.read(self.session_id)
        section = extract_verification_section(content)
        verifying = (
            self.config.verify.enabled
            and section is not None
            and section.enabled
            and self.verification_stage.problem(content) is None
        )
        gate_started = time.time()
        server: Optional[ServerHandle] = None

        try:
            if verifying and section.start:
                server = self._start_server(section)

            if self.config.review.enabled:
                review = self.review_stage.run(self.session_id)
                if review.outcome is GateOutcome.EXHAUSTED:
                    return LoopOutcome.REVIEW_EXHAUSTED
                if review.outcome is GateOutcome.FAILED:
                    return None

            if self.config.verify.enabled:
                verification = self.verification_stage.run(self.session_id)
                if verification.outcome is GateOutcome.EXHAUSTED:
                    return LoopOutcome.VERIFICATION_EXHAUSTED
                if verification.outcome is GateOutcome.FAILED:
                    return None

            self.store.update(self.session_id, {"stage": "done"})
            return LoopOutcome.SUCCESS
        finally:
            self._teardown(server, section if verifying else None, gate_started)

    def _start_server(self, section: VerificationSection) -> Optional[ServerHandle]:
        """Start the application server, or return None if it cannot be launched.

        A server that fails to start is not fatal: verification still runs
        and the verifier reports what it finds.
        """
        try:
            handle = start_server(section.start, self.config.working_dir)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not start server '{section.start}': {e}")
            self.console.print(
                f"[yellow]Warning:[/yellow] could not start server ({e}), verifying anyway"
            )
            self._log_server("start_failed", section.start)
            self._log_error(f"Could not start server: {e}", {"command": section.start})
            return None
        self._log_server("start", section.start)

        if section.mode == "browser":
            self.console.print(f"[dim]Waiting for {section.entry}...[/dim]")
            if wait_for_ready(section.entry, timeout=self.config.ready_timeout):
                self._log_server("ready", section.entry)
            else:
                # The verifier will report a broken server on its own.
                self.console.print(
                    f"[yellow]Warning:[/yellow] server not ready after {self.config.ready_timeout:.0f}s, "
                    "verifying anyway"
                )
                self._log_server("timeout", section.entry)
        return handle

    def _teardown(
        self,
        server: Optional[ServerHandle],
        section: Optional[VerificationSection],
        gate_started: float,
    ) -> None:
        """Stop the server, run the stop command and remove artifacts. Never raises."""
        if server is not None:
            stop_server(server)
            self._log_server("stop", str(server.pid))
        if section is None:
            return
        if section.stop:
            if not run_stop_command(
                section.stop, self.config.working_dir, timeout=self.config.stop_command_timeout
            ):
                self._log_error("Stop command failed", {"command": section.stop})
            self._log_server("stop_command", section.stop)
        cleanup_verification_artifacts(self.config.working_dir, gate_started)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _checkpoint_interrupted(self) -> None:
        """Leave the session resumable after an operator interrupt.

        A gate stage interrupted mid-invocation is moved back to ``running``;
        the attempt it already counted stays counted.
        """
        self.console.print("\n[yellow]Interrupted. Exiting...[/yellow]")
        try:
            content = self.store.read(self.session_id)
            metadata = parse_metadata(content)
            if metadata is not None and metadata.stage in ("reviewing", "verifying"):
                self.store.write(self.session_id, replace_metadata(content, replace(metadata, stage="running")))
        except SessionError as e:
            logger.warning(f"Could not checkpoint session after interrupt: {e}")
            self._log_error(f"Could not checkpoint session after interrupt: {e}")

    def _log_error(self, error: str, context: Optional[dict] = None) -> None:
        if self.run_logger:
            self.run_logger.log_error(error, context)

    def _log_server(self, event: str, detail: str) -> None:
        if self.run_logger:
            self.run_logger.log_server_event(event, detail)

    def _print_banner(self) -> None:
        review = (
            f"on (max {self.config.review.max_attempts} attempts)" if self.config.review.enabled else "off"
        )
        verify = (
            f"on (max {self.config.verify.max_attempts} attempts)" if self.config.verify.enabled else "off"
        )
        self.console.print(
            Panel.fit(
                f"[green]Ralph[/green] - agent in a loop\n\n"
                f"[dim]Session:[/dim]        {self.session_id}\n"
                f"[dim]Session file:[/dim]   {self.store.path(self.session_id)}\n"
                f"[dim]Max iterations:[/dim] {self.config.max_iterations}\n"
                f"[dim]Review:[/dim]         {review}\n"
                f"[dim]Verification:[/dim]   {verify}",
                border_style="blue",
            )
        )

    def _finish(self, result: LoopResult) -> LoopResult:
        style = {
            LoopOutcome.SUCCESS: "green",
            LoopOutcome.INTERRUPTED: "yellow",
            LoopOutcome.BLOCKED: "yellow",
        }.get(result.outcome, "red")
        self.console.print(Panel.fit(f"[{style}]{result.message}[/{style}]", border_style=style))

        if self.run_logger:
            self.run_logger.finalize(result.outcome.value, result.exit_code)
        return result

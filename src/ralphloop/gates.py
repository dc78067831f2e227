"""Retry-budgeted done-gate stages.

Review and verification share one shape: check the attempt budget, count the
attempt on disk before invoking the agent (so a crash mid-invocation still
consumes budget), run the agent, parse its verdict, and either restore the
session to ``running`` or write the agent's feedback back into the session
for the next build iteration.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rich.console import Console

from .agent_runner import AgentRunner, ToolProfile
from .session import (
    SessionMetadata,
    SessionStore,
    append_feedback,
    body_status_marker,
    parse_metadata,
    replace_metadata,
    set_body_status,
)

if TYPE_CHECKING:
    from .run_log import RunLogger

logger = logging.getLogger(__name__)

_VERDICT_RE = re.compile(r"##[ \t]*VERDICT:[ \t]*(PASS|FAIL)", re.IGNORECASE)


class Verdict(str, Enum):
    """Verdict parsed from agent output."""

    PASS = "pass"
    FAIL = "fail"
    UNPARSED = "unparsed"


class GateOutcome(str, Enum):
    """Outcome of one gate stage entry."""

    PASSED = "passed"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


def parse_verdict(output: str) -> Verdict:
    """Parse the last ``## VERDICT: PASS|FAIL`` marker in ``output``.

    Agents sometimes correct themselves mid-response, so the last marker wins.
    Output without any marker is UNPARSED, which callers treat as a failure.
    """
    matches = _VERDICT_RE.findall(output or "")
    if not matches:
        return Verdict.UNPARSED
    return Verdict.PASS if matches[-1].upper() == "PASS" else Verdict.FAIL


@dataclass
class GateResult:
    """Result of running a gate stage once."""

    outcome: GateOutcome
    attempt: int
    feedback: str = ""
    verdict: Optional[Verdict] = None

    @property
    def passed(self) -> bool:
        """Whether the stage passed."""
        return self.outcome is GateOutcome.PASSED


@dataclass
class GatePrompt:
    """Everything needed to invoke a gate agent."""

    system_prompt: str
    user_prompt: str
    tool_profile: ToolProfile


class GateStage(ABC):
    """Base class for a done-gate stage with an attempt budget."""

    name: str = "Gate"
    label: str = "gate"
    counter_field: str = ""
    stage_marker: str = "running"
    rollback_on_pass: bool = False

    def __init__(
        self,
        store: SessionStore,
        runner: AgentRunner,
        max_attempts: int = 3,
        working_dir: Optional[Path] = None,
        prompts_dir: Optional[Path] = None,
        console: Optional[Console] = None,
        run_logger: Optional[RunLogger] = None,
    ):
        """Initialize the stage.

        Args:
            store: Session store.
            runner: Runner used to invoke the gate agent.
            max_attempts: Attempt budget for this stage.
            working_dir: Project directory shown to the agent.
            prompts_dir: Optional directory of prompt overrides.
            console: Console for operator-facing output.
            run_logger: Optional per-run JSON logger.
        """
        self.store = store
        self.runner = runner
        self.max_attempts = max_attempts
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.prompts_dir = prompts_dir
        self.console = console or Console()
        self.run_logger = run_logger

    @abstractmethod
    def build_prompt(self, content: str) -> GatePrompt:
        """Build the agent prompt from current session content."""
        pass

    def should_run(self, content: str) -> bool:
        """Whether this stage applies to the session at all."""
        return True

    def problem(self, content: str) -> Optional[str]:
        """Reason the stage cannot invoke its agent for this content, if any."""
        return None

    def attempts(self, metadata: SessionMetadata) -> int:
        """Attempts already counted against the budget."""
        return getattr(metadata, self.counter_field) or 0

    def run(self, session_id: str) -> GateResult:
        """Run one attempt of this stage against a session.

        Returns:
            GateResult: PASSED, FAILED (feedback written to the session), or
            EXHAUSTED (budget used up; session marked blocked, no invocation).
        """
        content = self.store.read(session_id)
        if not self.should_run(content):
            logger.info(f"{self.name} not required for this session, skipping")
            return GateResult(GateOutcome.PASSED, attempt=0)

        metadata = parse_metadata(content) or SessionMetadata(session_id=session_id)
        previous = self.attempts(metadata)

        if previous >= self.max_attempts:
            logger.error(f"{self.name} budget exhausted ({previous}/{self.max_attempts} attempts)")
            self.store.write(session_id, replace_metadata(content, replace(metadata, stage="blocked")))
            self._log_attempt(previous, None, GateOutcome.EXHAUSTED)
            return GateResult(GateOutcome.EXHAUSTED, attempt=previous)

        attempt = previous + 1
        self.console.print(
            f"\n[bold cyan]{self.name}[/bold cyan] attempt {attempt}/{self.max_attempts}"
        )

        # Count the attempt before invoking so a crash still consumes it.
        metadata = replace(metadata, stage=self.stage_marker, **{self.counter_field: attempt})
        content = replace_metadata(content, metadata)
        self.store.write(session_id, content)

        problem = self.problem(content)
        if problem is not None:
            # Counted as a failed attempt so the build agent gets to repair it.
            logger.warning(f"{self.name} cannot run: {problem}")
            if self.run_logger is not None:
                self.run_logger.log_error(problem, {"stage": self.label, "attempt": attempt})
            text, exit_code, verdict = problem, 0, Verdict.FAIL
        else:
            prompt = self.build_prompt(content)
            result = self.runner.run(
                prompt.system_prompt, prompt.user_prompt, prompt.tool_profile, self.label
            )
            text, exit_code = result.text, result.exit_code
            verdict = parse_verdict(text)
            if verdict is Verdict.UNPARSED:
                logger.warning(
                    f"No verdict found in {self.label} output (exit code {exit_code}); treating as FAIL"
                )

        # The agent must not touch the metadata block, so ours is re-applied.
        content = self.store.read(session_id)

        if verdict is Verdict.PASS:
            counter = previous if self.rollback_on_pass else attempt
            metadata = replace(metadata, stage="running", **{self.counter_field: counter})
            self.store.write(session_id, replace_metadata(content, metadata))
            self.console.print(f"[green]{self.name} passed[/green]")
            self._log_attempt(attempt, verdict, GateOutcome.PASSED)
            return GateResult(GateOutcome.PASSED, attempt=attempt, verdict=verdict)

        feedback = text.strip() or (
            f"The {self.label} produced no output (exit code {exit_code})."
        )
        content = append_feedback(
            content, f"{self.name} Feedback (attempt {attempt}/{self.max_attempts})", feedback
        )
        if body_status_marker(content) == "DONE":
            content = set_body_status(content, "IN_PROGRESS")
        metadata = replace(metadata, stage="running")
        self.store.write(session_id, replace_metadata(content, metadata))

        self.console.print(f"[yellow]{self.name} failed[/yellow] [dim](feedback added to session)[/dim]")
        self._log_attempt(attempt, verdict, GateOutcome.FAILED)
        return GateResult(GateOutcome.FAILED, attempt=attempt, feedback=feedback, verdict=verdict)

    def _log_attempt(
        self, attempt: int, verdict: Optional[Verdict], outcome: GateOutcome
    ) -> None:
        if self.run_logger is not None:
            self.run_logger.log_gate_attempt(
                self.label, attempt, verdict.value if verdict else None, outcome.value
            )

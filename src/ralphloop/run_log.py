"""Structured JSON log of one orchestrator run.

One file per run under ``<session_dir>/logs``, recording build iterations,
gate attempts, server events and errors, so an interrupted or blocked run
can be inspected after the fact.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Counters for one orchestrator run."""

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    iterations: int = 0
    review_attempts: int = 0
    verification_attempts: int = 0
    gates_passed: int = 0
    gates_failed: int = 0

    @property
    def duration_seconds(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "iterations": self.iterations,
            "attempts": {
                "review": self.review_attempts,
                "verification": self.verification_attempts,
            },
            "gates": {
                "passed": self.gates_passed,
                "failed": self.gates_failed,
            },
        }


class RunLogger:
    """Logger for one orchestrator run of a session."""

    def __init__(self, log_dir: Path, session_id: str):
        """Initialize the run logger.

        Args:
            log_dir: Directory for log files.
            session_id: Session being driven.
        """
        self.log_dir = Path(log_dir)
        self.session_id = session_id
        self.stats = RunStats()

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = self.log_dir / f"{session_id}_{timestamp}.json"

        self.log_data: dict[str, Any] = {
            "session": {
                "id": session_id,
                "start_time": datetime.now().isoformat(),
            },
            "iterations": [],
            "gates": [],
            "server": [],
            "errors": [],
        }

    def log_iteration(self, iteration: int, total_iterations: int, exit_code: int, status: str) -> None:
        """Log a completed build iteration."""
        self.stats.iterations += 1
        self.log_data["iterations"].append({
            "number": iteration,
            "session_total": total_iterations,
            "exit_code": exit_code,
            "status": status,
            "end_time": datetime.now().isoformat(),
        })

    def log_gate_attempt(
        self,
        stage: str,
        attempt: int,
        verdict: Optional[str],
        outcome: str,
    ) -> None:
        """Log one review or verification attempt."""
        if outcome != "exhausted":
            if stage == "reviewer":
                self.stats.review_attempts += 1
            else:
                self.stats.verification_attempts += 1
        if outcome == "passed":
            self.stats.gates_passed += 1
        elif outcome == "failed":
            self.stats.gates_failed += 1

        self.log_data["gates"].append({
            "timestamp": datetime.now().isoformat(),
            "stage": stage,
            "attempt": attempt,
            "verdict": verdict,
            "outcome": outcome,
        })

    def log_server_event(self, event: str, detail: str = "") -> None:
        """Log a server lifecycle event (start, ready, timeout, stop)."""
        self.log_data["server"].append({
            "timestamp": datetime.now().isoformat(),
            "event": event,
            "detail": detail,
        })

    def log_error(self, error: str, context: Optional[dict] = None) -> None:
        """Log an error."""
        self.log_data["errors"].append({
            "timestamp": datetime.now().isoformat(),
            "error": error,
            "context": context or {},
        })
        logger.error(f"Run error: {error}")

    def finalize(self, outcome: str, exit_code: int) -> None:
        """Finalize the log and write to file."""
        self.stats.end_time = datetime.now()

        self.log_data["session"]["end_time"] = self.stats.end_time.isoformat()
        self.log_data["session"]["outcome"] = outcome
        self.log_data["session"]["exit_code"] = exit_code
        self.log_data["stats"] = self.stats.to_dict()

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.log_file, "w", encoding="utf-8") as f:
                json.dump(self.log_data, f, indent=2)
            logger.info(f"Run log written to: {self.log_file}")
        except OSError as e:
            logger.error(f"Failed to write run log: {e}")

"""Code review stage of the done-gate."""

from __future__ import annotations

from .agent_runner import ToolProfile
from .gates import GatePrompt, GateStage
from .prompts import build_gate_user_prompt, load_agent_prompt
from .session import extract_task_summary


def review_profile() -> ToolProfile:
    """Read-only inspection plus command execution, no edits."""
    return ToolProfile(
        allowed=("Read", "Glob", "Grep", "Bash"),
        disallowed=("Write", "Edit", "WebFetch", "WebSearch", "Task"),
    )


class ReviewStage(GateStage):
    """Runs a read-only reviewer agent over the claimed-complete work.

    A passing review hands its attempt back to the budget: verification may
    still fail and send the loop through review again.
    """

    name = "Review"
    label = "reviewer"
    counter_field = "review_attempts"
    stage_marker = "reviewing"
    rollback_on_pass = True

    def build_prompt(self, content: str) -> GatePrompt:
        summary = extract_task_summary(content)
        agent_prompt = load_agent_prompt("reviewer", self.prompts_dir)
        return GatePrompt(
            system_prompt=f"Working directory: {self.working_dir}\n\n{agent_prompt}",
            user_prompt=build_gate_user_prompt(summary.task, summary.completed, "review"),
            tool_profile=review_profile(),
        )

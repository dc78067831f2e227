"""Black-box verification stage of the done-gate."""

from __future__ import annotations

from typing import Optional

from .agent_runner import ToolProfile
from .errors import InvalidVerificationError
from .gates import GatePrompt, GateStage
from .prompts import build_gate_user_prompt, load_agent_prompt
from .session import (
    VerificationSection,
    extract_task_summary,
    extract_verification_section,
    validate_verification,
)

PLAYWRIGHT_TOOLS = "mcp__plugin_playwright_playwright__*"
SOURCE_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep")
NETWORK_TOOLS = ("WebFetch", "WebSearch", "Task")


def verify_profile(section: VerificationSection) -> ToolProfile:
    """Tool profile for the verifier: the black-box interface only."""
    if section.mode == "browser":
        return ToolProfile(
            allowed=(PLAYWRIGHT_TOOLS,),
            disallowed=SOURCE_TOOLS + ("Bash",) + NETWORK_TOOLS,
        )
    if section.mode == "cli":
        return ToolProfile(
            allowed=tuple(f"Bash({prefix}:*)" for prefix in section.command_prefixes),
            disallowed=SOURCE_TOOLS + NETWORK_TOOLS,
        )
    return ToolProfile(disallowed=SOURCE_TOOLS + NETWORK_TOOLS)


def build_preamble(section: VerificationSection) -> str:
    """First line of the verifier's system prompt."""
    if section.mode == "browser":
        return f"Entry point URL: {section.entry}"
    return f"Allowed commands: {section.entry}"


class VerificationStage(GateStage):
    """Runs a verifier agent that can only use the application's public interface."""

    name = "Verification"
    label = "verifier"
    counter_field = "verification_attempts"
    stage_marker = "verifying"

    def should_run(self, content: str) -> bool:
        # No section, or mode: none, is an automatic pass.
        section = extract_verification_section(content)
        return section is not None and section.enabled

    def problem(self, content: str) -> Optional[str]:
        # The build agent can edit the section between gate passes.
        try:
            validate_verification(extract_verification_section(content))
        except InvalidVerificationError as e:
            return f"The ## Verification section is invalid and must be fixed: {e}"
        return None

    def build_prompt(self, content: str) -> GatePrompt:
        section = extract_verification_section(content) or VerificationSection()
        summary = extract_task_summary(content)
        agent_prompt = load_agent_prompt(f"verifier-{section.mode}", self.prompts_dir)
        return GatePrompt(
            system_prompt=f"{build_preamble(section)}\n\n{agent_prompt}",
            user_prompt=build_gate_user_prompt(summary.task, summary.completed, "verify"),
            tool_profile=verify_profile(section),
        )

"""Claude Code CLI integration for build, review and verification agents.

Every agent invocation goes through AgentRunner: the prompt is piped to the
``claude`` CLI running in ``--print`` mode with ``stream-json`` output, the
newline-delimited events are parsed as they arrive, assistant text is echoed
live and collected, and the collected text is returned once the process exits.

Retry policy is not handled here; the gate stages own it.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .errors import AgentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProfile:
    """Which tools an agent may use.

    ``allowed`` and ``disallowed`` are Claude Code tool identifiers, e.g.
    ``Read``, ``Bash(npm:*)`` or ``mcp__plugin_playwright_playwright__*``.
    """

    allowed: tuple[str, ...] = ()
    disallowed: tuple[str, ...] = ()
    skip_permissions: bool = False

    @classmethod
    def full_access(cls) -> ToolProfile:
        """Profile for the build agent: every tool, no permission prompts."""
        return cls(skip_permissions=True)

    def to_args(self) -> list[str]:
        """CLI arguments expressing this profile."""
        args = []
        if self.allowed:
            args += ["--allowedTools", ",".join(self.allowed)]
        if self.disallowed:
            args += ["--disallowedTools", ",".join(self.disallowed)]
        if self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        return args


@dataclass
class AgentRunResult:
    """Result of one agent invocation."""

    text: str
    exit_code: int
    label: str = "agent"

    @property
    def success(self) -> bool:
        """Whether the agent process exited cleanly."""
        return self.exit_code == 0


def parse_event_line(line: str) -> list[str]:
    """Extract assistant text fragments from one stream-json line.

    Blank, malformed and uninteresting lines yield an empty list.
    """
    line = line.strip()
    if not line:
        return []
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed event line: {line[:80]}")
        return []

    if not isinstance(event, dict) or event.get("type") != "assistant":
        return []
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    blocks = message.get("content")
    if not isinstance(blocks, list):
        return []

    return [
        block["text"]
        for block in blocks
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
        and block["text"]
    ]


class AgentRunner:
    """Runs the Claude Code CLI as a sub-agent."""

    def __init__(
        self,
        working_dir: Optional[Path] = None,
        agent_command: str = "claude",
        model: Optional[str] = None,
        console: Optional[Console] = None,
        terminate_grace: float = 5.0,
    ):
        """Initialize the runner.

        Args:
            working_dir: Directory the agent runs in. Defaults to CWD.
            agent_command: Executable to invoke.
            model: Optional model override passed as ``--model``.
            console: Console used to echo agent output live.
            terminate_grace: Seconds to wait after SIGTERM before killing.
        """
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.agent_command = agent_command
        self.model = model
        self.console = console or Console()
        self.terminate_grace = terminate_grace

    def check_installed(self) -> bool:
        """Check if the agent CLI is available.

        Returns:
            True if the command runs, False otherwise.
        """
        try:
            result = subprocess.run(
                [self.agent_command, "--version"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def build_command(self, system_prompt: str, tool_profile: ToolProfile) -> list[str]:
        """Build the argv for one invocation."""
        cmd = [
            self.agent_command,
            "--print",
            "--output-format", "stream-json",
            "--verbose",
        ]
        if self.model:
            cmd += ["--model", self.model]
        if system_prompt:
            cmd += ["--system-prompt", system_prompt]
        cmd += tool_profile.to_args()
        return cmd

    def run(
        self,
        system_prompt: str,
        user_prompt: str,
        tool_profile: ToolProfile,
        label: str = "agent",
    ) -> AgentRunResult:
        """Invoke the agent and collect its text output.

        Args:
            system_prompt: System prompt, empty for the CLI default.
            user_prompt: Prompt piped to the agent's stdin.
            tool_profile: Tool permissions for this agent.
            label: Name shown in logs and console output.

        Returns:
            AgentRunResult with the collected text and exit code.

        Raises:
            AgentNotFoundError: If the agent executable cannot be started.
            KeyboardInterrupt: Re-raised after the agent process is stopped.
        """
        cmd = self.build_command(system_prompt, tool_profile)
        logger.info(f"Invoking {label} agent...")
        logger.debug(f"Tool profile for {label}: {tool_profile}")

        try:
            process = subprocess.Popen(
                cmd,
                cwd=self.working_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise AgentNotFoundError(f"'{self.agent_command}' not found in PATH") from e

        self.console.rule(f"[dim]{label}[/dim]", style="dim")
        fragments: list[str] = []
        try:
            self._send_prompt(process, user_prompt, label)
            for line in process.stdout or ():
                for fragment in parse_event_line(line):
                    fragments.append(fragment)
                    self.console.print(fragment, markup=False, highlight=False)
            exit_code = process.wait()
        except KeyboardInterrupt:
            logger.warning(f"Interrupted, stopping {label} agent")
            self._terminate(process)
            raise

        if exit_code != 0:
            logger.warning(f"{label} agent exited with code {exit_code}")
        else:
            logger.debug(f"{label} agent finished, {len(fragments)} text fragment(s)")

        return AgentRunResult(text="\n".join(fragments), exit_code=exit_code, label=label)

    def _send_prompt(self, process: subprocess.Popen, prompt: str, label: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(prompt)
            process.stdin.close()
        except BrokenPipeError:
            logger.warning(f"{label} agent closed its input early")

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


@dataclass
class AgentCall:
    """One recorded MockAgentRunner invocation."""

    system_prompt: str
    user_prompt: str
    tool_profile: ToolProfile
    label: str


class MockAgentRunner(AgentRunner):
    """Mock agent runner for testing.

    Returns scripted outputs in order, then ``default_output``. An optional
    ``on_run`` hook is called with each AgentCall before the output is
    returned; if it returns a string, that string is used instead.
    """

    def __init__(
        self,
        outputs: Optional[list[str]] = None,
        default_output: str = "",
        on_run: Optional[Callable[[AgentCall], Optional[str]]] = None,
        exit_code: int = 0,
        **kwargs,
    ):
        """Initialize mock runner."""
        super().__init__(**kwargs)
        self.outputs = list(outputs or [])
        self.default_output = default_output
        self.on_run = on_run
        self.exit_code = exit_code
        self.calls: list[AgentCall] = []

    @property
    def call_count(self) -> int:
        """Number of invocations so far."""
        return len(self.calls)

    def calls_for(self, label: str) -> list[AgentCall]:
        """Recorded calls with the given label."""
        return [c for c in self.calls if c.label == label]

    def check_installed(self) -> bool:
        """Always return True for mock."""
        return True

    def run(
        self,
        system_prompt: str,
        user_prompt: str,
        tool_profile: ToolProfile,
        label: str = "agent",
    ) -> AgentRunResult:
        """Return the next scripted output."""
        call = AgentCall(system_prompt, user_prompt, tool_profile, label)
        self.calls.append(call)

        output = self.outputs.pop(0) if self.outputs else self.default_output
        if self.on_run is not None:
            override = self.on_run(call)
            if override is not None:
                output = override

        return AgentRunResult(text=output, exit_code=self.exit_code, label=label)

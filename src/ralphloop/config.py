"""Configuration management for ralph-loop."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv


CONFIG_FILE_NAME = "ralph.yaml"


class ExitCode(IntEnum):
    """Process exit codes, one per orchestrator outcome."""

    SUCCESS = 0
    BLOCKED = 1
    MAX_ITERATIONS = 2
    VERIFICATION_EXHAUSTED = 3
    REVIEW_EXHAUSTED = 4
    INTERRUPTED = 130


def default_session_dir() -> Path:
    """Sessions live under the system temp directory unless configured."""
    return Path(tempfile.gettempdir()) / "ralph"


@dataclass
class GateConfig:
    """Settings for one done-gate stage (review or verification)."""

    enabled: bool = True
    max_attempts: int = 3

    @classmethod
    def from_dict(cls, data: dict) -> GateConfig:
        """Create GateConfig from dictionary."""
        return cls(
            enabled=bool(data.get("enabled", True)),
            max_attempts=int(data.get("max_attempts", 3)),
        )


@dataclass
class Config:
    """Configuration settings for the loop."""

    # Paths
    working_dir: Path = field(default_factory=Path.cwd)
    session_dir: Path = field(default_factory=default_session_dir)
    prompts_dir: Optional[Path] = None  # Markdown overrides for agent prompts

    # Agent Settings
    agent_command: str = "claude"
    model: Optional[str] = None

    # Loop Settings
    max_iterations: int = 50
    review: GateConfig = field(default_factory=GateConfig)
    verify: GateConfig = field(default_factory=GateConfig)

    # Server Settings
    ready_timeout: float = 15.0
    stop_command_timeout: float = 30.0

    # Runtime Settings
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict, working_dir: Optional[Path] = None) -> Config:
        """Create Config from a parsed ralph.yaml mapping."""
        prompts_dir = data.get("prompts_dir")
        session_dir = data.get("session_dir")
        return cls(
            working_dir=Path(working_dir) if working_dir else Path.cwd(),
            session_dir=Path(session_dir).expanduser() if session_dir else default_session_dir(),
            prompts_dir=Path(prompts_dir).expanduser() if prompts_dir else None,
            agent_command=data.get("agent_command", "claude"),
            model=data.get("model"),
            max_iterations=int(data.get("max_iterations", 50)),
            review=GateConfig.from_dict(data.get("review", {}) or {}),
            verify=GateConfig.from_dict(data.get("verify", {}) or {}),
            ready_timeout=float(data.get("ready_timeout", 15.0)),
            stop_command_timeout=float(data.get("stop_command_timeout", 30.0)),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def load_from_file(cls, path: Path, working_dir: Optional[Path] = None) -> Config:
        """Load config from a YAML file, falling back to defaults if absent."""
        if path.exists():
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls.from_dict(data, working_dir)
        return cls(working_dir=Path(working_dir) if working_dir else Path.cwd())

    @classmethod
    def from_env(cls, working_dir: Optional[Path] = None) -> Config:
        """Load configuration from ralph.yaml and environment variables.

        Environment variables take precedence over the YAML file.

        Args:
            working_dir: Project directory. Defaults to CWD.

        Returns:
            Config instance.
        """
        load_dotenv()

        cwd = Path(working_dir) if working_dir else Path.cwd()
        config = cls.load_from_file(cwd / CONFIG_FILE_NAME, cwd)

        if os.getenv("RALPH_SESSION_DIR"):
            config.session_dir = Path(os.environ["RALPH_SESSION_DIR"]).expanduser()
        if os.getenv("RALPH_PROMPTS_DIR"):
            config.prompts_dir = Path(os.environ["RALPH_PROMPTS_DIR"]).expanduser()
        config.agent_command = os.getenv("RALPH_AGENT_COMMAND", config.agent_command)
        config.model = os.getenv("RALPH_MODEL", config.model)
        config.max_iterations = int(os.getenv("RALPH_MAX_ITERATIONS", str(config.max_iterations)))
        config.ready_timeout = float(os.getenv("RALPH_READY_TIMEOUT", str(config.ready_timeout)))
        config.stop_command_timeout = float(
            os.getenv("RALPH_STOP_TIMEOUT", str(config.stop_command_timeout))
        )
        config.log_level = os.getenv("RALPH_LOG_LEVEL", config.log_level)

        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if self.max_iterations < 1:
            errors.append("max_iterations must be at least 1")

        if self.review.max_attempts < 1:
            errors.append("review.max_attempts must be at least 1")

        if self.verify.max_attempts < 1:
            errors.append("verify.max_attempts must be at least 1")

        if not self.working_dir.exists():
            errors.append(f"Working directory does not exist: {self.working_dir}")

        if self.prompts_dir is not None and not self.prompts_dir.is_dir():
            errors.append(f"Prompts directory does not exist: {self.prompts_dir}")

        return errors

    @property
    def logs_dir(self) -> Path:
        """Directory for per-run JSON logs."""
        return self.session_dir / "logs"

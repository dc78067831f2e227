"""Session persistence for the iteration loop.

A session is one markdown file holding everything the loop knows about a task:
a YAML front-matter block owned by the orchestrator (stage, iteration and
attempt counters, provenance) followed by free-form markdown that agents read
and edit (Task, Completed, Remaining, Verification, feedback log).

The store itself is deliberately thin: whole-file reads and writes with no
locking. Read-modify-write sequencing belongs to the orchestrator, which is
assumed to be the only process mutating a given session while it runs.
Concurrent human edits are last-writer-wins.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import yaml

from .errors import (
    InvalidSessionIdError,
    InvalidVerificationError,
    SessionError,
    SessionExistsError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

STAGES = ("initialized", "planned", "running", "reviewing", "verifying", "blocked", "done")
TERMINAL_STAGES = ("blocked", "done")
VERIFICATION_MODES = ("browser", "cli", "none")

# Field name -> on-disk key, in the order keys are written.
_METADATA_KEYS = {
    "session_id": "id",
    "stage": "stage",
    "iterations": "iterations",
    "review_attempts": "reviewAttempts",
    "verification_attempts": "verificationAttempts",
    "working_directory": "workingDirectory",
    "created_at": "createdAt",
}

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)^---[ \t]*(?:\r?\n|\Z)", re.DOTALL | re.MULTILINE)
_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$")
_FENCE_RE = re.compile(r"^[ \t]*(```|~~~)")
_STATUS_RE = re.compile(
    r"^((?:#{1,6}[ \t]*)?\**Status\**:[ \t]*\**[ \t]*)([A-Za-z_]+)",
    re.MULTILINE | re.IGNORECASE,
)
_VERIFICATION_FIELD_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?\**\s*(mode|entry|start|stop)\s*\**\s*:\s*\**\s*(.*?)\s*$",
    re.IGNORECASE,
)
_LEGACY_WORKDIR_RE = re.compile(r"^Working Directory:\s*(.+)$", re.MULTILINE)
_LEGACY_CREATED_RE = re.compile(r"^Created:\s*(.+)$", re.MULTILINE)
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


# =============================================================================
# Data classes
# =============================================================================


@dataclass
class SessionMetadata:
    """Machine-owned state stored in the session's front matter."""

    stage: str = "initialized"
    iterations: int = 0
    review_attempts: Optional[int] = None
    verification_attempts: Optional[int] = None
    session_id: Optional[str] = None
    working_directory: Optional[str] = None
    created_at: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the on-disk mapping, omitting unset fields."""
        data: dict[str, Any] = {}
        for attr, key in _METADATA_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionMetadata:
        """Create SessionMetadata from a parsed front-matter mapping."""
        known = set(_METADATA_KEYS.values())
        created = data.get("createdAt")
        if isinstance(created, datetime):
            created = created.isoformat()
        return cls(
            stage=str(data.get("stage", "initialized")).strip().lower(),
            iterations=_as_int(data.get("iterations"), 0),
            review_attempts=_as_int(data.get("reviewAttempts"), None),
            verification_attempts=_as_int(data.get("verificationAttempts"), None),
            session_id=_as_str(data.get("id")),
            working_directory=_as_str(data.get("workingDirectory")),
            created_at=_as_str(created),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class TaskSummary:
    """Task context handed to the review and verification agents."""

    task: str
    completed: str


@dataclass
class VerificationSection:
    """Parsed ``## Verification`` section of a session."""

    mode: str = "none"
    entry: str = ""
    start: Optional[str] = None
    stop: Optional[str] = None

    @property
    def enabled(self) -> bool:
        """Whether this section asks for any verification at all."""
        return self.mode != "none"

    @property
    def command_prefixes(self) -> list[str]:
        """Command prefixes allowed in cli mode."""
        return [p.strip() for p in self.entry.split(",") if p.strip()]


@dataclass
class SessionInfo:
    """Summary row for listing sessions."""

    session_id: str
    path: Path
    stage: str
    iterations: int
    created_at: str
    working_directory: str
    planned: bool
    body_status: Optional[str] = None

    @property
    def status(self) -> str:
        """Human-readable status: NOT_PLANNED, IN_PROGRESS, DONE or BLOCKED."""
        if not self.planned:
            return "NOT_PLANNED"
        if self.stage in TERMINAL_STAGES:
            return self.stage.upper()
        if self.body_status in ("DONE", "BLOCKED"):
            return self.body_status
        return "IN_PROGRESS"


def _as_int(value: Any, default: Optional[int]) -> Optional[int]:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# =============================================================================
# Metadata helpers
# =============================================================================


def split_metadata(content: str) -> tuple[Optional[str], str]:
    """Split content into (raw front matter, body).

    Returns (None, content) when there is no front-matter block.
    """
    match = _FRONT_MATTER_RE.match(content)
    if not match:
        return None, content
    return match.group(1), content[match.end():]


def parse_metadata(content: str) -> Optional[SessionMetadata]:
    """Parse the front-matter block, or return None if there is none."""
    raw, _ = split_metadata(content)
    if raw is None:
        return None
    try:
        data = yaml.safe_load(raw) if raw.strip() else {}
    except yaml.YAMLError as e:
        logger.warning(f"Unreadable session metadata: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return SessionMetadata.from_dict(data)


def _render(metadata: SessionMetadata, body: str) -> str:
    dumped = yaml.safe_dump(
        metadata.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )
    if body and not body.startswith("\n"):
        body = "\n" + body
    return f"---\n{dumped}---\n{body}"


def replace_metadata(content: str, metadata: SessionMetadata) -> str:
    """Replace (or add) the front-matter block with ``metadata``."""
    _, body = split_metadata(content)
    return _render(metadata, body)


def update_metadata(
    content: str,
    changes: Optional[Mapping[str, Any]] = None,
    defaults: Optional[SessionMetadata] = None,
) -> str:
    """Merge ``changes`` into the session's metadata block.

    Fields not named in ``changes`` keep their current values. When the
    content has no metadata block, one is synthesized from ``defaults``
    before the changes are applied.

    Args:
        content: Full session content.
        changes: Field name -> new value, using SessionMetadata attribute names.
        defaults: Metadata to start from when no block exists.

    Returns:
        Session content with the merged metadata block.

    Raises:
        TypeError: If ``changes`` names an unknown field.
    """
    current = parse_metadata(content)
    if current is None:
        current = replace(defaults) if defaults else SessionMetadata()
    merged = replace(current, **dict(changes or {}))
    return replace_metadata(content, merged)


# =============================================================================
# Section helpers
# =============================================================================


def _title_matches(title: str, name: str) -> bool:
    title = title.strip().strip("*").strip().lower()
    name = name.lower()
    return title == name or title.startswith(name + ":")


def extract_section(content: str, name: str) -> Optional[str]:
    """Return the text under the first heading called ``name``.

    A section runs until the next heading of equal or higher level. Headings
    inside fenced code blocks are ignored.

    Returns:
        The stripped section text, or None if no such heading exists.
    """
    _, body = split_metadata(content)
    lines = body.splitlines()
    in_fence = False
    level = 0
    start = None

    for index, line in enumerate(lines):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING_RE.match(line)
        if not match:
            continue
        heading_level = len(match.group(1))
        if start is None:
            if _title_matches(match.group(2), name):
                start = index + 1
                level = heading_level
        elif heading_level <= level:
            return "\n".join(lines[start:index]).strip()

    if start is None:
        return None
    return "\n".join(lines[start:]).strip()


def extract_task_summary(content: str) -> TaskSummary:
    """Extract the task description and completed-work summary."""
    return TaskSummary(
        task=extract_section(content, "Task") or "",
        completed=extract_section(content, "Completed") or "",
    )


def extract_verification_section(content: str) -> Optional[VerificationSection]:
    """Parse the Verification section, or return None if the session has none."""
    text = extract_section(content, "Verification")
    if text is None:
        return None

    fields: dict[str, str] = {}
    for line in text.splitlines():
        match = _VERIFICATION_FIELD_RE.match(line)
        if not match:
            continue
        key = match.group(1).lower()
        value = match.group(2).strip().strip("`").strip()
        if value and key not in fields:
            fields[key] = value

    return VerificationSection(
        mode=fields.get("mode", "none").lower(),
        entry=fields.get("entry", ""),
        start=fields.get("start"),
        stop=fields.get("stop"),
    )


def validate_verification(section: Optional[VerificationSection]) -> None:
    """Check that a Verification section can actually be run.

    Raises:
        InvalidVerificationError: For unknown modes, browser mode without an
            http(s) entry URL, or cli mode without command prefixes.
    """
    if section is None or section.mode == "none":
        return
    if section.mode not in VERIFICATION_MODES:
        raise InvalidVerificationError(
            f"Unknown verification mode '{section.mode}' (expected browser, cli or none)"
        )
    if section.mode == "browser":
        parsed = urlparse(section.entry)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidVerificationError(
                f"Verification mode 'browser' needs an http(s) entry URL, got '{section.entry}'"
            )
    if section.mode == "cli" and not section.command_prefixes:
        raise InvalidVerificationError(
            "Verification mode 'cli' needs a comma-separated list of allowed command prefixes"
        )


def append_feedback(content: str, heading: str, text: str) -> str:
    """Append agent feedback under a new ``## heading``.

    The feedback is written as a blockquote so headings and status markers in
    the agent's output are not mistaken for session structure.
    """
    lines = text.strip().splitlines() or ["(no output)"]
    quoted = "\n".join(f"> {line}" if line.strip() else ">" for line in lines)
    return f"{content.rstrip()}\n\n## {heading}\n\n{quoted}\n"


def body_status_marker(content: str) -> Optional[str]:
    """Return the first ``Status:`` marker in the body, upper-cased."""
    _, body = split_metadata(content)
    match = _STATUS_RE.search(body)
    return match.group(2).upper() if match else None


def set_body_status(content: str, marker: str) -> str:
    """Set the body ``Status:`` marker, adding ``## Status:`` if missing."""
    _, body = split_metadata(content)
    prefix = content[: len(content) - len(body)]
    if _STATUS_RE.search(body):
        body = _STATUS_RE.sub(lambda m: m.group(1) + marker, body, count=1)
    else:
        completed = re.search(r"^##[ \t]+Completed\b", body, re.MULTILINE | re.IGNORECASE)
        line = f"## Status: {marker}\n\n"
        if completed:
            body = body[:completed.start()] + line + body[completed.start():]
        else:
            body = f"{body.rstrip()}\n\n{line}"
    return prefix + body


def is_planned(content: str) -> bool:
    """Whether a session has been through planning.

    Sessions without a metadata block predate machine stages; for those a
    body ``Status:`` marker means a plan was written.
    """
    metadata = parse_metadata(content)
    if metadata is None:
        return body_status_marker(content) is not None
    return metadata.stage != "initialized"


def working_directory(content: str) -> Optional[str]:
    """Directory the session was created in."""
    metadata = parse_metadata(content)
    if metadata and metadata.working_directory:
        return metadata.working_directory
    match = _LEGACY_WORKDIR_RE.search(content)
    return match.group(1).strip() if match else None


def _nest_headings(text: str) -> str:
    """Push level 1-2 headings down two levels so they stay inside ## Task."""
    lines = []
    in_fence = False
    for line in text.splitlines():
        if _FENCE_RE.match(line):
            in_fence = not in_fence
        elif not in_fence and re.match(r"^#{1,2}[ \t]", line):
            line = "##" + line
        lines.append(line)
    return "\n".join(lines)


def generate_session_id() -> str:
    """Generate a short random session id."""
    return secrets.token_hex(4)


# =============================================================================
# Store
# =============================================================================


class SessionStore:
    """File-backed store of session documents, one file per session."""

    def __init__(self, session_dir: Path):
        """Initialize the store.

        Args:
            session_dir: Directory holding ``session-<id>.md`` files.
        """
        self.session_dir = Path(session_dir)

    def path(self, session_id: str) -> Path:
        """Path of a session's file."""
        return self.session_dir / f"session-{session_id}.md"

    def exists(self, session_id: str) -> bool:
        """Whether a session exists."""
        return self.path(session_id).is_file()

    def create(self, task_text: str, session_id: Optional[str] = None) -> str:
        """Create a new session in the ``initialized`` stage.

        Args:
            task_text: Markdown description of the task.
            session_id: Optional custom id. Generated when omitted.

        Returns:
            The session id.

        Raises:
            InvalidSessionIdError: If a custom id is not file-name safe.
            SessionExistsError: If the id is already in use.
        """
        if session_id is not None and not _SESSION_ID_RE.match(session_id):
            raise InvalidSessionIdError(
                f"Invalid session id '{session_id}': use letters, digits, '-' or '_'"
            )

        self.session_dir.mkdir(parents=True, exist_ok=True)
        sid = session_id or generate_session_id()
        path = self.path(sid)
        if path.exists():
            raise SessionExistsError(sid)

        metadata = SessionMetadata(
            stage="initialized",
            iterations=0,
            session_id=sid,
            working_directory=os.getcwd(),
            created_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        body = f"\n# Session: {sid}\n\n## Task\n\n{_nest_headings(task_text.strip())}\n"
        path.write_text(_render(metadata, body), encoding="utf-8")
        logger.info(f"Created session {sid} at {path}")
        return sid

    def read(self, session_id: str) -> str:
        """Read a session's full content.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        path = self.path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(session_id)
        return path.read_text(encoding="utf-8")

    def write(self, session_id: str, content: str) -> None:
        """Replace a session's full content.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        path = self.path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(session_id)
        path.write_text(content, encoding="utf-8")

    def update(self, session_id: str, changes: Mapping[str, Any]) -> SessionMetadata:
        """Read, merge metadata ``changes``, write back, and return the result."""
        content = update_metadata(self.read(session_id), changes)
        self.write(session_id, content)
        return parse_metadata(content) or SessionMetadata(session_id=session_id)

    def metadata(self, session_id: str) -> SessionMetadata:
        """Current metadata of a session (defaults if the block is missing)."""
        return parse_metadata(self.read(session_id)) or SessionMetadata(session_id=session_id)

    def list(self) -> list[SessionInfo]:
        """List sessions, newest first."""
        if not self.session_dir.is_dir():
            return []

        sessions = []
        for path in self.session_dir.glob("session-*.md"):
            session_id = path.stem[len("session-"):]
            try:
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning(f"Skipping unreadable session file {path}: {e}")
                continue

            metadata = parse_metadata(content)
            created_at = metadata.created_at if metadata else None
            if not created_at:
                legacy = _LEGACY_CREATED_RE.search(content)
                created_at = (
                    legacy.group(1).strip()
                    if legacy
                    else datetime.fromtimestamp(path.stat().st_mtime, timezone.utc).isoformat(timespec="seconds")
                )
            sessions.append(
                SessionInfo(
                    session_id=session_id,
                    path=path,
                    stage=metadata.stage if metadata else "unknown",
                    iterations=metadata.iterations if metadata else 0,
                    created_at=created_at,
                    working_directory=working_directory(content) or "unknown",
                    planned=is_planned(content),
                    body_status=body_status_marker(content),
                )
            )

        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def delete_all(self) -> int:
        """Delete every session file. Returns the number deleted."""
        count = 0
        for info in self.list():
            try:
                info.path.unlink()
                count += 1
            except OSError as e:
                logger.warning(f"Failed to delete {info.path}: {e}")
        return count

    def resolve_id(self, session_id: Optional[str] = None) -> str:
        """Resolve an explicit or implied session id.

        With no id, succeeds only when exactly one session exists.

        Raises:
            SessionNotFoundError: If an explicit id does not exist.
            SessionError: If no id was given and it cannot be inferred.
        """
        if session_id:
            if not self.exists(session_id):
                raise SessionNotFoundError(session_id)
            return session_id

        sessions = self.list()
        if len(sessions) == 1:
            return sessions[0].session_id
        if not sessions:
            raise SessionError("No sessions found. Run 'ralph init \"your task\"' to create one.")
        ids = ", ".join(s.session_id for s in sessions)
        raise SessionError(f"Multiple sessions found ({ids}). Specify a session id.")

"""Tri-state status resolution for sessions."""

from __future__ import annotations

from enum import Enum

from .session import SessionStore, body_status_marker, parse_metadata


class Status(str, Enum):
    """Verdict on whether the loop should keep going."""

    CONTINUE = "continue"
    DONE = "done"
    BLOCKED = "blocked"


def resolve_content(content: str) -> Status:
    """Resolve status from session content.

    The machine-owned ``stage`` wins over the ``Status:`` marker agents write
    in the body; the marker only counts while the stage is non-terminal.
    """
    metadata = parse_metadata(content)
    if metadata is not None:
        if metadata.stage == "done":
            return Status.DONE
        if metadata.stage == "blocked":
            return Status.BLOCKED

    marker = body_status_marker(content)
    if marker == "DONE":
        return Status.DONE
    if marker == "BLOCKED":
        return Status.BLOCKED
    return Status.CONTINUE


def resolve_status(store: SessionStore, session_id: str) -> Status:
    """Resolve status of a stored session. Missing sessions are fresh tasks."""
    if not store.exists(session_id):
        return Status.CONTINUE
    return resolve_content(store.read(session_id))

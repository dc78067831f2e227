"""Exception types raised by ralph-loop."""

from __future__ import annotations


class RalphError(Exception):
    """Base exception for ralph-loop errors."""
    pass


class SessionError(RalphError):
    """Raised for problems with a persisted session."""
    pass


class SessionNotFoundError(SessionError):
    """Raised when reading or writing a session that does not exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class SessionExistsError(SessionError):
    """Raised when creating a session whose id is already taken."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' already exists")


class InvalidSessionIdError(SessionError):
    """Raised for custom session ids that cannot be used as file names."""
    pass


class SessionNotPlannedError(SessionError):
    """Raised when running a session that has not been through planning."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' has not been planned yet")


class InvalidVerificationError(SessionError):
    """Raised when a session's Verification section is unusable."""
    pass


class PlanningError(RalphError):
    """Raised when the planning agent fails to produce a usable plan."""
    pass


class AgentNotFoundError(RalphError):
    """Raised when the agent executable cannot be started."""
    pass

"""Planning and refinement: turn a bare task into a session the loop can run."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from .agent_runner import AgentRunner, ToolProfile
from .config import Config
from .errors import PlanningError
from .prompts import build_plan_prompt, build_refine_prompt, load_agent_prompt
from .session import (
    SessionMetadata,
    SessionStore,
    body_status_marker,
    extract_section,
    parse_metadata,
    replace_metadata,
    set_body_status,
)

logger = logging.getLogger(__name__)

_PLANNABLE_STAGES = ("initialized", "planned")


def plan_session(
    store: SessionStore,
    runner: AgentRunner,
    session_id: str,
    config: Config,
    force: bool = False,
) -> SessionMetadata:
    """Run the planning agent against a session.

    The agent edits the session file to add Status, Completed, Remaining and
    Verification sections. Its edits to the metadata block are discarded.

    Args:
        store: Session store.
        runner: Runner used to invoke the planning agent.
        session_id: Session to plan.
        config: Loop configuration (working directory, prompt overrides).
        force: Re-plan a session that has already started running.

    Returns:
        The session metadata after planning.

    Raises:
        SessionNotFoundError: If the session does not exist.
        PlanningError: If the session is past planning (without ``force``) or
            the agent did not write a Remaining section.
    """
    content = store.read(session_id)
    snapshot = parse_metadata(content) or SessionMetadata(session_id=session_id)

    if snapshot.stage not in _PLANNABLE_STAGES and not force:
        raise PlanningError(
            f"Session '{session_id}' is already {snapshot.stage}; use --force to plan it again"
        )

    system_prompt = load_agent_prompt("planner", config.prompts_dir)
    user_prompt = build_plan_prompt(store.path(session_id), content, config.working_dir)

    result = runner.run(system_prompt, user_prompt, ToolProfile.full_access(), "planner")
    if not result.success:
        logger.warning(f"Planning agent exited with code {result.exit_code}")

    content = store.read(session_id)
    if extract_section(content, "Remaining") is None:
        # Leave the session as it was so planning can simply be retried.
        store.write(session_id, replace_metadata(content, snapshot))
        raise PlanningError("Planning agent did not add a '## Remaining' section to the session")

    if body_status_marker(content) is None:
        content = set_body_status(content, "IN_PROGRESS")

    metadata = replace(snapshot, stage="planned")
    store.write(session_id, replace_metadata(content, metadata))
    logger.info(f"Session {session_id} planned")
    return metadata


def refine_profile() -> ToolProfile:
    """Codebase inspection and session editing, no command execution."""
    return ToolProfile(
        allowed=("Read", "Write", "Edit", "Glob", "Grep"),
        disallowed=("Bash", "WebFetch", "WebSearch", "Task"),
    )


def refine_session(
    store: SessionStore,
    runner: AgentRunner,
    session_id: str,
    config: Config,
    passes: int = 1,
    guidance: Optional[str] = None,
) -> int:
    """Run refinement passes that rewrite a session's Task section.

    Each pass leaves the stage and counters untouched. A pass that loses the
    Task section is rolled back to the content it started from and stops
    the refinement.

    Args:
        store: Session store.
        runner: Runner used to invoke the refinement agent.
        session_id: Session to refine.
        config: Loop configuration (working directory, prompt overrides).
        passes: Number of refinement passes.
        guidance: Optional operator note for every pass.

    Returns:
        Number of passes completed.

    Raises:
        SessionNotFoundError: If the session does not exist.
        PlanningError: If the session has started running, or a pass
            removed the Task section.
    """
    if passes < 1:
        raise PlanningError("Refinement needs at least one pass")

    content = store.read(session_id)
    snapshot = parse_metadata(content) or SessionMetadata(session_id=session_id)
    if snapshot.stage not in _PLANNABLE_STAGES:
        raise PlanningError(
            f"Session '{session_id}' is already {snapshot.stage}; only unstarted sessions can be refined"
        )

    system_prompt = load_agent_prompt("refiner", config.prompts_dir)
    for refinement in range(1, passes + 1):
        before = store.read(session_id)
        user_prompt = build_refine_prompt(
            store.path(session_id), before, config.working_dir, guidance, refinement, passes
        )
        result = runner.run(system_prompt, user_prompt, refine_profile(), "refiner")
        if not result.success:
            logger.warning(f"Refinement agent exited with code {result.exit_code}")

        content = store.read(session_id)
        if not extract_section(content, "Task"):
            store.write(session_id, before)
            raise PlanningError(
                f"Refinement pass {refinement} removed the '## Task' section; the session was restored"
            )
        store.write(session_id, replace_metadata(content, snapshot))
        logger.info(f"Session {session_id} refined (pass {refinement}/{passes})")

    return passes

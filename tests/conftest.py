"""Shared test fixtures for ralph-loop tests."""

from __future__ import annotations

import io
from pathlib import Path
from typing import Callable, Iterable, Optional

import pytest
from rich.console import Console

from ralphloop.agent_runner import AgentCall, MockAgentRunner
from ralphloop.config import Config
from ralphloop.prompts import clear_prompt_cache
from ralphloop.session import SessionStore, set_body_status

PASS = "Looks good.\n\n## VERDICT: PASS"
FAIL = "Found problems.\n\n## VERDICT: FAIL\n\n1. The login form does not validate email."

CLI_VERIFICATION = """- mode: cli
- entry: ./todo, python -m todo"""

PLAN_TEMPLATE = """
## Status: IN_PROGRESS

## Completed

(none yet)

## Remaining

- [ ] Add the list command
- [ ] Add the done command
- [ ] Final verification

## Verification

{verification}

## Notes

Use argparse.
"""


@pytest.fixture(autouse=True)
def _fresh_prompt_cache() -> None:
    """Prompt overrides are cached per directory; start every test clean."""
    clear_prompt_cache()


@pytest.fixture
def quiet_console() -> Console:
    """Console that writes to a buffer instead of the terminal."""
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create an empty project directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def session_dir(tmp_path: Path) -> Path:
    """Directory for session files."""
    return tmp_path / "sessions"


@pytest.fixture
def store(session_dir: Path) -> SessionStore:
    """Session store backed by a temporary directory."""
    return SessionStore(session_dir)


@pytest.fixture
def config(project_dir: Path, session_dir: Path) -> Config:
    """Loop configuration pointing at the temporary directories."""
    return Config(working_dir=project_dir, session_dir=session_dir)


@pytest.fixture
def make_planned(store: SessionStore) -> Callable[..., str]:
    """Factory creating a planned session.

    Args (of the returned callable):
        verification: Body of the Verification section, or None to omit it.
        task: Task text.
        session_id: Optional custom id.
    """

    def _make(
        verification: Optional[str] = CLI_VERIFICATION,
        task: str = "Build a todo CLI with list and done commands.",
        session_id: Optional[str] = None,
    ) -> str:
        sid = store.create(task, session_id)
        plan = PLAN_TEMPLATE.format(verification=verification or "")
        if verification is None:
            plan = plan.replace("## Verification\n\n\n\n", "")
        store.write(sid, store.read(sid).rstrip() + "\n" + plan)
        store.update(sid, {"stage": "planned"})
        return sid

    return _make


@pytest.fixture
def scripted_runner(store: SessionStore, quiet_console: Console) -> Callable[..., MockAgentRunner]:
    """Factory for a MockAgentRunner that plays builder, reviewer and verifier.

    Each builder call pops the next entry of ``build_markers`` and, if it is
    not None, writes it as the session's body status. Reviewer and verifier
    calls pop their next output, defaulting to a PASS verdict.
    """

    def _make(
        session_id: str,
        build_markers: Iterable[Optional[str]] = (),
        review_outputs: Iterable[str] = (),
        verify_outputs: Iterable[str] = (),
    ) -> MockAgentRunner:
        markers = list(build_markers)
        reviews = list(review_outputs)
        verifies = list(verify_outputs)

        def on_run(call: AgentCall) -> Optional[str]:
            if call.label == "builder":
                marker = markers.pop(0) if markers else None
                if marker:
                    store.write(session_id, set_body_status(store.read(session_id), marker))
                return "Worked on the next step."
            if call.label == "reviewer":
                return reviews.pop(0) if reviews else PASS
            if call.label == "verifier":
                return verifies.pop(0) if verifies else PASS
            return None

        return MockAgentRunner(on_run=on_run, console=quiet_console)

    return _make

"""Tests for the review and verification gate stages."""

from __future__ import annotations

from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from ralphloop.agent_runner import MockAgentRunner
from ralphloop.gates import GateOutcome, Verdict, parse_verdict
from ralphloop.review import ReviewStage, review_profile
from ralphloop.session import (
    SessionStore,
    VerificationSection,
    body_status_marker,
    extract_section,
    set_body_status,
)
from ralphloop.verify import VerificationStage, build_preamble, verify_profile

PASS = "Looks good.\n\n## VERDICT: PASS"
FAIL = "Found problems.\n\n## VERDICT: FAIL\n\n1. The login form does not validate email."

BROWSER_VERIFICATION = """- mode: browser
- entry: http://localhost:3000"""


def _claim_done(store: SessionStore, sid: str) -> None:
    store.write(sid, set_body_status(store.read(sid), "DONE"))


class TestParseVerdict:
    """Tests for verdict parsing."""

    def test_pass(self) -> None:
        """Test a PASS verdict."""
        assert parse_verdict(PASS) is Verdict.PASS

    def test_fail(self) -> None:
        """Test a FAIL verdict."""
        assert parse_verdict(FAIL) is Verdict.FAIL

    def test_last_marker_wins(self) -> None:
        """Test a corrected verdict counts."""
        assert parse_verdict("## VERDICT: FAIL\n\nActually fine.\n\n## VERDICT: PASS") is Verdict.PASS
        assert parse_verdict("## VERDICT: PASS\n\nWait.\n\n## VERDICT: FAIL") is Verdict.FAIL

    def test_case_and_spacing(self) -> None:
        """Test lenient spacing and case."""
        assert parse_verdict("##VERDICT:pass") is Verdict.PASS
        assert parse_verdict("## verdict:   Fail") is Verdict.FAIL

    def test_missing_marker(self) -> None:
        """Test output without a verdict is unparsed."""
        assert parse_verdict("The code looks great!") is Verdict.UNPARSED
        assert parse_verdict("") is Verdict.UNPARSED
        assert parse_verdict("VERDICT: PASS") is Verdict.UNPARSED


class TestToolProfiles:
    """Tests for gate tool profiles."""

    def test_review_profile_is_read_only(self) -> None:
        """Test the reviewer can inspect and run commands but not edit."""
        profile = review_profile()

        assert set(profile.allowed) == {"Read", "Glob", "Grep", "Bash"}
        assert "Write" in profile.disallowed
        assert "Edit" in profile.disallowed
        assert profile.skip_permissions is False

    def test_browser_profile(self) -> None:
        """Test browser verification only gets browser tools."""
        profile = verify_profile(VerificationSection(mode="browser", entry="http://localhost:3000"))

        assert profile.allowed == ("mcp__plugin_playwright_playwright__*",)
        for tool in ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebFetch", "WebSearch", "Task"):
            assert tool in profile.disallowed

    def test_cli_profile(self) -> None:
        """Test cli verification gets one Bash pattern per prefix."""
        profile = verify_profile(VerificationSection(mode="cli", entry="./todo, python -m todo"))

        assert profile.allowed == ("Bash(./todo:*)", "Bash(python -m todo:*)")
        assert "Bash" not in profile.disallowed
        assert "Read" in profile.disallowed

    def test_preamble(self) -> None:
        """Test the verifier is told where to start."""
        assert build_preamble(VerificationSection(mode="browser", entry="http://x.test")) == (
            "Entry point URL: http://x.test"
        )
        assert build_preamble(VerificationSection(mode="cli", entry="./app")) == "Allowed commands: ./app"


class TestReviewStage:
    """Tests for ReviewStage."""

    @pytest.fixture
    def stage_factory(
        self, store: SessionStore, project_dir: Path, quiet_console: Console
    ) -> Callable[..., ReviewStage]:
        def _make(runner: MockAgentRunner, max_attempts: int = 3, **kwargs) -> ReviewStage:
            return ReviewStage(
                store=store,
                runner=runner,
                max_attempts=max_attempts,
                working_dir=project_dir,
                console=quiet_console,
                **kwargs,
            )

        return _make

    def test_pass_rolls_back_counter(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a passing review hands its attempt back."""
        sid = make_planned()
        _claim_done(store, sid)
        runner = MockAgentRunner(outputs=[PASS])

        result = stage_factory(runner).run(sid)

        assert result.outcome is GateOutcome.PASSED
        assert result.attempt == 1
        metadata = store.metadata(sid)
        assert metadata.review_attempts == 0
        assert metadata.stage == "running"
        assert body_status_marker(store.read(sid)) == "DONE"

    def test_counter_persisted_before_invocation(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test the attempt is on disk while the reviewer runs."""
        sid = make_planned()
        seen = {}

        def on_run(call):
            metadata = store.metadata(sid)
            seen["attempts"] = metadata.review_attempts
            seen["stage"] = metadata.stage
            return PASS

        stage_factory(MockAgentRunner(on_run=on_run)).run(sid)

        assert seen == {"attempts": 1, "stage": "reviewing"}

    def test_prompt_contents(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory, project_dir: Path
    ) -> None:
        """Test the reviewer sees the task, completed work and working directory."""
        sid = make_planned(task="Build a todo CLI.")
        runner = MockAgentRunner(outputs=[PASS])

        stage_factory(runner).run(sid)

        [call] = runner.calls_for("reviewer")
        assert call.system_prompt.startswith(f"Working directory: {project_dir}")
        assert "## VERDICT: PASS" in call.system_prompt
        assert "Build a todo CLI." in call.user_prompt
        assert "(none yet)" in call.user_prompt
        assert call.tool_profile == review_profile()

    def test_fail_writes_feedback(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a failing review records feedback and resets the DONE claim."""
        sid = make_planned()
        _claim_done(store, sid)

        result = stage_factory(MockAgentRunner(outputs=[FAIL])).run(sid)

        assert result.outcome is GateOutcome.FAILED
        assert result.verdict is Verdict.FAIL
        content = store.read(sid)
        feedback = extract_section(content, "Review Feedback (attempt 1/3)")
        assert "> 1. The login form does not validate email." in feedback
        assert body_status_marker(content) == "IN_PROGRESS"
        metadata = store.metadata(sid)
        assert metadata.review_attempts == 1
        assert metadata.stage == "running"

    def test_missing_verdict_is_fail(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test output without a verdict fails the review."""
        sid = make_planned()

        result = stage_factory(MockAgentRunner(outputs=["Everything looks fine to me."])).run(sid)

        assert result.outcome is GateOutcome.FAILED
        assert result.verdict is Verdict.UNPARSED
        assert store.metadata(sid).review_attempts == 1

    def test_empty_output_feedback(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a silent reviewer still leaves a note."""
        sid = make_planned()

        stage_factory(MockAgentRunner(outputs=[""], exit_code=1)).run(sid)

        assert "produced no output (exit code 1)" in store.read(sid)

    def test_fail_then_pass_counts(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test the counter keeps failures but not passes."""
        sid = make_planned()
        stage = stage_factory(MockAgentRunner(outputs=[FAIL, PASS]))

        assert stage.run(sid).outcome is GateOutcome.FAILED
        assert store.metadata(sid).review_attempts == 1
        assert stage.run(sid).outcome is GateOutcome.PASSED
        assert store.metadata(sid).review_attempts == 1

    def test_corrected_verdict_passes(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test FAIL followed by PASS in one response counts as a pass."""
        sid = make_planned()
        output = "## VERDICT: FAIL\n\nOn second look the tests do pass.\n\n## VERDICT: PASS"

        assert stage_factory(MockAgentRunner(outputs=[output])).run(sid).passed

    def test_exhausted(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a used-up budget blocks the session without invoking the reviewer."""
        sid = make_planned()
        runner = MockAgentRunner(default_output=FAIL)
        stage = stage_factory(runner, max_attempts=2)

        assert stage.run(sid).outcome is GateOutcome.FAILED
        assert stage.run(sid).outcome is GateOutcome.FAILED
        result = stage.run(sid)

        assert result.outcome is GateOutcome.EXHAUSTED
        assert result.attempt == 2
        assert runner.call_count == 2
        metadata = store.metadata(sid)
        assert metadata.stage == "blocked"
        assert metadata.review_attempts == 2

    def test_agent_metadata_edits_discarded(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test the gate re-applies its own metadata after the agent runs."""
        sid = make_planned()

        def on_run(call):
            store.update(sid, {"stage": "done", "review_attempts": 0, "iterations": 99})
            return FAIL

        stage_factory(MockAgentRunner(on_run=on_run)).run(sid)

        metadata = store.metadata(sid)
        assert metadata.stage == "running"
        assert metadata.review_attempts == 1
        assert metadata.iterations == 0

    def test_run_logger_records_attempts(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test each attempt is reported to the run logger."""
        sid = make_planned()
        run_logger = MagicMock()

        stage_factory(MockAgentRunner(outputs=[FAIL]), run_logger=run_logger).run(sid)

        run_logger.log_gate_attempt.assert_called_once_with("reviewer", 1, "fail", "failed")


class TestVerificationStage:
    """Tests for VerificationStage."""

    @pytest.fixture
    def stage_factory(
        self, store: SessionStore, project_dir: Path, quiet_console: Console
    ) -> Callable[..., VerificationStage]:
        def _make(runner: MockAgentRunner, max_attempts: int = 3, **kwargs) -> VerificationStage:
            return VerificationStage(
                store=store,
                runner=runner,
                max_attempts=max_attempts,
                working_dir=project_dir,
                console=quiet_console,
                **kwargs,
            )

        return _make

    def test_mode_none_passes_without_invocation(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test ``mode: none`` is an automatic pass."""
        sid = make_planned(verification="- mode: none")
        runner = MockAgentRunner(default_output=FAIL)

        result = stage_factory(runner).run(sid)

        assert result.outcome is GateOutcome.PASSED
        assert runner.call_count == 0
        assert store.metadata(sid).verification_attempts is None

    def test_missing_section_passes(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a session without a Verification section is not verified."""
        sid = make_planned(verification=None)
        runner = MockAgentRunner(default_output=FAIL)

        assert stage_factory(runner).run(sid).passed
        assert runner.call_count == 0

    def test_pass_keeps_counter(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test a passing verification keeps its attempt counted."""
        sid = make_planned()

        result = stage_factory(MockAgentRunner(outputs=[PASS])).run(sid)

        assert result.passed
        metadata = store.metadata(sid)
        assert metadata.verification_attempts == 1
        assert metadata.stage == "running"

    def test_browser_prompt(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test the browser verifier gets the URL and browser prompt."""
        sid = make_planned(verification=BROWSER_VERIFICATION)
        runner = MockAgentRunner(outputs=[PASS])

        stage_factory(runner).run(sid)

        [call] = runner.calls_for("verifier")
        assert call.system_prompt.startswith("Entry point URL: http://localhost:3000")
        assert "browser" in call.system_prompt
        assert call.tool_profile.allowed == ("mcp__plugin_playwright_playwright__*",)

    def test_prompt_override(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory, tmp_path: Path
    ) -> None:
        """Test a prompt override directory replaces the built-in prompt."""
        prompts_dir = tmp_path / "prompts"
        prompts_dir.mkdir()
        (prompts_dir / "verifier-cli.md").write_text(
            "---\nname: verifier-cli\n---\nCustom CLI tester prompt.\n", encoding="utf-8"
        )
        sid = make_planned()
        runner = MockAgentRunner(outputs=[PASS])

        stage_factory(runner, prompts_dir=prompts_dir).run(sid)

        assert runner.calls[0].system_prompt == (
            "Allowed commands: ./todo, python -m todo\n\nCustom CLI tester prompt."
        )

    def test_two_failures_then_exhausted(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test the third entry with a budget of two reports exhaustion."""
        sid = make_planned()
        runner = MockAgentRunner(outputs=[FAIL, FAIL])
        stage = stage_factory(runner, max_attempts=2)

        assert stage.run(sid).outcome is GateOutcome.FAILED
        assert stage.run(sid).outcome is GateOutcome.FAILED
        assert stage.run(sid).outcome is GateOutcome.EXHAUSTED

        assert len(runner.calls_for("verifier")) == 2
        metadata = store.metadata(sid)
        assert metadata.stage == "blocked"
        assert metadata.verification_attempts == 2
        content = store.read(sid)
        assert "## Verification Feedback (attempt 1/2)" in content
        assert "## Verification Feedback (attempt 2/2)" in content

    def test_invalid_section_is_failed_attempt(
        self, store: SessionStore, make_planned: Callable[..., str], stage_factory
    ) -> None:
        """Test an unknown mode fails the attempt with feedback and no invocation."""
        sid = make_planned(verification="- mode: api\n- entry: http://localhost:8000")
        _claim_done(store, sid)
        runner = MockAgentRunner(default_output=PASS)
        run_logger = MagicMock()

        result = stage_factory(runner, run_logger=run_logger).run(sid)

        assert result.outcome is GateOutcome.FAILED
        assert result.attempt == 1
        assert "Unknown verification mode 'api'" in result.feedback
        assert runner.call_count == 0
        metadata = store.metadata(sid)
        assert metadata.stage == "running"
        assert metadata.verification_attempts == 1
        content = store.read(sid)
        assert body_status_marker(content) == "IN_PROGRESS"
        assert "> The ## Verification section is invalid" in content
        run_logger.log_error.assert_called_once()
        assert run_logger.log_error.call_args.args[1] == {"stage": "verifier", "attempt": 1}

    def test_problem_for_valid_section(
        self, make_planned: Callable[..., str], store: SessionStore, stage_factory
    ) -> None:
        """Test a usable section reports no problem."""
        sid = make_planned()

        assert stage_factory(MockAgentRunner()).problem(store.read(sid)) is None

"""Tests for the verification server lifecycle."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from ralphloop.server import (
    ServerHandle,
    cleanup_verification_artifacts,
    needs_shell,
    run_stop_command,
    start_server,
    stop_server,
    wait_for_ready,
)


class TestNeedsShell:
    """Tests for shell operator detection."""

    @pytest.mark.parametrize(
        "command",
        [
            "npm run build && npm start",
            "make serve || true",
            "cat log | grep x",
            "cd app; npm start",
            "node server.js > out.log",
            "PORT=$PORT npm start",
            "PORT=3000 npm run dev",
            "  NODE_ENV=test node server.js",
            "echo `date`",
        ],
    )
    def test_shell_syntax(self, command: str) -> None:
        """Test commands with shell operators need a shell."""
        assert needs_shell(command) is True

    @pytest.mark.parametrize("command", ["npm run dev", "python -m http.server 8000", "./serve --port=3000"])
    def test_plain_commands(self, command: str) -> None:
        """Test plain commands run without a shell."""
        assert needs_shell(command) is False


class TestStartServer:
    """Tests for start_server."""

    def test_plain_command_split(self, tmp_path: Path) -> None:
        """Test plain commands are split and run in their own session."""
        with patch("subprocess.Popen") as mock_popen:
            mock_popen.return_value = MagicMock(pid=4321)
            handle = start_server("npm run dev", tmp_path)

        args, kwargs = mock_popen.call_args
        assert args[0] == ["npm", "run", "dev"]
        assert kwargs["shell"] is False
        assert kwargs["cwd"] == tmp_path
        assert kwargs["start_new_session"] is hasattr(os, "killpg")
        assert handle.pid == 4321
        assert handle.command == "npm run dev"

    def test_env_prefix_runs_in_shell(self, tmp_path: Path) -> None:
        """Test a leading VAR=value assignment is handed to the shell."""
        with patch("subprocess.Popen") as mock_popen:
            start_server("PORT=3000 npm run dev", tmp_path)

        args, kwargs = mock_popen.call_args
        assert args[0] == "PORT=3000 npm run dev"
        assert kwargs["shell"] is True

    def test_shell_command(self, tmp_path: Path) -> None:
        """Test shell syntax is passed to the shell verbatim."""
        with patch("subprocess.Popen") as mock_popen:
            start_server("npm run build && npm start", tmp_path)

        args, kwargs = mock_popen.call_args
        assert args[0] == "npm run build && npm start"
        assert kwargs["shell"] is True

    @pytest.mark.skipif(not hasattr(os, "killpg"), reason="needs POSIX process groups")
    def test_real_process_group(self, tmp_path: Path) -> None:
        """Test a started server and its children are stopped together."""
        handle = start_server("sleep 30 & sleep 30", tmp_path)
        try:
            assert handle.group_leader is True
            assert os.getpgid(handle.pid) == handle.pid
        finally:
            stop_server(handle, grace=5.0)

        assert handle.process.poll() is not None


class TestWaitForReady:
    """Tests for wait_for_ready."""

    def test_ready_after_connection_errors(self) -> None:
        """Test polling continues through connection errors."""
        responses = [httpx.ConnectError("refused"), MagicMock(status_code=200)]

        with patch("ralphloop.server.httpx.get", side_effect=responses) as mock_get:
            assert wait_for_ready("http://localhost:3000", timeout=5.0, interval=0.01) is True

        assert mock_get.call_count == 2

    def test_client_errors_count_as_ready(self) -> None:
        """Test a 404 still means the server is up."""
        with patch("ralphloop.server.httpx.get", return_value=MagicMock(status_code=404)):
            assert wait_for_ready("http://localhost:3000", timeout=5.0, interval=0.01) is True

    def test_server_errors_time_out(self) -> None:
        """Test a server answering 5xx never becomes ready."""
        with patch("ralphloop.server.httpx.get", return_value=MagicMock(status_code=503)):
            assert wait_for_ready("http://localhost:3000", timeout=0.05, interval=0.01) is False

    def test_never_reachable(self) -> None:
        """Test an unreachable server times out without raising."""
        with patch("ralphloop.server.httpx.get", side_effect=httpx.ConnectError("refused")):
            assert wait_for_ready("http://localhost:3000", timeout=0.05, interval=0.01) is False


class TestStopServer:
    """Tests for stop_server."""

    def test_signals_process_group(self) -> None:
        """Test the whole group gets SIGTERM."""
        process = MagicMock(pid=999)
        handle = ServerHandle(process=process, command="npm run dev", group_leader=True)

        with patch("ralphloop.server.os.killpg", create=True) as mock_killpg:
            stop_server(handle, grace=1.0)

        mock_killpg.assert_called_once_with(999, signal.SIGTERM)
        process.wait.assert_called_once_with(timeout=1.0)

    def test_without_group_terminates(self) -> None:
        """Test the process alone is terminated without a group."""
        process = MagicMock(pid=999)
        handle = ServerHandle(process=process, command="npm run dev", group_leader=False)

        stop_server(handle)

        process.terminate.assert_called_once()

    def test_already_exited(self) -> None:
        """Test a vanished group is not an error."""
        process = MagicMock(pid=999)
        handle = ServerHandle(process=process, command="npm run dev", group_leader=True)

        with patch("ralphloop.server.os.killpg", create=True, side_effect=ProcessLookupError()):
            stop_server(handle)

    def test_still_running_after_grace(self) -> None:
        """Test a server ignoring SIGTERM is killed, and nothing is raised."""
        process = MagicMock(pid=999)
        process.wait.side_effect = subprocess.TimeoutExpired(cmd="npm", timeout=1.0)
        handle = ServerHandle(process=process, command="npm run dev", group_leader=False)

        stop_server(handle, grace=1.0)

        process.terminate.assert_called_once()
        process.kill.assert_called_once()

    def test_group_killed_after_grace(self) -> None:
        """Test a group ignoring SIGTERM gets SIGKILL."""
        process = MagicMock(pid=999)
        process.wait.side_effect = [subprocess.TimeoutExpired(cmd="npm", timeout=1.0), 0]
        handle = ServerHandle(process=process, command="npm run dev", group_leader=True)

        with patch("ralphloop.server.os.killpg", create=True) as mock_killpg:
            stop_server(handle, grace=1.0)

        assert [c.args for c in mock_killpg.call_args_list] == [
            (999, signal.SIGTERM),
            (999, signal.SIGKILL),
        ]


class TestRunStopCommand:
    """Tests for run_stop_command."""

    def test_success(self, tmp_path: Path) -> None:
        """Test a successful stop command."""
        assert run_stop_command("true", tmp_path) is True

    def test_failure(self, tmp_path: Path) -> None:
        """Test a failing stop command is reported, not raised."""
        assert run_stop_command("exit 3", tmp_path) is False

    def test_runs_in_working_dir(self, tmp_path: Path) -> None:
        """Test the command runs in the project directory."""
        assert run_stop_command("touch stopped.flag", tmp_path) is True
        assert (tmp_path / "stopped.flag").exists()

    def test_timeout(self, tmp_path: Path) -> None:
        """Test a hanging stop command is abandoned."""
        with patch(
            "ralphloop.server.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="docker compose down", timeout=30),
        ):
            assert run_stop_command("docker compose down", tmp_path) is False


class TestCleanupArtifacts:
    """Tests for cleanup_verification_artifacts."""

    def test_removes_new_screenshots_and_scratch(self, tmp_path: Path) -> None:
        """Test fresh screenshots and scratch directories are removed."""
        since = time.time() - 10
        old = tmp_path / "design.png"
        old.write_bytes(b"old")
        os.utime(old, (since - 3600, since - 3600))

        scratch = tmp_path / ".playwright-mcp"
        scratch.mkdir()
        (scratch / "trace.json").write_text("{}")
        (tmp_path / "page-1.png").write_bytes(b"new")
        (tmp_path / "page-2.JPEG").write_bytes(b"new")
        (tmp_path / "notes.txt").write_text("keep")

        removed = cleanup_verification_artifacts(tmp_path, since)

        assert removed == 3
        assert not scratch.exists()
        assert not (tmp_path / "page-1.png").exists()
        assert not (tmp_path / "page-2.JPEG").exists()
        assert old.exists()
        assert (tmp_path / "notes.txt").exists()

    def test_nothing_to_clean(self, tmp_path: Path) -> None:
        """Test an empty directory is fine."""
        assert cleanup_verification_artifacts(tmp_path, time.time()) == 0

    def test_missing_directory(self, tmp_path: Path) -> None:
        """Test a missing directory is not an error."""
        assert cleanup_verification_artifacts(tmp_path / "gone", time.time()) == 0

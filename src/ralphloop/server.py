"""Lifecycle of the application server used during black-box verification.

The server runs in its own process group so that stopping it also stops any
workers it spawned (dev servers commonly fork). Everything here is
best-effort: a server that never becomes ready, a stop command that fails,
or leftover artifacts never change the outcome of the done-gate.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

SHELL_OPERATORS = re.compile(r"&&|\|\||[|;<>$`]")
ENV_ASSIGNMENT = re.compile(r"^\s*[A-Za-z_][A-Za-z0-9_]*=")
SCREENSHOT_SUFFIXES = (".png", ".jpg", ".jpeg")
SCRATCH_DIRS = (".playwright-mcp",)


@dataclass
class ServerHandle:
    """A started server process.

    ``group_leader`` is True when the process leads its own process group,
    in which case stopping it signals the whole group.
    """

    process: subprocess.Popen
    command: str
    group_leader: bool

    @property
    def pid(self) -> int:
        """Process id (and process group id when group_leader)."""
        return self.process.pid


def needs_shell(command: str) -> bool:
    """Whether a command uses shell syntax (pipes, chaining, redirects, VAR=value prefixes)."""
    return bool(SHELL_OPERATORS.search(command) or ENV_ASSIGNMENT.match(command))


def start_server(command: str, cwd: Path) -> ServerHandle:
    """Start a server in the background, detached in its own process group.

    Args:
        command: Start command from the session's Verification section.
        cwd: Directory to run it in.

    Returns:
        ServerHandle for stop_server().
    """
    use_shell = needs_shell(command)
    group_leader = hasattr(os, "killpg")
    logger.info(f"Starting server: {command}")

    process = subprocess.Popen(
        command if use_shell else shlex.split(command),
        cwd=cwd,
        shell=use_shell,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=group_leader,
    )
    logger.debug(f"Server started with pid {process.pid} (shell={use_shell})")
    return ServerHandle(process=process, command=command, group_leader=group_leader)


def wait_for_ready(
    url: str,
    timeout: float = 15.0,
    interval: float = 0.5,
    request_timeout: float = 2.0,
) -> bool:
    """Poll ``url`` until it answers with a status below 500.

    Returns:
        True once ready, False if ``timeout`` elapses first. Never raises.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            response = httpx.get(url, timeout=request_timeout, follow_redirects=False)
            if response.status_code < 500:
                logger.info(f"Server ready at {url} (HTTP {response.status_code})")
                return True
            logger.debug(f"Server at {url} answered HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.debug(f"Server not ready yet: {e}")
        time.sleep(interval)

    logger.warning(f"Server at {url} not ready after {timeout:.0f}s")
    return False


def stop_server(handle: ServerHandle, grace: float = 5.0) -> None:
    """Terminate the server and every process in its group.

    Failures (already exited, permission denied) are logged and ignored.
    """
    try:
        if handle.group_leader:
            os.killpg(handle.pid, signal.SIGTERM)
        else:
            handle.process.terminate()
    except (ProcessLookupError, PermissionError) as e:
        logger.debug(f"Server {handle.pid} already gone: {e}")
    except OSError as e:
        logger.warning(f"Failed to stop server {handle.pid}: {e}")

    try:
        handle.process.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning(f"Server {handle.pid} still running {grace:.0f}s after SIGTERM, killing it")
        _kill(handle)
    else:
        logger.info(f"Server stopped (pid {handle.pid})")


def _kill(handle: ServerHandle) -> None:
    try:
        if handle.group_leader:
            os.killpg(handle.pid, signal.SIGKILL)
        else:
            handle.process.kill()
    except OSError as e:
        logger.debug(f"Failed to kill server {handle.pid}: {e}")
        return
    try:
        handle.process.wait(timeout=1.0)
    except subprocess.TimeoutExpired:
        logger.warning(f"Server {handle.pid} did not exit after SIGKILL")


def run_stop_command(command: str, cwd: Path, timeout: float = 30.0) -> bool:
    """Run a cleanup command such as ``docker compose down``.

    Returns:
        True if it exited 0. Failures and timeouts are logged, never raised.
    """
    logger.info(f"Running stop command: {command}")
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Stop command timed out after {timeout:.0f}s")
        return False
    except OSError as e:
        logger.warning(f"Stop command failed: {e}")
        return False

    if result.returncode != 0:
        logger.warning(f"Stop command exited with code {result.returncode}")
    return result.returncode == 0


def cleanup_verification_artifacts(cwd: Path, since: float) -> int:
    """Remove scratch files the verifier cannot delete itself.

    Removes tool scratch directories and top-level screenshots modified at or
    after ``since`` (a ``time.time()`` timestamp).

    Returns:
        Number of files and directories removed.
    """
    removed = 0
    cwd = Path(cwd)

    for name in SCRATCH_DIRS:
        scratch = cwd / name
        if scratch.is_dir():
            try:
                shutil.rmtree(scratch)
                removed += 1
            except OSError as e:
                logger.warning(f"Failed to remove {scratch}: {e}")

    try:
        candidates = list(cwd.iterdir())
    except OSError as e:
        logger.warning(f"Failed to scan {cwd} for artifacts: {e}")
        return removed

    for path in candidates:
        if path.suffix.lower() not in SCREENSHOT_SUFFIXES:
            continue
        try:
            if path.is_file() and path.stat().st_mtime >= since:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")

    if removed:
        logger.info(f"Removed {removed} verification artifact(s)")
    return removed

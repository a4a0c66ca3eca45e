"""Session executor that runs each command as a one-shot CLI subprocess."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import IO

from auto_resume.engine.errors import SessionError
from auto_resume.engine.session.base import ProjectContext, SessionHandle
from auto_resume.storage.common import file_timestamp, utc_now

logger = logging.getLogger(__name__)


class ProcessSessionExecutor:
    """Render ``command_template`` per command and run it in the project directory.

    Output of every command is appended to one log file per session, which serves as the
    captured screen text. The process exit code is exposed through ``last_exit_status``
    so completion can be detected without scraping output.
    """

    def __init__(
        self,
        *,
        command_template: str = "claude -p {command}",
        logs_dir: Path,
        graceful_terminate_seconds: float = 2.0,
    ) -> None:
        self.command_template = command_template
        self.logs_dir = logs_dir
        self.graceful_terminate_seconds = graceful_terminate_seconds
        self._processes: dict[str, subprocess.Popen[str]] = {}
        self._log_handles: dict[str, IO[str]] = {}
        self._lock = threading.Lock()

    def start_session(self, project: ProjectContext) -> SessionHandle:
        session_id = f"{project.name}-{file_timestamp()}"
        log_path = self.logs_dir / f"session-{session_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.touch()
        logger.info("Started process session %s (log %s)", session_id, log_path)
        return SessionHandle(
            session_id=session_id,
            project=project,
            started_at=utc_now(),
            details={"log_path": str(log_path)},
        )

    def is_alive(self, handle: SessionHandle) -> bool:
        return Path(handle.details["log_path"]).exists()

    def send_command(self, handle: SessionHandle, text: str) -> None:
        with self._lock:
            running = self._processes.get(handle.session_id)
            if running is not None and running.poll() is None:
                raise SessionError(f"Session {handle.session_id} is still running a command")
            run_args = [
                part.replace("{command}", text) if "{command}" in part else part
                for part in shlex.split(self.command_template)
            ]
            log_handle = self._reopen_log(handle)
            log_handle.write(f"\n$ {text}\n")
            log_handle.flush()
            try:
                self._processes[handle.session_id] = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=handle.project.project_dir,
                    env=os.environ.copy(),
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except FileNotFoundError as error:
                raise SessionError(f"CLI command not found: {run_args[0]}") from error
            except OSError as error:
                raise SessionError(f"CLI command failed to start: {error}") from error

    def capture_recent_output(self, handle: SessionHandle, lines: int) -> str:
        log_path = Path(handle.details["log_path"])
        if not log_path.exists():
            return ""
        with log_path.open("r", encoding="utf-8", errors="replace") as stream:
            return "".join(deque(stream, maxlen=max(1, lines)))

    def last_exit_status(self, handle: SessionHandle) -> int | None:
        with self._lock:
            process = self._processes.get(handle.session_id)
        if process is None:
            return None
        return process.poll()

    def interrupt(self, handle: SessionHandle) -> None:
        with self._lock:
            process = self._processes.get(handle.session_id)
        if process is not None and process.poll() is None:
            logger.warning("Terminating running command in session %s", handle.session_id)
            _terminate_process(process, grace_seconds=self.graceful_terminate_seconds)

    def close(self, handle: SessionHandle) -> None:
        self.interrupt(handle)
        with self._lock:
            self._processes.pop(handle.session_id, None)
            log_handle = self._log_handles.pop(handle.session_id, None)
        if log_handle is not None:
            log_handle.close()

    def _reopen_log(self, handle: SessionHandle) -> IO[str]:
        log_handle = self._log_handles.get(handle.session_id)
        if log_handle is None or log_handle.closed:
            log_path = Path(handle.details["log_path"])
            log_handle = log_path.open("a", encoding="utf-8")  # noqa: SIM115
            self._log_handles[handle.session_id] = log_handle
        return log_handle


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)

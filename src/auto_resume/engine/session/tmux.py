"""Session executor driving the AI CLI inside a tmux session."""

from __future__ import annotations

import logging
import re
import shlex
import subprocess

from auto_resume.engine.errors import SessionError
from auto_resume.engine.session.base import ProjectContext, SessionHandle
from auto_resume.storage.common import utc_now

logger = logging.getLogger(__name__)

_SESSION_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


class TmuxSessionExecutor:
    """Start/attach a detached tmux session and talk to it with send-keys/capture-pane."""

    def __init__(
        self,
        *,
        cli_command: str = "claude --continue",
        session_prefix: str = "auto-resume",
        tmux_binary: str = "tmux",
    ) -> None:
        self.cli_command = cli_command
        self.session_prefix = session_prefix
        self.tmux_binary = tmux_binary

    def start_session(self, project: ProjectContext) -> SessionHandle:
        name = self.session_name(project)
        if self._tmux("has-session", "-t", name, check=False).returncode != 0:
            logger.info("Starting tmux session %s in %s", name, project.project_dir)
            self._tmux(
                "new-session",
                "-d",
                "-s",
                name,
                "-c",
                str(project.project_dir),
                *shlex.split(self.cli_command),
            )
        else:
            logger.info("Attaching to existing tmux session %s", name)
        return SessionHandle(session_id=name, project=project, started_at=utc_now())

    def is_alive(self, handle: SessionHandle) -> bool:
        return self._tmux("has-session", "-t", handle.session_id, check=False).returncode == 0

    def send_command(self, handle: SessionHandle, text: str) -> None:
        self._tmux("send-keys", "-t", handle.session_id, "-l", text)
        self._tmux("send-keys", "-t", handle.session_id, "Enter")

    def capture_recent_output(self, handle: SessionHandle, lines: int) -> str:
        result = self._tmux(
            "capture-pane",
            "-p",
            "-J",
            "-t",
            handle.session_id,
            "-S",
            f"-{max(1, lines)}",
        )
        return result.stdout

    def interrupt(self, handle: SessionHandle) -> None:
        self._tmux("send-keys", "-t", handle.session_id, "C-c", check=False)

    def session_name(self, project: ProjectContext) -> str:
        safe = _SESSION_NAME_UNSAFE.sub("-", project.name).strip("-") or "default"
        return f"{self.session_prefix}-{safe}"

    def _tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                [self.tmux_binary, *args],
                capture_output=True,
                text=True,
                check=False,
                timeout=30,
            )
        except FileNotFoundError as error:
            raise SessionError(f"tmux binary not found: {self.tmux_binary}") from error
        except subprocess.TimeoutExpired as error:
            raise SessionError(f"tmux {args[0]} timed out") from error
        if check and result.returncode != 0:
            raise SessionError(
                f"tmux {args[0]} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
            )
        return result

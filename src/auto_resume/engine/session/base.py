"""Session executor interface consumed by the workflow engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ProjectContext:
    """Where and under which name a session should run."""

    project_dir: Path
    name: str


@dataclass(slots=True)
class SessionHandle:
    """Opaque reference to a live session."""

    session_id: str
    project: ProjectContext
    started_at: datetime
    details: dict[str, str] = field(default_factory=dict)


class SessionExecutor(Protocol):
    """Protocol implemented by session transports (terminal multiplexer, process, remote)."""

    def start_session(self, project: ProjectContext) -> SessionHandle:
        """Start a session for the project, or attach to one that is already running."""

    def is_alive(self, handle: SessionHandle) -> bool:
        """Whether the session can still accept commands."""

    def send_command(self, handle: SessionHandle, text: str) -> None:
        """Type a command into the session and submit it."""

    def capture_recent_output(self, handle: SessionHandle, lines: int) -> str:
        """Return the last ``lines`` lines of session output."""


@runtime_checkable
class ExitStatusReporter(Protocol):
    """Optional capability: an explicit exit-status channel for the last command."""

    def last_exit_status(self, handle: SessionHandle) -> int | None:
        """Exit status of the last command, or None while it is still running."""


@runtime_checkable
class InterruptibleSession(Protocol):
    """Optional capability: abort the command currently running in the session."""

    def interrupt(self, handle: SessionHandle) -> None:
        """Stop the running command without tearing down the session."""

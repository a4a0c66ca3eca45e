"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.completion import DEFAULT_COMPLETION_MARKER
from auto_resume.engine.error_classifier import ErrorClassifier
from auto_resume.engine.session import ProjectContext, SessionHandle
from auto_resume.engine.store import QueueStore
from auto_resume.engine.timeout_monitor import TimeoutMonitor
from auto_resume.engine.usage_limit import UsageLimitRecovery
from auto_resume.engine.workflow import WorkflowEngine
from auto_resume.storage.common import utc_now


class ScriptedExecutor:
    """In-memory session: every command appends a scripted reply to a fake screen.

    ``replies`` maps a command to the replies for its successive sends; unscripted
    commands answer with the completion marker. ``on_send`` hooks run before the reply
    is written, which lets tests pause or cancel a workflow mid-step.
    """

    def __init__(
        self,
        replies: dict[str, list[str]] | None = None,
        *,
        default_reply: str = DEFAULT_COMPLETION_MARKER,
    ) -> None:
        self.replies = {command: list(items) for command, items in (replies or {}).items()}
        self.default_reply = default_reply
        self.sent: list[str] = []
        self.sessions_started = 0
        self.alive = True
        self.on_send: dict[str, Callable[[], None]] = {}
        self._screen = ["claude> ready"]

    def start_session(self, project: ProjectContext) -> SessionHandle:
        self.sessions_started += 1
        return SessionHandle(
            session_id=f"fake-{project.name}-{self.sessions_started}",
            project=project,
            started_at=utc_now(),
        )

    def is_alive(self, handle: SessionHandle) -> bool:
        return self.alive

    def send_command(self, handle: SessionHandle, text: str) -> None:
        self.sent.append(text)
        hook = self.on_send.get(text)
        if hook is not None:
            hook()
        queued = self.replies.get(text)
        reply = queued.pop(0) if queued else self.default_reply
        self._screen.append(f"> {text}")
        self._screen.extend(reply.splitlines())

    def capture_recent_output(self, handle: SessionHandle, lines: int) -> str:
        return "\n".join(self._screen[-lines:])


class ExitCodeExecutor(ScriptedExecutor):
    """Scripted session that also reports an exit status per command send."""

    def __init__(
        self,
        replies: dict[str, list[str]] | None = None,
        *,
        exit_codes: dict[str, list[int]] | None = None,
    ) -> None:
        super().__init__(replies, default_reply="ok")
        self.exit_codes = {command: list(items) for command, items in (exit_codes or {}).items()}
        self._last_status: int | None = None

    def send_command(self, handle: SessionHandle, text: str) -> None:
        super().send_command(handle, text)
        queued = self.exit_codes.get(text)
        self._last_status = queued.pop(0) if queued else 0

    def last_exit_status(self, handle: SessionHandle) -> int | None:
        return self._last_status


def _fast_settings(queue_dir: Path, *, project_dir: Path | None = None) -> Settings:
    """Settings with every delay shrunk so engine tests run in milliseconds."""

    base = Settings(queue_dir=queue_dir)
    return replace(
        base,
        queue=replace(base.queue, poll_interval_seconds=0.01),
        lock=replace(base.lock, timeout_seconds=10.0),
        usage_limit=replace(
            base.usage_limit,
            cooldown_seconds=0,
            max_wait_seconds=0,
            clock_buffer_seconds=0,
            min_wait_seconds=0,
            progress_interval_seconds=0.01,
        ),
        workflow=replace(
            base.workflow,
            step_delay_seconds=0,
            poll_interval_seconds=0.01,
            retry_base_seconds=0,
            retry_jitter_seconds=0,
        ),
        session=replace(base.session, project_dir=project_dir or queue_dir.parent),
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return _fast_settings(tmp_path / "queue", project_dir=tmp_path)


@pytest.fixture()
def store(settings: Settings) -> QueueStore:
    return QueueStore(settings)


@pytest.fixture()
def backups(settings: Settings, store: QueueStore) -> BackupManager:
    manager = BackupManager(settings, store=store)
    store.attach_checkpointer(manager)
    return manager


@pytest.fixture()
def make_engine(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
) -> Iterator[Callable[..., WorkflowEngine]]:
    """Factory for a workflow engine wired to the shared store and backups."""

    monitors: list[TimeoutMonitor] = []

    def _make(executor: object, **overrides: object) -> WorkflowEngine:
        monitor = TimeoutMonitor(settings.timeouts, store=store, backups=backups)
        monitors.append(monitor)
        options: dict[str, object] = {
            "store": store,
            "executor": executor,
            "project": ProjectContext(project_dir=settings.session.project_dir, name="test"),
            "backups": backups,
            "monitor": monitor,
            "usage": UsageLimitRecovery(settings.usage_limit),
            "classifier": ErrorClassifier(settings.recovery, reports_dir=settings.reports_dir),
        }
        options.update(overrides)
        return WorkflowEngine(settings, **options)  # type: ignore[arg-type]

    yield _make
    for monitor in monitors:
        monitor.stop_all()


@pytest.fixture()
def scripted_executor() -> type[ScriptedExecutor]:
    return ScriptedExecutor


@pytest.fixture()
def exit_code_executor() -> type[ExitCodeExecutor]:
    return ExitCodeExecutor

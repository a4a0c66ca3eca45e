"""Queue worker that claims tasks and runs them through the workflow engine."""

from __future__ import annotations

import logging
import os
import queue
import signal
import socket
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.errors import (
    AutoResumeError,
    EmergencyShutdown,
    InvalidTransitionError,
    LockTimeoutError,
    TaskNotFoundError,
    UsageLimitDetected,
)
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.locking import pid_alive, process_identity
from auto_resume.engine.models import Task, TaskFilter, TaskStatus
from auto_resume.engine.scheduler import TaskScheduler
from auto_resume.engine.store import QueueStore
from auto_resume.engine.timeout_monitor import TimeoutMonitor
from auto_resume.engine.workflow import EngineFactory, RunOutcome, WorkflowEngine
from auto_resume.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    paused: int = 0
    interrupted: int = 0
    usage_limit_pauses: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


def read_worker_pid(pid_file: Path) -> int | None:
    """Pid of the live worker recorded in ``pid_file``, or None."""

    try:
        pid = int(pid_file.read_text("utf-8").strip())
    except (OSError, ValueError):
        return None
    return pid if pid_alive(pid) else None


@contextmanager
def stop_on_signals(callback: Callable[[str], None]) -> Iterator[None]:
    """Route SIGINT and SIGTERM to ``callback`` with the signal name while active."""

    if threading.current_thread() is not threading.main_thread():
        # Signal handlers can only be installed in the main thread.
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        callback(name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


class QueueWorker:
    """Consumes pending tasks up to the configured concurrency."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        store: QueueStore,
        scheduler: TaskScheduler,
        backups: BackupManager,
        monitor: TimeoutMonitor,
        engine_factory: EngineFactory,
        journal: EngineJournal | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.scheduler = scheduler
        self.backups = backups
        self.monitor = monitor
        self.journal = journal
        self.worker_id = worker_id or process_identity()
        self.concurrency = settings.queue.concurrency
        self.poll_interval_seconds = settings.queue.poll_interval_seconds
        self.stop_event = threading.Event()
        self._stop_signal_name: str | None = None
        self._engines: queue.Queue[WorkflowEngine] = queue.Queue()
        for slot in range(self.concurrency):
            self._engines.put(engine_factory(slot))
        self._active: dict[str, threading.Event] = {}
        self._active_lock = threading.Lock()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary
        engine = self._engines.get()
        try:
            task = self.scheduler.claim_next(worker_id=self.worker_id)
        except BaseException:
            self._engines.put(engine)
            raise
        if task is None:
            self._engines.put(engine)
            summary.idle_polls = 1
            return summary
        return self._run_task(task, engine)

    def run_loop(  # noqa: C901
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Run until stopped, idle for ``max_idle_polls`` polls, or ``max_tasks`` claimed.

        Raises EmergencyShutdown after in-flight tasks were stopped and checkpointed.
        """

        aggregate = WorkerRunSummary()
        emergency: EmergencyShutdown | None = None
        consecutive_idle = 0
        with (
            stop_on_signals(self.request_stop),
            self._pid_file(),
            ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix="auto-resume-task",
            ) as pool,
        ):
            self.recover_orphaned_tasks()
            self.cleanup()
            running: dict[Future[WorkerRunSummary], WorkflowEngine] = {}
            claimed_total = 0
            while True:
                emergency = self._collect(running, aggregate) or emergency
                if self.stop_event.is_set():
                    break
                if max_tasks is not None and claimed_total >= max_tasks and not running:
                    break
                claimed = False
                while len(running) < self.concurrency and not self.stop_event.is_set():
                    if max_tasks is not None and claimed_total >= max_tasks:
                        break
                    engine = self._engines.get()
                    task = self.scheduler.claim_next(worker_id=self.worker_id)
                    if task is None:
                        self._engines.put(engine)
                        break
                    running[pool.submit(self._run_task, task, engine)] = engine
                    claimed_total += 1
                    claimed = True
                if not running:
                    if claimed:
                        continue
                    consecutive_idle += 1
                    aggregate.idle_polls += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
                wait(running, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)

            if running:
                logger.info("Waiting for %s in-flight task(s) to checkpoint", len(running))
                wait(running)
                emergency = self._collect(running, aggregate) or emergency
        if emergency is not None:
            raise emergency
        return aggregate

    def recover_orphaned_tasks(self) -> list[str]:
        """Requeue in-progress tasks whose worker on this host is gone."""

        hostname = socket.gethostname()
        recovered: list[str] = []
        for task in self.store.list_tasks(TaskFilter(statuses=(TaskStatus.IN_PROGRESS,))):
            owner = str(task.metadata.get("worker_id") or "")
            host, _, pid_text = owner.rpartition(":")
            if owner == self.worker_id or host != hostname or not pid_text.isdigit():
                continue
            if pid_alive(int(pid_text)):
                continue
            try:
                self.store.requeue(task.task_id, "recovered after worker crash")
            except (InvalidTransitionError, TaskNotFoundError) as error:
                logger.info("Task %s not recovered: %s", task.task_id, error)
                continue
            logger.warning("Requeued orphaned task %s (owner %s)", task.task_id, owner or "-")
            recovered.append(task.task_id)
        return recovered

    def cleanup(self) -> None:
        """Opportunistic retention pass; failures are logged and ignored."""

        try:
            self.store.cleanup()
            self.backups.cleanup()
        except (OSError, LockTimeoutError) as error:
            logger.warning("Opportunistic cleanup failed: %s", error)
        if self.journal is None:
            return
        retention = max(
            self.settings.usage_limit.history_retention_hours,
            self.settings.backup.retention_hours,
        )
        try:
            self.journal.prune(older_than=utc_now() - timedelta(hours=retention))
        except SQLAlchemyError as error:
            logger.warning("Journal pruning failed: %s", error)

    def request_stop(self, reason: str = "requested") -> None:
        self._request_stop(signal_name=reason)

    def _run_task(self, task: Task, engine: WorkflowEngine) -> WorkerRunSummary:
        summary = WorkerRunSummary(processed=1)
        cancel_event = threading.Event()
        with self._active_lock:
            self._active[task.task_id] = cancel_event
        if self.stop_event.is_set():
            cancel_event.set()
        handle = self.monitor.start(
            task.task_id,
            task.timeout_seconds,
            cancel_event=cancel_event,
            mark_task=True,
        )
        try:
            result = engine.execute(
                task.task_id,
                cancel_event=cancel_event,
                extend_deadline=lambda seconds: self.monitor.extend(handle, seconds),
            )
        except UsageLimitDetected as limit:
            logger.warning("Task %s paused on usage limit: %s", task.task_id, limit)
            summary.usage_limit_pauses = 1
            return summary
        except ValueError as error:
            logger.error("Task %s cannot run: %s", task.task_id, error)
            self.store.update_status(task.task_id, TaskStatus.FAILED, str(error))
            summary.failed = 1
            return summary
        except EmergencyShutdown:
            raise
        except Exception as error:
            logger.exception("Task %s run raised %s", task.task_id, type(error).__name__)
            self._recover_after_error(task.task_id, error)
            summary.failed = 1
            return summary
        finally:
            self.monitor.stop(handle)
            with self._active_lock:
                self._active.pop(task.task_id, None)
            self._engines.put(engine)

        logger.info("Task %s finished: %s", task.task_id, result.outcome.value)
        if result.outcome == RunOutcome.COMPLETED:
            summary.succeeded = 1
        elif result.outcome == RunOutcome.TIMEOUT:
            summary.timeouts = 1
        elif result.outcome == RunOutcome.PAUSED:
            summary.paused = 1
        elif result.outcome == RunOutcome.INTERRUPTED:
            summary.interrupted = 1
        else:
            summary.failed = 1
        return summary

    def _recover_after_error(self, task_id: str, error: Exception) -> None:
        """Checkpoint a task whose run raised, then requeue it or fail it once retries run out."""

        note = f"worker error: {type(error).__name__}: {error}"
        try:
            self.backups.checkpoint(task_id, "worker_error")
        except (AutoResumeError, OSError) as checkpoint_error:
            logger.warning("Checkpoint for %s failed: %s", task_id, checkpoint_error)
        try:
            task = self.store.get_task(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                return
            if task.retry_count < task.max_retries:
                self.store.requeue(task_id, note, increment_retry=True)
                logger.warning("Requeued %s after error (retry %s)", task_id, task.retry_count + 1)
            else:
                self.store.update_status(task_id, TaskStatus.FAILED, note)
                logger.error("Task %s failed after error: %s", task_id, error)
        except (AutoResumeError, OSError) as store_error:
            logger.error("Task %s left %s: %s", task_id, TaskStatus.IN_PROGRESS.value, store_error)

    def _collect(
        self,
        running: dict[Future[WorkerRunSummary], WorkflowEngine],
        aggregate: WorkerRunSummary,
    ) -> EmergencyShutdown | None:
        emergency: EmergencyShutdown | None = None
        for future in [item for item in running if item.done()]:
            del running[future]
            try:
                aggregate.add(future.result())
            except EmergencyShutdown as error:
                logger.critical("Emergency shutdown: %s (backup %s)", error, error.backup_path)
                aggregate.processed += 1
                aggregate.failed += 1
                emergency = error
                self._request_stop(signal_name="emergency_shutdown")
        return emergency

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_event.is_set() and time.monotonic() < deadline:
            self.stop_event.wait(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _pid_file(self) -> Iterator[None]:
        path = self.settings.pid_file
        existing = read_worker_pid(path)
        if existing is not None and existing != os.getpid():
            logger.warning("Another worker (pid %s) is already running on this queue", existing)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{os.getpid()}\n", "utf-8")
        try:
            yield
        finally:
            if read_worker_pid(path) == os.getpid():
                path.unlink(missing_ok=True)

    def _request_stop(self, *, signal_name: str) -> None:
        if self.stop_event.is_set():
            return
        self._stop_signal_name = signal_name
        self.stop_event.set()
        with self._active_lock:
            active = dict(self._active)
        logger.warning(
            "Stop requested (%s); %s in-flight task(s) will checkpoint and requeue",
            signal_name,
            len(active),
        )
        for event in active.values():
            event.set()

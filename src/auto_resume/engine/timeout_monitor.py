"""Per-task watchdog threads that warn before and act on timeout expiry."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from auto_resume.config import TimeoutSettings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.errors import InvalidTransitionError, LockTimeoutError, TaskNotFoundError
from auto_resume.engine.models import TaskStatus
from auto_resume.engine.store import QueueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TimeoutHandle:
    """Identifies one monitored task execution."""

    handle_id: str
    task_id: str
    timeout_seconds: float
    warning_after_seconds: float


@dataclass(slots=True)
class _Watch:
    handle: TimeoutHandle
    started: float
    deadline: float
    warning_deadline: float
    mark_task: bool
    terminate: Callable[[], None] | None
    cancel_event: threading.Event | None
    stop_event: threading.Event = field(default_factory=threading.Event)
    guard: threading.Lock = field(default_factory=threading.Lock)
    warned: bool = False
    stopped: bool = False
    expired: bool = False
    thread: threading.Thread | None = None


WarningCallback = Callable[[TimeoutHandle, float], None]
ExpiryCallback = Callable[[TimeoutHandle], None]


def warning_offset(timeout_seconds: float, threshold_seconds: float) -> float:
    """Seconds after start when the warning fires; halfway when the threshold is too large."""

    offset = timeout_seconds - threshold_seconds
    if offset <= 0:
        return timeout_seconds * 0.5
    return offset


class TimeoutMonitor:
    """Runs an independent watchdog per started handle."""

    def __init__(
        self,
        settings: TimeoutSettings | None = None,
        *,
        store: QueueStore | None = None,
        backups: BackupManager | None = None,
        on_warning: WarningCallback | None = None,
        on_expired: ExpiryCallback | None = None,
    ) -> None:
        self.settings = settings or TimeoutSettings()
        self.store = store
        self.backups = backups
        self.on_warning = on_warning
        self.on_expired = on_expired
        self._watches: dict[str, _Watch] = {}
        self._lock = threading.Lock()

    def start(  # noqa: PLR0913
        self,
        task_id: str,
        timeout_seconds: float,
        *,
        terminate: Callable[[], None] | None = None,
        cancel_event: threading.Event | None = None,
        mark_task: bool = True,
    ) -> TimeoutHandle:
        """Begin monitoring; on expiry checkpoint, optionally mark the task and terminate."""

        if timeout_seconds <= 0:
            raise ValueError("Timeout must be > 0 seconds.")
        offset = warning_offset(timeout_seconds, self.settings.warning_threshold_seconds)
        handle = TimeoutHandle(
            handle_id=uuid4().hex,
            task_id=task_id,
            timeout_seconds=timeout_seconds,
            warning_after_seconds=offset,
        )
        started = time.monotonic()
        watch = _Watch(
            handle=handle,
            started=started,
            deadline=started + timeout_seconds,
            warning_deadline=started + offset,
            mark_task=mark_task,
            terminate=terminate,
            cancel_event=cancel_event,
        )
        thread = threading.Thread(
            target=self._run,
            args=(watch,),
            name=f"timeout-{task_id}",
            daemon=True,
        )
        watch.thread = thread
        with self._lock:
            self._watches[handle.handle_id] = watch
        thread.start()
        logger.debug("Monitoring %s with %.0fs timeout", task_id, timeout_seconds)
        return handle

    def stop(self, handle: TimeoutHandle) -> bool:
        """Cancel monitoring. Returns False if the handle already expired or was stopped."""

        with self._lock:
            watch = self._watches.pop(handle.handle_id, None)
        if watch is None:
            return False
        with watch.guard:
            if watch.expired or watch.stopped:
                return False
            watch.stopped = True
        watch.stop_event.set()
        return True

    def extend(self, handle: TimeoutHandle, seconds: float) -> bool:
        with self._lock:
            watch = self._watches.get(handle.handle_id)
        if watch is None:
            return False
        with watch.guard:
            if watch.expired or watch.stopped:
                return False
            watch.deadline += seconds
            watch.warning_deadline += seconds
            watch.warned = False
        logger.info("Extended timeout for %s by %.0fs", handle.task_id, seconds)
        return True

    def remaining(self, handle: TimeoutHandle) -> float | None:
        with self._lock:
            watch = self._watches.get(handle.handle_id)
        if watch is None:
            return None
        return max(0.0, watch.deadline - time.monotonic())

    def has_expired(self, handle: TimeoutHandle) -> bool:
        with self._lock:
            watch = self._watches.get(handle.handle_id)
        return watch is not None and watch.expired

    def active(self) -> list[tuple[str, float]]:
        """Monitored task ids with remaining seconds."""

        now = time.monotonic()
        with self._lock:
            watches = [watch for watch in self._watches.values() if not watch.expired]
        return [(watch.handle.task_id, max(0.0, watch.deadline - now)) for watch in watches]

    def stop_all(self) -> None:
        with self._lock:
            handles = [watch.handle for watch in self._watches.values()]
        for handle in handles:
            self.stop(handle)

    def join(self, handle: TimeoutHandle, timeout: float | None = None) -> None:
        """Wait for a handle's watchdog thread to finish (tests and shutdown)."""

        with self._lock:
            watch = self._watches.get(handle.handle_id)
        if watch is not None and watch.thread is not None:
            watch.thread.join(timeout)

    def _run(self, watch: _Watch) -> None:
        while not watch.stop_event.is_set():
            now = time.monotonic()
            with watch.guard:
                if watch.stopped:
                    return
                fire_warning = not watch.warned and now >= watch.warning_deadline
                if fire_warning:
                    watch.warned = True
                fire_expiry = now >= watch.deadline
                if fire_expiry:
                    watch.expired = True
                wake_at = (
                    watch.deadline
                    if watch.warned
                    else min(watch.warning_deadline, watch.deadline)
                )
            if fire_warning and not fire_expiry:
                self._warn(watch, remaining=max(0.0, watch.deadline - now))
            if fire_expiry:
                self._expire(watch)
                return
            watch.stop_event.wait(timeout=max(0.01, wake_at - now))

    def _warn(self, watch: _Watch, *, remaining: float) -> None:
        logger.warning(
            "Task %s will time out in %.0fs (limit %.0fs)",
            watch.handle.task_id,
            remaining,
            watch.handle.timeout_seconds,
        )
        if self.on_warning is not None:
            self.on_warning(watch.handle, remaining)

    def _expire(self, watch: _Watch) -> None:
        task_id = watch.handle.task_id
        logger.error("Task %s exceeded its %.0fs timeout", task_id, watch.handle.timeout_seconds)
        if self.backups is not None:
            try:
                self.backups.checkpoint(task_id, "timeout")
            except (OSError, TaskNotFoundError, LockTimeoutError) as error:
                logger.warning("Timeout checkpoint for %s failed: %s", task_id, error)
        if watch.mark_task and self.store is not None:
            try:
                self.store.update_status(task_id, TaskStatus.TIMEOUT, "timeout monitor expired")
            except (InvalidTransitionError, TaskNotFoundError, LockTimeoutError) as error:
                logger.info("Task %s not marked as timeout: %s", task_id, error)
        if watch.cancel_event is not None:
            watch.cancel_event.set()
        if watch.terminate is not None:
            try:
                watch.terminate()
            except Exception:
                logger.exception("Terminate callback for %s failed", task_id)
        if self.on_expired is not None:
            self.on_expired(watch.handle)

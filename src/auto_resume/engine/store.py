"""Persistent queue store: one JSON document per queue directory.

All mutations run under the :class:`~auto_resume.engine.locking.LockManager` as
load -> modify -> atomic save, so independently started processes never interleave
partial updates. Readers load without the lock; the atomic rename guarantees they see a
complete document.
"""

from __future__ import annotations

import logging
import random
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from auto_resume.config import Settings
from auto_resume.engine.documents import load_json, newest_first, write_json
from auto_resume.engine.errors import (
    CorruptStateError,
    DuplicateIDError,
    InvalidTransitionError,
    QueueFullError,
    TaskNotFoundError,
)
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.locking import LockManager
from auto_resume.engine.models import (
    TERMINAL_STATUSES,
    QueueStats,
    Task,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskType,
    WorkflowStep,
    is_valid_transition,
    validate_task_id,
)
from auto_resume.storage.common import file_timestamp, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "2.0.0"
QUEUE_BACKUP_PREFIX = "queue-"

T = TypeVar("T")


class Checkpointer(Protocol):
    """Snapshot hook the store calls around task transitions."""

    def checkpoint(self, task: Task, reason: str) -> object:
        """Write a checkpoint unconditionally."""

    def checkpoint_if_due(self, task: Task, reason: str) -> object:
        """Write a checkpoint only when the periodic interval has elapsed."""


@dataclass(slots=True)
class QueueDocument:
    """In-memory form of the persisted queue document."""

    tasks: dict[str, Task] = field(default_factory=dict)
    paused: bool = False
    paused_at: datetime | None = None
    pause_reason: str | None = None
    last_modified: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        tasks = list(self.tasks.values())
        return {
            "version": SCHEMA_VERSION,
            "timestamp": to_iso(self.last_modified),
            "metadata": {
                "paused": self.paused,
                "paused_at": to_iso(self.paused_at),
                "pause_reason": self.pause_reason,
                "total": len(tasks),
                "counts": dict(Counter(task.status.value for task in tasks)),
                "last_modified": to_iso(self.last_modified),
            },
            "tasks": [task.to_dict() for task in tasks],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QueueDocument:
        version = str(payload.get("version", ""))
        if not version.startswith("2."):
            raise ValueError(f"Unsupported queue schema version: {version!r}")
        raw_tasks = payload.get("tasks")
        if not isinstance(raw_tasks, list):
            raise ValueError("Queue document has no task list")
        tasks: dict[str, Task] = {}
        for item in raw_tasks:
            if not isinstance(item, dict):
                raise ValueError("Queue task entry must be an object")
            task = Task.from_dict(item)
            if task.task_id in tasks:
                raise ValueError(f"Duplicate task id in queue document: {task.task_id}")
            tasks[task.task_id] = task
        metadata = payload.get("metadata") or {}
        timestamp = payload.get("timestamp")
        return cls(
            tasks=tasks,
            paused=bool(metadata.get("paused", False)),
            paused_at=from_iso(metadata["paused_at"]) if metadata.get("paused_at") else None,
            pause_reason=metadata.get("pause_reason"),
            last_modified=from_iso(str(timestamp)) if timestamp else None,
        )


class QueueStore:
    """Locked, atomically persisted task queue."""

    def __init__(
        self,
        settings: Settings,
        *,
        lock: LockManager | None = None,
        journal: EngineJournal | None = None,
    ) -> None:
        self.settings = settings
        self.path: Path = settings.queue_file
        self.backups_dir: Path = settings.backups_dir
        self.lock = lock or LockManager(settings.queue_dir, settings=settings.lock)
        self.journal = journal
        self._checkpointer: Checkpointer | None = None
        self._random = random.Random()  # noqa: S311

    def attach_checkpointer(self, checkpointer: Checkpointer) -> None:
        self._checkpointer = checkpointer

    # Reads -------------------------------------------------------------------------

    def load(self) -> QueueDocument:
        """Load the queue document, falling back to the newest valid backup if corrupt."""

        if not self.path.exists():
            return QueueDocument()
        try:
            return QueueDocument.from_dict(load_json(self.path))
        except (ValueError, TypeError, KeyError) as error:
            logger.warning("Queue file %s is unreadable: %s", self.path, error)
            recovered = self._recover_from_backups()
            if recovered is None:
                raise CorruptStateError(
                    f"Queue file {self.path} is corrupt and no valid backup exists",
                ) from error
            return recovered

    def get_task(self, task_id: str) -> Task:
        task = self.load().tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[Task]:
        """Tasks in creation order, narrowed by the optional filter."""

        tasks = sorted(self.load().tasks.values(), key=lambda task: task.created_at)
        if task_filter is not None:
            tasks = [task for task in tasks if task_filter.matches(task)]
            if task_filter.limit is not None:
                tasks = tasks[: task_filter.limit]
        return tasks

    def is_paused(self) -> bool:
        return self.load().paused

    def statistics(self) -> QueueStats:
        document = self.load()
        tasks = list(document.tasks.values())
        return QueueStats(
            total=len(tasks),
            by_status=dict(Counter(task.status.value for task in tasks)),
            by_type=dict(Counter(task.task_type.value for task in tasks)),
            paused=document.paused,
            pause_reason=document.pause_reason,
            last_modified=document.last_modified,
        )

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy of the whole queue for emergency backups."""

        return self.load().to_dict()

    # Mutations ---------------------------------------------------------------------

    def add_task(self, request: TaskCreate) -> Task:
        """Enqueue a task, enforcing id uniqueness and the queue size limit."""

        if request.task_id is not None:
            validate_task_id(request.task_id)
        if request.timeout_seconds is not None and request.timeout_seconds <= 0:
            raise ValueError("Task timeout must be > 0 seconds.")
        if request.max_retries is not None and request.max_retries < 0:
            raise ValueError("Task max_retries must be >= 0.")

        def _add(document: QueueDocument) -> Task:
            max_size = self.settings.queue.max_queue_size
            if request.task_id is not None and request.task_id in document.tasks:
                raise DuplicateIDError(request.task_id)
            if max_size > 0 and len(document.tasks) >= max_size:
                raise QueueFullError(max_size)
            now = utc_now()
            task = Task(
                task_id=request.task_id or self._generate_id(document),
                task_type=request.task_type,
                status=TaskStatus.PENDING,
                priority=request.priority,
                created_at=now,
                updated_at=now,
                max_retries=(
                    request.max_retries
                    if request.max_retries is not None
                    else self.settings.queue.max_retries
                ),
                timeout_seconds=request.timeout_seconds
                or self.settings.queue.timeout_for(request.task_type.value),
                command=request.command,
                description=request.description,
                metadata=dict(request.metadata),
                steps=tuple(request.steps),
            )
            document.tasks[task.task_id] = task
            return task

        task = self._mutate(_add)
        logger.info(
            "Queued task %s (%s, priority %s)",
            task.task_id,
            task.task_type.value,
            task.priority,
        )
        self._journal_event(
            task_id=task.task_id,
            event_type="enqueued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={"type": task.task_type.value, "priority": task.priority},
        )
        return task

    def update_status(
        self,
        task_id: str,
        new_status: TaskStatus,
        note: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Apply one lifecycle transition and stamp timestamps."""

        previous: list[TaskStatus] = []

        def _update(document: QueueDocument) -> Task:
            current = _require(document, task_id)
            if not is_valid_transition(current.status, new_status):
                raise InvalidTransitionError(task_id, current.status.value, new_status.value)
            now = utc_now()
            merged = dict(current.metadata)
            if metadata:
                merged.update(metadata)
            if note:
                merged["last_note"] = note
            updated = replace(
                current,
                status=new_status,
                updated_at=now,
                metadata=merged,
                started_at=now if new_status == TaskStatus.IN_PROGRESS else current.started_at,
                completed_at=_completed_at(current, new_status, now),
            )
            document.tasks[task_id] = updated
            previous.append(current.status)
            return updated

        with self.lock.locked():
            task = self._mutate(_update)
            if new_status == TaskStatus.IN_PROGRESS and self._checkpointer is not None:
                self._checkpointer.checkpoint(task, "task_started")
        logger.info("Task %s: %s -> %s", task_id, previous[0].value, new_status.value)
        self._journal_event(
            task_id=task_id,
            event_type="status_changed",
            status_from=previous[0],
            status_to=new_status,
            details={"note": note} if note else None,
        )
        if new_status != TaskStatus.IN_PROGRESS:
            self._periodic_checkpoint(task, f"status_{new_status.value}")
        return task

    def requeue(
        self,
        task_id: str,
        note: str | None = None,
        *,
        increment_retry: bool = False,
    ) -> Task:
        """Return a task to pending, optionally counting the attempt as a retry."""

        def _requeue(document: QueueDocument) -> Task:
            current = _require(document, task_id)
            if not is_valid_transition(current.status, TaskStatus.PENDING):
                raise InvalidTransitionError(
                    task_id,
                    current.status.value,
                    TaskStatus.PENDING.value,
                )
            merged = dict(current.metadata)
            if note:
                merged["last_note"] = note
            updated = replace(
                current,
                status=TaskStatus.PENDING,
                updated_at=utc_now(),
                completed_at=None,
                retry_count=current.retry_count + (1 if increment_retry else 0),
                metadata=merged,
            )
            document.tasks[task_id] = updated
            return updated

        task = self._mutate(_requeue)
        self._journal_event(
            task_id=task_id,
            event_type="requeued",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={"note": note, "retry_count": task.retry_count},
        )
        return task

    def increment_retry(self, task_id: str) -> Task:
        return self._replace(task_id, lambda task: replace(task, retry_count=task.retry_count + 1))

    def update_metadata(self, task_id: str, **values: Any) -> Task:
        return self._replace(
            task_id,
            lambda task: replace(task, metadata={**task.metadata, **values}),
        )

    def update_steps(
        self,
        task_id: str,
        steps: Iterable[WorkflowStep],
        *,
        timeout_seconds: int | None = None,
    ) -> Task:
        frozen_steps = tuple(steps)
        return self._replace(
            task_id,
            lambda task: replace(
                task,
                steps=frozen_steps,
                timeout_seconds=timeout_seconds or task.timeout_seconds,
            ),
        )

    def restore_task(self, task: Task) -> Task:
        """Re-apply a restored snapshot over the stored record with the same id."""

        def _restore(document: QueueDocument) -> Task:
            _require(document, task.task_id)
            restored = replace(task, updated_at=utc_now())
            document.tasks[task.task_id] = restored
            return restored

        restored = self._mutate(_restore)
        self._journal_event(
            task_id=task.task_id,
            event_type="restored",
            status_from=None,
            status_to=restored.status,
            details=None,
        )
        return restored

    def remove_task(self, task_id: str) -> Task:
        def _remove(document: QueueDocument) -> Task:
            task = _require(document, task_id)
            del document.tasks[task_id]
            return task

        task = self._mutate(_remove)
        logger.info("Removed task %s", task_id)
        self._journal_event(
            task_id=task_id,
            event_type="removed",
            status_from=task.status,
            status_to=None,
            details=None,
        )
        return task

    def clear(self, statuses: tuple[TaskStatus, ...] = ()) -> int:
        """Remove every task, or only those in the given statuses."""

        def _clear(document: QueueDocument) -> int:
            doomed = [
                task_id
                for task_id, task in document.tasks.items()
                if not statuses or task.status in statuses
            ]
            for task_id in doomed:
                del document.tasks[task_id]
            return len(doomed)

        removed = self._mutate(_clear)
        logger.info("Cleared %s task(s) from queue", removed)
        return removed

    def cleanup(self, older_than_days: int | None = None, *, now: datetime | None = None) -> int:
        """Remove terminal tasks whose last update is older than the retention window."""

        days = self.settings.queue.auto_cleanup_days if older_than_days is None else older_than_days
        cutoff = (now or utc_now()) - timedelta(days=days)

        def _cleanup(document: QueueDocument) -> int:
            doomed = [
                task_id
                for task_id, task in document.tasks.items()
                if task.is_terminal and task.updated_at < cutoff
            ]
            for task_id in doomed:
                del document.tasks[task_id]
            return len(doomed)

        removed = self._mutate(_cleanup)
        if removed:
            logger.info("Cleaned up %s terminal task(s) older than %s day(s)", removed, days)
        return removed

    def pause(self, reason: str | None = None) -> None:
        def _pause(document: QueueDocument) -> None:
            document.paused = True
            document.paused_at = utc_now()
            document.pause_reason = reason

        self._mutate(_pause)
        logger.info("Queue paused%s", f": {reason}" if reason else "")

    def resume(self) -> None:
        def _resume(document: QueueDocument) -> None:
            document.paused = False
            document.paused_at = None
            document.pause_reason = None

        self._mutate(_resume)
        logger.info("Queue resumed")

    # Internals ---------------------------------------------------------------------

    def _replace(self, task_id: str, change: Callable[[Task], Task]) -> Task:
        def _apply(document: QueueDocument) -> Task:
            updated = replace(change(_require(document, task_id)), updated_at=utc_now())
            document.tasks[task_id] = updated
            return updated

        task = self._mutate(_apply)
        self._periodic_checkpoint(task, "updated")
        return task

    def _mutate(self, change: Callable[[QueueDocument], T]) -> T:
        with self.lock.locked():
            document = self.load()
            result = change(document)
            document.last_modified = utc_now()
            self._save(document)
            return result

    def _save(self, document: QueueDocument) -> None:
        payload = document.to_dict()
        write_json(self.path, payload)
        self._rotate_backup(payload)

    def _rotate_backup(self, payload: dict[str, Any]) -> None:
        try:
            write_json(self.backups_dir / f"{QUEUE_BACKUP_PREFIX}{file_timestamp()}.json", payload)
            kept = self.settings.backup.queue_backups_kept
            copies = list(self.backups_dir.glob(f"{QUEUE_BACKUP_PREFIX}*.json"))
            for stale in newest_first(copies)[kept:]:
                stale.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Could not write queue backup copy: %s", error)

    def _recover_from_backups(self) -> QueueDocument | None:
        for candidate in newest_first(list(self.backups_dir.glob(f"{QUEUE_BACKUP_PREFIX}*.json"))):
            try:
                document = QueueDocument.from_dict(load_json(candidate))
            except (ValueError, TypeError, KeyError, OSError):
                logger.warning("Skipping unreadable queue backup %s", candidate)
                continue
            logger.warning("Recovered queue state from backup %s", candidate.name)
            return document
        return None

    def _generate_id(self, document: QueueDocument) -> str:
        while True:
            candidate = f"task-{int(time.time())}-{self._random.randint(1000, 9999)}"
            if candidate not in document.tasks:
                return candidate

    def _periodic_checkpoint(self, task: Task, reason: str) -> None:
        if self._checkpointer is None:
            return
        try:
            self._checkpointer.checkpoint_if_due(task, reason)
        except OSError as error:
            logger.warning("Periodic checkpoint for %s failed: %s", task.task_id, error)

    def _journal_event(
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object] | None,
    ) -> None:
        if self.journal is None:
            return
        try:
            self.journal.add_event(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
        except SQLAlchemyError as error:
            logger.warning("Journal write failed for %s/%s: %s", task_id, event_type, error)


def _require(document: QueueDocument, task_id: str) -> Task:
    task = document.tasks.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def parse_task_type(value: str) -> TaskType:
    """Accept both ``github_issue`` and ``github-issue`` spellings."""

    normalized = value.strip().lower().replace("-", "_")
    try:
        return TaskType(normalized)
    except ValueError as error:
        allowed = ", ".join(item.value for item in TaskType)
        raise ValueError(f"Unknown task type {value!r}; expected one of: {allowed}") from error


def _completed_at(task: Task, new_status: TaskStatus, now: datetime) -> datetime | None:
    if new_status in TERMINAL_STATUSES:
        return now
    if new_status == TaskStatus.PENDING:
        return None
    return task.completed_at

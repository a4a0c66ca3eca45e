"""Priority/FIFO task selection and admission control."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from auto_resume.engine.errors import InvalidTransitionError, TaskNotFoundError
from auto_resume.engine.models import Task, TaskCreate, TaskStatus
from auto_resume.engine.store import QueueStore

logger = logging.getLogger(__name__)


def select_next(tasks: Iterable[Task]) -> Task | None:
    """Highest priority pending task that is not held; ties go to the earliest ``created_at``.

    The task id is the final tie-breaker so the choice stays deterministic when two
    tasks share a creation timestamp.
    """

    pending = [task for task in tasks if task.is_schedulable]
    if not pending:
        return None
    return min(pending, key=lambda task: (-task.priority, task.created_at, task.task_id))


class TaskScheduler:
    """Selects the next eligible task and admits new ones through the store."""

    def __init__(self, store: QueueStore) -> None:
        self.store = store

    def add_task(self, request: TaskCreate) -> Task:
        """Admit a task; raises DuplicateIDError or QueueFullError on rejection."""

        return self.store.add_task(request)

    def next(self) -> Task | None:
        """Peek at the task that would run next, or None when nothing is pending."""

        return select_next(self.store.load().tasks.values())

    def queue_order(self) -> list[Task]:
        """All pending tasks in the order they would be scheduled."""

        pending = [task for task in self.store.load().tasks.values() if task.is_schedulable]
        return sorted(pending, key=lambda task: (-task.priority, task.created_at, task.task_id))

    def claim_next(self, *, worker_id: str | None = None) -> Task | None:
        """Atomically select the next task and mark it in progress.

        Returns None when the queue is paused or has no pending task.
        """

        with self.store.lock.locked():
            document = self.store.load()
            if document.paused:
                logger.debug("Queue is paused; not claiming tasks")
                return None
            candidate = select_next(document.tasks.values())
            if candidate is None:
                return None
            try:
                return self.store.update_status(
                    candidate.task_id,
                    TaskStatus.IN_PROGRESS,
                    "claimed",
                    metadata={"worker_id": worker_id} if worker_id else None,
                )
            except (TaskNotFoundError, InvalidTransitionError):  # pragma: no cover - lock held
                logger.warning("Task %s changed while being claimed", candidate.task_id)
                return None

"""Exception taxonomy for the queue and recovery engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auto_resume.engine.usage_limit import UsageLimitMatch


class AutoResumeError(RuntimeError):
    """Base class for engine errors."""


class DuplicateIDError(AutoResumeError):
    """Raised when an explicit task id already exists in the queue."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class QueueFullError(AutoResumeError):
    """Raised when the queue has reached its configured maximum size."""

    def __init__(self, max_size: int) -> None:
        super().__init__(f"Queue is full (max size {max_size}).")
        self.max_size = max_size


class TaskNotFoundError(AutoResumeError, KeyError):
    """Raised when a task id is not present in the queue."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidTransitionError(AutoResumeError):
    """Raised for a status change outside the task lifecycle."""

    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(f"Task {task_id}: invalid transition {status_from} -> {status_to}")
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class LockTimeoutError(AutoResumeError, TimeoutError):
    """Raised when the queue lock could not be acquired within the timeout.

    Distinct from a held lock: the caller waited the full budget and a live peer still
    owns the lock, so it may either requeue the operation or abort.
    """

    def __init__(self, lock_path: str, timeout_seconds: float, holder: str | None = None) -> None:
        detail = f" (held by {holder})" if holder else ""
        super().__init__(
            f"Timed out after {timeout_seconds:.1f}s waiting for lock {lock_path}{detail}",
        )
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds
        self.holder = holder


class CorruptStateError(AutoResumeError):
    """Raised when persisted state cannot be parsed and no valid backup exists."""


class StepExecutionError(AutoResumeError):
    """Raised when a task or workflow step fails to execute."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        timed_out: bool = False,
        exit_code: int | None = None,
        output_tail: str = "",
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.timed_out = timed_out
        self.exit_code = exit_code
        self.output_tail = output_tail


class UsageLimitDetected(AutoResumeError):  # noqa: N818
    """Signals a scheduled pause on a provider usage limit; not a failure."""

    def __init__(self, match: UsageLimitMatch, wait_seconds: int, *, task_id: str | None) -> None:
        super().__init__(
            f"Usage limit detected ({match.matched_pattern!r}); resuming in {wait_seconds}s",
        )
        self.match = match
        self.wait_seconds = wait_seconds
        self.task_id = task_id


class EmergencyShutdown(AutoResumeError):  # noqa: N818
    """Raised after a critical failure once the final backup has been written."""

    def __init__(self, message: str, *, task_id: str | None, backup_path: str | None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.backup_path = backup_path


class SessionError(AutoResumeError):
    """Raised by session executors when the interactive session is unusable."""

"""Domain models for queued tasks, workflow steps and checkpoints."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auto_resume.storage.common import from_iso, to_iso

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_PRIORITY = 5
# Metadata flag that keeps a pending task out of scheduling until an operator resumes it.
HOLD_KEY = "held"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.ERROR},
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.PENDING,
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.TIMEOUT,
            TaskStatus.ERROR,
        },
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.PENDING}),
    TaskStatus.ERROR: frozenset({TaskStatus.PENDING}),
}


class TaskType(str, Enum):
    """Kinds of queued work."""

    CUSTOM = "custom"
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"
    WORKFLOW = "workflow"


class StepStatus(str, Enum):
    """Workflow step lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def is_valid_transition(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    return status_to in ALLOWED_TRANSITIONS[status_from]


def validate_task_id(task_id: str) -> str:
    """Return the id unchanged or raise ValueError for unsafe characters."""

    if not TASK_ID_PATTERN.fullmatch(task_id):
        raise ValueError(
            f"Invalid task id {task_id!r}: only letters, digits, '-' and '_' are allowed.",
        )
    return task_id


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    """One phase of a workflow task."""

    phase: str
    command: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    timeout_seconds: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "command": self.command,
            "description": self.description,
            "status": self.status.value,
            "timeout_seconds": self.timeout_seconds,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "result": dict(self.result),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> WorkflowStep:
        return cls(
            phase=str(payload["phase"]),
            command=str(payload["command"]),
            description=str(payload.get("description") or ""),
            status=StepStatus(payload.get("status", StepStatus.PENDING.value)),
            timeout_seconds=_optional_int(payload.get("timeout_seconds")),
            started_at=_optional_datetime(payload.get("started_at")),
            completed_at=_optional_datetime(payload.get("completed_at")),
            result=dict(payload.get("result") or {}),
        )


@dataclass(frozen=True, slots=True)
class Task:
    """Immutable task record; the queue store replaces records on every change."""

    task_id: str
    task_type: TaskType
    status: TaskStatus
    priority: int
    created_at: datetime
    updated_at: datetime
    retry_count: int = 0
    max_retries: int = 3
    timeout_seconds: int = 3600
    command: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    steps: tuple[WorkflowStep, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_held(self) -> bool:
        return bool(self.metadata.get(HOLD_KEY))

    @property
    def is_schedulable(self) -> bool:
        return self.status == TaskStatus.PENDING and not self.is_held

    def next_step_index(self) -> int | None:
        """Index of the first step that is not completed, or None when all are done."""

        for index, step in enumerate(self.steps):
            if step.status != StepStatus.COMPLETED:
                return index
        return None

    def completed_phases(self) -> list[str]:
        return [step.phase for step in self.steps if step.status == StepStatus.COMPLETED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "type": self.task_type.value,
            "status": self.status.value,
            "priority": self.priority,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "timeout": self.timeout_seconds,
            "command": self.command,
            "description": self.description,
            "metadata": dict(self.metadata),
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        for required in ("id", "type", "status", "created_at"):
            if required not in payload:
                raise ValueError(f"Task record is missing required field {required!r}")
        created_at = from_iso(str(payload["created_at"]))
        return cls(
            task_id=str(payload["id"]),
            task_type=TaskType(payload["type"]),
            status=TaskStatus(payload["status"]),
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            created_at=created_at,
            updated_at=_optional_datetime(payload.get("updated_at")) or created_at,
            started_at=_optional_datetime(payload.get("started_at")),
            completed_at=_optional_datetime(payload.get("completed_at")),
            retry_count=int(payload.get("retry_count", 0)),
            max_retries=int(payload.get("max_retries", 3)),
            timeout_seconds=int(payload.get("timeout", 3600)),
            command=str(payload.get("command") or ""),
            description=str(payload.get("description") or ""),
            metadata=dict(payload.get("metadata") or {}),
            steps=tuple(WorkflowStep.from_dict(item) for item in payload.get("steps") or ()),
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    task_type: TaskType
    command: str = ""
    description: str = ""
    task_id: str | None = None
    priority: int = DEFAULT_PRIORITY
    max_retries: int | None = None
    timeout_seconds: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    steps: tuple[WorkflowStep, ...] = ()


@dataclass(slots=True)
class TaskFilter:
    """Criteria for listing tasks; unset fields do not filter."""

    statuses: tuple[TaskStatus, ...] = ()
    task_types: tuple[TaskType, ...] = ()
    min_priority: int | None = None
    max_priority: int | None = None
    text: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None

    def matches(self, task: Task) -> bool:  # noqa: PLR0911
        if self.statuses and task.status not in self.statuses:
            return False
        if self.task_types and task.task_type not in self.task_types:
            return False
        if self.min_priority is not None and task.priority < self.min_priority:
            return False
        if self.max_priority is not None and task.priority > self.max_priority:
            return False
        if self.created_after is not None and task.created_at < self.created_after:
            return False
        if self.created_before is not None and task.created_at > self.created_before:
            return False
        if self.text:
            return _text_matches(task, self.text)
        return True


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot of a task taken before a risky transition."""

    task_id: str
    reason: str
    created_at: datetime
    task_state: dict[str, Any]
    system_state: dict[str, Any] = field(default_factory=dict)
    path: str | None = None

    def restore_task(self) -> Task:
        return Task.from_dict(self.task_state)


@dataclass(frozen=True, slots=True)
class QueueStats:
    """Aggregate queue counters for status output."""

    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    paused: bool
    pause_reason: str | None
    last_modified: datetime | None


@dataclass(frozen=True, slots=True)
class TaskEventView:
    """Journal entry for the task audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    details: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class UsageLimitOccurrence:
    """Append-only record of one detected usage limit."""

    context_id: str
    detected_at: datetime
    matched_pattern: str
    kind: str
    computed_wait_seconds: int
    resume_at: datetime | None = None


def _text_matches(task: Task, needle: str) -> bool:
    lowered = needle.lower()
    haystacks = [task.task_id, task.command, task.description]
    haystacks.extend(str(value) for value in task.metadata.values() if isinstance(value, str))
    return any(lowered in value.lower() for value in haystacks)


def _optional_datetime(value: object) -> datetime | None:
    if value in (None, ""):
        return None
    return from_iso(str(value))


def _optional_int(value: object) -> int | None:
    if value in (None, ""):
        return None
    return int(value)  # type: ignore[arg-type]

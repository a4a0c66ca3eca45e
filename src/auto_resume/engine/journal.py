"""Append-only SQLite journal of task events and usage-limit occurrences.

The journal never holds authoritative task state; it records what happened so that
backoff escalation, error statistics and operators can look back in time.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlmodel import Session, col, select

from auto_resume.engine.models import TaskEventView, TaskStatus, UsageLimitOccurrence
from auto_resume.storage.alembic_runner import upgrade_head
from auto_resume.storage.common import build_sqlite_engine, utc_now
from auto_resume.storage.sqlmodel_models import TaskEvent, UsageLimitOccurrenceRow


class EngineJournal:
    """Event and usage-limit history facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def add_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        payload = (
            json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
            if details
            else None
        )
        with Session(self.engine) as session:
            session.add(
                TaskEvent(
                    task_id=task_id,
                    event_type=event_type,
                    status_from=status_from.value if status_from is not None else None,
                    status_to=status_to.value if status_to is not None else None,
                    details_json=payload,
                    created_at=_to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_events(
        self,
        *,
        task_id: str | None = None,
        event_types: tuple[str, ...] = (),
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[TaskEventView]:
        """Events newest first, optionally scoped to a task, types or a time window."""

        with Session(self.engine) as session:
            statement = select(TaskEvent)
            if task_id is not None:
                statement = statement.where(TaskEvent.task_id == task_id)
            if event_types:
                statement = statement.where(col(TaskEvent.event_type).in_(event_types))
            if since is not None:
                statement = statement.where(TaskEvent.created_at >= _to_db_datetime(since))
            rows = session.exec(
                statement.order_by(col(TaskEvent.created_at).desc(), col(TaskEvent.id).desc())
                .limit(limit),
            ).all()
            return [_to_event_view(row) for row in rows]

    def count_events_by_type(
        self,
        *,
        event_types: tuple[str, ...] = (),
        since: datetime | None = None,
    ) -> dict[str, int]:
        with Session(self.engine) as session:
            statement = select(TaskEvent.event_type, func.count()).group_by(TaskEvent.event_type)
            if event_types:
                statement = statement.where(col(TaskEvent.event_type).in_(event_types))
            if since is not None:
                statement = statement.where(TaskEvent.created_at >= _to_db_datetime(since))
            return {str(event_type): int(count) for event_type, count in session.exec(statement)}

    def record_usage_limit(self, occurrence: UsageLimitOccurrence) -> None:
        with Session(self.engine) as session:
            session.add(
                UsageLimitOccurrenceRow(
                    context_id=occurrence.context_id,
                    detected_at=_to_db_datetime(occurrence.detected_at),
                    matched_pattern=occurrence.matched_pattern,
                    kind=occurrence.kind,
                    computed_wait_seconds=occurrence.computed_wait_seconds,
                    resume_at=_to_db_datetime(occurrence.resume_at)
                    if occurrence.resume_at is not None
                    else None,
                ),
            )
            session.commit()

    def usage_limit_history(
        self,
        *,
        context_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[UsageLimitOccurrence]:
        """Occurrences oldest first."""

        with Session(self.engine) as session:
            statement = select(UsageLimitOccurrenceRow)
            if context_id is not None:
                statement = statement.where(UsageLimitOccurrenceRow.context_id == context_id)
            if since is not None:
                statement = statement.where(
                    UsageLimitOccurrenceRow.detected_at >= _to_db_datetime(since),
                )
            rows = session.exec(
                statement.order_by(
                    col(UsageLimitOccurrenceRow.detected_at).asc(),
                    col(UsageLimitOccurrenceRow.id).asc(),
                ).limit(limit),
            ).all()
            return [_to_occurrence(row) for row in rows]

    def count_usage_limits(self, *, context_id: str, since: datetime) -> int:
        with Session(self.engine) as session:
            value = session.exec(
                select(func.count())
                .select_from(UsageLimitOccurrenceRow)
                .where(
                    UsageLimitOccurrenceRow.context_id == context_id,
                    UsageLimitOccurrenceRow.detected_at >= _to_db_datetime(since),
                ),
            ).one()
            return int(value)

    def prune(self, *, older_than: datetime) -> dict[str, int]:
        """Delete journal rows older than the cutoff; returns deleted counts per table."""

        return {
            "task_events": self.prune_events(older_than=older_than),
            "usage_limit_occurrences": self.prune_usage_limits(older_than=older_than),
        }

    def prune_events(self, *, older_than: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskEvent).where(
                    col(TaskEvent.created_at) < _to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def prune_usage_limits(self, *, older_than: datetime) -> int:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(UsageLimitOccurrenceRow).where(
                    col(UsageLimitOccurrenceRow.detected_at) < _to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)


def _to_event_view(row: TaskEvent) -> TaskEventView:
    details: dict[str, object] = {}
    if row.details_json:
        loaded = json.loads(row.details_json)
        if isinstance(loaded, dict):
            details = loaded
    return TaskEventView(
        event_id=int(row.id or 0),
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=row.status_from,
        status_to=row.status_to,
        details=details,
        created_at=_to_utc_aware_datetime(row.created_at),
    )


def _to_occurrence(row: UsageLimitOccurrenceRow) -> UsageLimitOccurrence:
    return UsageLimitOccurrence(
        context_id=row.context_id,
        detected_at=_to_utc_aware_datetime(row.detected_at),
        matched_pattern=row.matched_pattern,
        kind=row.kind,
        computed_wait_seconds=row.computed_wait_seconds,
        resume_at=_to_utc_aware_datetime(row.resume_at) if row.resume_at is not None else None,
    )


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)

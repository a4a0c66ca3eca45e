"""SQLModel ORM tables for the append-only engine journal."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskEvent(SQLModel, table=True):
    """Audit entry for every task transition and recovery decision."""

    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageLimitOccurrenceRow(SQLModel, table=True):
    """One detected usage-limit message; drives escalating backoff."""

    __tablename__ = "usage_limit_occurrences"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_usage_limit_occurrences_context_time", "context_id", "detected_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    context_id: str = Field(index=True)
    detected_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    matched_pattern: str
    kind: str
    computed_wait_seconds: int
    resume_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
from sqlalchemy import text

from auto_resume.config import Settings
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.models import TaskCreate, TaskStatus, TaskType, UsageLimitOccurrence
from auto_resume.engine.store import QueueStore
from auto_resume.storage.common import utc_now

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Event Journal"),
]


def _journal(path: Path) -> EngineJournal:
    journal = EngineJournal(path)
    journal.init_schema()
    return journal


def _occurrence(context_id: str, *, hours_ago: float) -> UsageLimitOccurrence:
    return UsageLimitOccurrence(
        context_id=context_id,
        detected_at=utc_now() - timedelta(hours=hours_ago),
        matched_pattern="usage limit",
        kind="generic",
        computed_wait_seconds=300,
    )


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    journal = _journal(tmp_path / "journal.db")

    with journal.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('task_events', 'usage_limit_occurrences')
                ORDER BY name
                """,
            ),
        ).scalars()
        names = list(tables)
    journal.close()

    assert version == "20261017_0001"
    assert names == ["task_events", "usage_limit_occurrences"]


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "journal.db"
    _journal(path).close()
    journal = _journal(path)

    journal.add_event(task_id="t", event_type="enqueued")

    assert len(journal.list_events()) == 1
    journal.close()


def test_events_are_listed_newest_first_with_filters(tmp_path: Path) -> None:
    journal = _journal(tmp_path / "journal.db")
    journal.add_event(task_id="a", event_type="enqueued", details={"priority": 5})
    journal.add_event(
        task_id="a",
        event_type="status_changed",
        status_from=TaskStatus.PENDING,
        status_to=TaskStatus.IN_PROGRESS,
    )
    journal.add_event(task_id="b", event_type="enqueued")

    everything = journal.list_events()
    scoped = journal.list_events(task_id="a")
    enqueued = journal.list_events(event_types=("enqueued",))

    assert [(event.task_id, event.event_type) for event in everything] == [
        ("b", "enqueued"),
        ("a", "status_changed"),
        ("a", "enqueued"),
    ]
    assert scoped[0].status_from == "pending"
    assert scoped[0].status_to == "in_progress"
    assert scoped[1].details == {"priority": 5}
    assert {event.task_id for event in enqueued} == {"a", "b"}
    assert journal.count_events_by_type() == {"enqueued": 2, "status_changed": 1}
    journal.close()


def test_usage_limit_history_counts_and_prunes(tmp_path: Path) -> None:
    journal = _journal(tmp_path / "journal.db")
    journal.record_usage_limit(_occurrence("session", hours_ago=48))
    journal.record_usage_limit(_occurrence("session", hours_ago=2))
    journal.record_usage_limit(_occurrence("other", hours_ago=1))

    history = journal.usage_limit_history(context_id="session")
    recent = journal.count_usage_limits(
        context_id="session",
        since=utc_now() - timedelta(hours=24),
    )
    removed = journal.prune(older_than=utc_now() - timedelta(hours=24))

    assert len(history) == 2
    assert history[0].detected_at < history[1].detected_at
    assert history[0].detected_at.tzinfo is not None
    assert recent == 1
    assert removed == {"task_events": 0, "usage_limit_occurrences": 1}
    assert len(journal.usage_limit_history()) == 2
    journal.close()


def test_store_records_lifecycle_events(settings: Settings) -> None:
    journal = _journal(settings.journal_path)
    store = QueueStore(settings, journal=journal)

    store.add_task(TaskCreate(task_type=TaskType.CUSTOM, command="/run", task_id="logged"))
    store.update_status("logged", TaskStatus.IN_PROGRESS)
    store.update_status("logged", TaskStatus.COMPLETED)

    events = journal.list_events(task_id="logged")
    assert [event.event_type for event in events] == [
        "status_changed",
        "status_changed",
        "enqueued",
    ]
    assert events[0].status_to == "completed"
    journal.close()

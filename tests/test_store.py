from __future__ import annotations

import json
import re
import shutil
import threading
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from auto_resume.config import Settings
from auto_resume.engine.errors import (
    CorruptStateError,
    DuplicateIDError,
    InvalidTransitionError,
    QueueFullError,
    TaskNotFoundError,
)
from auto_resume.engine.models import TaskCreate, TaskFilter, TaskStatus, TaskType
from auto_resume.engine.store import QueueStore, parse_task_type
from auto_resume.storage.common import utc_now

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Queue Persistence"),
]


def _custom(task_id: str | None = None, **overrides: object) -> TaskCreate:
    values: dict[str, object] = {
        "task_type": TaskType.CUSTOM,
        "command": f"echo {task_id or 'generated'}",
        "description": f"Task {task_id}",
        "task_id": task_id,
    }
    values.update(overrides)
    return TaskCreate(**values)  # type: ignore[arg-type]


def test_add_task_persists_schema_document(store: QueueStore, settings: Settings) -> None:
    task = store.add_task(_custom("alpha", priority=7))

    assert task.status == TaskStatus.PENDING
    assert task.max_retries == settings.queue.max_retries
    assert task.timeout_seconds == settings.queue.timeout_for("custom")

    payload = json.loads(settings.queue_file.read_text("utf-8"))
    assert payload["version"].startswith("2.")
    assert payload["metadata"]["total"] == 1
    assert payload["metadata"]["counts"] == {"pending": 1}
    assert [item["id"] for item in payload["tasks"]] == ["alpha"]
    assert list(settings.backups_dir.glob("queue-*.json"))


def test_generated_ids_follow_task_epoch_pattern(store: QueueStore) -> None:
    task = store.add_task(_custom())

    assert re.fullmatch(r"task-\d+-\d{4}", task.task_id)


def test_duplicate_id_is_rejected(store: QueueStore) -> None:
    store.add_task(_custom("same"))

    with pytest.raises(DuplicateIDError):
        store.add_task(_custom("same"))
    assert len(store.list_tasks()) == 1


@pytest.mark.parametrize("bad_id", ["has space", "../escape", "semi;colon", ""])
def test_unsafe_ids_are_rejected(store: QueueStore, bad_id: str) -> None:
    with pytest.raises(ValueError, match="Invalid task id"):
        store.add_task(_custom(bad_id))


def test_queue_size_limit_is_enforced(settings: Settings) -> None:
    limited = QueueStore(replace(settings, queue=replace(settings.queue, max_queue_size=2)))
    limited.add_task(_custom("one"))
    limited.add_task(_custom("two"))

    with pytest.raises(QueueFullError):
        limited.add_task(_custom("three"))

    limited.remove_task("one")
    limited.add_task(_custom("three"))

    with pytest.raises(QueueFullError):
        limited.add_task(_custom("four"))
    assert sorted(task.task_id for task in limited.list_tasks()) == ["three", "two"]


def test_status_transitions_are_validated(store: QueueStore) -> None:
    store.add_task(_custom("flow"))

    running = store.update_status("flow", TaskStatus.IN_PROGRESS, "claimed")
    assert running.started_at is not None
    done = store.update_status("flow", TaskStatus.COMPLETED, "finished")
    assert done.completed_at is not None
    assert done.metadata["last_note"] == "finished"

    with pytest.raises(InvalidTransitionError):
        store.update_status("flow", TaskStatus.PENDING)


def test_requeue_counts_retries_and_clears_completion(store: QueueStore) -> None:
    store.add_task(_custom("again"))
    store.update_status("again", TaskStatus.IN_PROGRESS)
    store.update_status("again", TaskStatus.FAILED, "boom")

    requeued = store.requeue("again", "operator retry", increment_retry=True)

    assert requeued.status == TaskStatus.PENDING
    assert requeued.retry_count == 1
    assert requeued.completed_at is None


def test_missing_task_raises_not_found(store: QueueStore) -> None:
    with pytest.raises(TaskNotFoundError):
        store.get_task("ghost")
    with pytest.raises(TaskNotFoundError):
        store.remove_task("ghost")


def test_corrupt_queue_file_falls_back_to_latest_backup(
    store: QueueStore,
    settings: Settings,
) -> None:
    store.add_task(_custom("survivor"))
    settings.queue_file.write_text("{not json", "utf-8")

    assert [task.task_id for task in store.list_tasks()] == ["survivor"]


def test_corrupt_queue_without_backups_raises(store: QueueStore, settings: Settings) -> None:
    store.add_task(_custom("lost"))
    shutil.rmtree(settings.backups_dir)
    settings.queue_file.write_text(json.dumps({"version": "1.0", "tasks": []}), "utf-8")

    with pytest.raises(CorruptStateError):
        store.load()


def test_list_tasks_applies_filters_in_creation_order(store: QueueStore) -> None:
    store.add_task(_custom("low", priority=1, description="fix login bug"))
    store.add_task(_custom("high", priority=9, description="write docs"))
    store.add_task(
        TaskCreate(task_type=TaskType.GITHUB_ISSUE, command="/dev 7", task_id="issue", priority=5),
    )
    store.update_status("high", TaskStatus.IN_PROGRESS)

    assert [task.task_id for task in store.list_tasks()] == ["low", "high", "issue"]
    pending = store.list_tasks(TaskFilter(statuses=(TaskStatus.PENDING,)))
    assert [task.task_id for task in pending] == ["low", "issue"]
    by_type = store.list_tasks(TaskFilter(task_types=(TaskType.GITHUB_ISSUE,)))
    assert [task.task_id for task in by_type] == ["issue"]
    ranged = store.list_tasks(TaskFilter(min_priority=5, max_priority=9))
    assert [task.task_id for task in ranged] == ["high", "issue"]
    searched = store.list_tasks(TaskFilter(text="LOGIN"))
    assert [task.task_id for task in searched] == ["low"]
    assert len(store.list_tasks(TaskFilter(limit=2))) == 2
    future = store.list_tasks(TaskFilter(created_after=utc_now() + timedelta(minutes=1)))
    assert future == []


def test_cleanup_removes_only_old_terminal_tasks(store: QueueStore) -> None:
    store.add_task(_custom("finished"))
    store.add_task(_custom("waiting"))
    store.update_status("finished", TaskStatus.IN_PROGRESS)
    store.update_status("finished", TaskStatus.COMPLETED)

    assert store.cleanup(older_than_days=1) == 0
    assert store.cleanup(older_than_days=1, now=utc_now() + timedelta(days=2)) == 1
    assert [task.task_id for task in store.list_tasks()] == ["waiting"]


def test_clear_by_status(store: QueueStore) -> None:
    store.add_task(_custom("a"))
    store.add_task(_custom("b"))
    store.update_status("b", TaskStatus.IN_PROGRESS)
    store.update_status("b", TaskStatus.FAILED)

    assert store.clear((TaskStatus.FAILED,)) == 1
    assert store.clear() == 1
    assert store.list_tasks() == []


def test_pause_resume_and_statistics(store: QueueStore) -> None:
    store.add_task(_custom("a"))
    store.add_task(TaskCreate(task_type=TaskType.GITHUB_PR, command="/review PR-1", task_id="b"))
    store.pause("maintenance")

    stats = store.statistics()
    assert stats.total == 2
    assert stats.by_status == {"pending": 2}
    assert stats.by_type == {"custom": 1, "github_pr": 1}
    assert stats.paused is True
    assert stats.pause_reason == "maintenance"

    store.resume()
    assert store.is_paused() is False


def test_concurrent_adds_from_separate_stores_are_all_kept(settings: Settings) -> None:
    errors: list[BaseException] = []

    def _add_batch(prefix: str) -> None:
        local = QueueStore(settings)
        try:
            for index in range(5):
                local.add_task(_custom(f"{prefix}-{index}"))
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_add_batch, args=(f"w{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(QueueStore(settings).list_tasks()) == 20


def test_parse_task_type_lists_allowed_values() -> None:
    assert parse_task_type("github_issue") == TaskType.GITHUB_ISSUE
    with pytest.raises(ValueError, match="custom"):
        parse_task_type("cron")

from __future__ import annotations

import allure

from auto_resume.engine.models import HOLD_KEY, TaskCreate, TaskStatus, TaskType
from auto_resume.engine.scheduler import TaskScheduler
from auto_resume.engine.store import QueueStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Scheduling"),
]


def _task(task_id: str, priority: int) -> TaskCreate:
    return TaskCreate(
        task_type=TaskType.CUSTOM,
        command=f"run {task_id}",
        task_id=task_id,
        priority=priority,
    )


def test_higher_priority_first_then_fifo(store: QueueStore) -> None:
    scheduler = TaskScheduler(store)
    scheduler.add_task(_task("A", 5))
    scheduler.add_task(_task("B", 10))
    scheduler.add_task(_task("C", 5))

    assert [task.task_id for task in scheduler.queue_order()] == ["B", "A", "C"]
    assert scheduler.next().task_id == "B"

    claimed = [scheduler.claim_next(worker_id="host:1") for _ in range(3)]
    assert [task.task_id for task in claimed] == ["B", "A", "C"]
    assert all(task.status == TaskStatus.IN_PROGRESS for task in claimed)
    assert claimed[0].metadata["worker_id"] == "host:1"
    assert scheduler.claim_next() is None


def test_empty_queue_has_no_next_task(store: QueueStore) -> None:
    scheduler = TaskScheduler(store)

    assert scheduler.next() is None
    assert scheduler.claim_next() is None


def test_paused_queue_is_not_claimed(store: QueueStore) -> None:
    scheduler = TaskScheduler(store)
    scheduler.add_task(_task("waiting", 5))
    store.pause("deploy freeze")

    assert scheduler.claim_next() is None
    assert store.get_task("waiting").status == TaskStatus.PENDING

    store.resume()
    assert scheduler.claim_next().task_id == "waiting"


def test_held_tasks_are_skipped(store: QueueStore) -> None:
    scheduler = TaskScheduler(store)
    scheduler.add_task(_task("held", 10))
    scheduler.add_task(_task("free", 1))
    store.update_metadata("held", **{HOLD_KEY: True})

    assert scheduler.next().task_id == "free"
    assert [task.task_id for task in scheduler.queue_order()] == ["free"]

    store.update_metadata("held", **{HOLD_KEY: False})
    assert scheduler.next().task_id == "held"

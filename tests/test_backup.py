from __future__ import annotations

import itertools
import json
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

import allure
import pytest

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.errors import TaskNotFoundError
from auto_resume.engine.models import StepStatus, TaskCreate, TaskStatus, TaskType
from auto_resume.engine.store import QueueStore
from auto_resume.engine.workflow import issue_merge_steps
from auto_resume.storage.common import utc_now

pytestmark = [
    allure.epic("Recovery"),
    allure.feature("Checkpoints & Backups"),
]


def _stepping_clock(start: datetime, step_seconds: int = 1) -> Callable[[], datetime]:
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks) * step_seconds)


def _workflow(store: QueueStore, task_id: str = "wf") -> None:
    store.add_task(
        TaskCreate(
            task_type=TaskType.WORKFLOW,
            command="/dev 42",
            task_id=task_id,
            steps=issue_merge_steps("42"),
        ),
    )


def test_checkpoint_round_trips_task_state(settings: Settings, store: QueueStore) -> None:
    _workflow(store)
    manager = BackupManager(settings, store=store)
    steps = list(store.get_task("wf").steps)
    steps[0] = replace(steps[0], status=StepStatus.COMPLETED, completed_at=utc_now())
    store.update_steps("wf", steps)

    checkpoint = manager.checkpoint("wf", "step_develop_completed")
    restored = manager.restore_latest("wf")

    assert checkpoint.system_state["queue"]["total"] == 1
    assert restored.task_id == "wf"
    assert restored.completed_phases() == ["develop"]
    assert restored.steps[1].command == "/clear"
    assert manager.latest("wf").reason == "step_develop_completed"


def test_restore_latest_rewinds_stored_task(settings: Settings, store: QueueStore) -> None:
    _workflow(store)
    manager = BackupManager(settings, store=store)
    manager.checkpoint("wf", "before")
    store.update_status("wf", TaskStatus.IN_PROGRESS)
    store.update_status("wf", TaskStatus.FAILED, "broke")

    store.restore_task(manager.restore_latest("wf"))

    assert store.get_task("wf").status == TaskStatus.PENDING


def test_checkpoints_are_pruned_per_task(settings: Settings, store: QueueStore) -> None:
    _workflow(store, "one")
    _workflow(store, "two")
    limited = replace(settings, backup=replace(settings.backup, max_checkpoints_per_task=2))
    manager = BackupManager(limited, store=store, clock=_stepping_clock(utc_now()))

    for reason in ("a", "b", "c", "d"):
        manager.checkpoint("one", reason)
    manager.checkpoint("two", "only")

    assert [item.reason for item in manager.list_checkpoints("one")] == ["d", "c"]
    assert len(manager.list_checkpoints()) == 3
    assert manager.statistics()["tasks_with_checkpoints"] == 2


def test_task_ids_sharing_a_prefix_are_kept_apart(settings: Settings, store: QueueStore) -> None:
    _workflow(store, "job")
    _workflow(store, "job-2")
    manager = BackupManager(settings, store=store, clock=_stepping_clock(utc_now()))

    manager.checkpoint("job", "first")
    manager.checkpoint("job-2", "second")

    assert [item.task_id for item in manager.list_checkpoints("job")] == ["job"]
    assert manager.latest("job").reason == "first"


def test_checkpoint_if_due_respects_interval(settings: Settings, store: QueueStore) -> None:
    _workflow(store)
    start = utc_now()
    moments = itertools.chain(
        [start, start + timedelta(seconds=10)],
        itertools.repeat(start + timedelta(hours=1)),
    )
    manager = BackupManager(settings, store=store, clock=lambda: next(moments))

    assert manager.checkpoint_if_due("wf", "tick") is not None
    assert manager.checkpoint_if_due("wf", "tick") is None
    later = manager.checkpoint_if_due("wf", "tick")
    assert later is not None
    assert later.reason == "periodic:tick"


def test_restore_without_checkpoint_raises(settings: Settings) -> None:
    manager = BackupManager(settings)

    with pytest.raises(TaskNotFoundError):
        manager.restore_latest("nothing")


def test_emergency_backup_captures_queue_and_configuration(
    settings: Settings,
    store: QueueStore,
) -> None:
    _workflow(store)
    manager = BackupManager(settings, store=store)

    path = manager.emergency_backup("disk full", active_task_ids=["wf"])

    payload = json.loads(path.read_text("utf-8"))
    assert payload["reason"] == "disk full"
    assert payload["active_tasks"] == ["wf"]
    assert [task["id"] for task in payload["queue_state"]["tasks"]] == ["wf"]
    assert payload["configuration"]["queue_dir"] == str(settings.queue_dir)


def test_cleanup_drops_expired_files(settings: Settings, store: QueueStore) -> None:
    _workflow(store)
    old = utc_now() - timedelta(days=30)
    manager = BackupManager(settings, store=store, clock=_stepping_clock(old))
    manager.checkpoint("wf", "ancient")
    manager.emergency_backup("ancient")
    fresh = BackupManager(settings, store=store)
    fresh.checkpoint("wf", "recent")

    removed = fresh.cleanup(retention_hours=24)

    assert removed == {"checkpoints": 1, "emergency_backups": 1}
    assert [item.reason for item in fresh.list_checkpoints("wf")] == ["recent"]

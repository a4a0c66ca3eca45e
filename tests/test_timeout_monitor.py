from __future__ import annotations

import threading
import time

import allure
import pytest

from auto_resume.config import TimeoutSettings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.models import TaskCreate, TaskStatus, TaskType
from auto_resume.engine.store import QueueStore
from auto_resume.engine.timeout_monitor import TimeoutHandle, TimeoutMonitor, warning_offset

pytestmark = [
    allure.epic("Recovery"),
    allure.feature("Timeout Monitoring"),
]


def _running_task(store: QueueStore, task_id: str) -> None:
    store.add_task(TaskCreate(task_type=TaskType.CUSTOM, command="sleep", task_id=task_id))
    store.update_status(task_id, TaskStatus.IN_PROGRESS)


def test_warning_offset_falls_back_to_half_the_timeout() -> None:
    assert warning_offset(3600, 300) == 3300
    assert warning_offset(120, 300) == 60
    assert warning_offset(300, 300) == 150


def test_expiry_marks_task_checkpoints_and_signals(
    store: QueueStore,
    backups: BackupManager,
) -> None:
    _running_task(store, "slow")
    warnings: list[float] = []
    expired: list[TimeoutHandle] = []
    terminated = threading.Event()
    cancel = threading.Event()
    monitor = TimeoutMonitor(
        TimeoutSettings(warning_threshold_seconds=300),
        store=store,
        backups=backups,
        on_warning=lambda _, remaining: warnings.append(remaining),
        on_expired=expired.append,
    )

    handle = monitor.start("slow", 0.6, terminate=terminated.set, cancel_event=cancel)
    monitor.join(handle, timeout=5)

    assert cancel.is_set()
    assert terminated.is_set()
    assert monitor.has_expired(handle)
    assert [item.task_id for item in expired] == ["slow"]
    assert len(warnings) == 1
    assert store.get_task("slow").status == TaskStatus.TIMEOUT
    assert any(item.reason == "timeout" for item in backups.list_checkpoints("slow"))


def test_stop_before_deadline_prevents_expiry(store: QueueStore) -> None:
    _running_task(store, "quick")
    cancel = threading.Event()
    monitor = TimeoutMonitor(TimeoutSettings(), store=store)

    handle = monitor.start("quick", 0.3, cancel_event=cancel)
    assert monitor.remaining(handle) is not None
    assert monitor.stop(handle) is True
    time.sleep(0.4)

    assert not cancel.is_set()
    assert monitor.stop(handle) is False
    assert store.get_task("quick").status == TaskStatus.IN_PROGRESS


def test_unmarked_watch_leaves_task_status_alone(store: QueueStore) -> None:
    _running_task(store, "step")
    cancel = threading.Event()
    monitor = TimeoutMonitor(TimeoutSettings(), store=store)

    handle = monitor.start("step", 0.1, cancel_event=cancel, mark_task=False)
    monitor.join(handle, timeout=5)

    assert cancel.is_set()
    assert store.get_task("step").status == TaskStatus.IN_PROGRESS


def test_extend_pushes_the_deadline() -> None:
    monitor = TimeoutMonitor(TimeoutSettings())
    cancel = threading.Event()

    handle = monitor.start("extended", 0.2, cancel_event=cancel, mark_task=False)
    assert monitor.extend(handle, 5) is True
    time.sleep(0.4)

    assert not cancel.is_set()
    assert monitor.remaining(handle) > 4
    assert [task_id for task_id, _ in monitor.active()] == ["extended"]
    monitor.stop_all()
    assert monitor.active() == []


def test_non_positive_timeout_is_rejected() -> None:
    with pytest.raises(ValueError, match="Timeout"):
        TimeoutMonitor().start("bad", 0)

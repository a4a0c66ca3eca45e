from __future__ import annotations

import socket
import subprocess
import sys
from dataclasses import replace

import allure
import pytest

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.errors import EmergencyShutdown
from auto_resume.engine.models import TaskCreate, TaskStatus, TaskType
from auto_resume.engine.scheduler import TaskScheduler
from auto_resume.engine.store import QueueStore
from auto_resume.engine.timeout_monitor import TimeoutMonitor
from auto_resume.engine.worker import QueueWorker, read_worker_pid

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker Loop"),
]


def _build_worker(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    engine_factory,
) -> QueueWorker:
    return QueueWorker(
        settings,
        store=store,
        scheduler=TaskScheduler(store),
        backups=backups,
        monitor=TimeoutMonitor(settings.timeouts, store=store, backups=backups),
        engine_factory=engine_factory,
    )


def _enqueue(store: QueueStore, task_id: str, *, priority: int = 5) -> None:
    store.add_task(
        TaskCreate(
            task_type=TaskType.CUSTOM,
            command=f"/run {task_id}",
            task_id=task_id,
            priority=priority,
        ),
    )


def _dead_pid() -> int:
    completed = subprocess.run(
        [sys.executable, "-c", "import os; print(os.getpid())"],
        capture_output=True,
        text=True,
        check=True,
    )
    return int(completed.stdout.strip())


def test_run_once_processes_highest_priority_task(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    executor = scripted_executor()
    worker = _build_worker(settings, store, backups, lambda _: make_engine(executor))
    _enqueue(store, "low", priority=1)
    _enqueue(store, "high", priority=9)

    summary = worker.run_once()

    assert (summary.processed, summary.succeeded) == (1, 1)
    assert executor.sent == ["/run high"]
    assert store.get_task("high").status == TaskStatus.COMPLETED
    assert store.get_task("low").status == TaskStatus.PENDING


def test_run_once_on_empty_queue_is_an_idle_poll(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    worker = _build_worker(settings, store, backups, lambda _: make_engine(scripted_executor()))

    summary = worker.run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1


def test_run_loop_drains_queue_with_concurrency(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    parallel = replace(settings, queue=replace(settings.queue, concurrency=2))
    executors = [scripted_executor(), scripted_executor()]
    worker = _build_worker(parallel, store, backups, lambda slot: make_engine(executors[slot]))
    for name in ("a", "b", "c"):
        _enqueue(store, name)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.succeeded == 3
    assert sorted(executors[0].sent + executors[1].sent) == ["/run a", "/run b", "/run c"]
    assert not settings.pid_file.exists()
    assert read_worker_pid(settings.pid_file) is None


def test_run_loop_respects_max_tasks(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    worker = _build_worker(settings, store, backups, lambda _: make_engine(scripted_executor()))
    for name in ("a", "b", "c"):
        _enqueue(store, name)

    summary = worker.run_loop(max_tasks=2)

    assert summary.processed == 2
    assert len(store.list_tasks()) == 3
    remaining = [task.task_id for task in store.list_tasks() if task.status == TaskStatus.PENDING]
    assert remaining == ["c"]


def test_usage_limit_pause_is_counted_and_task_requeued(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    executor = scripted_executor({"/run limited": ["usage limit reached, try again in 1 hour"]})
    worker = _build_worker(
        settings,
        store,
        backups,
        lambda _: make_engine(executor, wait_on_usage_limit=False),
    )
    _enqueue(store, "limited")

    summary = worker.run_once()

    assert summary.usage_limit_pauses == 1
    assert summary.succeeded == 0
    assert store.get_task("limited").status == TaskStatus.PENDING


def test_emergency_shutdown_stops_the_loop(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    exit_code_executor,
) -> None:
    executor = exit_code_executor(
        {"/run crash": ["Segmentation fault (core dumped)"]},
        exit_codes={"/run crash": [139]},
    )
    worker = _build_worker(settings, store, backups, lambda _: make_engine(executor))
    _enqueue(store, "crash", priority=9)
    _enqueue(store, "next", priority=1)

    with pytest.raises(EmergencyShutdown):
        worker.run_loop(max_idle_polls=1)

    assert worker.stop_event.is_set()
    assert store.get_task("crash").status == TaskStatus.ERROR
    assert store.get_task("next").status == TaskStatus.PENDING


def test_orphaned_tasks_from_dead_local_workers_are_requeued(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    worker = _build_worker(settings, store, backups, lambda _: make_engine(scripted_executor()))
    hostname = socket.gethostname()
    owners = {
        "orphan": f"{hostname}:{_dead_pid()}",
        "remote": "build-box-7:4242",
        "mine": worker.worker_id,
    }
    for task_id, owner in owners.items():
        _enqueue(store, task_id)
        store.update_status(task_id, TaskStatus.IN_PROGRESS, metadata={"worker_id": owner})

    recovered = worker.recover_orphaned_tasks()

    assert recovered == ["orphan"]
    assert store.get_task("orphan").status == TaskStatus.PENDING
    assert store.get_task("remote").status == TaskStatus.IN_PROGRESS
    assert store.get_task("mine").status == TaskStatus.IN_PROGRESS


def test_request_stop_cancels_in_flight_work(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    executor = scripted_executor(default_reply="working...")
    worker = _build_worker(settings, store, backups, lambda _: make_engine(executor))
    _enqueue(store, "long")
    executor.on_send["/run long"] = lambda: worker.request_stop("test")

    summary = worker.run_once()

    assert summary.interrupted == 1
    assert store.get_task("long").status == TaskStatus.PENDING
    assert worker.run_once().idle_polls == 1


def test_usage_limit_wait_is_not_charged_to_the_task_timeout(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    executor = scripted_executor(
        {"/run patient": ["usage limit reached, try again in 2 seconds"]},
    )
    worker = _build_worker(settings, store, backups, lambda _: make_engine(executor))
    store.add_task(
        TaskCreate(
            task_type=TaskType.CUSTOM,
            command="/run patient",
            task_id="patient",
            timeout_seconds=1,
        ),
    )

    summary = worker.run_once()

    assert summary.succeeded == 1
    assert summary.timeouts == 0
    assert executor.sent == ["/run patient", "/run patient"]
    assert store.get_task("patient").status == TaskStatus.COMPLETED


def test_unexpected_run_error_keeps_the_loop_alive(
    settings: Settings,
    store: QueueStore,
    backups: BackupManager,
    make_engine,
    scripted_executor,
) -> None:
    def _broken() -> None:
        raise RuntimeError("executor bug")

    executor = scripted_executor()
    executor.on_send["/run a"] = _broken
    worker = _build_worker(settings, store, backups, lambda _: make_engine(executor))
    store.add_task(
        TaskCreate(
            task_type=TaskType.CUSTOM,
            command="/run a",
            task_id="a",
            priority=9,
            max_retries=1,
        ),
    )
    _enqueue(store, "b", priority=1)

    summary = worker.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.failed, summary.succeeded) == (3, 2, 1)
    assert executor.sent == ["/run a", "/run a", "/run b"]
    failed = store.get_task("a")
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 1
    assert "executor bug" in failed.metadata["last_note"]
    assert store.get_task("b").status == TaskStatus.COMPLETED
    assert any(item.reason == "worker_error" for item in backups.list_checkpoints("a"))

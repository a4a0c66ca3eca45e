from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.error_classifier import ErrorClassifier
from auto_resume.engine.errors import (
    EmergencyShutdown,
    InvalidTransitionError,
    UsageLimitDetected,
)
from auto_resume.engine.models import (
    HOLD_KEY,
    StepStatus,
    TaskCreate,
    TaskStatus,
    TaskType,
    WorkflowStep,
)
from auto_resume.engine.scheduler import TaskScheduler
from auto_resume.engine.store import QueueStore
from auto_resume.engine.workflow import (
    ISSUE_MERGE_WORKFLOW,
    RunOutcome,
    issue_merge_steps,
    parse_workflow_config,
)

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Step Execution & Recovery"),
]

_ALL_COMMANDS = ["/dev 42", "/clear", "/review PR-42", "/dev merge-pr 42 --focus-main"]


def _custom_task(
    store: QueueStore,
    task_id: str,
    command: str,
    *,
    max_retries: int = 0,
    timeout_seconds: int | None = None,
) -> None:
    steps = ()
    if timeout_seconds is not None:
        steps = (WorkflowStep(phase="generic", command=command, timeout_seconds=timeout_seconds),)
    store.add_task(
        TaskCreate(
            task_type=TaskType.CUSTOM,
            command=command,
            task_id=task_id,
            max_retries=max_retries,
            steps=steps,
        ),
    )


def test_issue_merge_steps_are_fixed_sequence() -> None:
    steps = issue_merge_steps("42", {"develop": 600, "clear": 30})

    assert [step.phase for step in steps] == ["develop", "clear", "review", "merge"]
    assert [step.command for step in steps] == _ALL_COMMANDS
    assert steps[0].timeout_seconds == 600
    assert steps[2].timeout_seconds is None


def test_parse_workflow_config_accepts_bare_issue_numbers() -> None:
    assert parse_workflow_config(ISSUE_MERGE_WORKFLOW, "#7") == {"issue_id": "7"}
    assert parse_workflow_config("custom", '{"steps": []}') == {"steps": []}
    with pytest.raises(ValueError, match="JSON object"):
        parse_workflow_config("custom", "not json")


def test_create_rejects_unknown_or_incomplete_workflows(make_engine, scripted_executor) -> None:
    engine = make_engine(scripted_executor())

    with pytest.raises(ValueError, match="Unknown workflow type"):
        engine.create("release", {})
    with pytest.raises(ValueError, match="issue_id"):
        engine.create(ISSUE_MERGE_WORKFLOW, {})
    with pytest.raises(ValueError, match="command"):
        engine.create("custom", {"steps": [{"phase": "build"}]})


def test_issue_merge_workflow_runs_every_step(
    make_engine,
    scripted_executor,
    store: QueueStore,
    backups: BackupManager,
) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    task = engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, priority=8, task_id="wf-42")

    result = engine.execute(task.task_id)

    assert result.outcome == RunOutcome.COMPLETED
    assert (result.steps_completed, result.steps_total) == (4, 4)
    assert executor.sent == _ALL_COMMANDS
    assert executor.sessions_started == 1
    stored = store.get_task("wf-42")
    assert stored.status == TaskStatus.COMPLETED
    assert stored.priority == 8
    assert all(step.result["detector"] == "marker" for step in stored.steps)
    reasons = {item.reason for item in backups.list_checkpoints("wf-42")}
    assert "step_merge_completed" in reasons
    assert engine.status("wf-42").percent == 100


def test_resume_skips_steps_completed_in_checkpoint(
    make_engine,
    scripted_executor,
    store: QueueStore,
    backups: BackupManager,
) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    task = engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="wf-resume")
    pristine = list(task.steps)
    done = [
        replace(step, status=StepStatus.COMPLETED) if index < 2 else step
        for index, step in enumerate(pristine)
    ]
    store.update_steps("wf-resume", done)
    backups.checkpoint("wf-resume", "before_crash")
    # The queue record lost its progress; the checkpoint still has it.
    store.update_steps("wf-resume", pristine)

    result = engine.resume("wf-resume")

    assert result.outcome == RunOutcome.COMPLETED
    assert executor.sent == ["/review PR-42", "/dev merge-pr 42 --focus-main"]


def test_resume_from_step_by_phase_or_index(
    make_engine,
    scripted_executor,
    store: QueueStore,
) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="by-phase")
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="by-index")

    engine.resume_from_step("by-phase", "review")
    engine.resume_from_step("by-index", 3)

    assert executor.sent == _ALL_COMMANDS[2:] + _ALL_COMMANDS[3:]
    skipped = store.get_task("by-phase").steps[0]
    assert skipped.status == StepStatus.COMPLETED
    assert skipped.result["skipped"] is True
    with pytest.raises(ValueError, match="no phase"):
        engine.resume_from_step("by-phase", "deploy")


def test_plain_task_runs_as_single_step(make_engine, scripted_executor, store: QueueStore) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    _custom_task(store, "plain", "/run tests")

    result = engine.execute("plain")

    assert result.outcome == RunOutcome.COMPLETED
    assert executor.sent == ["/run tests"]
    assert [step.phase for step in store.get_task("plain").steps] == ["generic"]
    with pytest.raises(InvalidTransitionError):
        engine.execute("plain")


def test_usage_limit_without_waiting_requeues_and_raises(
    make_engine,
    scripted_executor,
    store: QueueStore,
    backups: BackupManager,
) -> None:
    executor = scripted_executor({"/dev 42": ["Claude usage limit reached. Try again in 2 hours"]})
    engine = make_engine(executor, wait_on_usage_limit=False)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="limited")

    with pytest.raises(UsageLimitDetected) as excinfo:
        engine.execute("limited")

    assert excinfo.value.wait_seconds == 7200
    stored = store.get_task("limited")
    assert stored.status == TaskStatus.PENDING
    assert stored.steps[0].status == StepStatus.PENDING
    assert any(item.reason == "usage_limit" for item in backups.list_checkpoints("limited"))
    assert executor.sent == ["/dev 42"]


def test_usage_limit_wait_then_step_is_resent(
    make_engine,
    scripted_executor,
    store: QueueStore,
) -> None:
    executor = scripted_executor({"/dev 42": ["Error: rate limit exceeded"]})
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="waited")

    result = engine.execute("waited")

    assert result.outcome == RunOutcome.COMPLETED
    assert executor.sent == ["/dev 42", *_ALL_COMMANDS]
    assert store.get_task("waited").retry_count == 0


def test_pause_holds_workflow_at_next_step_boundary(
    make_engine,
    scripted_executor,
    store: QueueStore,
) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="held")
    executor.on_send["/clear"] = lambda: engine.pause("held", "lunch break")

    result = engine.execute("held")

    assert result.outcome == RunOutcome.PAUSED
    stored = store.get_task("held")
    assert stored.status == TaskStatus.PENDING
    assert stored.metadata[HOLD_KEY] is True
    assert stored.completed_phases() == ["develop", "clear"]
    assert TaskScheduler(store).next() is None

    resumed = engine.execute("held")

    assert resumed.outcome == RunOutcome.COMPLETED
    assert executor.sent == _ALL_COMMANDS


def test_cancel_stops_running_workflow(make_engine, scripted_executor, store: QueueStore) -> None:
    executor = scripted_executor()
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="doomed")
    executor.on_send["/dev 42"] = lambda: engine.cancel("doomed")

    result = engine.execute("doomed")

    assert result.outcome == RunOutcome.CANCELED
    stored = store.get_task("doomed")
    assert stored.status == TaskStatus.FAILED
    assert stored.metadata["canceled"] is True
    assert executor.sent == ["/dev 42"]


def test_stop_request_requeues_with_progress(
    make_engine,
    scripted_executor,
    store: QueueStore,
    backups: BackupManager,
) -> None:
    executor = scripted_executor()
    stop = threading.Event()
    engine = make_engine(executor, stop_event=stop)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="stopped")
    executor.on_send["/clear"] = stop.set

    result = engine.execute("stopped")

    assert result.outcome == RunOutcome.INTERRUPTED
    stored = store.get_task("stopped")
    assert stored.status == TaskStatus.PENDING
    assert stored.completed_phases() == ["develop"]
    assert stored.steps[1].status == StepStatus.PENDING
    assert any(item.reason == "shutdown" for item in backups.list_checkpoints("stopped"))


def test_critical_failure_triggers_emergency_shutdown(
    make_engine,
    exit_code_executor,
    store: QueueStore,
) -> None:
    executor = exit_code_executor(
        {"/dev 42": ["fatal: Permission denied (publickey)"]},
        exit_codes={"/dev 42": [1]},
    )
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="critical")

    with pytest.raises(EmergencyShutdown) as excinfo:
        engine.execute("critical")

    stored = store.get_task("critical")
    assert stored.status == TaskStatus.ERROR
    assert stored.metadata["severity"] == "critical"
    assert stored.steps[0].status == StepStatus.FAILED
    backup = json.loads(Path(excinfo.value.backup_path).read_text("utf-8"))
    assert backup["active_tasks"] == ["critical"]


def test_info_failure_is_retried_immediately(
    make_engine,
    exit_code_executor,
    store: QueueStore,
) -> None:
    executor = exit_code_executor(
        {"/dev 42": ["bash: gh: command not found"]},
        exit_codes={"/dev 42": [127, 0]},
    )
    engine = make_engine(executor)
    engine.create(ISSUE_MERGE_WORKFLOW, {"issue_id": "42"}, task_id="flaky")

    result = engine.execute("flaky")

    assert result.outcome == RunOutcome.COMPLETED
    assert executor.sent == ["/dev 42", *_ALL_COMMANDS]
    stored = store.get_task("flaky")
    assert stored.retry_count == 1
    assert stored.steps[0].result["attempts"] == 2
    assert stored.steps[0].result["detector"] == "exit_status"


def test_warning_at_retry_limit_needs_manual_recovery(
    make_engine,
    exit_code_executor,
    store: QueueStore,
) -> None:
    executor = exit_code_executor(
        {"deploy": ["ssh: connect to host: Connection refused"]},
        exit_codes={"deploy": [255]},
    )
    engine = make_engine(executor)
    _custom_task(store, "deploy", "deploy", max_retries=0)

    result = engine.execute("deploy")

    assert result.outcome == RunOutcome.FAILED
    assert store.get_task("deploy").status == TaskStatus.FAILED
    report = json.loads(Path(result.report_path).read_text("utf-8"))
    assert report["severity"] == "warning"
    assert report["strategy"] == "manual_recovery"
    assert "Connection refused" in report["output_tail"]


def test_unknown_failure_is_held_for_safe_recovery(
    make_engine,
    exit_code_executor,
    store: QueueStore,
    backups: BackupManager,
) -> None:
    executor = exit_code_executor({"odd": ["something unexpected"]}, exit_codes={"odd": [1]})
    engine = make_engine(executor)
    _custom_task(store, "odd", "odd", max_retries=3)

    result = engine.execute("odd")

    assert result.outcome == RunOutcome.PAUSED
    stored = store.get_task("odd")
    assert stored.status == TaskStatus.PENDING
    assert stored.is_held
    assert not stored.is_schedulable
    assert any(item.reason == "safe_recovery" for item in backups.list_checkpoints("odd"))


def test_step_timeout_without_retries_marks_timeout(
    make_engine,
    scripted_executor,
    store: QueueStore,
) -> None:
    executor = scripted_executor(default_reply="thinking...")
    engine = make_engine(executor)
    _custom_task(store, "slow", "/slow", timeout_seconds=1)

    result = engine.execute("slow")

    assert result.outcome == RunOutcome.TIMEOUT
    stored = store.get_task("slow")
    assert stored.status == TaskStatus.TIMEOUT
    assert stored.metadata["strategy"] == "manual_recovery"
    assert stored.steps[0].status == StepStatus.FAILED


def test_step_timeout_ignores_alarming_session_prose(
    make_engine,
    scripted_executor,
    store: QueueStore,
) -> None:
    executor = scripted_executor(
        {"/busy": ["Working on the 401 unauthorized response handler, fixing the panic path"]},
    )
    engine = make_engine(executor)
    _custom_task(store, "busy", "/busy", max_retries=1, timeout_seconds=1)

    result = engine.execute("busy")

    assert result.outcome == RunOutcome.COMPLETED
    assert executor.sent == ["/busy", "/busy"]
    stored = store.get_task("busy")
    assert stored.status == TaskStatus.COMPLETED
    assert stored.retry_count == 1
    assert stored.steps[0].result["attempts"] == 2


def test_timeout_without_auto_escalation_needs_manual_recovery(
    make_engine,
    scripted_executor,
    settings: Settings,
    store: QueueStore,
) -> None:
    executor = scripted_executor(default_reply="thinking...")
    engine = make_engine(
        executor,
        classifier=ErrorClassifier(settings.recovery, escalate_timeouts=False),
    )
    _custom_task(store, "stuck", "/stuck", max_retries=3, timeout_seconds=1)

    result = engine.execute("stuck")

    assert result.outcome == RunOutcome.TIMEOUT
    assert executor.sent == ["/stuck"]
    assert store.get_task("stuck").metadata["strategy"] == "manual_recovery"


def test_recovery_max_retries_bounds_step_attempts(
    make_engine,
    exit_code_executor,
    settings: Settings,
    store: QueueStore,
) -> None:
    executor = exit_code_executor(
        {"lint": ["bash: ruff: command not found"] * 5},
        exit_codes={"lint": [127] * 5},
    )
    engine = make_engine(executor)
    engine.settings = replace(settings, recovery=replace(settings.recovery, max_retries=1))
    _custom_task(store, "lint", "lint", max_retries=3)

    result = engine.execute("lint")

    assert result.outcome == RunOutcome.PAUSED
    assert executor.sent == ["lint", "lint"]
    assert store.get_task("lint").retry_count == 1


def test_retry_delay_grows_linearly_and_triples_after_timeout(
    make_engine,
    scripted_executor,
    settings: Settings,
) -> None:
    engine = make_engine(scripted_executor())
    engine.settings = replace(
        settings,
        workflow=replace(
            settings.workflow,
            retry_base_seconds=5,
            retry_max_seconds=12,
            retry_jitter_seconds=0,
        ),
    )

    assert engine.retry_delay(0) == 5
    assert engine.retry_delay(1) == 10
    assert engine.retry_delay(5) == 12
    assert engine.retry_delay(0, timed_out=True) == 12

"""Multi-step workflow execution against an interactive CLI session.

A workflow is a task with ordered steps. Steps run strictly one after another: the
engine sends a step's command, polls the session until a completion detector fires,
checks every poll for usage-limit announcements, and routes failures through the error
classifier. Each step boundary is checkpointed, so a workflow interrupted mid-step
resumes at the first step that is not completed and never re-sends finished commands.
Plain (single-command) tasks run as a one-step workflow.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.completion import (
    CompletionContext,
    CompletionDetector,
    default_detector,
    new_output,
)
from auto_resume.engine.error_classifier import ErrorClassifier, RecoveryDecision, RecoveryStrategy
from auto_resume.engine.errors import (
    EmergencyShutdown,
    InvalidTransitionError,
    SessionError,
    StepExecutionError,
    TaskNotFoundError,
    UsageLimitDetected,
)
from auto_resume.engine.locking import process_identity
from auto_resume.engine.models import (
    HOLD_KEY,
    StepStatus,
    Task,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskType,
    WorkflowStep,
)
from auto_resume.engine.session import (
    ExitStatusReporter,
    InterruptibleSession,
    ProjectContext,
    SessionExecutor,
    SessionHandle,
)
from auto_resume.engine.store import QueueStore
from auto_resume.engine.timeout_monitor import TimeoutMonitor
from auto_resume.engine.usage_limit import UsageLimitRecovery
from auto_resume.storage.common import utc_now

logger = logging.getLogger(__name__)

ISSUE_MERGE_WORKFLOW = "issue-merge"
CUSTOM_WORKFLOW = "custom"
WORKFLOW_TYPES: tuple[str, ...] = (ISSUE_MERGE_WORKFLOW, CUSTOM_WORKFLOW)

_TIMEOUT_BACKOFF_MULTIPLIER = 3
_OUTPUT_TAIL_CHARS = 2000


class RunOutcome(str, Enum):
    """How one engine run over a task ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    PAUSED = "paused"
    CANCELED = "canceled"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class WorkflowRunResult:
    """Summary of :meth:`WorkflowEngine.execute` for callers and the CLI."""

    task_id: str
    outcome: RunOutcome
    steps_completed: int = 0
    steps_total: int = 0
    message: str = ""
    report_path: str | None = None


@dataclass(frozen=True, slots=True)
class WorkflowProgress:
    """Read-only view of a workflow's step progress."""

    task: Task
    completed_steps: int
    total_steps: int
    current_phase: str | None

    @property
    def percent(self) -> int:
        if self.total_steps == 0:
            return 0
        return int(self.completed_steps * 100 / self.total_steps)


@dataclass(slots=True)
class _StepRun:
    detector: str
    duration_seconds: float
    output_tail: str


class _Halt(Exception):  # noqa: N818
    """Internal: stop the run without treating it as a step failure."""

    def __init__(self, outcome: RunOutcome, message: str) -> None:
        super().__init__(message)
        self.outcome = outcome


def issue_merge_steps(
    issue_id: str,
    phase_timeouts: dict[str, int] | None = None,
) -> tuple[WorkflowStep, ...]:
    """The fixed develop -> clear -> review -> merge sequence for one issue."""

    timeouts = phase_timeouts or {}
    definitions = (
        ("develop", f"/dev {issue_id}", f"Develop issue #{issue_id}"),
        ("clear", "/clear", "Clear session context"),
        ("review", f"/review PR-{issue_id}", f"Review pull request for issue #{issue_id}"),
        (
            "merge",
            f"/dev merge-pr {issue_id} --focus-main",
            f"Merge pull request for issue #{issue_id}",
        ),
    )
    return tuple(
        WorkflowStep(
            phase=phase,
            command=command,
            description=description,
            timeout_seconds=timeouts.get(phase),
        )
        for phase, command, description in definitions
    )


def custom_steps(config: dict[str, Any]) -> tuple[WorkflowStep, ...]:
    """Steps from ``{"steps": [{"phase", "command", "timeout"?, "description"?}]}``."""

    raw_steps = config.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValueError("Custom workflow config needs a non-empty 'steps' list.")
    steps: list[WorkflowStep] = []
    for index, item in enumerate(raw_steps, start=1):
        if not isinstance(item, dict) or not str(item.get("command") or "").strip():
            raise ValueError(f"Workflow step #{index} needs a 'command'.")
        timeout = item.get("timeout")
        if timeout is not None and int(timeout) <= 0:
            raise ValueError(f"Workflow step #{index} timeout must be > 0.")
        steps.append(
            WorkflowStep(
                phase=str(item.get("phase") or "generic"),
                command=str(item["command"]).strip(),
                description=str(item.get("description") or ""),
                timeout_seconds=int(timeout) if timeout is not None else None,
            ),
        )
    return tuple(steps)


def parse_workflow_config(workflow_type: str, raw: str) -> dict[str, Any]:
    """Accept a JSON object, or for issue-merge a bare issue number."""

    text = raw.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    if workflow_type == ISSUE_MERGE_WORKFLOW and text:
        return {"issue_id": text.lstrip("#")}
    raise ValueError(f"Workflow config for {workflow_type!r} must be a JSON object.")


def build_workflow_steps(
    workflow_type: str,
    config: dict[str, Any],
    phase_timeouts: dict[str, int] | None = None,
) -> tuple[WorkflowStep, ...]:
    if workflow_type == ISSUE_MERGE_WORKFLOW:
        issue_id = str(config.get("issue_id") or "").strip()
        if not issue_id:
            raise ValueError("issue-merge workflow config needs 'issue_id'.")
        return issue_merge_steps(issue_id, phase_timeouts)
    if workflow_type == CUSTOM_WORKFLOW:
        return custom_steps(config)
    raise ValueError(
        f"Unknown workflow type {workflow_type!r}; expected one of {', '.join(WORKFLOW_TYPES)}.",
    )


class WorkflowEngine:
    """Drives queued tasks step by step through a session executor."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        store: QueueStore,
        executor: SessionExecutor,
        project: ProjectContext,
        backups: BackupManager,
        monitor: TimeoutMonitor,
        usage: UsageLimitRecovery,
        classifier: ErrorClassifier,
        detector: CompletionDetector | None = None,
        stop_event: threading.Event | None = None,
        wait_on_usage_limit: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.executor = executor
        self.project = project
        self.backups = backups
        self.monitor = monitor
        self.usage = usage
        self.classifier = classifier
        self.detector = detector or default_detector(
            marker=settings.queue.completion_marker,
            exit_status_available=isinstance(executor, ExitStatusReporter),
        )
        self.stop_event = stop_event or threading.Event()
        self.wait_on_usage_limit = wait_on_usage_limit
        self._random = rng or random.Random()  # noqa: S311
        self._session: SessionHandle | None = None
        self._session_lock = threading.Lock()

    # Definition and inspection ----------------------------------------------------

    def create(
        self,
        workflow_type: str,
        config: dict[str, Any],
        *,
        priority: int | None = None,
        task_id: str | None = None,
        description: str | None = None,
    ) -> Task:
        """Enqueue a workflow of a built-in type."""

        steps = build_workflow_steps(workflow_type, config, self.settings.workflow.phase_timeouts)
        label = description or _default_description(workflow_type, config)
        request = TaskCreate(
            task_type=TaskType.WORKFLOW,
            command=" && ".join(step.command for step in steps),
            description=label,
            task_id=task_id,
            max_retries=self.settings.workflow.max_retries,
            metadata={"workflow_type": workflow_type, "config": config},
            steps=steps,
        )
        if priority is not None:
            request.priority = priority
        task = self.store.add_task(request)
        logger.info(
            "Created %s workflow %s with %s step(s)",
            workflow_type,
            task.task_id,
            len(steps),
        )
        return task

    def list_workflows(self, statuses: tuple[TaskStatus, ...] = ()) -> list[Task]:
        return self.store.list_tasks(TaskFilter(statuses=statuses, task_types=(TaskType.WORKFLOW,)))

    def status(self, task_id: str) -> WorkflowProgress:
        task = self.store.get_task(task_id)
        index = task.next_step_index()
        return WorkflowProgress(
            task=task,
            completed_steps=len(task.completed_phases()),
            total_steps=len(task.steps),
            current_phase=task.steps[index].phase if index is not None else None,
        )

    # Control ----------------------------------------------------------------------

    def pause(self, task_id: str, reason: str = "paused by operator") -> Task:
        """Hold a workflow; a running one stops at the next step boundary."""

        task = self.store.get_task(task_id)
        if task.is_terminal:
            raise InvalidTransitionError(task_id, task.status.value, "paused")
        logger.info("Pausing workflow %s", task_id)
        return self.store.update_metadata(task_id, **{HOLD_KEY: True, "hold_reason": reason})

    def cancel(self, task_id: str, reason: str = "canceled by operator") -> Task:
        """Fail a pending or running workflow; a running engine stops on its next poll."""

        task = self.store.get_task(task_id)
        if task.status not in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.FAILED.value)
        logger.warning("Canceling workflow %s", task_id)
        return self.store.update_status(
            task_id,
            TaskStatus.FAILED,
            reason,
            metadata={"canceled": True, HOLD_KEY: False},
        )

    def resume(
        self,
        task_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> WorkflowRunResult:
        """Continue from the latest checkpoint, skipping every step it shows completed."""

        task = self.store.get_task(task_id)
        checkpoint = self.backups.latest(task_id)
        steps = list(task.steps)
        if checkpoint is not None:
            recorded = checkpoint.restore_task().steps
            for index, step in enumerate(steps):
                if index < len(recorded) and recorded[index].status == StepStatus.COMPLETED:
                    steps[index] = recorded[index]
        steps = [
            step
            if step.status == StepStatus.COMPLETED
            else replace(step, status=StepStatus.PENDING, started_at=None, completed_at=None)
            for step in steps
        ]
        self.store.update_steps(task_id, steps)
        self._release_for_resume(task_id)
        logger.info(
            "Resuming workflow %s after %s completed step(s)",
            task_id,
            sum(1 for step in steps if step.status == StepStatus.COMPLETED),
        )
        return self.execute(task_id, cancel_event=cancel_event)

    def resume_from_step(
        self,
        task_id: str,
        step: int | str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> WorkflowRunResult:
        """Restart a workflow at a given step index or phase; earlier steps count as done."""

        task = self.store.get_task(task_id)
        index = _step_index(task, step)
        now = utc_now()
        steps = [
            (
                current
                if current.status == StepStatus.COMPLETED
                else replace(
                    current,
                    status=StepStatus.COMPLETED,
                    completed_at=now,
                    result={**current.result, "skipped": True},
                )
            )
            if position < index
            else replace(current, status=StepStatus.PENDING, started_at=None, completed_at=None)
            for position, current in enumerate(task.steps)
        ]
        self.store.update_steps(task_id, steps)
        self._release_for_resume(task_id)
        logger.info("Resuming workflow %s from step %s (%s)", task_id, index, steps[index].phase)
        return self.execute(task_id, cancel_event=cancel_event)

    # Execution --------------------------------------------------------------------

    def execute(
        self,
        task_id: str,
        *,
        cancel_event: threading.Event | None = None,
        extend_deadline: Callable[[float], object] | None = None,
    ) -> WorkflowRunResult:
        """Run a task to completion, failure or pause.

        A pending task is claimed first. ``cancel_event`` (default: the engine's stop
        event) aborts between polls; the task is then requeued with progress kept.
        ``extend_deadline`` is called with the length of each usage-limit pause waited
        out in process, so a task-level watchdog does not count the pause.
        Raises UsageLimitDetected when a usage-limit pause is not waited out in
        process, and EmergencyShutdown after a critical failure.
        """

        event = cancel_event or self.stop_event
        task = self.store.get_task(task_id)
        if task.status == TaskStatus.PENDING:
            self._release_for_resume(task_id)
            task = self.store.update_status(
                task_id,
                TaskStatus.IN_PROGRESS,
                "workflow execute",
                metadata={"worker_id": process_identity()},
            )
        elif task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.IN_PROGRESS.value)
        if not task.steps:
            task = self.store.update_steps(task_id, [_single_step(task)])

        ran_step = False
        while True:
            try:
                current = self._check_control(task_id)
                index = current.next_step_index()
                if index is None:
                    self.store.update_status(task_id, TaskStatus.COMPLETED, "all steps completed")
                    return self._result(current, RunOutcome.COMPLETED, "all steps completed")
                if current.is_held:
                    return self._hold(current, str(current.metadata.get("hold_reason") or "paused"))
                if ran_step and self.settings.workflow.step_delay_seconds > 0:
                    if event.wait(self.settings.workflow.step_delay_seconds):
                        raise _Halt(RunOutcome.INTERRUPTED, "stop requested between steps")
                    current = self._check_control(task_id)
                failure = self._execute_step(current, index, event, extend_deadline)
                ran_step = True
                if failure is not None:
                    return failure
            except _Halt as halt:
                return self._halted(task_id, halt)

    def _execute_step(  # noqa: C901, PLR0913
        self,
        task: Task,
        index: int,
        event: threading.Event,
        extend_deadline: Callable[[float], object] | None = None,
    ) -> WorkflowRunResult | None:
        step = task.steps[index]
        timeout = float(step.timeout_seconds or self.settings.workflow.timeout_for(step.phase))
        retry_limit = min(
            task.max_retries,
            self.settings.workflow.max_retries,
            self.settings.recovery.max_retries,
        )
        retries = 0
        while True:
            self._mark_step(task.task_id, index, StepStatus.IN_PROGRESS)
            self.backups.checkpoint(task.task_id, f"step_{step.phase}_start")
            logger.info(
                "Workflow %s step %s/%s (%s): %s",
                task.task_id,
                index + 1,
                len(task.steps),
                step.phase,
                step.command,
            )
            try:
                run = self._run_step_once(task.task_id, step, timeout, event)
            except UsageLimitDetected as limit:
                self._mark_step(task.task_id, index, StepStatus.PENDING)
                self._await_usage_limit(task.task_id, limit, event, extend_deadline)
                continue
            except StepExecutionError as error:
                decision = self.classifier.decide(
                    _classifier_input(error),
                    retry_count=retries,
                    max_retries=retry_limit,
                    context={"exit_code": error.exit_code, "phase": step.phase},
                    timed_out=error.timed_out,
                    task_id=task.task_id,
                )
                outcome = self._apply_strategy(task, index, error, decision, event)
                if outcome is not None:
                    return outcome
                retries += 1
                self.store.increment_retry(task.task_id)
                if decision.strategy == RecoveryStrategy.TIMEOUT_RECOVERY:
                    timeout = min(timeout * 2, float(max(task.timeout_seconds, timeout)))
                continue

            self._mark_step(
                task.task_id,
                index,
                StepStatus.COMPLETED,
                result={
                    "duration_seconds": round(run.duration_seconds, 3),
                    "attempts": retries + 1,
                    "detector": run.detector,
                },
            )
            self.backups.checkpoint(task.task_id, f"step_{step.phase}_completed")
            logger.info(
                "Workflow %s step %s completed via %s",
                task.task_id,
                step.phase,
                run.detector,
            )
            return None

    def _run_step_once(
        self,
        task_id: str,
        step: WorkflowStep,
        timeout: float,
        event: threading.Event,
    ) -> _StepRun:
        lines = self.settings.workflow.output_lines
        try:
            session = self._ensure_session()
            baseline = self.executor.capture_recent_output(session, lines)
        except SessionError as error:
            raise StepExecutionError(
                f"Session unavailable for step {step.phase}: {error}",
                transient=True,
            ) from error
        step_expired = threading.Event()
        handle = self.monitor.start(
            task_id,
            timeout,
            terminate=lambda: self._interrupt(session),
            cancel_event=step_expired,
            mark_task=False,
        )
        started = time.monotonic()
        output = ""
        try:
            self.executor.send_command(session, step.command)
            while True:
                if step_expired.is_set():
                    raise StepExecutionError(
                        f"Step {step.phase} timed out after {timeout:.0f}s",
                        timed_out=True,
                        output_tail=output[-_OUTPUT_TAIL_CHARS:],
                    )
                self._check_control(task_id)
                if event.is_set():
                    raise _Halt(RunOutcome.INTERRUPTED, f"stop requested during {step.phase}")

                # Exit status first: output captured after the command ended is complete.
                exit_status = self._exit_status(session)
                output = new_output(baseline, self.executor.capture_recent_output(session, lines))
                limit = self.usage.check_output(output, context_id=task_id)
                if limit is not None:
                    match, occurrence = limit
                    raise UsageLimitDetected(
                        match,
                        occurrence.computed_wait_seconds,
                        task_id=task_id,
                    )

                verdict = self.detector.check(
                    CompletionContext(
                        phase=step.phase,
                        command=step.command,
                        output=output,
                        exit_status=exit_status,
                    ),
                )
                if verdict is not None:
                    if verdict.succeeded:
                        return _StepRun(
                            detector=verdict.detector,
                            duration_seconds=time.monotonic() - started,
                            output_tail=output[-_OUTPUT_TAIL_CHARS:],
                        )
                    raise StepExecutionError(
                        f"Step {step.phase} failed: {verdict.detail}",
                        exit_code=exit_status,
                        output_tail=output[-_OUTPUT_TAIL_CHARS:],
                    )
                if not self.executor.is_alive(session):
                    raise StepExecutionError(
                        f"Session ended during step {step.phase}",
                        transient=True,
                        output_tail=output[-_OUTPUT_TAIL_CHARS:],
                    )
                step_expired.wait(self.settings.workflow.poll_interval_seconds)
        except SessionError as error:
            raise StepExecutionError(
                f"Session error during step {step.phase}: {error}",
                transient=True,
                output_tail=output[-_OUTPUT_TAIL_CHARS:],
            ) from error
        finally:
            self.monitor.stop(handle)

    def _apply_strategy(  # noqa: PLR0911
        self,
        task: Task,
        index: int,
        error: StepExecutionError,
        decision: RecoveryDecision,
        event: threading.Event,
    ) -> WorkflowRunResult | None:
        """Carry out a recovery decision; None means retry the step."""

        strategy = decision.strategy
        if strategy == RecoveryStrategy.SIMPLE_RETRY:
            return None
        if strategy in (RecoveryStrategy.AUTOMATIC_RECOVERY, RecoveryStrategy.TIMEOUT_RECOVERY):
            delay = self.retry_delay(decision.retry_count, timed_out=error.timed_out)
            logger.info("Retrying step %s of %s in %.1fs", index + 1, task.task_id, delay)
            if event.wait(delay):
                raise _Halt(RunOutcome.INTERRUPTED, "stop requested during retry backoff")
            return None
        if strategy == RecoveryStrategy.SAFE_RECOVERY:
            self._mark_step(task.task_id, index, StepStatus.PENDING)
            self.backups.checkpoint(task.task_id, "safe_recovery")
            self.store.update_metadata(
                task.task_id,
                **{HOLD_KEY: True, "hold_reason": f"safe recovery: {_first_line(str(error))}"},
            )
            return self._hold(self.store.get_task(task.task_id), "safe recovery")

        self._mark_step(task.task_id, index, StepStatus.FAILED, result={"error": str(error)})
        checkpoint = self.backups.checkpoint(task.task_id, f"step_failed_{strategy.value}")
        final_status = TaskStatus.TIMEOUT if error.timed_out else TaskStatus.FAILED
        if strategy == RecoveryStrategy.EMERGENCY_SHUTDOWN:
            final_status = TaskStatus.ERROR
        failed_task = self.store.update_status(
            task.task_id,
            final_status,
            _first_line(str(error)),
            metadata={
                "severity": decision.classification.severity.value,
                "strategy": strategy.value,
            },
        )
        if strategy == RecoveryStrategy.EMERGENCY_SHUTDOWN:
            backup_path = self.backups.emergency_backup(
                f"critical failure in {task.task_id}: {_first_line(str(error))}",
                active_task_ids=[task.task_id],
            )
            raise EmergencyShutdown(
                f"Critical failure in task {task.task_id}: {_first_line(str(error))}",
                task_id=task.task_id,
                backup_path=str(backup_path),
            )
        report = self.classifier.write_manual_report(
            failed_task,
            decision,
            output_tail=error.output_tail,
            checkpoint_path=checkpoint.path,
        )
        outcome = RunOutcome.TIMEOUT if error.timed_out else RunOutcome.FAILED
        result = self._result(failed_task, outcome, _first_line(str(error)))
        result.report_path = str(report) if report is not None else None
        return result

    def retry_delay(self, retry_count: int, *, timed_out: bool = False) -> float:
        """Backoff before retrying a step: linear in the attempt, tripled after a timeout."""

        policy = self.settings.workflow
        base = policy.retry_base_seconds * (retry_count + 1)
        if timed_out:
            base *= _TIMEOUT_BACKOFF_MULTIPLIER
        capped = min(policy.retry_max_seconds, base)
        jitter = self._random.uniform(-policy.retry_jitter_seconds, policy.retry_jitter_seconds)
        return max(0.0, capped + jitter)

    # Internals --------------------------------------------------------------------

    def _await_usage_limit(
        self,
        task_id: str,
        limit: UsageLimitDetected,
        event: threading.Event,
        extend_deadline: Callable[[float], object] | None = None,
    ) -> None:
        self.backups.checkpoint(task_id, "usage_limit")
        if not self.wait_on_usage_limit:
            self._requeue(task_id, "usage limit pause")
            raise limit
        if extend_deadline is not None:
            extend_deadline(limit.wait_seconds)
        occurrences = self.usage.history(task_id)
        waited = self.usage.wait(
            limit.wait_seconds,
            event,
            progress=lambda elapsed, remaining: logger.info(
                "Usage-limit pause for %s: %.0fs elapsed, %.0fs remaining",
                task_id,
                elapsed,
                remaining,
            ),
            occurrence=occurrences[-1] if occurrences else None,
        )
        if not waited.expired:
            self._requeue(task_id, "usage limit pause interrupted")
            raise limit
        logger.info("Usage-limit pause for %s over; re-sending the step", task_id)
        self._check_control(task_id)

    def _check_control(self, task_id: str) -> Task:
        """Current stored task; halts when someone else moved it out of in_progress."""

        try:
            task = self.store.get_task(task_id)
        except TaskNotFoundError as error:
            raise _Halt(RunOutcome.CANCELED, f"task {task_id} was removed") from error
        if task.status == TaskStatus.IN_PROGRESS:
            return task
        if task.status == TaskStatus.TIMEOUT:
            raise _Halt(RunOutcome.TIMEOUT, f"task {task_id} exceeded its timeout")
        raise _Halt(RunOutcome.CANCELED, f"task {task_id} is now {task.status.value}")

    def _halted(self, task_id: str, halt: _Halt) -> WorkflowRunResult:
        message = str(halt)
        try:
            task = self.store.get_task(task_id)
        except TaskNotFoundError:
            logger.warning("Workflow %s stopped: %s", task_id, message)
            return WorkflowRunResult(task_id=task_id, outcome=halt.outcome, message=message)
        if halt.outcome == RunOutcome.INTERRUPTED and task.status == TaskStatus.IN_PROGRESS:
            self.backups.checkpoint(task_id, "shutdown")
            task = self._requeue(task_id, "interrupted by shutdown")
        logger.warning("Workflow %s stopped (%s): %s", task_id, halt.outcome.value, message)
        return self._result(task, halt.outcome, message)

    def _hold(self, task: Task, reason: str) -> WorkflowRunResult:
        self.backups.checkpoint(task.task_id, "paused")
        held = self._requeue(task.task_id, reason)
        logger.info("Workflow %s held: %s", task.task_id, reason)
        return self._result(held, RunOutcome.PAUSED, reason)

    def _requeue(self, task_id: str, note: str) -> Task:
        task = self.store.get_task(task_id)
        steps = [
            replace(step, status=StepStatus.PENDING, started_at=None)
            if step.status == StepStatus.IN_PROGRESS
            else step
            for step in task.steps
        ]
        self.store.update_steps(task_id, steps)
        if task.status == TaskStatus.IN_PROGRESS:
            return self.store.requeue(task_id, note)
        return self.store.get_task(task_id)

    def _release_for_resume(self, task_id: str) -> None:
        task = self.store.get_task(task_id)
        if task.is_held:
            task = self.store.update_metadata(task_id, **{HOLD_KEY: False, "hold_reason": None})
        if task.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT, TaskStatus.ERROR):
            self.store.requeue(task_id, "workflow resume")

    def _mark_step(
        self,
        task_id: str,
        index: int,
        status: StepStatus,
        *,
        result: dict[str, Any] | None = None,
    ) -> Task:
        task = self.store.get_task(task_id)
        now = utc_now()
        steps = list(task.steps)
        step = steps[index]
        steps[index] = replace(
            step,
            status=status,
            started_at=now if status == StepStatus.IN_PROGRESS else step.started_at,
            completed_at=now if status in (StepStatus.COMPLETED, StepStatus.FAILED) else None,
            result={**step.result, **(result or {})},
        )
        return self.store.update_steps(task_id, steps)

    def _ensure_session(self) -> SessionHandle:
        with self._session_lock:
            if self._session is None or not self.executor.is_alive(self._session):
                if self._session is not None:
                    logger.warning(
                        "Session %s is gone; starting a new one",
                        self._session.session_id,
                    )
                self._session = self.executor.start_session(self.project)
            return self._session

    def _interrupt(self, session: SessionHandle) -> None:
        if isinstance(self.executor, InterruptibleSession):
            self.executor.interrupt(session)

    def _exit_status(self, session: SessionHandle) -> int | None:
        if isinstance(self.executor, ExitStatusReporter):
            return self.executor.last_exit_status(session)
        return None

    def _result(self, task: Task, outcome: RunOutcome, message: str) -> WorkflowRunResult:
        return WorkflowRunResult(
            task_id=task.task_id,
            outcome=outcome,
            steps_completed=len(task.completed_phases()),
            steps_total=len(task.steps),
            message=message,
        )


EngineFactory = Callable[[int], WorkflowEngine]


def _single_step(task: Task) -> WorkflowStep:
    if not task.command.strip():
        raise ValueError(f"Task {task.task_id} has no command to run.")
    return WorkflowStep(
        phase="generic",
        command=task.command,
        description=task.description,
        timeout_seconds=task.timeout_seconds,
    )


def _step_index(task: Task, step: int | str) -> int:
    if isinstance(step, int) or (isinstance(step, str) and step.isdigit()):
        index = int(step)
        if not 0 <= index < len(task.steps):
            raise ValueError(f"Workflow {task.task_id} has no step #{index}.")
        return index
    for index, current in enumerate(task.steps):
        if current.phase == step:
            return index
    raise ValueError(f"Workflow {task.task_id} has no phase {step!r}.")


def _default_description(workflow_type: str, config: dict[str, Any]) -> str:
    if workflow_type == ISSUE_MERGE_WORKFLOW:
        return f"Issue merge workflow for #{config.get('issue_id')}"
    return str(config.get("description") or "Custom workflow")


def _first_line(message: str) -> str:
    stripped = message.strip()
    return stripped.splitlines()[0] if stripped else ""


def _classifier_input(error: StepExecutionError) -> str:
    """Text to classify: a timeout is judged by its message, not the session's prose."""

    if error.timed_out:
        return str(error)
    return f"{error}\n{error.output_tail}"

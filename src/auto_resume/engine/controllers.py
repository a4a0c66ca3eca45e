"""Controllers for queue, workflow, worker and recovery CLI commands."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from auto_resume.config import Settings
from auto_resume.engine.backup import BackupManager
from auto_resume.engine.error_classifier import ErrorClassifier, classify_error
from auto_resume.engine.errors import UsageLimitDetected
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.models import Task, TaskCreate, TaskFilter, TaskStatus, TaskType
from auto_resume.engine.scheduler import TaskScheduler
from auto_resume.engine.session import (
    ProcessSessionExecutor,
    ProjectContext,
    SessionExecutor,
    TmuxSessionExecutor,
)
from auto_resume.engine.store import QueueStore, parse_task_type
from auto_resume.engine.timeout_monitor import TimeoutMonitor
from auto_resume.engine.usage_limit import UsageLimitRecovery, marker_resume_at
from auto_resume.engine.worker import (
    QueueWorker,
    WorkerRunSummary,
    read_worker_pid,
    stop_on_signals,
)
from auto_resume.engine.workflow import (
    RunOutcome,
    WorkflowEngine,
    WorkflowRunResult,
    parse_workflow_config,
)
from auto_resume.storage.common import to_iso

EXIT_OK = 0
EXIT_FAILURE = 1
# sysexits EX_TEMPFAIL: the run paused on a usage limit and should be retried later.
EXIT_USAGE_LIMIT = 75


@dataclass(slots=True)
class CommandReport:
    """Lines to print plus the process exit code."""

    lines: list[str]
    exit_code: int = EXIT_OK


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for enqueuing a task."""

    queue_dir: Path | None
    task_type: str
    priority: int
    description: str
    command: str | None = None
    task_id: str | None = None
    max_retries: int | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for task listing."""

    queue_dir: Path | None
    statuses: tuple[str, ...] = ()
    task_types: tuple[str, ...] = ()
    min_priority: int | None = None
    max_priority: int | None = None
    text: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None
    output_format: str = "table"


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI input for single-task operations (remove, retry, show)."""

    queue_dir: Path | None
    task_id: str


@dataclass(slots=True)
class QueuePauseCommand:
    """CLI input for pausing the queue."""

    queue_dir: Path | None
    reason: str | None = None


@dataclass(slots=True)
class QueueClearCommand:
    """CLI input for clearing tasks."""

    queue_dir: Path | None
    statuses: tuple[str, ...] = ()


@dataclass(slots=True)
class QueueCleanupCommand:
    """CLI input for removing old terminal tasks."""

    queue_dir: Path | None
    older_than_days: int | None = None


@dataclass(slots=True)
class QueueStatusCommand:
    """CLI input for the status overview."""

    queue_dir: Path | None


@dataclass(slots=True)
class WorkflowCreateCommand:
    """CLI input for creating a workflow."""

    queue_dir: Path | None
    workflow_type: str
    config: str
    priority: int | None = None
    task_id: str | None = None
    description: str | None = None


@dataclass(slots=True)
class WorkflowRunCommand:
    """CLI input for executing or resuming a workflow."""

    queue_dir: Path | None
    task_id: str
    from_step: str | None = None
    wait_on_usage_limit: bool = True


@dataclass(slots=True)
class WorkflowListCommand:
    """CLI input for workflow listing."""

    queue_dir: Path | None
    statuses: tuple[str, ...] = ()


@dataclass(slots=True)
class WorkflowMutateCommand:
    """CLI input for pause/cancel/status of one workflow."""

    queue_dir: Path | None
    task_id: str
    reason: str | None = None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    queue_dir: Path | None
    once: bool
    max_tasks: int | None = None
    max_idle_polls: int | None = None
    wait_on_usage_limit: bool = True


@dataclass(slots=True)
class BackupCheckpointCommand:
    """CLI input for a manual checkpoint."""

    queue_dir: Path | None
    task_id: str
    reason: str = "manual"


@dataclass(slots=True)
class BackupListCommand:
    """CLI input for checkpoint listing."""

    queue_dir: Path | None
    task_id: str | None = None


@dataclass(slots=True)
class BackupEmergencyCommand:
    """CLI input for an on-demand emergency backup."""

    queue_dir: Path | None
    reason: str = "manual"


@dataclass(slots=True)
class BackupCleanupCommand:
    """CLI input for backup retention."""

    queue_dir: Path | None
    retention_hours: int | None = None
    max_per_task: int | None = None


@dataclass(slots=True)
class UsageCheckCommand:
    """CLI input for testing text against usage-limit patterns."""

    queue_dir: Path | None
    text: str
    context_id: str | None = None
    record: bool = False


@dataclass(slots=True)
class UsageHistoryCommand:
    """CLI input for usage-limit history."""

    queue_dir: Path | None
    context_id: str | None = None


@dataclass(slots=True)
class ErrorsClassifyCommand:
    """CLI input for classifying an error message."""

    queue_dir: Path | None
    message: str
    retry_count: int = 0
    max_retries: int | None = None
    exit_code: int | None = None
    timed_out: bool = False


@dataclass(slots=True)
class ErrorsHistoryCommand:
    """CLI input for journaled error decisions."""

    queue_dir: Path | None
    task_id: str | None = None
    hours: int = 24
    limit: int = 50


@dataclass(slots=True)
class EngineRuntime:
    """Wired engine components for one CLI invocation."""

    settings: Settings
    journal: EngineJournal
    store: QueueStore
    backups: BackupManager
    scheduler: TaskScheduler
    classifier: ErrorClassifier
    usage: UsageLimitRecovery
    monitor: TimeoutMonitor
    stop_event: threading.Event = field(default_factory=threading.Event)

    def engine(
        self,
        *,
        slot: int = 0,
        executor: SessionExecutor | None = None,
        wait_on_usage_limit: bool = True,
    ) -> WorkflowEngine:
        project_dir = self.settings.session.project_dir
        name = project_dir.resolve().name or "project"
        return WorkflowEngine(
            self.settings,
            store=self.store,
            executor=executor or build_executor(self.settings),
            project=ProjectContext(
                project_dir=project_dir,
                name=f"{name}-{slot}" if slot else name,
            ),
            backups=self.backups,
            monitor=self.monitor,
            usage=self.usage,
            classifier=self.classifier,
            stop_event=self.stop_event,
            wait_on_usage_limit=wait_on_usage_limit,
        )


def build_executor(settings: Settings) -> SessionExecutor:
    if settings.session.backend == "process":
        return ProcessSessionExecutor(
            command_template=settings.session.command_template,
            logs_dir=settings.sessions_dir,
        )
    return TmuxSessionExecutor(
        cli_command=settings.session.cli_command,
        session_prefix=settings.session.session_prefix,
    )


class QueueCliController:
    """Queue administration: add, list, remove, retry, pause, clear, status."""

    def add(self, command: QueueAddCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        task_type = parse_task_type(command.task_type)
        with _runtime(settings) as runtime:
            task = runtime.scheduler.add_task(
                TaskCreate(
                    task_type=task_type,
                    command=command.command or command.description,
                    description=command.description,
                    task_id=command.task_id,
                    priority=command.priority,
                    max_retries=command.max_retries,
                    timeout_seconds=command.timeout_seconds,
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type.value} "
            f"priority={task.priority} status={task.status.value}",
        ]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        task_filter = TaskFilter(
            statuses=tuple(_parse_status(value) for value in command.statuses),
            task_types=tuple(parse_task_type(value) for value in command.task_types),
            min_priority=command.min_priority,
            max_priority=command.max_priority,
            text=command.text,
            created_after=command.created_after,
            created_before=command.created_before,
            limit=command.limit,
        )
        store = QueueStore(settings)
        tasks = store.list_tasks(task_filter)
        if command.output_format == "json":
            return [json.dumps([task.to_dict() for task in tasks], indent=2, sort_keys=True)]
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def show(self, command: QueueTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            task = runtime.store.get_task(command.task_id)
            events = runtime.journal.list_events(task_id=command.task_id, limit=50)
            checkpoints = runtime.backups.list_checkpoints(command.task_id)
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Timeout: {task.timeout_seconds}s",
            f"Command: {task.command or '-'}",
            f"Description: {task.description or '-'}",
            f"Created: {to_iso(task.created_at)}",
            f"Updated: {to_iso(task.updated_at)}",
            f"Checkpoints: {len(checkpoints)}",
        ]
        for index, step in enumerate(task.steps, start=1):
            lines.append(f"  step {index} {step.phase} [{step.status.value}] {step.command}")
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {to_iso(event.created_at)} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def remove(self, command: QueueTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            task = runtime.store.remove_task(command.task_id)
        return [f"Task removed: {task.task_id} (was {task.status.value})"]

    def retry(self, command: QueueTaskCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            task = runtime.store.requeue(command.task_id, "manual retry", increment_retry=True)
        return [f"Task re-queued: {task.task_id} retry={task.retry_count}/{task.max_retries}"]

    def pause(self, command: QueuePauseCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            runtime.store.pause(command.reason)
        return ["Queue paused" + (f": {command.reason}" if command.reason else "")]

    def resume(self, command: QueueStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            runtime.store.resume()
        return ["Queue resumed"]

    def clear(self, command: QueueClearCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        statuses = tuple(_parse_status(value) for value in command.statuses)
        with _runtime(settings) as runtime:
            removed = runtime.store.clear(statuses)
        return [f"Cleared {removed} task(s)"]

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            removed = runtime.store.cleanup(command.older_than_days)
            backups_removed = runtime.backups.cleanup()
        return [
            f"Removed {removed} terminal task(s)",
            f"Removed {backups_removed['checkpoints']} checkpoint(s) and "
            f"{backups_removed['emergency_backups']} emergency backup(s)",
        ]

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        store = QueueStore(settings)
        stats = store.statistics()
        next_task = TaskScheduler(store).next()
        usage = UsageLimitRecovery(settings.usage_limit, marker_path=settings.pause_marker_path)
        marker = usage.pause_marker()
        holder = store.lock.inspect()
        worker_pid = read_worker_pid(settings.pid_file)

        lines = [
            f"Queue: {settings.queue_file}",
            f"State: {'paused' if stats.paused else 'active'}"
            + (f" ({stats.pause_reason})" if stats.pause_reason else ""),
            f"Tasks: {stats.total}",
        ]
        for status in TaskStatus:
            lines.append(f"  {status.value}: {stats.by_status.get(status.value, 0)}")
        lines.append(f"Next task: {next_task.task_id if next_task else '-'}")
        lines.append(f"Worker: running (pid {worker_pid})" if worker_pid else "Worker: not running")
        lines.append(f"Lock: {holder.describe() if holder else 'free'}")
        if marker is not None:
            resume_at = marker_resume_at(marker)
            lines.append(
                f"Usage limit: waiting until {to_iso(resume_at) if resume_at else '-'} "
                f"({marker.get('matched_pattern', '-')})",
            )
        lines.append(f"Last modified: {to_iso(stats.last_modified) or '-'}")
        return lines


class WorkflowCliController:
    """Workflow definition, execution and control."""

    def create(self, command: WorkflowCreateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        config = parse_workflow_config(command.workflow_type, command.config)
        with _runtime(settings) as runtime:
            task = runtime.engine().create(
                command.workflow_type,
                config,
                priority=command.priority,
                task_id=command.task_id,
                description=command.description,
            )
        lines = [f"Workflow created: task_id={task.task_id} steps={len(task.steps)}"]
        lines.extend(
            f"  {index}. {step.phase}: {step.command}"
            for index, step in enumerate(task.steps, start=1)
        )
        return lines

    def execute(self, command: WorkflowRunCommand) -> CommandReport:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            engine = runtime.engine(wait_on_usage_limit=command.wait_on_usage_limit)
            with stop_on_signals(lambda _: runtime.stop_event.set()):
                return _run_report(lambda: engine.execute(command.task_id))

    def resume(self, command: WorkflowRunCommand) -> CommandReport:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            engine = runtime.engine(wait_on_usage_limit=command.wait_on_usage_limit)
            with stop_on_signals(lambda _: runtime.stop_event.set()):
                if command.from_step is not None:
                    step = command.from_step
                    return _run_report(lambda: engine.resume_from_step(command.task_id, step))
                return _run_report(lambda: engine.resume(command.task_id))

    def list_workflows(self, command: WorkflowListCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        statuses = tuple(_parse_status(value) for value in command.statuses)
        with _runtime(settings) as runtime:
            workflows = runtime.engine().list_workflows(statuses)
        lines = [f"Workflows: {len(workflows)}"]
        for task in workflows:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"type={task.metadata.get('workflow_type', '-')} "
                f"progress={len(task.completed_phases())}/{len(task.steps)}"
                + (" held" if task.is_held else ""),
            )
        return lines

    def status(self, command: WorkflowMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            progress = runtime.engine().status(command.task_id)
        task = progress.task
        lines = [
            f"Workflow: {task.task_id}",
            f"Type: {task.metadata.get('workflow_type', '-')}",
            f"Status: {task.status.value}" + (" (held)" if task.is_held else ""),
            f"Progress: {progress.completed_steps}/{progress.total_steps} ({progress.percent}%)",
            f"Current phase: {progress.current_phase or '-'}",
        ]
        for index, step in enumerate(task.steps, start=1):
            detail = step.result.get("detector") or step.result.get("error") or ""
            lines.append(
                f"  {index}. {step.phase} [{step.status.value}] {step.command}"
                + (f" ({detail})" if detail else ""),
            )
        return lines

    def pause(self, command: WorkflowMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            runtime.engine().pause(command.task_id, command.reason or "paused by operator")
        return [f"Workflow paused: {command.task_id}"]

    def cancel(self, command: WorkflowMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            runtime.engine().cancel(command.task_id, command.reason or "canceled by operator")
        return [f"Workflow canceled: {command.task_id}"]


class WorkerCliController:
    """Runs the queue worker in the foreground."""

    def run(self, command: WorkerCommand) -> CommandReport:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            worker = QueueWorker(
                settings,
                store=runtime.store,
                scheduler=runtime.scheduler,
                backups=runtime.backups,
                monitor=runtime.monitor,
                engine_factory=lambda slot: runtime.engine(
                    slot=slot,
                    wait_on_usage_limit=command.wait_on_usage_limit,
                ),
                journal=runtime.journal,
            )
            if command.once:
                with stop_on_signals(worker.request_stop):
                    summary = worker.run_once()
            else:
                summary = worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
        return CommandReport(lines=[_summary_line(summary)], exit_code=_summary_exit_code(summary))


class BackupCliController:
    """Checkpoints, emergency backups and retention."""

    def checkpoint(self, command: BackupCheckpointCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            checkpoint = runtime.backups.checkpoint(command.task_id, command.reason)
        return [f"Checkpoint written: {checkpoint.path}"]

    def list_checkpoints(self, command: BackupListCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            checkpoints = runtime.backups.list_checkpoints(command.task_id)
        lines = [f"Checkpoints: {len(checkpoints)}"]
        for checkpoint in checkpoints:
            lines.append(
                f"  {to_iso(checkpoint.created_at)} {checkpoint.task_id} "
                f"reason={checkpoint.reason} status={checkpoint.task_state.get('status', '-')}",
            )
        return lines

    def restore(self, command: BackupCheckpointCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            restored = runtime.store.restore_task(runtime.backups.restore_latest(command.task_id))
        return [
            f"Task restored from latest checkpoint: {restored.task_id} "
            f"status={restored.status.value} completed_steps={len(restored.completed_phases())}",
        ]

    def emergency(self, command: BackupEmergencyCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            active = [
                task.task_id
                for task in runtime.store.list_tasks(TaskFilter(statuses=(TaskStatus.IN_PROGRESS,)))
            ]
            path = runtime.backups.emergency_backup(command.reason, active_task_ids=active)
        return [f"Emergency backup written: {path}"]

    def cleanup(self, command: BackupCleanupCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            removed = runtime.backups.cleanup(
                retention_hours=command.retention_hours,
                max_per_task=command.max_per_task,
            )
        return [
            f"Removed {removed['checkpoints']} checkpoint(s) and "
            f"{removed['emergency_backups']} emergency backup(s)",
        ]

    def stats(self, command: QueueStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            stats = runtime.backups.statistics()
        return [f"{key}: {value}" for key, value in stats.items()]


class UsageCliController:
    """Usage-limit pattern checks and history."""

    def check(self, command: UsageCheckCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            match = runtime.usage.detect(command.text)
            if match is None:
                return ["No usage limit detected"]
            if command.record and command.context_id:
                occurrence = runtime.usage.register(match, context_id=command.context_id)
                wait_seconds = occurrence.computed_wait_seconds
            else:
                history = runtime.usage.history(command.context_id) if command.context_id else []
                previous = len(history)
                wait_seconds = runtime.usage.compute_wait_seconds(
                    match,
                    previous_occurrences=previous,
                )
        return [
            f"Usage limit detected: kind={match.kind.value} pattern={match.matched_pattern!r}",
            f"Wait: {wait_seconds}s",
        ]

    def history(self, command: UsageHistoryCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            occurrences = runtime.usage.history(command.context_id)
        lines = [f"Usage-limit occurrences: {len(occurrences)}"]
        for item in occurrences:
            lines.append(
                f"  {to_iso(item.detected_at)} {item.context_id} kind={item.kind} "
                f"wait={item.computed_wait_seconds}s pattern={item.matched_pattern!r}",
            )
        return lines

    def stats(self, command: QueueStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            stats = runtime.usage.statistics()
            marker = runtime.usage.pause_marker()
        lines = [f"{key}: {value}" for key, value in stats.items()]
        if marker is not None:
            resume_at = marker_resume_at(marker)
            lines.append(f"paused_until: {to_iso(resume_at) if resume_at else '-'}")
        return lines


class ErrorsCliController:
    """Error classification checks and the recovery decision history."""

    def classify(self, command: ErrorsClassifyCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        classifier = ErrorClassifier(
            settings.recovery,
            escalate_timeouts=settings.timeouts.auto_escalate,
        )
        context = {"exit_code": command.exit_code} if command.exit_code is not None else None
        classification = classify_error(command.message, context)
        strategy = classifier.strategy(
            classification.severity,
            command.retry_count,
            command.max_retries,
            timed_out=command.timed_out,
        )
        return [
            f"Severity: {classification.severity.value}",
            f"Matched: {classification.matched_rule} {classification.matched_pattern or '-'}",
            f"Strategy: {strategy.value}",
        ]

    def history(self, command: ErrorsHistoryCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            entries = runtime.classifier.history(
                task_id=command.task_id,
                hours=command.hours,
                limit=command.limit,
            )
        lines = [f"Error decisions: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry['created_at']} {entry['task_id']} severity={entry.get('severity')} "
                f"strategy={entry.get('strategy')} message={entry.get('message', '')!r}",
            )
        return lines

    def stats(self, command: ErrorsHistoryCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        with _runtime(settings) as runtime:
            stats = runtime.classifier.statistics(hours=command.hours)
        return [f"{key}: {value}" for key, value in stats.items()]


def _run_report(run: Callable[[], WorkflowRunResult]) -> CommandReport:
    try:
        result = run()
    except UsageLimitDetected as limit:
        return CommandReport(
            lines=[
                f"Paused on usage limit: {limit}",
                "Resume later with `auto-resume workflow resume`.",
            ],
            exit_code=EXIT_USAGE_LIMIT,
        )
    lines = [
        f"Workflow {result.task_id}: {result.outcome.value} "
        f"({result.steps_completed}/{result.steps_total} steps)",
    ]
    if result.message:
        lines.append(f"  {result.message}")
    if result.report_path:
        lines.append(f"  Diagnostic report: {result.report_path}")
    success = result.outcome in (RunOutcome.COMPLETED, RunOutcome.PAUSED)
    return CommandReport(lines=lines, exit_code=EXIT_OK if success else EXIT_FAILURE)


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} timeouts={summary.timeouts} paused={summary.paused} "
        f"interrupted={summary.interrupted} usage_limit_pauses={summary.usage_limit_pauses} "
        f"idle_polls={summary.idle_polls}"
    )


def _summary_exit_code(summary: WorkerRunSummary) -> int:
    if summary.usage_limit_pauses:
        return EXIT_USAGE_LIMIT
    if summary.failed or summary.timeouts or summary.interrupted:
        return EXIT_FAILURE
    return EXIT_OK


def _task_line(task: Task) -> str:
    line = (
        f"  {task.task_id} type={task.task_type.value} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
        f"created={to_iso(task.created_at)}"
    )
    if task.steps:
        line += f" steps={len(task.completed_phases())}/{len(task.steps)}"
    if task.is_held:
        line += " held"
    return f"{line} {task.description}" if task.description else line


def _parse_status(value: str) -> TaskStatus:
    normalized = value.strip().lower().replace("-", "_")
    try:
        return TaskStatus(normalized)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _settings(queue_dir: Path | None) -> Settings:
    settings = Settings.from_env(queue_dir)
    settings.validate()
    return settings


@contextmanager
def _runtime(settings: Settings) -> Iterator[EngineRuntime]:
    settings.queue_dir.mkdir(parents=True, exist_ok=True)
    journal = EngineJournal(settings.journal_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    journal.init_schema()
    store = QueueStore(settings, journal=journal)
    backups = BackupManager(settings, store=store)
    store.attach_checkpointer(backups)
    runtime = EngineRuntime(
        settings=settings,
        journal=journal,
        store=store,
        backups=backups,
        scheduler=TaskScheduler(store),
        classifier=ErrorClassifier(
            settings.recovery,
            journal=journal,
            reports_dir=settings.reports_dir,
            escalate_timeouts=settings.timeouts.auto_escalate,
        ),
        usage=UsageLimitRecovery(
            settings.usage_limit,
            journal=journal,
            marker_path=settings.pause_marker_path,
        ),
        monitor=TimeoutMonitor(settings.timeouts, store=store, backups=backups),
    )
    try:
        yield runtime
    finally:
        runtime.monitor.stop_all()
        journal.close()

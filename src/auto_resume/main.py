"""CLI entrypoint for auto-resume."""

import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import rich_click as click

from auto_resume import __version__
from auto_resume.config import TASK_TYPES
from auto_resume.engine.controllers import (
    EXIT_USAGE_LIMIT,
    BackupCheckpointCommand,
    BackupCleanupCommand,
    BackupCliController,
    BackupEmergencyCommand,
    BackupListCommand,
    CommandReport,
    ErrorsClassifyCommand,
    ErrorsCliController,
    ErrorsHistoryCommand,
    QueueAddCommand,
    QueueCleanupCommand,
    QueueClearCommand,
    QueueCliController,
    QueueListCommand,
    QueuePauseCommand,
    QueueStatusCommand,
    QueueTaskCommand,
    UsageCheckCommand,
    UsageCliController,
    UsageHistoryCommand,
    WorkerCliController,
    WorkerCommand,
    WorkflowCliController,
    WorkflowCreateCommand,
    WorkflowListCommand,
    WorkflowMutateCommand,
    WorkflowRunCommand,
)
from auto_resume.engine.errors import AutoResumeError
from auto_resume.engine.models import TaskStatus
from auto_resume.engine.workflow import WORKFLOW_TYPES

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
WORKFLOW_CONTROLLER = WorkflowCliController()
WORKER_CONTROLLER = WorkerCliController()
BACKUP_CONTROLLER = BackupCliController()
USAGE_CONTROLLER = UsageCliController()
ERRORS_CONTROLLER = ErrorsCliController()

STATUS_CHOICES = [status.value for status in TaskStatus]
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

T = TypeVar("T")

queue_dir_option = click.option(
    "--queue-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Queue directory. Defaults to AUTO_RESUME_QUEUE_DIR or .auto_resume.",
)


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume")
@click.option(
    "--config",
    "config_file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="KEY=VALUE file with AUTO_RESUME_* defaults. Environment variables take precedence.",
)
def auto_resume(config_file: Path | None) -> None:
    """Task queue and recovery engine for unattended AI coding CLI sessions."""

    if config_file is not None:
        # Controllers build Settings.from_env per command and read the file from here.
        os.environ["AUTO_RESUME_CONFIG"] = str(config_file)


@auto_resume.group()
def queue() -> None:
    """Queue administration commands."""


@queue.command("add")
@queue_dir_option
@click.argument("task_type", type=click.Choice(list(TASK_TYPES), case_sensitive=False))
@click.argument("priority", type=int)
@click.argument("description")
@click.option(
    "--command",
    "task_command",
    default=None,
    help="Command sent to the session. Defaults to the description.",
)
@click.option("--id", "task_id", default=None, help="Explicit task id ([A-Za-z0-9_-]+).")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry limit.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Task timeout in seconds. Defaults to the per-type timeout.",
)
def queue_add(  # noqa: PLR0913
    queue_dir: Path | None,
    task_type: str,
    priority: int,
    description: str,
    task_command: str | None,
    task_id: str | None,
    max_retries: int | None,
    timeout_seconds: int | None,
) -> None:
    """Enqueue a task. Higher priority runs first; ties run in creation order."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.add(
                QueueAddCommand(
                    queue_dir=queue_dir,
                    task_type=task_type.lower(),
                    priority=priority,
                    description=description,
                    command=task_command,
                    task_id=task_id,
                    max_retries=max_retries,
                    timeout_seconds=timeout_seconds,
                ),
            ),
        ),
    )


@queue.command("list")
@queue_dir_option
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    help="Status filter. Can be repeated.",
)
@click.option(
    "--type",
    "task_types",
    multiple=True,
    type=click.Choice(list(TASK_TYPES), case_sensitive=False),
    help="Task type filter. Can be repeated.",
)
@click.option("--min-priority", type=int, default=None, help="Lowest priority to include.")
@click.option("--max-priority", type=int, default=None, help="Highest priority to include.")
@click.option("--search", "text", default=None, help="Case-insensitive text search.")
@click.option(
    "--created-after",
    type=click.DateTime(),
    default=None,
    help="Only tasks created at or after this time (UTC).",
)
@click.option(
    "--created-before",
    type=click.DateTime(),
    default=None,
    help="Only tasks created at or before this time (UTC).",
)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max tasks to print.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def queue_list(  # noqa: PLR0913
    queue_dir: Path | None,
    statuses: tuple[str, ...],
    task_types: tuple[str, ...],
    min_priority: int | None,
    max_priority: int | None,
    text: str | None,
    created_after: datetime | None,
    created_before: datetime | None,
    limit: int | None,
    output_format: str,
) -> None:
    """List tasks in scheduling-independent storage order."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.list_tasks(
                QueueListCommand(
                    queue_dir=queue_dir,
                    statuses=statuses,
                    task_types=task_types,
                    min_priority=min_priority,
                    max_priority=max_priority,
                    text=text,
                    created_after=_as_utc(created_after),
                    created_before=_as_utc(created_before),
                    limit=limit,
                    output_format=output_format.lower(),
                ),
            ),
        ),
    )


@queue.command("show")
@queue_dir_option
@click.argument("task_id")
def queue_show(queue_dir: Path | None, task_id: str) -> None:
    """Show one task with its steps and audit trail."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.show(QueueTaskCommand(queue_dir=queue_dir, task_id=task_id)),
        ),
    )


@queue.command("remove")
@queue_dir_option
@click.argument("task_id")
def queue_remove(queue_dir: Path | None, task_id: str) -> None:
    """Remove a task from the queue."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.remove(QueueTaskCommand(queue_dir=queue_dir, task_id=task_id)),
        ),
    )


@queue.command("retry")
@queue_dir_option
@click.argument("task_id")
def queue_retry(queue_dir: Path | None, task_id: str) -> None:
    """Re-queue a failed, timed-out or errored task."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.retry(QueueTaskCommand(queue_dir=queue_dir, task_id=task_id)),
        ),
    )


@queue.command("pause")
@queue_dir_option
@click.option("--reason", default=None, help="Reason shown by status.")
def queue_pause(queue_dir: Path | None, reason: str | None) -> None:
    """Stop the scheduler from claiming new tasks."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.pause(QueuePauseCommand(queue_dir=queue_dir, reason=reason)),
        ),
    )


@queue.command("resume")
@queue_dir_option
def queue_resume(queue_dir: Path | None) -> None:
    """Let the scheduler claim tasks again."""

    _emit_lines(
        _guarded(lambda: QUEUE_CONTROLLER.resume(QueueStatusCommand(queue_dir=queue_dir))),
    )


@queue.command("clear")
@queue_dir_option
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    help="Only clear tasks in this status. Can be repeated.",
)
def queue_clear(queue_dir: Path | None, statuses: tuple[str, ...]) -> None:
    """Remove all tasks, or only those in the given statuses."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.clear(
                QueueClearCommand(queue_dir=queue_dir, statuses=statuses),
            ),
        ),
    )


@queue.command("cleanup")
@queue_dir_option
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention for terminal tasks. Defaults to AUTO_RESUME_TASK_AUTO_CLEANUP_DAYS.",
)
def queue_cleanup(queue_dir: Path | None, older_than_days: int | None) -> None:
    """Drop old terminal tasks and expired backups."""

    _emit_lines(
        _guarded(
            lambda: QUEUE_CONTROLLER.cleanup(
                QueueCleanupCommand(queue_dir=queue_dir, older_than_days=older_than_days),
            ),
        ),
    )


@queue.command("status")
@queue_dir_option
def queue_status(queue_dir: Path | None) -> None:
    """Show queue counters, the next task, worker and usage-limit state."""

    _emit_lines(
        _guarded(lambda: QUEUE_CONTROLLER.status(QueueStatusCommand(queue_dir=queue_dir))),
    )


@auto_resume.group()
def workflow() -> None:
    """Multi-step workflow commands."""


@workflow.command("create")
@queue_dir_option
@click.argument("workflow_type", type=click.Choice(list(WORKFLOW_TYPES), case_sensitive=False))
@click.argument("config")
@click.option("--priority", type=int, default=None, help="Task priority.")
@click.option("--id", "task_id", default=None, help="Explicit task id ([A-Za-z0-9_-]+).")
@click.option("--description", default=None, help="Task description.")
def workflow_create(  # noqa: PLR0913
    queue_dir: Path | None,
    workflow_type: str,
    config: str,
    priority: int | None,
    task_id: str | None,
    description: str | None,
) -> None:
    """Create a workflow.

    CONFIG is a JSON object, or just the issue number for `issue-merge`.
    Custom workflows take `{"steps": [{"phase": ..., "command": ..., "timeout": ...}]}`.
    """

    _emit_lines(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.create(
                WorkflowCreateCommand(
                    queue_dir=queue_dir,
                    workflow_type=workflow_type.lower(),
                    config=config,
                    priority=priority,
                    task_id=task_id,
                    description=description,
                ),
            ),
        ),
    )


@workflow.command("execute")
@queue_dir_option
@click.argument("task_id")
@click.option(
    "--wait/--no-wait",
    "wait_on_usage_limit",
    default=True,
    show_default=True,
    help="Wait out usage limits in process, or exit with code 75.",
)
def workflow_execute(queue_dir: Path | None, task_id: str, wait_on_usage_limit: bool) -> None:
    """Run a workflow in the foreground until it completes, fails or pauses."""

    _emit_report(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.execute(
                WorkflowRunCommand(
                    queue_dir=queue_dir,
                    task_id=task_id,
                    wait_on_usage_limit=wait_on_usage_limit,
                ),
            ),
        ),
    )


@workflow.command("resume")
@queue_dir_option
@click.argument("task_id")
@click.option(
    "--from-step",
    default=None,
    help="Restart at this step (zero-based index or phase name); earlier steps count as done.",
)
@click.option(
    "--wait/--no-wait",
    "wait_on_usage_limit",
    default=True,
    show_default=True,
    help="Wait out usage limits in process, or exit with code 75.",
)
def workflow_resume(
    queue_dir: Path | None,
    task_id: str,
    from_step: str | None,
    wait_on_usage_limit: bool,
) -> None:
    """Resume a workflow from its latest checkpoint without re-running completed steps."""

    _emit_report(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.resume(
                WorkflowRunCommand(
                    queue_dir=queue_dir,
                    task_id=task_id,
                    from_step=from_step,
                    wait_on_usage_limit=wait_on_usage_limit,
                ),
            ),
        ),
    )


@workflow.command("list")
@queue_dir_option
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    help="Status filter. Can be repeated.",
)
def workflow_list(queue_dir: Path | None, statuses: tuple[str, ...]) -> None:
    """List workflows with their step progress."""

    _emit_lines(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.list_workflows(
                WorkflowListCommand(queue_dir=queue_dir, statuses=statuses),
            ),
        ),
    )


@workflow.command("status")
@queue_dir_option
@click.argument("task_id")
def workflow_status(queue_dir: Path | None, task_id: str) -> None:
    """Show per-step progress of one workflow."""

    _emit_lines(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.status(
                WorkflowMutateCommand(queue_dir=queue_dir, task_id=task_id),
            ),
        ),
    )


@workflow.command("pause")
@queue_dir_option
@click.argument("task_id")
@click.option("--reason", default=None, help="Reason recorded on the task.")
def workflow_pause(queue_dir: Path | None, task_id: str, reason: str | None) -> None:
    """Hold a workflow; a running one stops at the next step boundary."""

    _emit_lines(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.pause(
                WorkflowMutateCommand(queue_dir=queue_dir, task_id=task_id, reason=reason),
            ),
        ),
    )


@workflow.command("cancel")
@queue_dir_option
@click.argument("task_id")
@click.option("--reason", default=None, help="Reason recorded on the task.")
def workflow_cancel(queue_dir: Path | None, task_id: str, reason: str | None) -> None:
    """Cancel a pending or running workflow."""

    _emit_lines(
        _guarded(
            lambda: WORKFLOW_CONTROLLER.cancel(
                WorkflowMutateCommand(queue_dir=queue_dir, task_id=task_id, reason=reason),
            ),
        ),
    )


@auto_resume.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@queue_dir_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process a single task or keep polling the queue.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for claimed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls.",
)
@click.option(
    "--wait/--no-wait",
    "wait_on_usage_limit",
    default=True,
    show_default=True,
    help="Wait out usage limits in process, or requeue the task and exit with code 75.",
)
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
def worker_run(  # noqa: PLR0913
    queue_dir: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    wait_on_usage_limit: bool,
    verbose: bool,
) -> None:
    """Run the queue worker in the foreground. SIGINT/SIGTERM checkpoint and requeue."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    _emit_report(
        _guarded(
            lambda: WORKER_CONTROLLER.run(
                WorkerCommand(
                    queue_dir=queue_dir,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                    wait_on_usage_limit=wait_on_usage_limit,
                ),
            ),
        ),
    )


@worker.command("once")
@queue_dir_option
@click.option(
    "--wait/--no-wait",
    "wait_on_usage_limit",
    default=True,
    show_default=True,
    help="Wait out usage limits in process, or requeue the task and exit with code 75.",
)
def worker_once(queue_dir: Path | None, wait_on_usage_limit: bool) -> None:
    """Claim and run at most one task."""

    _emit_report(
        _guarded(
            lambda: WORKER_CONTROLLER.run(
                WorkerCommand(
                    queue_dir=queue_dir,
                    once=True,
                    wait_on_usage_limit=wait_on_usage_limit,
                ),
            ),
        ),
    )


@auto_resume.group()
def backup() -> None:
    """Checkpoint and backup commands."""


@backup.command("checkpoint")
@queue_dir_option
@click.argument("task_id")
@click.option("--reason", default="manual", show_default=True, help="Checkpoint reason.")
def backup_checkpoint(queue_dir: Path | None, task_id: str, reason: str) -> None:
    """Write a checkpoint for a task now."""

    _emit_lines(
        _guarded(
            lambda: BACKUP_CONTROLLER.checkpoint(
                BackupCheckpointCommand(queue_dir=queue_dir, task_id=task_id, reason=reason),
            ),
        ),
    )


@backup.command("list")
@queue_dir_option
@click.option("--task-id", default=None, help="Only checkpoints of this task.")
def backup_list(queue_dir: Path | None, task_id: str | None) -> None:
    """List checkpoints, newest first."""

    _emit_lines(
        _guarded(
            lambda: BACKUP_CONTROLLER.list_checkpoints(
                BackupListCommand(queue_dir=queue_dir, task_id=task_id),
            ),
        ),
    )


@backup.command("restore")
@queue_dir_option
@click.argument("task_id")
def backup_restore(queue_dir: Path | None, task_id: str) -> None:
    """Replace a task's record with its latest checkpoint."""

    _emit_lines(
        _guarded(
            lambda: BACKUP_CONTROLLER.restore(
                BackupCheckpointCommand(queue_dir=queue_dir, task_id=task_id),
            ),
        ),
    )


@backup.command("emergency")
@queue_dir_option
@click.option("--reason", default="manual", show_default=True, help="Backup reason.")
def backup_emergency(queue_dir: Path | None, reason: str) -> None:
    """Write a full emergency backup of the queue and configuration."""

    _emit_lines(
        _guarded(
            lambda: BACKUP_CONTROLLER.emergency(
                BackupEmergencyCommand(queue_dir=queue_dir, reason=reason),
            ),
        ),
    )


@backup.command("cleanup")
@queue_dir_option
@click.option(
    "--retention-hours",
    type=click.IntRange(min=1),
    default=None,
    help="Age limit. Defaults to AUTO_RESUME_BACKUP_RETENTION_HOURS.",
)
@click.option(
    "--max-per-task",
    type=click.IntRange(min=1),
    default=None,
    help="Checkpoints kept per task. Defaults to AUTO_RESUME_BACKUP_MAX_CHECKPOINTS_PER_TASK.",
)
def backup_cleanup(
    queue_dir: Path | None,
    retention_hours: int | None,
    max_per_task: int | None,
) -> None:
    """Apply checkpoint and backup retention."""

    _emit_lines(
        _guarded(
            lambda: BACKUP_CONTROLLER.cleanup(
                BackupCleanupCommand(
                    queue_dir=queue_dir,
                    retention_hours=retention_hours,
                    max_per_task=max_per_task,
                ),
            ),
        ),
    )


@backup.command("stats")
@queue_dir_option
def backup_stats(queue_dir: Path | None) -> None:
    """Show checkpoint and backup counters."""

    _emit_lines(_guarded(lambda: BACKUP_CONTROLLER.stats(QueueStatusCommand(queue_dir=queue_dir))))


@auto_resume.group()
def usage() -> None:
    """Usage-limit detection commands."""


@usage.command("check")
@queue_dir_option
@click.argument("text")
@click.option("--context", "context_id", default=None, help="Context used for escalation.")
@click.option(
    "--record",
    is_flag=True,
    default=False,
    help="Append the occurrence to the context history (requires --context).",
)
def usage_check(
    queue_dir: Path | None,
    text: str,
    context_id: str | None,
    record: bool,
) -> None:
    """Test TEXT against the usage-limit patterns and print the computed wait.

    Pass `-` to read the text from stdin.
    """

    if text == "-":
        text = click.get_text_stream("stdin").read()
    _emit_lines(
        _guarded(
            lambda: USAGE_CONTROLLER.check(
                UsageCheckCommand(
                    queue_dir=queue_dir,
                    text=text,
                    context_id=context_id,
                    record=record,
                ),
            ),
        ),
    )


@usage.command("history")
@queue_dir_option
@click.option("--context", "context_id", default=None, help="Only this context.")
def usage_history(queue_dir: Path | None, context_id: str | None) -> None:
    """List usage-limit occurrences within the retention window."""

    _emit_lines(
        _guarded(
            lambda: USAGE_CONTROLLER.history(
                UsageHistoryCommand(queue_dir=queue_dir, context_id=context_id),
            ),
        ),
    )


@usage.command("stats")
@queue_dir_option
def usage_stats(queue_dir: Path | None) -> None:
    """Show usage-limit counters and any pending resume time."""

    _emit_lines(_guarded(lambda: USAGE_CONTROLLER.stats(QueueStatusCommand(queue_dir=queue_dir))))


@auto_resume.group()
def errors() -> None:
    """Error classification commands."""


@errors.command("classify")
@queue_dir_option
@click.argument("message")
@click.option("--retry-count", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--max-retries", type=click.IntRange(min=0), default=None)
@click.option("--exit-code", type=int, default=None, help="Exit code of the failed command.")
@click.option("--timed-out", is_flag=True, default=False, help="The failure was a timeout.")
def errors_classify(  # noqa: PLR0913
    queue_dir: Path | None,
    message: str,
    retry_count: int,
    max_retries: int | None,
    exit_code: int | None,
    timed_out: bool,
) -> None:
    """Classify MESSAGE and print the recovery strategy that would be used."""

    _emit_lines(
        _guarded(
            lambda: ERRORS_CONTROLLER.classify(
                ErrorsClassifyCommand(
                    queue_dir=queue_dir,
                    message=message,
                    retry_count=retry_count,
                    max_retries=max_retries,
                    exit_code=exit_code,
                    timed_out=timed_out,
                ),
            ),
        ),
    )


@errors.command("history")
@queue_dir_option
@click.option("--task-id", default=None, help="Only this task.")
@click.option("--hours", type=click.IntRange(min=1), default=24, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def errors_history(queue_dir: Path | None, task_id: str | None, hours: int, limit: int) -> None:
    """List journaled error decisions, newest first."""

    _emit_lines(
        _guarded(
            lambda: ERRORS_CONTROLLER.history(
                ErrorsHistoryCommand(
                    queue_dir=queue_dir,
                    task_id=task_id,
                    hours=hours,
                    limit=limit,
                ),
            ),
        ),
    )


@errors.command("stats")
@queue_dir_option
@click.option("--hours", type=click.IntRange(min=1), default=24, show_default=True)
def errors_stats(queue_dir: Path | None, hours: int) -> None:
    """Show error counts by severity and strategy."""

    _emit_lines(
        _guarded(
            lambda: ERRORS_CONTROLLER.stats(ErrorsHistoryCommand(queue_dir=queue_dir, hours=hours)),
        ),
    )


auto_resume.add_command(queue_add, "add")
auto_resume.add_command(queue_list, "list")
auto_resume.add_command(queue_remove, "remove")
auto_resume.add_command(queue_pause, "pause")
auto_resume.add_command(queue_resume, "resume")
auto_resume.add_command(queue_clear, "clear")
auto_resume.add_command(queue_status, "status")


def main() -> None:
    auto_resume()


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except (AutoResumeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _emit_report(report: CommandReport) -> None:
    _emit_lines(report.lines)
    if report.exit_code == EXIT_USAGE_LIMIT:
        raise SystemExit(EXIT_USAGE_LIMIT)
    if report.exit_code:
        raise click.ClickException("Run did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    main()

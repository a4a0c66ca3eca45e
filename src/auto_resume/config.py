"""Runtime configuration for the task queue and recovery engine."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "AUTO_RESUME_"
TASK_TYPES: tuple[str, ...] = ("custom", "github_issue", "github_pr", "workflow")
WORKFLOW_PHASES: tuple[str, ...] = ("develop", "clear", "review", "merge", "generic")
LOCK_BACKENDS: tuple[str, ...] = ("auto", "fcntl", "mkdir")
SESSION_BACKENDS: tuple[str, ...] = ("tmux", "process")

_DEFAULT_TYPE_TIMEOUTS = {
    "custom": 3600,
    "github_issue": 3600,
    "github_pr": 3600,
    "workflow": 7200,
}
_DEFAULT_PHASE_TIMEOUTS = {
    "develop": 600,
    "clear": 30,
    "review": 480,
    "merge": 300,
    "generic": 180,
}


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Queue admission and task defaults."""

    max_queue_size: int = 0
    default_timeout_seconds: int = 3600
    type_timeouts: dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_TYPE_TIMEOUTS))
    max_retries: int = 3
    auto_cleanup_days: int = 7
    completion_marker: str = "###TASK_COMPLETE###"
    concurrency: int = 1
    poll_interval_seconds: float = 5.0

    def timeout_for(self, task_type: str) -> int:
        """Effective timeout for a task type, falling back to the default."""

        return self.type_timeouts.get(task_type, self.default_timeout_seconds)


@dataclass(frozen=True, slots=True)
class LockSettings:
    """Cross-process queue lock settings."""

    timeout_seconds: float = 30.0
    stale_after_seconds: int = 300
    backend: str = "auto"


@dataclass(frozen=True, slots=True)
class TimeoutSettings:
    """Timeout watchdog settings."""

    warning_threshold_seconds: int = 300
    auto_escalate: bool = True


@dataclass(frozen=True, slots=True)
class UsageLimitSettings:
    """Usage-limit detection and wait policy."""

    cooldown_seconds: int = 300
    backoff_factor: float = 1.5
    max_wait_seconds: int = 1800
    history_retention_hours: int = 168
    clock_buffer_seconds: int = 30
    min_wait_seconds: int = 60
    progress_interval_seconds: float = 60.0


@dataclass(frozen=True, slots=True)
class RecoverySettings:
    """Error classification and recovery policy."""

    enabled: bool = True
    auto_recovery: bool = True
    max_retries: int = 3


@dataclass(frozen=True, slots=True)
class BackupSettings:
    """Checkpoint and backup retention."""

    retention_hours: int = 168
    max_checkpoints_per_task: int = 5
    checkpoint_interval_seconds: int = 1800
    queue_backups_kept: int = 10


@dataclass(frozen=True, slots=True)
class WorkflowSettings:
    """Workflow step pacing and retry policy."""

    step_delay_seconds: float = 5.0
    max_retries: int = 5
    phase_timeouts: dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_PHASE_TIMEOUTS))
    retry_base_seconds: int = 5
    retry_max_seconds: int = 300
    retry_jitter_seconds: int = 3
    poll_interval_seconds: float = 2.0
    output_lines: int = 200

    def timeout_for(self, phase: str) -> int:
        """Step timeout for a phase, falling back to the generic phase."""

        return self.phase_timeouts.get(phase, self.phase_timeouts.get("generic", 180))


@dataclass(frozen=True, slots=True)
class SessionSettings:
    """Session executor transport."""

    backend: str = "tmux"
    cli_command: str = "claude --continue"
    command_template: str = "claude -p {command}"
    session_prefix: str = "auto-resume"
    project_dir: Path = field(default_factory=Path.cwd)


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by engine component.

    Built once per process and handed to component constructors; components never read
    the environment themselves.
    """

    queue_dir: Path = Path(".auto_resume")
    queue: QueueSettings = field(default_factory=QueueSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    usage_limit: UsageLimitSettings = field(default_factory=UsageLimitSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
    workflow: WorkflowSettings = field(default_factory=WorkflowSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    sqlite_busy_timeout_ms: int = 5000

    @property
    def queue_file(self) -> Path:
        return self.queue_dir / "task-queue.json"

    @property
    def journal_path(self) -> Path:
        return self.queue_dir / "journal.db"

    @property
    def checkpoints_dir(self) -> Path:
        return self.queue_dir / "checkpoints"

    @property
    def backups_dir(self) -> Path:
        return self.queue_dir / "backups"

    @property
    def reports_dir(self) -> Path:
        return self.queue_dir / "reports"

    @property
    def pid_file(self) -> Path:
        return self.queue_dir / "worker.pid"

    @property
    def sessions_dir(self) -> Path:
        return self.queue_dir / "sessions"

    @property
    def pause_marker_path(self) -> Path:
        return self.queue_dir / "usage-limit-pause.json"

    @classmethod
    def from_env(
        cls,
        queue_dir: Path | None = None,
        *,
        config_file: Path | None = None,
    ) -> Settings:
        """Load settings from a KEY=VALUE config file overlaid by environment variables."""

        env = _merged_environment(config_file)
        return cls(
            queue_dir=queue_dir or Path(env.get("AUTO_RESUME_QUEUE_DIR", ".auto_resume")),
            queue=QueueSettings(
                max_queue_size=int(env.get("AUTO_RESUME_QUEUE_MAX_SIZE", "0")),
                default_timeout_seconds=int(env.get("AUTO_RESUME_TASK_DEFAULT_TIMEOUT", "3600")),
                type_timeouts={
                    task_type: int(
                        env.get(
                            f"AUTO_RESUME_TIMEOUT_{task_type.upper()}",
                            str(_DEFAULT_TYPE_TIMEOUTS[task_type]),
                        ),
                    )
                    for task_type in TASK_TYPES
                },
                max_retries=int(env.get("AUTO_RESUME_TASK_MAX_RETRIES", "3")),
                auto_cleanup_days=int(env.get("AUTO_RESUME_TASK_AUTO_CLEANUP_DAYS", "7")),
                completion_marker=env.get(
                    "AUTO_RESUME_TASK_COMPLETION_PATTERN",
                    "###TASK_COMPLETE###",
                ),
                concurrency=int(env.get("AUTO_RESUME_CONCURRENCY", "1")),
                poll_interval_seconds=float(env.get("AUTO_RESUME_POLL_INTERVAL", "5.0")),
            ),
            lock=LockSettings(
                timeout_seconds=float(env.get("AUTO_RESUME_LOCK_TIMEOUT", "30")),
                stale_after_seconds=int(env.get("AUTO_RESUME_LOCK_STALE_AFTER", "300")),
                backend=env.get("AUTO_RESUME_LOCK_BACKEND", "auto").strip().lower(),
            ),
            timeouts=TimeoutSettings(
                warning_threshold_seconds=int(
                    env.get("AUTO_RESUME_TIMEOUT_WARNING_THRESHOLD", "300"),
                ),
                auto_escalate=_env_bool(env, "AUTO_RESUME_TIMEOUT_AUTO_ESCALATE", default=True),
            ),
            usage_limit=UsageLimitSettings(
                cooldown_seconds=int(env.get("AUTO_RESUME_USAGE_LIMIT_COOLDOWN", "300")),
                backoff_factor=float(env.get("AUTO_RESUME_USAGE_LIMIT_BACKOFF_FACTOR", "1.5")),
                max_wait_seconds=int(env.get("AUTO_RESUME_USAGE_LIMIT_MAX_WAIT", "1800")),
                history_retention_hours=int(
                    env.get("AUTO_RESUME_USAGE_LIMIT_HISTORY_RETENTION_HOURS", "168"),
                ),
                progress_interval_seconds=float(
                    env.get("AUTO_RESUME_USAGE_LIMIT_PROGRESS_INTERVAL", "60"),
                ),
            ),
            recovery=RecoverySettings(
                enabled=_env_bool(env, "AUTO_RESUME_ERROR_HANDLING_ENABLED", default=True),
                auto_recovery=_env_bool(env, "AUTO_RESUME_ERROR_AUTO_RECOVERY", default=True),
                max_retries=int(env.get("AUTO_RESUME_ERROR_MAX_RETRIES", "3")),
            ),
            backup=BackupSettings(
                retention_hours=int(env.get("AUTO_RESUME_BACKUP_RETENTION_HOURS", "168")),
                max_checkpoints_per_task=int(
                    env.get("AUTO_RESUME_BACKUP_MAX_CHECKPOINTS_PER_TASK", "5"),
                ),
                checkpoint_interval_seconds=int(
                    env.get("AUTO_RESUME_BACKUP_CHECKPOINT_FREQUENCY", "1800"),
                ),
                queue_backups_kept=int(env.get("AUTO_RESUME_BACKUP_QUEUE_COPIES", "10")),
            ),
            workflow=WorkflowSettings(
                step_delay_seconds=float(env.get("AUTO_RESUME_WORKFLOW_STEP_DELAY", "5")),
                max_retries=int(env.get("AUTO_RESUME_WORKFLOW_MAX_RETRIES", "5")),
                phase_timeouts={
                    phase: int(
                        env.get(
                            f"AUTO_RESUME_WORKFLOW_TIMEOUT_{phase.upper()}",
                            str(_DEFAULT_PHASE_TIMEOUTS[phase]),
                        ),
                    )
                    for phase in WORKFLOW_PHASES
                },
                retry_base_seconds=int(env.get("AUTO_RESUME_WORKFLOW_RETRY_BASE", "5")),
                retry_max_seconds=int(env.get("AUTO_RESUME_TASK_RETRY_DELAY", "300")),
                poll_interval_seconds=float(env.get("AUTO_RESUME_WORKFLOW_POLL_INTERVAL", "2")),
            ),
            session=SessionSettings(
                backend=env.get("AUTO_RESUME_SESSION_BACKEND", "tmux").strip().lower(),
                cli_command=env.get("AUTO_RESUME_CLI_COMMAND", "claude --continue"),
                command_template=env.get("AUTO_RESUME_PROCESS_COMMAND", "claude -p {command}"),
                session_prefix=env.get("AUTO_RESUME_SESSION_PREFIX", "auto-resume"),
                project_dir=Path(env.get("AUTO_RESUME_PROJECT_DIR") or Path.cwd()),
            ),
            sqlite_busy_timeout_ms=int(env.get("AUTO_RESUME_SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error for out-of-range values."""

        if self.queue.max_queue_size < 0:
            raise ValueError("AUTO_RESUME_QUEUE_MAX_SIZE must be >= 0 (0 means unlimited).")
        if self.queue.default_timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_TASK_DEFAULT_TIMEOUT must be > 0.")
        for task_type, seconds in self.queue.type_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"AUTO_RESUME_TIMEOUT_{task_type.upper()} must be > 0.")
        if self.queue.max_retries < 0:
            raise ValueError("AUTO_RESUME_TASK_MAX_RETRIES must be >= 0.")
        if self.queue.concurrency < 1:
            raise ValueError("AUTO_RESUME_CONCURRENCY must be >= 1.")
        if self.lock.timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_TIMEOUT must be > 0.")
        if self.lock.stale_after_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_STALE_AFTER must be > 0.")
        if self.lock.backend not in LOCK_BACKENDS:
            raise ValueError(
                f"AUTO_RESUME_LOCK_BACKEND must be one of {', '.join(LOCK_BACKENDS)}.",
            )
        if self.timeouts.warning_threshold_seconds < 0:
            raise ValueError("AUTO_RESUME_TIMEOUT_WARNING_THRESHOLD must be >= 0.")
        if self.usage_limit.cooldown_seconds <= 0:
            raise ValueError("AUTO_RESUME_USAGE_LIMIT_COOLDOWN must be > 0.")
        if self.usage_limit.backoff_factor < 1.0:
            raise ValueError("AUTO_RESUME_USAGE_LIMIT_BACKOFF_FACTOR must be >= 1.0.")
        if self.usage_limit.max_wait_seconds < self.usage_limit.cooldown_seconds:
            raise ValueError(
                "AUTO_RESUME_USAGE_LIMIT_MAX_WAIT must be >= AUTO_RESUME_USAGE_LIMIT_COOLDOWN.",
            )
        if self.recovery.max_retries < 0:
            raise ValueError("AUTO_RESUME_ERROR_MAX_RETRIES must be >= 0.")
        if self.workflow.retry_base_seconds < 0:
            raise ValueError("AUTO_RESUME_WORKFLOW_RETRY_BASE must be >= 0.")
        if self.workflow.retry_max_seconds < self.workflow.retry_base_seconds:
            raise ValueError(
                "AUTO_RESUME_TASK_RETRY_DELAY must be >= AUTO_RESUME_WORKFLOW_RETRY_BASE.",
            )
        if self.backup.retention_hours <= 0:
            raise ValueError("AUTO_RESUME_BACKUP_RETENTION_HOURS must be > 0.")
        if self.backup.max_checkpoints_per_task < 1:
            raise ValueError("AUTO_RESUME_BACKUP_MAX_CHECKPOINTS_PER_TASK must be >= 1.")
        for phase, seconds in self.workflow.phase_timeouts.items():
            if seconds <= 0:
                raise ValueError(f"AUTO_RESUME_WORKFLOW_TIMEOUT_{phase.upper()} must be > 0.")
        if self.session.backend not in SESSION_BACKENDS:
            raise ValueError(
                f"AUTO_RESUME_SESSION_BACKEND must be one of {', '.join(SESSION_BACKENDS)}.",
            )
        if self.session.backend == "process" and "{command}" not in self.session.command_template:
            raise ValueError("AUTO_RESUME_PROCESS_COMMAND must contain a {command} placeholder.")

    def to_public_dict(self) -> dict[str, object]:
        """Flat view of effective configuration for backups and status output."""

        return {
            "queue_dir": str(self.queue_dir),
            "queue_max_size": self.queue.max_queue_size,
            "task_default_timeout": self.queue.default_timeout_seconds,
            "task_type_timeouts": dict(self.queue.type_timeouts),
            "task_max_retries": self.queue.max_retries,
            "task_retry_delay": self.workflow.retry_max_seconds,
            "task_auto_cleanup_days": self.queue.auto_cleanup_days,
            "concurrency": self.queue.concurrency,
            "lock_timeout": self.lock.timeout_seconds,
            "lock_stale_after": self.lock.stale_after_seconds,
            "lock_backend": self.lock.backend,
            "timeout_warning_threshold": self.timeouts.warning_threshold_seconds,
            "usage_limit_cooldown": self.usage_limit.cooldown_seconds,
            "usage_limit_backoff_factor": self.usage_limit.backoff_factor,
            "usage_limit_max_wait": self.usage_limit.max_wait_seconds,
            "error_handling_enabled": self.recovery.enabled,
            "error_max_retries": self.recovery.max_retries,
            "backup_retention_hours": self.backup.retention_hours,
            "backup_max_checkpoints_per_task": self.backup.max_checkpoints_per_task,
            "workflow_phase_timeouts": dict(self.workflow.phase_timeouts),
            "workflow_max_retries": self.workflow.max_retries,
            "session_backend": self.session.backend,
            "project_dir": str(self.session.project_dir),
        }


def load_config_file(path: Path) -> dict[str, str]:
    """Parse a KEY=VALUE config file, ignoring blanks, comments and unknown prefixes."""

    values: dict[str, str] = {}
    for line_no, raw_line in enumerate(path.read_text("utf-8").splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            raise ValueError(f"Invalid config line {line_no} in {path}: {raw_line!r}")
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:  # noqa: PLR2004
            value = value[1:-1]
        if not key.startswith(ENV_PREFIX):
            key = f"{ENV_PREFIX}{key}"
        values[key] = value
    return values


def _merged_environment(config_file: Path | None) -> Mapping[str, str]:
    path = config_file
    if path is None and os.getenv("AUTO_RESUME_CONFIG"):
        path = Path(os.environ["AUTO_RESUME_CONFIG"])
    merged: dict[str, str] = {}
    if path is not None:
        merged.update(load_config_file(path))
    merged.update({key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)})
    return merged


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

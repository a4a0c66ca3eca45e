"""Deterministic error severity classification and recovery-strategy selection."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from auto_resume.config import RecoverySettings
from auto_resume.engine.documents import write_json
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.models import Task
from auto_resume.storage.common import file_timestamp, to_iso, utc_now

logger = logging.getLogger(__name__)

ERROR_CLASSIFIER_VERSION = 1
ERROR_EVENT_TYPE = "error_classified"

_CRITICAL_PATTERNS: tuple[str, ...] = (
    r"segmentation fault",
    r"segfault",
    r"core dumped",
    r"out of memory",
    r"no space left on device",
    r"disk full",
    r"permission denied",
    r"access denied",
    r"authentication failed",
    r"auth.*fail",
    r"unauthorized",
    r"fatal error",
    r"kernel panic",
    r"panic",
    r"emergency",
    r"corruption",
    r"corrupted",
    r"system halt",
)
_WARNING_PATTERNS: tuple[str, ...] = (
    r"network timeout",
    r"connection timeout",
    r"connection refused",
    r"connection reset",
    r"timeout",
    r"timed out",
    r"temporary failure",
    r"temporar(?:y|ily) unavailable",
    r"usage limit",
    r"rate limit",
    r"limit exceeded",
    r"service unavailable",
    r"bad gateway",
    r"gateway timeout",
    r"network.*error",
    r"dns.*error",
    r"resolve.*error",
    r"host.*unreachable",
    r"no route to host",
    r"connection.*lost",
    r"disconnected",
    r"interrupted",
)
_INFO_PATTERNS: tuple[str, ...] = (
    r"command not found",
    r"file not found",
    r"directory not found",
    r"no such file",
    r"syntax error",
    r"invalid.*argument",
    r"invalid.*option",
    r"parse.*error",
    r"format.*error",
    r"validation.*error",
    r"config.*error",
    r"missing.*parameter",
    r"unexpected.*token",
    r"malformed",
)

_CRITICAL_EXIT_CODES = frozenset({134, 139})
_WARNING_EXIT_CODES = frozenset({124, 137, 143})
_INFO_EXIT_CODES = frozenset({2, 126, 127})


class Severity(str, Enum):
    """Error severity levels."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """What to do about a classified failure."""

    EMERGENCY_SHUTDOWN = "emergency_shutdown"
    AUTOMATIC_RECOVERY = "automatic_recovery"
    MANUAL_RECOVERY = "manual_recovery"
    SIMPLE_RETRY = "simple_retry"
    SAFE_RECOVERY = "safe_recovery"
    TIMEOUT_RECOVERY = "timeout_recovery"


RETRYING_STRATEGIES = frozenset(
    {
        RecoveryStrategy.AUTOMATIC_RECOVERY,
        RecoveryStrategy.SIMPLE_RETRY,
        RecoveryStrategy.TIMEOUT_RECOVERY,
    },
)

_RECOMMENDED_ACTIONS: dict[Severity, tuple[str, ...]] = {
    Severity.CRITICAL: (
        "Inspect system resources (memory, disk space) and credentials before restarting.",
        "Review the emergency backup and the failing task's last checkpoint.",
        "Restart the worker only after the root cause is fixed.",
    ),
    Severity.WARNING: (
        "Check network connectivity and provider status.",
        "Wait for any usage limit to reset, then requeue the task.",
        "Requeue the task with `auto-resume queue retry <id>` once the condition clears.",
    ),
    Severity.INFO: (
        "Verify the command, file paths and arguments of the failing step.",
        "Fix the task definition and requeue it.",
    ),
    Severity.UNKNOWN: (
        "Read the captured session output in this report.",
        "Resume from the last checkpoint or remove the task.",
    ),
}


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result."""

    severity: Severity
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for journal events."""

        return {
            "classifier_version": ERROR_CLASSIFIER_VERSION,
            "severity": self.severity.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(slots=True)
class RecoveryDecision:
    """Classification plus the chosen strategy for one failure."""

    classification: ErrorClassification
    strategy: RecoveryStrategy
    retry_count: int
    max_retries: int
    message: str

    @property
    def retries(self) -> bool:
        return self.strategy in RETRYING_STRATEGIES


def classify_error(message: str, context: dict[str, Any] | None = None) -> ErrorClassification:
    """Classify an error message (and optional exit code in ``context``) by severity."""

    haystack = (message or "").lower()

    for severity, rule, patterns in (
        (Severity.CRITICAL, "critical_pattern", _CRITICAL_REGEXES),
        (Severity.WARNING, "warning_pattern", _WARNING_REGEXES),
        (Severity.INFO, "info_pattern", _INFO_REGEXES),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ErrorClassification(
                severity=severity,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    exit_code = (context or {}).get("exit_code")
    if isinstance(exit_code, int):
        for severity, codes in (
            (Severity.CRITICAL, _CRITICAL_EXIT_CODES),
            (Severity.WARNING, _WARNING_EXIT_CODES),
            (Severity.INFO, _INFO_EXIT_CODES),
        ):
            if exit_code in codes:
                return ErrorClassification(
                    severity=severity,
                    matched_rule="exit_code",
                    matched_pattern=str(exit_code),
                )

    return ErrorClassification(
        severity=Severity.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def select_strategy(  # noqa: PLR0911, PLR0913
    severity: Severity,
    retry_count: int,
    max_retries: int,
    *,
    timed_out: bool = False,
    enabled: bool = True,
    auto_recovery: bool = True,
    escalate_timeouts: bool = True,
) -> RecoveryStrategy:
    """Choose a recovery strategy for a classified failure.

    Critical always shuts down. Warnings retry with backoff until the limit and then need
    a human. Info retries immediately until the limit, then pauses safely. Unknown errors
    checkpoint and pause instead of retrying blindly. With handling disabled every
    failure is checkpointed and paused.
    """

    if not enabled:
        return RecoveryStrategy.SAFE_RECOVERY
    if severity == Severity.CRITICAL:
        return RecoveryStrategy.EMERGENCY_SHUTDOWN
    retries_left = retry_count < max_retries
    if timed_out:
        if retries_left and escalate_timeouts:
            return RecoveryStrategy.TIMEOUT_RECOVERY
        return RecoveryStrategy.MANUAL_RECOVERY
    if severity == Severity.WARNING:
        if retries_left and auto_recovery:
            return RecoveryStrategy.AUTOMATIC_RECOVERY
        return RecoveryStrategy.MANUAL_RECOVERY
    if severity == Severity.INFO:
        return RecoveryStrategy.SIMPLE_RETRY if retries_left else RecoveryStrategy.SAFE_RECOVERY
    return RecoveryStrategy.SAFE_RECOVERY


class ErrorClassifier:
    """Applies the recovery policy and keeps an auditable error history."""

    def __init__(
        self,
        settings: RecoverySettings | None = None,
        *,
        journal: EngineJournal | None = None,
        reports_dir: Path | None = None,
        escalate_timeouts: bool = True,
    ) -> None:
        self.settings = settings or RecoverySettings()
        self.journal = journal
        self.reports_dir = reports_dir
        self.escalate_timeouts = escalate_timeouts

    def classify(self, message: str, context: dict[str, Any] | None = None) -> Severity:
        return classify_error(message, context).severity

    def strategy(
        self,
        severity: Severity,
        retry_count: int,
        max_retries: int | None = None,
        *,
        timed_out: bool = False,
    ) -> RecoveryStrategy:
        return select_strategy(
            severity,
            retry_count,
            self.settings.max_retries if max_retries is None else max_retries,
            timed_out=timed_out,
            enabled=self.settings.enabled,
            auto_recovery=self.settings.auto_recovery,
            escalate_timeouts=self.escalate_timeouts,
        )

    def decide(  # noqa: PLR0913
        self,
        message: str,
        *,
        retry_count: int,
        max_retries: int | None = None,
        context: dict[str, Any] | None = None,
        timed_out: bool = False,
        task_id: str | None = None,
    ) -> RecoveryDecision:
        """Classify a failure, pick a strategy and record the decision."""

        limit = self.settings.max_retries if max_retries is None else max_retries
        classification = classify_error(message, context)
        decision = RecoveryDecision(
            classification=classification,
            strategy=self.strategy(
                classification.severity,
                retry_count,
                limit,
                timed_out=timed_out,
            ),
            retry_count=retry_count,
            max_retries=limit,
            message=message,
        )
        log = logger.error if classification.severity == Severity.CRITICAL else logger.warning
        log(
            "Error for %s classified %s -> %s (retry %s/%s): %s",
            task_id or "-",
            classification.severity.value,
            decision.strategy.value,
            retry_count,
            limit,
            _first_line(message),
        )
        if task_id is not None:
            self._record(task_id=task_id, decision=decision, context=context)
        return decision

    def write_manual_report(
        self,
        task: Task,
        decision: RecoveryDecision,
        *,
        output_tail: str = "",
        checkpoint_path: str | None = None,
    ) -> Path | None:
        """Persist a diagnostic report a human can act on; returns its path."""

        if self.reports_dir is None:
            return None
        path = self.reports_dir / f"manual-recovery-{task.task_id}-{file_timestamp()}.json"
        write_json(
            path,
            {
                "task_id": task.task_id,
                "task_type": task.task_type.value,
                "task_status": task.status.value,
                "created_at": to_iso(utc_now()),
                "severity": decision.classification.severity.value,
                "strategy": decision.strategy.value,
                "matched_pattern": decision.classification.matched_pattern,
                "retry_count": decision.retry_count,
                "max_retries": decision.max_retries,
                "error_message": decision.message,
                "output_tail": output_tail[-4000:],
                "checkpoint": checkpoint_path,
                "recommended_actions": list(_RECOMMENDED_ACTIONS[decision.classification.severity]),
                "task": task.to_dict(),
            },
        )
        logger.warning("Manual recovery required for %s; report written to %s", task.task_id, path)
        return path

    def history(
        self,
        *,
        task_id: str | None = None,
        hours: int | None = None,
        limit: int = 50,
    ) -> list[dict[str, object]]:
        """Journaled error decisions, newest first."""

        if self.journal is None:
            return []
        events = self.journal.list_events(
            task_id=task_id,
            event_types=(ERROR_EVENT_TYPE,),
            since=utc_now() - timedelta(hours=hours) if hours is not None else None,
            limit=limit,
        )
        return [
            {"task_id": event.task_id, "created_at": to_iso(event.created_at), **event.details}
            for event in events
        ]

    def statistics(self, *, hours: int = 24) -> dict[str, object]:
        recent = self.history(hours=hours, limit=10_000)
        by_severity = Counter(str(entry.get("severity", "unknown")) for entry in recent)
        by_strategy = Counter(str(entry.get("strategy", "unknown")) for entry in recent)
        return {
            "window_hours": hours,
            "total": len(recent),
            "by_severity": dict(by_severity),
            "by_strategy": dict(by_strategy),
        }

    def _record(
        self,
        *,
        task_id: str,
        decision: RecoveryDecision,
        context: dict[str, Any] | None,
    ) -> None:
        if self.journal is None:
            return
        details: dict[str, object] = {
            **decision.classification.to_event_details(),
            "strategy": decision.strategy.value,
            "retry_count": decision.retry_count,
            "max_retries": decision.max_retries,
            "message": _first_line(decision.message)[:500],
        }
        if context:
            details["context"] = {key: value for key, value in context.items() if key != "output"}
        try:
            self.journal.add_event(task_id=task_id, event_type=ERROR_EVENT_TYPE, details=details)
        except SQLAlchemyError as error:
            logger.warning("Could not journal error decision for %s: %s", task_id, error)


def _compile(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern) for pattern in patterns)


_CRITICAL_REGEXES = _compile(_CRITICAL_PATTERNS)
_WARNING_REGEXES = _compile(_WARNING_PATTERNS)
_INFO_REGEXES = _compile(_INFO_PATTERNS)


def _first_match(haystack: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        if pattern.search(haystack):
            return pattern.pattern
    return None


def _first_line(message: str) -> str:
    stripped = (message or "").strip()
    return stripped.splitlines()[0] if stripped else ""

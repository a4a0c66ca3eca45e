from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from auto_resume.config import RecoverySettings
from auto_resume.engine.error_classifier import (
    ErrorClassifier,
    RecoveryStrategy,
    Severity,
    classify_error,
    select_strategy,
)
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.models import Task, TaskStatus, TaskType

pytestmark = [
    allure.epic("Recovery"),
    allure.feature("Error Classification"),
]


@pytest.mark.parametrize(
    ("message", "severity"),
    [
        ("Segmentation fault (core dumped)", Severity.CRITICAL),
        ("git push: Permission denied (publickey)", Severity.CRITICAL),
        ("write failed: No space left on device", Severity.CRITICAL),
        ("Connection refused by api.example.com", Severity.WARNING),
        ("request timed out after 30s", Severity.WARNING),
        ("bash: gh: command not found", Severity.INFO),
        ("SyntaxError: invalid syntax error near token", Severity.INFO),
        ("something odd happened", Severity.UNKNOWN),
    ],
)
def test_classifies_messages_by_severity(message: str, severity: Severity) -> None:
    assert classify_error(message).severity == severity


def test_critical_patterns_win_over_warning_patterns() -> None:
    result = classify_error("connection timeout while disk full")

    assert result.severity == Severity.CRITICAL
    assert result.matched_rule == "critical_pattern"


def test_exit_code_is_used_when_message_is_silent() -> None:
    assert classify_error("", {"exit_code": 139}).severity == Severity.CRITICAL
    assert classify_error("", {"exit_code": 124}).severity == Severity.WARNING
    assert classify_error("", {"exit_code": 127}).severity == Severity.INFO
    unknown = classify_error("", {"exit_code": 1})
    assert unknown.severity == Severity.UNKNOWN
    assert unknown.matched_rule == "fallback_unknown"


@pytest.mark.parametrize(
    ("severity", "retry_count", "timed_out", "expected"),
    [
        (Severity.CRITICAL, 0, False, RecoveryStrategy.EMERGENCY_SHUTDOWN),
        (Severity.CRITICAL, 0, True, RecoveryStrategy.EMERGENCY_SHUTDOWN),
        (Severity.WARNING, 0, False, RecoveryStrategy.AUTOMATIC_RECOVERY),
        (Severity.WARNING, 3, False, RecoveryStrategy.MANUAL_RECOVERY),
        (Severity.INFO, 2, False, RecoveryStrategy.SIMPLE_RETRY),
        (Severity.INFO, 3, False, RecoveryStrategy.SAFE_RECOVERY),
        (Severity.UNKNOWN, 0, False, RecoveryStrategy.SAFE_RECOVERY),
        (Severity.WARNING, 1, True, RecoveryStrategy.TIMEOUT_RECOVERY),
        (Severity.UNKNOWN, 3, True, RecoveryStrategy.MANUAL_RECOVERY),
    ],
)
def test_strategy_matrix(
    severity: Severity,
    retry_count: int,
    timed_out: bool,
    expected: RecoveryStrategy,
) -> None:
    assert select_strategy(severity, retry_count, 3, timed_out=timed_out) == expected


def test_disabled_handling_checkpoints_and_pauses() -> None:
    for severity in (Severity.CRITICAL, Severity.WARNING, Severity.INFO):
        strategy = select_strategy(severity, 0, 3, enabled=False)

        assert strategy == RecoveryStrategy.SAFE_RECOVERY


def test_timeouts_without_auto_escalation_go_manual() -> None:
    classifier = ErrorClassifier(escalate_timeouts=False)

    assert classifier.strategy(Severity.WARNING, 0, timed_out=True) == (
        RecoveryStrategy.MANUAL_RECOVERY
    )
    assert select_strategy(Severity.WARNING, 0, 3, timed_out=True) == (
        RecoveryStrategy.TIMEOUT_RECOVERY
    )


def test_warning_without_auto_recovery_goes_manual() -> None:
    classifier = ErrorClassifier(RecoverySettings(auto_recovery=False))

    assert classifier.strategy(Severity.WARNING, 0) == RecoveryStrategy.MANUAL_RECOVERY


def test_decisions_are_journaled_and_summarized(tmp_path: Path) -> None:
    journal = EngineJournal(tmp_path / "journal.db")
    journal.init_schema()
    classifier = ErrorClassifier(RecoverySettings(max_retries=2), journal=journal)

    first = classifier.decide("connection reset by peer", retry_count=0, task_id="t-1")
    second = classifier.decide(
        "connection reset by peer",
        retry_count=2,
        context={"exit_code": 1, "output": "very long"},
        task_id="t-1",
    )

    assert first.strategy == RecoveryStrategy.AUTOMATIC_RECOVERY
    assert first.retries
    assert second.strategy == RecoveryStrategy.MANUAL_RECOVERY
    history = classifier.history(task_id="t-1")
    assert [entry["strategy"] for entry in history] == ["manual_recovery", "automatic_recovery"]
    assert "output" not in history[0]["context"]
    stats = classifier.statistics()
    assert stats["total"] == 2
    assert stats["by_severity"] == {"warning": 2}
    journal.close()


def test_manual_report_contains_diagnostics(tmp_path: Path) -> None:
    classifier = ErrorClassifier(RecoverySettings(), reports_dir=tmp_path / "reports")
    now = datetime(2026, 10, 17, 9, 0, tzinfo=UTC)
    task = Task(
        task_id="broken",
        task_type=TaskType.CUSTOM,
        status=TaskStatus.FAILED,
        priority=5,
        created_at=now,
        updated_at=now,
        command="deploy",
    )
    decision = classifier.decide("host unreachable", retry_count=3, max_retries=3)

    path = classifier.write_manual_report(task, decision, output_tail="last lines")

    assert path is not None
    report = json.loads(path.read_text("utf-8"))
    assert report["task_id"] == "broken"
    assert report["severity"] == "warning"
    assert report["strategy"] == "manual_recovery"
    assert report["output_tail"] == "last lines"
    assert report["recommended_actions"]
    assert report["task"]["command"] == "deploy"

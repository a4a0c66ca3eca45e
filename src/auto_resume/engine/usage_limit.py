"""Usage-limit detection, wait-time computation and cancellable waiting.

Providers announce throttling in free text: sometimes with a clock time ("blocked until
3pm", "retry at 15:30"), sometimes with a duration ("try again in 2 hours"), a resume
epoch ("usage limit reached|1760000000") or no time at all ("rate limit exceeded").
Clock times are resolved against the caller's ``now``: today's occurrence if it is still
ahead, otherwise tomorrow's. Generic phrases fall back to a cooldown that grows with each
repeated occurrence for the same context.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from auto_resume.config import UsageLimitSettings
from auto_resume.engine.documents import load_json, write_json
from auto_resume.engine.journal import EngineJournal
from auto_resume.engine.models import UsageLimitOccurrence
from auto_resume.storage.common import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

USAGE_LIMIT_PARSER_VERSION = 2

GENERIC_LIMIT_PHRASES: tuple[str, ...] = (
    "usage limit reached",
    "daily usage limit",
    "hourly rate limit",
    "api quota exceeded",
    "request limit exceeded",
    "service temporarily overloaded",
    "too many requests",
    "please try again later",
    "quota exceeded",
    "temporarily unavailable",
    "usage limit",
    "rate limit",
)

_CLOCK_PATTERN = re.compile(
    r"(?P<phrase>blocked until|try again at|available again at|wait until|retry at"
    r"|resets? at|resets|come back at)\s+"
    r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>[ap]\.?m\.?)?(?![\d:])",
    re.IGNORECASE,
)
_RELATIVE_PATTERN = re.compile(
    r"(?P<phrase>retry|try again|wait|available again|available|resets?|come back)"
    r"\s+(?:in|after)\s+"
    r"(?P<amount>\d+)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m|seconds?|secs?|s)\b"
    r"(?:\s*(?:and\s*)?(?P<extra_amount>\d+)\s*"
    r"(?P<extra_unit>minutes?|mins?|m|seconds?|secs?|s)\b)?",
    re.IGNORECASE,
)
_EPOCH_PATTERN = re.compile(
    r"(?:usage limit reached|limit reached|resets? at|reset_at)\s*[|:=]?\s*(?P<epoch>\d{10})\b",
    re.IGNORECASE,
)

_HOURS_PER_HALF_DAY = 12
_HOURS_PER_DAY = 24
_MINUTES_PER_HOUR = 60


class UsageLimitKind(str, Enum):
    """How the wait time was communicated."""

    CLOCK = "clock"
    RELATIVE = "relative"
    EPOCH = "epoch"
    GENERIC = "generic"


class WaitOutcome(str, Enum):
    """How a usage-limit wait ended."""

    EXPIRED = "expired"
    CANCELED = "canceled"


@dataclass(frozen=True, slots=True)
class UsageLimitMatch:
    """One usage-limit announcement found in session output."""

    kind: UsageLimitKind
    matched_pattern: str
    snippet: str
    hour: int | None = None
    minute: int | None = None
    relative_seconds: int | None = None
    epoch: int | None = None


@dataclass(frozen=True, slots=True)
class WaitResult:
    """Outcome of :meth:`UsageLimitRecovery.wait`."""

    outcome: WaitOutcome
    waited_seconds: float
    remaining_seconds: float

    @property
    def expired(self) -> bool:
        return self.outcome == WaitOutcome.EXPIRED


ProgressCallback = Callable[[float, float], None]


def detect_usage_limit(text: str) -> UsageLimitMatch | None:
    """Scan output for a usage-limit announcement, most specific form first."""

    if not text:
        return None

    epoch_match = _EPOCH_PATTERN.search(text)
    if epoch_match is not None:
        return UsageLimitMatch(
            kind=UsageLimitKind.EPOCH,
            matched_pattern=epoch_match.group(0).strip(),
            snippet=_snippet(text, epoch_match.start(), epoch_match.end()),
            epoch=int(epoch_match.group("epoch")),
        )

    for clock_match in _CLOCK_PATTERN.finditer(text):
        parsed = _parse_clock(
            clock_match.group("hour"),
            clock_match.group("minute"),
            clock_match.group("meridiem"),
        )
        if parsed is None:
            continue
        hour, minute = parsed
        return UsageLimitMatch(
            kind=UsageLimitKind.CLOCK,
            matched_pattern=clock_match.group(0).strip(),
            snippet=_snippet(text, clock_match.start(), clock_match.end()),
            hour=hour,
            minute=minute,
        )

    relative_match = _RELATIVE_PATTERN.search(text)
    if relative_match is not None:
        seconds = _unit_seconds(relative_match.group("amount"), relative_match.group("unit"))
        if relative_match.group("extra_amount"):
            seconds += _unit_seconds(
                relative_match.group("extra_amount"),
                relative_match.group("extra_unit"),
            )
        if seconds > 0:
            return UsageLimitMatch(
                kind=UsageLimitKind.RELATIVE,
                matched_pattern=relative_match.group(0).strip(),
                snippet=_snippet(text, relative_match.start(), relative_match.end()),
                relative_seconds=seconds,
            )

    lowered = text.lower()
    for phrase in GENERIC_LIMIT_PHRASES:
        index = lowered.find(phrase)
        if index >= 0:
            return UsageLimitMatch(
                kind=UsageLimitKind.GENERIC,
                matched_pattern=phrase,
                snippet=_snippet(text, index, index + len(phrase)),
            )
    return None


def seconds_until_clock_time(hour: int, minute: int, now: datetime) -> int:
    """Seconds from ``now`` to the next occurrence of ``hour:minute`` in now's timezone.

    Today's occurrence wins while it is still ahead; otherwise tomorrow's is used. The
    result is always in ``(0, 86400]``.
    """

    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return max(1, int((target - now).total_seconds()))


def to_24_hour(hour: int, meridiem: str | None) -> int:
    """Convert a 12-hour clock reading to 24-hour form (12am -> 0, 12pm -> 12)."""

    if meridiem is None:
        return hour
    normalized = meridiem.replace(".", "").lower()
    if normalized == "am":
        return 0 if hour == _HOURS_PER_HALF_DAY else hour
    return hour if hour == _HOURS_PER_HALF_DAY else hour + _HOURS_PER_HALF_DAY


class UsageLimitRecovery:
    """Turns detected usage limits into bounded, cancellable pauses."""

    def __init__(
        self,
        settings: UsageLimitSettings | None = None,
        *,
        journal: EngineJournal | None = None,
        marker_path: Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or UsageLimitSettings()
        self.journal = journal
        self.marker_path = marker_path
        self._clock = clock or _local_now

    def detect(self, text: str) -> UsageLimitMatch | None:
        return detect_usage_limit(text)

    def compute_wait_seconds(
        self,
        match: UsageLimitMatch,
        now: datetime | None = None,
        *,
        previous_occurrences: int = 0,
    ) -> int:
        """Absolute wait for a match.

        Explicit times (clock, duration, epoch) get a safety buffer and are not capped,
        since the provider stated when access returns. Generic phrases use the escalating
        cooldown ``cooldown * factor ** previous_occurrences`` capped at ``max_wait``.
        """

        current = now or self._clock()
        floor = self.settings.min_wait_seconds
        buffer = self.settings.clock_buffer_seconds

        if match.kind == UsageLimitKind.CLOCK and match.hour is not None:
            seconds = seconds_until_clock_time(match.hour, match.minute or 0, current)
            return max(floor, seconds + buffer)
        if match.kind == UsageLimitKind.RELATIVE and match.relative_seconds is not None:
            return max(floor, match.relative_seconds + buffer)
        if match.kind == UsageLimitKind.EPOCH and match.epoch is not None:
            seconds = int(match.epoch - current.timestamp())
            if seconds > 0:
                return max(floor, seconds + buffer)
            logger.info("Usage-limit resume epoch %s already passed", match.epoch)
            return floor

        return self.backoff_seconds(previous_occurrences)

    def backoff_seconds(self, previous_occurrences: int) -> int:
        raw = self.settings.cooldown_seconds * (
            self.settings.backoff_factor ** max(0, previous_occurrences)
        )
        return int(max(self.settings.min_wait_seconds, min(self.settings.max_wait_seconds, raw)))

    def register(
        self,
        match: UsageLimitMatch,
        *,
        context_id: str,
        now: datetime | None = None,
    ) -> UsageLimitOccurrence:
        """Compute the wait for a match and append it to the context's history."""

        current = now or self._clock()
        previous = self._previous_occurrences(context_id, current)
        wait_seconds = self.compute_wait_seconds(
            match,
            current,
            previous_occurrences=previous,
        )
        occurrence = UsageLimitOccurrence(
            context_id=context_id,
            detected_at=current,
            matched_pattern=match.matched_pattern,
            kind=match.kind.value,
            computed_wait_seconds=wait_seconds,
            resume_at=current + timedelta(seconds=wait_seconds),
        )
        if self.journal is not None:
            try:
                self.journal.record_usage_limit(occurrence)
            except SQLAlchemyError as error:
                logger.warning("Could not record usage-limit occurrence: %s", error)
        logger.warning(
            "Usage limit for %s (%s %r, occurrence #%s); waiting %ss until %s",
            context_id,
            match.kind.value,
            match.matched_pattern,
            previous + 1,
            wait_seconds,
            occurrence.resume_at.isoformat() if occurrence.resume_at else "-",
        )
        return occurrence

    def check_output(
        self,
        text: str,
        *,
        context_id: str,
        now: datetime | None = None,
    ) -> tuple[UsageLimitMatch, UsageLimitOccurrence] | None:
        match = self.detect(text)
        if match is None:
            return None
        return match, self.register(match, context_id=context_id, now=now)

    def wait(
        self,
        seconds: float,
        cancel_event: threading.Event | None = None,
        *,
        progress: ProgressCallback | None = None,
        occurrence: UsageLimitOccurrence | None = None,
    ) -> WaitResult:
        """Block for ``seconds`` unless ``cancel_event`` fires first.

        ``progress`` receives ``(elapsed, remaining)`` every progress interval. While
        waiting, a pause marker is kept on disk so other processes can report the
        pending resume time.
        """

        event = cancel_event or threading.Event()
        total = max(0.0, float(seconds))
        interval = max(0.01, self.settings.progress_interval_seconds)
        started = time.monotonic()
        self._write_marker(total, occurrence)
        try:
            while True:
                elapsed = time.monotonic() - started
                remaining = total - elapsed
                if remaining <= 0:
                    return WaitResult(
                        WaitOutcome.EXPIRED,
                        waited_seconds=elapsed,
                        remaining_seconds=0.0,
                    )
                if event.wait(timeout=min(interval, remaining)):
                    elapsed = time.monotonic() - started
                    logger.info("Usage-limit wait canceled after %.0fs", elapsed)
                    return WaitResult(
                        WaitOutcome.CANCELED,
                        waited_seconds=elapsed,
                        remaining_seconds=max(0.0, total - elapsed),
                    )
                if progress is not None:
                    elapsed = time.monotonic() - started
                    progress(elapsed, max(0.0, total - elapsed))
        finally:
            self._clear_marker()

    def pause_marker(self) -> dict[str, object] | None:
        """Current pause marker written by a waiting process, if any."""

        if self.marker_path is None or not self.marker_path.exists():
            return None
        try:
            return load_json(self.marker_path)
        except (ValueError, TypeError, OSError):
            return None

    def history(self, context_id: str | None = None) -> list[UsageLimitOccurrence]:
        if self.journal is None:
            return []
        since = utc_now() - timedelta(hours=self.settings.history_retention_hours)
        return self.journal.usage_limit_history(context_id=context_id, since=since)

    def prune(self, *, now: datetime | None = None) -> int:
        """Drop occurrences older than the history retention window."""

        if self.journal is None:
            return 0
        current = now or self._clock()
        cutoff = current - timedelta(hours=self.settings.history_retention_hours)
        removed = self.journal.prune_usage_limits(older_than=cutoff)
        if removed:
            logger.info("Pruned %s usage-limit occurrence(s) older than %s", removed, to_iso(cutoff))
        return removed

    def statistics(self) -> dict[str, object]:
        occurrences = self.history()
        waits = [item.computed_wait_seconds for item in occurrences]
        by_kind = Counter(item.kind for item in occurrences)
        return {
            "occurrences": len(occurrences),
            "contexts": len({item.context_id for item in occurrences}),
            "by_kind": dict(by_kind),
            "total_wait_seconds": sum(waits),
            "max_wait_seconds": max(waits) if waits else 0,
            "last_detected_at": to_iso(occurrences[-1].detected_at) if occurrences else None,
        }

    def _previous_occurrences(self, context_id: str, now: datetime) -> int:
        if self.journal is None:
            return 0
        since = now - timedelta(hours=self.settings.history_retention_hours)
        try:
            return self.journal.count_usage_limits(context_id=context_id, since=since)
        except SQLAlchemyError as error:
            logger.warning("Could not read usage-limit history: %s", error)
            return 0

    def _write_marker(self, seconds: float, occurrence: UsageLimitOccurrence | None) -> None:
        if self.marker_path is None:
            return
        now = utc_now()
        payload: dict[str, object] = {
            "created_at": to_iso(now),
            "wait_seconds": int(seconds),
            "resume_at": to_iso(now + timedelta(seconds=seconds)),
            "parser_version": USAGE_LIMIT_PARSER_VERSION,
        }
        if occurrence is not None:
            payload["context_id"] = occurrence.context_id
            payload["matched_pattern"] = occurrence.matched_pattern
            payload["kind"] = occurrence.kind
        try:
            write_json(self.marker_path, payload)
        except OSError as error:
            logger.warning("Could not write usage-limit pause marker: %s", error)

    def _clear_marker(self) -> None:
        if self.marker_path is not None:
            self.marker_path.unlink(missing_ok=True)


def marker_resume_at(marker: dict[str, object]) -> datetime | None:
    value = marker.get("resume_at")
    return from_iso(str(value)) if value else None


def _local_now() -> datetime:
    return datetime.now(tz=UTC).astimezone()


def _parse_clock(
    hour_raw: str,
    minute_raw: str | None,
    meridiem: str | None,
) -> tuple[int, int] | None:
    hour = int(hour_raw)
    minute = int(minute_raw) if minute_raw else 0
    if minute >= _MINUTES_PER_HOUR:
        return None
    if meridiem is not None:
        if not 1 <= hour <= _HOURS_PER_HALF_DAY:
            return None
        return to_24_hour(hour, meridiem), minute
    if minute_raw is None:
        # A bare number without am/pm or minutes is too ambiguous to be a clock time.
        return None
    if hour >= _HOURS_PER_DAY:
        return None
    return hour, minute


def _unit_seconds(amount_raw: str, unit_raw: str) -> int:
    amount = int(amount_raw)
    unit = unit_raw.lower()
    if unit.startswith("h"):
        return amount * 3600
    if unit.startswith("m"):
        return amount * 60
    return amount


def _snippet(text: str, start: int, end: int, *, context: int = 40) -> str:
    return text[max(0, start - context) : min(len(text), end + context)].strip()

"""Pluggable strategies for deciding that a step's command has finished.

Session output is the only signal most transports offer, so the text-based detectors
are heuristics. The workflow engine always registers the step timeout as a backstop.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

DEFAULT_COMPLETION_MARKER = "###TASK_COMPLETE###"

# A line consisting only of the CLI prompt means the session is idle again.
_PROMPT_LINE = r"(?m)^\s*(?:claude\s*)?[>❯]\s*$"

DEFAULT_PHASE_PATTERNS: dict[str, tuple[str, ...]] = {
    "develop": (
        r"pull request.*created",
        r"\bpr\b.*created",
        r"created pull request",
        r"committed.*changes",
        r"created.*branch",
        r"pushed.*to",
        r"issue.*complete",
        r"\bimplemented\b",
        r"development.*finished",
    ),
    "clear": (
        r"context.*cleared",
        r"clear.*complete",
        r"conversation.*reset",
        _PROMPT_LINE,
    ),
    "review": (
        r"review.*complete",
        r"analysis.*complete",
        r"review.*finished",
        r"\bsummary\b",
        r"\brecommendations?\b",
        r"\bconclusion\b",
        r"\boverall\b",
    ),
    "merge": (
        r"merge.*successful",
        r"merged.*successfully",
        r"merge.*complete",
        r"main.*updated",
        r"merged.*into.*main",
        r"issue.*closed",
    ),
    "generic": (
        r"\bcompleted?\b",
        r"\bfinished\b",
        r"\bdone\b",
        r"\bsuccess(?:ful(?:ly)?)?\b",
        _PROMPT_LINE,
    ),
}


@dataclass(frozen=True, slots=True)
class CompletionContext:
    """What a detector sees on each poll."""

    phase: str
    command: str
    output: str
    exit_status: int | None = None


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """A detector's verdict once it recognizes the step as finished."""

    detector: str
    succeeded: bool
    detail: str = ""


class CompletionDetector(Protocol):
    """Strategy interface; return None while the step still looks busy."""

    name: str

    def check(self, context: CompletionContext) -> CompletionResult | None:
        """Inspect the latest output and exit status."""


class MarkerDetector:
    """Completion when the configured marker string appears in new output."""

    name = "marker"

    def __init__(self, marker: str = DEFAULT_COMPLETION_MARKER) -> None:
        self.marker = marker

    def check(self, context: CompletionContext) -> CompletionResult | None:
        if self.marker and self.marker in context.output:
            return CompletionResult(detector=self.name, succeeded=True, detail=self.marker)
        return None


class PatternDetector:
    """Completion when any phase-specific pattern matches (case-insensitive)."""

    name = "pattern"

    def __init__(self, patterns: Mapping[str, Sequence[str]] | None = None) -> None:
        source = DEFAULT_PHASE_PATTERNS if patterns is None else patterns
        self._patterns = {
            phase: tuple(re.compile(pattern, re.IGNORECASE) for pattern in values)
            for phase, values in source.items()
        }

    def patterns_for(self, phase: str) -> tuple[re.Pattern[str], ...]:
        return self._patterns.get(phase) or self._patterns.get("generic", ())

    def check(self, context: CompletionContext) -> CompletionResult | None:
        text = _without_command_echo(context.output, context.command)
        if not text.strip():
            return None
        for pattern in self.patterns_for(context.phase):
            if pattern.search(text):
                return CompletionResult(detector=self.name, succeeded=True, detail=pattern.pattern)
        return None


class ExitStatusDetector:
    """Completion once the executor reports an exit status; non-zero means failure."""

    name = "exit_status"

    def check(self, context: CompletionContext) -> CompletionResult | None:
        if context.exit_status is None:
            return None
        if context.exit_status == 0:
            return CompletionResult(detector=self.name, succeeded=True, detail="exit 0")
        return CompletionResult(
            detector=self.name,
            succeeded=False,
            detail=f"command exited with status {context.exit_status}",
        )


class CompositeDetector:
    """Tries each detector in order and returns the first verdict."""

    name = "composite"

    def __init__(self, detectors: Iterable[CompletionDetector]) -> None:
        self.detectors = tuple(detectors)

    def check(self, context: CompletionContext) -> CompletionResult | None:
        for detector in self.detectors:
            result = detector.check(context)
            if result is not None:
                return result
        return None


def default_detector(*, marker: str, exit_status_available: bool) -> CompletionDetector:
    """Exit status when the transport reports one, otherwise marker then phase patterns."""

    if exit_status_available:
        return CompositeDetector([ExitStatusDetector()])
    return CompositeDetector([MarkerDetector(marker), PatternDetector()])


def new_output(baseline: str, current: str) -> str:
    """Text in ``current`` that appeared after ``baseline`` was captured.

    Captures are tails of a scrolling screen, so the baseline's last lines are located
    in the current capture; when they scrolled out, the whole capture is new.
    """

    if not baseline:
        return current
    if current.startswith(baseline):
        return current[len(baseline) :]
    tail_lines = [line for line in baseline.splitlines() if line.strip()][-3:]
    if not tail_lines:
        return current
    anchor = "\n".join(tail_lines)
    index = current.rfind(anchor)
    if index < 0:
        return current
    return current[index + len(anchor) :]


def _without_command_echo(output: str, command: str) -> str:
    stripped = command.strip()
    if not stripped:
        return output
    return "\n".join(line for line in output.splitlines() if stripped not in line)

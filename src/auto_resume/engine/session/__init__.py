"""Session executors that run the interactive AI CLI on behalf of the engine."""

from auto_resume.engine.session.base import (
    ExitStatusReporter,
    InterruptibleSession,
    ProjectContext,
    SessionExecutor,
    SessionHandle,
)
from auto_resume.engine.session.process import ProcessSessionExecutor
from auto_resume.engine.session.tmux import TmuxSessionExecutor

__all__ = [
    "ExitStatusReporter",
    "InterruptibleSession",
    "ProcessSessionExecutor",
    "ProjectContext",
    "SessionExecutor",
    "SessionHandle",
    "TmuxSessionExecutor",
]

"""Unattended task queue and recovery engine for AI coding CLI sessions."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("auto-resume")
except PackageNotFoundError:  # pragma: no cover - source checkout without install
    __version__ = "0.0.0"

"""Checkpoint snapshots, emergency backups and their retention."""

from __future__ import annotations

import logging
import os
import re
import socket
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from auto_resume.config import Settings
from auto_resume.engine.documents import load_json, newest_first, write_json
from auto_resume.engine.errors import CorruptStateError, TaskNotFoundError
from auto_resume.engine.models import Checkpoint, Task
from auto_resume.storage.common import file_timestamp, from_iso, to_iso, utc_now

if TYPE_CHECKING:
    from auto_resume.engine.store import QueueStore

logger = logging.getLogger(__name__)

CHECKPOINT_PREFIX = "checkpoint-"
EMERGENCY_PREFIX = "emergency-"
_TIMESTAMP_SUFFIX = re.compile(r"^(?P<ts>\d{8}T\d{12}Z)\.json$")
_TIMESTAMP_LENGTH = len("00000000T000000000000Z.json")


class BackupManager:
    """Writes immutable per-task checkpoints and whole-queue emergency backups."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: QueueStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.checkpoints_dir = settings.checkpoints_dir
        self.backups_dir = settings.backups_dir
        self._clock = clock

    def checkpoint(self, task: Task | str, reason: str) -> Checkpoint:
        """Snapshot a task (or the stored task with that id) and return the checkpoint."""

        snapshot = self._resolve(task)
        created_at = self._clock()
        path = self.checkpoints_dir / (
            f"{CHECKPOINT_PREFIX}{snapshot.task_id}-{file_timestamp(created_at)}.json"
        )
        checkpoint = Checkpoint(
            task_id=snapshot.task_id,
            reason=reason,
            created_at=created_at,
            task_state=snapshot.to_dict(),
            system_state=self._system_state(),
            path=str(path),
        )
        write_json(
            path,
            {
                "task_id": checkpoint.task_id,
                "reason": checkpoint.reason,
                "created_at": to_iso(checkpoint.created_at),
                "task_state": checkpoint.task_state,
                "system_state": checkpoint.system_state,
            },
        )
        logger.debug("Checkpoint %s for %s (%s)", path.name, snapshot.task_id, reason)
        self._prune_task(snapshot.task_id)
        return checkpoint

    def checkpoint_if_due(self, task: Task | str, reason: str) -> Checkpoint | None:
        """Checkpoint only when the newest one is older than the checkpoint interval."""

        snapshot = self._resolve(task)
        latest = self._checkpoint_paths(snapshot.task_id)
        if latest:
            taken_at = _timestamp_from_name(latest[0], f"{CHECKPOINT_PREFIX}{snapshot.task_id}-")
            interval = timedelta(seconds=self.settings.backup.checkpoint_interval_seconds)
            if taken_at is not None and self._clock() - taken_at < interval:
                return None
        return self.checkpoint(snapshot, f"periodic:{reason}")

    def list_checkpoints(self, task_id: str | None = None) -> list[Checkpoint]:
        """Checkpoints newest first, for one task or all tasks."""

        if task_id is not None:
            paths = self._checkpoint_paths(task_id)
        else:
            paths = sorted(
                self.checkpoints_dir.glob(f"{CHECKPOINT_PREFIX}*.json"),
                key=lambda item: item.name[-_TIMESTAMP_LENGTH:],
                reverse=True,
            )
        checkpoints: list[Checkpoint] = []
        for path in paths:
            loaded = self._read_checkpoint(path)
            if loaded is not None:
                checkpoints.append(loaded)
        return checkpoints

    def latest(self, task_id: str) -> Checkpoint | None:
        for path in self._checkpoint_paths(task_id):
            loaded = self._read_checkpoint(path)
            if loaded is not None:
                return loaded
        return None

    def restore_latest(self, task_id: str) -> Task:
        """State recorded by the newest readable checkpoint; history is left untouched."""

        checkpoint = self.latest(task_id)
        if checkpoint is None:
            raise TaskNotFoundError(task_id)
        return checkpoint.restore_task()

    def emergency_backup(
        self,
        reason: str,
        *,
        active_task_ids: Iterable[str] = (),
    ) -> Path:
        """Capture the whole queue, the active task set and effective configuration."""

        created_at = self._clock()
        queue_state: dict[str, object] | None
        queue_error: str | None = None
        try:
            queue_state = self.store.snapshot() if self.store is not None else None
        except (CorruptStateError, OSError) as error:
            queue_state = None
            queue_error = str(error)
        path = self.backups_dir / f"{EMERGENCY_PREFIX}{file_timestamp(created_at)}.json"
        write_json(
            path,
            {
                "reason": reason,
                "created_at": to_iso(created_at),
                "queue_state": queue_state,
                "queue_error": queue_error,
                "active_tasks": sorted(active_task_ids),
                "configuration": self.settings.to_public_dict(),
                "system_state": self._system_state(include_queue=False),
            },
        )
        logger.error("Emergency backup written to %s (%s)", path, reason)
        return path

    def cleanup(
        self,
        *,
        retention_hours: int | None = None,
        max_per_task: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Drop checkpoints/backups past the age limit and per-task count limit."""

        hours = self.settings.backup.retention_hours if retention_hours is None else retention_hours
        keep = max_per_task
        if keep is None:
            keep = self.settings.backup.max_checkpoints_per_task
        cutoff = (now or self._clock()) - timedelta(hours=hours)
        removed = {"checkpoints": 0, "emergency_backups": 0}

        by_task: dict[str, list[Path]] = {}
        for path in self.checkpoints_dir.glob(f"{CHECKPOINT_PREFIX}*.json"):
            task_id = _task_id_from_name(path.name)
            if task_id is not None:
                by_task.setdefault(task_id, []).append(path)
        for paths in by_task.values():
            for index, path in enumerate(newest_first(paths)):
                taken_at = _timestamp_from_name(path, path.name[:-_TIMESTAMP_LENGTH])
                if index >= keep or (taken_at is not None and taken_at < cutoff):
                    path.unlink(missing_ok=True)
                    removed["checkpoints"] += 1

        for path in self.backups_dir.glob(f"{EMERGENCY_PREFIX}*.json"):
            taken_at = _timestamp_from_name(path, EMERGENCY_PREFIX)
            if taken_at is not None and taken_at < cutoff:
                path.unlink(missing_ok=True)
                removed["emergency_backups"] += 1

        if any(removed.values()):
            logger.info(
                "Backup cleanup removed %s checkpoint(s) and %s emergency backup(s)",
                removed["checkpoints"],
                removed["emergency_backups"],
            )
        return removed

    def statistics(self) -> dict[str, object]:
        checkpoints = list(self.checkpoints_dir.glob(f"{CHECKPOINT_PREFIX}*.json"))
        emergencies = list(self.backups_dir.glob(f"{EMERGENCY_PREFIX}*.json"))
        tasks = {_task_id_from_name(path.name) for path in checkpoints} - {None}
        total_bytes = sum(
            path.stat().st_size for path in [*checkpoints, *emergencies] if path.exists()
        )
        return {
            "checkpoints": len(checkpoints),
            "tasks_with_checkpoints": len(tasks),
            "emergency_backups": len(emergencies),
            "total_bytes": total_bytes,
        }

    def _resolve(self, task: Task | str) -> Task:
        if isinstance(task, Task):
            return task
        if self.store is None:
            raise TaskNotFoundError(task)
        return self.store.get_task(task)

    def _checkpoint_paths(self, task_id: str) -> list[Path]:
        prefix = f"{CHECKPOINT_PREFIX}{task_id}-"
        return newest_first(
            [
                path
                for path in self.checkpoints_dir.glob(f"{prefix}*.json")
                if _TIMESTAMP_SUFFIX.match(path.name[len(prefix) :])
            ],
        )

    def _prune_task(self, task_id: str) -> None:
        keep = self.settings.backup.max_checkpoints_per_task
        for stale in self._checkpoint_paths(task_id)[keep:]:
            stale.unlink(missing_ok=True)

    def _read_checkpoint(self, path: Path) -> Checkpoint | None:
        try:
            payload = load_json(path)
            return Checkpoint(
                task_id=str(payload["task_id"]),
                reason=str(payload.get("reason") or ""),
                created_at=from_iso(str(payload["created_at"])),
                task_state=dict(payload["task_state"]),
                system_state=dict(payload.get("system_state") or {}),
                path=str(path),
            )
        except (OSError, ValueError, TypeError, KeyError) as error:
            logger.warning("Skipping unreadable checkpoint %s: %s", path, error)
            return None

    def _system_state(self, *, include_queue: bool = True) -> dict[str, object]:
        state: dict[str, object] = {"pid": os.getpid(), "hostname": socket.gethostname()}
        if include_queue and self.store is not None:
            try:
                stats = self.store.statistics()
            except (CorruptStateError, OSError):
                return state
            state["queue"] = {
                "total": stats.total,
                "by_status": stats.by_status,
                "paused": stats.paused,
            }
        return state


def _task_id_from_name(name: str) -> str | None:
    if not name.startswith(CHECKPOINT_PREFIX):
        return None
    body = name[len(CHECKPOINT_PREFIX) :]
    task_id, _, suffix = body.rpartition("-")
    if not task_id or not _TIMESTAMP_SUFFIX.match(suffix):
        return None
    return task_id


def _timestamp_from_name(path: Path, prefix: str) -> datetime | None:
    match = _TIMESTAMP_SUFFIX.match(path.name[len(prefix) :])
    if match is None:
        return None
    return datetime.strptime(match.group("ts"), "%Y%m%dT%H%M%S%fZ").replace(tzinfo=UTC)

"""Cross-process mutual exclusion over a queue directory.

Two interchangeable backends sit behind :class:`LockManager`:

* ``fcntl`` holds a native advisory ``flock`` on ``<queue>/.queue.lock``; the kernel
  drops it when the holder dies, so dead-holder staleness resolves itself.
* ``mkdir`` creates ``<queue>/.queue.lock.d`` atomically and stores the owner record in
  ``owner.json``; stale directories are reclaimed by renaming them aside first, so two
  reclaimers can never delete each other's fresh lock.

Within a process the lock is re-entrant per thread: nested ``acquire`` calls from the
thread that already holds it only bump a depth counter. Other threads of the same
process wait on an in-process lock before touching the backend.
"""

from __future__ import annotations

import json
import logging
import os
import random
import shutil
import socket
import sys
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from auto_resume.config import LockSettings
from auto_resume.engine.errors import LockTimeoutError
from auto_resume.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".queue.lock"
LOCK_DIR_NAME = ".queue.lock.d"
OWNER_FILE_NAME = "owner.json"

_BACKOFF_BASE_SECONDS = 0.1
_BACKOFF_FACTOR = 1.5
_BACKOFF_CAP_SECONDS = 2.0
_BACKOFF_JITTER = 0.25


@dataclass(frozen=True, slots=True)
class LockRecord:
    """Identity of the current lock holder."""

    pid: int | None
    hostname: str | None
    acquired_at: datetime
    token: str

    def to_dict(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "acquired_at": self.acquired_at.isoformat(),
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> LockRecord:
        pid = payload.get("pid")
        return cls(
            pid=int(pid) if isinstance(pid, int | str) and str(pid).isdigit() else None,
            hostname=str(payload["hostname"]) if payload.get("hostname") else None,
            acquired_at=from_iso(str(payload["acquired_at"])),
            token=str(payload.get("token") or ""),
        )

    def describe(self) -> str:
        return f"pid={self.pid} host={self.hostname} since={self.acquired_at.isoformat()}"


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Proof of ownership returned by :meth:`LockManager.acquire`."""

    path: Path
    record: LockRecord
    backend: str
    depth: int


class LockBackend(Protocol):
    """Platform-specific exclusive-create primitive."""

    name: str
    path: Path

    def try_acquire(self, record: LockRecord) -> bool:
        """Take the lock without blocking; False if someone else holds it."""

    def read_record(self) -> LockRecord | None:
        """Current holder record, or None when the lock is free or unreadable."""

    def release(self) -> None:
        """Release a lock held by this backend instance."""

    def reclaim(self, record: LockRecord) -> bool:
        """Remove a stale lock described by ``record``; False if it cannot be reclaimed."""


class MkdirLockBackend:
    """Directory-create lock usable on any filesystem with atomic mkdir."""

    name = "mkdir"

    def __init__(self, path: Path) -> None:
        self.path = path

    def try_acquire(self, record: LockRecord) -> bool:
        try:
            self.path.mkdir()
        except FileExistsError:
            return False
        owner = self.path / OWNER_FILE_NAME
        tmp = owner.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.to_dict()), "utf-8")
        os.replace(tmp, owner)
        return True

    def read_record(self) -> LockRecord | None:
        owner = self.path / OWNER_FILE_NAME
        try:
            return LockRecord.from_dict(json.loads(owner.read_text("utf-8")))
        except FileNotFoundError:
            pass
        except (ValueError, KeyError, TypeError):
            logger.warning("Unreadable lock owner record at %s", owner)
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        # Directory exists without a readable owner: the holder is unknown.
        return LockRecord(
            pid=None,
            hostname=None,
            acquired_at=datetime.fromtimestamp(mtime, tz=utc_now().tzinfo),
            token="",
        )

    def release(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

    def reclaim(self, record: LockRecord) -> bool:
        aside = self.path.with_name(f"{self.path.name}.stale-{uuid4().hex[:8]}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.warning("Could not move stale lock %s aside: %s", self.path, error)
            return False

        moved = MkdirLockBackend(aside).read_record()
        if record.token and moved is not None and moved.token != record.token:
            # Another process reclaimed and re-acquired between our read and rename.
            try:
                os.rename(aside, self.path)
            except OSError:
                shutil.rmtree(aside, ignore_errors=True)
            return False
        shutil.rmtree(aside, ignore_errors=True)
        return True


class FcntlLockBackend:
    """Native advisory lock through ``fcntl.flock``."""

    name = "fcntl"

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: int | None = None

    def try_acquire(self, record: LockRecord) -> bool:
        import fcntl  # noqa: PLC0415

        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        os.ftruncate(fd, 0)
        os.pwrite(fd, json.dumps(record.to_dict()).encode("utf-8"), 0)
        self._fd = fd
        return True

    def read_record(self) -> LockRecord | None:
        try:
            raw = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        if not raw:
            return None
        try:
            return LockRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            return None

    def release(self) -> None:
        import fcntl  # noqa: PLC0415

        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def reclaim(self, record: LockRecord) -> bool:
        # A flock held by a live process cannot be broken; dead holders are released
        # by the kernel and the next try_acquire succeeds on its own.
        logger.warning(
            "Advisory lock %s looks stale (%s) but is still held by a live process",
            self.path,
            record.describe(),
        )
        return False


@dataclass(slots=True)
class _ProcessState:
    mutex: threading.RLock
    owner_thread: int | None = None
    depth: int = 0
    backend: LockBackend | None = None
    record: LockRecord | None = None


_PROCESS_STATES: dict[str, _ProcessState] = {}
_PROCESS_STATES_GUARD = threading.Lock()


def _process_state(key: str) -> _ProcessState:
    with _PROCESS_STATES_GUARD:
        state = _PROCESS_STATES.get(key)
        if state is None:
            state = _ProcessState(mutex=threading.RLock())
            _PROCESS_STATES[key] = state
        return state


def select_backend_name(preferred: str) -> str:
    """Resolve ``auto`` to the native lock where the platform provides one."""

    if preferred != "auto":
        return preferred
    return "mkdir" if sys.platform == "win32" else "fcntl"


class LockManager:
    """Named cross-process lock for one queue directory."""

    def __init__(
        self,
        queue_dir: Path,
        *,
        settings: LockSettings | None = None,
        hostname: str | None = None,
    ) -> None:
        self.queue_dir = queue_dir
        self.settings = settings or LockSettings()
        self.hostname = hostname or socket.gethostname()
        self.backend_name = select_backend_name(self.settings.backend)
        self._random = random.Random()  # noqa: S311
        self._state = _process_state(f"{self.backend_name}:{self._lock_path().resolve()}")

    @property
    def lock_path(self) -> Path:
        return self._lock_path()

    def _lock_path(self) -> Path:
        name = LOCK_FILE_NAME if self.backend_name == "fcntl" else LOCK_DIR_NAME
        return self.queue_dir / name

    def _new_backend(self) -> LockBackend:
        if self.backend_name == "fcntl":
            return FcntlLockBackend(self._lock_path())
        if self.backend_name == "mkdir":
            return MkdirLockBackend(self._lock_path())
        raise ValueError(f"Unsupported lock backend: {self.backend_name!r}")

    def acquire(self, timeout: float | None = None) -> LockHandle:
        """Acquire the queue lock, waiting with exponential backoff up to ``timeout``."""

        budget = self.settings.timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + max(0.0, budget)
        state = self._state

        if not state.mutex.acquire(timeout=max(0.0, budget)):
            raise LockTimeoutError(str(self._lock_path()), budget, holder="another thread")

        if state.owner_thread == threading.get_ident() and state.depth > 0:
            state.depth += 1
            assert state.record is not None  # noqa: S101
            return LockHandle(
                path=self._lock_path(),
                record=state.record,
                backend=self.backend_name,
                depth=state.depth,
            )

        try:
            backend, record = self._acquire_backend(deadline=deadline, budget=budget)
        except BaseException:
            state.mutex.release()
            raise

        state.owner_thread = threading.get_ident()
        state.depth = 1
        state.backend = backend
        state.record = record
        logger.debug("Acquired queue lock %s (%s)", self._lock_path(), self.backend_name)
        return LockHandle(
            path=self._lock_path(),
            record=record,
            backend=self.backend_name,
            depth=1,
        )

    def release(self, handle: LockHandle) -> None:
        """Release one level of a handle returned by :meth:`acquire`."""

        state = self._state
        if state.owner_thread != threading.get_ident() or state.depth == 0:
            raise RuntimeError(f"Lock {handle.path} is not held by the current thread")
        if state.record is not None and handle.record.token != state.record.token:
            raise RuntimeError(f"Stale lock handle for {handle.path}")

        state.depth -= 1
        if state.depth == 0:
            backend = state.backend
            state.backend = None
            state.record = None
            state.owner_thread = None
            try:
                if backend is not None:
                    backend.release()
            finally:
                state.mutex.release()
            logger.debug("Released queue lock %s", self._lock_path())
            return
        state.mutex.release()

    def is_held(self) -> bool:
        """Whether the calling thread currently holds this lock."""

        return self._state.owner_thread == threading.get_ident() and self._state.depth > 0

    def inspect(self) -> LockRecord | None:
        """Current holder as recorded on disk, if any."""

        return self._new_backend().read_record()

    def force_release(self) -> bool:
        """Operator escape hatch: remove the lock record regardless of holder."""

        record = self.inspect()
        if record is None:
            return False
        if self.backend_name == "mkdir":
            shutil.rmtree(self._lock_path(), ignore_errors=True)
            logger.warning("Force-released queue lock held by %s", record.describe())
            return True
        logger.warning("Advisory lock %s cannot be force-released", self._lock_path())
        return False

    @contextmanager
    def locked(self, timeout: float | None = None) -> Iterator[LockHandle]:
        handle = self.acquire(timeout=timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def stale_reason(self, record: LockRecord, *, now: datetime | None = None) -> str | None:
        """Return why a lock record is reclaimable, or None if its holder looks valid."""

        if record.hostname and record.hostname != self.hostname:
            return "foreign_host"
        if record.pid is not None and not pid_alive(record.pid):
            return "dead_holder"
        age = ((now or utc_now()) - record.acquired_at).total_seconds()
        if age > self.settings.stale_after_seconds:
            return "expired"
        return None

    def _acquire_backend(self, *, deadline: float, budget: float) -> tuple[LockBackend, LockRecord]:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        backend = self._new_backend()
        attempt = 0
        last_holder: LockRecord | None = None
        while True:
            record = LockRecord(
                pid=os.getpid(),
                hostname=self.hostname,
                acquired_at=utc_now(),
                token=uuid4().hex,
            )
            if backend.try_acquire(record):
                return backend, record

            holder = backend.read_record()
            if holder is not None:
                last_holder = holder
                reason = self.stale_reason(holder)
                if reason is not None and backend.reclaim(holder):
                    logger.warning(
                        "Reclaimed stale queue lock (%s): %s",
                        reason,
                        holder.describe(),
                    )
                    continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(
                    str(self._lock_path()),
                    budget,
                    holder=last_holder.describe() if last_holder else None,
                )
            time.sleep(min(remaining, self._backoff_delay(attempt)))
            attempt += 1

    def _backoff_delay(self, attempt: int) -> float:
        base = min(_BACKOFF_CAP_SECONDS, _BACKOFF_BASE_SECONDS * (_BACKOFF_FACTOR**attempt))
        jitter = self._random.uniform(1.0 - _BACKOFF_JITTER, 1.0 + _BACKOFF_JITTER)
        return base * jitter


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def process_identity() -> str:
    """``hostname:pid`` of the current process, as recorded on claimed tasks."""

    return f"{socket.gethostname()}:{os.getpid()}"

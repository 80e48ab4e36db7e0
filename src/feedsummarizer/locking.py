from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from typing import IO

from .models import LockInfo
from .utils import log_event

try:
    import fcntl
except ImportError:  # pragma: no cover - platforms without flock()
    fcntl = None


class FileLock:
    """Non-blocking, cross-process exclusive lock backed by a single file.

    ``acquire`` never waits: contention is an expected outcome and is reported
    as ``False``. The file body only carries diagnostics about the holder.
    """

    def __init__(
        self,
        path: str,
        logger: logging.Logger,
        *,
        use_flock: bool | None = None,
        stale_seconds: int = 3600,
    ) -> None:
        self.path = path
        self.logger = logger
        self.use_flock = (fcntl is not None) if use_flock is None else use_flock
        self.stale_seconds = stale_seconds
        self._handle: IO[str] | None = None
        self._held = False

    def acquire(self, identifier: str = "") -> bool:
        if self._held:
            log_event(self.logger, logging.DEBUG, "lock_already_held", identifier=identifier)
            return True
        log_event(
            self.logger, logging.DEBUG, "lock_acquire_attempt", path=self.path, identifier=identifier
        )
        if self.use_flock:
            acquired = self._acquire_flock(identifier)
        else:
            acquired = self._acquire_exclusive_create(identifier)
        if acquired:
            log_event(self.logger, logging.DEBUG, "lock_acquired", identifier=identifier)
        return acquired

    def release(self) -> None:
        if not self._held or self._handle is None:
            log_event(self.logger, logging.DEBUG, "lock_release_noop", path=self.path)
            return
        handle = self._handle
        self._handle = None
        self._held = False
        try:
            if self.use_flock:
                # The file stays behind so a concurrent opener never locks an unlinked inode.
                handle.seek(0)
                handle.truncate()
                handle.flush()
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            if not self.use_flock:
                os.unlink(self.path)
        except OSError as exc:
            log_event(self.logger, logging.WARNING, "lock_release_failed", path=self.path, error=str(exc))
            return
        log_event(self.logger, logging.DEBUG, "lock_released", path=self.path)

    def is_held(self) -> bool:
        return self._held

    def read_info(self) -> LockInfo | None:
        return read_lock_info(self.path)

    def __enter__(self) -> FileLock:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()

    def __del__(self) -> None:
        if getattr(self, "_held", False):
            self.release()

    def _acquire_flock(self, identifier: str) -> bool:
        try:
            handle = open(self.path, "a+", encoding="utf-8")
        except OSError as exc:
            log_event(self.logger, logging.ERROR, "lock_open_failed", path=self.path, error=str(exc))
            return False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            self._log_contention(identifier)
            return False
        self._handle = handle
        self._held = True
        self._write_info(handle, identifier)
        return True

    def _acquire_exclusive_create(self, identifier: str, *, swept: bool = False) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_RDWR, 0o644)
        except FileExistsError:
            if not swept and self._sweep_stale():
                return self._acquire_exclusive_create(identifier, swept=True)
            self._log_contention(identifier)
            return False
        except OSError as exc:
            log_event(self.logger, logging.ERROR, "lock_open_failed", path=self.path, error=str(exc))
            return False
        handle = os.fdopen(fd, "r+", encoding="utf-8")
        self._handle = handle
        self._held = True
        self._write_info(handle, identifier)
        return True

    def _sweep_stale(self) -> bool:
        info = self.read_info()
        if info is None:
            return False
        stale = False
        if info.hostname == socket.gethostname() and info.pid is not None and not _pid_alive(info.pid):
            stale = True
        age = info.age_seconds()
        if age is not None and age > self.stale_seconds:
            stale = True
        if not stale:
            return False
        # Move the file aside before unlinking so a concurrent sweeper can only
        # ever claim one file, and verify it is still the holder judged stale.
        aside = f"{self.path}.stale-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        try:
            os.rename(self.path, aside)
        except OSError as exc:
            log_event(self.logger, logging.DEBUG, "lock_stale_rename_failed", path=self.path, error=str(exc))
            return False
        moved = read_lock_info(aside)
        if moved != info:
            self._restore_aside(aside)
            return False
        log_event(self.logger, logging.WARNING, "lock_stale_removed", path=self.path, holder=info.describe())
        try:
            os.unlink(aside)
        except OSError as exc:
            log_event(self.logger, logging.ERROR, "lock_stale_remove_failed", path=aside, error=str(exc))
        return True

    def _restore_aside(self, aside: str) -> None:
        # os.link refuses to overwrite, so a lock created meanwhile wins.
        try:
            os.link(aside, self.path)
        except OSError as exc:
            log_event(self.logger, logging.WARNING, "lock_restore_failed", path=self.path, error=str(exc))
        try:
            os.unlink(aside)
        except OSError as exc:
            log_event(self.logger, logging.ERROR, "lock_stale_remove_failed", path=aside, error=str(exc))

    def _write_info(self, handle: IO[str], identifier: str) -> None:
        payload = {
            "pid": os.getpid(),
            "timestamp": int(time.time()),
            "identifier": identifier,
            "hostname": socket.gethostname(),
        }
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(payload) + "\n")
        handle.flush()

    def _log_contention(self, identifier: str) -> None:
        info = self.read_info()
        holder = info.describe() if info else "unknown"
        log_event(self.logger, logging.DEBUG, "lock_held_elsewhere", identifier=identifier, holder=holder)


class NullLock:
    """Lock that always succeeds; for tests and single-process setups."""

    def __init__(self) -> None:
        self._held = False

    def acquire(self, identifier: str = "") -> bool:
        self._held = True
        return True

    def release(self) -> None:
        self._held = False

    def is_held(self) -> bool:
        return self._held


def read_lock_info(path: str) -> LockInfo | None:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = handle.read().strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    pid = data.get("pid")
    timestamp = data.get("timestamp")
    return LockInfo(
        pid=pid if isinstance(pid, int) else None,
        timestamp=timestamp if isinstance(timestamp, int) else None,
        identifier=str(data.get("identifier") or ""),
        hostname=str(data.get("hostname") or ""),
    )


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True

from __future__ import annotations

import os
import posixpath
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from common.errors import AlreadyMounted, MountTimeout, NotMounted
from common.rwlock import ReadWriteLock

from .driver import MountDriver, MountHandle
from .models import ActiveMount, MountRecord, MountStatus


SETTLE_POLL_STEP = 0.1


def local_mount_path(mount_directory: str, name: str, remote_path: str) -> str:
    """`<dir>/<name>` for an empty or root remote path, else `<dir>/<name>/<basename(remote)>`."""
    base = os.path.join(mount_directory, name)
    trimmed = remote_path.strip().rstrip("/")
    if not trimmed:
        return base
    leaf = posixpath.basename(trimmed)
    if not leaf or leaf in (".", ".."):
        return base
    return os.path.join(base, leaf)


class MountRegistry:
    """
    In-memory record of what this process believes is mounted.

    - One `ReadWriteLock` guards `_records` and `_busy`. The lock is never held
      across a driver call: a name is reserved in `_busy`, the lock is
      released, the driver runs, and the lock is re-acquired to commit.
    - `list()`/`get()` return copies; the internal map never escapes.
    - Only `apply_active()` (reconciliation) updates or drops existing records.
    """

    def __init__(
        self,
        driver: MountDriver,
        *,
        mount_directory: str,
        settle_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._driver = driver
        self._mount_directory = mount_directory
        self._settle_seconds = settle_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = ReadWriteLock()
        self._records: Dict[str, MountRecord] = {}
        self._busy: Set[str] = set()
        # Child processes this registry started, kept so exits get reaped.
        self._handles: Dict[str, MountHandle] = {}

    # -------- Public API --------
    def mount(self, name: str, remote_path: str = "", *, mount_directory: Optional[str] = None) -> MountRecord:
        with self._lock.write_locked():
            if name in self._records or name in self._busy:
                raise AlreadyMounted(f"Data source '{name}' is already mounted")
            self._busy.add(name)
            local_path = local_mount_path(mount_directory or self._mount_directory, name, remote_path)

        try:
            handle = self._driver.start(name, remote_path, local_path)
            self._await_settle(name, handle)
        except BaseException:
            with self._lock.write_locked():
                self._busy.discard(name)
            raise

        record = MountRecord(
            name=name,
            remote_path=remote_path,
            local_path=local_path,
            pid=handle.pid,
            status=MountStatus.MOUNTED,
            mounted_at=self._clock(),
        )
        with self._lock.write_locked():
            self._busy.discard(name)
            self._records[name] = record
            self._handles[name] = handle
        logger.info(f"Mounted '{name}' at {local_path} (pid={handle.pid})")
        return record.copy()

    def unmount(self, name: str) -> None:
        with self._lock.write_locked():
            record = self._records.get(name)
            if record is None or name in self._busy:
                raise NotMounted(f"Data source '{name}' is not mounted")
            self._busy.add(name)

        try:
            try:
                self._driver.stop(record.local_path)
            except NotMounted:
                logger.info(f"'{name}' was already unmounted at {record.local_path}")
        except BaseException:
            with self._lock.write_locked():
                self._busy.discard(name)
            raise

        with self._lock.write_locked():
            self._busy.discard(name)
            self._records.pop(name, None)
            handle = self._handles.pop(name, None)
        if handle is not None:
            handle.poll()
        logger.info(f"Unmounted '{name}'")

    def list(self) -> List[MountRecord]:
        with self._lock.read_locked():
            return [self._records[k].copy() for k in sorted(self._records)]

    def get(self, name: str) -> Optional[MountRecord]:
        with self._lock.read_locked():
            record = self._records.get(name)
            return record.copy() if record is not None else None

    def is_mounted(self, name: str) -> bool:
        with self._lock.read_locked():
            return name in self._records

    def apply_active(self, active: Iterable[ActiveMount], *, observed_at: float) -> List[str]:
        """Reconcile records against a process-table snapshot taken at `observed_at`.

        Active names get their status (and pid, when reported) refreshed.
        Missing names are dropped unless the record is newer than the snapshot
        or a mount/unmount on it is in flight. A missing name whose child
        process has exited is dropped regardless of age. Every child this
        registry started is polled, so exited ones are reaped. Returns the
        dropped names.
        """
        by_name: Dict[str, ActiveMount] = {}
        for am in active:
            by_name.setdefault(am.name, am)

        removed: List[str] = []
        with self._lock.write_locked():
            for name, record in list(self._records.items()):
                if name in self._busy:
                    continue
                exited = False
                handle = self._handles.get(name)
                if handle is not None and handle.poll() is not None:
                    exited = True
                    del self._handles[name]
                seen = by_name.get(name)
                if seen is not None:
                    record.status = seen.status
                    if seen.pid is not None:
                        record.pid = seen.pid
                elif exited or record.mounted_at <= observed_at:
                    del self._records[name]
                    self._handles.pop(name, None)
                    removed.append(name)
        for name in removed:
            logger.warning(f"Mount '{name}' is no longer active; dropped from registry")
        return removed

    # -------- Internal --------
    def _await_settle(self, name: str, handle: MountHandle) -> None:
        deadline = self._clock() + self._settle_seconds
        while True:
            code = handle.poll()
            if code is not None:
                raise MountTimeout(
                    f"Mount process for '{name}' exited during startup",
                    returncode=code,
                    output=handle.output(),
                )
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(min(SETTLE_POLL_STEP, remaining))

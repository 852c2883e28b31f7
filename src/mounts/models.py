from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class MountStatus(str, Enum):
    MOUNTED = "mounted"
    ERROR = "error"


@dataclass
class MountRecord:
    """What this process believes is mounted under `name`.

    `mounted_at` is a `time.monotonic()` stamp taken when the record was
    inserted; reconciliation only removes records older than its snapshot.
    """

    name: str
    remote_path: str
    local_path: str
    pid: Optional[int] = None
    status: MountStatus = MountStatus.MOUNTED
    mounted_at: float = 0.0

    def copy(self) -> "MountRecord":
        return replace(self)


@dataclass(frozen=True)
class ActiveMount:
    """A live mount process as reconstructed from the OS process table."""

    name: str
    remote: str
    local_path: str
    pid: Optional[int] = None
    status: MountStatus = MountStatus.MOUNTED


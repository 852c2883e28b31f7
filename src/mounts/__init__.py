"""
Mount orchestration: the driver seam to `rclone mount`, the in-memory mount
registry and the background reconciliation loop.
"""

from .driver import MountDriver, MountHandle, RcloneDriver, parse_mount_argv
from .models import ActiveMount, MountRecord, MountStatus
from .reconciler import ReconciliationLoop
from .registry import MountRegistry, local_mount_path

__all__ = [
    "ActiveMount",
    "MountDriver",
    "MountHandle",
    "MountRecord",
    "MountRegistry",
    "MountStatus",
    "RcloneDriver",
    "ReconciliationLoop",
    "local_mount_path",
    "parse_mount_argv",
]

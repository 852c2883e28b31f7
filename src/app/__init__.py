"""
Application wiring: `AppContext` owns the config store, the mount registry,
the reconciliation loop and the external collaborators for one rmount process.
"""

from .context import AppContext, BackupSettings, bootstrap

__all__ = ["AppContext", "BackupSettings", "bootstrap"]

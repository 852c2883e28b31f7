from __future__ import annotations

from typing import Optional


class RMountError(RuntimeError):
    """Base error for rmount. Callers match on the subclass, never on the message."""


class NotUnlocked(RMountError):
    """The config store has no key; call `unlock()` first."""


class DuplicateName(RMountError):
    """A data source with this name already exists."""


class NotFound(RMountError):
    """No data source with this name."""


class AlreadyMounted(RMountError):
    """A mount record (or an in-flight mount/unmount) exists for this name."""


class NotMounted(RMountError):
    """Nothing is mounted under this name or path."""


class DriverError(RMountError):
    """An external tool failed. Carries its exit status and captured output."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        if self.returncode is None and not self.output:
            return base
        return f"{base} (exit={self.returncode}, output={self.output[:200]!r})"


class MountTimeout(DriverError):
    """The mount process exited before the settle window elapsed."""


class DecryptError(RMountError):
    """Authentication failed: wrong passphrase or tampered file."""


class CorruptFormat(RMountError):
    """The encrypted file is truncated or its plaintext is not a valid config."""


class TransportError(RMountError):
    """Remote backup or object-store request failed."""


class ConnectionTestFailed(RMountError):
    """The data source could not be reached with the given credentials."""


__all__ = [
    "RMountError",
    "NotUnlocked",
    "DuplicateName",
    "NotFound",
    "AlreadyMounted",
    "NotMounted",
    "DriverError",
    "MountTimeout",
    "DecryptError",
    "CorruptFormat",
    "TransportError",
    "ConnectionTestFailed",
]

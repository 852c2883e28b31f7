from __future__ import annotations

import os
import plistlib
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from loguru import logger

from .errors import DriverError, RMountError
from .fsutil import atomic_write_bytes


Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def _default_runner(argv: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(list(argv), capture_output=True, text=True, timeout=30, check=False)


def default_launch_command(app_name: str = "rmount") -> List[str]:
    """The installed `rmount` console script, else `python -m app` under this interpreter."""
    script = shutil.which(app_name)
    if script:
        return [script]
    return [sys.executable, "-m", "app"]


class AutoStartIntegrator:
    """
    Registers the application to launch at login.

    - macOS: `~/Library/LaunchAgents/<name>.plist`, loaded with `launchctl`.
    - Linux: `~/.config/autostart/<name>.desktop` (XDG autostart).
    """

    def __init__(
        self,
        app_name: str = "rmount",
        command: Optional[Sequence[str]] = None,
        *,
        platform: str = sys.platform,
        home: Optional[Path] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        self._name = app_name
        self._command = list(command) if command else default_launch_command(app_name)
        self._platform = platform
        self._home = home or Path.home()
        self._run_cmd = runner or _default_runner

    @property
    def entry_path(self) -> Path:
        if self._platform == "darwin":
            return self._home / "Library" / "LaunchAgents" / f"{self._name}.plist"
        if self._platform.startswith("linux"):
            config_home = os.environ.get("XDG_CONFIG_HOME") or str(self._home / ".config")
            return Path(config_home) / "autostart" / f"{self._name}.desktop"
        raise RMountError(f"Autostart is not supported on {self._platform}")

    def render(self) -> bytes:
        if self._platform == "darwin":
            return plistlib.dumps(
                {
                    "Label": self._name,
                    "ProgramArguments": list(self._command),
                    "RunAtLoad": True,
                    "KeepAlive": False,
                }
            )
        lines: List[str] = [
            "[Desktop Entry]",
            "Type=Application",
            f"Name={self._name}",
            f"Exec={shlex.join(self._command)}",
            "X-GNOME-Autostart-enabled=true",
            "Terminal=false",
        ]
        return ("\n".join(lines) + "\n").encode("utf-8")

    def enable(self) -> None:
        path = self.entry_path
        atomic_write_bytes(path, self.render(), mode=0o644)
        if self._platform == "darwin":
            self._launchctl("load", str(path))
        logger.info(f"Autostart enabled via {path}")

    def disable(self) -> None:
        path = self.entry_path
        if self._platform == "darwin" and self.is_enabled():
            self._launchctl("unload", str(path))
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        logger.info("Autostart disabled")

    def is_enabled(self) -> bool:
        path = self.entry_path
        if not path.exists():
            return False
        if self._platform == "darwin":
            try:
                return self._run_cmd(["launchctl", "list", self._name]).returncode == 0
            except OSError:
                return False
        return True

    def _launchctl(self, *args: str) -> None:
        argv = ["launchctl", *args]
        try:
            result = self._run_cmd(argv)
        except OSError as exc:
            raise DriverError(f"Failed to run launchctl: {exc}") from exc
        if result.returncode != 0:
            raise DriverError(
                f"launchctl {args[0]} failed",
                returncode=result.returncode,
                output=(result.stdout or "") + (result.stderr or ""),
            )

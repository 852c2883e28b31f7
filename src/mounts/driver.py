from __future__ import annotations

import configparser
import io
import os
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from common.errors import DriverError, NotMounted
from common.fsutil import atomic_write_bytes
from state.models import S3DataSource

from .models import ActiveMount


Runner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]

COMMAND_TIMEOUT = 30.0
MOUNT_SUBCOMMANDS = ("mount", "cmount")

# rclone flags that consume the following argv token when not written as --flag=value.
_VALUE_FLAGS = frozenset(
    {
        "--config",
        "--cache-dir",
        "--vfs-cache-mode",
        "--vfs-cache-max-age",
        "--vfs-cache-max-size",
        "--vfs-read-chunk-size",
        "--vfs-write-back",
        "--dir-cache-time",
        "--attr-timeout",
        "--poll-interval",
        "--buffer-size",
        "--daemon-timeout",
        "--log-file",
        "--log-level",
        "--uid",
        "--gid",
        "--umask",
        "--volname",
        "--user-agent",
        "--bwlimit",
        "--transfers",
        "--checkers",
        "--stats",
        "--rc-addr",
        "--max-read-ahead",
        "--option",
        "-o",
    }
)


class MountHandle(ABC):
    """A started mount process."""

    pid: Optional[int] = None

    @abstractmethod
    def poll(self) -> Optional[int]:
        """Exit status if the process has exited, else None."""

    def output(self) -> str:
        return ""


class MountDriver(ABC):
    """Starts, stops and enumerates external mount processes."""

    @abstractmethod
    def start(self, name: str, remote_path: str, local_path: str) -> MountHandle:
        """Launch a mount of data source `name` at `local_path`. May return before it serves requests."""

    @abstractmethod
    def stop(self, local_path: str) -> None:
        """Unmount `local_path`. Raises NotMounted when nothing is mounted there."""

    @abstractmethod
    def list_active(self) -> List[ActiveMount]:
        """Reconstruct live mounts from the OS process table."""

    def write_config(self, sources: Sequence[S3DataSource]) -> None:
        """Regenerate driver-side connection config. Drivers without one ignore this."""


class ProcessHandle(MountHandle):
    def __init__(self, proc: "subprocess.Popen[bytes]", log_path: Path) -> None:
        self._proc = proc
        self._log_path = log_path
        self.pid = proc.pid

    def poll(self) -> Optional[int]:
        return self._proc.poll()

    def output(self) -> str:
        try:
            data = self._log_path.read_bytes()
        except FileNotFoundError:
            return ""
        return data[-4000:].decode("utf-8", errors="replace")


# -------- argv parsing (process table -> mount description) --------
def _is_rclone(arg0: str, binary_names: Iterable[str]) -> bool:
    base = os.path.basename(arg0)
    if base.lower().endswith(".exe"):
        base = base[:-4]
    return base in binary_names


def _positionals(args: Sequence[str]) -> List[str]:
    out: List[str] = []
    i = 0
    while i < len(args):
        tok = args[i]
        if tok == "--":
            out.extend(args[i + 1 :])
            break
        if tok.startswith("-") and len(tok) > 1:
            if "=" not in tok and tok in _VALUE_FLAGS:
                i += 1  # skip the flag's value
        else:
            out.append(tok)
        i += 1
    return out


def parse_mount_argv(
    argv: Sequence[str], *, binary_names: Iterable[str] = ("rclone",)
) -> Optional[Tuple[str, str, str]]:
    """Return `(name, remote, local_path)` for an `rclone mount` invocation, else None.

    Handles flags before or after the subcommand, `--flag=value`, `--flag value`
    for known value flags, and boolean flags. `remote` is the part after the
    first ':' of the remote spec.
    """
    if not argv or not _is_rclone(argv[0], tuple(binary_names)):
        return None
    pos = _positionals(argv[1:])
    if len(pos) < 3 or pos[0] not in MOUNT_SUBCOMMANDS:
        return None
    remote_spec, local_path = pos[1], pos[2]
    if ":" not in remote_spec:
        return None
    name, remote = remote_spec.split(":", 1)
    if not name:
        return None
    return name, remote, local_path


def parse_ps_output(text: str) -> List[Tuple[int, List[str]]]:
    """Parse `ps -axo pid=,args=` output. Arguments containing spaces cannot be recovered."""
    out: List[Tuple[int, List[str]]] = []
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        out.append((pid, parts[1:]))
    return out


def render_rclone_config(sources: Iterable[S3DataSource]) -> str:
    parser = configparser.ConfigParser(interpolation=None)
    for ds in sources:
        section: Dict[str, str] = {
            "type": "s3",
            "provider": "Other" if ds.endpoint else "AWS",
            "env_auth": "false",
            "access_key_id": ds.access_key,
            "secret_access_key": ds.secret_key,
            "region": ds.region,
        }
        if ds.endpoint:
            section["endpoint"] = ds.endpoint
        parser[ds.name] = section
    buf = io.StringIO()
    parser.write(buf)
    return buf.getvalue()


def _default_runner(argv: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(
        list(argv), capture_output=True, text=True, timeout=COMMAND_TIMEOUT, check=False
    )


class RcloneDriver(MountDriver):
    """
    `MountDriver` backed by `rclone mount`.

    Notes
    - Mounts run as foreground child processes in their own session, so the
      returned handle's pid is the process actually serving the mount.
    - `rclone.conf` holds credentials in cleartext (mode 0600). It is rewritten
      atomically from the current data sources by `write_config()`, serialized
      by an internal lock so concurrent writers never interleave.
    - Process enumeration reads `/proc/<pid>/cmdline` when available and
      falls back to `ps` elsewhere (macOS).
    """

    def __init__(
        self,
        config_dir: Path,
        *,
        binary: str = "rclone",
        runner: Optional[Runner] = None,
        popen: Callable[..., "subprocess.Popen[bytes]"] = subprocess.Popen,
        proc_root: Path = Path("/proc"),
        platform: str = sys.platform,
        ismount: Callable[[str], bool] = os.path.ismount,
    ) -> None:
        self._config_dir = Path(config_dir)
        self._binary = binary
        self._run_cmd = runner or _default_runner
        self._popen = popen
        self._proc_root = proc_root
        self._platform = platform
        self._ismount = ismount
        self._config_lock = threading.Lock()
        self._buckets: Dict[str, str] = {}

    @property
    def config_path(self) -> Path:
        return self._config_dir / "rclone.conf"

    @property
    def cache_dir(self) -> Path:
        return self._config_dir / "cache"

    @property
    def log_dir(self) -> Path:
        return self._config_dir / "logs"

    # -------- Configuration --------
    def write_config(self, sources: Sequence[S3DataSource]) -> None:
        content = render_rclone_config(sources).encode("utf-8")
        with self._config_lock:
            atomic_write_bytes(self.config_path, content)
            self._buckets = {ds.name: ds.bucket for ds in sources}
        logger.debug(f"Wrote rclone config with {len(sources)} remotes")

    def remote_spec(self, name: str, remote_path: str) -> str:
        with self._config_lock:
            bucket = self._buckets.get(name, "")
        parts = [p for p in (bucket.strip("/"), remote_path.strip("/")) if p]
        return f"{name}:{'/'.join(parts)}"

    def is_available(self) -> bool:
        try:
            result = self._run_cmd([self._binary, "version"])
        except (OSError, subprocess.SubprocessError):
            return False
        return result.returncode == 0

    # -------- MountDriver --------
    def start(self, name: str, remote_path: str, local_path: str) -> MountHandle:
        try:
            Path(local_path).mkdir(parents=True, exist_ok=True)
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DriverError(f"Failed to create mount directory {local_path}: {exc}") from exc

        argv = [
            self._binary,
            "mount",
            f"--config={self.config_path}",
            "--vfs-cache-mode=full",
            f"--cache-dir={self.cache_dir}",
            "--allow-non-empty",
            self.remote_spec(name, remote_path),
            local_path,
        ]
        log_path = self.log_dir / f"mount-{name}.log"
        logger.info(f"Starting rclone mount for '{name}' at {local_path}")
        try:
            with open(log_path, "ab") as log_file:
                proc = self._popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=log_file,
                    start_new_session=True,
                )
        except OSError as exc:
            raise DriverError(f"Failed to start {self._binary}: {exc}") from exc
        return ProcessHandle(proc, log_path)

    def _unmount_commands(self, local_path: str) -> List[List[str]]:
        if self._platform == "darwin":
            return [["umount", local_path], ["diskutil", "unmount", "force", local_path]]
        return [["fusermount", "-u", local_path], ["umount", local_path]]

    def stop(self, local_path: str) -> None:
        last: Optional["subprocess.CompletedProcess[str]"] = None
        for argv in self._unmount_commands(local_path):
            try:
                result = self._run_cmd(argv)
            except FileNotFoundError:
                logger.debug(f"{argv[0]} not available; trying next unmount command")
                continue
            except subprocess.TimeoutExpired as exc:
                raise DriverError(f"{argv[0]} timed out unmounting {local_path}") from exc
            if result.returncode == 0:
                logger.info(f"Unmounted {local_path}")
                return
            last = result

        if not self._ismount(local_path):
            raise NotMounted(f"{local_path} is not mounted")
        if last is None:
            raise DriverError(f"No unmount command available for {local_path}")
        output = (last.stdout or "") + (last.stderr or "")
        raise DriverError(f"Failed to unmount {local_path}", returncode=last.returncode, output=output)

    def list_active(self) -> List[ActiveMount]:
        names = (os.path.basename(self._binary), "rclone")
        mounts: List[ActiveMount] = []
        for pid, argv in self._processes():
            parsed = parse_mount_argv(argv, binary_names=names)
            if parsed is None:
                continue
            name, remote, local_path = parsed
            mounts.append(ActiveMount(name=name, remote=remote, local_path=local_path, pid=pid))
        return mounts

    # -------- Internal --------
    def _processes(self) -> List[Tuple[int, List[str]]]:
        if self._proc_root.is_dir():
            return list(self._proc_cmdlines())
        try:
            result = self._run_cmd(["ps", "-axo", "pid=,args="])
        except (OSError, subprocess.SubprocessError) as exc:
            raise DriverError(f"Failed to list processes: {exc}") from exc
        if result.returncode != 0:
            raise DriverError(
                "Failed to list processes", returncode=result.returncode, output=result.stderr or ""
            )
        return parse_ps_output(result.stdout or "")

    def _proc_cmdlines(self) -> Iterable[Tuple[int, List[str]]]:
        for entry in self._proc_root.iterdir():
            if not entry.name.isdigit():
                continue
            try:
                raw = (entry / "cmdline").read_bytes()
            except (FileNotFoundError, ProcessLookupError, PermissionError):
                continue  # process exited or is not ours
            args = [a.decode("utf-8", errors="surrogateescape") for a in raw.split(b"\0") if a]
            if args:
                yield int(entry.name), args

from __future__ import annotations

from typing import List, Optional

from mounts.driver import MountDriver, MountHandle
from mounts.models import ActiveMount


class FakeHandle(MountHandle):
    def __init__(self, pid: int = 4242, exit_code: Optional[int] = None, output: str = "") -> None:
        self.pid = pid
        self._exit_code = exit_code
        self._output = output

    def poll(self) -> Optional[int]:
        return self._exit_code

    def output(self) -> str:
        return self._output


class FakeDriver(MountDriver):
    def __init__(self) -> None:
        self.started: List[tuple] = []
        self.stopped: List[str] = []
        self.configs: List[list] = []
        self.next_handle: MountHandle = FakeHandle()
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.active: List[ActiveMount] = []

    def start(self, name, remote_path, local_path):
        self.started.append((name, remote_path, local_path))
        if self.start_error is not None:
            raise self.start_error
        return self.next_handle

    def stop(self, local_path):
        self.stopped.append(local_path)
        if self.stop_error is not None:
            raise self.stop_error

    def list_active(self):
        return list(self.active)

    def write_config(self, sources):
        self.configs.append([ds.name for ds in sources])


class FakeClock:
    """Monotonic clock that only moves when `sleep` is called or `now` is set."""

    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds

from __future__ import annotations

import threading
import time

import pytest

from common.errors import DriverError
from mounts.driver import RcloneDriver
from mounts.models import ActiveMount, MountStatus
from mounts.reconciler import ReconciliationLoop
from mounts.registry import MountRegistry
from state.models import S3DataSource

from fakes import FakeClock, FakeDriver


def _setup(clock=None):
    clock = clock or FakeClock(now=10.0)
    driver = FakeDriver()
    registry = MountRegistry(
        driver, mount_directory="/mnt/rmount", settle_seconds=0, clock=clock, sleep=clock.sleep
    )
    loop = ReconciliationLoop(driver, registry, interval=30.0, clock=clock)
    return clock, driver, registry, loop


def test_tick_drops_mount_whose_process_is_gone():
    clock, driver, registry, loop = _setup()
    registry.mount("backup-bucket")
    clock.now += 1

    assert loop.tick() is True
    assert registry.list() == []
    assert loop.ticks_completed == 1


def test_tick_refreshes_pid_and_status():
    clock, driver, registry, loop = _setup()
    rec = registry.mount("a")
    clock.now += 1
    driver.active = [
        ActiveMount(name="a", remote="bucket", local_path=rec.local_path, pid=777, status=MountStatus.ERROR)
    ]

    loop.tick()

    got = registry.get("a")
    assert got.pid == 777
    assert got.status is MountStatus.ERROR


def test_enumeration_failure_skips_tick_and_keeps_records():
    clock, driver, registry, loop = _setup()
    registry.mount("a")
    clock.now += 1

    def broken():
        raise DriverError("ps failed")

    driver.list_active = broken

    assert loop.tick() is False
    assert registry.is_mounted("a")
    assert loop.ticks_skipped == 1

    # The next tick still runs.
    driver.list_active = lambda: []
    assert loop.tick() is True
    assert not registry.is_mounted("a")


def test_overlapping_tick_is_skipped():
    clock, driver, registry, loop = _setup()
    gate = threading.Event()
    entered = threading.Event()

    def slow_list():
        entered.set()
        gate.wait(5)
        return []

    driver.list_active = slow_list
    results = []
    t = threading.Thread(target=lambda: results.append(loop.tick()))
    t.start()
    assert entered.wait(5)

    assert loop.tick() is False
    gate.set()
    t.join(5)

    assert results == [True]
    assert loop.ticks_completed == 1
    assert loop.ticks_skipped == 1


def test_mount_made_after_snapshot_survives_tick():
    clock, driver, registry, loop = _setup()

    def list_then_mount():
        # A mount lands between the process-table read and the registry update.
        clock.now += 1
        registry.mount("late")
        return []

    driver.list_active = list_then_mount
    loop.tick()

    assert registry.is_mounted("late")


def test_interval_must_be_positive():
    _, driver, registry, _ = _setup()
    with pytest.raises(ValueError):
        ReconciliationLoop(driver, registry, interval=0)


def test_background_thread_runs_ticks_and_stops():
    driver = FakeDriver()
    registry = MountRegistry(driver, mount_directory="/mnt/rmount", settle_seconds=0)
    loop = ReconciliationLoop(driver, registry, interval=0.01)

    loop.start()
    try:
        assert loop.is_running()
        deadline = time.monotonic() + 5
        while loop.ticks_completed == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        loop.stop()

    assert loop.ticks_completed >= 1
    assert not loop.is_running()


def test_live_rclone_mount_survives_tick(tmp_path):
    proc_root = tmp_path / "proc"

    class _Proc:
        pid = 4321

        def poll(self):
            return None

    def popen(argv, **kwargs):
        entry = proc_root / str(_Proc.pid)
        entry.mkdir(parents=True)
        (entry / "cmdline").write_bytes(b"\0".join(a.encode() for a in argv) + b"\0")
        return _Proc()

    clock = FakeClock(now=10.0)
    driver = RcloneDriver(tmp_path / "cfg", popen=popen, proc_root=proc_root)
    driver.write_config([S3DataSource(name="team_prod", bucket="data")])
    registry = MountRegistry(
        driver, mount_directory=str(tmp_path / "mnt"), settle_seconds=0, clock=clock, sleep=clock.sleep
    )
    loop = ReconciliationLoop(driver, registry, interval=30.0, clock=clock)

    registry.mount("team_prod", "/")
    clock.now += 1
    assert loop.tick() is True

    rec = registry.get("team_prod")
    assert rec is not None
    assert rec.pid == 4321

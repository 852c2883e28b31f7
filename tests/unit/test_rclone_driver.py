from __future__ import annotations

import configparser
import subprocess
from pathlib import Path
from typing import List

import pytest

from common.errors import DriverError, NotMounted
from mounts.driver import RcloneDriver, parse_mount_argv, parse_ps_output, render_rclone_config
from state.models import S3DataSource


class FakeRunner:
    def __init__(self, results=None) -> None:
        self.calls: List[List[str]] = []
        self.results = dict(results or {})

    def __call__(self, argv):
        argv = list(argv)
        self.calls.append(argv)
        outcome = self.results.get(argv[0], (0, "", ""))
        if isinstance(outcome, Exception):
            raise outcome
        code, out, err = outcome
        return subprocess.CompletedProcess(argv, code, stdout=out, stderr=err)


class FakeProc:
    def __init__(self, pid: int = 31337) -> None:
        self.pid = pid
        self.returncode = None

    def poll(self):
        return self.returncode


def _sources():
    return [
        S3DataSource(name="backup-bucket", access_key="AK", secret_key="SK", region="us-east-1", bucket="data"),
        S3DataSource(
            name="minio", endpoint="http://127.0.0.1:9000", access_key="m", secret_key="n", region="", bucket="b"
        ),
    ]


# -------- argv parsing --------
@pytest.mark.parametrize(
    "argv,expected",
    [
        (["rclone", "mount", "backup-bucket:/", "/home/u/mounts/backup-bucket"],
         ("backup-bucket", "/", "/home/u/mounts/backup-bucket")),
        (["/usr/bin/rclone", "mount", "--vfs-cache-mode", "full", "photos:2020", "/mnt/photos/2020"],
         ("photos", "2020", "/mnt/photos/2020")),
        (["rclone", "--config=/x/rclone.conf", "mount", "--allow-non-empty", "a:b/c", "/m"],
         ("a", "b/c", "/m")),
        (["rclone", "cmount", "a:", "/m", "--daemon"], ("a", "", "/m")),
    ],
)
def test_parse_mount_argv_recognizes_mounts(argv, expected):
    assert parse_mount_argv(argv) == expected


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["rclone", "sync", "a:b", "/tmp"],
        ["rclone", "mount", "a:b"],
        ["rclone", "mount", "no-colon", "/m"],
        ["rclone", "mount", ":b", "/m"],
        ["python", "mount", "a:b", "/m"],
    ],
)
def test_parse_mount_argv_rejects_other_commands(argv):
    assert parse_mount_argv(argv) is None


def test_parse_mount_argv_custom_binary_name():
    argv = ["/opt/bin/rclone-beta", "mount", "a:b", "/m"]
    assert parse_mount_argv(argv) is None
    assert parse_mount_argv(argv, binary_names=("rclone-beta",)) == ("a", "b", "/m")


def test_parse_ps_output_skips_noise():
    text = "  101 /usr/bin/rclone mount a:b /m\n\ngarbage\n  7 sleep 10\n"
    assert parse_ps_output(text) == [
        (101, ["/usr/bin/rclone", "mount", "a:b", "/m"]),
        (7, ["sleep", "10"]),
    ]


# -------- config rendering --------
def test_render_rclone_config_sections():
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(render_rclone_config(_sources()))

    assert parser.sections() == ["backup-bucket", "minio"]
    aws = parser["backup-bucket"]
    assert aws["type"] == "s3"
    assert aws["provider"] == "AWS"
    assert aws["access_key_id"] == "AK"
    assert aws["secret_access_key"] == "SK"
    assert "endpoint" not in aws

    minio = parser["minio"]
    assert minio["provider"] == "Other"
    assert minio["endpoint"] == "http://127.0.0.1:9000"


def test_write_config_is_private_and_rewritten(tmp_path):
    driver = RcloneDriver(tmp_path, runner=FakeRunner())
    driver.write_config(_sources())
    assert (driver.config_path.stat().st_mode & 0o777) == 0o600

    driver.write_config(_sources()[:1])
    parser = configparser.ConfigParser(interpolation=None)
    parser.read(driver.config_path)
    assert parser.sections() == ["backup-bucket"]


def test_remote_spec_includes_bucket(tmp_path):
    driver = RcloneDriver(tmp_path, runner=FakeRunner())
    driver.write_config(_sources())

    assert driver.remote_spec("backup-bucket", "/") == "backup-bucket:data"
    assert driver.remote_spec("backup-bucket", "/2020/") == "backup-bucket:data/2020"
    assert driver.remote_spec("unknown", "x") == "unknown:x"


# -------- start --------
def test_start_launches_foreground_mount(tmp_path):
    launched = {}

    def popen(argv, **kwargs):
        launched["argv"] = argv
        launched["kwargs"] = kwargs
        return FakeProc()

    driver = RcloneDriver(tmp_path / "cfg", runner=FakeRunner(), popen=popen)
    driver.write_config(_sources())
    local = tmp_path / "mnt" / "backup-bucket"

    handle = driver.start("backup-bucket", "/", str(local))

    assert handle.pid == 31337
    assert handle.poll() is None
    assert local.is_dir()
    argv = launched["argv"]
    assert argv[:2] == ["rclone", "mount"]
    assert argv[-2:] == ["backup-bucket:data", str(local)]
    assert f"--config={driver.config_path}" in argv
    assert "--daemon" not in argv
    assert launched["kwargs"]["start_new_session"] is True
    assert parse_mount_argv(argv) == ("backup-bucket", "data", str(local))


def test_start_reports_log_output(tmp_path):
    def popen(argv, **kwargs):
        kwargs["stderr"].write(b"Fatal error: bucket missing\n")
        proc = FakeProc()
        proc.returncode = 1
        return proc

    driver = RcloneDriver(tmp_path, runner=FakeRunner(), popen=popen)
    handle = driver.start("a", "", str(tmp_path / "m"))

    assert handle.poll() == 1
    assert "bucket missing" in handle.output()


def test_start_missing_binary_raises_driver_error(tmp_path):
    def popen(argv, **kwargs):
        raise FileNotFoundError(argv[0])

    driver = RcloneDriver(tmp_path, runner=FakeRunner(), popen=popen)
    with pytest.raises(DriverError):
        driver.start("a", "", str(tmp_path / "m"))


# -------- stop --------
def test_stop_linux_uses_fusermount(tmp_path):
    runner = FakeRunner()
    driver = RcloneDriver(tmp_path, runner=runner, platform="linux")
    driver.stop("/m")
    assert runner.calls == [["fusermount", "-u", "/m"]]


def test_stop_falls_back_to_umount(tmp_path):
    runner = FakeRunner({"fusermount": FileNotFoundError("fusermount")})
    driver = RcloneDriver(tmp_path, runner=runner, platform="linux")
    driver.stop("/m")
    assert runner.calls == [["fusermount", "-u", "/m"], ["umount", "/m"]]


def test_stop_darwin_falls_back_to_diskutil(tmp_path):
    runner = FakeRunner({"umount": (1, "", "busy")})
    driver = RcloneDriver(tmp_path, runner=runner, platform="darwin")
    driver.stop("/Volumes/x")
    assert runner.calls[-1] == ["diskutil", "unmount", "force", "/Volumes/x"]


def test_stop_not_a_mount_point_raises_not_mounted(tmp_path):
    runner = FakeRunner({"fusermount": (1, "", "not found"), "umount": (32, "", "not mounted")})
    driver = RcloneDriver(tmp_path, runner=runner, platform="linux", ismount=lambda p: False)
    with pytest.raises(NotMounted):
        driver.stop("/m")


def test_stop_failure_on_live_mount_raises_driver_error(tmp_path):
    runner = FakeRunner({"fusermount": (1, "", "busy"), "umount": (32, "", "target is busy")})
    driver = RcloneDriver(tmp_path, runner=runner, platform="linux", ismount=lambda p: True)
    with pytest.raises(DriverError) as excinfo:
        driver.stop("/m")
    assert excinfo.value.returncode == 32
    assert "target is busy" in excinfo.value.output


# -------- list_active --------
def _fake_proc(root: Path, pid: int, argv: List[str]) -> None:
    d = root / str(pid)
    d.mkdir(parents=True)
    (d / "cmdline").write_bytes(b"\0".join(a.encode() for a in argv) + b"\0")


def test_list_active_reads_proc(tmp_path):
    proc_root = tmp_path / "proc"
    _fake_proc(proc_root, 100, ["rclone", "mount", "--config=/c", "backup-bucket:data", "/mnt/backup-bucket"])
    _fake_proc(proc_root, 200, ["bash", "-c", "sleep 1"])
    _fake_proc(proc_root, 300, ["/usr/local/bin/rclone", "mount", "photos:p/2020", "/mnt/photos/2020"])
    (proc_root / "self").mkdir()

    driver = RcloneDriver(tmp_path / "cfg", runner=FakeRunner(), proc_root=proc_root)
    active = sorted(driver.list_active(), key=lambda m: m.name)

    assert [(m.name, m.remote, m.local_path, m.pid) for m in active] == [
        ("backup-bucket", "data", "/mnt/backup-bucket", 100),
        ("photos", "p/2020", "/mnt/photos/2020", 300),
    ]


def test_list_active_falls_back_to_ps(tmp_path):
    ps_out = "  55 rclone mount a:b /mnt/a\n  56 /sbin/init\n"
    runner = FakeRunner({"ps": (0, ps_out, "")})
    driver = RcloneDriver(tmp_path, runner=runner, proc_root=tmp_path / "no-proc")

    active = driver.list_active()

    assert runner.calls == [["ps", "-axo", "pid=,args="]]
    assert [(m.name, m.pid) for m in active] == [("a", 55)]


def test_list_active_ps_failure_raises_driver_error(tmp_path):
    runner = FakeRunner({"ps": (1, "", "operation not permitted")})
    driver = RcloneDriver(tmp_path, runner=runner, proc_root=tmp_path / "no-proc")
    with pytest.raises(DriverError):
        driver.list_active()


def test_is_available(tmp_path):
    assert RcloneDriver(tmp_path, runner=FakeRunner()).is_available()
    missing = FakeRunner({"rclone": FileNotFoundError("rclone")})
    assert not RcloneDriver(tmp_path, runner=missing).is_available()

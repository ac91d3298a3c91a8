import os
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from replays.capture_driver import (
    CaptureError,
    CaptureErrorKind,
    CaptureHints,
    DryRunCaptureDriver,
    FfmpegCaptureDriver,
    MulticastCaptureDriver,
)
from replays.clock import FixedClock
from replays.process_control import POSIX_GROUPS, ProcessGroups

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="fake ffmpeg is a POSIX script")

FAKE_FFMPEG = """\
#!{python}
import os, shutil, subprocess, sys, time

args = sys.argv[1:]
out = args[-1]
source = args[args.index("-i") + 1]

if os.path.isfile(source):
    time.sleep(float(os.environ.get("FAKE_FFMPEG_TRIM_SLEEP", "0")))
    with open(out, "w") as f:
        f.write(" ".join(args))
    sys.exit(0)
if source.endswith(".mkv") or "missing" in source:
    sys.exit(1)

with open(out, "wb") as f:
    f.write(b"frames")

pidfile = os.environ.get("FAKE_FFMPEG_CHILD_PIDFILE")
if pidfile:
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    with open(pidfile, "a") as f:
        f.write("%d\\n" % child.pid)

if os.environ.get("FAKE_FFMPEG_IGNORE_Q"):
    while True:
        time.sleep(1)

for line in sys.stdin:
    if line.strip() == "q":
        break
sys.exit(0)
"""


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Path:
    script = tmp_path / "bin" / "ffmpeg"
    script.parent.mkdir()
    script.write_text(textwrap.dedent(FAKE_FFMPEG).format(python=sys.executable))
    script.chmod(0o755)
    return script


@pytest.fixture
def groups() -> ProcessGroups:
    registry = ProcessGroups()
    yield registry
    registry.kill_all()


def _driver(fake_ffmpeg, groups, tmp_path, **kwargs):
    return FfmpegCaptureDriver(
        str(fake_ffmpeg),
        logs_dir=tmp_path / "logs",
        clock=FixedClock(1000),
        groups=groups,
        **kwargs,
    )


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _pid_alive(pid: int) -> bool:
    try:
        with open(f"/proc/{pid}/stat") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except (FileNotFoundError, ProcessLookupError):
        return False
    return state not in {"Z", "X"}


def test_missing_executable_is_config_error(tmp_path, groups):
    with pytest.raises(CaptureError) as exc:
        FfmpegCaptureDriver(str(tmp_path / "nope" / "ffmpeg"), groups=groups)
    assert exc.value.kind is CaptureErrorKind.CONFIG


def test_posix_uses_process_groups(groups):
    assert groups.mechanism == POSIX_GROUPS
    assert groups.popen_kwargs() == {"start_new_session": True}


def test_start_then_graceful_stop(fake_ffmpeg, groups, tmp_path):
    driver = _driver(fake_ffmpeg, groups, tmp_path)
    output = tmp_path / "videos" / "Alice_Li_SNATCH_attempt1_Camera1_1000.mkv"

    handle = driver.start("testsrc", output, CaptureHints(), camera_index=1)
    assert handle.running()
    assert handle.started_at_ms == 1000
    assert "-loglevel quiet" in handle.command
    assert _wait_for(output.exists)

    driver.request_stop(handle)
    info = driver.wait(handle, 5.0)

    assert info.returncode == 0
    assert not info.forced
    assert driver.live_handles() == []
    assert groups.live_children() == []


def test_request_stop_after_exit_is_gone(fake_ffmpeg, groups, tmp_path):
    driver = _driver(fake_ffmpeg, groups, tmp_path)
    handle = driver.start("testsrc", tmp_path / "w.mkv", CaptureHints(), camera_index=1)
    driver.request_stop(handle)
    driver.wait(handle, 5.0)

    with pytest.raises(CaptureError) as exc:
        driver.request_stop(handle)
    assert exc.value.kind is CaptureErrorKind.GONE


def test_wait_times_out_then_force_kill(fake_ffmpeg, groups, tmp_path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_IGNORE_Q", "1")
    driver = _driver(fake_ffmpeg, groups, tmp_path)
    handle = driver.start("testsrc", tmp_path / "w.mkv", CaptureHints(), camera_index=2)
    driver.request_stop(handle)

    with pytest.raises(CaptureError) as exc:
        driver.wait(handle, 0.2)
    assert exc.value.kind is CaptureErrorKind.TIMEOUT
    assert exc.value.camera_index == 2

    driver.force_kill(handle)
    assert handle.forced
    assert not handle.running()


def test_missing_device_is_bad_input(fake_ffmpeg, groups, tmp_path):
    driver = _driver(fake_ffmpeg, groups, tmp_path)
    with pytest.raises(CaptureError) as exc:
        driver.start("/dev/video-does-not-exist", tmp_path / "w.mkv", CaptureHints(), camera_index=3)
    assert exc.value.kind is CaptureErrorKind.BAD_INPUT
    assert exc.value.camera_index == 3


def test_trim_passes_offset(fake_ffmpeg, groups, tmp_path):
    driver = _driver(fake_ffmpeg, groups, tmp_path)
    source = tmp_path / "Alice_Li_SNATCH_attempt1_Camera1_1000.mkv"
    source.write_bytes(b"frames")
    target = tmp_path / "Senior_Women_64kg" / "clip.mp4"

    driver.trim(source, target, 1000, recode=True)

    recorded = target.read_text()
    assert "-ss 1.000" in recorded
    assert "libx264" in recorded


def test_trim_retries_then_fails(fake_ffmpeg, groups, tmp_path):
    sleeps = []
    driver = _driver(fake_ffmpeg, groups, tmp_path, trim_attempts=3, trim_backoff_sec=1.0, sleep=sleeps.append)

    with pytest.raises(CaptureError) as exc:
        driver.trim(tmp_path / "missing.mkv", tmp_path / "out.mp4", 0, recode=False)

    assert exc.value.kind is CaptureErrorKind.IO
    assert sleeps == [1.0, 1.0]
    assert not (tmp_path / "out.mp4").exists()


def test_ffmpeg_log_files(fake_ffmpeg, groups, tmp_path):
    driver = _driver(fake_ffmpeg, groups, tmp_path, log_ffmpeg=True)
    handle = driver.start("testsrc", tmp_path / "w.mkv", CaptureHints(), camera_index=1)
    assert "-loglevel info" in handle.command
    driver.request_stop(handle)
    driver.wait(handle, 5.0)
    assert (tmp_path / "logs" / "ffmpeg_20250329_033434_recording.log").exists()


@pytest.mark.skipif(not os.path.isdir("/proc"), reason="needs /proc to observe children")
def test_shutdown_kills_capture_children_and_descendants(fake_ffmpeg, groups, tmp_path, monkeypatch):
    pidfile = tmp_path / "children.pid"
    monkeypatch.setenv("FAKE_FFMPEG_IGNORE_Q", "1")
    monkeypatch.setenv("FAKE_FFMPEG_CHILD_PIDFILE", str(pidfile))
    driver = _driver(fake_ffmpeg, groups, tmp_path)

    handles = [
        driver.start("testsrc", tmp_path / f"w{i}.mkv", CaptureHints(), camera_index=i) for i in (1, 2)
    ]
    assert _wait_for(lambda: pidfile.exists() and len(pidfile.read_text().split()) == 2)
    grandchildren = [int(pid) for pid in pidfile.read_text().split()]

    started = time.monotonic()
    driver.shutdown()

    assert all(not handle.running() for handle in handles)
    assert _wait_for(lambda: not any(_pid_alive(pid) for pid in grandchildren), timeout=2.0)
    assert time.monotonic() - started < 2.0 + 1.0
    assert driver.live_handles() == []
    assert groups.live_children() == []


@pytest.mark.skipif(not os.path.isdir("/proc"), reason="needs /proc to observe children")
def test_shutdown_kills_running_trim_and_stops_retries(fake_ffmpeg, groups, tmp_path, monkeypatch):
    monkeypatch.setenv("FAKE_FFMPEG_TRIM_SLEEP", "60")
    sleeps = []
    driver = _driver(fake_ffmpeg, groups, tmp_path, trim_attempts=5, sleep=sleeps.append)
    source = tmp_path / "Alice_Li_SNATCH_attempt1_Camera1_1000.mkv"
    source.write_bytes(b"frames")
    outcome = {}

    def _trim():
        try:
            driver.trim(source, tmp_path / "S" / "clip.mp4", 1000, recode=False)
        except CaptureError as e:
            outcome["error"] = e

    worker = threading.Thread(target=_trim)
    worker.start()
    assert _wait_for(lambda: groups.live_children() != [])
    trim_pid = groups.live_children()[0].pid

    started = time.monotonic()
    driver.shutdown()
    worker.join(5)

    assert not worker.is_alive()
    assert time.monotonic() - started < 3.0
    assert outcome["error"].kind is CaptureErrorKind.GONE
    assert sleeps == []
    assert not _pid_alive(trim_pid)
    assert groups.live_children() == []

    with pytest.raises(CaptureError) as exc:
        driver.trim(source, tmp_path / "S" / "clip.mp4", 1000, recode=False)
    assert exc.value.kind is CaptureErrorKind.GONE


def test_multicast_driver_builds_udp_input(fake_ffmpeg, groups, tmp_path):
    driver = MulticastCaptureDriver(str(fake_ffmpeg), groups=groups)
    args = driver.build_recording_args("239.255.0.1:9001", tmp_path / "w.mkv", CaptureHints())
    assert "udp://239.255.0.1:9001" in args
    with pytest.raises(CaptureError) as exc:
        driver.build_recording_args("nope", tmp_path / "w.mkv", CaptureHints())
    assert exc.value.kind is CaptureErrorKind.BAD_INPUT


def test_dry_run_driver_renames_on_trim(tmp_path):
    driver = DryRunCaptureDriver(clock=FixedClock(1000))
    working = tmp_path / "Bob_SNATCH_attempt1_Camera1_1000.mkv"
    handle = driver.start("/dev/video0", working, CaptureHints(), camera_index=1)
    assert working.exists()
    driver.request_stop(handle)
    assert driver.wait(handle, 1.0).returncode == 0

    final = tmp_path / "unsorted" / "clip.mp4"
    driver.trim(working, final, 500, recode=False)
    assert final.exists()
    assert not working.exists()

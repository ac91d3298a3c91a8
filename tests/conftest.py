from __future__ import annotations

import queue
import threading
from pathlib import Path
from typing import Callable, List

import pytest

from replays.attempt import AttemptId, LiftType
from replays.capture_driver import (
    CameraConfig,
    CaptureDriver,
    CaptureError,
    CaptureErrorKind,
    CaptureHandle,
    CaptureHints,
    ExitInfo,
)
from replays.clock import FixedClock
from replays.recording_supervisor import RecordingSupervisor, SupervisorSettings
from replays.status_bus import StatusBus, StatusMessage


class FakeDriver(CaptureDriver):
    """In-memory capture driver.

    ``start`` creates the working file, ``trim`` writes the final file and
    records the offset it was asked to skip.
    """

    def __init__(self) -> None:
        self.fail_start: set[int] = set()
        self.fail_trim: set[int] = set()
        self.hang: set[int] = set()
        self.started: List[CaptureHandle] = []
        self.stop_requests: List[int] = []
        self.killed: List[CaptureHandle] = []
        self.trims: List[tuple[Path, Path, int, bool]] = []
        self.trim_gate: threading.Event | None = None
        self.trim_entered = threading.Event()
        self.shutdown_calls = 0

    def start(self, input_spec, output_path, hints, *, camera_index):
        if camera_index in self.fail_start:
            raise CaptureError(CaptureErrorKind.UNAVAILABLE, "device busy", camera_index)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"working")
        handle = CaptureHandle(camera_index=camera_index, started_at_ms=0, working_path=output_path)
        self.started.append(handle)
        return handle

    def request_stop(self, handle):
        self.stop_requests.append(handle.camera_index)

    def wait(self, handle, timeout):
        if handle.camera_index in self.hang:
            raise CaptureError(CaptureErrorKind.TIMEOUT, "still running", handle.camera_index)
        return ExitInfo(0, handle.forced)

    def force_kill(self, handle):
        handle.forced = True
        self.killed.append(handle)

    def trim(self, input_path, output_path, start_offset_ms, recode):
        self.trim_entered.set()
        if self.trim_gate is not None:
            self.trim_gate.wait(5)
        self.trims.append((Path(input_path), Path(output_path), start_offset_ms, recode))
        camera = int(Path(input_path).stem.split("_Camera")[1].split("_")[0])
        if camera in self.fail_trim:
            raise CaptureError(CaptureErrorKind.IO, "input not flushable")
        Path(output_path).write_bytes(Path(input_path).read_bytes())

    def shutdown(self):
        self.shutdown_calls += 1


class FakeTimer:
    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function()


class TimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer


def drain_statuses(bus: StatusBus) -> List[StatusMessage]:
    messages: List[StatusMessage] = []
    while True:
        try:
            messages.append(bus.ui_channel.get_nowait())
        except queue.Empty:
            return messages


def alice(attempt: int = 1, session: str = "Senior Women 64kg") -> AttemptId:
    return AttemptId("Alice Li", LiftType.SNATCH, attempt, session)


def cameras(count: int) -> tuple[CameraConfig, ...]:
    return tuple(CameraConfig(index=i, input_spec=f"/dev/video{i - 1}", hints=CaptureHints()) for i in range(1, count + 1))


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(1000)


@pytest.fixture
def bus() -> StatusBus:
    return StatusBus(ui_queue_size=50)


@pytest.fixture
def video_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "videos"
    directory.mkdir()
    return directory


@pytest.fixture
def make_supervisor(driver, bus, clock, video_dir):
    def _make(camera_count: int = 1, **overrides) -> RecordingSupervisor:
        settings = SupervisorSettings(
            video_dir=video_dir,
            cameras=cameras(camera_count),
            stop_grace_sec=overrides.pop("stop_grace_sec", 0.1),
            **overrides,
        )
        return RecordingSupervisor(driver, bus, settings, clock=clock)

    return _make


@pytest.fixture
def timers() -> TimerFactory:
    return TimerFactory()

"""Capture drivers: one child process per camera per attempt."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Set

from .clock import LOG_TIMESTAMP_FORMAT, SYSTEM_CLOCK, Clock
from .ffmpeg_io import (
    QUIET_LOGLEVEL,
    VERBOSE_LOGLEVEL,
    CaptureHints,
    log_file_path,
    multicast_input,
    multicast_recording_args,
    recording_args,
    render_command,
    trimming_args,
    with_loglevel,
)
from .process_control import ProcessControlUnavailable, ProcessGroups, default_groups

log = logging.getLogger("capture_driver")

STOP_TOKEN = b"q\n"
STDIN_CLOSE_DELAY_SEC = 0.1
TRIM_ATTEMPTS = 5
TRIM_BACKOFF_SEC = 1.0
TRIM_TIMEOUT_SEC = 300.0
KILL_REAP_TIMEOUT_SEC = 2.0


class CaptureErrorKind(str, Enum):
    UNAVAILABLE = "UNAVAILABLE"
    BAD_INPUT = "BAD_INPUT"
    IO = "IO"
    GONE = "GONE"
    TIMEOUT = "TIMEOUT"
    CONFIG = "CONFIG"


class CaptureError(Exception):
    def __init__(self, kind: CaptureErrorKind, message: str, camera_index: int | None = None) -> None:
        super().__init__(message)
        self.kind = CaptureErrorKind(kind)
        self.message = message
        self.camera_index = camera_index

    def __str__(self) -> str:
        if self.camera_index is None:
            return f"{self.kind.value}: {self.message}"
        return f"{self.kind.value} (Camera {self.camera_index}): {self.message}"


@dataclass(frozen=True)
class CameraConfig:
    """One configured camera. ``index`` is 1-based and fixes the file suffix."""

    index: int
    input_spec: str
    hints: CaptureHints = field(default_factory=CaptureHints)
    description: str = ""

    @property
    def recode(self) -> bool:
        return self.hints.recode


@dataclass(eq=False)
class CaptureHandle:
    camera_index: int
    started_at_ms: int
    working_path: Path
    process: Optional[subprocess.Popen] = None
    stdin: Optional[IO[bytes]] = None
    command: str = ""
    forced: bool = False
    log_file: Optional[IO[bytes]] = field(default=None, repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None


@dataclass(frozen=True)
class ExitInfo:
    returncode: int | None
    forced: bool = False


class CaptureDriver(ABC):
    """Contract between the supervisor and whatever produces the video files."""

    @abstractmethod
    def start(
        self,
        input_spec: str,
        output_path: Path,
        hints: CaptureHints,
        *,
        camera_index: int,
    ) -> CaptureHandle:
        """Launch a capture child and return once it is running."""

    @abstractmethod
    def request_stop(self, handle: CaptureHandle) -> None:
        """Ask the child to finish its file; raises ``GONE`` if it already exited."""

    @abstractmethod
    def wait(self, handle: CaptureHandle, timeout: float) -> ExitInfo:
        """Block until the child exits; raises ``TIMEOUT`` past the deadline."""

    @abstractmethod
    def force_kill(self, handle: CaptureHandle) -> None:
        """Kill the child and everything it spawned."""

    @abstractmethod
    def trim(self, input_path: Path, output_path: Path, start_offset_ms: int, recode: bool) -> None:
        """Write ``output_path`` from ``input_path`` skipping ``start_offset_ms``."""

    @abstractmethod
    def shutdown(self) -> None:
        """Tear down every live handle."""


class FfmpegCaptureDriver(CaptureDriver):
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        *,
        log_ffmpeg: bool = False,
        logs_dir: Path | str | None = None,
        clock: Clock = SYSTEM_CLOCK,
        groups: ProcessGroups | None = None,
        trim_attempts: int = TRIM_ATTEMPTS,
        trim_backoff_sec: float = TRIM_BACKOFF_SEC,
        trim_timeout_sec: float = TRIM_TIMEOUT_SEC,
        stdin_close_delay_sec: float = STDIN_CLOSE_DELAY_SEC,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executable = self._resolve_executable(ffmpeg_path)
        try:
            self._groups = groups or default_groups()
        except ProcessControlUnavailable as e:
            raise CaptureError(CaptureErrorKind.CONFIG, str(e)) from e
        self.log_ffmpeg = bool(log_ffmpeg)
        self.logs_dir = Path(logs_dir) if logs_dir else Path.cwd() / "logs"
        self._clock = clock
        self._trim_attempts = max(1, int(trim_attempts))
        self._trim_backoff = float(trim_backoff_sec)
        self._trim_timeout = float(trim_timeout_sec)
        self._close_delay = float(stdin_close_delay_sec)
        self._sleep = sleep
        self._handles: Set[CaptureHandle] = set()
        self._trims: Set[subprocess.Popen] = set()
        self._closed = False
        self._lock = threading.Lock()
        log.info("ffmpeg executable set to: %s", self.executable)

    @staticmethod
    def _resolve_executable(ffmpeg_path: str) -> str:
        candidate = (ffmpeg_path or "").strip() or "ffmpeg"
        if os.sep in candidate or (os.altsep and os.altsep in candidate):
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
            raise CaptureError(CaptureErrorKind.CONFIG, f"ffmpeg not found at {candidate}")
        found = shutil.which(candidate)
        if not found:
            raise CaptureError(CaptureErrorKind.CONFIG, f"{candidate} not found in PATH")
        return found

    # ---- command construction -------------------------------------------------

    def build_recording_args(self, input_spec: str, output_path: Path, hints: CaptureHints) -> List[str]:
        return recording_args(input_spec, output_path, hints)

    def _final_args(self, args: List[str]) -> List[str]:
        return with_loglevel(args, VERBOSE_LOGLEVEL if self.log_ffmpeg else QUIET_LOGLEVEL)

    def _open_log(self, operation: str) -> Optional[IO[bytes]]:
        if not self.log_ffmpeg:
            return None
        stamp = self._clock.now().strftime(LOG_TIMESTAMP_FORMAT)
        path = log_file_path(self.logs_dir, stamp, operation)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(path, "ab")
        except OSError as e:
            log.error("failed to create ffmpeg log file %s: %s", path, e)
            return None
        log.info("ffmpeg output will be logged to: %s", path)
        return handle

    def _spawn(self, args: List[str], operation: str, *, stdin: Any) -> tuple[subprocess.Popen, Optional[IO[bytes]]]:
        log_file = self._open_log(operation)
        sink = log_file if log_file is not None else subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                [self.executable, *args],
                stdin=stdin,
                stdout=sink,
                stderr=sink,
                bufsize=0,
                **self._groups.popen_kwargs(),
            )
        except BaseException:
            if log_file is not None:
                log_file.close()
            raise
        self._groups.register(proc)
        return proc, log_file

    # ---- CaptureDriver --------------------------------------------------------

    def start(
        self,
        input_spec: str,
        output_path: Path,
        hints: CaptureHints,
        *,
        camera_index: int,
    ) -> CaptureHandle:
        if self._closed:
            raise CaptureError(CaptureErrorKind.GONE, "driver is shut down", camera_index)
        spec = str(input_spec or "").strip()
        if not spec:
            raise CaptureError(CaptureErrorKind.BAD_INPUT, "empty input", camera_index)
        if spec.startswith("/dev/") and not os.path.exists(spec):
            raise CaptureError(CaptureErrorKind.BAD_INPUT, f"no such device {spec}", camera_index)
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CaptureError(CaptureErrorKind.IO, f"cannot create {output_path.parent}: {e}", camera_index) from e

        try:
            args = self._final_args(self.build_recording_args(spec, output_path, hints))
        except CaptureError as e:
            raise CaptureError(e.kind, e.message, camera_index) from e
        command = render_command(self.executable, args)
        log.info("executing command for Camera %d: %s", camera_index, command)
        try:
            proc, log_file = self._spawn(args, "recording", stdin=subprocess.PIPE)
        except OSError as e:
            raise CaptureError(
                CaptureErrorKind.UNAVAILABLE, f"failed to start ffmpeg: {e}", camera_index
            ) from e

        handle = CaptureHandle(
            camera_index=camera_index,
            started_at_ms=self._clock.wall_ms(),
            working_path=output_path,
            process=proc,
            stdin=proc.stdin,
            command=command,
            log_file=log_file,
        )
        with self._lock:
            self._handles.add(handle)
        return handle

    def request_stop(self, handle: CaptureHandle) -> None:
        proc = handle.process
        if proc is None or proc.poll() is not None:
            raise CaptureError(CaptureErrorKind.GONE, "capture process already exited", handle.camera_index)
        pipe = handle.stdin
        if pipe is None or pipe.closed:
            raise CaptureError(CaptureErrorKind.GONE, "stdin already closed", handle.camera_index)
        try:
            pipe.write(STOP_TOKEN)
            pipe.flush()
        except (BrokenPipeError, OSError) as e:
            raise CaptureError(CaptureErrorKind.GONE, f"stdin broken: {e}", handle.camera_index) from e
        log.debug("sent stop token to Camera %d (pid %s)", handle.camera_index, proc.pid)
        if self._close_delay > 0:
            self._sleep(self._close_delay)
        self._close_stdin(handle)

    def wait(self, handle: CaptureHandle, timeout: float) -> ExitInfo:
        proc = handle.process
        if proc is None:
            return ExitInfo(0, handle.forced)
        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise CaptureError(
                CaptureErrorKind.TIMEOUT, f"did not exit within {timeout:.1f}s", handle.camera_index
            ) from e
        self._release(handle)
        log.debug("Camera %d ffmpeg exited rc=%s", handle.camera_index, returncode)
        return ExitInfo(returncode, handle.forced)

    def force_kill(self, handle: CaptureHandle) -> None:
        proc = handle.process
        handle.forced = True
        self._close_stdin(handle)
        if proc is None:
            return
        self._groups.kill(proc)
        try:
            proc.wait(timeout=KILL_REAP_TIMEOUT_SEC)
        except subprocess.TimeoutExpired:
            log.error("Camera %d ffmpeg (pid %d) not reaped after SIGKILL", handle.camera_index, proc.pid)
            return
        self._release(handle)

    def trim(self, input_path: Path, output_path: Path, start_offset_ms: int, recode: bool) -> None:
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CaptureError(CaptureErrorKind.IO, f"cannot create {output_path.parent}: {e}") from e
        args = self._final_args(trimming_args(input_path, output_path, start_offset_ms, recode))
        if recode:
            log.info("recode is enabled for %s", Path(input_path).name)

        returncode: int | None = None
        for attempt in range(1, self._trim_attempts + 1):
            if attempt == 1:
                log.info("executing trim command: %s", render_command(self.executable, args))
            with self._lock:
                if self._closed:
                    raise CaptureError(CaptureErrorKind.GONE, f"driver shut down before trimming {Path(input_path).name}")
                try:
                    proc, log_file = self._spawn(args, "trimming", stdin=subprocess.DEVNULL)
                except OSError as e:
                    raise CaptureError(CaptureErrorKind.UNAVAILABLE, f"failed to start ffmpeg: {e}") from e
                self._trims.add(proc)
            try:
                returncode = proc.wait(timeout=self._trim_timeout)
            except subprocess.TimeoutExpired as e:
                self._groups.kill(proc)
                proc.wait()
                raise CaptureError(
                    CaptureErrorKind.TIMEOUT, f"trim of {Path(input_path).name} exceeded {self._trim_timeout:.0f}s"
                ) from e
            finally:
                with self._lock:
                    self._trims.discard(proc)
                self._groups.unregister(proc)
                if log_file is not None:
                    log_file.close()
            if returncode == 0:
                return
            if self._closed:
                raise CaptureError(CaptureErrorKind.GONE, f"trim of {Path(input_path).name} killed by shutdown")
            log.error(
                "waiting for input video %s (attempt %d/%d): ffmpeg rc=%s",
                Path(input_path).name,
                attempt,
                self._trim_attempts,
                returncode,
            )
            if attempt < self._trim_attempts:
                self._sleep(self._trim_backoff)
        raise CaptureError(
            CaptureErrorKind.IO,
            f"failed to trim {Path(input_path).name} after {self._trim_attempts} attempts (rc={returncode})",
        )

    def shutdown(self) -> None:
        """Kill every capture and trim child; later starts and trims raise ``GONE``."""
        with self._lock:
            self._closed = True
            handles = list(self._handles)
            trims = list(self._trims)
        for handle in handles:
            if handle.running():
                log.warning("shutdown: killing Camera %d capture (pid %s)", handle.camera_index, handle.pid)
            self.force_kill(handle)
        for proc in trims:
            log.warning("shutdown: killing trim ffmpeg (pid %d)", proc.pid)
            self._groups.kill(proc)
        with self._lock:
            self._handles.clear()

    def live_handles(self) -> List[CaptureHandle]:
        with self._lock:
            return [handle for handle in self._handles if handle.running()]

    # ---- helpers --------------------------------------------------------------

    def _close_stdin(self, handle: CaptureHandle) -> None:
        pipe = handle.stdin
        if pipe is None or pipe.closed:
            return
        try:
            pipe.close()
        except (BrokenPipeError, OSError) as e:
            log.debug("Camera %d stdin close error: %r", handle.camera_index, e)

    def _release(self, handle: CaptureHandle) -> None:
        if handle.process is not None:
            self._groups.unregister(handle.process)
        self._close_stdin(handle)
        if handle.log_file is not None and not handle.log_file.closed:
            handle.log_file.close()
        with self._lock:
            self._handles.discard(handle)


class MulticastCaptureDriver(FfmpegCaptureDriver):
    """Records a pre-existing UDP MPEG-TS stream instead of a local device.

    ``input_spec`` is either a full ``udp://`` URL or ``address:port``.
    """

    def build_recording_args(self, input_spec: str, output_path: Path, hints: CaptureHints) -> List[str]:
        if input_spec.startswith("udp://"):
            url = input_spec
        else:
            address, sep, port = input_spec.rpartition(":")
            if not sep or not port.isdigit():
                raise CaptureError(CaptureErrorKind.BAD_INPUT, f"invalid multicast address {input_spec!r}")
            url = multicast_input(address, int(port))
        return multicast_recording_args(url, output_path, hints)


class DryRunCaptureDriver(CaptureDriver):
    """Logs the ffmpeg command lines instead of running them.

    Starting writes an empty working file and trimming renames it, so the
    rest of the pipeline (listing, replay routes, status) behaves normally
    on a machine without cameras.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", *, clock: Clock = SYSTEM_CLOCK) -> None:
        self.executable = ffmpeg_path or "ffmpeg"
        self._clock = clock
        self._handles: Set[CaptureHandle] = set()
        self._lock = threading.Lock()

    def start(
        self,
        input_spec: str,
        output_path: Path,
        hints: CaptureHints,
        *,
        camera_index: int,
    ) -> CaptureHandle:
        output_path = Path(output_path)
        args = recording_args(input_spec, output_path, hints)
        command = render_command(self.executable, args)
        log.info("simulating start recording video for Camera %d: %s", camera_index, command)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.touch()
        except OSError as e:
            raise CaptureError(CaptureErrorKind.IO, f"cannot create {output_path}: {e}", camera_index) from e
        handle = CaptureHandle(
            camera_index=camera_index,
            started_at_ms=self._clock.wall_ms(),
            working_path=output_path,
            command=command,
        )
        with self._lock:
            self._handles.add(handle)
        return handle

    def request_stop(self, handle: CaptureHandle) -> None:
        log.info("simulating stop recording for Camera %d", handle.camera_index)

    def wait(self, handle: CaptureHandle, timeout: float) -> ExitInfo:
        with self._lock:
            self._handles.discard(handle)
        return ExitInfo(0, handle.forced)

    def force_kill(self, handle: CaptureHandle) -> None:
        handle.forced = True
        with self._lock:
            self._handles.discard(handle)

    def trim(self, input_path: Path, output_path: Path, start_offset_ms: int, recode: bool) -> None:
        args = trimming_args(input_path, output_path, start_offset_ms, recode)
        log.info("simulating trim: %s", render_command(self.executable, args))
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(input_path, output_path)
        except OSError as e:
            raise CaptureError(CaptureErrorKind.IO, f"simulated trim of {input_path} failed: {e}") from e

    def shutdown(self) -> None:
        with self._lock:
            self._handles.clear()


__all__ = [
    "CameraConfig",
    "CaptureDriver",
    "CaptureError",
    "CaptureErrorKind",
    "CaptureHandle",
    "CaptureHints",
    "DryRunCaptureDriver",
    "ExitInfo",
    "FfmpegCaptureDriver",
    "MulticastCaptureDriver",
]

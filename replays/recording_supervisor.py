"""Recording supervisor: owns the capture handles and the current attempt.

State machine::

    IDLE --start--> CAPTURING --finalize--> FINALIZING --ok--> IDLE
                        |                        |
                        +--abort--> ABORTED -----+--> IDLE

Every entry point takes the same lock. ``finalize`` marks the supervisor
FINALIZING and releases the lock while it waits for the children and runs
the trims; a ``start`` arriving in that window is rejected with BUSY.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .attempt import AttemptId, AttemptSnapshot, AttemptState
from .capture_driver import CameraConfig, CaptureDriver, CaptureError, CaptureErrorKind, CaptureHandle
from .clip_names import final_path, working_path
from .clock import SYSTEM_CLOCK, Clock
from .ffmpeg_io import DEFAULT_WORKING_CONTAINER
from .status_bus import NO_ACTIVE_SESSION, VIDEOS_READY_PHRASE, StatusBus, StatusCode

log = logging.getLogger("recording_supervisor")

TRIM_LEAD_MS = 5000
STOP_GRACE_SEC = 2.0


class SupervisorState(str, Enum):
    IDLE = "IDLE"
    CAPTURING = "CAPTURING"
    FINALIZING = "FINALIZING"
    ABORTED = "ABORTED"


class SupervisorErrorKind(str, Enum):
    START_PARTIAL = "START_PARTIAL"
    BUSY = "BUSY"
    SHUTDOWN = "SHUTDOWN"


class SupervisorError(Exception):
    def __init__(self, kind: SupervisorErrorKind, message: str, camera_index: int | None = None) -> None:
        super().__init__(message)
        self.kind = SupervisorErrorKind(kind)
        self.message = message
        self.camera_index = camera_index


@dataclass(frozen=True)
class SupervisorSettings:
    video_dir: Path
    cameras: Tuple[CameraConfig, ...]
    trim_lead_ms: int = TRIM_LEAD_MS
    stop_grace_sec: float = STOP_GRACE_SEC
    working_container: str = DEFAULT_WORKING_CONTAINER

    def __post_init__(self) -> None:
        object.__setattr__(self, "video_dir", Path(self.video_dir))
        object.__setattr__(self, "cameras", tuple(self.cameras))

    def container_for(self, camera: CameraConfig) -> str:
        return camera.hints.container or self.working_container


@dataclass(frozen=True)
class ClipRecord:
    """Outcome of finalizing one camera.

    ``trimmed`` is False when the clip could not be produced; the working
    file is then left in place for inspection.
    """

    final_path: Path
    camera_index: int
    attempt_id: AttemptId
    timestamp: str
    trimmed: bool = True
    start_offset_ms: Optional[int] = None
    working_path: Optional[Path] = field(default=None, compare=False)
    error: str = ""


class RecordingSupervisor:
    def __init__(
        self,
        driver: CaptureDriver,
        bus: StatusBus,
        settings: SupervisorSettings,
        *,
        clock: Clock = SYSTEM_CLOCK,
        attempt_state: AttemptState | None = None,
    ) -> None:
        self._driver = driver
        self._bus = bus
        self._settings = settings
        self._clock = clock
        self._attempt = attempt_state or AttemptState()
        self._cameras: Dict[int, CameraConfig] = {camera.index: camera for camera in settings.cameras}
        self._lock = threading.Lock()
        self._state = SupervisorState.IDLE
        self._handles: List[CaptureHandle] = []
        self._session = ""
        self._generation = 0
        self._shutting_down = False
        self._last_clips: List[ClipRecord] = []

    # ---- read side ------------------------------------------------------------

    @property
    def settings(self) -> SupervisorSettings:
        return self._settings

    @property
    def attempt_state(self) -> AttemptState:
        return self._attempt

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def current_session(self) -> str:
        with self._lock:
            return self._session

    @property
    def active_handle_count(self) -> int:
        with self._lock:
            return len(self._handles)

    @property
    def last_clips(self) -> List[ClipRecord]:
        with self._lock:
            return list(self._last_clips)

    def is_capturing(self) -> bool:
        return self.state is SupervisorState.CAPTURING

    def snapshot(self) -> AttemptSnapshot:
        return self._attempt.snapshot()

    # ---- session --------------------------------------------------------------

    def set_session(self, name: str) -> None:
        session = (name or "").strip()
        with self._lock:
            if session != self._session:
                log.info("switching to session %r", session)
            self._session = session

    def clear_session(self, *, announce: bool = True) -> None:
        with self._lock:
            self._session = ""
        log.info("session ended")
        if announce:
            self._bus.publish(StatusCode.READY, NO_ACTIVE_SESSION)

    # ---- transitions ----------------------------------------------------------

    def start(self, attempt_id: AttemptId, now_ms: int | None = None) -> List[CaptureHandle]:
        with self._lock:
            if self._shutting_down:
                raise SupervisorError(SupervisorErrorKind.SHUTDOWN, "recorder is shutting down")
            if self._state is SupervisorState.FINALIZING:
                log.warning("start for %s rejected: still finalizing", attempt_id.describe())
                raise SupervisorError(SupervisorErrorKind.BUSY, "finalize in progress")
            if self._state is SupervisorState.CAPTURING:
                previous = self._attempt.snapshot().attempt_id
                log.info(
                    "re-arming: discarding capture of %s",
                    previous.describe() if previous else "unknown attempt",
                )
                self._teardown_locked(delete_working=True)
                self._attempt.reset()
                self._state = SupervisorState.IDLE

            now_ms = self._clock.wall_ms() if now_ms is None else int(now_ms)
            if attempt_id.session:
                self._session = attempt_id.session
            else:
                attempt_id = attempt_id.with_session(self._session)

            handles: List[CaptureHandle] = []
            for camera in self._settings.cameras:
                path = working_path(
                    self._settings.video_dir,
                    attempt_id,
                    camera.index,
                    now_ms,
                    self._settings.container_for(camera),
                )
                try:
                    handle = self._driver.start(camera.input_spec, path, camera.hints, camera_index=camera.index)
                except CaptureError as e:
                    log.error("failed to start Camera %d: %s", camera.index, e)
                    for started in handles:
                        self._kill_and_delete(started)
                    self._discard_working_file(path)
                    self._attempt.reset()
                    self._state = SupervisorState.IDLE
                    self._bus.publish(
                        StatusCode.ERROR,
                        f"Error: Camera {camera.index} failed to start ({e.message})",
                        attempt_id.session,
                    )
                    raise SupervisorError(
                        SupervisorErrorKind.START_PARTIAL,
                        f"Camera {camera.index} failed to start: {e.message}",
                        camera.index,
                    ) from e
                handles.append(handle)

            self._handles = handles
            self._generation += 1
            self._attempt.on_start(attempt_id, now_ms)
            self._state = SupervisorState.CAPTURING
            log.info("started recording videos: %s", [str(h.working_path) for h in handles])
            self._bus.publish(StatusCode.RECORDING, f"Recording: {attempt_id.describe()}", attempt_id.session)
            return list(handles)

    def stop_tick(self, now_ms: int | None = None) -> AttemptSnapshot | None:
        now_ms = self._clock.wall_ms() if now_ms is None else int(now_ms)
        with self._lock:
            if self._state is not SupervisorState.CAPTURING:
                log.debug("clock stop ignored: no active attempt")
                return None
            snap = self._attempt.on_stop_tick(now_ms)
        if snap.stop_request_count == 1:
            log.info("clock stopped at %d (%d ms after start)", snap.stop_at, snap.stop_at - snap.start_at)
        else:
            log.info("clock stop #%d ignored as trim anchor", snap.stop_request_count)
        return snap

    def decision(self, now_ms: int | None = None) -> AttemptSnapshot | None:
        now_ms = self._clock.wall_ms() if now_ms is None else int(now_ms)
        with self._lock:
            if self._state is not SupervisorState.CAPTURING:
                log.debug("decision ignored: no active attempt")
                return None
            return self._attempt.on_decision(now_ms)

    def trim_offset_ms(self, snap: AttemptSnapshot) -> int | None:
        """Milliseconds to skip at the head of each working file.

        ``None`` means there is no start anchor and files are renamed as is.
        """
        if snap.start_at == 0:
            return None
        return max(0, snap.stop_at - snap.start_at - self._settings.trim_lead_ms)

    def finalize(self, now_ms: int | None = None) -> List[ClipRecord] | None:
        with self._lock:
            if self._state is not SupervisorState.CAPTURING:
                log.info("no ongoing recordings to stop")
                return None
            snap = self._attempt.snapshot()
            attempt_id = snap.attempt_id
            if attempt_id is None:
                log.error("capturing without an attempt; discarding %d capture(s)", len(self._handles))
                self._teardown_locked(delete_working=True)
                self._state = SupervisorState.IDLE
                return None
            if now_ms is not None:
                snap = self._attempt.on_decision(int(now_ms))
            self._state = SupervisorState.FINALIZING
            generation = self._generation
            handles = list(self._handles)
            self._bus.publish(StatusCode.TRIMMING, f"Trimming videos for {attempt_id.describe()}", attempt_id.session)

        self._stop_handles(handles)
        offset = self.trim_offset_ms(snap)
        if offset is None:
            log.info("start time is 0, not trimming the videos")
        else:
            log.info("duration to be trimmed: %d milliseconds", offset)
        timestamp = self._clock.wall_timestamp()

        records: List[ClipRecord] = []
        if handles:
            with ThreadPoolExecutor(max_workers=len(handles), thread_name_prefix="trim") as pool:
                futures = [pool.submit(self._publish_clip, h, attempt_id, offset, timestamp) for h in handles]
                records = [future.result() for future in futures]

        with self._lock:
            if self._generation != generation or self._state is not SupervisorState.FINALIZING:
                log.warning("finalize of %s abandoned after abort", attempt_id.describe())
                return records
            self._handles = []
            self._attempt.reset()
            self._last_clips = records
            self._state = SupervisorState.IDLE
            failed = [record.camera_index for record in records if not record.trimmed]
            text = VIDEOS_READY_PHRASE
            if failed:
                cameras = ", ".join(str(index) for index in failed)
                text = f"{VIDEOS_READY_PHRASE} (trim failed for Camera {cameras})"
            log.info("finished trimming videos: %s", [str(r.final_path) for r in records if r.trimmed])
            self._bus.publish(StatusCode.READY, text, attempt_id.session)
        return records

    def abort(self, reason: str, shutdown: bool = False) -> None:
        with self._lock:
            if shutdown:
                self._shutting_down = True
            previous = self._state
            handles = list(self._handles)
            self._handles = []
            session = self._session
            if previous is not SupervisorState.IDLE:
                log.warning("aborting %s: %s", previous.value, reason)
                self._state = SupervisorState.ABORTED
                self._generation += 1
            for handle in handles:
                # Trims running under FINALIZING still own their working files.
                if previous is SupervisorState.FINALIZING:
                    self._driver.force_kill(handle)
                else:
                    self._kill_and_delete(handle)
            self._attempt.reset()
            self._state = SupervisorState.IDLE

        if shutdown:
            self._bus.publish(StatusCode.READY, NO_ACTIVE_SESSION, session)
        elif previous is not SupervisorState.IDLE:
            self._bus.publish(StatusCode.ERROR, f"Error: recording aborted ({reason})", session)

    # ---- helpers --------------------------------------------------------------

    def _stop_handles(self, handles: Sequence[CaptureHandle]) -> None:
        for handle in handles:
            try:
                self._driver.request_stop(handle)
            except CaptureError as e:
                if e.kind is CaptureErrorKind.GONE:
                    log.warning("Camera %d: %s", handle.camera_index, e.message)
                else:
                    log.error("Camera %d stop request failed: %s", handle.camera_index, e)

        grace = self._settings.stop_grace_sec
        deadline = time.monotonic() + grace
        for handle in handles:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                self._driver.wait(handle, remaining)
            except CaptureError as e:
                if e.kind is CaptureErrorKind.TIMEOUT:
                    log.warning("Camera %d did not stop within %.1fs; killing", handle.camera_index, grace)
                else:
                    log.error("Camera %d wait failed: %s", handle.camera_index, e)
                self._driver.force_kill(handle)

    def _publish_clip(
        self,
        handle: CaptureHandle,
        attempt_id: AttemptId,
        offset: int | None,
        timestamp: str,
    ) -> ClipRecord:
        camera = self._cameras.get(handle.camera_index)
        recode = camera.recode if camera is not None else False
        target = final_path(self._settings.video_dir, attempt_id, handle.camera_index, timestamp)
        record = ClipRecord(
            final_path=target,
            camera_index=handle.camera_index,
            attempt_id=attempt_id,
            timestamp=timestamp,
            start_offset_ms=offset,
            working_path=handle.working_path,
        )
        log.info("trimming video for Camera %d: %s", handle.camera_index, attempt_id.describe())
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if offset is None:
                os.replace(handle.working_path, target)
                return record
            self._driver.trim(handle.working_path, target, offset, recode)
        except (CaptureError, OSError) as e:
            log.error("failed to produce clip for Camera %d: %s", handle.camera_index, e)
            return ClipRecord(
                final_path=target,
                camera_index=handle.camera_index,
                attempt_id=attempt_id,
                timestamp=timestamp,
                trimmed=False,
                start_offset_ms=offset,
                working_path=handle.working_path,
                error=str(e),
            )
        self._discard_working_file(handle.working_path)
        return record

    def _teardown_locked(self, *, delete_working: bool) -> None:
        handles = self._handles
        self._handles = []
        for handle in handles:
            if delete_working:
                self._kill_and_delete(handle)
            else:
                self._driver.force_kill(handle)

    def _kill_and_delete(self, handle: CaptureHandle) -> None:
        self._driver.force_kill(handle)
        self._discard_working_file(handle.working_path)

    @staticmethod
    def _discard_working_file(path: Path) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error("failed to remove working file %s: %s", path, e)


__all__ = [
    "ClipRecord",
    "RecordingSupervisor",
    "STOP_GRACE_SEC",
    "SupervisorError",
    "SupervisorErrorKind",
    "SupervisorSettings",
    "SupervisorState",
    "TRIM_LEAD_MS",
]

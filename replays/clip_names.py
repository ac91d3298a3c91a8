"""Working and final clip filenames.

Working files live directly in the video directory and carry the start
anchor; final clips live in a session directory and carry the wall-clock
time they were published. The two patterns never match each other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .attempt import AttemptId

UNSORTED_SESSION = "unsorted"
FINAL_EXTENSION = ".mp4"

_FINAL_PATTERN = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})_(?P<time>\d{2}h\d{2}m\d{2}s)_(?P<athlete>.+)_"
    r"(?P<lift>CLEANJERK|SNATCH|CJ)_attempt(?P<attempt>\d+)_Camera(?P<camera>\d+)\.mp4$"
)
_WORKING_PATTERN = re.compile(
    r"^(?P<athlete>.+)_(?P<lift>CLEANJERK|SNATCH)_attempt(?P<attempt>\d+)_Camera(?P<camera>\d+)_"
    r"(?P<start>\d+)\.(?P<container>[A-Za-z0-9]+)$"
)
_UNSAFE_DIR_CHARS = re.compile(r"[\\/:*?\"<>|]")
_DOT_RUNS = re.compile(r"\.{2,}")


@dataclass(frozen=True, slots=True)
class ClipName:
    date: str
    time: str
    athlete: str
    lift: str
    attempt: int
    camera: int

    @property
    def timestamp(self) -> str:
        return f"{self.date}_{self.time}"

    @property
    def clock_time(self) -> str:
        return self.time.replace("h", ":").replace("m", ":").replace("s", "")

    @property
    def athlete_display(self) -> str:
        return self.athlete.replace("_", " ")

    def display_name(self) -> str:
        return (
            f"{self.date} {self.clock_time} - {self.athlete_display} - {self.lift}"
            f" - attempt {self.attempt} - Camera {self.camera}"
        )


def underscored(value: str) -> str:
    return value.strip().replace(" ", "_")


def path_safe(value: str) -> str:
    """Underscore a name and strip anything that could leave its directory."""
    cleaned = _UNSAFE_DIR_CHARS.sub("_", underscored(value).lstrip("."))
    return _DOT_RUNS.sub("_", cleaned)


def session_dir_name(session: str | None) -> str:
    """Directory name for a session; blank sessions go to ``unsorted``."""
    cleaned = path_safe(session or "")
    return cleaned or UNSORTED_SESSION


def clip_stem(attempt_id: AttemptId, camera_index: int) -> str:
    athlete = path_safe(attempt_id.athlete) or "unknown"
    return f"{athlete}_{attempt_id.lift_type.value}_attempt{attempt_id.attempt}_Camera{camera_index}"


def working_filename(attempt_id: AttemptId, camera_index: int, start_at_ms: int, container: str) -> str:
    extension = container.lstrip(".") or "mkv"
    return f"{clip_stem(attempt_id, camera_index)}_{int(start_at_ms)}.{extension}"


def final_filename(attempt_id: AttemptId, camera_index: int, wall_timestamp: str) -> str:
    return f"{wall_timestamp}_{clip_stem(attempt_id, camera_index)}{FINAL_EXTENSION}"


def working_path(video_dir: Path, attempt_id: AttemptId, camera_index: int, start_at_ms: int, container: str) -> Path:
    return Path(video_dir) / working_filename(attempt_id, camera_index, start_at_ms, container)


def final_path(video_dir: Path, attempt_id: AttemptId, camera_index: int, wall_timestamp: str) -> Path:
    session_dir = Path(video_dir) / session_dir_name(attempt_id.session)
    return session_dir / final_filename(attempt_id, camera_index, wall_timestamp)


def parse_final_name(name: str) -> ClipName | None:
    match = _FINAL_PATTERN.match(name.replace("Clean_and_Jerk", "CJ"))
    if match is None:
        return None
    return ClipName(
        date=match.group("date"),
        time=match.group("time"),
        athlete=match.group("athlete"),
        lift=match.group("lift"),
        attempt=int(match.group("attempt")),
        camera=int(match.group("camera")),
    )


def is_working_name(name: str) -> bool:
    return _WORKING_PATTERN.match(name) is not None

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .clip_names import UNSORTED_SESSION, ClipName, parse_final_name, session_dir_name

__all__ = [
    "ClipEntry",
    "DEFAULT_LIST_LIMIT",
    "latest_clip",
    "list_clips",
    "list_sessions",
    "resolve_session",
    "resolve_video_path",
]

DEFAULT_LIST_LIMIT = 20
SORT_BY_TIME = "time"
SORT_BY_ATHLETE = "athlete"


@dataclass(slots=True)
class ClipEntry:
    """A final clip found in a session directory."""

    filename: str
    url_path: str
    display_name: str
    athlete: str
    lift: str
    attempt: int
    camera: int
    timestamp: str

    @classmethod
    def from_name(cls, session: str, name: ClipName, filename: str) -> "ClipEntry":
        return cls(
            filename=filename,
            url_path=f"{session}/{filename}",
            display_name=name.display_name(),
            athlete=name.athlete_display,
            lift=name.lift,
            attempt=name.attempt,
            camera=name.camera,
            timestamp=name.timestamp,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "filename": self.filename,
            "url": f"/videos/{self.url_path}",
            "display_name": self.display_name,
            "athlete": self.athlete,
            "lift": self.lift,
            "attempt": self.attempt,
            "camera": self.camera,
            "timestamp": self.timestamp,
        }


def list_sessions(video_dir: Path) -> list[str]:
    try:
        entries = list(Path(video_dir).iterdir())
    except FileNotFoundError:
        return []
    sessions = [entry.name for entry in entries if entry.is_dir() and entry.name != UNSORTED_SESSION]
    sessions.sort()
    return sessions


def resolve_session(video_dir: Path, session: str | None) -> str:
    """Directory name to read for ``session``; blank means the latest session."""
    if session and session.strip():
        return session_dir_name(session)
    sessions = list_sessions(video_dir)
    return sessions[-1] if sessions else ""


def _scan(video_dir: Path, session_dir: str) -> list[ClipEntry]:
    directory = Path(video_dir) / session_dir
    try:
        candidates = list(directory.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []
    entries: list[ClipEntry] = []
    for candidate in candidates:
        if not candidate.is_file():
            continue
        parsed = parse_final_name(candidate.name)
        if parsed is None:
            continue
        entries.append(ClipEntry.from_name(session_dir, parsed, candidate.name))
    return entries


def list_clips(
    video_dir: Path,
    session: str | None,
    *,
    sort_by: str = SORT_BY_TIME,
    time_order: str = "desc",
    limit: int | None = DEFAULT_LIST_LIMIT,
) -> tuple[list[ClipEntry], int]:
    """Return ``(entries, total)`` for one session directory.

    A blank session lists ``unsorted``. By default the newest clip comes
    first; ``sort_by="athlete"`` groups by athlete name with ``time_order``
    deciding the order inside each group.
    """
    if limit is not None and limit <= 0:
        raise ValueError("limit must be positive")
    if sort_by not in {SORT_BY_TIME, SORT_BY_ATHLETE}:
        raise ValueError("sort_by must be 'time' or 'athlete'")
    ascending = time_order == "asc"

    session_dir = session_dir_name(session)
    entries = _scan(video_dir, session_dir)
    if sort_by == SORT_BY_ATHLETE:
        entries.sort(key=lambda entry: entry.filename, reverse=not ascending)
        entries.sort(key=lambda entry: entry.athlete.lower())
    else:
        entries.sort(key=lambda entry: entry.filename, reverse=True)

    total = len(entries)
    if limit is not None:
        entries = entries[:limit]
    return entries, total


def latest_clip(video_dir: Path, camera: int, session: str | None = None) -> Path | None:
    """Most recent final clip for ``camera``; a blank session means the latest one."""
    session_dir = resolve_session(video_dir, session)
    if not session_dir:
        return None
    best: ClipEntry | None = None
    for entry in _scan(video_dir, session_dir):
        if entry.camera != camera:
            continue
        if best is None or (entry.timestamp, entry.filename) > (best.timestamp, best.filename):
            best = entry
    if best is None:
        return None
    return Path(video_dir) / session_dir / best.filename


def resolve_video_path(video_dir: Path, relative: str) -> Path | None:
    """Map a ``/videos/`` URL tail onto a file inside ``video_dir``."""
    if not relative or "\x00" in relative or "\\" in relative:
        return None
    pure = PurePosixPath(relative)
    if pure.is_absolute() or any(part in {"..", ""} for part in pure.parts):
        return None
    root = Path(video_dir).resolve()
    candidate = (root / Path(*pure.parts)).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        return None
    if not candidate.is_file():
        return None
    return candidate

"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORKING_CONTAINER = "mkv"
QUIET_LOGLEVEL = "quiet"
VERBOSE_LOGLEVEL = "info"

RECODE_ARGS = (
    "-c:v",
    "libx264",
    "-crf",
    "18",
    "-preset",
    "medium",
    "-profile:v",
    "main",
    "-pix_fmt",
    "yuv420p",
)
STREAM_COPY_ARGS = ("-c", "copy")


@dataclass(frozen=True)
class CaptureHints:
    """Per-camera options handed to the capture driver."""

    format: str = ""
    size: str = ""
    fps: int = 0
    params: str = ""
    input_params: str = ""
    output_params: str = ""
    container: str = ""
    recode: bool = False
    extra: tuple[str, ...] = field(default_factory=tuple)


def clean_params(params: str) -> list[str]:
    """Split a parameter string on whitespace and strip outer quotes."""
    cleaned: list[str] = []
    for token in (params or "").split():
        if len(token) >= 2 and token[0] == token[-1] and token[0] in {'"', "'"}:
            token = token[1:-1]
        cleaned.append(token)
    return cleaned


def input_source(input_spec: str, fmt: str) -> str:
    """DirectShow devices are addressed as ``video=<name>``."""
    if fmt == "dshow" and not input_spec.startswith(("video=", "audio=")):
        return f"video={input_spec}"
    return input_spec


def recording_args(input_spec: str, output_path: os.PathLike | str, hints: CaptureHints) -> list[str]:
    args = ["-y"]
    if hints.format:
        args += ["-f", hints.format]
    if hints.size:
        args += ["-s", hints.size]
    if hints.fps and hints.fps > 0:
        args += ["-r", str(int(hints.fps))]
    args += clean_params(hints.input_params)
    args += ["-i", input_source(input_spec, hints.format)]
    args += clean_params(hints.params)
    args += clean_params(hints.output_params)
    args += list(hints.extra)
    args.append(str(output_path))
    return args


def multicast_input(address: str, port: int) -> str:
    return f"udp://{address}:{int(port)}"


def multicast_recording_args(input_url: str, output_path: os.PathLike | str, hints: CaptureHints) -> list[str]:
    args = ["-y", "-f", "mpegts"]
    args += clean_params(hints.input_params)
    args += ["-i", input_url, "-c:v", "copy", "-an"]
    args += clean_params(hints.output_params)
    args.append(str(output_path))
    return args


def format_offset(start_offset_ms: int) -> str:
    millis = max(0, int(start_offset_ms))
    return f"{millis // 1000}.{millis % 1000:03d}"


def trimming_args(
    input_path: os.PathLike | str,
    output_path: os.PathLike | str,
    start_offset_ms: int,
    recode: bool,
) -> list[str]:
    args = ["-y"]
    if start_offset_ms > 0:
        args += ["-ss", format_offset(start_offset_ms)]
    args += ["-i", str(input_path)]
    args += list(RECODE_ARGS if recode else STREAM_COPY_ARGS)
    args.append(str(output_path))
    return args


def with_loglevel(args: list[str], level: str) -> list[str]:
    """Return ``args`` with ``-loglevel`` set, replacing any existing value."""
    updated = list(args)
    for index, token in enumerate(updated[:-1]):
        if token == "-loglevel":
            updated[index + 1] = level
            return updated
    return ["-loglevel", level] + updated


def log_file_path(logs_dir: Path, timestamp: str, operation: str) -> Path:
    return Path(logs_dir) / f"ffmpeg_{timestamp}_{operation}.log"


def render_command(executable: str, args: list[str]) -> str:
    return " ".join(shlex.quote(part) for part in [executable, *args])


__all__ = [
    "CaptureHints",
    "DEFAULT_WORKING_CONTAINER",
    "clean_params",
    "format_offset",
    "input_source",
    "log_file_path",
    "multicast_input",
    "multicast_recording_args",
    "recording_args",
    "render_command",
    "trimming_args",
    "with_loglevel",
]

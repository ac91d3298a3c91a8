#!/usr/bin/env python3
"""
Unified configuration loader for the replays recorder.

Load order (first found wins):
  1) REPLAYS_CONFIG (env, absolute or relative to CWD)
  2) /etc/replays/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from .capture_driver import CameraConfig, CaptureHints
from .ffmpeg_io import DEFAULT_WORKING_CONTAINER
from .recording_supervisor import STOP_GRACE_SEC, TRIM_LEAD_MS, SupervisorSettings

log = logging.getLogger("replays")

CONFIG_ENV = "REPLAYS_CONFIG"
ETC_CONFIG = Path("/etc/replays/config.yaml")

_DEFAULT_PARAMS = '-vf "format=yuv420p" -preset medium'

if sys.platform.startswith("win"):
    _DEFAULT_CAMERA = {"input": "Logitech Webcam C930e", "format": "dshow"}
else:
    _DEFAULT_CAMERA = {"input": "/dev/video0", "format": "v4l2"}

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 8091,
        "access_log": False,
    },
    "broker": {
        "enabled": True,
        "host": "",
        "port": 1883,
        "platform": "A",
        "topic_root": "owlcms",
    },
    "paths": {
        "video_dir": "videos",
        "logs_dir": "logs",
    },
    "recording": {
        "ffmpeg_path": "ffmpeg",
        "no_video": False,
        "log_ffmpeg": False,
        "recode": True,
        "working_container": DEFAULT_WORKING_CONTAINER,
        "trim_lead_ms": TRIM_LEAD_MS,
        "stop_grace_sec": STOP_GRACE_SEC,
        "decision_delay_sec": 2.0,
        "trim_attempts": 5,
        "trim_backoff_sec": 1.0,
    },
    "cameras": [
        {
            "enabled": True,
            **_DEFAULT_CAMERA,
            "size": "1280x720",
            "fps": 30,
            "params": _DEFAULT_PARAMS,
            "recode": False,
        }
    ],
    "multicast": {
        "enabled": False,
        "ip": "239.255.0.1",
        "ports": [],
        "input_params": "",
        "output_params": "",
    },
    "status": {
        "ui_queue_size": 10,
        "client_queue_size": 32,
        "client_send_timeout_sec": 2.0,
        "clear_after_sec": 10.0,
    },
    "logging": {
        "dev_mode": False,
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: List[Path] = []
_active_config_path: Path | None = None


class ConfigError(Exception):
    """Configuration is missing or invalid; the recorder cannot start."""

    kind = "CONFIG"


def defaults() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv(CONFIG_ENV)
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            ETC_CONFIG,
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    env_map = {
        "VIDEO_DIR": ("paths", "video_dir", str),
        "REPLAYS_PORT": ("server", "port", int),
        "MQTT_HOST": ("broker", "host", str),
        "MQTT_PORT": ("broker", "port", int),
        "REPLAYS_PLATFORM": ("broker", "platform", str),
        "FFMPEG_PATH": ("recording", "ffmpeg_path", str),
        "NO_VIDEO": ("recording", "no_video", _parse_bool),
        "LOG_FFMPEG": ("recording", "log_ffmpeg", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            raw = os.environ[env_key].strip()
            try:
                cfg.setdefault(section, {})[key] = cast(raw)
            except ValueError:
                log.warning("ignoring %s=%r: not a valid %s", env_key, raw, cast.__name__)


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = defaults()

    # replays/ -> project root
    project_root = Path(__file__).resolve().parent.parent
    script_dir = Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else Path.cwd()

    env_cfg = os.getenv(CONFIG_ENV)
    if env_cfg and not Path(env_cfg).expanduser().exists():
        raise ConfigError(f"{CONFIG_ENV} points at a missing file: {env_cfg}")

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


@dataclass(frozen=True)
class ReplaysSettings:
    video_dir: Path
    cameras: Tuple[CameraConfig, ...]
    host: str = "0.0.0.0"
    port: int = 8091
    access_log: bool = False
    broker_enabled: bool = True
    broker_host: str = ""
    broker_port: int = 1883
    platform: str = ""
    topic_root: str = "owlcms"
    logs_dir: Path = field(default_factory=lambda: Path("logs"))
    ffmpeg_path: str = "ffmpeg"
    no_video: bool = False
    log_ffmpeg: bool = False
    multicast: bool = False
    working_container: str = DEFAULT_WORKING_CONTAINER
    trim_lead_ms: int = TRIM_LEAD_MS
    stop_grace_sec: float = STOP_GRACE_SEC
    decision_delay_sec: float = 2.0
    trim_attempts: int = 5
    trim_backoff_sec: float = 1.0
    ui_queue_size: int = 10
    client_queue_size: int = 32
    client_send_timeout_sec: float = 2.0
    clear_after_sec: float = 10.0
    dev_mode: bool = False
    log_level: str = "INFO"

    def supervisor_settings(self) -> SupervisorSettings:
        return SupervisorSettings(
            video_dir=self.video_dir,
            cameras=self.cameras,
            trim_lead_ms=self.trim_lead_ms,
            stop_grace_sec=self.stop_grace_sec,
            working_container=self.working_container,
        )


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"section '{name}' must be a mapping")
    return value


def _int(section: str, data: Mapping[str, Any], key: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    raw = data.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{section}.{key} must be <= {maximum}, got {value}")
    return value


def _float(section: str, data: Mapping[str, Any], key: str, *, minimum: float = 0.0) -> float:
    raw = data.get(key)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{section}.{key} must be >= {minimum}, got {value}")
    return value


def _port(section: str, data: Mapping[str, Any], key: str = "port") -> int:
    return _int(section, data, key, minimum=1, maximum=65535)


def _device_cameras(entries: Any, default_recode: bool) -> Tuple[CameraConfig, ...]:
    if not isinstance(entries, list):
        raise ConfigError("'cameras' must be a list")
    cameras: List[CameraConfig] = []
    for position, entry in enumerate(entries, start=1):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"cameras[{position}] must be a mapping")
        if not _parse_bool(entry.get("enabled", True)):
            continue
        source = str(entry.get("input") or entry.get("camera") or "").strip()
        if not source:
            raise ConfigError(f"cameras[{position}] has no input device")
        recode = entry.get("recode")
        hints = CaptureHints(
            format=str(entry.get("format") or ""),
            size=str(entry.get("size") or ""),
            fps=_int(f"cameras[{position}]", entry, "fps", minimum=0) if entry.get("fps") else 0,
            params=str(entry.get("params") or ""),
            input_params=str(entry.get("input_params") or ""),
            output_params=str(entry.get("output_params") or ""),
            container=str(entry.get("container") or ""),
            recode=default_recode if recode is None else _parse_bool(recode),
        )
        cameras.append(
            CameraConfig(
                index=len(cameras) + 1,
                input_spec=source,
                hints=hints,
                description=str(entry.get("description") or source),
            )
        )
    return tuple(cameras)


def _multicast_cameras(section: Mapping[str, Any], default_recode: bool) -> Tuple[CameraConfig, ...]:
    ip = str(section.get("ip") or "").strip()
    if not ip:
        raise ConfigError("multicast.ip is required when multicast is enabled")
    ports = section.get("ports") or []
    if not isinstance(ports, list):
        raise ConfigError("multicast.ports must be a list")
    cameras: List[CameraConfig] = []
    for position, raw in enumerate(ports, start=1):
        port = _port("multicast", {"port": raw})
        hints = CaptureHints(
            input_params=str(section.get("input_params") or ""),
            output_params=str(section.get("output_params") or ""),
            recode=default_recode,
        )
        cameras.append(CameraConfig(index=position, input_spec=f"{ip}:{port}", hints=hints, description=f"udp://{ip}:{port}"))
    return tuple(cameras)


def build_settings(cfg: Mapping[str, Any] | None = None, *, create_dirs: bool = True) -> ReplaysSettings:
    """Validate a merged config mapping and freeze it into ``ReplaysSettings``."""
    cfg = get_cfg() if cfg is None else cfg
    server = _section(cfg, "server")
    broker = _section(cfg, "broker")
    paths = _section(cfg, "paths")
    recording = _section(cfg, "recording")
    multicast = _section(cfg, "multicast")
    status = _section(cfg, "status")
    logging_cfg = _section(cfg, "logging")

    default_recode = _parse_bool(recording.get("recode", True))
    use_multicast = _parse_bool(multicast.get("enabled", False))
    if use_multicast:
        cameras = _multicast_cameras(multicast, default_recode)
    else:
        cameras = _device_cameras(cfg.get("cameras", []), default_recode)
    if not cameras:
        raise ConfigError("no camera is enabled")

    video_dir = Path(str(paths.get("video_dir") or "videos")).expanduser()
    if create_dirs:
        try:
            video_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"cannot create video directory {video_dir}: {e}") from e

    dev_mode = _parse_bool(logging_cfg.get("dev_mode", False))
    level = "DEBUG" if dev_mode else str(logging_cfg.get("level") or "INFO").upper()

    return ReplaysSettings(
        video_dir=video_dir,
        cameras=cameras,
        host=str(server.get("host") or "0.0.0.0"),
        port=_port("server", server),
        access_log=_parse_bool(server.get("access_log", False)),
        broker_enabled=_parse_bool(broker.get("enabled", True)),
        broker_host=str(broker.get("host") or "").strip(),
        broker_port=_port("broker", broker),
        platform=str(broker.get("platform") or "").strip(),
        topic_root=str(broker.get("topic_root") or "owlcms"),
        logs_dir=Path(str(paths.get("logs_dir") or "logs")).expanduser(),
        ffmpeg_path=str(recording.get("ffmpeg_path") or "ffmpeg"),
        no_video=_parse_bool(recording.get("no_video", False)),
        log_ffmpeg=_parse_bool(recording.get("log_ffmpeg", False)),
        multicast=use_multicast,
        working_container=str(recording.get("working_container") or DEFAULT_WORKING_CONTAINER).lstrip("."),
        trim_lead_ms=_int("recording", recording, "trim_lead_ms", minimum=0),
        stop_grace_sec=_float("recording", recording, "stop_grace_sec"),
        decision_delay_sec=_float("recording", recording, "decision_delay_sec"),
        trim_attempts=_int("recording", recording, "trim_attempts", minimum=1),
        trim_backoff_sec=_float("recording", recording, "trim_backoff_sec"),
        ui_queue_size=_int("status", status, "ui_queue_size", minimum=10),
        client_queue_size=_int("status", status, "client_queue_size", minimum=1),
        client_send_timeout_sec=_float("status", status, "client_send_timeout_sec"),
        clear_after_sec=_float("status", status, "clear_after_sec"),
        dev_mode=dev_mode,
        log_level=level,
    )


__all__ = [
    "ConfigError",
    "ReplaysSettings",
    "active_config_path",
    "build_settings",
    "defaults",
    "get_cfg",
    "reload_cfg",
    "search_paths",
]

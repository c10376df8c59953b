#!/usr/bin/env python3
"""
Unified configuration loader for the timelapse pipeline.

Load order (first found wins):
  1) TIMELAPSE_CONFIG (env, absolute or relative to CWD)
  2) /etc/timelapse/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import math
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError

PLACEHOLDER_RECIPIENT = "admin@example.com"

_DEFAULTS: Dict[str, Any] = {
    "capture": {
        "video_device": "/dev/video0",
        "audio_device": None,
        "video_size": "1920x1080",
        "framerate": 30,
        "input_format": "yuyv422",
        "total_duration_sec": 24 * 3600,
        "chunk_duration_sec": 3600,
        "grace_period_sec": 600,
        "chunk_pause_sec": 2.0,
        "min_chunk_bytes": 1_000_000,
        "min_raw_bytes": 100_000_000,
        "merge_timeout_sec": 7200,
        "probe_timeout_sec": 30,
        "crf": 23,
        "preset": "veryfast",
        "video_filter": "",
        "min_free_space_gb": 15,
        "safety_margin_gb": 40,
        "cleanup_after_run": True,
        "hwaccel": {
            "enabled": False,
            "device": "/dev/dri/renderD128",
        },
    },
    "compress": {
        "target_minutes": 90,
        "output_fps": 30,
        "output_size": "640:360",
        "scan_sensitivity": 0.1,
        "tier_margin_frames": 5000,
        "thresholds": {
            "strict": 0.4,
            "medium": 0.25,
            "loose": 0.1,
        },
        "crf": 23,
        "preset": "fast",
        "min_final_bytes": 10_000_000,
        "pass_timeout_sec": 6 * 3600,
    },
    "paths": {
        "raw_dir": "/timelapse/raw",
        "final_dir": "/timelapse/final",
        "log_dir": "/var/log/timelapse",
        "lock_file": "/var/run/timelapse.lock",
        "state_file": "/timelapse/run_state.json",
        "final_prefix": "worldbox",
    },
    "retention": {
        "raw_retention_days": 7,
        "final_retention_days": 30,
        "residue_days": 1,
        "emergency_free_gb": 20,
        "emergency_raw_days": 3,
    },
    "health": {
        "service": "timelapse.service",
        "stale_after_minutes": 1800,
        "disk_critical_percent": 90,
        "process_name": "ffmpeg",
        "cpu_warn_percent": 200.0,
        "memory_warn_mb": 1536,
    },
    "alerts": {
        "recipient": PLACEHOLDER_RECIPIENT,
        "mail_command": "mail",
        "smtp": {},
        "webhook": {},
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "log_to_file": True,
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("timelapse.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    _log.warning("Ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("TIMELAPSE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("/etc/timelapse/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
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


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "VIDEO_DEV" in os.environ:
        value = os.environ["VIDEO_DEV"].strip()
        if value:
            cfg.setdefault("capture", {})["video_device"] = value
    if "AUDIO_DEV" in os.environ:
        # An empty AUDIO_DEV explicitly disables audio.
        value = os.environ["AUDIO_DEV"].strip()
        cfg.setdefault("capture", {})["audio_device"] = value or None
    if "ALERT_EMAIL" in os.environ:
        value = os.environ["ALERT_EMAIL"].strip()
        if value:
            cfg.setdefault("alerts", {})["recipient"] = value

    hwaccel = cfg.setdefault("capture", {}).setdefault("hwaccel", {})
    if "HWACCEL_ENABLED" in os.environ:
        hwaccel["enabled"] = _parse_bool(os.environ["HWACCEL_ENABLED"])
    if "HWACCEL_DEVICE" in os.environ:
        value = os.environ["HWACCEL_DEVICE"].strip()
        if value:
            hwaccel["device"] = value

    env_map = {
        "MIN_FREE_SPACE_GB": ("capture", "min_free_space_gb", float),
        "RAW_RETENTION_DAYS": ("retention", "raw_retention_days", float),
        "FINAL_RETENTION_DAYS": ("retention", "final_retention_days", float),
        "RAW_DIR": ("paths", "raw_dir", str),
        "FINAL_DIR": ("paths", "final_dir", str),
        "LOG_DIR": ("paths", "log_dir", str),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (timelapse/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

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


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name)
    return value if isinstance(value, Mapping) else {}


def _as_int(value: Any, key: str, *, minimum: int | None = None) -> int:
    try:
        result = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    if minimum is not None and result < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {result}")
    return result


def _as_float(value: Any, key: str, *, minimum: float | None = None) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc
    if math.isnan(result) or (minimum is not None and result < minimum):
        raise ConfigError(f"{key} must be >= {minimum}, got {value!r}")
    return result


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class CaptureSettings:
    video_device: str
    audio_device: str | None
    video_size: str
    framerate: int
    input_format: str
    total_duration_sec: int
    chunk_duration_sec: int
    grace_period_sec: int
    chunk_pause_sec: float
    min_chunk_bytes: int
    min_raw_bytes: int
    merge_timeout_sec: int
    probe_timeout_sec: float
    crf: int
    preset: str
    video_filter: str
    min_free_space_gb: float
    safety_margin_gb: float
    cleanup_after_run: bool
    hwaccel_enabled: bool
    hwaccel_device: str

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "CaptureSettings":
        hw = cfg.get("hwaccel") if isinstance(cfg.get("hwaccel"), Mapping) else {}
        return cls(
            video_device=str(cfg.get("video_device") or "/dev/video0"),
            audio_device=_as_optional_str(cfg.get("audio_device")),
            video_size=str(cfg.get("video_size") or "1920x1080"),
            framerate=_as_int(cfg.get("framerate", 30), "capture.framerate", minimum=1),
            input_format=str(cfg.get("input_format") or "yuyv422"),
            total_duration_sec=_as_int(
                cfg.get("total_duration_sec"), "capture.total_duration_sec", minimum=1
            ),
            chunk_duration_sec=_as_int(
                cfg.get("chunk_duration_sec"), "capture.chunk_duration_sec", minimum=1
            ),
            grace_period_sec=_as_int(
                cfg.get("grace_period_sec", 600), "capture.grace_period_sec", minimum=0
            ),
            chunk_pause_sec=_as_float(
                cfg.get("chunk_pause_sec", 2.0), "capture.chunk_pause_sec", minimum=0.0
            ),
            min_chunk_bytes=_as_int(
                cfg.get("min_chunk_bytes"), "capture.min_chunk_bytes", minimum=0
            ),
            min_raw_bytes=_as_int(cfg.get("min_raw_bytes"), "capture.min_raw_bytes", minimum=0),
            merge_timeout_sec=_as_int(
                cfg.get("merge_timeout_sec", 7200), "capture.merge_timeout_sec", minimum=1
            ),
            probe_timeout_sec=_as_float(
                cfg.get("probe_timeout_sec", 30), "capture.probe_timeout_sec", minimum=1.0
            ),
            crf=_as_int(cfg.get("crf", 23), "capture.crf", minimum=0),
            preset=str(cfg.get("preset") or "veryfast"),
            video_filter=str(cfg.get("video_filter") or ""),
            min_free_space_gb=_as_float(
                cfg.get("min_free_space_gb"), "capture.min_free_space_gb", minimum=0.0
            ),
            safety_margin_gb=_as_float(
                cfg.get("safety_margin_gb", 0), "capture.safety_margin_gb", minimum=0.0
            ),
            cleanup_after_run=bool(cfg.get("cleanup_after_run", True)),
            hwaccel_enabled=bool(hw.get("enabled", False)),
            hwaccel_device=str(hw.get("device") or "/dev/dri/renderD128"),
        )

    @property
    def required_free_gb(self) -> float:
        return self.min_free_space_gb + self.safety_margin_gb


@dataclass(frozen=True)
class CompressSettings:
    target_minutes: float
    output_fps: int
    output_size: str
    scan_sensitivity: float
    tier_margin_frames: int
    strict_threshold: float
    medium_threshold: float
    loose_threshold: float
    crf: int
    preset: str
    min_final_bytes: int
    pass_timeout_sec: int

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "CompressSettings":
        thresholds = cfg.get("thresholds") if isinstance(cfg.get("thresholds"), Mapping) else {}
        settings = cls(
            target_minutes=_as_float(
                cfg.get("target_minutes"), "compress.target_minutes", minimum=0.1
            ),
            output_fps=_as_int(cfg.get("output_fps", 30), "compress.output_fps", minimum=1),
            output_size=str(cfg.get("output_size") or "640:360"),
            scan_sensitivity=_as_float(
                cfg.get("scan_sensitivity", 0.1), "compress.scan_sensitivity", minimum=0.0
            ),
            tier_margin_frames=_as_int(
                cfg.get("tier_margin_frames", 5000), "compress.tier_margin_frames", minimum=0
            ),
            strict_threshold=_as_float(
                thresholds.get("strict", 0.4), "compress.thresholds.strict", minimum=0.0
            ),
            medium_threshold=_as_float(
                thresholds.get("medium", 0.25), "compress.thresholds.medium", minimum=0.0
            ),
            loose_threshold=_as_float(
                thresholds.get("loose", 0.1), "compress.thresholds.loose", minimum=0.0
            ),
            crf=_as_int(cfg.get("crf", 23), "compress.crf", minimum=0),
            preset=str(cfg.get("preset") or "fast"),
            min_final_bytes=_as_int(
                cfg.get("min_final_bytes"), "compress.min_final_bytes", minimum=0
            ),
            pass_timeout_sec=_as_int(
                cfg.get("pass_timeout_sec", 21600), "compress.pass_timeout_sec", minimum=1
            ),
        )
        if not (
            settings.loose_threshold <= settings.medium_threshold <= settings.strict_threshold
        ):
            raise ConfigError("compress.thresholds must satisfy loose <= medium <= strict")
        return settings

    @property
    def target_seconds(self) -> int:
        return int(round(self.target_minutes * 60))

    @property
    def target_frame_count(self) -> int:
        return self.target_seconds * self.output_fps


@dataclass(frozen=True)
class PathSettings:
    raw_dir: Path
    final_dir: Path
    log_dir: Path
    lock_file: Path
    state_file: Path
    final_prefix: str

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "PathSettings":
        defaults = _DEFAULTS["paths"]

        def _path(key: str) -> Path:
            return Path(str(cfg.get(key) or defaults[key])).expanduser()

        prefix = str(cfg.get("final_prefix") or defaults["final_prefix"]).strip()
        if not prefix or "/" in prefix:
            raise ConfigError(f"paths.final_prefix is not a usable file prefix: {prefix!r}")
        return cls(
            raw_dir=_path("raw_dir"),
            final_dir=_path("final_dir"),
            log_dir=_path("log_dir"),
            lock_file=_path("lock_file"),
            state_file=_path("state_file"),
            final_prefix=prefix,
        )


@dataclass(frozen=True)
class RetentionSettings:
    raw_retention_days: float
    final_retention_days: float
    residue_days: float
    emergency_free_gb: float
    emergency_raw_days: float

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "RetentionSettings":
        settings = cls(
            raw_retention_days=_as_float(
                cfg.get("raw_retention_days", 7), "retention.raw_retention_days", minimum=0.0
            ),
            final_retention_days=_as_float(
                cfg.get("final_retention_days", 30),
                "retention.final_retention_days",
                minimum=0.0,
            ),
            residue_days=_as_float(
                cfg.get("residue_days", 1), "retention.residue_days", minimum=0.0
            ),
            emergency_free_gb=_as_float(
                cfg.get("emergency_free_gb", 20), "retention.emergency_free_gb", minimum=0.0
            ),
            emergency_raw_days=_as_float(
                cfg.get("emergency_raw_days", 3), "retention.emergency_raw_days", minimum=0.0
            ),
        )
        if settings.final_retention_days <= settings.raw_retention_days:
            _log.warning(
                "final_retention_days (%s) should exceed raw_retention_days (%s)",
                settings.final_retention_days,
                settings.raw_retention_days,
            )
        return settings


@dataclass(frozen=True)
class HealthSettings:
    service: str
    stale_after_minutes: float
    disk_critical_percent: float
    process_name: str
    cpu_warn_percent: float
    memory_warn_mb: float

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "HealthSettings":
        return cls(
            service=str(cfg.get("service") or "timelapse.service"),
            stale_after_minutes=_as_float(
                cfg.get("stale_after_minutes", 1800), "health.stale_after_minutes", minimum=1.0
            ),
            disk_critical_percent=_as_float(
                cfg.get("disk_critical_percent", 90), "health.disk_critical_percent", minimum=0.0
            ),
            process_name=str(cfg.get("process_name") or "ffmpeg"),
            cpu_warn_percent=_as_float(
                cfg.get("cpu_warn_percent", 200), "health.cpu_warn_percent", minimum=0.0
            ),
            memory_warn_mb=_as_float(
                cfg.get("memory_warn_mb", 1536), "health.memory_warn_mb", minimum=0.0
            ),
        )


@dataclass(frozen=True)
class TimelapseSettings:
    capture: CaptureSettings
    compress: CompressSettings
    paths: PathSettings
    retention: RetentionSettings
    health: HealthSettings
    alerts: Dict[str, Any]
    dev_mode: bool
    log_to_file: bool

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None) -> "TimelapseSettings":
        # Partial mappings (tests, ad-hoc overrides) fall back to the defaults.
        cfg = _deep_merge(copy.deepcopy(_DEFAULTS), dict(get_cfg() if cfg is None else cfg))
        logging_cfg = _section(cfg, "logging")
        capture = CaptureSettings.from_cfg(_section(cfg, "capture"))
        retention = RetentionSettings.from_cfg(_section(cfg, "retention"))
        if retention.emergency_free_gb >= capture.required_free_gb:
            _log.warning(
                "emergency_free_gb (%s) should be below the capture free-space floor (%s)",
                retention.emergency_free_gb,
                capture.required_free_gb,
            )
        return cls(
            capture=capture,
            compress=CompressSettings.from_cfg(_section(cfg, "compress")),
            paths=PathSettings.from_cfg(_section(cfg, "paths")),
            retention=retention,
            health=HealthSettings.from_cfg(_section(cfg, "health")),
            alerts=dict(_section(cfg, "alerts")),
            dev_mode=bool(logging_cfg.get("dev_mode", False)),
            log_to_file=bool(logging_cfg.get("log_to_file", True)),
        )

"""Environment checks run before committing to a multi-hour capture.

Capacity and the capture device are hard requirements. Audio and hardware
encoding are optional: when they are unavailable the Run continues with
video-only / software encoding and the degradation is logged.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path

from . import audio_devices
from .config import TimelapseSettings
from .errors import PreflightDegraded, PreflightFailure
from .transcoder import Transcoder

GIB = 1024 ** 3

_log = logging.getLogger("timelapse.preflight")


@dataclass
class PreflightResult:
    free_gb: float
    audio_device: str | None
    hwaccel_device: str | None
    device_format: str = ""
    warnings: list[PreflightDegraded] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.warnings)


def _nearest_existing(path: Path) -> Path:
    candidate = path
    while not candidate.exists() and candidate.parent != candidate:
        candidate = candidate.parent
    return candidate


def check_capacity(settings: TimelapseSettings) -> float:
    target = _nearest_existing(settings.paths.raw_dir)
    usage = shutil.disk_usage(target)
    free_gb = usage.free / GIB
    required = settings.capture.required_free_gb
    if free_gb < required:
        raise PreflightFailure(
            "capacity",
            f"{free_gb:.1f}GB free on {target}, {required:.1f}GB required "
            f"({settings.capture.min_free_space_gb:g}GB minimum + "
            f"{settings.capture.safety_margin_gb:g}GB margin)",
        )
    _log.info("Disk space OK: %.1fGB available (required %.1fGB)", free_gb, required)
    return free_gb


def _is_char_device(path: str) -> bool:
    try:
        mode = os.stat(path).st_mode
    except OSError:
        return False
    return stat.S_ISCHR(mode)


def check_video_device(settings: TimelapseSettings, transcoder: Transcoder) -> str:
    device = settings.capture.video_device
    if not _is_char_device(device):
        raise PreflightFailure("device", f"{device} is missing or not a character device")
    ok, output = transcoder.probe_device(device)
    if not ok:
        raise PreflightFailure("device", f"{device} not responding: {output}")
    _log.info("Video device %s OK", device)
    if output:
        _log.info("Device format: %s", " | ".join(line.strip() for line in output.splitlines()))
    return output


def check_audio_device(
    settings: TimelapseSettings, warnings: list[PreflightDegraded]
) -> str | None:
    device = settings.capture.audio_device
    if not device:
        _log.info("No audio device specified, video only")
        return None
    available = audio_devices.discover_capture_devices()
    if audio_devices.device_present(device, available):
        _log.info("Audio device enabled: %s", device)
        return device
    known = ", ".join(d.identifier for d in available) or "none"
    warning = PreflightDegraded("audio", f"{device} not found (available: {known})")
    _log.warning("%s; continuing video-only", warning)
    warnings.append(warning)
    return None


def check_hwaccel(settings: TimelapseSettings, warnings: list[PreflightDegraded]) -> str | None:
    if not settings.capture.hwaccel_enabled:
        return None
    device = settings.capture.hwaccel_device
    if Path(device).exists():
        _log.info("Hardware acceleration enabled: %s", device)
        return device
    warning = PreflightDegraded("hwaccel", f"{device} does not exist")
    _log.warning("%s; falling back to software encoding", warning)
    warnings.append(warning)
    return None


def validate(settings: TimelapseSettings, *, transcoder: Transcoder) -> PreflightResult:
    """Run every check in order; the first hard failure raises PreflightFailure."""

    _log.info("Running pre-flight checks...")
    free_gb = check_capacity(settings)
    device_format = check_video_device(settings, transcoder)

    version = transcoder.version()
    if version:
        _log.info("ffmpeg found: %s", version)

    warnings: list[PreflightDegraded] = []
    audio = check_audio_device(settings, warnings)
    hwaccel = check_hwaccel(settings, warnings)
    return PreflightResult(
        free_gb=free_gb,
        audio_device=audio,
        hwaccel_device=hwaccel,
        device_format=device_format,
        warnings=warnings,
    )


__all__ = ["GIB", "PreflightResult", "validate"]

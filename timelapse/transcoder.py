"""Capability seam around the external ffmpeg/ffprobe/v4l2-ctl tools.

The controller and compressor only talk to :class:`Transcoder`; the real
implementation shells out, tests substitute a fake that writes files.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from . import ffmpeg_io
from .errors import ToolMissing, TranscodeError

_log = logging.getLogger("timelapse.transcoder")

_STDERR_TAIL = 2000


@dataclass(frozen=True)
class CaptureRequest:
    video_device: str
    output: Path
    duration_sec: int
    timeout_sec: float
    video_size: str
    framerate: int
    input_format: str
    crf: int
    preset: str
    audio_device: str | None = None
    hwaccel_device: str | None = None
    video_filter: str = ""


@dataclass(frozen=True)
class SceneFilterRequest:
    source: Path
    output: Path
    threshold: float
    output_fps: int
    output_size: str
    target_seconds: int
    crf: int
    preset: str
    timeout_sec: float


class Transcoder:
    """Minimal protocol for media backends."""

    def capture(self, request: CaptureRequest) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def merge(self, manifest: Path, output: Path, *, timeout_sec: float) -> None:  # pragma: no cover
        raise NotImplementedError

    def scene_scan(
        self,
        source: Path,
        scene_file: Path,
        *,
        sensitivity: float,
        output_size: str,
        timeout_sec: float,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def scene_filter(self, request: SceneFilterRequest) -> None:  # pragma: no cover
        raise NotImplementedError

    def count_packets(self, path: Path) -> int:  # pragma: no cover - interface only
        raise NotImplementedError

    def probe_duration(self, path: Path) -> float | None:  # pragma: no cover
        raise NotImplementedError

    def probe_device(self, device: str) -> tuple[bool, str]:  # pragma: no cover
        raise NotImplementedError

    def version(self) -> str | None:  # pragma: no cover - interface only
        raise NotImplementedError


def _tail(text: str | bytes | None) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = text.strip()
    return text[-_STDERR_TAIL:]


class FfmpegTranscoder(Transcoder):
    """Runs the real tools with hard timeouts.

    ``subprocess.run`` kills the child when the timeout expires or when the
    waiting thread is interrupted (for example by the SIGTERM handler), so no
    encoder outlives the call that started it.
    """

    def __init__(self, *, probe_timeout_sec: float = 30.0) -> None:
        self.probe_timeout_sec = float(probe_timeout_sec)

    def _run(
        self,
        operation: str,
        cmd: Sequence[str],
        *,
        timeout: float,
    ) -> subprocess.CompletedProcess[str]:
        _log.debug("%s: %s", operation, " ".join(cmd))
        try:
            proc = subprocess.run(
                list(cmd),
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ToolMissing(operation, f"{cmd[0]} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(
                operation,
                f"killed after {timeout:.0f}s timeout",
                timed_out=True,
                stderr=_tail(exc.stderr),
            ) from exc
        if proc.returncode != 0:
            stderr = _tail(proc.stderr)
            raise TranscodeError(
                operation,
                f"exited with code {proc.returncode}: {stderr or 'no stderr'}",
                returncode=proc.returncode,
                stderr=stderr,
            )
        return proc

    def capture(self, request: CaptureRequest) -> None:
        cmd = ffmpeg_io.capture_command(
            video_device=request.video_device,
            output=request.output,
            duration_sec=request.duration_sec,
            video_size=request.video_size,
            framerate=request.framerate,
            input_format=request.input_format,
            crf=request.crf,
            preset=request.preset,
            audio_device=request.audio_device,
            hwaccel_device=request.hwaccel_device,
            video_filter=request.video_filter,
        )
        self._run("capture", cmd, timeout=request.timeout_sec)

    def merge(self, manifest: Path, output: Path, *, timeout_sec: float) -> None:
        self._run("merge", ffmpeg_io.concat_command(manifest, output), timeout=timeout_sec)

    def scene_scan(
        self,
        source: Path,
        scene_file: Path,
        *,
        sensitivity: float,
        output_size: str,
        timeout_sec: float,
    ) -> None:
        cmd = ffmpeg_io.scene_scan_command(
            source,
            sensitivity=sensitivity,
            scene_file=scene_file,
            output_size=output_size,
        )
        self._run("scene-scan", cmd, timeout=timeout_sec)

    def scene_filter(self, request: SceneFilterRequest) -> None:
        cmd = ffmpeg_io.scene_filter_command(
            request.source,
            request.output,
            threshold=request.threshold,
            output_fps=request.output_fps,
            output_size=request.output_size,
            target_seconds=request.target_seconds,
            crf=request.crf,
            preset=request.preset,
        )
        self._run("scene-filter", cmd, timeout=request.timeout_sec)

    def count_packets(self, path: Path) -> int:
        """Decodable packets at the head of the first video stream (0 when unreadable).

        The probe reads at most ``ffmpeg_io.PROBE_PACKET_LIMIT`` packets.
        """

        try:
            proc = self._run(
                "integrity-probe",
                ffmpeg_io.packet_count_command(path),
                timeout=self.probe_timeout_sec,
            )
        except ToolMissing:
            raise
        except TranscodeError as exc:
            _log.warning("Integrity probe failed for %s: %s", path, exc)
            return 0
        for line in (proc.stdout or "").splitlines():
            token = line.strip().strip(",")
            if token.isdigit():
                return int(token)
        return 0

    def probe_duration(self, path: Path) -> float | None:
        try:
            proc = self._run(
                "duration-probe",
                ffmpeg_io.duration_command(path),
                timeout=self.probe_timeout_sec,
            )
        except TranscodeError as exc:
            _log.warning("Duration probe failed for %s: %s", path, exc)
            return None
        try:
            return float((proc.stdout or "").strip())
        except ValueError:
            return None

    def probe_device(self, device: str) -> tuple[bool, str]:
        try:
            proc = self._run(
                "device-probe",
                ffmpeg_io.device_format_command(device),
                timeout=self.probe_timeout_sec,
            )
        except ToolMissing as exc:
            return False, str(exc)
        except TranscodeError as exc:
            return False, str(exc)
        return True, (proc.stdout or "").strip()

    def version(self) -> str | None:
        try:
            proc = self._run("version", ffmpeg_io.version_command(), timeout=self.probe_timeout_sec)
        except TranscodeError:
            return None
        lines = (proc.stdout or "").splitlines()
        return lines[0].strip() if lines else None


__all__ = [
    "CaptureRequest",
    "FfmpegTranscoder",
    "SceneFilterRequest",
    "Transcoder",
]

"""Shared helpers for building ffmpeg/ffprobe command lines."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

DEFAULT_THREAD_QUEUE_SIZE = 8192
FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"
# Integrity probes read at most this many packets from the head of a file.
PROBE_PACKET_LIMIT = 64

_BASE_FLAGS = ["-hide_banner", "-nostdin", "-loglevel", "error", "-y"]


def v4l2_input_args(
    device: str,
    *,
    video_size: str,
    framerate: int,
    input_format: str,
    queue_size: int = DEFAULT_THREAD_QUEUE_SIZE,
) -> list[str]:
    """Return input arguments for a V4L2 capture device.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    the format options and ``-thread_queue_size`` are kept ahead of the device.
    """

    return [
        "-f",
        "v4l2",
        "-framerate",
        str(framerate),
        "-video_size",
        video_size,
        "-input_format",
        input_format,
        "-thread_queue_size",
        str(queue_size),
        "-i",
        device,
    ]


def alsa_input_args(device: str, *, queue_size: int = DEFAULT_THREAD_QUEUE_SIZE) -> list[str]:
    return ["-f", "alsa", "-thread_queue_size", str(queue_size), "-i", device]


def capture_command(
    *,
    video_device: str,
    output: Path,
    duration_sec: int,
    video_size: str,
    framerate: int,
    input_format: str,
    crf: int,
    preset: str,
    audio_device: str | None = None,
    hwaccel_device: str | None = None,
    video_filter: str = "",
) -> list[str]:
    """ffmpeg argv for one bounded capture chunk."""

    cmd = [FFMPEG, *_BASE_FLAGS]
    if hwaccel_device:
        cmd.extend(["-vaapi_device", hwaccel_device])
    cmd.extend(
        v4l2_input_args(
            video_device,
            video_size=video_size,
            framerate=framerate,
            input_format=input_format,
        )
    )
    if audio_device:
        cmd.extend(alsa_input_args(audio_device))

    filters = [video_filter] if video_filter else []
    if hwaccel_device:
        filters.extend(["format=nv12", "hwupload"])
    cmd.extend(["-map", "0:v"])
    if filters:
        cmd.extend(["-vf", ",".join(filters)])

    if hwaccel_device:
        cmd.extend(["-c:v", "h264_vaapi", "-qp", str(crf)])
    else:
        cmd.extend(
            [
                "-c:v",
                "libx264",
                "-preset",
                preset,
                "-crf",
                str(crf),
                "-tune",
                "stillimage",
            ]
        )
    # Fixed GOP and no B-frames keep chunk boundaries clean for stream-copy concat.
    cmd.extend(["-g", str(framerate * 10), "-bf", "0", "-threads", "0"])

    if audio_device:
        cmd.extend(["-map", "1:a", "-c:a", "aac", "-b:a", "128k"])

    cmd.extend(["-t", str(int(duration_sec)), "-movflags", "+faststart", str(output)])
    return cmd


def concat_manifest_text(paths: Sequence[Path]) -> str:
    """Render a concat demuxer manifest listing ``paths`` in order."""

    lines = []
    for path in paths:
        escaped = str(Path(path).resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    return "\n".join(lines) + "\n"


def concat_command(manifest: Path, output: Path) -> list[str]:
    return [
        FFMPEG,
        *_BASE_FLAGS,
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        str(manifest),
        "-map",
        "0",
        "-c",
        "copy",
        "-movflags",
        "+faststart",
        str(output),
    ]


def _scale_filter(output_size: str) -> str:
    return f"scale={output_size}:flags=lanczos"


def scene_scan_command(
    source: Path,
    *,
    sensitivity: float,
    scene_file: Path,
    output_size: str,
) -> list[str]:
    """Measurement pass: print every scene change above ``sensitivity``."""

    # Single quotes protect the commas in select() and the metadata file path
    # from the filtergraph parser.
    metadata_target = str(scene_file).replace("\\", "/").replace("'", "\\'")
    vf = (
        f"{_scale_filter(output_size)},"
        f"select='gt(scene,{sensitivity:.4f})',"
        f"metadata=print:file='{metadata_target}'"
    )
    return [
        FFMPEG,
        *_BASE_FLAGS,
        "-i",
        str(source),
        "-vf",
        vf,
        "-an",
        "-f",
        "null",
        "-",
    ]


def scene_filter_command(
    source: Path,
    output: Path,
    *,
    threshold: float,
    output_fps: int,
    output_size: str,
    target_seconds: int,
    crf: int,
    preset: str,
) -> list[str]:
    """Second pass: keep frames above ``threshold`` and retime them to ``output_fps``."""

    vf = (
        f"{_scale_filter(output_size)},"
        f"select='gt(scene,{threshold:.4f})',"
        f"setpts=N/({output_fps}*TB)"
    )
    return [
        FFMPEG,
        *_BASE_FLAGS,
        "-i",
        str(source),
        "-vf",
        vf,
        "-fps_mode",
        "vfr",
        "-c:v",
        "libx264",
        "-crf",
        str(crf),
        "-preset",
        preset,
        "-an",
        "-t",
        str(int(target_seconds)),
        "-movflags",
        "+faststart",
        str(output),
    ]


def packet_count_command(path: Path, *, limit: int = PROBE_PACKET_LIMIT) -> list[str]:
    return [
        FFPROBE,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-read_intervals",
        f"%+#{int(limit)}",
        "-count_packets",
        "-show_entries",
        "stream=nb_read_packets",
        "-of",
        "csv=p=0",
        str(path),
    ]


def duration_command(path: Path) -> list[str]:
    return [
        FFPROBE,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


def device_format_command(device: str) -> list[str]:
    return ["v4l2-ctl", f"--device={device}", "--get-fmt-video"]


def version_command() -> list[str]:
    return [FFMPEG, "-version"]


__all__ = [
    "DEFAULT_THREAD_QUEUE_SIZE",
    "PROBE_PACKET_LIMIT",
    "alsa_input_args",
    "capture_command",
    "concat_command",
    "concat_manifest_text",
    "device_format_command",
    "duration_command",
    "packet_count_command",
    "scene_filter_command",
    "scene_scan_command",
    "v4l2_input_args",
    "version_command",
]

from __future__ import annotations

import copy
from pathlib import Path

import pytest

from timelapse import config as config_module
from timelapse.config import PLACEHOLDER_RECIPIENT, TimelapseSettings
from timelapse.errors import TranscodeError
from timelapse.transcoder import CaptureRequest, SceneFilterRequest, Transcoder


def _base_cfg(root: Path) -> dict:
    return {
        "capture": {
            "total_duration_sec": 30,
            "chunk_duration_sec": 10,
            "grace_period_sec": 5,
            "chunk_pause_sec": 0,
            "min_chunk_bytes": 1024,
            "min_raw_bytes": 2048,
            "min_free_space_gb": 0,
            "safety_margin_gb": 0,
            "cleanup_after_run": False,
        },
        "compress": {
            "target_minutes": 0.1,
            "min_final_bytes": 1024,
        },
        "paths": {
            "raw_dir": str(root / "raw"),
            "final_dir": str(root / "final"),
            "log_dir": str(root / "logs"),
            "lock_file": str(root / "run" / "timelapse.lock"),
            "state_file": str(root / "run_state.json"),
        },
        "alerts": {"recipient": PLACEHOLDER_RECIPIENT},
        "logging": {"log_to_file": False},
    }


@pytest.fixture
def settings_factory(tmp_path):
    def _make(overrides: dict | None = None) -> TimelapseSettings:
        cfg = config_module._deep_merge(_base_cfg(tmp_path), copy.deepcopy(overrides or {}))
        return TimelapseSettings.from_cfg(cfg)

    return _make


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    def alert(self, subject, body, *, event=None):
        self.sent.append((subject, body, dict(event or {})))


@pytest.fixture
def alerts():
    return RecordingDispatcher()


def _manifest_entries(manifest: Path) -> list[Path]:
    entries = []
    for line in manifest.read_text(encoding="utf-8").splitlines():
        if not line.startswith("file '"):
            continue
        entries.append(Path(line[len("file '"):-1].replace("'\\''", "'")))
    return entries


class FakeTranscoder(Transcoder):
    """Writes placeholder media files instead of running ffmpeg."""

    def __init__(
        self,
        *,
        chunk_bytes: int = 4096,
        short_chunk_at: int | None = None,
        fail_capture_at: int | None = None,
        capture_error: BaseException | None = None,
        fail_merge: bool = False,
        raw_bytes: int | None = None,
        raw_packets: int = 120,
        fail_scan: bool = False,
        fail_filter: bool = False,
        scene_scores: tuple[float, ...] = (0.2, 0.5, 0.9),
        final_bytes: int = 4096,
    ) -> None:
        self.chunk_bytes = chunk_bytes
        self.short_chunk_at = short_chunk_at
        self.fail_capture_at = fail_capture_at
        self.capture_error = capture_error
        self.fail_merge = fail_merge
        self.raw_bytes = raw_bytes
        self.raw_packets = raw_packets
        self.fail_scan = fail_scan
        self.fail_filter = fail_filter
        self.scene_scores = scene_scores
        self.final_bytes = final_bytes
        self.captures: list[CaptureRequest] = []
        self.merges: list[list[Path]] = []
        self.scans: list[float] = []
        self.filters: list[SceneFilterRequest] = []

    def capture(self, request: CaptureRequest) -> None:
        index = len(self.captures)
        self.captures.append(request)
        if self.fail_capture_at == index:
            if self.capture_error is not None:
                raise self.capture_error
            raise TranscodeError("capture", "exited with code 1", returncode=1)
        size = 10 if self.short_chunk_at == index else self.chunk_bytes
        request.output.write_bytes(b"\0" * size)

    def merge(self, manifest: Path, output: Path, *, timeout_sec: float) -> None:
        entries = _manifest_entries(manifest)
        self.merges.append(entries)
        if self.fail_merge:
            raise TranscodeError("merge", "exited with code 1", returncode=1)
        total = sum(p.stat().st_size for p in entries)
        if self.raw_bytes is not None:
            total = self.raw_bytes
        output.write_bytes(b"\0" * total)

    def scene_scan(self, source, scene_file, *, sensitivity, output_size, timeout_sec) -> None:
        self.scans.append(sensitivity)
        if self.fail_scan:
            raise TranscodeError("scene-scan", "exited with code 1", returncode=1)
        lines = []
        for i, score in enumerate(self.scene_scores):
            lines.append(f"frame:{i}    pts:{i * 512}    pts_time:{i * 2}")
            lines.append(f"lavfi.scene_score={score}")
        scene_file.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def scene_filter(self, request: SceneFilterRequest) -> None:
        self.filters.append(request)
        if self.fail_filter:
            request.output.write_bytes(b"partial")
            raise TranscodeError("scene-filter", "exited with code 1", returncode=1)
        request.output.write_bytes(b"\0" * self.final_bytes)

    def count_packets(self, path: Path) -> int:
        path = Path(path)
        if not path.exists():
            return 0
        return self.raw_packets if path.name.startswith("raw_") else 120

    def probe_duration(self, path: Path) -> float | None:
        return 6.0

    def probe_device(self, device: str) -> tuple[bool, str]:
        return True, "Width/Height      : 1920/1080"

    def version(self) -> str | None:
        return "ffmpeg version 6.1"


@pytest.fixture
def transcoder_factory():
    return FakeTranscoder

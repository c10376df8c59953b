"""Artifact naming and verification.

Every file a Run writes carries the Run's start timestamp so retention can age
files by name pattern and the health check can find the newest final output.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from .transcoder import Transcoder

RUN_ID_FORMAT = "%Y%m%d_%H%M%S"
RUN_ID_PATTERN = re.compile(r"(\d{8}_\d{6})")

CHUNK_PREFIX = "chunk_"
MANIFEST_PREFIX = "concat_"
SCENE_DATA_PREFIX = "scenes_"
RAW_PREFIX = "raw_"
TEMP_PREFIX = "temp_"

# Working files of a Run; anything matching these that outlives a day is crash residue.
RESIDUE_GLOBS = (
    f"{TEMP_PREFIX}*.mp4",
    f"{CHUNK_PREFIX}*.mp4",
    f"{MANIFEST_PREFIX}*.txt",
    f"{SCENE_DATA_PREFIX}*.txt",
)
RAW_GLOB = f"{RAW_PREFIX}*.mp4"

_log = logging.getLogger("timelapse.artifacts")


def make_run_id(now: float | None = None) -> str:
    return time.strftime(RUN_ID_FORMAT, time.localtime(time.time() if now is None else now))


def run_id_from_name(name: str) -> str | None:
    match = RUN_ID_PATTERN.search(name)
    return match.group(1) if match else None


def final_glob(prefix: str) -> str:
    return f"{prefix}_*.mp4"


@dataclass(frozen=True)
class RunPaths:
    run_id: str
    raw_dir: Path
    final_dir: Path
    final_prefix: str

    def chunk(self, index: int) -> Path:
        return self.raw_dir / f"{CHUNK_PREFIX}{self.run_id}_{index:03d}.mp4"

    @property
    def manifest(self) -> Path:
        return self.raw_dir / f"{MANIFEST_PREFIX}{self.run_id}.txt"

    @property
    def scene_data(self) -> Path:
        return self.raw_dir / f"{SCENE_DATA_PREFIX}{self.run_id}.txt"

    @property
    def raw(self) -> Path:
        return self.raw_dir / f"{RAW_PREFIX}{self.run_id}.mp4"

    @property
    def temp(self) -> Path:
        # Same directory as the final file so the publish step is a rename.
        return self.final_dir / f"{TEMP_PREFIX}{self.run_id}.mp4"

    @property
    def final(self) -> Path:
        return self.final_dir / f"{self.final_prefix}_{self.run_id}.mp4"

    def ensure_dirs(self) -> None:
        self.raw_dir.mkdir(parents=True, exist_ok=True)
        self.final_dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class Verification:
    ok: bool
    size_bytes: int
    packets: int
    reason: str = ""


def verify_artifact(path: Path, min_bytes: int, transcoder: Transcoder) -> Verification:
    """Existence, minimum size and at least one decodable video packet."""

    if not path.is_file():
        return Verification(False, 0, 0, f"{path.name} was not created")
    size = path.stat().st_size
    if size < min_bytes:
        return Verification(
            False,
            size,
            0,
            f"{path.name} too small ({human_size(size)} < {human_size(min_bytes)})",
        )
    packets = transcoder.count_packets(path)
    if packets < 1:
        return Verification(False, size, packets, f"{path.name} has no decodable video packets")
    return Verification(True, size, packets)


def newest_final(final_dir: Path, prefix: str) -> Path | None:
    newest: tuple[float, Path] | None = None
    try:
        candidates = list(final_dir.glob(final_glob(prefix)))
    except OSError as exc:
        _log.warning("Unable to list %s: %s", final_dir, exc)
        return None
    for candidate in candidates:
        try:
            if not candidate.is_file():
                continue
            mtime = candidate.stat().st_mtime
        except OSError:
            continue
        if newest is None or mtime > newest[0]:
            newest = (mtime, candidate)
    return newest[1] if newest else None


def remove_quietly(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        _log.warning("Failed to remove %s: %s", path, exc)
        return False
    return True


def human_size(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024.0:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size /= 1024.0
    return f"{size:.1f}TB"


__all__ = [
    "RAW_GLOB",
    "RESIDUE_GLOBS",
    "RunPaths",
    "Verification",
    "final_glob",
    "human_size",
    "make_run_id",
    "newest_final",
    "remove_quietly",
    "run_id_from_name",
    "verify_artifact",
]

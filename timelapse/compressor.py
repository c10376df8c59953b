"""Two-pass scene-adaptive compression of a Raw Artifact.

Pass 1 counts scene changes at a fixed low sensitivity. The count decides how
selective pass 2 has to be to land near the target frame count: busy footage
gets a strict threshold, quiet footage a loose one. Pass 2 keeps only the
frames above that threshold, retimes them to a constant output rate and caps
the output at the target duration.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np

from .artifacts import RunPaths, human_size, remove_quietly, verify_artifact
from .config import CompressSettings
from .errors import CompressionFailure, ToolMissing, TranscodeError
from .transcoder import SceneFilterRequest, Transcoder

_log = logging.getLogger("timelapse.compressor")

_SCENE_SCORE = re.compile(r"lavfi\.scene_score=([0-9]*\.?[0-9]+(?:[eE][-+]?\d+)?)")


@dataclass(frozen=True)
class ThresholdTiers:
    strict: float = 0.4
    medium: float = 0.25
    loose: float = 0.1
    margin_frames: int = 5000

    @classmethod
    def from_settings(cls, settings: CompressSettings) -> "ThresholdTiers":
        return cls(
            strict=settings.strict_threshold,
            medium=settings.medium_threshold,
            loose=settings.loose_threshold,
            margin_frames=settings.tier_margin_frames,
        )


@dataclass(frozen=True)
class SceneStats:
    count: int
    mean_score: float
    max_score: float


@dataclass(frozen=True)
class CompressionResult:
    final_path: Path
    scene_count: int
    threshold: float
    size_bytes: int
    duration_sec: float | None


def select_threshold(
    scene_count: int,
    target_frame_count: int,
    tiers: ThresholdTiers | None = None,
) -> float:
    """Map a pass-1 scene count to the pass-2 selection threshold.

    More scenes than twice the target -> strict; more than target plus the
    margin -> medium; anything else (including zero) -> loose. Both
    comparisons are strict, so a count sitting exactly on a boundary stays in
    the lower tier.
    """

    tiers = tiers or ThresholdTiers()
    if scene_count > 2 * target_frame_count:
        return tiers.strict
    if scene_count > target_frame_count + tiers.margin_frames:
        return tiers.medium
    return tiers.loose


def parse_scene_scores(path: Path) -> np.ndarray:
    """Scene scores from an ffmpeg ``metadata=print`` dump; empty when absent."""

    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return np.empty(0, dtype=float)
    scores = [float(match) for match in _SCENE_SCORE.findall(text)]
    return np.asarray(scores, dtype=float)


def summarise_scores(scores: np.ndarray) -> SceneStats:
    if scores.size == 0:
        return SceneStats(count=0, mean_score=0.0, max_score=0.0)
    return SceneStats(
        count=int(scores.size),
        mean_score=float(np.mean(scores)),
        max_score=float(np.max(scores)),
    )


class SceneCompressor:
    def __init__(self, settings: CompressSettings, transcoder: Transcoder) -> None:
        self.settings = settings
        self.transcoder = transcoder
        self.tiers = ThresholdTiers.from_settings(settings)

    def scan(self, paths: RunPaths) -> SceneStats:
        """Pass 1: count scene changes in the Raw Artifact."""

        remove_quietly(paths.scene_data)
        try:
            self.transcoder.scene_scan(
                paths.raw,
                paths.scene_data,
                sensitivity=self.settings.scan_sensitivity,
                output_size=self.settings.output_size,
                timeout_sec=self.settings.pass_timeout_sec,
            )
        except ToolMissing:
            raise
        except TranscodeError as exc:
            raise CompressionFailure("pass1", str(exc)) from exc

        stats = summarise_scores(parse_scene_scores(paths.scene_data))
        if stats.count == 0:
            _log.warning("Scene scan found no scene changes in %s", paths.raw.name)
        else:
            _log.info(
                "Detected %d scene changes (mean score %.3f, max %.3f)",
                stats.count,
                stats.mean_score,
                stats.max_score,
            )
        return stats

    def encode(self, paths: RunPaths, threshold: float) -> Path:
        """Pass 2: select, retime and publish the Final Artifact."""

        settings = self.settings
        request = SceneFilterRequest(
            source=paths.raw,
            output=paths.temp,
            threshold=threshold,
            output_fps=settings.output_fps,
            output_size=settings.output_size,
            target_seconds=settings.target_seconds,
            crf=settings.crf,
            preset=settings.preset,
            timeout_sec=settings.pass_timeout_sec,
        )
        try:
            self.transcoder.scene_filter(request)
        except ToolMissing:
            remove_quietly(paths.temp)
            raise
        except TranscodeError as exc:
            remove_quietly(paths.temp)
            raise CompressionFailure("pass2", str(exc)) from exc

        check = verify_artifact(paths.temp, settings.min_final_bytes, self.transcoder)
        if not check.ok:
            remove_quietly(paths.temp)
            raise CompressionFailure("pass2", check.reason)

        try:
            os.replace(paths.temp, paths.final)
        except OSError as exc:
            remove_quietly(paths.temp)
            raise CompressionFailure("pass2", f"could not publish {paths.final}: {exc}") from exc
        _log.info("Final video created: %s (%s)", paths.final, human_size(check.size_bytes))
        return paths.final

    def compress(
        self,
        paths: RunPaths,
        *,
        on_stage: Callable[[str], None] | None = None,
    ) -> CompressionResult:
        target = self.settings.target_frame_count
        if on_stage:
            on_stage("scene-scan")
        stats = self.scan(paths)
        threshold = select_threshold(stats.count, target, self.tiers)
        _log.info(
            "Using scene threshold %.2f for %d scenes (target %d frames)",
            threshold,
            stats.count,
            target,
        )

        if on_stage:
            on_stage("encode")
        final = self.encode(paths, threshold)
        duration = self.transcoder.probe_duration(final)
        if duration is not None:
            _log.info(
                "Final duration: %.1f minutes (target: %g minutes)",
                duration / 60.0,
                self.settings.target_minutes,
            )
        return CompressionResult(
            final_path=final,
            scene_count=stats.count,
            threshold=threshold,
            size_bytes=final.stat().st_size,
            duration_sec=duration,
        )


__all__ = [
    "CompressionResult",
    "SceneCompressor",
    "SceneStats",
    "ThresholdTiers",
    "parse_scene_scores",
    "select_threshold",
    "summarise_scores",
]

from __future__ import annotations

import pytest

from timelapse.artifacts import RunPaths
from timelapse.compressor import (
    SceneCompressor,
    ThresholdTiers,
    parse_scene_scores,
    select_threshold,
    summarise_scores,
)
from timelapse.errors import CompressionFailure, ToolMissing

TARGET = 90 * 60 * 30


def _paths(settings, run_id="20240101_000000"):
    paths = RunPaths(
        run_id=run_id,
        raw_dir=settings.paths.raw_dir,
        final_dir=settings.paths.final_dir,
        final_prefix=settings.paths.final_prefix,
    )
    paths.ensure_dirs()
    paths.raw.write_bytes(b"\0" * 8192)
    return paths


def test_default_target_frame_count(settings_factory):
    settings = settings_factory({"compress": {"target_minutes": 90}})
    assert settings.compress.target_frame_count == TARGET == 162000


@pytest.mark.parametrize(
    "count, expected",
    [
        (0, 0.1),
        (1000, 0.1),
        (TARGET + 5000, 0.1),
        (TARGET + 5001, 0.25),
        (2 * TARGET, 0.25),
        (2 * TARGET + 1, 0.4),
        (10 * TARGET, 0.4),
    ],
)
def test_select_threshold_tiers(count, expected):
    assert select_threshold(count, TARGET) == expected


def test_select_threshold_is_monotonic():
    counts = range(0, 3 * TARGET, 997)
    thresholds = [select_threshold(c, TARGET) for c in counts]
    assert thresholds == sorted(thresholds)


def test_select_threshold_uses_configured_tiers():
    tiers = ThresholdTiers(strict=0.6, medium=0.3, loose=0.05, margin_frames=0)
    assert select_threshold(11, 10, tiers) == 0.3
    assert select_threshold(21, 10, tiers) == 0.6
    assert select_threshold(10, 10, tiers) == 0.05


def test_parse_scene_scores(tmp_path):
    data = tmp_path / "scenes.txt"
    data.write_text(
        "frame:0    pts:0       pts_time:0\n"
        "lavfi.scene_score=0.125000\n"
        "frame:1    pts:5120    pts_time:10\n"
        "lavfi.scene_score=0.800000\n",
        encoding="utf-8",
    )
    scores = parse_scene_scores(data)
    assert scores.tolist() == [0.125, 0.8]

    stats = summarise_scores(scores)
    assert stats.count == 2
    assert stats.max_score == pytest.approx(0.8)
    assert stats.mean_score == pytest.approx(0.4625)

    assert parse_scene_scores(tmp_path / "missing.txt").size == 0
    assert summarise_scores(parse_scene_scores(tmp_path / "missing.txt")).count == 0


def test_zero_scenes_uses_loose_threshold(settings_factory, transcoder_factory):
    settings = settings_factory()
    transcoder = transcoder_factory(scene_scores=())
    paths = _paths(settings)

    result = SceneCompressor(settings.compress, transcoder).compress(paths)

    assert result.scene_count == 0
    assert result.threshold == settings.compress.loose_threshold
    assert paths.final.exists()
    assert not paths.temp.exists()
    assert paths.raw.exists()


def test_busy_footage_uses_strict_threshold(settings_factory, transcoder_factory):
    settings = settings_factory()
    # 0.1 minutes at 30 fps -> 180 target frames
    transcoder = transcoder_factory(scene_scores=tuple([0.5] * 400))
    paths = _paths(settings)
    stages = []

    result = SceneCompressor(settings.compress, transcoder).compress(
        paths, on_stage=stages.append
    )

    assert stages == ["scene-scan", "encode"]
    assert result.threshold == settings.compress.strict_threshold
    request = transcoder.filters[0]
    assert request.threshold == settings.compress.strict_threshold
    assert request.output == paths.temp
    assert request.target_seconds == 6
    assert transcoder.scans == [settings.compress.scan_sensitivity]


def test_pass1_failure(settings_factory, transcoder_factory):
    settings = settings_factory()
    paths = _paths(settings)

    with pytest.raises(CompressionFailure) as excinfo:
        SceneCompressor(settings.compress, transcoder_factory(fail_scan=True)).compress(paths)

    assert excinfo.value.stage == "pass1"
    assert paths.raw.exists()


def test_pass2_failure_removes_temp_and_keeps_raw(settings_factory, transcoder_factory):
    settings = settings_factory()
    paths = _paths(settings)

    with pytest.raises(CompressionFailure) as excinfo:
        SceneCompressor(settings.compress, transcoder_factory(fail_filter=True)).compress(paths)

    assert excinfo.value.stage == "pass2"
    assert not paths.temp.exists()
    assert not paths.final.exists()
    assert paths.raw.exists()


def test_undersized_output_is_rejected(settings_factory, transcoder_factory):
    settings = settings_factory({"compress": {"min_final_bytes": 10_000}})
    paths = _paths(settings)

    with pytest.raises(CompressionFailure) as excinfo:
        SceneCompressor(settings.compress, transcoder_factory(final_bytes=100)).compress(paths)

    assert "too small" in str(excinfo.value)
    assert not paths.temp.exists()
    assert not paths.final.exists()


def test_missing_ffmpeg_is_not_wrapped(settings_factory, transcoder_factory):
    settings = settings_factory()
    paths = _paths(settings)
    transcoder = transcoder_factory()

    def _missing(*args, **kwargs):
        raise ToolMissing("scene-scan", "ffmpeg not found")

    transcoder.scene_scan = _missing

    with pytest.raises(ToolMissing):
        SceneCompressor(settings.compress, transcoder).compress(paths)

from __future__ import annotations

import os
import time
from types import SimpleNamespace

import pytest

import timelapse.retention as retention
from timelapse.run_state import Phase, RunState, RunStateStore, store_run_state

DAY = 86400
GIB = 1024 ** 3


def _touch(path, age_days, now, size=128):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    mtime = now - age_days * DAY
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def plenty_of_space(monkeypatch):
    monkeypatch.setattr(
        retention.shutil,
        "disk_usage",
        lambda _path: SimpleNamespace(total=500 * GIB, used=100 * GIB, free=400 * GIB),
    )


def test_age_based_policy(settings_factory, plenty_of_space):
    settings = settings_factory()
    now = time.time()
    raw_dir = settings.paths.raw_dir
    final_dir = settings.paths.final_dir

    old_raw = _touch(raw_dir / "raw_20240101_000000.mp4", 8, now)
    new_raw = _touch(raw_dir / "raw_20240105_000000.mp4", 6, now)
    old_final = _touch(final_dir / "worldbox_20231201_000000.mp4", 31, now)
    new_final = _touch(final_dir / "worldbox_20240101_000000.mp4", 8, now)
    old_chunk = _touch(raw_dir / "chunk_20240108_000000_003.mp4", 2, now)
    old_manifest = _touch(raw_dir / "concat_20240108_000000.txt", 2, now)
    old_temp = _touch(final_dir / "temp_20240108_000000.mp4", 2, now)
    fresh_chunk = _touch(raw_dir / "chunk_20240110_000000_000.mp4", 0.5, now)
    unrelated = _touch(raw_dir / "notes.txt", 100, now)

    report = retention.RetentionManager(settings, clock=lambda: now).run()

    assert not old_raw.exists()
    assert new_raw.exists()
    assert not old_final.exists()
    assert new_final.exists()
    assert not old_chunk.exists()
    assert not old_manifest.exists()
    assert not old_temp.exists()
    assert fresh_chunk.exists()
    assert unrelated.exists()
    assert report.deleted["raw"] == [old_raw]
    assert report.deleted["final"] == [old_final]
    assert sorted(report.deleted["residue"]) == sorted([old_chunk, old_manifest, old_temp])
    assert report.bytes_freed == 5 * 128
    assert report.emergency is False
    assert report.storage["raw"].files == 1
    assert report.storage["final"].files == 1


def test_second_pass_deletes_nothing(settings_factory, plenty_of_space):
    settings = settings_factory()
    now = time.time()
    _touch(settings.paths.raw_dir / "raw_20240101_000000.mp4", 8, now)
    _touch(settings.paths.raw_dir / "raw_20240105_000000.mp4", 1, now)

    manager = retention.RetentionManager(settings, clock=lambda: now)
    first = manager.run()
    second = manager.run()

    assert first.deleted_count == 1
    assert second.deleted_count == 0
    assert second.bytes_freed == 0


def test_emergency_sweep_alerts_and_deletes_older_raw(settings_factory, monkeypatch, alerts):
    settings = settings_factory()
    now = time.time()
    monkeypatch.setattr(
        retention.shutil,
        "disk_usage",
        lambda _path: SimpleNamespace(total=500 * GIB, used=495 * GIB, free=5 * GIB),
    )
    four_days = _touch(settings.paths.raw_dir / "raw_20240104_000000.mp4", 4, now)
    two_days = _touch(settings.paths.raw_dir / "raw_20240106_000000.mp4", 2, now)

    report = retention.RetentionManager(settings, dispatcher=alerts, clock=lambda: now).run()

    assert report.emergency is True
    assert report.deleted["emergency-raw"] == [four_days]
    assert not four_days.exists()
    assert two_days.exists()
    assert len(alerts.sent) == 1
    subject, _body, event = alerts.sent[0]
    assert subject == "DISK ALERT"
    assert event["free_gb"] == pytest.approx(5.0)


def test_active_run_files_are_protected(settings_factory, plenty_of_space):
    settings = settings_factory()
    now = time.time()
    store_run_state(
        settings.paths.state_file,
        RunState(
            phase=Phase.CAPTURING,
            updated_at=now,
            run_id="20240101_000000",
            pid=os.getpid(),
        ),
    )
    active_chunk = _touch(settings.paths.raw_dir / "chunk_20240101_000000_000.mp4", 2, now)
    other_chunk = _touch(settings.paths.raw_dir / "chunk_20231231_000000_000.mp4", 2, now)

    report = retention.RetentionManager(
        settings, RunStateStore(settings.paths.state_file), clock=lambda: now
    ).run()

    assert active_chunk.exists()
    assert not other_chunk.exists()
    assert report.skipped_active == [active_chunk]


def test_finished_run_files_are_not_protected(settings_factory, plenty_of_space):
    settings = settings_factory()
    now = time.time()
    store_run_state(
        settings.paths.state_file,
        RunState(phase=Phase.FAILED, updated_at=now, run_id="20240101_000000", pid=os.getpid()),
    )
    chunk = _touch(settings.paths.raw_dir / "chunk_20240101_000000_000.mp4", 2, now)

    retention.RetentionManager(
        settings, RunStateStore(settings.paths.state_file), clock=lambda: now
    ).run()

    assert not chunk.exists()


def test_missing_directories_are_tolerated(settings_factory, plenty_of_space):
    settings = settings_factory()

    report = retention.RetentionManager(settings).run()

    assert report.deleted_count == 0
    assert report.storage["raw"].files == 0

#!/usr/bin/env python3
"""Retention and disk-budget enforcement for timelapse artifacts.

Runs daily from a timer and once at the end of every successful capture. The
policy is purely age based (mtime), so running it twice in a row deletes
nothing the second time. Working files that belong to a Run which is still
in progress are never touched.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from . import artifacts
from .config import TimelapseSettings
from .errors import ConfigError, EmergencyDiskPressure
from .logs import LOG_FORMAT, configure_logging
from .notifications import AlertDispatcher, build_dispatcher
from .run_state import RunStateStore

GIB = 1024 ** 3
SECONDS_PER_DAY = 86400

_log = logging.getLogger("timelapse.retention")


@dataclass
class DirectoryUsage:
    files: int = 0
    bytes: int = 0


@dataclass
class RetentionReport:
    free_gb: float = 0.0
    emergency: bool = False
    deleted: dict[str, list[Path]] = field(default_factory=dict)
    bytes_freed: int = 0
    skipped_active: list[Path] = field(default_factory=list)
    storage: dict[str, DirectoryUsage] = field(default_factory=dict)

    @property
    def deleted_count(self) -> int:
        return sum(len(paths) for paths in self.deleted.values())

    def record(self, category: str, path: Path, size: int) -> None:
        self.deleted.setdefault(category, []).append(path)
        self.bytes_freed += size


def _iter_matches(directory: Path, patterns: Iterable[str]) -> list[Path]:
    found: list[Path] = []
    if not directory.is_dir():
        return found
    for pattern in patterns:
        found.extend(p for p in directory.glob(pattern) if p.is_file())
    return sorted(set(found))


def directory_usage(directory: Path, pattern: str = "*") -> DirectoryUsage:
    usage = DirectoryUsage()
    for path in _iter_matches(directory, [pattern]):
        try:
            usage.bytes += path.stat().st_size
        except OSError:
            continue
        usage.files += 1
    return usage


class RetentionManager:
    """Apply the retention policy to the raw and final directories."""

    def __init__(
        self,
        settings: TimelapseSettings,
        state_store: RunStateStore | None = None,
        dispatcher: AlertDispatcher | None = None,
        *,
        clock=time.time,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.dispatcher = dispatcher
        self._clock = clock

    def _protected_run_ids(self) -> set[str]:
        if self.state_store is None:
            return set()
        state = self.state_store.read()
        if state.run_id and state.phase.is_active and state.owner_alive():
            return {state.run_id}
        return set()

    def free_gb(self) -> float:
        target = self.settings.paths.raw_dir
        while not target.exists() and target.parent != target:
            target = target.parent
        return shutil.disk_usage(target).free / GIB

    def _expired(self, path: Path, days: float, now: float) -> bool:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return False
        return now - mtime > days * SECONDS_PER_DAY

    def _sweep(
        self,
        report: RetentionReport,
        category: str,
        directories: Iterable[Path],
        patterns: Iterable[str],
        days: float,
        protected: set[str],
        now: float,
    ) -> None:
        patterns = list(patterns)
        for directory in directories:
            for path in _iter_matches(directory, patterns):
                if not self._expired(path, days, now):
                    continue
                if artifacts.run_id_from_name(path.name) in protected:
                    report.skipped_active.append(path)
                    _log.debug("Skipping %s: belongs to the active run", path)
                    continue
                try:
                    size = path.stat().st_size
                except OSError:
                    size = 0
                if artifacts.remove_quietly(path):
                    _log.info("Deleted %s file %s (%s)", category, path, artifacts.human_size(size))
                    report.record(category, path, size)

    def _emergency(self, report: RetentionReport, protected: set[str], now: float) -> None:
        retention = self.settings.retention
        pressure = EmergencyDiskPressure(report.free_gb, retention.emergency_free_gb)
        _log.critical("CRITICAL: %s", pressure)
        if self.dispatcher is not None:
            self.dispatcher.alert(
                "DISK ALERT",
                "Low disk space on {host}: {free_gb:.1f}GB free "
                "(threshold {threshold_gb:g}GB). Deleting raw files older than "
                "{days:g} days.",
                event={
                    "free_gb": report.free_gb,
                    "threshold_gb": retention.emergency_free_gb,
                    "days": retention.emergency_raw_days,
                    "raw_dir": str(self.settings.paths.raw_dir),
                },
            )
        self._sweep(
            report,
            "emergency-raw",
            [self.settings.paths.raw_dir],
            [artifacts.RAW_GLOB],
            retention.emergency_raw_days,
            protected,
            now,
        )

    def run(self) -> RetentionReport:
        paths = self.settings.paths
        retention = self.settings.retention
        now = self._clock()
        protected = self._protected_run_ids()
        report = RetentionReport()

        _log.info("Starting cleanup")
        report.free_gb = self.free_gb()
        _log.info("Current free space: %.1fGB", report.free_gb)
        if report.free_gb < retention.emergency_free_gb:
            report.emergency = True
            self._emergency(report, protected, now)

        self._sweep(
            report, "raw", [paths.raw_dir], [artifacts.RAW_GLOB],
            retention.raw_retention_days, protected, now,
        )
        self._sweep(
            report, "final", [paths.final_dir], [artifacts.final_glob(paths.final_prefix)],
            retention.final_retention_days, protected, now,
        )
        self._sweep(
            report, "residue", [paths.raw_dir, paths.final_dir], artifacts.RESIDUE_GLOBS,
            retention.residue_days, protected, now,
        )

        report.storage = {
            "raw": directory_usage(paths.raw_dir, artifacts.RAW_GLOB),
            "final": directory_usage(paths.final_dir, artifacts.final_glob(paths.final_prefix)),
        }
        for name, usage in report.storage.items():
            _log.info(
                "%s files: %d (%s)", name.capitalize(), usage.files, artifacts.human_size(usage.bytes)
            )
        _log.info(
            "Cleanup completed: %d files removed, %s freed",
            report.deleted_count,
            artifacts.human_size(report.bytes_freed),
        )
        return report


def parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete expired timelapse artifacts")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(list(argv) if argv is not None else sys.argv[1:])


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = TimelapseSettings.from_cfg()
    except ConfigError as exc:
        logging.basicConfig(format=LOG_FORMAT)
        _log.error("Invalid configuration: %s", exc)
        return 1

    configure_logging(
        "cleanup",
        log_dir=settings.paths.log_dir if settings.log_to_file else None,
        log_level=args.log_level,
        dev_mode=settings.dev_mode,
    )
    manager = RetentionManager(
        settings,
        RunStateStore(settings.paths.state_file),
        build_dispatcher(settings.alerts),
    )
    try:
        report = manager.run()
    except OSError as exc:
        _log.error("Cleanup failed: %s", exc)
        return 1
    return 1 if report.emergency else 0


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())

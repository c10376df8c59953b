#!/usr/bin/env python3
"""Periodic health report for the capture pipeline.

Stateless: every invocation inspects the supervisor, the run state file, the
final directory, disk usage and encoder resource use, then sends at most one
alert summarising everything that needs attention.
"""

from __future__ import annotations

import argparse
import logging
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .artifacts import newest_final
from .config import TimelapseSettings
from .errors import ConfigError
from .logs import LOG_FORMAT, configure_logging
from .notifications import AlertDispatcher, build_dispatcher
from .run_state import Phase, RunState, RunStateStore

OK = "ok"
INFO = "info"
WARNING = "warning"
ALERT = "alert"
ERROR = "error"

_log = logging.getLogger("timelapse.health")


@dataclass(frozen=True)
class Finding:
    check: str
    level: str
    message: str


@dataclass
class HealthReport:
    phase: Phase = Phase.UNKNOWN
    findings: list[Finding] = field(default_factory=list)

    @property
    def alerts(self) -> list[Finding]:
        return [f for f in self.findings if f.level == ALERT]

    @property
    def healthy(self) -> bool:
        return not any(f.level in (ALERT, ERROR) for f in self.findings)


def _nearest_existing(path: Path) -> Path:
    while not path.exists() and path.parent != path:
        path = path.parent
    return path


class HealthReporter:
    def __init__(
        self,
        settings: TimelapseSettings,
        state_store: RunStateStore,
        dispatcher: AlertDispatcher | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.dispatcher = dispatcher
        self._clock = clock

    # --- probes ---
    def service_active(self) -> bool | None:
        """``systemctl is-active``; ``None`` when systemctl cannot be used."""

        try:
            proc = subprocess.run(
                ["systemctl", "is-active", "--quiet", self.settings.health.service],
                capture_output=True,
                text=True,
                check=False,
                timeout=10,
            )
        except (FileNotFoundError, subprocess.SubprocessError):
            return None
        return proc.returncode == 0

    def encoder_usage(self) -> tuple[int, float, float] | None:
        """(process count, summed %cpu, summed RSS in MB) for the encoder processes."""

        try:
            proc = subprocess.run(
                ["ps", "-C", self.settings.health.process_name, "-o", "%cpu=,rss="],
                capture_output=True,
                text=True,
                check=False,
                timeout=10,
            )
        except (FileNotFoundError, subprocess.SubprocessError):
            return None
        count = 0
        cpu = 0.0
        rss_kb = 0.0
        for line in (proc.stdout or "").splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            try:
                cpu += float(parts[0])
                rss_kb += float(parts[1])
            except ValueError:
                continue
            count += 1
        return count, cpu, rss_kb / 1024.0

    # --- checks ---
    def check_service(self, state: RunState) -> list[Finding]:
        service = self.settings.health.service
        active = self.service_active()
        source = "systemctl"
        if active is None:
            active = state.owner_alive()
            source = "run state pid"
        if active:
            return [Finding("service", OK, f"{service} is active ({source})")]
        if state.phase is Phase.COMPLETE:
            return [Finding("service", OK, f"{service} idle after a completed run")]
        return [
            Finding(
                "service",
                ALERT,
                f"SERVICE DOWN: {service} is not running (phase {state.phase.value}, {source})",
            )
        ]

    def check_output(self, state: RunState) -> list[Finding]:
        paths = self.settings.paths
        newest = newest_final(paths.final_dir, paths.final_prefix)
        if newest is None:
            if state.phase.is_active:
                return [Finding("output", INFO, "No final files yet; a run is in progress")]
            return [Finding("output", ALERT, f"NO FINAL FILES in {paths.final_dir}")]

        age_min = (self._clock() - newest.stat().st_mtime) / 60.0
        bound_min = max(
            self.settings.health.stale_after_minutes,
            self.settings.capture.total_duration_sec / 60.0 + 60.0,
        )
        if age_min > bound_min:
            return [
                Finding(
                    "output",
                    ALERT,
                    f"NO NEW OUTPUT: newest final {newest.name} is {age_min:.0f} minutes old "
                    f"(limit {bound_min:.0f})",
                )
            ]
        return [Finding("output", OK, f"Latest final {newest.name} ({age_min:.0f} minutes old)")]

    def check_disk(self, state: RunState) -> list[Finding]:
        target = _nearest_existing(self.settings.paths.final_dir)
        usage = shutil.disk_usage(target)
        percent = usage.used * 100.0 / usage.total if usage.total else 0.0
        limit = self.settings.health.disk_critical_percent
        if percent > limit:
            return [
                Finding("disk", ALERT, f"DISK CRITICAL: {target} {percent:.0f}% used (limit {limit:g}%)")
            ]
        return [Finding("disk", OK, f"Disk usage {percent:.0f}% on {target}")]

    def check_resources(self, state: RunState) -> list[Finding]:
        health = self.settings.health
        usage = self.encoder_usage()
        if usage is None:
            return [Finding("resources", INFO, "ps unavailable; skipping resource check")]
        count, cpu, rss_mb = usage
        if count == 0:
            return [Finding("resources", OK, f"No {health.process_name} processes running")]
        findings = [
            Finding(
                "resources",
                OK,
                f"{health.process_name}: {count} process(es), {cpu:.1f}% CPU, {rss_mb:.0f}MB RSS",
            )
        ]
        if cpu > health.cpu_warn_percent:
            findings.append(
                Finding("resources", WARNING, f"High CPU: {cpu:.1f}% > {health.cpu_warn_percent:g}%")
            )
        if rss_mb > health.memory_warn_mb:
            findings.append(
                Finding(
                    "resources",
                    WARNING,
                    f"High memory: {rss_mb:.0f}MB > {health.memory_warn_mb:g}MB",
                )
            )
        return findings

    def checks(self) -> list[tuple[str, Callable[[RunState], list[Finding]]]]:
        return [
            ("service", self.check_service),
            ("output", self.check_output),
            ("disk", self.check_disk),
            ("resources", self.check_resources),
        ]

    def run(self) -> HealthReport:
        state = self.state_store.read()
        report = HealthReport(phase=state.phase)
        _log.info("Run phase: %s", state.phase.value)

        for name, check in self.checks():
            try:
                report.findings.extend(check(state))
            except Exception as exc:  # noqa: BLE001 - one broken check must not hide the others
                report.findings.append(Finding(name, ERROR, f"{name} check crashed: {exc}"))

        for finding in report.findings:
            level = {
                ALERT: logging.ERROR,
                ERROR: logging.ERROR,
                WARNING: logging.WARNING,
            }.get(finding.level, logging.INFO)
            _log.log(level, "[%s] %s", finding.check, finding.message)

        if report.alerts and self.dispatcher is not None:
            body = "\n".join(f"- {f.message}" for f in report.alerts)
            self.dispatcher.alert(
                "HEALTH ALERT",
                "Timelapse health check on {host} (phase {phase}):\n{findings}",
                event={"phase": state.phase.value, "findings": body},
            )
        return report


def parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report timelapse pipeline health")
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
        "health",
        log_dir=settings.paths.log_dir if settings.log_to_file else None,
        log_level=args.log_level,
        dev_mode=settings.dev_mode,
    )
    reporter = HealthReporter(
        settings,
        RunStateStore(settings.paths.state_file),
        build_dispatcher(settings.alerts),
    )
    report = reporter.run()
    return 1 if report.alerts else 0


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())

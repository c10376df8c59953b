#!/usr/bin/env python3
"""Chunked 24h capture followed by merge and scene-adaptive compression.

One invocation is one Run: lock, preflight, capture the window in bounded
chunks, losslessly merge them into the Raw Artifact, compress it into the
Final Artifact and apply retention. The process exit code tells the
supervisor whether restarting can help (see ``RunOutcome``).
"""

from __future__ import annotations

import argparse
import logging
import math
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Iterable

from . import preflight, run_lock
from .artifacts import RunPaths, human_size, make_run_id, remove_quietly, verify_artifact
from .compressor import CompressionResult, SceneCompressor
from .config import TimelapseSettings
from .errors import (
    ChunkCaptureFailure,
    ChunkVerificationFailure,
    ConfigError,
    LockContention,
    MergeFailure,
    RunCancelled,
    RunOutcome,
    TimelapseError,
    ToolMissing,
    TranscodeError,
)
from .ffmpeg_io import concat_manifest_text
from .logs import LOG_FORMAT, configure_logging
from .notifications import AlertDispatcher, build_dispatcher
from .retention import RetentionManager
from .run_state import Phase, RunStateStore
from .transcoder import CaptureRequest, FfmpegTranscoder, Transcoder

_log = logging.getLogger("timelapse.capture")


def plan_chunks(total_sec: int, chunk_sec: int) -> list[int]:
    """Chunk durations covering exactly ``total_sec``; the last takes the remainder."""

    if total_sec <= 0 or chunk_sec <= 0:
        raise ValueError("durations must be positive")
    count = math.ceil(total_sec / chunk_sec)
    plan = [chunk_sec] * (count - 1)
    plan.append(total_sec - chunk_sec * (count - 1))
    return plan


class CaptureRun:
    """State machine for a single capture Run."""

    def __init__(
        self,
        settings: TimelapseSettings,
        transcoder: Transcoder,
        state_store: RunStateStore,
        dispatcher: AlertDispatcher | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        lock_acquire: Callable[..., run_lock.RunLock] = run_lock.acquire,
        preflight_check: Callable[..., preflight.PreflightResult] = preflight.validate,
        install_signal_handlers: bool = True,
    ) -> None:
        self.settings = settings
        self.transcoder = transcoder
        self.state_store = state_store
        self.dispatcher = dispatcher
        self._sleep = sleep
        self._clock = clock
        self._lock_acquire = lock_acquire
        self._preflight_check = preflight_check
        self._install_signal_handlers = install_signal_handlers
        self._cancel_signal: int | None = None
        self._raw_verified = False
        self.paths: RunPaths | None = None
        self.result: CompressionResult | None = None

    # --- signals ---
    def _handle_signal(self, signum: int, _frame: object) -> None:
        if self._cancel_signal is not None:
            _log.warning("Received signal %s again; already stopping", signum)
            return
        self._cancel_signal = signum
        raise RunCancelled(signum)

    def _set_signal_handlers(self) -> dict[int, object]:
        previous: dict[int, object] = {}
        if not self._install_signal_handlers:
            return previous
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[sig] = signal.signal(sig, self._handle_signal)
            except ValueError:
                # Signal registration fails outside the main thread.
                _log.debug("Unable to install handler for signal %s", sig)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, object]) -> None:
        for sig, handler in previous.items():
            try:
                signal.signal(sig, handler)
            except (TypeError, ValueError):
                pass

    # --- top level ---
    def run(self) -> RunOutcome:
        lock_path = self.settings.paths.lock_file
        try:
            lock = self._lock_acquire(lock_path)
        except LockContention as exc:
            _log.warning("Another instance is running: %s", exc)
            return RunOutcome.RETRYABLE
        except OSError as exc:
            # Without the lock this process may not touch the state marker.
            return self._fail("-", exc, outcome=RunOutcome.FATAL, record_state=False)

        previous = self._set_signal_handlers()
        try:
            with lock:
                return self._run_locked()
        except RunCancelled as exc:
            # Signal landed outside the stage loop (state bookkeeping, lock release).
            _log.warning("Capture stopped: %s", exc)
            return exc.outcome
        finally:
            self._restore_signal_handlers(previous)

    def _run_locked(self) -> RunOutcome:
        started = self._clock()
        run_id = make_run_id(started)
        paths = RunPaths(
            run_id=run_id,
            raw_dir=self.settings.paths.raw_dir,
            final_dir=self.settings.paths.final_dir,
            final_prefix=self.settings.paths.final_prefix,
        )
        self.paths = paths

        try:
            self.state_store.begin(run_id)
            _log.info("Starting capture run %s", run_id)
            paths.ensure_dirs()
            checks = self._preflight_check(self.settings, transcoder=self.transcoder)
            if checks.degraded:
                self.state_store.update(
                    Phase.STARTING,
                    degraded=[w.feature for w in checks.warnings],
                )
            chunks = self._capture_chunks(paths, checks)
            self._merge(paths, chunks)
            self.result = self._compress(paths)
            self._cleanup(paths)
        except RunCancelled as exc:
            _log.warning("Capture stopped: %s", exc)
            self._discard_after_cancel(paths)
            self.state_store.update(Phase.STOPPED, detail=str(exc))
            return exc.outcome
        except TimelapseError as exc:
            return self._fail(run_id, exc)
        except OSError as exc:
            return self._fail(run_id, exc)

        elapsed_h = (self._clock() - started) / 3600.0
        self.state_store.update(
            Phase.COMPLETE,
            final_path=str(self.result.final_path),
            detail=f"threshold={self.result.threshold:g} scenes={self.result.scene_count}",
        )
        _log.info(
            "Run %s complete in %.1fh: %s (%s)",
            run_id,
            elapsed_h,
            self.result.final_path,
            human_size(self.result.size_bytes),
        )
        return RunOutcome.SUCCESS

    def _fail(
        self,
        run_id: str,
        exc: Exception,
        *,
        outcome: RunOutcome | None = None,
        record_state: bool = True,
    ) -> RunOutcome:
        if outcome is None:
            if isinstance(exc, TimelapseError):
                outcome = exc.outcome
            elif isinstance(exc, PermissionError):
                # Restarting will not fix ownership or mode bits.
                outcome = RunOutcome.FATAL
            else:
                outcome = RunOutcome.RETRYABLE
        _log.error("Run %s failed: %s", run_id, exc)
        if record_state:
            try:
                self.state_store.update(Phase.FAILED, detail=str(exc))
            except OSError as state_exc:
                _log.error("Unable to record failure in %s: %s", self.state_store.path, state_exc)
        if self.dispatcher is not None:
            self.dispatcher.alert(
                "CAPTURE FAILED",
                "Timelapse run {run_id} on {host} failed ({outcome}): {error}",
                event={"run_id": run_id, "outcome": outcome.value, "error": str(exc)},
            )
        return outcome

    # --- stages ---
    def _capture_chunks(self, paths: RunPaths, checks: preflight.PreflightResult) -> list[Path]:
        capture = self.settings.capture
        plan = plan_chunks(capture.total_duration_sec, capture.chunk_duration_sec)
        _log.info(
            "Capturing %ds as %d chunk(s) of up to %ds",
            capture.total_duration_sec,
            len(plan),
            capture.chunk_duration_sec,
        )
        chunks: list[Path] = []
        try:
            for index, duration in enumerate(plan):
                self.state_store.update(
                    Phase.CAPTURING, chunk_index=index, chunks_total=len(plan)
                )
                chunk_path = paths.chunk(index)
                _log.info(
                    "Recording chunk %d/%d (%ds) -> %s",
                    index + 1,
                    len(plan),
                    duration,
                    chunk_path.name,
                )
                request = CaptureRequest(
                    video_device=capture.video_device,
                    output=chunk_path,
                    duration_sec=duration,
                    timeout_sec=duration + capture.grace_period_sec,
                    video_size=capture.video_size,
                    framerate=capture.framerate,
                    input_format=capture.input_format,
                    crf=capture.crf,
                    preset=capture.preset,
                    audio_device=checks.audio_device,
                    hwaccel_device=checks.hwaccel_device,
                    video_filter=capture.video_filter,
                )
                try:
                    self.transcoder.capture(request)
                except ToolMissing:
                    raise
                except TranscodeError as exc:
                    raise ChunkCaptureFailure(index, str(exc)) from exc

                check = verify_artifact(chunk_path, capture.min_chunk_bytes, self.transcoder)
                if not check.ok:
                    raise ChunkVerificationFailure(index, check.reason)
                chunks.append(chunk_path)
                _log.info(
                    "Chunk %d verified: %s, %d packets",
                    index,
                    human_size(check.size_bytes),
                    check.packets,
                )
                if index < len(plan) - 1 and capture.chunk_pause_sec > 0:
                    self._sleep(capture.chunk_pause_sec)
        except TimelapseError:
            # The next Run starts a fresh window; partial chunk sets are useless.
            self._discard_chunks(paths, len(plan))
            raise
        return chunks

    def _merge(self, paths: RunPaths, chunks: list[Path]) -> Path:
        capture = self.settings.capture
        self.state_store.update(Phase.PROCESSING, detail="merge")
        _log.info("Merging %d chunk(s) into %s", len(chunks), paths.raw.name)
        paths.manifest.write_text(concat_manifest_text(chunks), encoding="utf-8")
        try:
            self.transcoder.merge(paths.manifest, paths.raw, timeout_sec=capture.merge_timeout_sec)
        except ToolMissing:
            raise
        except TranscodeError as exc:
            remove_quietly(paths.raw)
            raise MergeFailure(f"merge into {paths.raw.name} failed: {exc}") from exc

        check = verify_artifact(paths.raw, capture.min_raw_bytes, self.transcoder)
        if not check.ok:
            remove_quietly(paths.raw)
            raise MergeFailure(check.reason)
        self._raw_verified = True
        _log.info("Raw capture complete: %s (%s)", paths.raw, human_size(check.size_bytes))

        for chunk in chunks:
            remove_quietly(chunk)
        remove_quietly(paths.manifest)
        self.state_store.update(Phase.PROCESSING, detail="merged", raw_path=str(paths.raw))
        return paths.raw

    def _compress(self, paths: RunPaths) -> CompressionResult:
        compressor = SceneCompressor(self.settings.compress, self.transcoder)
        return compressor.compress(
            paths,
            on_stage=lambda stage: self.state_store.update(Phase.PROCESSING, detail=stage),
        )

    def _cleanup(self, paths: RunPaths) -> None:
        self.state_store.update(Phase.CLEANUP)
        remove_quietly(paths.scene_data)
        if not self.settings.capture.cleanup_after_run:
            return
        manager = RetentionManager(self.settings, self.state_store, self.dispatcher)
        try:
            manager.run()
        except (TimelapseError, OSError) as exc:
            _log.warning("Post-run retention failed: %s", exc)

    # --- discard helpers ---
    def _discard_chunks(self, paths: RunPaths, count: int) -> None:
        removed = sum(1 for index in range(count) if remove_quietly(paths.chunk(index)))
        remove_quietly(paths.manifest)
        if removed:
            _log.info("Removed %d chunk file(s) of run %s", removed, paths.run_id)

    def _discard_after_cancel(self, paths: RunPaths) -> None:
        capture = self.settings.capture
        self._discard_chunks(
            paths, len(plan_chunks(capture.total_duration_sec, capture.chunk_duration_sec))
        )
        if not self._raw_verified:
            remove_quietly(paths.raw)
        remove_quietly(paths.scene_data)
        remove_quietly(paths.temp)


def parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture a 24h window and build the timelapse")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    return parser.parse_args(list(argv) if argv is not None else sys.argv[1:])


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = TimelapseSettings.from_cfg()
    except ConfigError as exc:
        logging.basicConfig(format=LOG_FORMAT)
        _log.error("Invalid configuration: %s", exc)
        return RunOutcome.FATAL.exit_code

    configure_logging(
        "capture",
        log_dir=settings.paths.log_dir if settings.log_to_file else None,
        log_level=args.log_level,
        dev_mode=settings.dev_mode,
    )
    run = CaptureRun(
        settings,
        FfmpegTranscoder(probe_timeout_sec=settings.capture.probe_timeout_sec),
        RunStateStore(settings.paths.state_file),
        build_dispatcher(settings.alerts),
    )
    outcome = run.run()
    _log.info("Exiting with %s (%d)", outcome.value, outcome.exit_code)
    return outcome.exit_code


if __name__ == "__main__":  # pragma: no cover - manual execution path
    raise SystemExit(main())

"""Error taxonomy shared by the capture, retention and health processes."""

from __future__ import annotations

import enum


class RunOutcome(enum.Enum):
    """Result handed back to the process supervisor.

    The supervisor owns restart/backoff policy; the controller only says
    whether a restart can help.
    """

    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


# 75 is EX_TEMPFAIL from sysexits.h.
_EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.RETRYABLE: 75,
    RunOutcome.FATAL: 1,
}


class TimelapseError(Exception):
    """Base class for pipeline failures."""

    outcome = RunOutcome.RETRYABLE


class ConfigError(TimelapseError):
    """Raised when configuration values cannot be used."""

    outcome = RunOutcome.FATAL


class LockContention(TimelapseError):
    """Another Run already holds the capture lock."""

    def __init__(self, lock_path: str, holder: str | None = None) -> None:
        self.lock_path = lock_path
        self.holder = holder
        message = f"another instance holds {lock_path}"
        if holder:
            message += f" ({holder})"
        super().__init__(message)


class PreflightFailure(TimelapseError):
    """A hard precondition for a multi-hour run is not met."""

    def __init__(self, reason: str, message: str) -> None:
        self.reason = reason
        super().__init__(f"preflight {reason} check failed: {message}")

    @property
    def outcome(self) -> RunOutcome:  # type: ignore[override]
        # Capacity does not recover by restarting; a missing device may.
        return RunOutcome.FATAL if self.reason == "capacity" else RunOutcome.RETRYABLE


class PreflightDegraded(TimelapseError):
    """An optional feature was dropped; recorded as a warning, never raised."""

    def __init__(self, feature: str, message: str) -> None:
        self.feature = feature
        super().__init__(f"{feature} disabled: {message}")


class TranscodeError(TimelapseError):
    """An external ffmpeg/ffprobe invocation failed or timed out."""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        returncode: int | None = None,
        timed_out: bool = False,
        stderr: str = "",
    ) -> None:
        self.operation = operation
        self.returncode = returncode
        self.timed_out = timed_out
        self.stderr = stderr
        super().__init__(f"{operation}: {message}")


class ToolMissing(TranscodeError):
    """The external binary is not installed."""

    outcome = RunOutcome.FATAL


class ChunkCaptureFailure(TimelapseError):
    def __init__(self, index: int, message: str) -> None:
        self.index = index
        super().__init__(f"chunk {index} capture failed: {message}")


class ChunkVerificationFailure(TimelapseError):
    def __init__(self, index: int, message: str) -> None:
        self.index = index
        super().__init__(f"chunk {index} verification failed: {message}")


class MergeFailure(TimelapseError):
    pass


class CompressionFailure(TimelapseError):
    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"compression {stage} failed: {message}")


class EmergencyDiskPressure(TimelapseError):
    """Free space dropped below the emergency low-water mark."""

    def __init__(self, free_gb: float, threshold_gb: float) -> None:
        self.free_gb = free_gb
        self.threshold_gb = threshold_gb
        super().__init__(
            f"free space {free_gb:.1f}GB below emergency threshold {threshold_gb:.1f}GB"
        )


class RunCancelled(TimelapseError):
    """Raised from the signal handler when SIGTERM/SIGINT arrives."""

    def __init__(self, signum: int) -> None:
        self.signum = signum
        super().__init__(f"received signal {signum}")


__all__ = [
    "ChunkCaptureFailure",
    "ChunkVerificationFailure",
    "CompressionFailure",
    "ConfigError",
    "EmergencyDiskPressure",
    "LockContention",
    "MergeFailure",
    "PreflightDegraded",
    "PreflightFailure",
    "RunCancelled",
    "RunOutcome",
    "TimelapseError",
    "ToolMissing",
    "TranscodeError",
]

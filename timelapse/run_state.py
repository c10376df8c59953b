"""Persistent run phase shared between the capture service and its observers."""

from __future__ import annotations

import enum
import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_STATE_FIELDS = (
    "run_id",
    "pid",
    "chunk_index",
    "chunks_total",
    "detail",
    "raw_path",
    "final_path",
)


class Phase(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    STARTING = "STARTING"
    CAPTURING = "CAPTURING"
    PROCESSING = "PROCESSING"
    CLEANUP = "CLEANUP"
    COMPLETE = "COMPLETE"
    STOPPED = "STOPPED"
    FAILED = "FAILED"

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE_PHASES

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETE, Phase.STOPPED, Phase.FAILED)

    @classmethod
    def parse(cls, value: Any) -> "Phase":
        if isinstance(value, Phase):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


_ACTIVE_PHASES = frozenset(
    {Phase.STARTING, Phase.CAPTURING, Phase.PROCESSING, Phase.CLEANUP}
)


@dataclass(slots=True)
class RunState:
    """Snapshot of the most recent Run as seen by external readers."""

    phase: Phase = Phase.UNKNOWN
    updated_at: float = 0.0
    run_id: str | None = None
    pid: int | None = None
    chunk_index: int | None = None
    chunks_total: int | None = None
    detail: str | None = None
    raw_path: str | None = None
    final_path: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "phase": self.phase.value,
            "updated_at": float(self.updated_at),
        }
        for key in _STATE_FIELDS:
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.extra:
            payload["extra"] = dict(self.extra)
        return payload

    def owner_alive(self) -> bool:
        """True when the recorded writer process still exists."""

        if not self.pid:
            return False
        try:
            os.kill(int(self.pid), 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user.
            return True
        except (OSError, ValueError):
            return False
        return True


def _as_optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def load_run_state(path: str | os.PathLike[str]) -> RunState:
    """Read the state file; missing or corrupt files yield an UNKNOWN state."""

    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (FileNotFoundError, json.JSONDecodeError, OSError, UnicodeDecodeError):
        return RunState()
    if not isinstance(data, dict):
        return RunState()

    updated_raw = data.get("updated_at")
    extra = data.get("extra")
    return RunState(
        phase=Phase.parse(data.get("phase")),
        updated_at=float(updated_raw) if isinstance(updated_raw, (int, float)) else 0.0,
        run_id=_as_optional_str(data.get("run_id")),
        pid=_as_optional_int(data.get("pid")),
        chunk_index=_as_optional_int(data.get("chunk_index")),
        chunks_total=_as_optional_int(data.get("chunks_total")),
        detail=_as_optional_str(data.get("detail")),
        raw_path=_as_optional_str(data.get("raw_path")),
        final_path=_as_optional_str(data.get("final_path")),
        extra=dict(extra) if isinstance(extra, dict) else {},
    )


def store_run_state(path: str | os.PathLike[str], state: RunState) -> RunState:
    target = Path(path)
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    target.parent.mkdir(parents=True, exist_ok=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(state.to_payload(), handle)
        handle.write("\n")
    os.replace(tmp_path, target)
    return state


class RunStateStore:
    """Single-writer, multi-reader access to the run state file.

    The writer keeps the identity of its Run (``run_id``/``pid``) and merges
    per-phase details; readers always go to disk and never lock.
    """

    def __init__(self, path: str | os.PathLike[str], *, clock=time.time) -> None:
        self.path = Path(path)
        self._clock = clock
        self._current: RunState | None = None

    def read(self) -> RunState:
        return load_run_state(self.path)

    def begin(self, run_id: str) -> RunState:
        """Replace any previous Run's marker with a fresh STARTING record."""

        self._current = RunState(
            phase=Phase.STARTING,
            updated_at=self._clock(),
            run_id=run_id,
            pid=os.getpid(),
        )
        return store_run_state(self.path, self._current)

    def update(self, phase: Phase, **details: Any) -> RunState:
        base = self._current if self._current is not None else self.read()
        state = RunState(
            phase=phase,
            updated_at=self._clock(),
            run_id=base.run_id,
            pid=base.pid if base.pid is not None else os.getpid(),
            chunk_index=base.chunk_index,
            chunks_total=base.chunks_total,
            detail=None,
            raw_path=base.raw_path,
            final_path=base.final_path,
            extra=dict(base.extra),
        )
        for key, value in details.items():
            if key in _STATE_FIELDS:
                setattr(state, key, value)
            else:
                state.extra[key] = value
        self._current = state
        return store_run_state(self.path, state)


__all__ = ["Phase", "RunState", "RunStateStore", "load_run_state", "store_run_state"]

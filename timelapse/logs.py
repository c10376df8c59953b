"""Logging setup shared by the capture, cleanup and monitor entry points."""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# capture logs once per run; cleanup and health append to one file per day.
_FILE_STAMPS = {
    "capture": "%Y%m%d_%H%M%S",
    "cleanup": "%Y%m%d",
    "health": "%Y-%m-%d",
}


def log_file_path(log_dir: Path, component: str, now: float | None = None) -> Path:
    stamp_format = _FILE_STAMPS.get(component, "%Y%m%d")
    stamp = time.strftime(stamp_format, time.localtime(now if now is not None else time.time()))
    return Path(log_dir) / f"{component}_{stamp}.log"


def configure_logging(
    component: str,
    *,
    log_dir: Path | None = None,
    log_level: str = "INFO",
    dev_mode: bool = False,
) -> logging.Logger:
    """Attach stdout (journal) and optional per-component file handlers."""

    level = logging.DEBUG if dev_mode else getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger("timelapse")
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_dir is not None:
        path = log_file_path(log_dir, component)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            root.warning("File logging disabled (%s): %s", path, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    root.propagate = False
    return logging.getLogger(f"timelapse.{component}")


__all__ = ["LOG_FORMAT", "configure_logging", "log_file_path"]

"""Helpers used by systemd units to sync configuration-derived runtime state."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Dict

from .config import get_cfg


def _escape_env_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _write_env_file(env_path: Path, values: Dict[str, str]) -> None:
    env_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = env_path.with_suffix(env_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        for key, raw_value in values.items():
            if not raw_value:
                continue
            handle.write(f'{key}="{_escape_env_value(raw_value)}"\n')
    tmp_path.replace(env_path)


def _ensure_dirs(paths: Dict[str, str]) -> None:
    for raw_path in paths.values():
        if not raw_path:
            continue
        try:
            Path(raw_path).mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(
                f"[unit-runtime] WARN: failed to ensure directory {raw_path}: {exc}",
                file=sys.stderr,
            )


def prepare_runtime(env_file: Path, *, ensure_dirs: bool = False) -> Dict[str, str]:
    cfg = get_cfg()
    capture_cfg = cfg.get("capture", {})
    paths_cfg = cfg.get("paths", {})
    alerts_cfg = cfg.get("alerts", {})

    env_values: Dict[str, str] = {}

    video_device = str(capture_cfg.get("video_device") or "")
    if video_device:
        env_values["VIDEO_DEV"] = video_device

    audio_device = str(capture_cfg.get("audio_device") or "")
    if audio_device:
        env_values["AUDIO_DEV"] = audio_device

    hwaccel = capture_cfg.get("hwaccel") if isinstance(capture_cfg.get("hwaccel"), dict) else {}
    if hwaccel.get("enabled"):
        env_values["HWACCEL_ENABLED"] = "1"
        env_values["HWACCEL_DEVICE"] = str(hwaccel.get("device") or "")

    recipient = str(alerts_cfg.get("recipient") or "")
    if recipient:
        env_values["ALERT_EMAIL"] = recipient

    raw_dir = str(paths_cfg.get("raw_dir") or "")
    if raw_dir:
        env_values["RAW_DIR"] = raw_dir

    final_dir = str(paths_cfg.get("final_dir") or "")
    if final_dir:
        env_values["FINAL_DIR"] = final_dir

    log_dir = str(paths_cfg.get("log_dir") or "")
    if log_dir:
        env_values["LOG_DIR"] = log_dir

    _write_env_file(env_file, env_values)

    if ensure_dirs:
        state_file = str(paths_cfg.get("state_file") or "")
        _ensure_dirs(
            {
                "raw_dir": raw_dir,
                "final_dir": final_dir,
                "log_dir": log_dir,
                "state_dir": str(Path(state_file).parent) if state_file else "",
            }
        )

    return env_values


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--env-file", required=True, type=Path)
    parser.add_argument("--ensure-dirs", action="store_true")
    args = parser.parse_args(argv)

    prepare_runtime(args.env_file, ensure_dirs=args.ensure_dirs)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

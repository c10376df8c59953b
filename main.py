#!/usr/bin/env python3
"""
Development launcher for the timelapse pipeline.

- `capture` stops timelapse.service if running, then runs one Run in the foreground
- `cleanup` applies the retention policy once
- `monitor` prints a health report
- Ctrl-C during capture stops the Run cleanly (STOPPED)

Set DEV=1 for debug logging and TIMELAPSE_CONFIG to point at a scratch config.
"""

import subprocess
import sys

from timelapse import capture, health, retention

SERVICE = "timelapse.service"

COMMANDS = {
    "capture": capture.main,
    "cleanup": retention.main,
    "monitor": health.main,
}


def stop_service():
    try:
        active = subprocess.run(
            ["systemctl", "is-active", "--quiet", SERVICE], check=False
        ).returncode == 0
    except FileNotFoundError:
        return
    if active:
        print(f"[dev] Stopping {SERVICE} ...")
        subprocess.run(["systemctl", "stop", SERVICE], check=False)


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS:
        print(f"usage: main.py {{{','.join(COMMANDS)}}} [--log-level LEVEL]")
        return 2
    command, rest = argv[0], argv[1:]
    if command == "capture":
        stop_service()
    print(f"[dev] Running {command}")
    return COMMANDS[command](rest)


if __name__ == "__main__":
    sys.exit(main())

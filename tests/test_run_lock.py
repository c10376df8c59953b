from __future__ import annotations

import os
import signal
import subprocess
import sys
import textwrap

import pytest

from timelapse import run_lock
from timelapse.errors import LockContention, RunOutcome


def test_acquire_records_owner_and_blocks_second_holder(tmp_path):
    lock_path = tmp_path / "run" / "timelapse.lock"

    lock = run_lock.acquire(lock_path)
    try:
        assert lock.held
        assert lock_path.read_text(encoding="utf-8") == f"pid={os.getpid()}\n"

        with pytest.raises(LockContention) as excinfo:
            run_lock.acquire(lock_path)
        assert excinfo.value.holder == f"pid={os.getpid()}"
        assert excinfo.value.outcome is RunOutcome.RETRYABLE
    finally:
        lock.release()

    assert not lock.held
    lock.release()  # idempotent
    assert lock_path.exists()

    with run_lock.acquire(lock_path) as again:
        assert again.held
    assert not again.held


def test_lock_from_killed_process_does_not_block(tmp_path):
    lock_path = tmp_path / "timelapse.lock"
    holder = textwrap.dedent(
        f"""
        import fcntl, os, sys, time
        handle = open({str(lock_path)!r}, "a+")
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        handle.write("pid=%d\\n" % os.getpid())
        handle.flush()
        print("locked", flush=True)
        time.sleep(60)
        """
    )
    child = subprocess.Popen(
        [sys.executable, "-c", holder], stdout=subprocess.PIPE, text=True
    )
    try:
        assert child.stdout.readline().strip() == "locked"
        with pytest.raises(LockContention):
            run_lock.acquire(lock_path)
    finally:
        child.send_signal(signal.SIGKILL)
        child.wait(timeout=10)
        child.stdout.close()

    # The stale lock file is still on disk but no longer locked.
    assert lock_path.exists()
    lock = run_lock.acquire(lock_path)
    try:
        assert lock_path.read_text(encoding="utf-8") == f"pid={os.getpid()}\n"
    finally:
        lock.release()

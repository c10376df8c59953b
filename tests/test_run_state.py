import json
import os

from timelapse.run_state import (
    Phase,
    RunState,
    RunStateStore,
    load_run_state,
    store_run_state,
)


def test_run_state_round_trip(tmp_path):
    state_path = tmp_path / "run_state.json"

    initial = load_run_state(state_path)
    assert initial.phase is Phase.UNKNOWN
    assert initial.run_id is None

    stored = store_run_state(
        state_path,
        RunState(
            phase=Phase.CAPTURING,
            updated_at=12.5,
            run_id="20240101_000000",
            pid=4321,
            chunk_index=3,
            chunks_total=24,
        ),
    )
    reloaded = load_run_state(state_path)
    assert reloaded == stored
    assert not state_path.with_suffix(".json.tmp").exists()

    payload = json.loads(state_path.read_text(encoding="utf-8"))
    assert payload["phase"] == "CAPTURING"
    assert "detail" not in payload


def test_corrupt_state_is_unknown(tmp_path):
    state_path = tmp_path / "run_state.json"
    state_path.write_text("{not json", encoding="utf-8")
    assert load_run_state(state_path).phase is Phase.UNKNOWN

    state_path.write_text('["CAPTURING"]', encoding="utf-8")
    assert load_run_state(state_path).phase is Phase.UNKNOWN

    state_path.write_text('{"phase": "SOMETHING_ELSE", "pid": "12"}', encoding="utf-8")
    state = load_run_state(state_path)
    assert state.phase is Phase.UNKNOWN
    assert state.pid is None


def test_store_merges_updates(tmp_path):
    clock = iter([100.0, 200.0, 300.0, 400.0])
    store = RunStateStore(tmp_path / "state" / "run_state.json", clock=lambda: next(clock))

    started = store.begin("20240101_000000")
    assert started.phase is Phase.STARTING
    assert started.pid == os.getpid()

    store.update(Phase.CAPTURING, chunk_index=0, chunks_total=3)
    store.update(Phase.PROCESSING, detail="merge", degraded=["audio"])
    final = store.update(Phase.COMPLETE, final_path="/final/worldbox_20240101_000000.mp4")

    on_disk = store.read()
    assert on_disk == final
    assert on_disk.phase is Phase.COMPLETE
    assert on_disk.updated_at == 400.0
    assert on_disk.run_id == "20240101_000000"
    assert on_disk.chunks_total == 3
    # detail only describes the latest transition
    assert on_disk.detail is None
    assert on_disk.extra == {"degraded": ["audio"]}


def test_begin_replaces_previous_marker(tmp_path):
    path = tmp_path / "run_state.json"
    store_run_state(
        path,
        RunState(phase=Phase.FAILED, updated_at=1.0, run_id="20230101_000000", detail="boom"),
    )

    RunStateStore(path).begin("20240101_000000")

    state = load_run_state(path)
    assert state.phase is Phase.STARTING
    assert state.run_id == "20240101_000000"
    assert state.detail is None


def test_phase_helpers():
    assert Phase.parse("capturing") is Phase.CAPTURING
    assert Phase.parse(None) is Phase.UNKNOWN
    assert Phase.CLEANUP.is_active
    assert not Phase.COMPLETE.is_active
    assert Phase.STOPPED.is_terminal
    assert RunState(pid=os.getpid()).owner_alive()
    assert not RunState().owner_alive()

"""Tests for state.py: transitions, snapshots and listeners."""
import json

from conftest import complete_frame, iteration_frame
from solver_stream.frames import decode_frame
from solver_stream.state import GENERIC_SOCKET_ERROR, ConnectionState, StreamState


def test_initial_state_is_idle():
    snap = StreamState().snapshot()
    assert snap.connection is ConnectionState.IDLE
    assert snap.connected is False
    assert snap.is_complete is False
    assert snap.error is None
    assert snap.history == ()
    assert snap.progress == 0.0


def test_open_clears_error():
    state = StreamState()
    state.begin_session()
    state.mark_error("boom")
    state.begin_session(keep_error=True)
    assert state.error == "boom"
    state.mark_open()
    assert state.connection is ConnectionState.OPEN
    assert state.connected is True
    assert state.error is None


def test_error_is_generic_and_not_terminal():
    state = StreamState()
    state.begin_session()
    state.mark_open()
    state.mark_error()
    assert state.connection is ConnectionState.ERRORED
    assert state.error == GENERIC_SOCKET_ERROR
    state.mark_closed()
    assert state.connection is ConnectionState.CLOSED
    assert state.error == GENERIC_SOCKET_ERROR


def test_illegal_transition_ignored():
    state = StreamState()
    state.mark_open()  # IDLE -> OPEN is not allowed
    assert state.connection is ConnectionState.IDLE
    assert state.connected is False


def test_begin_session_resets_history():
    state = StreamState()
    state.begin_session()
    state.mark_open()
    state.record_iteration(decode_frame(json.dumps(iteration_frame(1))))
    assert len(state.history) == 1
    state.begin_session()
    assert len(state.history) == 0
    assert state.current_meta is None


def test_history_limit_keeps_latest():
    state = StreamState(history_limit=2)
    state.begin_session()
    state.mark_open()
    for k in (1, 2, 3):
        state.record_iteration(decode_frame(json.dumps(iteration_frame(k))))
    assert [m.iteration for m in state.history] == [2, 3]


def test_progress():
    state = StreamState()
    state.begin_session()
    state.mark_open()
    state.record_iteration(decode_frame(json.dumps(iteration_frame(1, total=4))))
    assert state.progress == 0.25
    state.mark_complete(decode_frame(json.dumps(complete_frame(total=4))))
    assert state.progress == 1.0


def test_listeners_receive_snapshots():
    state = StreamState()
    seen = []
    unsubscribe = state.subscribe(seen.append)
    state.begin_session()
    state.mark_open()
    assert [s.connection for s in seen] == [ConnectionState.CONNECTING, ConnectionState.OPEN]
    unsubscribe()
    state.mark_closed()
    assert len(seen) == 2


def test_failing_listener_does_not_break_state():
    state = StreamState()

    def _bad(snapshot):
        raise RuntimeError("listener bug")

    state.subscribe(_bad)
    state.begin_session()
    state.mark_open()
    assert state.connection is ConnectionState.OPEN


def test_late_frames_after_complete_ignored():
    state = StreamState()
    state.begin_session()
    state.mark_open()
    state.record_iteration(decode_frame(json.dumps(iteration_frame(1))))
    state.mark_complete(decode_frame(json.dumps(complete_frame())))

    state.record_iteration(decode_frame(json.dumps(iteration_frame(9))))
    state.record_raw_frame({"meta": {"step": 1, "total_steps": 2}})

    assert state.connection is ConnectionState.COMPLETED
    assert [m.iteration for m in state.history] == [1]
    assert state.current_meta.iteration == 1
    assert state.latest_frame is None


def test_raw_frame_cleared_on_new_session():
    state = StreamState()
    state.begin_session()
    state.mark_open()
    state.record_raw_frame({"meta": {"step": 50, "total_steps": 100}})
    assert state.progress == 0.5
    state.begin_session()
    assert state.latest_frame is None
    assert state.progress == 0.0

from __future__ import annotations

import statistics
import threading
import time
from unittest.mock import MagicMock

import pytest

from loadgen.latency import LatencyMap
from loadgen.wfe.config import LoadConfig
from loadgen.wfe.errors import ParseError, ProcessError, TransportError
from loadgen.wfe.process_control import CompanionProcess
from loadgen.wfe.registry import Registration
from loadgen.wfe.selector import DEFAULT_PROFILES
from loadgen.wfe.state import STOPPED, State


class RecordingAction:
    def __init__(self, duration_s: float = 0.0, error: BaseException | None = None) -> None:
        self.duration_s = duration_s
        self.error = error
        self.started: list[float] = []
        self._lock = threading.Lock()

    def __call__(self, registration) -> None:
        with self._lock:
            self.started.append(time.monotonic())
        if self.duration_s:
            time.sleep(self.duration_s)
        if self.error is not None:
            raise self.error


class ProbeLatency(LatencyMap):
    """Captures the in-flight count at the moment the recording window closes."""

    def __init__(self) -> None:
        super().__init__("probe")
        self.state: State | None = None
        self.in_flight_at_stop: int | None = None

    def stop(self) -> None:
        self.in_flight_at_stop = self.state.in_flight
        super().stop()


class FakeCompanion(CompanionProcess):
    def __init__(self, start_error=None, stop_error=None) -> None:
        self.start_error = start_error
        self.stop_error = stop_error
        self.events: list[str] = []

    def start(self) -> None:
        self.events.append("start")
        if self.start_error:
            raise self.start_error

    def stop(self) -> None:
        self.events.append("stop")
        if self.stop_error:
            raise self.stop_error


def make_state(rate: float, runtime: float, action: RecordingAction, **kwargs) -> State:
    config = LoadConfig(rate=rate, runtime_seconds=runtime)
    table = {profile.name: action for profile in DEFAULT_PROFILES}
    return State(config, session=MagicMock(), actions=table, **kwargs)


def test_dispatch_count_follows_rate_and_drains_before_finalizing():
    action = RecordingAction(duration_s=0.15)
    latency = ProbeLatency()
    state = make_state(10, 0.5, action, latency=latency)
    latency.state = state

    state.run()

    assert 4 <= state.dispatched <= 6
    assert len(action.started) == state.dispatched
    assert latency.in_flight_at_stop == 0
    assert state.in_flight == 0
    assert state.phase == STOPPED
    assert latency.started is not None and latency.stopped is not None


def test_rate_change_applies_to_later_dispatches():
    action = RecordingAction()
    state = make_state(2, 1.2, action)
    changer = threading.Timer(0.2, state.set_rate, args=(50,))
    changer.start()

    state.run()
    changer.join()

    times = action.started
    assert len(times) >= 15
    # the wait already under way when the rate changed keeps its original length
    assert times[1] - times[0] >= 0.4
    later_gaps = [b - a for a, b in zip(times[2:], times[3:])]
    assert statistics.median(later_gaps) < 0.1


def test_failing_calls_do_not_stop_the_run():
    state = make_state(20, 0.3, RecordingAction(error=TransportError("down")))
    state.run()
    assert state.dispatched >= 3
    assert state.in_flight == 0


def test_unexpected_exceptions_are_contained():
    state = make_state(20, 0.3, RecordingAction(error=RuntimeError("bug")))
    state.run()
    assert state.in_flight == 0


def test_companion_start_failure_aborts_before_dispatch():
    companion = FakeCompanion(start_error=ProcessError("no binary"))
    state = make_state(20, 0.3, RecordingAction(), companion=companion)

    with pytest.raises(ProcessError):
        state.run()
    assert state.dispatched == 0
    assert companion.events == ["start"]


def test_companion_stop_failure_is_not_fatal():
    companion = FakeCompanion(stop_error=ProcessError("still running"))
    state = make_state(20, 0.2, RecordingAction(), companion=companion)

    state.run()

    assert companion.events == ["start", "stop"]
    assert state.phase == STOPPED
    assert state.latency.stopped is not None


def test_stop_ends_the_run_early():
    state = make_state(20, 30, RecordingAction())
    timer = threading.Timer(0.2, state.stop)
    timer.start()

    started = time.monotonic()
    state.run()
    timer.join()

    assert time.monotonic() - started < 5
    assert state.phase == STOPPED


def test_run_only_once():
    state = make_state(20, 0.1, RecordingAction())
    state.run()
    with pytest.raises(RuntimeError):
        state.run()


def test_set_rate_rejects_non_positive_rates():
    state = make_state(1, 1, RecordingAction())
    with pytest.raises(ValueError):
        state.set_rate(0)
    assert state.rate == 1


def test_every_action_needs_an_implementation():
    with pytest.raises(ValueError):
        State(LoadConfig(), session=MagicMock(), actions={})


def test_snapshot_files_round_trip(tmp_path, rsa_keys):
    state = make_state(1, 1, RecordingAction())
    reg = Registration.from_key(rsa_keys[0])
    reg.add_authorization("http://ca.test/acme/authz/1")
    state.registrations.add(reg)
    path = tmp_path / "state" / "snapshot.json"

    state.save_snapshot(path)
    restored = make_state(1, 1, RecordingAction())

    assert restored.load_snapshot(path) == 1
    assert restored.registrations.pick_random().authorizations() == ["http://ca.test/acme/authz/1"]


def test_invalid_snapshot_file_is_a_parse_error(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text("{not json")
    with pytest.raises(ParseError):
        make_state(1, 1, RecordingAction()).load_snapshot(path)


def test_injected_empty_latency_map_is_used():
    latency = LatencyMap("embedded")
    assert len(latency) == 0

    state = make_state(20, 0.2, RecordingAction(), latency=latency)

    assert state.latency is latency
    assert state.nonces is not None

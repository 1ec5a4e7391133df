"""
test_scheduler.py - Scenario scheduler

Tests ScenarioScheduler with a loopback target:
- Strict in-order execution, one entry at a time
- start/stop/exec/result semantics
- Abort on timeout leaves the remaining entries Idle
- Watchdog cancels a run that exceeds its budget
"""

import sys
import threading
import time
from pathlib import Path

import pytest

_project_root = Path(__file__).parent.parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from simu.harness.events import NotificationRecorder, ScenarioEvent
from simu.harness.policy import MIN_WATCHDOG_MS, DelayPolicy, RetryPolicy
from simu.harness.scheduler import ScenarioScheduler, nominal_timeout_ms
from simu.harness.status import (
    InternalLogicError,
    RunCancelled,
    ScenarioAborted,
    ScenarioBusy,
    StatusKind,
)
from simu.harness.store import ScenarioStore, TransactionEntry
from simu.transport.loopback import LoopbackTransport


class RecordingTarget:
    """Loopback target answering {"rcode": "ok"} and recording call order."""

    def __init__(self, hang_on=None, delay_s=0.0):
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.hang_on = hang_on
        self.delay_s = delay_s
        self.release = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, verb, payload):
        with self._lock:
            self.calls.append(verb)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if verb == self.hang_on:
                self.release.wait(5.0)
            elif self.delay_s:
                time.sleep(self.delay_s)
            return {"rcode": "ok"}
        finally:
            with self._lock:
                self.active -= 1


def make_scheduler(target, count=3, delay_ms=0, timeout_ms=300, scenario_timeout_ms=None,
                   delay_policy=None):
    entries = [
        TransactionEntry(
            uid=f"t{i}", target="evse", verb=f"iso2:t{i}_req",
            queries=[{"step": i}], expects=[{"rcode": "ok"}],
            delay_ms=delay_ms,
            retry=RetryPolicy(delay_ms=10, timeout_ms=timeout_ms, count=1))
        for i in range(count)
    ]
    store = ScenarioStore("charging-session", entries)
    event = ScenarioEvent("charging-session")
    recorder = NotificationRecorder()
    event.subscribe("test", recorder)

    transport = LoopbackTransport()
    transport.register("evse", target)

    scheduler = ScenarioScheduler(store, transport, event,
                                  delay_policy=delay_policy, timeout_ms=scenario_timeout_ms)
    return scheduler, store, recorder


class TestExec:

    def test_runs_in_order(self):
        target = RecordingTarget(delay_s=0.02)
        scheduler, store, _ = make_scheduler(target, count=4)

        report = scheduler.exec()

        assert target.calls == ["iso2:t0_req", "iso2:t1_req", "iso2:t2_req", "iso2:t3_req"]
        assert target.max_active == 1
        assert len(report) == 5
        assert all(line.startswith("ok") for line in report[1:])
        assert scheduler.last_error is None
        assert not scheduler.running

    def test_rerun_resets_entries(self):
        target = RecordingTarget()
        scheduler, store, _ = make_scheduler(target, count=2)

        first = scheduler.exec()
        second = scheduler.exec()

        assert first == second
        assert len(target.calls) == 4

    def test_timeout_aborts_remaining(self):
        target = RecordingTarget(hang_on="iso2:t1_req")
        scheduler, store, recorder = make_scheduler(target, count=4, timeout_ms=100)

        try:
            report = scheduler.exec()
        finally:
            target.release.set()

        kinds = [s.status.kind for s in store.snapshot()]
        assert kinds == [StatusKind.CHECK, StatusKind.TIMEOUT, StatusKind.IDLE, StatusKind.IDLE]
        assert isinstance(scheduler.last_error, ScenarioAborted)
        assert len(report) == 5
        assert report[2].endswith("# Timeout")
        # the scenario itself reports the abort
        assert recorder.kinds("charging-session") == ["Fail"]

    def test_mismatch_does_not_abort(self):
        def target(verb, payload):
            if verb == "iso2:t0_req":
                return {"rcode": "failed"}
            return {"rcode": "ok"}

        scheduler, store, _ = make_scheduler(target, count=3)

        report = scheduler.exec()

        assert report[1].startswith("fx 0")
        assert "# Fail" in report[1]
        assert report[2].startswith("ok 1")
        assert report[3].startswith("ok 2")
        assert scheduler.last_error is None


class TestStartStop:

    def test_start_returns_run_id_and_completes(self):
        target = RecordingTarget()
        scheduler, store, _ = make_scheduler(target, count=2)

        run_id = scheduler.start()

        assert run_id > 0
        assert scheduler.wait(5.0)
        assert [s.status.kind for s in store.snapshot()] == [StatusKind.CHECK, StatusKind.CHECK]

    def test_second_start_rejected_while_running(self):
        target = RecordingTarget(delay_s=0.1)
        scheduler, _, _ = make_scheduler(target, count=3)

        scheduler.start()
        try:
            with pytest.raises(ScenarioBusy):
                scheduler.start()
        finally:
            scheduler.wait(5.0)

    def test_exec_rejected_while_running(self):
        target = RecordingTarget(delay_s=0.1)
        scheduler, _, _ = make_scheduler(target, count=2)

        scheduler.start()
        try:
            with pytest.raises(ScenarioBusy):
                scheduler.exec()
        finally:
            scheduler.wait(5.0)

    def test_stop_returns_partial_report(self):
        target = RecordingTarget()
        scheduler, store, _ = make_scheduler(target, count=5, delay_ms=200)

        run_id = scheduler.start()
        time.sleep(0.35)
        report = scheduler.stop(run_id)
        scheduler.wait(5.0)

        assert len(report) == 6
        assert isinstance(scheduler.last_error, RunCancelled)
        assert store.get_status(4).kind == StatusKind.IDLE
        assert len(target.calls) < 5

    def test_stop_during_startup_delay(self):
        target = RecordingTarget()
        scheduler, store, _ = make_scheduler(target, count=2)

        scheduler.start()
        scheduler.stop()
        scheduler.wait(5.0)

        assert target.calls == []
        assert not scheduler.running

    def test_stop_unknown_run_is_noop(self):
        target = RecordingTarget()
        scheduler, _, _ = make_scheduler(target, count=1)

        report = scheduler.stop(run_id=999)

        assert report == scheduler.result()
        assert not scheduler.cancel.is_set()

    def test_result_before_any_run(self):
        scheduler, _, _ = make_scheduler(RecordingTarget(), count=2)

        report = scheduler.result()

        assert report[0] == "1..2 # charging-session"
        assert report[1] == "fx 0 - iso2:t0_req(t0) # Idle"


class TestWatchdog:

    def test_nominal_timeout_is_worst_case(self):
        scheduler, store, _ = make_scheduler(RecordingTarget(), count=2, delay_ms=50,
                                             timeout_ms=300)

        assert nominal_timeout_ms(store) == 2 * (50 + 300)

    def test_watchdog_floored(self):
        scheduler, _, _ = make_scheduler(RecordingTarget(), count=1, scenario_timeout_ms=10)

        assert scheduler.watchdog_ms == MIN_WATCHDOG_MS

    def test_watchdog_scaled(self):
        scheduler, _, _ = make_scheduler(RecordingTarget(), count=1, scenario_timeout_ms=4000,
                                         delay_policy=DelayPolicy(percent=50))

        assert scheduler.watchdog_ms == 2000

    def test_watchdog_cancels_run(self):
        target = RecordingTarget()
        scheduler, store, _ = make_scheduler(target, count=3, delay_ms=600,
                                             scenario_timeout_ms=100)

        started = time.time()
        scheduler.exec()

        assert time.time() - started < 1.5
        assert isinstance(scheduler.last_error, RunCancelled)
        kinds = [s.status.kind for s in store.snapshot()]
        assert kinds[0] == StatusKind.CHECK
        assert kinds[2] == StatusKind.IDLE

    def test_watchdog_expiry_notifies_timeout(self):
        scheduler, _, recorder = make_scheduler(RecordingTarget(), count=3, delay_ms=600,
                                                scenario_timeout_ms=100)

        scheduler.exec()

        assert recorder.kinds("charging-session") == ["Timeout"]
        assert "watchdog expired" in recorder.records[-1].error
        assert "watchdog expired" in str(scheduler.last_error)

    def test_stop_does_not_notify_timeout(self):
        scheduler, _, recorder = make_scheduler(RecordingTarget(), count=3, delay_ms=300)

        scheduler.start()
        time.sleep(0.1)
        scheduler.stop()
        assert scheduler.wait(5.0)

        assert isinstance(scheduler.last_error, RunCancelled)
        assert recorder.kinds("charging-session") == []


class TestInternalFailure:

    def test_logic_error_recorded_and_released(self, monkeypatch):
        scheduler, _, recorder = make_scheduler(RecordingTarget(), count=2)
        broken = InternalLogicError("entry index out of range", uid="t1")

        def execute_at(index, payload=None):
            raise broken

        monkeypatch.setattr(scheduler.handler, "execute_at", execute_at)

        with pytest.raises(InternalLogicError):
            scheduler.exec()

        assert scheduler.last_error is broken
        assert recorder.kinds("charging-session") == ["Fail"]
        assert not scheduler.running

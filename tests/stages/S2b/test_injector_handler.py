"""
test_injector_handler.py - Transaction executor

Tests InjectorHandler against a scripted transport:
- Verification of the reply (Check / Done / Fail)
- Retry on transport failure, then success
- Retries exhausted abort the scenario
- Timeout aborts immediately, without retry
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
from simu.harness.executor import InjectorHandler
from simu.harness.policy import RetryPolicy
from simu.harness.status import (
    RunCancelled,
    ScenarioAborted,
    StatusKind,
    TransactionTimeout,
    TransportFailure,
)
from simu.harness.store import ScenarioStore, TransactionEntry
from simu.transport.transport import Transport


class ScriptedTransport(Transport):
    """
    Transport replaying a script of behaviors, one per call:
        ("reply", payload) - answer asynchronously
        ("error", message) - answer with a remote error
        ("refuse", message) - fail the dispatch itself
        ("silent", None)   - never answer
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def call_async(self, target, verb, payload, on_reply):
        self.calls.append((target, verb, payload))
        action, value = self.script.pop(0)

        if action == "refuse":
            raise TransportFailure(value, uid=verb)
        if action == "silent":
            return

        def answer():
            if action == "reply":
                on_reply(value, None)
            else:
                on_reply(None, TransportFailure(value, uid=verb))

        threading.Thread(target=answer, daemon=True).start()


def make_handler(script, expect=None, retry=None, delay_ms=0, query=None):
    entry = TransactionEntry(
        uid="session-setup",
        target="evse",
        verb="iso2:session_setup_req",
        queries=[query] if query is not None else [],
        expects=[expect] if expect is not None else [],
        delay_ms=delay_ms,
        retry=retry or RetryPolicy(delay_ms=10, timeout_ms=500, count=1),
    )
    store = ScenarioStore("charging-session", [entry])
    event = ScenarioEvent("charging-session")
    recorder = NotificationRecorder()
    event.subscribe("test", recorder)
    transport = ScriptedTransport(script)
    handler = InjectorHandler(store, transport, event)
    return handler, store, transport, recorder


class TestVerification:

    def test_reply_matches_expectation(self):
        handler, store, transport, _ = make_handler(
            [("reply", {"rcode": "ok", "session_id": 42})],
            expect={"rcode": "ok"},
            query={"evcc_id": "01"})

        outcome = handler.execute_at(0)

        assert outcome.status.kind == StatusKind.CHECK
        assert outcome.response == {"rcode": "ok", "session_id": 42}
        assert store.get_status(0).kind == StatusKind.CHECK
        assert transport.calls == [("evse", "iso2:session_setup_req", {"evcc_id": "01"})]

    def test_no_expectation_is_done(self):
        handler, store, _, _ = make_handler([("reply", {"whatever": 1})])

        outcome = handler.execute_at(0)

        assert outcome.status.kind == StatusKind.DONE

    def test_empty_expectation_is_done(self):
        handler, _, _, _ = make_handler([("reply", {"x": 1})], expect={})

        assert handler.execute_at(0).status.kind == StatusKind.DONE

    def test_mismatch_is_fail_not_abort(self):
        handler, store, transport, recorder = make_handler(
            [("reply", {"rcode": "failed"})],
            expect={"rcode": "ok"},
            retry=RetryPolicy(delay_ms=10, timeout_ms=500, count=3))

        outcome = handler.execute_at(0)

        assert outcome.status.kind == StatusKind.FAIL
        assert "rcode" in str(outcome.status.error)
        # a verification failure is not retried
        assert len(transport.calls) == 1
        assert recorder.kinds()[-1] == "Fail"

    def test_override_payload(self):
        handler, _, transport, _ = make_handler([("reply", {})], query={"a": 1})

        handler.execute_at(0, {"a": 2})

        assert transport.calls[0][2] == {"a": 2}

    def test_execute_by_entry(self):
        handler, store, _, _ = make_handler([("reply", {})])
        entry = store.get(0)

        assert handler.execute(entry).status.kind == StatusKind.DONE


class TestRetry:

    def test_retry_then_success(self):
        handler, store, transport, recorder = make_handler(
            [("error", "busy"), ("refuse", "connection refused"), ("reply", {"rcode": "ok"})],
            expect={"rcode": "ok"},
            retry=RetryPolicy(delay_ms=10, timeout_ms=500, count=3))

        outcome = handler.execute_at(0)

        assert outcome.status.kind == StatusKind.CHECK
        assert len(transport.calls) == 3
        transitions = [k for k in recorder.kinds() if k != "Pending"]
        assert transitions == ["Retry", "Retry", "Check"]

    def test_retries_exhausted_abort(self):
        handler, store, transport, recorder = make_handler(
            [("error", "busy"), ("error", "busy")],
            retry=RetryPolicy(delay_ms=10, timeout_ms=500, count=2))

        with pytest.raises(ScenarioAborted) as excinfo:
            handler.execute_at(0)

        assert isinstance(excinfo.value.cause, TransportFailure)
        status = store.get_status(0)
        assert status.kind == StatusKind.FAIL
        assert "busy" in str(status.error)
        assert [k for k in recorder.kinds() if k != "Pending"] == ["Retry", "Fail"]

    def test_retry_notification_carries_error(self):
        handler, _, _, recorder = make_handler(
            [("error", "busy"), ("reply", {})],
            retry=RetryPolicy(delay_ms=10, timeout_ms=500, count=2))

        handler.execute_at(0)

        retry = [n for n in recorder.records if n.status.kind == StatusKind.RETRY][0]
        assert "busy" in retry.error


class TestTimeout:

    def test_timeout_aborts_without_retry(self):
        handler, store, transport, recorder = make_handler(
            [("silent", None), ("reply", {})],
            retry=RetryPolicy(delay_ms=10, timeout_ms=100, count=3))

        started = time.time()
        with pytest.raises(ScenarioAborted) as excinfo:
            handler.execute_at(0)

        assert time.time() - started < 1.0
        assert isinstance(excinfo.value.cause, TransactionTimeout)
        assert excinfo.value.cause.uid == "session-setup"
        assert store.get_status(0).kind == StatusKind.TIMEOUT
        assert len(transport.calls) == 1
        assert recorder.kinds()[-1] == "Timeout"


class TestThrottle:

    def test_delay_before_call(self):
        handler, _, _, _ = make_handler([("reply", {})], delay_ms=100)

        started = time.time()
        handler.execute_at(0)

        assert time.time() - started >= 0.09

    def test_cancelled_during_delay(self):
        handler, store, transport, _ = make_handler([("reply", {})], delay_ms=2000)

        threading.Timer(0.05, handler.cancel.set).start()
        with pytest.raises(RunCancelled):
            handler.execute_at(0)

        assert transport.calls == []
        assert store.get_status(0).kind == StatusKind.IDLE

"""
executor.py - Transaction handlers

A TransactionHandler executes one transaction entry. Two variants exist:

- InjectorHandler: issues the scripted call to the target, waits for the
  reply with a deadline, retries transport failures and verifies the
  reply (this module)
- ResponderHandler: answers an incoming call from the script
  (responder.py)

Injector failure policy:
- Timeout: never retried, aborts the whole scenario run
- Transport failure: retried up to retry.count, then aborts the run
- Verification mismatch: entry recorded as Fail, the run continues
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from simu.harness.events import Notification, ScenarioEvent
from simu.harness.status import (
    DONE,
    PENDING,
    RETRY,
    TIMEOUT,
    InternalLogicError,
    RunCancelled,
    ScenarioAborted,
    SimulationStatus,
    StatusKind,
    TransactionTimeout,
    TransportFailure,
)
from simu.harness.store import ScenarioStore, TransactionEntry
from simu.harness.verify import check_arguments
from simu.transport.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class TransactionOutcome:
    """Result of one handler execution."""
    status: SimulationStatus
    response: Any = None


class TransactionHandler(ABC):
    """Executes a single transaction entry."""

    @abstractmethod
    def execute(self, entry: TransactionEntry, payload: Any = None) -> TransactionOutcome:
        """
        Execute entry.

        Args:
            entry: Transaction entry to execute
            payload: Incoming payload (responder) or override query (injector)
        """
        pass


class InjectorHandler(TransactionHandler):
    """
    Drives one entry of a scenario against the target api.

    Args:
        store: Scenario store owning the entries
        transport: Transport used to issue calls
        event: Event channel receiving progress notifications
        cancel: Event set when the current run is cancelled; sleeps wake
            up on it
    """

    def __init__(self, store: ScenarioStore, transport: Transport,
                 event: ScenarioEvent, cancel: Optional[threading.Event] = None):
        self.store = store
        self.transport = transport
        self.event = event
        self.cancel = cancel or threading.Event()

    def _set(self, index: int, entry: TransactionEntry, status: SimulationStatus):
        self.store.set_status(index, status)
        self.event.push(Notification.from_status(entry.uid, entry.verb, status))

    def _sleep(self, seconds: float):
        if seconds > 0:
            self.cancel.wait(seconds)

    def execute(self, entry: TransactionEntry, payload: Any = None) -> TransactionOutcome:
        index = self.store.find(entry.uid)
        if index is None:
            raise InternalLogicError(f"entry not in scenario {self.store.uid}", uid=entry.uid)
        return self.execute_at(index, payload)

    def execute_at(self, index: int, payload: Any = None) -> TransactionOutcome:
        """
        Run the entry at index: throttle, dispatch, wait, retry, verify.

        Raises:
            ScenarioAborted: On timeout or exhausted retries
            RunCancelled: If the run was cancelled during the throttle delay
            InternalLogicError: On an impossible status
        """
        entry = self.store.get(index)
        retry = entry.retry
        query = payload if payload is not None else entry.query

        # throttle before issuing the call
        self._sleep(entry.delay_ms / 1000.0)
        if self.cancel.is_set():
            raise RunCancelled("run cancelled before call", uid=entry.uid)

        status = PENDING
        response = None
        for attempt in range(1, retry.count + 1):
            self._set(index, entry, PENDING)
            logger.debug(f"{entry.uid}: {entry.target}/{entry.verb} attempt {attempt}/{retry.count}")

            try:
                response = self.transport.call(entry.target, entry.verb, query, retry.timeout_s)
            except TransactionTimeout as e:
                timeout = TransactionTimeout(
                    f"timeout after {retry.timeout_ms}ms", uid=entry.uid)
                self.store.set_status(index, TIMEOUT)
                self.event.push(Notification(entry.uid, entry.verb, TIMEOUT, str(timeout)))
                logger.error(f"{entry.uid}: {e}")
                raise ScenarioAborted(
                    f"{entry.uid} timeout, scenario aborted", uid=self.store.uid, cause=timeout)
            except TransportFailure as e:
                if attempt < retry.count:
                    logger.warning(f"{entry.uid}: attempt {attempt} failed ({e}), "
                                   f"retrying in {retry.delay_ms}ms")
                    self.store.set_status(index, RETRY)
                    self.event.push(Notification(entry.uid, entry.verb, RETRY, str(e)))
                    self._sleep(retry.delay_s)
                    continue

                status = SimulationStatus.fail(e)
                self._set(index, entry, status)
                raise ScenarioAborted(
                    f"{entry.uid} failed after {retry.count} attempt(s): {e}",
                    uid=self.store.uid, cause=e)

            status = self._verify(entry, response)
            self._set(index, entry, status)

            if status.kind in (StatusKind.DONE, StatusKind.CHECK):
                break
            if status.kind == StatusKind.FAIL:
                logger.warning(f"{entry.uid}: {status.error}")
                break
            raise InternalLogicError(
                f"unexpected status:{status.kind.value} count:{attempt}", uid=entry.uid)

        return TransactionOutcome(status=status, response=response)

    def _verify(self, entry: TransactionEntry, response: Any) -> SimulationStatus:
        if len(entry.expects) == 0:
            return DONE
        if len(entry.expects) > 1:
            raise InternalLogicError("injector entries take at most one expect", uid=entry.uid)

        status = check_arguments(f"{entry.uid}:{entry.sequence}", response, entry.expects[0])
        if status.kind == StatusKind.IGNORED:
            return DONE
        return status

"""
scheduler.py - Scenario scheduler

Runs a scenario as a cancellable background unit:

1. start() posts the run on a daemon thread after a short startup delay
2. The run resets every entry to Idle and walks the entries strictly in
   order, one at a time, through the InjectorHandler
3. Cancellation (stop() or the watchdog) is checked between entries;
   partial progress stays in the store and shows up in the report

Entries never run concurrently: later transactions depend on the session
state the earlier ones established on the target.
"""

import itertools
import logging
import threading
import time
from typing import List, Optional

from simu.harness.events import Notification, ScenarioEvent
from simu.harness.executor import InjectorHandler
from simu.harness.policy import DelayPolicy
from simu.harness.report import scenario_report
from simu.harness.status import (
    TIMEOUT,
    InternalLogicError,
    RunCancelled,
    ScenarioAborted,
    ScenarioBusy,
    SimulationError,
    SimulationStatus,
)
from simu.harness.store import ScenarioStore
from simu.transport.transport import Transport

logger = logging.getLogger(__name__)


START_DELAY_S = 0.05


def nominal_timeout_ms(store: ScenarioStore) -> int:
    """Worst-case duration of a scenario: every delay and every attempt."""
    total = 0
    with store.lock() as entries:
        for entry in entries:
            total += entry.delay_ms + entry.retry.worst_case_ms()
    return total


class ScenarioScheduler:
    """
    Background runner for one scenario.

    Args:
        store: Scenario store to walk
        transport: Transport handed to the injector handler
        event: Progress notification channel
        delay_policy: Scales the watchdog
        timeout_ms: Nominal scenario timeout (default: worst case of the entries)
    """

    _run_ids = itertools.count(1)

    def __init__(self, store: ScenarioStore, transport: Transport, event: ScenarioEvent,
                 delay_policy: Optional[DelayPolicy] = None,
                 timeout_ms: Optional[int] = None):
        self.store = store
        self.event = event
        self.delay_policy = delay_policy or DelayPolicy()

        nominal = timeout_ms if timeout_ms is not None else nominal_timeout_ms(store)
        self.watchdog_ms = self.delay_policy.watchdog(nominal)

        self.cancel = threading.Event()
        self.handler = InjectorHandler(store, transport, event, self.cancel)

        self.run_id = 0
        self.running = False
        self.last_error: Optional[SimulationError] = None
        self.expired = False
        self._thread: Optional[threading.Thread] = None
        self._watchdog: Optional[threading.Timer] = None
        self._state_lock = threading.Lock()

    @property
    def uid(self) -> str:
        return self.store.uid

    def _claim(self) -> int:
        with self._state_lock:
            if self.running:
                raise ScenarioBusy(f"run {self.run_id} still active", uid=self.uid)
            self.running = True
            self.run_id = next(self._run_ids)
            self.cancel.clear()
            self.expired = False
            self.last_error = None
            return self.run_id

    def start(self) -> int:
        """
        Schedule a background run.

        Returns:
            Run identifier

        Raises:
            ScenarioBusy: If a run is already active
        """
        run_id = self._claim()
        self._thread = threading.Thread(
            target=self._background, args=(run_id,),
            name=f"scenario-{self.uid}-{run_id}", daemon=True)
        self._thread.start()
        logger.info(f"{self.uid}: run {run_id} scheduled (watchdog {self.watchdog_ms}ms)")
        return run_id

    def _background(self, run_id: int):
        # startup delay, a stop() during it cancels the run before any call
        if self.cancel.wait(START_DELAY_S):
            self._release()
            return
        self._run(run_id)

    def exec(self) -> List[str]:
        """Run the scenario to completion in the caller's thread."""
        run_id = self._claim()
        self._run(run_id)
        return self.result()

    def _run(self, run_id: int):
        self.store.reset()
        self._watchdog = threading.Timer(self.watchdog_ms / 1000.0, self._expire, args=(run_id,))
        self._watchdog.daemon = True
        self._watchdog.start()
        started = time.time()

        try:
            for index in range(self.store.count):
                if self.cancel.is_set():
                    raise RunCancelled(f"run {run_id} cancelled", uid=self.uid)
                self.handler.execute_at(index)

            logger.info(f"{self.uid}: run {run_id} complete in {time.time() - started:.2f}s")

        except ScenarioAborted as e:
            self.last_error = e
            logger.error(f"{self.uid}: {e}")
            self.event.push(Notification(self.uid, self.uid,
                                         SimulationStatus.fail(e), str(e)))
        except RunCancelled as e:
            if self.expired:
                e = RunCancelled(f"watchdog expired after {self.watchdog_ms}ms", uid=self.uid)
                self.event.push(Notification(self.uid, self.uid, TIMEOUT, str(e)))
            self.last_error = e
            logger.info(f"{self.uid}: {e}")
        except InternalLogicError as e:
            self.last_error = e
            logger.error(f"{self.uid}: run {run_id} broken: {e}")
            self.event.push(Notification(self.uid, self.uid,
                                         SimulationStatus.fail(e), str(e)))
            raise
        finally:
            self._watchdog.cancel()
            self._release()

    def _expire(self, run_id: int):
        if self.run_id == run_id and self.running:
            logger.error(f"{self.uid}: watchdog expired after {self.watchdog_ms}ms")
            self.expired = True
            self.cancel.set()

    def _release(self):
        with self._state_lock:
            self.running = False

    def stop(self, run_id: Optional[int] = None) -> List[str]:
        """
        Cancel the in-flight run (if any) and return the current report.

        A call already waiting for its reply completes that wait first;
        nothing executed so far is rolled back.
        """
        if run_id is None or run_id == self.run_id:
            if self.running:
                logger.info(f"{self.uid}: stopping run {self.run_id}")
            self.cancel.set()
        return self.result()

    kill = stop

    def result(self) -> List[str]:
        """Current report, without touching the execution state."""
        return scenario_report(self.store)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the background run. Returns True if no run is active."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self.running

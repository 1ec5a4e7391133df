"""
transport.py - Call transport abstraction

A Transport issues call(target, verb, payload) to a remote api. Calls are
dispatched asynchronously; the reply (or error) comes back through a
callback, possibly on another thread. Transport.call() bridges that into
a synchronous wait bounded by a deadline.

Guarantees of the bridge:
- exactly one reply (or the deadline) resolves a call
- a reply arriving after the deadline is discarded, it never leaks into
  a later call
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from simu.harness.status import SimulationError, TransactionTimeout, TransportFailure

logger = logging.getLogger(__name__)


# on_reply(response, error) -> True if the reply was accepted
ReplyCallback = Callable[[Any, Optional[SimulationError]], bool]


class PendingCall:
    """
    One in-flight call waiting for its reply.

    resolve() may be called from any thread; wait() is called by the
    thread that issued the call.
    """

    def __init__(self, target: str, verb: str):
        self.target = target
        self.verb = verb
        self.response: Any = None
        self.error: Optional[SimulationError] = None
        self._cond = threading.Condition()
        self._done = False
        self._expired = False

    def resolve(self, response: Any = None, error: Optional[SimulationError] = None) -> bool:
        with self._cond:
            if self._done or self._expired:
                logger.debug(f"late reply for {self.target}/{self.verb} discarded")
                return False
            self.response = response
            self.error = error
            self._done = True
            self._cond.notify_all()
            return True

    def wait(self, timeout_s: float) -> bool:
        """Wait for the reply. Returns False (and expires the call) on deadline."""
        with self._cond:
            self._cond.wait_for(lambda: self._done, timeout=timeout_s)
            if not self._done:
                self._expired = True
                return False
            return True


class Transport(ABC):
    """
    Abstract base class for call transports.

    Implementations:
    - LoopbackTransport: in-process targets (tests, injector vs responder
      in one process)
    - SocketTransport: JSON lines over TCP
    - MqttTransport: request/reply topics on an MQTT broker
    """

    _ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    @abstractmethod
    def call_async(self, target: str, verb: str, payload: Any,
                   on_reply: ReplyCallback) -> Optional[int]:
        """
        Dispatch a call without waiting for its reply.

        Returns:
            Call id the reply is correlated with, or None when the
            transport keeps no per-call state

        Raises:
            TransportFailure: If the call could not be dispatched at all
        """
        pass

    def discard(self, call_id: int):
        """Forget a call whose deadline expired. Default: nothing to forget."""
        pass

    def call(self, target: str, verb: str, payload: Any, timeout_s: float) -> Any:
        """
        Dispatch a call and block until its reply or the deadline.

        Returns:
            The reply payload

        Raises:
            TransactionTimeout: No reply within timeout_s
            TransportFailure: Dispatch failed or the remote answered an error
        """
        pending = PendingCall(target, verb)
        try:
            call_id = self.call_async(target, verb, payload, pending.resolve)
        except TransportFailure:
            raise
        except OSError as e:
            raise TransportFailure(f"dispatch to {target}/{verb} failed: {e}", uid=verb)

        if not pending.wait(timeout_s):
            if call_id is not None:
                self.discard(call_id)
            raise TransactionTimeout(
                f"no reply from {target}/{verb} within {timeout_s:.3f}s", uid=verb)

        if pending.error is not None:
            if isinstance(pending.error, TransportFailure):
                raise pending.error
            raise TransportFailure(str(pending.error), uid=verb)
        return pending.response

    def close(self):
        """Release connections. Default: nothing to release."""
        pass

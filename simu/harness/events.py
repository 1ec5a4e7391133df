"""
events.py - Progress notifications

Every status transition of a transaction is pushed as a Notification on
the scenario's ScenarioEvent. Subscribers (API sessions, the transport
servers, tests) receive the records as they happen, so failures are
visible before the final report is produced.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from simu.harness.status import SimulationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """Progress record pushed on every transition."""
    uid: str
    verb: str
    status: SimulationStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'uid': self.uid,
            'verb': self.verb,
            'status': self.status.kind.value,
        }
        if self.error is not None:
            data['error'] = self.error
        return data

    @staticmethod
    def from_status(uid: str, verb: str, status: SimulationStatus) -> 'Notification':
        error = str(status.error) if status.error is not None else None
        return Notification(uid=uid, verb=verb, status=status, error=error)


Subscriber = Callable[[str, Notification], None]


class ScenarioEvent:
    """
    Named event channel with subscribe/unsubscribe.

    Subscribers are keyed so that a session subscribing twice is only
    notified once. A subscriber raising does not stop delivery to others.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: Dict[Any, Subscriber] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: Any, callback: Subscriber):
        with self._lock:
            self._subscribers[key] = callback

    def unsubscribe(self, key: Any):
        with self._lock:
            self._subscribers.pop(key, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def push(self, notification: Notification):
        if notification.error:
            logger.info(f"{self.name}: {notification.uid} {notification.status.kind.value} "
                        f"{notification.error}")
        else:
            logger.debug(f"{self.name}: {notification.uid} {notification.status.kind.value}")

        with self._lock:
            subscribers = list(self._subscribers.items())

        for key, callback in subscribers:
            try:
                callback(self.name, notification)
            except Exception as e:
                logger.warning(f"{self.name}: subscriber {key!r} failed: {e}")


class NotificationRecorder:
    """Subscriber that keeps every notification (autorun, tests)."""

    def __init__(self):
        self.records: List[Notification] = []
        self._lock = threading.Lock()

    def __call__(self, event_name: str, notification: Notification):
        with self._lock:
            self.records.append(notification)

    def kinds(self, uid: Optional[str] = None) -> List[str]:
        with self._lock:
            return [n.status.kind.value for n in self.records
                    if uid is None or n.uid == uid]

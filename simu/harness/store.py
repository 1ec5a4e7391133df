"""
store.py - Transaction entries and the scenario store

A ScenarioStore owns the ordered transaction entries of one scenario.
Entries are only reachable through lock(), which is shared between the
scheduler (the single mutator) and read-only queries such as result().

Locking rule: hold the lock only while reading or mutating the fields of
an entry, never across a sleep or a reply wait.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

from simu.harness.policy import RetryPolicy
from simu.harness.status import IDLE, InternalLogicError, SimulationStatus


# Bounded wait for the store lock; exceeding it means a caller broke the
# locking rule above.
LOCK_TIMEOUT_S = 5.0


@dataclass
class TransactionEntry:
    """
    One scripted call.

    Attributes:
        uid: Transaction identifier
        target: Target api the call is issued to
        verb: Verb called on the target
        queries: Ordered request payloads (0 or 1 for the injector)
        expects: Ordered expected payloads (0 or 1 for the injector)
        delay_ms: Effective (scaled) delay before the call is issued
        retry: Retry policy for this entry
        status: Mutable status of the last run
        sequence: Mutable sequence index
    """
    uid: str
    target: Optional[str]
    verb: str
    queries: List[Any] = field(default_factory=list)
    expects: List[Any] = field(default_factory=list)
    delay_ms: int = 0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    status: SimulationStatus = IDLE
    sequence: int = 0

    @property
    def query(self) -> Any:
        return self.queries[0] if self.queries else None

    @property
    def expect(self) -> Any:
        return self.expects[0] if self.expects else None


@dataclass(frozen=True)
class EntrySnapshot:
    """Immutable copy of an entry, safe to use without the lock."""
    index: int
    uid: str
    verb: str
    status: SimulationStatus
    sequence: int


class ScenarioStore:
    """
    Ordered collection of transaction entries behind a mutex.
    """

    def __init__(self, uid: str, entries: List[TransactionEntry]):
        self.uid = uid
        self._entries = list(entries)
        self.count = len(self._entries)
        self._mutex = threading.Lock()

    @contextmanager
    def lock(self) -> Iterator[List[TransactionEntry]]:
        """Exclusive handle over the entries."""
        if not self._mutex.acquire(timeout=LOCK_TIMEOUT_S):
            raise InternalLogicError(
                f"scenario store lock not acquired within {LOCK_TIMEOUT_S}s", uid=self.uid)
        try:
            yield self._entries
        finally:
            self._mutex.release()

    def get(self, index: int) -> TransactionEntry:
        """
        Return the entry object at index.

        Immutable fields (uid, verb, queries, expects, retry...) may be read
        without the lock; status/sequence must go through lock().
        """
        with self.lock() as entries:
            return entries[index]

    def set_status(self, index: int, status: SimulationStatus):
        with self.lock() as entries:
            entries[index].status = status

    def get_status(self, index: int) -> SimulationStatus:
        with self.lock() as entries:
            return entries[index].status

    def reset(self):
        """Put every entry back to Idle before a new run."""
        with self.lock() as entries:
            for entry in entries:
                entry.status = IDLE
                entry.sequence = 0

    def snapshot(self) -> List[EntrySnapshot]:
        with self.lock() as entries:
            return [
                EntrySnapshot(idx, e.uid, e.verb, e.status, e.sequence)
                for idx, e in enumerate(entries)
            ]

    def find(self, key: str) -> Optional[int]:
        """Index of the first entry whose uid or verb is key."""
        with self.lock() as entries:
            for idx, entry in enumerate(entries):
                if entry.uid == key or entry.verb == key:
                    return idx
        return None

    def verbs(self) -> List[str]:
        """Distinct verbs, in configuration order."""
        seen = []
        with self.lock() as entries:
            for entry in entries:
                if entry.verb not in seen:
                    seen.append(entry.verb)
        return seen

"""
responder.py - Responder state machine

In responder mode the engine does not issue calls, it answers them. Each
distinct verb gets a ResponderEntry holding the scripted sequence of
(query, expect) pairs and a cursor into it:

    incoming call -> nonce changed?  -> cursor = 0
                  -> cursor at end?  -> wrap (loop) or SequenceError
                  -> verify payload against queries[cursor]
                  -> reply expects[cursor], cursor += 1

The Responder holds a process-wide session nonce shared by every entry.
reset() bumps it, which makes every verb restart its sequence on its next
call. Calls may arrive concurrently from several transport threads, so
the nonce and each entry's cursor are guarded by locks.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from simu.harness.events import Notification, ScenarioEvent
from simu.harness.executor import TransactionHandler, TransactionOutcome
from simu.harness.status import (
    DONE,
    IDLE,
    SequenceError,
    SimulationStatus,
    StatusKind,
)
from simu.harness.verify import check_arguments

logger = logging.getLogger(__name__)


class Responder:
    """
    Shared session state of all responder verbs.

    Args:
        loop_enabled: Wrap sequences around instead of failing past the end
    """

    def __init__(self, loop_enabled: bool = False):
        self.loop_enabled = loop_enabled
        self._nonce = 0
        self._lock = threading.Lock()

    def reset(self) -> int:
        """Start a new session. Returns the new nonce."""
        with self._lock:
            self._nonce += 1
            logger.info(f"responder session reset, nonce:{self._nonce}")
            return self._nonce

    def get_nonce(self) -> int:
        with self._lock:
            return self._nonce


@dataclass
class ResponderEntry:
    """
    Scripted call sequence for one verb.

    Attributes:
        verb: Verb name
        uids: Transaction uid of each sequence step
        queries: Expected incoming payload per step (None: accept anything)
        expects: Reply per step (None: empty acknowledgement)
        sequence: Cursor of the next expected step
        nonce: Last session nonce seen by this entry
        status: Status of the last call
    """
    verb: str
    uids: List[str] = field(default_factory=list)
    queries: List[Any] = field(default_factory=list)
    expects: List[Any] = field(default_factory=list)
    sequence: int = 0
    nonce: int = 0
    status: SimulationStatus = IDLE
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_step(self, uid: str, query: Any, expect: Any):
        self.uids.append(uid)
        self.queries.append(query)
        self.expects.append(expect)

    @property
    def count(self) -> int:
        return len(self.queries)


class ResponderHandler(TransactionHandler):
    """
    Answers incoming calls from the responder script.

    Args:
        responder: Shared session state
        event: Optional channel receiving a notification per call
    """

    def __init__(self, responder: Responder, event: Optional[ScenarioEvent] = None):
        self.responder = responder
        self.event = event

    def execute(self, entry: ResponderEntry, payload: Any = None) -> TransactionOutcome:
        with entry.lock:
            nonce = self.responder.get_nonce()
            if nonce != entry.nonce:
                entry.sequence = 0
                entry.nonce = nonce

            if entry.sequence >= entry.count:
                if self.responder.loop_enabled:
                    entry.sequence = 0
                else:
                    error = SequenceError(
                        f"out of sequence: {entry.count} call(s) scripted, "
                        f"got call #{entry.sequence + 1}", uid=entry.verb)
                    entry.status = SimulationStatus.invalid_sequence(error)
                    self._notify(entry, entry.verb)
                    return TransactionOutcome(status=entry.status)

            cursor = entry.sequence
            status = check_arguments(f"{entry.uids[cursor]}:{cursor}", payload, entry.queries[cursor])
            if status.kind == StatusKind.IGNORED:
                status = DONE

            entry.status = status
            if status.is_failure:
                self._notify(entry, entry.uids[cursor])
                return TransactionOutcome(status=status)

            entry.sequence += 1
            self._notify(entry, entry.uids[cursor])
            return TransactionOutcome(status=status, response=entry.expects[cursor])

    def _notify(self, entry: ResponderEntry, uid: str):
        if self.event is not None:
            self.event.push(Notification.from_status(uid, entry.verb, entry.status))


def build_responder_entries(transactions: List[Dict[str, Any]]) -> List[ResponderEntry]:
    """
    Group transactions by verb.

    Transactions sharing a verb become successive steps of one entry, in
    configuration order. Entries are returned sorted by verb name.

    Args:
        transactions: Dicts with uid, verb, query and expect keys
    """
    by_verb: Dict[str, ResponderEntry] = {}
    for transac in transactions:
        verb = transac['verb']
        entry = by_verb.get(verb)
        if entry is None:
            entry = by_verb[verb] = ResponderEntry(verb=verb)
        entry.add_step(transac['uid'], transac.get('query'), transac.get('expect'))

    return [by_verb[verb] for verb in sorted(by_verb)]

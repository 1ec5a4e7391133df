"""
api.py - Verb registry and command surface

A SimulationApi is a named set of verbs. Transport servers (socket, MQTT)
and the loopback transport dispatch incoming calls into it with
call(verb, args, session).

Verbs registered by the launcher:
- injector: one control verb per scenario ({"action": start|stop|exec|result})
  and one verb per distinct transaction verb for single-shot calls
- responder: one verb per scripted verb, plus "reset"
- always: "ping" and "info"
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from simu.harness.events import Notification, NotificationRecorder, ScenarioEvent
from simu.harness.executor import InjectorHandler
from simu.harness.responder import Responder, ResponderEntry, ResponderHandler
from simu.harness.scheduler import ScenarioScheduler
from simu.harness.status import ScenarioBusy, SimulationError, UnknownVerb

logger = logging.getLogger(__name__)


class Session:
    """
    Caller context of a verb call.

    Transport servers subclass it to forward event notifications to the
    remote caller.
    """

    def __init__(self, name: str):
        self.name = name

    def push_event(self, event_name: str, notification: Notification):
        pass

    def __repr__(self):
        return f"<Session {self.name}>"


class LocalSession(Session):
    """In-process session recording the notifications it receives."""

    def __init__(self, name: str = "local"):
        super().__init__(name)
        self.recorder = NotificationRecorder()

    def push_event(self, event_name: str, notification: Notification):
        self.recorder(event_name, notification)


VerbCallback = Callable[[Any, Optional[Session]], Any]


@dataclass
class VerbEntry:
    name: str
    callback: VerbCallback
    info: str = ""
    group: Optional[str] = None
    sample: Any = None


class SimulationApi:
    """
    Named verb surface.

    Args:
        name: Api name (target name for remote callers)
        info: Free text description
    """

    def __init__(self, name: str, info: str = ""):
        self.name = name
        self.info = info
        self.verbs: Dict[str, VerbEntry] = {}
        self.events: Dict[str, ScenarioEvent] = {}
        self._lock = threading.Lock()

        self.add_verb("ping", lambda args, session: "pong", info="liveness check")
        self.add_verb("info", self._info, info="list verbs")

    def add_verb(self, name: str, callback: VerbCallback, info: str = "",
                 group: Optional[str] = None, sample: Any = None) -> bool:
        """Register a verb. Returns False if the name is already taken."""
        with self._lock:
            if name in self.verbs:
                logger.warning(f"api:{self.name} verb {name} already registered, ignored")
                return False
            self.verbs[name] = VerbEntry(name, callback, info, group, sample)
            return True

    def add_event(self, event: ScenarioEvent):
        self.events[event.name] = event

    def call(self, verb: str, args: Any = None, session: Optional[Session] = None) -> Any:
        """
        Dispatch a call to a verb.

        Raises:
            UnknownVerb: If verb is not registered
            SimulationError: Whatever the verb raises
        """
        entry = self.verbs.get(verb)
        if entry is None:
            raise UnknownVerb(f"api:{self.name} has no verb '{verb}'", uid=verb)
        logger.debug(f"api:{self.name} call {verb} args:{args!r}")
        return entry.callback(args, session)

    def close_session(self, session: Session):
        """Drop every event subscription of a closed session."""
        for event in self.events.values():
            event.unsubscribe(session)

    def verb_names(self) -> List[str]:
        with self._lock:
            return list(self.verbs)

    def _info(self, args: Any, session: Optional[Session]) -> Dict[str, Any]:
        with self._lock:
            verbs = [
                {'verb': v.name, 'info': v.info, 'group': v.group, 'sample': v.sample}
                for v in self.verbs.values()
            ]
        return {'api': self.name, 'info': self.info, 'verbs': verbs,
                'events': list(self.events)}


ACTIONS = ("start", "stop", "exec", "result")


def parse_action(args: Any) -> str:
    if isinstance(args, dict):
        action = args.get('action', 'start')
    elif isinstance(args, str):
        action = args
    elif args is None:
        action = 'start'
    else:
        raise SimulationError(f"invalid scenario action argument: {args!r}")

    action = str(action).lower()
    if action not in ACTIONS:
        raise SimulationError(f"unknown action '{action}', expected one of {', '.join(ACTIONS)}")
    return action


class ScenarioControl:
    """
    Control verb of one injector scenario.

    start subscribes the caller to the scenario event and returns the run
    id; stop unsubscribes it, cancels whatever run is active (started by
    start or by exec, from any session) and returns the partial report.
    """

    def __init__(self, scheduler: ScenarioScheduler, event: ScenarioEvent):
        self.scheduler = scheduler
        self.event = event

    def __call__(self, args: Any, session: Optional[Session]) -> Any:
        action = parse_action(args)

        if action == "start":
            if session is not None:
                self.event.subscribe(session, session.push_event)
            return self.scheduler.start()

        if action == "stop":
            if session is not None:
                self.event.unsubscribe(session)
            return self.scheduler.stop()

        if action == "exec":
            if session is not None:
                self.event.subscribe(session, session.push_event)
            try:
                return self.scheduler.exec()
            finally:
                if session is not None:
                    self.event.unsubscribe(session)

        return self.scheduler.result()


class TransactionVerb:
    """
    Single-shot manual invocation of one injector transaction.

    The entry lives in the scenario store, so a manual call is rejected
    while a scheduled run of that scenario is active.
    """

    def __init__(self, handler: InjectorHandler, index: int,
                 scheduler: Optional[ScenarioScheduler] = None):
        self.handler = handler
        self.index = index
        self.scheduler = scheduler

    def __call__(self, args: Any, session: Optional[Session]) -> Dict[str, Any]:
        if self.scheduler is not None and self.scheduler.running:
            raise ScenarioBusy(f"scenario run {self.scheduler.run_id} active, "
                               f"manual call refused", uid=self.scheduler.uid)
        outcome = self.handler.execute_at(self.index, args)
        reply = {'status': outcome.status.kind.value, 'response': outcome.response}
        if outcome.status.error is not None:
            reply['error'] = str(outcome.status.error)
        return reply


class ResponderVerb:
    """Scripted answer of one responder verb."""

    def __init__(self, handler: ResponderHandler, entry: ResponderEntry):
        self.handler = handler
        self.entry = entry

    def __call__(self, args: Any, session: Optional[Session]) -> Any:
        outcome = self.handler.execute(self.entry, args)
        if not outcome.status.is_success:
            raise outcome.status.error
        return outcome.response


class ResetVerb:
    """Bump the responder session nonce."""

    def __init__(self, responder: Responder):
        self.responder = responder

    def __call__(self, args: Any, session: Optional[Session]) -> Dict[str, int]:
        return {'nonce': self.responder.reset()}

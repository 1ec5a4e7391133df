"""
loopback.py - In-process transport

Targets are registered by name and are either a SimulationApi (anything
with call(verb, args)) or a plain callable(verb, args). Each call runs on
its own worker thread so the caller goes through the same async dispatch
and bounded wait as with a real network transport.
"""

import logging
import threading
from typing import Any, Dict

from simu.harness.status import SimulationError, TransportFailure
from simu.transport.transport import ReplyCallback, Transport

logger = logging.getLogger(__name__)


class LoopbackTransport(Transport):
    """Zero-network transport between in-process apis."""

    def __init__(self):
        self.targets: Dict[str, Any] = {}

    def register(self, name: str, target: Any):
        self.targets[name] = target

    def unregister(self, name: str):
        self.targets.pop(name, None)

    def call_async(self, target: str, verb: str, payload: Any, on_reply: ReplyCallback):
        handler = self.targets.get(target)
        if handler is None:
            raise TransportFailure(f"unknown target api:{target}", uid=verb)

        worker = threading.Thread(
            target=self._dispatch,
            args=(handler, target, verb, payload, on_reply),
            name=f"loopback-{target}-{verb}",
            daemon=True
        )
        worker.start()

    def _dispatch(self, handler: Any, target: str, verb: str, payload: Any,
                  on_reply: ReplyCallback):
        try:
            if hasattr(handler, 'call'):
                response = handler.call(verb, payload)
            else:
                response = handler(verb, payload)
        except SimulationError as e:
            on_reply(None, e)
            return
        except Exception as e:
            logger.warning(f"{target}/{verb} raised {type(e).__name__}: {e}")
            on_reply(None, TransportFailure(f"{type(e).__name__}: {e}", uid=verb))
            return
        on_reply(response, None)

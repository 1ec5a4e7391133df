"""
socket_transport.py - JSON-lines transport over TCP

Client side (SocketTransport) and server side (SocketApiServer) of a
line-oriented protocol, one JSON document per line:

    Client -> Server:
        {"id": 7, "verb": "iso2:session_setup_req", "args": {...}}

    Server -> Client:
        {"id": 7, "status": "ok", "response": {...}}
        {"id": 7, "status": "error", "kind": "SequenceError", "error": "..."}
        {"event": "charging-session", "data": {"uid": ..., "status": ...}}

Replies are correlated by id, so the client may have several calls in
flight on one connection. Event lines carry progress notifications for
sessions that subscribed to a scenario.
"""

import json
import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from simu.harness.api import Session
from simu.harness.events import Notification
from simu.harness.status import SimulationError, TransportFailure
from simu.transport.transport import ReplyCallback, Transport

logger = logging.getLogger(__name__)


def parse_address(address: str) -> Tuple[str, int]:
    """Split "host:port" (or a bare port) into (host, port)."""
    if ':' in address:
        host, port = address.rsplit(':', 1)
        return host or 'localhost', int(port)
    return 'localhost', int(address)


class _Connection:
    """Client connection to one target, with a background reader thread."""

    def __init__(self, target: str, host: str, port: int,
                 on_event: Optional[Callable[[str, Dict[str, Any]], None]]):
        self.target = target
        self.host = host
        self.port = port
        self.on_event = on_event
        self.sock: Optional[socket.socket] = None
        self.sock_file = None
        self.pending: Dict[int, ReplyCallback] = {}
        self.lock = threading.Lock()
        self.alive = False

    def connect(self, max_retries: int = 3, retry_delay: float = 0.2):
        for attempt in range(max_retries):
            try:
                self.sock = socket.create_connection((self.host, self.port), timeout=5.0)
                self.sock.settimeout(None)
                self.sock_file = self.sock.makefile('rw', encoding='utf-8')
                break
            except ConnectionRefusedError:
                if attempt < max_retries - 1:
                    logger.debug(f"connection to {self.target} refused, retrying in {retry_delay}s")
                    time.sleep(retry_delay)
                else:
                    raise

        self.alive = True
        reader = threading.Thread(target=self._reader, name=f"socket-{self.target}", daemon=True)
        reader.start()
        logger.info(f"connected to {self.target} at {self.host}:{self.port}")

    def send(self, call_id: int, verb: str, payload: Any, on_reply: ReplyCallback):
        line = json.dumps({'id': call_id, 'verb': verb, 'args': payload})
        with self.lock:
            if not self.alive:
                raise TransportFailure(f"connection to {self.target} closed", uid=verb)
            self.pending[call_id] = on_reply
            try:
                self.sock_file.write(line + '\n')
                self.sock_file.flush()
            except OSError as e:
                self.pending.pop(call_id, None)
                raise TransportFailure(f"write to {self.target} failed: {e}", uid=verb)

    def _reader(self):
        try:
            for line in self.sock_file:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"{self.target}: invalid JSON line ignored: {e}")
                    continue
                self._dispatch(message)
        except (OSError, ValueError) as e:
            logger.debug(f"{self.target}: reader stopped: {e}")
        finally:
            self._fail_pending("connection closed")

    def _dispatch(self, message: Dict[str, Any]):
        if 'event' in message:
            if self.on_event is not None:
                self.on_event(message['event'], message.get('data', {}))
            return

        with self.lock:
            on_reply = self.pending.pop(message.get('id'), None)
        if on_reply is None:
            logger.debug(f"{self.target}: reply for unknown id {message.get('id')} dropped")
            return

        if message.get('status') == 'ok':
            on_reply(message.get('response'), None)
        else:
            kind = message.get('kind', 'Error')
            on_reply(None, TransportFailure(f"{kind}: {message.get('error')}"))

    def _fail_pending(self, reason: str):
        with self.lock:
            self.alive = False
            pending = list(self.pending.values())
            self.pending.clear()
        for on_reply in pending:
            on_reply(None, TransportFailure(f"{self.target}: {reason}"))

    def close(self):
        with self.lock:
            self.alive = False
        if self.sock is not None:
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.sock.close()


class SocketTransport(Transport):
    """
    Client transport: one lazily opened TCP connection per target.

    Args:
        targets: Map of target api name -> "host:port"
        on_event: Optional callback(event_name, data) for event lines
    """

    def __init__(self, targets: Dict[str, str],
                 on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        self.targets = dict(targets)
        self.on_event = on_event
        self.connections: Dict[str, _Connection] = {}
        self._lock = threading.Lock()

    def _connection(self, target: str, verb: str) -> _Connection:
        with self._lock:
            conn = self.connections.get(target)
            if conn is not None and conn.alive:
                return conn

            address = self.targets.get(target)
            if address is None:
                raise TransportFailure(f"no address configured for target api:{target}", uid=verb)

            host, port = parse_address(address)
            conn = _Connection(target, host, port, self.on_event)
            try:
                conn.connect()
            except OSError as e:
                raise TransportFailure(f"cannot connect to {target} ({address}): {e}", uid=verb)
            self.connections[target] = conn
            return conn

    def call_async(self, target: str, verb: str, payload: Any, on_reply: ReplyCallback) -> int:
        conn = self._connection(target, verb)
        call_id = self.next_id()
        conn.send(call_id, verb, payload, on_reply)
        return call_id

    def discard(self, call_id: int):
        with self._lock:
            connections = list(self.connections.values())
        for conn in connections:
            with conn.lock:
                conn.pending.pop(call_id, None)

    def close(self):
        with self._lock:
            connections = list(self.connections.values())
            self.connections.clear()
        for conn in connections:
            conn.close()


class _ConnectionSession(Session):
    """Server-side session for one client connection."""

    def __init__(self, sock_file, peer):
        super().__init__(f"socket:{peer[0]}:{peer[1]}")
        self.sock_file = sock_file
        self.write_lock = threading.Lock()
        self.open = True

    def write(self, message: Dict[str, Any]):
        line = json.dumps(message, default=str)
        with self.write_lock:
            if not self.open:
                return
            try:
                self.sock_file.write(line + '\n')
                self.sock_file.flush()
            except OSError as e:
                logger.debug(f"{self.name}: write failed: {e}")
                self.open = False

    def push_event(self, event_name: str, notification: Notification):
        self.write({'event': event_name, 'data': notification.to_dict()})


class SocketApiServer:
    """
    Serves a SimulationApi over TCP.

    Each client connection gets its own thread; requests of one connection
    are handled in order, which preserves the call ordering a responder
    relies on.
    """

    def __init__(self, api, host: str = 'localhost', port: int = 0):
        self.api = api
        self.host = host
        self.port = port
        self.server_sock: Optional[socket.socket] = None
        self.running = False
        self.thread: Optional[threading.Thread] = None

    def start(self) -> int:
        """Bind, listen and start accepting. Returns the bound port."""
        self.server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_sock.bind((self.host, self.port))
        self.server_sock.listen(8)
        self.port = self.server_sock.getsockname()[1]
        self.running = True

        self.thread = threading.Thread(target=self._accept_loop, name="socket-api-server", daemon=True)
        self.thread.start()
        logger.info(f"api:{self.api.name} listening on {self.host}:{self.port}")
        return self.port

    def _accept_loop(self):
        while self.running:
            try:
                conn, addr = self.server_sock.accept()
            except OSError:
                break
            handler = threading.Thread(target=self._serve, args=(conn, addr), daemon=True)
            handler.start()

    def _serve(self, conn: socket.socket, addr):
        sock_file = conn.makefile('rw', encoding='utf-8')
        session = _ConnectionSession(sock_file, addr)
        logger.info(f"{session.name} connected")
        try:
            for line in sock_file:
                line = line.strip()
                if not line:
                    continue
                self._handle_line(session, line)
        except (OSError, ValueError) as e:
            logger.debug(f"{session.name}: connection error: {e}")
        finally:
            session.open = False
            self.api.close_session(session)
            conn.close()
            logger.info(f"{session.name} disconnected")

    def _handle_line(self, session: _ConnectionSession, line: str):
        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            session.write({'id': None, 'status': 'error', 'kind': 'ProtocolError',
                           'error': f"invalid JSON: {e}"})
            return

        call_id = request.get('id')
        try:
            response = self.api.call(request.get('verb'), request.get('args'), session)
        except SimulationError as e:
            session.write({'id': call_id, 'status': 'error',
                           'kind': type(e).__name__, 'error': str(e)})
            return
        session.write({'id': call_id, 'status': 'ok', 'response': response})

    def stop(self):
        self.running = False
        if self.server_sock is not None:
            # shutdown wakes up the blocked accept()
            try:
                self.server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.server_sock.close()
        if self.thread is not None:
            self.thread.join(timeout=2.0)

"""
mqtt_transport.py - Request/reply transport over an MQTT broker

Topics:
  Request: <target>/<verb>
  Reply:   simu/reply/<client_id>
  Events:  simu/event/<api>/<scenario>

Message format (JSON):
  Request: {"id": 7, "reply_to": "simu/reply/injector", "args": {...}}
  Reply:   {"id": 7, "status": "ok", "response": {...}}
           {"id": 7, "status": "error", "kind": "...", "error": "..."}

Replies are delivered on the paho network thread, which resolves the
pending call the injector is waiting on.
"""

import json
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from simu.harness.api import Session
from simu.harness.events import Notification
from simu.harness.status import SimulationError, TransportFailure
from simu.transport.transport import ReplyCallback, Transport

logger = logging.getLogger(__name__)

REPLY_PREFIX = "simu/reply"
EVENT_PREFIX = "simu/event"


def _new_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)


class MqttTransport(Transport):
    """
    Client transport publishing requests and collecting replies by id.

    Args:
        broker_host: MQTT broker hostname
        broker_port: MQTT broker port
        client_id: MQTT client id, also names the reply topic
        client_factory: Builds the paho client (tests pass a fake)
    """

    def __init__(self, broker_host: str = "localhost", broker_port: int = 1883,
                 client_id: Optional[str] = None,
                 client_factory: Callable[[str], Any] = _new_client):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.client_id = client_id or f"simu-{uuid.uuid4().hex[:8]}"
        self.reply_topic = f"{REPLY_PREFIX}/{self.client_id}"
        self.pending: Dict[int, ReplyCallback] = {}
        self._lock = threading.Lock()
        self.connected = False

        self.client = client_factory(self.client_id)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message

    def connect(self):
        logger.info(f"connecting to MQTT broker {self.broker_host}:{self.broker_port}")
        try:
            self.client.connect(self.broker_host, self.broker_port, keepalive=60)
        except OSError as e:
            raise TransportFailure(f"MQTT broker {self.broker_host}:{self.broker_port}: {e}")
        self.client.loop_start()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            client.subscribe(self.reply_topic)
            self.connected = True
            logger.info(f"MQTT connected, replies on {self.reply_topic}")
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_message(self, client, userdata, msg):
        try:
            message = json.loads(msg.payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"invalid reply on {msg.topic}: {e}")
            return

        with self._lock:
            on_reply = self.pending.pop(message.get('id'), None)
        if on_reply is None:
            logger.debug(f"reply for unknown id {message.get('id')} dropped")
            return

        if message.get('status') == 'ok':
            on_reply(message.get('response'), None)
        else:
            kind = message.get('kind', 'Error')
            on_reply(None, TransportFailure(f"{kind}: {message.get('error')}"))

    def call_async(self, target: str, verb: str, payload: Any, on_reply: ReplyCallback) -> int:
        call_id = self.next_id()
        body = json.dumps({'id': call_id, 'reply_to': self.reply_topic, 'args': payload})

        with self._lock:
            self.pending[call_id] = on_reply

        info = self.client.publish(f"{target}/{verb}", body, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            with self._lock:
                self.pending.pop(call_id, None)
            raise TransportFailure(f"publish to {target}/{verb} failed rc={info.rc}", uid=verb)
        return call_id

    def discard(self, call_id: int):
        with self._lock:
            self.pending.pop(call_id, None)

    def close(self):
        self.client.loop_stop()
        self.client.disconnect()


class _MqttSession(Session):
    """Events of an MQTT caller are published on a per-api event topic."""

    def __init__(self, server: 'MqttApiServer', reply_to: str):
        super().__init__(f"mqtt:{reply_to}")
        self.server = server

    def push_event(self, event_name: str, notification: Notification):
        topic = f"{EVENT_PREFIX}/{self.server.api.name}/{event_name}"
        self.server.client.publish(topic, json.dumps(notification.to_dict()))


class MqttApiServer:
    """
    Serves a SimulationApi on <api-name>/<verb> request topics.

    Requests are handled on the paho network thread, in arrival order.
    """

    def __init__(self, api, broker_host: str = "localhost", broker_port: int = 1883,
                 client_factory: Callable[[str], Any] = _new_client):
        self.api = api
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.request_prefix = f"{api.name}/"
        self.sessions: Dict[str, _MqttSession] = {}

        self.client = client_factory(f"simu-server-{api.name}")
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message

    def start(self):
        logger.info(f"api:{self.api.name} serving on MQTT broker "
                    f"{self.broker_host}:{self.broker_port}")
        self.client.connect(self.broker_host, self.broker_port, keepalive=60)
        self.client.loop_start()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            client.subscribe(f"{self.request_prefix}#")
            logger.info(f"subscribed to {self.request_prefix}#")
        else:
            logger.error(f"MQTT connection failed: {reason_code}")

    def _on_message(self, client, userdata, msg):
        if not msg.topic.startswith(self.request_prefix):
            return
        verb = msg.topic[len(self.request_prefix):]

        try:
            request = json.loads(msg.payload.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"invalid request on {msg.topic}: {e}")
            return

        reply_to = request.get('reply_to')
        session = None
        if reply_to:
            session = self.sessions.get(reply_to)
            if session is None:
                session = self.sessions[reply_to] = _MqttSession(self, reply_to)

        try:
            response = self.api.call(verb, request.get('args'), session)
            reply = {'id': request.get('id'), 'status': 'ok', 'response': response}
        except SimulationError as e:
            reply = {'id': request.get('id'), 'status': 'error',
                     'kind': type(e).__name__, 'error': str(e)}

        if reply_to:
            client.publish(reply_to, json.dumps(reply, default=str), qos=1)

    def stop(self):
        for session in self.sessions.values():
            self.api.close_session(session)
        self.client.loop_stop()
        self.client.disconnect()

"""
test_mqtt_transport.py - MQTT request/reply transport

Uses an in-memory broker standing in for the paho client so that the
topic layout and message format can be checked without a running
mosquitto.
"""

import json
import sys
from pathlib import Path
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

_project_root = Path(__file__).parent.parent.parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from simu.harness.api import SimulationApi
from simu.harness.events import Notification, ScenarioEvent
from simu.harness.status import (
    CHECK,
    SequenceError,
    TransactionTimeout,
    TransportFailure,
)
from simu.transport.mqtt_transport import EVENT_PREFIX, MqttApiServer, MqttTransport


class FakeBroker:
    """Routes publishes to subscribed fake clients, synchronously."""

    def __init__(self):
        self.clients = []
        self.published = []
        self.fail_publish = False

    def factory(self, client_id):
        client = FakeClient(self, client_id)
        self.clients.append(client)
        return client

    def route(self, topic, payload):
        self.published.append((topic, payload))
        msg = SimpleNamespace(topic=topic, payload=payload.encode('utf-8'))
        for client in list(self.clients):
            if client.connected and client.matches(topic):
                client.on_message(client, None, msg)


class FakeClient:

    def __init__(self, broker, client_id):
        self.broker = broker
        self.client_id = client_id
        self.subscriptions = []
        self.connected = False
        self.looping = False
        self.on_connect = None
        self.on_message = None

    def connect(self, host, port, keepalive=60):
        self.connected = True
        self.on_connect(self, None, {}, 0, None)

    def loop_start(self):
        self.looping = True

    def loop_stop(self):
        self.looping = False

    def disconnect(self):
        self.connected = False

    def subscribe(self, topic):
        self.subscriptions.append(topic)

    def matches(self, topic):
        for pattern in self.subscriptions:
            if pattern.endswith('#') and topic.startswith(pattern[:-1]):
                return True
            if pattern == topic:
                return True
        return False

    def publish(self, topic, payload, qos=0):
        if self.broker.fail_publish:
            return SimpleNamespace(rc=mqtt.MQTT_ERR_NO_CONN)
        self.broker.route(topic, payload)
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def evse_api():
    api = SimulationApi("evse")
    api.add_verb("iso2:session_setup_req", lambda args, session: {"rcode": "ok", "echo": args})

    def out_of_sequence(args, session):
        raise SequenceError("out of sequence", uid="iso2:power_delivery_req")

    api.add_verb("iso2:power_delivery_req", out_of_sequence)
    return api


@pytest.fixture
def connected(broker, evse_api):
    server = MqttApiServer(evse_api, client_factory=broker.factory)
    server.start()
    transport = MqttTransport(client_id="injector", client_factory=broker.factory)
    transport.connect()
    yield server, transport
    transport.close()
    server.stop()


class TestMqttTransport:

    def test_subscribes_reply_topic_on_connect(self, connected):
        server, transport = connected

        assert transport.connected
        assert transport.reply_topic == "simu/reply/injector"
        assert "simu/reply/injector" in transport.client.subscriptions
        assert "evse/#" in server.client.subscriptions

    def test_round_trip(self, connected, broker):
        _, transport = connected

        reply = transport.call("evse", "iso2:session_setup_req", {"evcc_id": "01"}, 1.0)

        assert reply == {"rcode": "ok", "echo": {"evcc_id": "01"}}
        topic, payload = broker.published[0]
        assert topic == "evse/iso2:session_setup_req"
        request = json.loads(payload)
        assert request["reply_to"] == "simu/reply/injector"
        assert request["args"] == {"evcc_id": "01"}
        assert transport.pending == {}

    def test_error_reply(self, connected):
        _, transport = connected

        with pytest.raises(TransportFailure, match="SequenceError"):
            transport.call("evse", "iso2:power_delivery_req", None, 1.0)

    def test_publish_failure(self, connected, broker):
        _, transport = connected
        broker.fail_publish = True

        with pytest.raises(TransportFailure, match="publish"):
            transport.call("evse", "ping", None, 1.0)
        assert transport.pending == {}

    def test_reply_for_unknown_id_dropped(self, connected, broker):
        _, transport = connected

        broker.route("simu/reply/injector", json.dumps({"id": 999999, "status": "ok"}))

        assert transport.pending == {}

    def test_invalid_json_reply_ignored(self, connected, broker):
        _, transport = connected

        broker.route("simu/reply/injector", "{not json")

        assert transport.call("evse", "ping", None, 1.0) == "pong"

    def test_no_reply_times_out(self, broker):
        transport = MqttTransport(client_id="lonely", client_factory=broker.factory)
        transport.connect()

        with pytest.raises(TransactionTimeout):
            transport.call("evse", "ping", None, 0.05)

    def test_timed_out_calls_forgotten(self, broker):
        transport = MqttTransport(client_id="lonely", client_factory=broker.factory)
        transport.connect()

        for _ in range(3):
            with pytest.raises(TransactionTimeout):
                transport.call("evse", "ping", None, 0.01)

        assert transport.pending == {}


class TestMqttApiServer:

    def test_events_published_for_session(self, connected, broker, evse_api):
        server, transport = connected
        event = ScenarioEvent("charging-session")
        evse_api.add_event(event)

        def subscribe(args, session):
            event.subscribe(session, session.push_event)
            return "subscribed"

        evse_api.add_verb("subscribe", subscribe)

        transport.call("evse", "subscribe", None, 1.0)
        event.push(Notification("setup", "iso2:session_setup_req", CHECK))

        topic, payload = broker.published[-1]
        assert topic == f"{EVENT_PREFIX}/evse/charging-session"
        assert json.loads(payload)["status"] == "Check"

    def test_stop_closes_sessions(self, broker, evse_api):
        server = MqttApiServer(evse_api, client_factory=broker.factory)
        server.start()
        transport = MqttTransport(client_id="injector", client_factory=broker.factory)
        transport.connect()

        event = ScenarioEvent("charging-session")
        evse_api.add_event(event)
        evse_api.add_verb("subscribe",
                          lambda args, session: event.subscribe(session, session.push_event))
        transport.call("evse", "subscribe", None, 1.0)
        assert event.subscriber_count == 1

        server.stop()

        assert event.subscriber_count == 0
        assert not server.client.connected

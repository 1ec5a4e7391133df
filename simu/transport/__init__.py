"""
simu.transport - Call transports

Transport is the abstract call(target, verb, payload) capability used by
the injector. LoopbackTransport connects in-process apis; the socket and
MQTT transports live in their own modules (socket_transport,
mqtt_transport) and are imported on demand.
"""

from simu.transport.transport import PendingCall, Transport
from simu.transport.loopback import LoopbackTransport

__all__ = ['PendingCall', 'Transport', 'LoopbackTransport']

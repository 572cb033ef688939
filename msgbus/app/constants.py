"""Message-bus constants shared across modules."""
from __future__ import annotations

from enum import Enum


class ConnectivityState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTED = "CONNECTED"
    UNREACHABLE = "UNREACHABLE"


class TransportEvent(str, Enum):
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"
    UNREACHABLE = "unreachable"


class DispatchOutcome(str, Enum):
    ACK = "ACK"
    REJECT = "REJECT"


class ExchangeType(str, Enum):
    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"

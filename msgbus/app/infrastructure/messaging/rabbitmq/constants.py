"""RabbitMQ transport lifecycle states."""
from enum import Enum

JSON_CONTENT_TYPE = "application/json"
BINARY_CONTENT_TYPE = "application/octet-stream"
DEFAULT_PREFETCH_COUNT = 10


class TransportState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CHANNEL_OPEN = "CHANNEL_OPEN"
    TOPOLOGY_DECLARED = "TOPOLOGY_DECLARED"
    READY = "READY"
    RECONNECTING = "RECONNECTING"
    UNREACHABLE = "UNREACHABLE"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"

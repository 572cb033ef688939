"""Message-bus error taxonomy."""
from __future__ import annotations


class MessageBusError(Exception):
    """Base error for message bus failures."""


class ConnectionTimeoutError(MessageBusError):
    """Raised when the readiness wait exceeds its timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Message bus connection timeout, {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class NoDefaultExchangeError(MessageBusError):
    """Raised when publish() omits the exchange and setup() did not yield exactly one."""

    def __init__(self) -> None:
        super().__init__(
            "Unable to publish to default exchange, either:\n"
            'a) pass an "exchange" argument;\n'
            'b) call setup() with only one exchange before calling "publish".'
        )


class NoDefaultQueueError(MessageBusError):
    """Raised when subscribe() omits the queue and setup() did not yield exactly one."""

    def __init__(self) -> None:
        super().__init__(
            "Unable to subscribe to default queue, either:\n"
            'a) pass a "queue" argument;\n'
            'b) call setup() with only one queue before calling "subscribe".'
        )


class UnreachableError(MessageBusError):
    """Delivered to the error handler when the transport stops reconnecting."""

    def __init__(self, message: str = "Message bus connection unreachable, won't try to reconnect more.") -> None:
        super().__init__(message)


class BusNotInitializedError(MessageBusError):
    """Raised when publish/subscribe is called outside a setup()...terminate() cycle."""


class InvalidConnectionStringError(MessageBusError, ValueError):
    """Raised when the connection string cannot be parsed into a broker address."""


class InvalidConfigurationError(MessageBusError, ValueError):
    """Raised for malformed exchange/queue/binding entries in setup()."""

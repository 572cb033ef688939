"""In-memory transport for testing and local mode.

No broker semantics: published messages are recorded, not routed. deliver() pushes
a message straight into the consumer bound to a queue, and emit() drives
connectivity events by hand.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from msgbus.app.constants import TransportEvent
from msgbus.app.domain.models import ResolvedConfig
from msgbus.app.ports.transport import ConsumerCallback, EventCallback


@dataclass(frozen=True)
class PublishedMessage:
    exchange: str
    routing_key: str
    body: Any


class InMemoryMessage:
    """IncomingMessage that records its outcome. Settling twice is an error."""

    def __init__(self, body: Any, routing_key: str = "") -> None:
        self._body = body
        self._routing_key = routing_key
        self.acked = False
        self.nacked = False
        self.requeue: bool | None = None

    @property
    def routing_key(self) -> str:
        return self._routing_key

    @property
    def body(self) -> Any:
        return self._body

    @property
    def processed(self) -> bool:
        return self.acked or self.nacked

    async def ack(self) -> None:
        if self.processed:
            raise RuntimeError("message already processed")
        self.acked = True

    async def nack(self, *, requeue: bool = True) -> None:
        if self.processed:
            raise RuntimeError("message already processed")
        self.nacked = True
        self.requeue = requeue


class InMemoryTransport:
    """
    connect_on_configure=False models a broker that never answers: configure() parks
    until release() is called, so connectivity only changes through emit().
    """

    def __init__(self, *, connect_on_configure: bool = True, configure_error: Exception | None = None) -> None:
        self._connect_on_configure = connect_on_configure
        self._configure_error = configure_error
        self._released = asyncio.Event()
        self._listeners: dict[TransportEvent, list[EventCallback]] = defaultdict(list)
        self.config: ResolvedConfig | None = None
        self.published: list[PublishedMessage] = []
        self.consumers: dict[str, ConsumerCallback] = {}
        self.handle_calls: list[str] = []
        self.shut_down = False

    def on(self, event: TransportEvent, callback: EventCallback) -> None:
        self._listeners[TransportEvent(event)].append(callback)

    def emit(self, event: TransportEvent, *args: Any) -> None:
        for callback in list(self._listeners[TransportEvent(event)]):
            callback(*args)

    def release(self) -> None:
        self._released.set()

    async def configure(self, config: ResolvedConfig) -> None:
        self.config = config
        if self._configure_error is not None:
            raise self._configure_error
        if not self._connect_on_configure:
            await self._released.wait()
        self.emit(TransportEvent.CONNECTED)

    async def publish(self, exchange: str, routing_key: str, body: Any) -> None:
        if self.shut_down:
            raise RuntimeError("transport_shut_down")
        self.published.append(PublishedMessage(exchange=exchange, routing_key=routing_key, body=body))

    async def handle(self, queue: str, callback: ConsumerCallback) -> None:
        self.handle_calls.append(queue)
        self.consumers[queue] = callback

    async def deliver(self, queue: str, body: Any, routing_key: str = "") -> InMemoryMessage:
        """Push one message into the queue's consumer and return it once dispatched."""
        message = InMemoryMessage(body, routing_key)
        callback = self.consumers.get(queue)
        if callback is None:
            raise LookupError(f"no consumer bound to queue {queue!r}")
        await callback(message)
        return message

    async def shutdown(self) -> None:
        self.shut_down = True
        self.emit(TransportEvent.CLOSED)

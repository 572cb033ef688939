"""Port: broker transport contract. Implementations live in infrastructure.

The transport owns network I/O, topology declaration and reconnection. It reports
connectivity through TransportEvent callbacks registered with on().
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

from msgbus.app.constants import TransportEvent
from msgbus.app.domain.models import ResolvedConfig
from msgbus.app.ports.incoming_message import IncomingMessage

EventCallback = Callable[..., None]
ConsumerCallback = Callable[[IncomingMessage], Awaitable[None]]


class Transport(Protocol):
    def on(self, event: TransportEvent, callback: EventCallback) -> None: ...

    async def configure(self, config: ResolvedConfig) -> None:
        """Connect and declare topology. Returns once the connection is usable."""
        ...

    async def publish(self, exchange: str, routing_key: str, body: Any) -> None: ...

    async def handle(self, queue: str, callback: ConsumerCallback) -> None:
        """Attach a consumer to the queue; callback is awaited once per message."""
        ...

    async def shutdown(self) -> None: ...

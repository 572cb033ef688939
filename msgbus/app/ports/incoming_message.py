"""Port: abstraction for an incoming queue message. Implementations live in infrastructure."""
from __future__ import annotations

from typing import Any, Protocol


class IncomingMessage(Protocol):
    """Transport-agnostic incoming message. The dispatcher uses this; broker adapters implement it."""

    @property
    def routing_key(self) -> str: ...

    @property
    def body(self) -> Any: ...

    async def ack(self) -> None: ...

    async def nack(self, *, requeue: bool = True) -> None: ...

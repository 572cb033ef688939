"""Adapter: wrap aio_pika.IncomingMessage to implement ports.IncomingMessage."""
from __future__ import annotations

import json
from typing import Any

from aio_pika.abc import AbstractIncomingMessage

from msgbus.app.infrastructure.messaging.rabbitmq.constants import JSON_CONTENT_TYPE


class AioPikaMessageAdapter:
    """Implements msgbus.app.ports.incoming_message.IncomingMessage for aio_pika.

    JSON bodies are decoded on first access; anything else is handed over as bytes.
    """

    def __init__(self, message: AbstractIncomingMessage) -> None:
        self._message = message

    @property
    def routing_key(self) -> str:
        return self._message.routing_key or self._message.type or ""

    @property
    def body(self) -> Any:
        raw = self._message.body
        if self._message.content_type == JSON_CONTENT_TYPE:
            return json.loads(raw.decode())
        return raw

    async def ack(self) -> None:
        await self._message.ack()

    async def nack(self, *, requeue: bool = True) -> None:
        await self._message.nack(requeue=requeue)

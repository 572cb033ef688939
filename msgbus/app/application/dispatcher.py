"""
Handler registry and dispatcher.

Per queue: UNBOUND -> (first subscribe) -> BOUND [h1] -> (more subscribes) -> BOUND [h1..hn].
The transport consumer is bound only on the UNBOUND -> BOUND transition.

Dispatch of one message:
  - queue UNBOUND: nack(requeue=True), no handler runs
  - handlers run in registration order, each awaited before the next starts
  - all succeed: ack; first failure: nack(requeue=True), remaining handlers skipped
  - body cannot be decoded: nack(requeue=False), no handler runs
Messages of one queue are dispatched one at a time; different queues run concurrently.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Union

from loguru import logger

from msgbus.app.constants import DispatchOutcome
from msgbus.app.core import SERVICE_NAME
from msgbus.app.ports.incoming_message import IncomingMessage

Handler = Callable[[Any], Union[Awaitable[None], None]]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class HandlerRegistry:
    """Ordered handler lists keyed by queue name. There is no removal."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def register(self, queue: str, handler: Handler) -> bool:
        """Append handler; return True when this is the queue's first handler."""
        if not callable(handler):
            raise TypeError(f"handler must be callable, got {type(handler).__name__}")
        handlers = self._handlers.get(queue)
        if handlers is not None:
            handlers.append(handler)
            return False
        self._handlers[queue] = [handler]
        return True

    def is_bound(self, queue: str) -> bool:
        return queue in self._handlers

    def handlers_for(self, queue: str) -> tuple[Handler, ...]:
        return tuple(self._handlers.get(queue, ()))

    @property
    def queues(self) -> tuple[str, ...]:
        return tuple(self._handlers)


class Dispatcher:
    def __init__(self, registry: HandlerRegistry) -> None:
        self._registry = registry
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, queue: str) -> asyncio.Lock:
        lock = self._locks.get(queue)
        if lock is None:
            lock = self._locks[queue] = asyncio.Lock()
        return lock

    def consumer_for(self, queue: str) -> Callable[[IncomingMessage], Awaitable[None]]:
        """Transport-facing callback bound to one queue."""

        async def on_message(message: IncomingMessage) -> None:
            await self.dispatch(queue, message)

        return on_message

    async def dispatch(self, queue: str, message: IncomingMessage) -> DispatchOutcome:
        async with self._lock_for(queue):
            handlers = self._registry.handlers_for(queue)
            if not handlers:
                _log("message_rejected", queue=queue, reason="no_handlers")
                await message.nack(requeue=True)
                return DispatchOutcome.REJECT

            try:
                body = message.body
            except Exception as e:
                logger.warning("undecodable message on queue {}: {}", queue, e)
                await message.nack(requeue=False)
                return DispatchOutcome.REJECT

            for position, handler in enumerate(handlers):
                try:
                    result = handler(body)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(
                        "handler {} failed for queue {} (routing key {!r}): {}",
                        position,
                        queue,
                        message.routing_key,
                        e,
                    )
                    await message.nack(requeue=True)
                    return DispatchOutcome.REJECT

            await message.ack()
            _log("message_acked", queue=queue, routing_key=message.routing_key, handlers=len(handlers))
            return DispatchOutcome.ACK

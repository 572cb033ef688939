"""
RabbitMQ transport: connection lifecycle, topology declaration, consume and publish.

Lifecycle:
  DISCONNECTED -> CONNECTING (incremental backoff) -> CONNECTED -> CHANNEL_OPEN ->
  TOPOLOGY_DECLARED -> READY.
  Backoff exhausted (retry_limit attempts or fail_after seconds): -> UNREACHABLE.
  On broker disconnect: READY -> RECONNECTING; aio-pika's robust connection restores
  channel, topology and consumers -> READY. Not restored within fail_after: UNREACHABLE.
  On shutdown: -> CLOSING -> close channel/connection -> CLOSED.

Events (TransportEvent) are emitted to listeners registered with on():
  connected   topology declared, or connection restored
  failed      a connect attempt failed, or the connection dropped with an error
  closed      the connection closed without an error
  unreachable no further reconnection will be attempted
"""
from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from loguru import logger

from msgbus.app.constants import TransportEvent
from msgbus.app.core import SERVICE_NAME
from msgbus.app.core.backoff import incremental_backoff
from msgbus.app.domain.models import ConnectionConfig, ResolvedConfig
from msgbus.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from msgbus.app.infrastructure.messaging.rabbitmq.constants import (
    BINARY_CONTENT_TYPE,
    DEFAULT_PREFETCH_COUNT,
    JSON_CONTENT_TYPE,
    TransportState,
)
from msgbus.app.ports.transport import ConsumerCallback, EventCallback


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def _encode_body(body: Any) -> tuple[bytes, str]:
    if isinstance(body, (bytes, bytearray)):
        return bytes(body), BINARY_CONTENT_TYPE
    return json.dumps(body).encode(), JSON_CONTENT_TYPE


class RabbitMQTransport:
    """Transport implementation backed by aio-pika."""

    def __init__(self, *, prefetch_count: int = DEFAULT_PREFETCH_COUNT) -> None:
        self._prefetch_count = prefetch_count
        self._state = TransportState.DISCONNECTED
        self._config: ResolvedConfig | None = None
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._reply_queue: AbstractQueue | None = None
        self._handlers: dict[str, ConsumerCallback] = {}
        self._consumer_tags: dict[str, str] = {}
        self._listeners: dict[TransportEvent, list[EventCallback]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._closing = False
        self._watchdog_task: asyncio.Task[None] | None = None
        self._resume_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def reply_queue_name(self) -> str | None:
        return self._reply_queue.name if self._reply_queue is not None else None

    def _set_state(self, state: TransportState) -> None:
        self._state = state

    def on(self, event: TransportEvent, callback: EventCallback) -> None:
        self._listeners[TransportEvent(event)].append(callback)

    def _emit(self, event: TransportEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception as e:
                logger.exception("transport listener for {} failed: {}", event.value, e)

    async def _connect(self, conn: ConnectionConfig) -> AbstractRobustConnection:
        connection = await aio_pika.connect_robust(
            host=conn.host,
            port=conn.port,
            login=conn.user,
            password=conn.password,
            virtualhost=conn.vhost,
            ssl=conn.ssl,
            timeout=conn.timeout_seconds,
            client_properties={"connection_name": conn.name},
            heartbeat=conn.heartbeat,
            reconnect_interval=conn.wait_min_seconds,
        )
        connection.close_callbacks.add(self._on_connection_closed)
        connection.reconnect_callbacks.add(self._on_reconnected)
        return connection

    async def configure(self, config: ResolvedConfig) -> None:
        self._config = config
        self._closing = False
        conn = config.connection
        self._set_state(TransportState.CONNECTING)
        _log("rmq_connecting", host=conn.host, port=conn.port, vhost=conn.vhost, connection_name=conn.name)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + conn.fail_after
        attempt = 0
        async for delay in incremental_backoff(
            conn.wait_min_seconds,
            conn.wait_max_seconds,
            conn.wait_increment_seconds,
            conn.retry_limit,
            deadline=deadline,
        ):
            if self._closing:
                return
            attempt += 1
            _log("rmq_connect_attempt", attempt=attempt, delay=delay)
            try:
                self._connection = await self._connect(conn)
                break
            except Exception as e:
                logger.warning("rmq connect failed: {}", e)
                self._emit(TransportEvent.FAILED, e)

        if self._connection is None:
            _log("rmq_connect_exhausted", attempts=attempt, fail_after=conn.fail_after)
            self._set_state(TransportState.UNREACHABLE)
            self._emit(TransportEvent.UNREACHABLE)
            return

        self._set_state(TransportState.CONNECTED)
        _log("rmq_connected")
        async with self._lock:
            await self._declare_topology(config)
            for queue_name in list(self._handlers):
                await self._start_consumer(queue_name)
        self._set_state(TransportState.READY)
        self._emit(TransportEvent.CONNECTED)

    async def _declare_topology(self, config: ResolvedConfig) -> None:
        if self._connection is None:
            raise RuntimeError("transport_not_connected")
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        self._set_state(TransportState.CHANNEL_OPEN)

        for exchange in config.exchanges:
            self._exchanges[exchange.name] = await self._channel.declare_exchange(
                exchange.name,
                type=aio_pika.ExchangeType(exchange.type.value),
                durable=exchange.persistent,
                auto_delete=exchange.auto_delete,
            )
            _log("rmq_exchange_declared", exchange=exchange.name, type=exchange.type.value)

        for queue in config.queues:
            self._queues[queue.name] = await self._channel.declare_queue(
                queue.name,
                durable=queue.durable,
                auto_delete=queue.auto_delete,
            )
            _log("rmq_queue_declared", queue=queue.name, durable=queue.durable)

        for binding in config.bindings:
            target = await self._get_queue(binding.target)
            for key in binding.keys or ("",):
                await target.bind(binding.exchange, routing_key=key)
            _log("rmq_queue_bound", exchange=binding.exchange, queue=binding.target, keys=list(binding.keys))

        if config.connection.reply_queue:
            self._reply_queue = await self._channel.declare_queue(exclusive=True, auto_delete=True)
            _log("rmq_reply_queue_declared", queue=self._reply_queue.name)

        self._set_state(TransportState.TOPOLOGY_DECLARED)

    async def _get_queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            if self._channel is None:
                raise RuntimeError("transport_not_connected")
            queue = self._queues[name] = await self._channel.get_queue(name, ensure=True)
        return queue

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if self._channel is None:
            raise RuntimeError("transport_not_connected")
        if name == "":
            return self._channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = self._exchanges[name] = await self._channel.get_exchange(name, ensure=True)
        return exchange

    async def _start_consumer(self, queue_name: str) -> None:
        if self._channel is None or queue_name in self._consumer_tags:
            return
        declared = self._config.queue(queue_name) if self._config is not None else None
        if declared is not None and not declared.subscribe:
            _log("rmq_consume_skipped", queue=queue_name, reason="subscribe_disabled")
            return
        callback = self._handlers[queue_name]

        async def on_message(raw_message: AbstractIncomingMessage) -> None:
            await callback(AioPikaMessageAdapter(raw_message))

        queue = await self._get_queue(queue_name)
        self._consumer_tags[queue_name] = await queue.consume(on_message, no_ack=False)
        _log("rmq_consuming", queue=queue_name)

    async def handle(self, queue: str, callback: ConsumerCallback) -> None:
        async with self._lock:
            self._handlers[queue] = callback
            if self._state == TransportState.READY:
                await self._start_consumer(queue)

    async def publish(self, exchange: str, routing_key: str, body: Any) -> None:
        target = await self._get_exchange(exchange)
        declared = self._config.exchange(exchange) if self._config is not None else None
        persistent = declared.persistent if declared is not None else True
        payload, content_type = _encode_body(body)
        message = Message(
            payload,
            content_type=content_type,
            type=routing_key,
            delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
        )
        await target.publish(message, routing_key=routing_key)

    def _on_connection_closed(self, *args: Any) -> None:
        if self._closing:
            return
        exc = args[1] if len(args) > 1 else None
        self._set_state(TransportState.RECONNECTING)
        if exc is not None:
            _log("broker_disconnect_detected", error=str(exc))
            self._emit(TransportEvent.FAILED, exc)
        else:
            _log("broker_connection_closed")
            self._emit(TransportEvent.CLOSED)
        self._start_watchdog()

    def _on_reconnected(self, *args: Any) -> None:
        if self._closing:
            return
        self._cancel_watchdog()
        self._set_state(TransportState.READY)
        _log("rmq_reconnected")
        self._emit(TransportEvent.CONNECTED)
        if any(name not in self._consumer_tags for name in self._handlers):
            self._resume_task = asyncio.get_running_loop().create_task(self._resume_consumers())

    async def _resume_consumers(self) -> None:
        """Start consumers for queues handled while the connection was down."""
        async with self._lock:
            if self._closing or self._state != TransportState.READY:
                return
            for queue_name in list(self._handlers):
                if queue_name not in self._consumer_tags:
                    await self._start_consumer(queue_name)

    def _start_watchdog(self) -> None:
        if self._config is None:
            return
        if self._watchdog_task is not None and not self._watchdog_task.done():
            return
        self._watchdog_task = asyncio.get_running_loop().create_task(
            self._unreachable_after(self._config.connection.fail_after)
        )

    def _cancel_watchdog(self) -> None:
        if self._watchdog_task is not None and not self._watchdog_task.done():
            self._watchdog_task.cancel()
        self._watchdog_task = None

    async def _unreachable_after(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if self._closing or self._state == TransportState.READY:
            return
        _log("rmq_unreachable", fail_after=seconds)
        self._closing = True
        self._set_state(TransportState.UNREACHABLE)
        self._emit(TransportEvent.UNREACHABLE)
        async with self._lock:
            await self._close_channel_and_connection()

    async def _close_channel_and_connection(self) -> None:
        self._exchanges.clear()
        self._queues.clear()
        self._consumer_tags.clear()
        self._reply_queue = None
        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning("channel close failed (continuing to close connection): {}", e)
            self._channel = None
        if self._connection:
            try:
                await self._connection.close()
            except Exception as e:
                logger.warning("connection close failed: {}", e)
            self._connection = None

    async def shutdown(self) -> None:
        self._closing = True
        self._set_state(TransportState.CLOSING)
        _log("transport_shutdown")
        if self._resume_task is not None and not self._resume_task.done():
            self._resume_task.cancel()
        self._resume_task = None
        watchdog = self._watchdog_task
        self._cancel_watchdog()
        if watchdog is not None and watchdog is not asyncio.current_task():
            try:
                await watchdog
            except asyncio.CancelledError:
                pass
        async with self._lock:
            await self._close_channel_and_connection()
        self._set_state(TransportState.CLOSED)
        self._emit(TransportEvent.CLOSED)

"""
Message bus session: owns connectivity state, default names and the handler registry
for one setup() ... terminate() cycle.

setup() does not wait for the broker. It resolves configuration, starts the
transport's configure step in the background and returns; publish() waits on the
readiness gate instead. Transport events drive the gate:

  connected           -> CONNECTED
  failed / closed     -> DISCONNECTED (the transport keeps reconnecting)
  unreachable         -> UNREACHABLE, error_handler(UnreachableError)

A failing configure step is also reported to error_handler, never raised.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Mapping

from loguru import logger

from msgbus.app.application.config_resolver import ConfigResolver
from msgbus.app.application.dispatcher import Dispatcher, Handler, HandlerRegistry
from msgbus.app.application.publisher import Publisher
from msgbus.app.application.readiness_gate import ReadinessGate
from msgbus.app.config.settings import Settings
from msgbus.app.constants import ConnectivityState, TransportEvent
from msgbus.app.core import SERVICE_NAME
from msgbus.app.domain.connection_string import parse_connection_string
from msgbus.app.domain.errors import BusNotInitializedError, NoDefaultQueueError, UnreachableError
from msgbus.app.domain.models import Defaults, ResolvedConfig
from msgbus.app.infrastructure.messaging.factory import create_transport
from msgbus.app.ports.transport import Transport

ErrorHandler = Callable[[BaseException], Any]
TransportFactory = Callable[[], Transport]


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


def log_error(error: BaseException) -> None:
    """Default error handler."""
    logger.error("message bus error: {}", error)


class MessageBus:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._transport_factory = transport_factory or (lambda: create_transport(self._settings))
        self._resolver = ConfigResolver(self._settings)
        self._gate = ReadinessGate(poll_interval=self._settings.readiness_poll_interval_seconds)
        self._defaults = Defaults()
        self._registry = HandlerRegistry()
        self._dispatcher = Dispatcher(self._registry)
        self._transport: Transport | None = None
        self._publisher: Publisher | None = None
        self._config: ResolvedConfig | None = None
        self._error_handler: ErrorHandler = log_error
        self._configure_task: asyncio.Task[None] | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def config(self) -> ResolvedConfig | None:
        return self._config

    @property
    def defaults(self) -> Defaults:
        return self._defaults

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def dispatcher(self) -> Dispatcher:
        return self._dispatcher

    @property
    def state(self) -> ConnectivityState:
        return self._gate.state

    @property
    def transport(self) -> Transport:
        if self._transport is None:
            raise BusNotInitializedError("message bus is not set up; call setup() first")
        return self._transport

    def is_connected(self) -> bool:
        return self._gate.is_connected()

    async def setup(
        self,
        connection_string: str,
        config: Mapping[str, Any] | None = None,
        error_handler: ErrorHandler | None = None,
    ) -> None:
        # Invalid input must leave a running session untouched.
        target = parse_connection_string(connection_string, default_port=self._settings.default_port)
        defaults = Defaults()
        resolved = self._resolver.resolve(config, target, defaults)

        if self._transport is not None:
            await self.terminate()

        self._gate.reset()
        self._registry = HandlerRegistry()
        self._dispatcher = Dispatcher(self._registry)
        self._defaults = defaults
        self._config = resolved
        self._error_handler = error_handler or log_error
        transport = self._transport_factory()
        self._transport = transport
        self._wire(transport)
        self._publisher = Publisher(
            transport,
            self._gate,
            self._defaults,
            timeout=self._settings.connection_timeout_seconds,
        )
        _log("bus_setup", broker=target.safe_url(), connection_name=resolved.connection.name)
        self._configure_task = asyncio.create_task(self._configure(transport, resolved))

    def _wire(self, transport: Transport) -> None:
        transport.on(
            TransportEvent.CONNECTED,
            lambda *_: self._on_connectivity(transport, ConnectivityState.CONNECTED),
        )
        for event in (TransportEvent.FAILED, TransportEvent.CLOSED):
            transport.on(event, lambda *_: self._on_connectivity(transport, ConnectivityState.DISCONNECTED))
        transport.on(TransportEvent.UNREACHABLE, lambda *_: self._on_unreachable(transport))

    def _on_connectivity(self, transport: Transport, state: ConnectivityState) -> None:
        if transport is not self._transport:
            return
        self._gate.set_state(state)

    def _on_unreachable(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self._gate.set_state(ConnectivityState.UNREACHABLE)
        self._report(UnreachableError())

    def _report(self, error: BaseException) -> None:
        _log("bus_error_reported", error=str(error), error_type=type(error).__name__)
        try:
            self._error_handler(error)
        except Exception as e:
            logger.exception("error handler raised: {}", e)

    async def _configure(self, transport: Transport, config: ResolvedConfig) -> None:
        try:
            await transport.configure(config)
        except Exception as e:
            logger.warning("transport configure failed: {}", e)
            if transport is self._transport:
                self._report(e)
            return
        if transport is self._transport:
            self._gate.set_state(ConnectivityState.CONNECTED)

    def _require_publisher(self) -> Publisher:
        if self._publisher is None:
            raise BusNotInitializedError("message bus is not set up; call setup() first")
        return self._publisher

    async def publish(self, routing_key: str, data: Any, *, exchange: str | None = None) -> None:
        """Publish `data` with `routing_key`, to the default exchange unless `exchange` is given."""
        publisher = self._require_publisher()
        await publisher.publish(routing_key, data, exchange=exchange)

    async def subscribe(self, handler: Handler, *, queue: str | None = None) -> None:
        """Register `handler` for `queue` (default queue when omitted). Handlers receive the message body."""
        transport = self.transport
        queue_name = queue if queue is not None else self._defaults.default_queue_name
        if not queue_name:
            raise NoDefaultQueueError()

        if self._registry.register(queue_name, handler):
            await transport.handle(queue_name, self._dispatcher.consumer_for(queue_name))
            _log("queue_bound", queue=queue_name)
        _log("handler_registered", queue=queue_name, handlers=len(self._registry.handlers_for(queue_name)))

    async def terminate(self) -> None:
        transport = self._transport
        self._transport = None
        self._publisher = None
        self._config = None
        self._defaults = Defaults()
        task, self._configure_task = self._configure_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            if transport is not None:
                await transport.shutdown()
        finally:
            self._gate.reset()
            _log("bus_terminated")

    async def __aenter__(self) -> "MessageBus":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.terminate()

"""Publisher: resolves the exchange, waits for readiness, forwards to the transport."""
from __future__ import annotations

import time
from typing import Any

from loguru import logger

from msgbus.app.application.readiness_gate import ReadinessGate
from msgbus.app.core import SERVICE_NAME
from msgbus.app.domain.errors import NoDefaultExchangeError
from msgbus.app.domain.models import Defaults
from msgbus.app.ports.transport import Transport


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class Publisher:
    """
    No buffering while the transport is not ready: publish() blocks up to
    `timeout` seconds and then raises ConnectionTimeoutError. Retrying is the
    caller's business.
    """

    def __init__(
        self,
        transport: Transport,
        gate: ReadinessGate,
        defaults: Defaults,
        *,
        timeout: float,
    ) -> None:
        self._transport = transport
        self._gate = gate
        self._defaults = defaults
        self._timeout = timeout

    def resolve_exchange(self, exchange: str | None) -> str:
        if exchange is not None:
            return exchange
        if not self._defaults.default_exchange_name:
            raise NoDefaultExchangeError()
        return self._defaults.default_exchange_name

    async def publish(self, routing_key: str, data: Any, *, exchange: str | None = None) -> None:
        exchange_name = self.resolve_exchange(exchange)
        await self._gate.wait(self._timeout)
        start = time.perf_counter()
        await self._transport.publish(exchange_name, routing_key, data)
        latency_ms = (time.perf_counter() - start) * 1000
        _log("publish_success", exchange=exchange_name, routing_key=routing_key, latency_ms=round(latency_ms, 2))

"""Readiness gate: reflects transport connectivity and lets callers wait for it."""
from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from msgbus.app.constants import ConnectivityState
from msgbus.app.core import SERVICE_NAME
from msgbus.app.domain.errors import ConnectionTimeoutError

POLL_INTERVAL_SECONDS = 0.05


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ReadinessGate:
    """
    DISCONNECTED <-> CONNECTED, either -> UNREACHABLE.
    UNREACHABLE is sticky: only reset() leaves it. Reconnection policy belongs to
    the transport; the gate only mirrors what the transport reports.
    """

    def __init__(self, *, poll_interval: float = POLL_INTERVAL_SECONDS) -> None:
        self._state = ConnectivityState.DISCONNECTED
        self._poll_interval = poll_interval

    @property
    def state(self) -> ConnectivityState:
        return self._state

    def is_connected(self) -> bool:
        return self._state == ConnectivityState.CONNECTED

    def set_state(self, state: ConnectivityState) -> None:
        if self._state == ConnectivityState.UNREACHABLE and state != ConnectivityState.UNREACHABLE:
            _log("connectivity_transition_ignored", current=self._state.value, requested=state.value)
            return
        if state != self._state:
            _log("connectivity_changed", previous=self._state.value, current=state.value)
        self._state = state

    def reset(self) -> None:
        self._state = ConnectivityState.DISCONNECTED

    async def wait(self, timeout: float) -> None:
        """Return once connected; raise ConnectionTimeoutError after `timeout` seconds."""
        if self.is_connected():
            return
        loop = asyncio.get_running_loop()
        started = loop.time()
        while not self.is_connected():
            if loop.time() - started >= timeout:
                _log("readiness_wait_timeout", timeout_seconds=timeout)
                raise ConnectionTimeoutError(timeout)
            await asyncio.sleep(self._poll_interval)

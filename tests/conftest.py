from __future__ import annotations

import pytest

from msgbus.app.application.message_bus import MessageBus
from msgbus.app.config.settings import Settings
from msgbus.app.infrastructure.messaging.inmemory.in_memory_transport import InMemoryTransport


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        MSGBUS_TRANSPORT_BACKEND="inmemory",
        MSGBUS_CONNECTION_TIMEOUT_SECONDS=0.2,
        MSGBUS_READINESS_POLL_INTERVAL_SECONDS=0.01,
    )


@pytest.fixture()
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture()
def idle_transport() -> InMemoryTransport:
    """Transport whose configure step never completes; tests emit events by hand."""
    return InMemoryTransport(connect_on_configure=False)


@pytest.fixture()
def bus(settings: Settings, transport: InMemoryTransport) -> MessageBus:
    return MessageBus(settings, transport_factory=lambda: transport)


@pytest.fixture()
def idle_bus(settings: Settings, idle_transport: InMemoryTransport) -> MessageBus:
    return MessageBus(settings, transport_factory=lambda: idle_transport)

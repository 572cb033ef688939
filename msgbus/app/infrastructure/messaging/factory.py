"""Transport factory: selects implementation from config. Only place that imports concrete transports."""
from __future__ import annotations

from msgbus.app.config.settings import Settings
from msgbus.app.infrastructure.messaging.inmemory.in_memory_transport import InMemoryTransport
from msgbus.app.infrastructure.messaging.rabbitmq.rabbitmq_transport import RabbitMQTransport
from msgbus.app.ports.transport import Transport


def create_transport(settings: Settings) -> Transport:
    backend = settings.transport_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQTransport(prefetch_count=settings.prefetch_count)

    if backend == "inmemory":
        return InMemoryTransport()

    raise ValueError(f"Unsupported transport backend: {backend}")

"""
Composition root: single place where the message bus is wired.

create_message_bus() builds a session from settings; the transport backend
(rabbitmq or inmemory) is selected by the factory unless a transport_factory is
injected. get_default_bus() holds the process-wide session behind the package-level
setup/publish/subscribe/is_connected/terminate functions.
"""
from __future__ import annotations

from msgbus.app.application.message_bus import MessageBus, TransportFactory
from msgbus.app.config.settings import Settings

_default_bus: MessageBus | None = None


def create_message_bus(
    settings: Settings | None = None,
    *,
    transport_factory: TransportFactory | None = None,
) -> MessageBus:
    return MessageBus(settings or Settings(), transport_factory=transport_factory)


def get_default_bus() -> MessageBus:
    global _default_bus
    if _default_bus is None:
        _default_bus = create_message_bus()
    return _default_bus


def set_default_bus(bus: MessageBus | None) -> None:
    """Replace the process-wide session (None drops it; the next call builds a fresh one)."""
    global _default_bus
    _default_bus = bus

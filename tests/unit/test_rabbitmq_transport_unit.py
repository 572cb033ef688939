import asyncio
import json

import pytest
from aio_pika import DeliveryMode

from msgbus.app.constants import ExchangeType, TransportEvent
from msgbus.app.domain.models import BindingConfig, ConnectionConfig, ExchangeConfig, QueueConfig, ResolvedConfig
from msgbus.app.infrastructure.messaging.rabbitmq.aio_pika_message_adapter import AioPikaMessageAdapter
from msgbus.app.infrastructure.messaging.rabbitmq.constants import TransportState
from msgbus.app.infrastructure.messaging.rabbitmq.rabbitmq_transport import RabbitMQTransport
from tests.test_data import wait_until


class _Callbacks(list):
    def add(self, cb):
        self.append(cb)


class _FakeExchange:
    def __init__(self, name: str) -> None:
        self.name = name
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((message, routing_key))


class _FakeQueue:
    def __init__(self, name: str) -> None:
        self.name = name
        self.bindings = []
        self.callback = None

    async def bind(self, exchange, routing_key=None):
        self.bindings.append((exchange, routing_key))

    async def consume(self, callback, no_ack=False):
        assert no_ack is False
        self.callback = callback
        return f"ctag-{self.name}"


class _FakeChannel:
    def __init__(self) -> None:
        self.exchanges = {}
        self.exchange_kwargs = {}
        self.queues = {}
        self.queue_kwargs = {}
        self.default_exchange = _FakeExchange("")
        self.prefetch_count = None
        self.closed = False

    async def set_qos(self, prefetch_count=None):
        self.prefetch_count = prefetch_count

    async def declare_exchange(self, name, **kwargs):
        self.exchange_kwargs[name] = kwargs
        self.exchanges[name] = _FakeExchange(name)
        return self.exchanges[name]

    async def declare_queue(self, name=None, **kwargs):
        name = name or "amq.gen-reply"
        self.queue_kwargs[name] = kwargs
        self.queues[name] = _FakeQueue(name)
        return self.queues[name]

    async def get_queue(self, name, ensure=True):
        return self.queues.setdefault(name, _FakeQueue(name))

    async def get_exchange(self, name, ensure=True):
        return self.exchanges.setdefault(name, _FakeExchange(name))

    async def close(self):
        self.closed = True


class _FakeConnection:
    def __init__(self, channel: _FakeChannel) -> None:
        self._channel = channel
        self.close_callbacks = _Callbacks()
        self.reconnect_callbacks = _Callbacks()
        self.closed = False

    async def channel(self):
        return self._channel

    async def close(self):
        self.closed = True


class _FakeIncoming:
    def __init__(self, body: bytes, content_type: str = "application/json", routing_key: str = "route.a") -> None:
        self.body = body
        self.content_type = content_type
        self.routing_key = routing_key
        self.type = routing_key
        self.acked = False
        self.nack_requeue = None

    async def ack(self):
        self.acked = True

    async def nack(self, requeue=True):
        self.nack_requeue = requeue


def _config(**connection) -> ResolvedConfig:
    options = {"wait_min": 0, "wait_max": 0, "wait_increment": 0, "retry_limit": 3, "fail_after": 60}
    options.update(connection)
    return ResolvedConfig(
        connection=ConnectionConfig(host="rabbit", port=5673, user="svc", password="pw", vhost="prod", **options),
        exchanges=(ExchangeConfig(name="ex1", type=ExchangeType.TOPIC), ExchangeConfig(name="fast", persistent=False)),
        queues=(QueueConfig(name="orders"), QueueConfig(name="audit", subscribe=False, auto_delete=True)),
        bindings=(BindingConfig(exchange="ex1", target="orders", keys=("route.a", "route.b")),),
    )


def _patch_connect(monkeypatch, conn=None, error=None):
    calls = []

    async def _connect_robust(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return conn

    import msgbus.app.infrastructure.messaging.rabbitmq.rabbitmq_transport as mod

    monkeypatch.setattr(mod.aio_pika, "connect_robust", _connect_robust)
    return calls


def _record_events(transport: RabbitMQTransport):
    events = []
    for event in TransportEvent:
        transport.on(event, lambda *args, event=event: events.append(event))
    return events


@pytest.mark.asyncio
async def test_configure_declares_topology_and_emits_connected(monkeypatch):
    channel = _FakeChannel()
    calls = _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    events = _record_events(transport)

    await transport.configure(_config())

    assert transport.state == TransportState.READY
    assert events == [TransportEvent.CONNECTED]
    assert calls[0]["host"] == "rabbit"
    assert calls[0]["port"] == 5673
    assert calls[0]["login"] == "svc"
    assert calls[0]["virtualhost"] == "prod"
    assert calls[0]["heartbeat"] == 30
    assert calls[0]["client_properties"] == {"connection_name": "default"}
    assert channel.prefetch_count == 10
    assert channel.exchange_kwargs["ex1"]["durable"] is True
    assert channel.exchange_kwargs["ex1"]["type"].value == "topic"
    assert channel.exchange_kwargs["fast"]["durable"] is False
    assert channel.queue_kwargs["orders"] == {"durable": True, "auto_delete": False}
    assert channel.queue_kwargs["audit"]["auto_delete"] is True
    assert channel.queues["orders"].bindings == [("ex1", "route.a"), ("ex1", "route.b")]


@pytest.mark.asyncio
async def test_reply_queue_declared_when_requested(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()

    await transport.configure(_config(reply_queue=True))

    assert transport.reply_queue_name == "amq.gen-reply"
    assert channel.queue_kwargs["amq.gen-reply"] == {"exclusive": True, "auto_delete": True}


@pytest.mark.asyncio
async def test_handlers_registered_before_configure_start_consuming(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    received = []

    async def consumer(message):
        received.append(message.body)
        await message.ack()

    await transport.handle("orders", consumer)
    assert channel.queues == {}

    await transport.configure(_config())
    raw = _FakeIncoming(json.dumps({"id": 1}).encode())
    await channel.queues["orders"].callback(raw)

    assert received == [{"id": 1}]
    assert raw.acked is True


@pytest.mark.asyncio
async def test_handle_after_configure_consumes_immediately(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    await transport.configure(_config())

    async def consumer(message):
        return None

    await transport.handle("orders", consumer)
    assert channel.queues["orders"].callback is not None


@pytest.mark.asyncio
async def test_queue_with_subscribe_disabled_is_not_consumed(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    await transport.configure(_config())

    async def consumer(message):
        return None

    await transport.handle("audit", consumer)
    assert channel.queues["audit"].callback is None


@pytest.mark.asyncio
async def test_publish_sends_json_with_routing_key_as_type(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    await transport.configure(_config())

    await transport.publish("ex1", "route.a", {"id": 1})
    await transport.publish("fast", "route.b", b"\x00raw")

    message, routing_key = channel.exchanges["ex1"].published[0]
    assert routing_key == "route.a"
    assert json.loads(message.body) == {"id": 1}
    assert message.content_type == "application/json"
    assert message.type == "route.a"
    assert message.delivery_mode == DeliveryMode.PERSISTENT

    raw_message, _ = channel.exchanges["fast"].published[0]
    assert raw_message.body == b"\x00raw"
    assert raw_message.content_type == "application/octet-stream"
    assert raw_message.delivery_mode == DeliveryMode.NOT_PERSISTENT


@pytest.mark.asyncio
async def test_publish_to_empty_exchange_uses_default_exchange(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport()
    await transport.configure(_config())

    await transport.publish("", "orders", {"id": 2})
    assert channel.default_exchange.published[0][1] == "orders"


@pytest.mark.asyncio
async def test_publish_before_configure_raises():
    transport = RabbitMQTransport()
    with pytest.raises(RuntimeError, match="transport_not_connected"):
        await transport.publish("ex1", "route.a", {"id": 1})


@pytest.mark.asyncio
async def test_retry_exhaustion_emits_failed_then_unreachable(monkeypatch):
    calls = _patch_connect(monkeypatch, error=ConnectionError("refused"))
    transport = RabbitMQTransport()
    events = _record_events(transport)

    await transport.configure(_config(retry_limit=3))

    assert len(calls) == 3
    assert events == [TransportEvent.FAILED] * 3 + [TransportEvent.UNREACHABLE]
    assert transport.state == TransportState.UNREACHABLE


@pytest.mark.asyncio
async def test_fail_after_bounds_connection_attempts(monkeypatch):
    calls = _patch_connect(monkeypatch, error=ConnectionError("refused"))
    transport = RabbitMQTransport()
    events = _record_events(transport)

    await transport.configure(_config(retry_limit=100, wait_min=50, wait_max=50, fail_after=0))

    assert len(calls) == 1
    assert events[-1] == TransportEvent.UNREACHABLE


@pytest.mark.asyncio
async def test_connection_drop_and_restore_emit_events(monkeypatch):
    conn = _FakeConnection(_FakeChannel())
    _patch_connect(monkeypatch, conn)
    transport = RabbitMQTransport()
    await transport.configure(_config())
    events = _record_events(transport)

    conn.close_callbacks[0](conn, ConnectionError("lost"))
    assert transport.state == TransportState.RECONNECTING
    conn.reconnect_callbacks[0](conn)
    conn.close_callbacks[0](conn, None)
    conn.reconnect_callbacks[0](conn)

    assert events == [
        TransportEvent.FAILED,
        TransportEvent.CONNECTED,
        TransportEvent.CLOSED,
        TransportEvent.CONNECTED,
    ]
    assert transport.state == TransportState.READY
    await transport.shutdown()


@pytest.mark.asyncio
async def test_prefetch_count_is_applied_to_channel(monkeypatch):
    channel = _FakeChannel()
    _patch_connect(monkeypatch, _FakeConnection(channel))
    transport = RabbitMQTransport(prefetch_count=1)

    await transport.configure(_config())

    assert channel.prefetch_count == 1


@pytest.mark.asyncio
async def test_queue_handled_during_reconnect_is_consumed_once_restored(monkeypatch):
    channel = _FakeChannel()
    conn = _FakeConnection(channel)
    _patch_connect(monkeypatch, conn)
    transport = RabbitMQTransport()
    await transport.configure(_config())

    async def consumer(message):
        return None

    conn.close_callbacks[0](conn, ConnectionError("lost"))
    await transport.handle("orders", consumer)
    assert channel.queues["orders"].callback is None

    conn.reconnect_callbacks[0](conn)
    await wait_until(lambda: channel.queues["orders"].callback is not None)

    assert transport.state == TransportState.READY
    await transport.shutdown()


@pytest.mark.asyncio
async def test_unrestored_connection_becomes_unreachable(monkeypatch):
    channel = _FakeChannel()
    conn = _FakeConnection(channel)
    _patch_connect(monkeypatch, conn)
    transport = RabbitMQTransport()
    await transport.configure(_config(fail_after=0.05))
    events = _record_events(transport)

    conn.close_callbacks[0](conn, ConnectionError("lost"))
    await asyncio.sleep(0.15)

    assert events == [TransportEvent.FAILED, TransportEvent.UNREACHABLE]
    assert transport.state == TransportState.UNREACHABLE
    assert conn.closed is True
    assert channel.closed is True


@pytest.mark.asyncio
async def test_shutdown_closes_and_emits_closed(monkeypatch):
    channel = _FakeChannel()
    conn = _FakeConnection(channel)
    _patch_connect(monkeypatch, conn)
    transport = RabbitMQTransport()
    await transport.configure(_config())
    events = _record_events(transport)

    await transport.shutdown()

    assert transport.state == TransportState.CLOSED
    assert events == [TransportEvent.CLOSED]
    assert conn.closed is True
    assert channel.closed is True

    conn.close_callbacks[0](conn, None)
    assert events == [TransportEvent.CLOSED]


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_emit(monkeypatch):
    _patch_connect(monkeypatch, _FakeConnection(_FakeChannel()))
    transport = RabbitMQTransport()
    seen = []

    def broken(*args):
        raise RuntimeError("listener bug")

    transport.on(TransportEvent.CONNECTED, broken)
    transport.on(TransportEvent.CONNECTED, lambda *args: seen.append("ok"))
    await transport.configure(_config())

    assert seen == ["ok"]


@pytest.mark.asyncio
async def test_adapter_decodes_json_and_settles():
    raw = _FakeIncoming(b'{"id": 3}')
    message = AioPikaMessageAdapter(raw)

    assert message.body == {"id": 3}
    assert message.routing_key == "route.a"
    await message.nack(requeue=False)
    assert raw.nack_requeue is False


def test_adapter_passes_binary_bodies_through():
    message = AioPikaMessageAdapter(_FakeIncoming(b"\x01\x02", content_type="application/octet-stream"))
    assert message.body == b"\x01\x02"


def test_adapter_raises_on_malformed_json():
    message = AioPikaMessageAdapter(_FakeIncoming(b"{not json"))
    with pytest.raises(ValueError):
        message.body

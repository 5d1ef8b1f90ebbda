import asyncio
import json

import pytest

from order_settlement.core.exceptions import NotificationError
from order_settlement.models.notification import NotificationEvent, EventType
from order_settlement.services.notification_bus import (
    NotificationBus, QueueTransport, Transport, TransportClosed
)

from .conftest import drain, event_types


class BrokenTransport(Transport):
    def __init__(self):
        self.close_calls = 0

    async def push(self, connection_id, data):
        raise ConnectionResetError("peer went away")

    async def close(self):
        self.close_calls += 1


def _event(**payload):
    return NotificationEvent(EventType.STATUS_CHANGED, payload)


async def test_connect_assigns_user_scoped_id(bus):
    first = await bus.connect("user-1", QueueTransport())
    second = await bus.connect("user-1", QueueTransport())

    assert first.connection_id.startswith("user-1:")
    assert first.connection_id != second.connection_id
    assert bus.connection_count("user-1") == 2
    assert bus.connection_count() == 2


async def test_connect_requires_user(bus):
    with pytest.raises(NotificationError):
        await bus.connect("", QueueTransport())


async def test_publish_reaches_every_connection_of_user(bus):
    phone, laptop, other = QueueTransport(), QueueTransport(), QueueTransport()
    await bus.connect("user-1", phone)
    await bus.connect("user-1", laptop)
    await bus.connect("user-2", other)

    delivered = await bus.publish("user-1", _event(order_id="order-1"))

    assert delivered == 2
    for transport in (phone, laptop):
        frames = drain(transport)
        assert len(frames) == 1
        assert frames[0]["type"] == "status_changed"
        assert frames[0]["payload"] == {"order_id": "order-1"}
    assert drain(other) == []


async def test_publish_to_offline_user_is_dropped(bus):
    assert await bus.publish("nobody", _event()) == 0


async def test_publish_many_delivers_once_per_connection(bus):
    transport = QueueTransport()
    await bus.connect("user-1", transport)

    delivered = await bus.publish_many(["user-1", "user-1", "user-2"], _event())

    assert delivered == 1
    assert len(drain(transport)) == 1


async def test_failed_push_drops_connection(bus):
    broken = BrokenTransport()
    healthy = QueueTransport()
    closed = []
    await bus.connect("user-1", broken, on_close=lambda connection: closed.append(connection.connection_id))
    await bus.connect("user-1", healthy)

    delivered = await bus.publish("user-1", _event())

    assert delivered == 1
    assert len(closed) == 1
    assert broken.close_calls == 1
    assert bus.connection_count("user-1") == 1
    assert bus.get_statistics()["failed"] == 1

    # The dead connection receives nothing further
    await bus.publish("user-1", _event())
    assert broken.close_calls == 1
    assert event_types(healthy) == ["status_changed", "status_changed"]


async def test_full_queue_counts_as_dead_consumer(bus):
    transport = QueueTransport(maxsize=1)
    closed = asyncio.Event()

    async def on_close(connection):
        closed.set()

    await bus.connect("user-1", transport, on_close=on_close)

    assert await bus.publish("user-1", _event(n=1)) == 1
    assert await bus.publish("user-1", _event(n=2)) == 0

    assert closed.is_set()
    assert transport.closed
    assert bus.connection_count("user-1") == 0


async def test_disconnect(bus):
    transport = QueueTransport()
    connection = await bus.connect("user-1", transport)

    assert await bus.disconnect(connection.connection_id) is True
    assert await bus.disconnect(connection.connection_id) is False
    assert transport.closed
    assert bus.connection_count() == 0


async def test_keepalive_sweep():
    bus = NotificationBus(keepalive_interval=0.01)
    transport = QueueTransport()
    await bus.connect("user-1", transport)

    await bus.start()
    await asyncio.sleep(0.05)
    await bus.stop()

    frames = drain(transport)
    assert frames
    assert {frame["type"] for frame in frames} == {"keepalive"}


async def test_stop_closes_all_connections():
    bus = NotificationBus(keepalive_interval=60)
    transports = [QueueTransport() for _ in range(3)]
    for index, transport in enumerate(transports):
        await bus.connect(f"user-{index}", transport)
    await bus.start()

    await bus.stop()

    assert bus.connection_count() == 0
    assert all(transport.closed for transport in transports)
    assert bus.get_statistics()["keepalive_running"] is False


async def test_queue_transport_stream_ends_after_close():
    transport = QueueTransport()
    await transport.push("c1", b"one")
    await transport.push("c1", b"two")
    await transport.close()

    received = [frame async for frame in transport.stream()]

    assert received == [b"one", b"two"]
    with pytest.raises(TransportClosed):
        await transport.push("c1", b"three")


def test_event_serializes_to_json():
    event = NotificationEvent(EventType.PAYOUT_REJECTED, {"request_id": "p1", "reason": "Ungültig"})

    decoded = json.loads(event.serialize().decode("utf-8"))

    assert decoded["type"] == "payout_rejected"
    assert decoded["event_id"] == event.event_id
    assert decoded["payload"]["reason"] == "Ungültig"

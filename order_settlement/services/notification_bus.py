"""
NotificationBus service for the order settlement core

Fans state-change events out to every live connection of a user. Delivery is
best effort and at most once per connection: there is no buffering for
offline users and no replay. A connection whose push fails is unregistered
and its close callback fired.
"""

import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from ..models.common import utcnow
from ..models.notification import NotificationEvent, EventType
from ..utils.logger import get_logger, set_log_context
from ..core.exceptions import NotificationError

CloseCallback = Callable[["Connection"], Union[None, Awaitable[None]]]


class TransportClosed(Exception):
    """Raised by a transport that can no longer deliver."""


class Transport(ABC):
    """Push channel to one connected client (SSE stream, websocket, queue)."""

    @abstractmethod
    async def push(self, connection_id: str, data: bytes) -> None:
        """Deliver one frame. Raise to signal the connection is dead."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Must be safe to call twice."""


class QueueTransport(Transport):
    """
    Bounded ``asyncio.Queue`` transport the API layer streams from.

    A full queue means the consumer stopped reading; the push fails and the
    bus drops the connection.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def push(self, connection_id: str, data: bytes) -> None:
        if self._closed:
            raise TransportClosed(f"connection {connection_id} is closed")
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            raise TransportClosed(f"connection {connection_id} queue is full")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake a reader blocked on an empty queue
        if not self._queue.full():
            self._queue.put_nowait(None)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> Optional[bytes]:
        """Next frame, or None when nothing is waiting."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def stream(self):
        """Yield frames until the transport is closed and drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            data = await self._queue.get()
            if data is None:
                return
            yield data


@dataclass
class Connection:
    """A live client channel registered with the bus. Never persisted."""

    connection_id: str
    user_id: str
    transport: Transport
    on_close: Optional[CloseCallback] = None
    connected_at: datetime = field(default_factory=utcnow)
    last_delivery_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "connected_at": self.connected_at.isoformat(),
            "last_delivery_at": self.last_delivery_at.isoformat() if self.last_delivery_at else None
        }


class NotificationBus:
    """
    Registry of live connections plus fan-out delivery.

    One instance is created per application and injected into the services
    that publish. ``start()`` launches the keepalive sweep, ``stop()`` cancels
    it and closes every connection.
    """

    def __init__(self, keepalive_interval: float = 15.0, queue_size: int = 100):
        """
        Initialize NotificationBus.

        Args:
            keepalive_interval: Seconds between keepalive frames
            queue_size: Frame capacity of transports made by ``connect_queue``
        """
        self.keepalive_interval = keepalive_interval
        self.queue_size = queue_size
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[str, Set[str]] = {}

        self._keepalive_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

        self.delivered_count = 0
        self.failed_count = 0

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="notification_bus")

    async def start(self):
        """Start the keepalive sweep."""
        if self._keepalive_task is not None:
            return
        self.logger.info("Starting NotificationBus", extra={"keepalive_interval": self.keepalive_interval})
        self._shutdown_event.clear()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    async def stop(self):
        """Stop the keepalive sweep and close all connections."""
        self.logger.info("Stopping NotificationBus", extra={"connections": len(self._connections)})
        self._shutdown_event.set()

        if self._keepalive_task:
            self._keepalive_task.cancel()
            try:
                await self._keepalive_task
            except asyncio.CancelledError:
                pass
            self._keepalive_task = None

        for connection in list(self._connections.values()):
            await self._drop(connection, "shutdown")

    async def connect(self, user_id: str, transport: Transport,
                      on_close: Optional[CloseCallback] = None) -> Connection:
        """
        Register a live connection for a user.

        Returns:
            The registered Connection; its id is ``"{user_id}:{nonce}"``
        """
        if not user_id:
            raise NotificationError("user id is required to connect")

        connection = Connection(
            connection_id=f"{user_id}:{secrets.token_hex(8)}",
            user_id=user_id,
            transport=transport,
            on_close=on_close
        )
        self._connections[connection.connection_id] = connection
        self._by_user.setdefault(user_id, set()).add(connection.connection_id)

        self.logger.info("Connection registered", extra={
            "connection_id": connection.connection_id,
            "user_id": user_id,
            "user_connections": len(self._by_user[user_id])
        })
        return connection

    async def connect_queue(self, user_id: str, on_close: Optional[CloseCallback] = None) -> QueueTransport:
        """Register a connection backed by a new bounded QueueTransport and return the transport."""
        transport = QueueTransport(maxsize=self.queue_size)
        await self.connect(user_id, transport, on_close=on_close)
        return transport

    async def disconnect(self, connection_id: str) -> bool:
        """Unregister a connection. Returns False if it was not registered."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        await self._drop(connection, "disconnected")
        return True

    async def publish(self, user_id: str, event: NotificationEvent) -> int:
        """
        Push an event once to each live connection of a user.

        Returns:
            Number of connections the event was delivered to
        """
        return await self._deliver(self._connections_for(user_id), self._encode(event), event)

    async def publish_many(self, user_ids: Iterable[str], event: NotificationEvent) -> int:
        """Publish one event to several users. Each connection receives it once."""
        seen: Set[str] = set()
        targets: List[Connection] = []
        for user_id in user_ids:
            if user_id in seen:
                continue
            seen.add(user_id)
            targets.extend(self._connections_for(user_id))
        return await self._deliver(targets, self._encode(event), event)

    async def send_keepalive(self) -> int:
        """Push a keepalive frame to every connection, pruning dead ones."""
        event = NotificationEvent(EventType.KEEPALIVE)
        return await self._deliver(list(self._connections.values()), self._encode(event), event)

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self._connections)
        return len(self._by_user.get(user_id, ()))

    def get_connections(self, user_id: str) -> List[Connection]:
        return self._connections_for(user_id)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "connections": len(self._connections),
            "users": len(self._by_user),
            "delivered": self.delivered_count,
            "failed": self.failed_count,
            "keepalive_running": self._keepalive_task is not None and not self._keepalive_task.done()
        }

    def _connections_for(self, user_id: str) -> List[Connection]:
        return [self._connections[cid] for cid in self._by_user.get(user_id, ()) if cid in self._connections]

    def _encode(self, event: NotificationEvent) -> bytes:
        try:
            return event.serialize()
        except (TypeError, ValueError) as e:
            raise NotificationError(f"cannot serialize {event.event_type.value} event: {e}")

    async def _deliver(self, connections: List[Connection], data: bytes, event: NotificationEvent) -> int:
        if not connections:
            return 0

        results = await asyncio.gather(
            *(connection.transport.push(connection.connection_id, data) for connection in connections),
            return_exceptions=True
        )

        delivered = 0
        now = utcnow()
        for connection, result in zip(connections, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                self.failed_count += 1
                self.logger.info("Delivery failed, dropping connection", extra={
                    "connection_id": connection.connection_id,
                    "event_type": event.event_type.value,
                    "error": str(result)
                })
                await self._drop(connection, "delivery_failed")
            else:
                delivered += 1
                connection.last_delivery_at = now

        self.delivered_count += delivered
        return delivered

    async def _drop(self, connection: Connection, reason: str):
        """Unregister, close the transport and fire the close callback. Runs once per connection."""
        if self._connections.pop(connection.connection_id, None) is None:
            return

        user_connections = self._by_user.get(connection.user_id)
        if user_connections is not None:
            user_connections.discard(connection.connection_id)
            if not user_connections:
                del self._by_user[connection.user_id]

        try:
            await connection.transport.close()
        except Exception:
            self.logger.warning("Error closing transport", exc_info=True, extra={
                "connection_id": connection.connection_id
            })

        if connection.on_close is not None:
            try:
                result = connection.on_close(connection)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                self.logger.warning("Close callback failed", exc_info=True, extra={
                    "connection_id": connection.connection_id
                })

        self.logger.info("Connection closed", extra={
            "connection_id": connection.connection_id,
            "user_id": connection.user_id,
            "reason": reason
        })

    async def _keepalive_loop(self):
        """Periodic keepalive sweep."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.sleep(self.keepalive_interval)
                await self.send_keepalive()
            except asyncio.CancelledError:
                break
            except Exception:
                self.logger.error("Error in keepalive loop", exc_info=True)

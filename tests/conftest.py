import asyncio
import json
from decimal import Decimal
from typing import List, Optional

import pytest

from order_settlement.core.coordinator import SettlementCoordinator
from order_settlement.core.exceptions import error_registry
from order_settlement.gateways.manual import ManualPaymentProcessor, LoggingDispatcher
from order_settlement.models.account import UserAccount, UserRole
from order_settlement.models.order import Order, OrderStatus
from order_settlement.services.notification_bus import NotificationBus, QueueTransport
from order_settlement.utils.memory_store import InMemoryStore


@pytest.fixture(autouse=True)
def reset_error_registry():
    error_registry.reset()
    yield


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def bus():
    return NotificationBus(keepalive_interval=60)


@pytest.fixture
async def coordinator(store, bus):
    coord = SettlementCoordinator(
        store,
        bus=bus,
        processor=ManualPaymentProcessor(),
        dispatcher=LoggingDispatcher()
    )
    await coord.start()
    yield coord
    await coord.stop()


async def add_account(store, user_id: str, role: UserRole = UserRole.WORKER, approved: bool = True,
                      balance: str = "0") -> UserAccount:
    account = UserAccount(user_id=user_id, role=role, approved=approved, balance=Decimal(balance))
    async with store.transaction() as tx:
        await tx.upsert_account(account)
    return account


async def add_order(store, order_id: str = "order-1", status: OrderStatus = OrderStatus.PENDING,
                    worker_id: Optional[str] = None, client_id: str = "client-1", work_type: str = "essay",
                    page_count: int = 8, slide_count: int = 0, payment_confirmed: bool = False) -> Order:
    order = Order(
        order_id=order_id,
        client_id=client_id,
        work_type=work_type,
        page_count=page_count,
        slide_count=slide_count,
        amount=Decimal("2400.00"),
        assigned_worker_id=worker_id,
        status=status,
        payment_confirmed=payment_confirmed
    )
    async with store.transaction() as tx:
        await tx.insert_order(order)
    return order


def drain(transport: QueueTransport) -> List[dict]:
    """Decode every frame waiting in a queue transport."""
    frames = []
    while True:
        data = transport.get_nowait()
        if data is None:
            return frames
        frames.append(json.loads(data.decode("utf-8")))


def event_types(transport: QueueTransport) -> List[str]:
    return [frame["type"] for frame in drain(transport)]


async def settle_quietly():
    """Let post-commit hooks and scheduled callbacks run."""
    for _ in range(3):
        await asyncio.sleep(0)

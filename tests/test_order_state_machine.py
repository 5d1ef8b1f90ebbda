import asyncio

import pytest

from order_settlement.core.exceptions import InvalidTransition, OrderNotFound, ValidationError
from order_settlement.models.order import OrderStatus
from order_settlement.services.notification_bus import QueueTransport
from order_settlement.services.order_state_machine import OrderStateMachine

from .conftest import add_order, event_types, drain


@pytest.fixture
def machine(store, bus):
    return OrderStateMachine(store, bus=bus)


def test_transition_table_queries():
    assert OrderStateMachine.allowed_transitions("pending") == {OrderStatus.ASSIGNED, OrderStatus.CANCELLED}
    assert OrderStateMachine.allowed_transitions(OrderStatus.COMPLETED) == frozenset()
    assert OrderStateMachine.is_terminal("cancelled")
    assert not OrderStateMachine.is_terminal("paid")
    assert OrderStateMachine.can_transition("delivered", "paid")
    assert OrderStateMachine.can_transition("paid", "paid")
    assert not OrderStateMachine.can_transition("pending", "completed")


def test_unknown_status_is_rejected():
    with pytest.raises(ValidationError):
        OrderStateMachine.allowed_transitions("shipped")


async def test_transition_logs_change(store, machine):
    await add_order(store, worker_id="worker-1", status=OrderStatus.ASSIGNED)

    order = await machine.transition("order-1", "in_progress", actor="worker-1", note="starting")

    assert order.status == OrderStatus.IN_PROGRESS
    history = await machine.get_history("order-1")
    assert len(history) == 1
    assert history[0].old_status == OrderStatus.ASSIGNED
    assert history[0].new_status == OrderStatus.IN_PROGRESS
    assert history[0].actor == "worker-1"
    assert history[0].note == "starting"


async def test_terminal_orders_reject_every_transition(store, machine):
    await add_order(store, "done", status=OrderStatus.COMPLETED, worker_id="worker-1")
    await add_order(store, "gone", status=OrderStatus.CANCELLED)

    for order_id in ("done", "gone"):
        for target in OrderStatus:
            current = (await machine.get_order(order_id)).status
            if target == current:
                continue
            with pytest.raises(InvalidTransition) as exc_info:
                await machine.transition(order_id, target)
            assert exc_info.value.allowed == []


async def test_invalid_transition_reports_allowed_targets(store, machine):
    await add_order(store)

    with pytest.raises(InvalidTransition) as exc_info:
        await machine.transition("order-1", OrderStatus.DELIVERED)

    error = exc_info.value
    assert error.current_status == "pending"
    assert error.target_status == "delivered"
    assert error.allowed == ["assigned", "cancelled"]
    assert error.error_code == "INVALID_TRANSITION"
    assert (await machine.get_order("order-1")).status == OrderStatus.PENDING


async def test_self_transition_is_noop(store, bus, machine):
    await add_order(store, worker_id="worker-1", status=OrderStatus.PAID)
    transport = QueueTransport()
    await bus.connect("client-1", transport)

    order = await machine.transition("order-1", OrderStatus.PAID)

    assert order.status == OrderStatus.PAID
    assert await machine.get_history("order-1") == []
    assert drain(transport) == []


async def test_assignment_requires_worker(store, machine):
    await add_order(store)

    with pytest.raises(InvalidTransition) as exc_info:
        await machine.transition("order-1", OrderStatus.ASSIGNED)
    assert "no assigned worker" in str(exc_info.value)

    order = await machine.transition("order-1", OrderStatus.ASSIGNED, assigned_worker_id="worker-9")
    assert order.assigned_worker_id == "worker-9"
    assert (await machine.get_order("order-1")).assigned_worker_id == "worker-9"


async def test_missing_order(machine):
    with pytest.raises(OrderNotFound):
        await machine.transition("nope", OrderStatus.CANCELLED)
    with pytest.raises(OrderNotFound):
        await machine.get_history("nope")


async def test_status_change_announced_to_participants(store, bus, machine):
    await add_order(store, worker_id="worker-1", status=OrderStatus.ASSIGNED)
    client = QueueTransport()
    worker = QueueTransport()
    outsider = QueueTransport()
    await bus.connect("client-1", client)
    await bus.connect("worker-1", worker)
    await bus.connect("someone-else", outsider)

    await machine.transition("order-1", OrderStatus.IN_PROGRESS, actor="worker-1")

    frames = drain(client)
    assert [frame["type"] for frame in frames] == ["status_changed"]
    assert frames[0]["payload"] == {
        "order_id": "order-1",
        "old_status": "assigned",
        "new_status": "in_progress",
        "actor": "worker-1"
    }
    assert event_types(worker) == ["status_changed"]
    assert drain(outsider) == []


async def test_rolled_back_transition_is_not_announced(store, bus, machine):
    await add_order(store)
    transport = QueueTransport()
    await bus.connect("client-1", transport)

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await machine.transition("order-1", OrderStatus.CANCELLED, tx=tx)
            raise RuntimeError("abort")

    assert (await machine.get_order("order-1")).status == OrderStatus.PENDING
    assert await machine.get_history("order-1") == []
    assert drain(transport) == []


async def test_concurrent_identical_transitions_log_once(store, machine):
    await add_order(store)

    results = await asyncio.gather(
        machine.transition("order-1", OrderStatus.CANCELLED, actor="admin-1"),
        machine.transition("order-1", OrderStatus.CANCELLED, actor="admin-2"),
    )

    assert all(order.status == OrderStatus.CANCELLED for order in results)
    assert len(await machine.get_history("order-1")) == 1


async def test_concurrent_conflicting_transitions(store, machine):
    await add_order(store)

    results = await asyncio.gather(
        machine.transition("order-1", OrderStatus.CANCELLED),
        machine.transition("order-1", OrderStatus.ASSIGNED, assigned_worker_id="worker-1"),
        return_exceptions=True
    )

    failures = [result for result in results if isinstance(result, InvalidTransition)]
    assert len(failures) == 1
    assert len(await machine.get_history("order-1")) == 1

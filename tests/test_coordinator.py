from decimal import Decimal

import pytest

from order_settlement.core.coordinator import SettlementCoordinator
from order_settlement.core.exceptions import (
    CoordinatorError, InvalidState, InvalidTransition, ValidationError, WorkerNotEligible
)
from order_settlement.gateways.base import MessageDispatcher
from order_settlement.gateways.http import HttpPaymentProcessor
from order_settlement.gateways.manual import ManualPaymentProcessor
from order_settlement.models.order import OrderStatus
from order_settlement.models.payout import PayoutStatus
from order_settlement.services.notification_bus import QueueTransport
from order_settlement.utils.config import SettlementConfig
from order_settlement.utils.memory_store import InMemoryStore

from .conftest import event_types


class FailingDispatcher(MessageDispatcher):
    async def send(self, user_id, template, data):
        raise ConnectionError("mail relay down")


async def register_people(coordinator):
    await coordinator.register_account("client-1", "client")
    await coordinator.register_account("worker-a", "worker", approved=True)
    await coordinator.register_account("worker-b", "worker", approved=True)
    await coordinator.register_account("admin-1", "admin")


async def assigned_order(coordinator, page_count=8, work_type="essay"):
    order = await coordinator.create_order("client-1", work_type=work_type, page_count=page_count,
                                           amount="3000", order_id="order-1")
    bid = await coordinator.place_bid(order.order_id, "worker-a", "1800")
    await coordinator.place_bid(order.order_id, "worker-b", "1700")
    await coordinator.accept_bid(bid.bid_id, actor="client-1")
    return order


async def test_order_to_payout_end_to_end(coordinator, bus):
    await register_people(coordinator)
    worker_feed = QueueTransport()
    await bus.connect("worker-a", worker_feed)

    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "in_progress", actor="worker-a")
    delivered = await coordinator.deliver_order(order.order_id, "worker-a", "files/essay-final.docx")
    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.deliverable_ref == "files/essay-final.docx"

    paid = await coordinator.confirm_payment(order.order_id, "admin-1")
    assert paid.status == OrderStatus.PAID
    assert paid.payment_confirmed is True

    completed = await coordinator.complete_order(order.order_id, actor="admin-1")
    assert completed.status == OrderStatus.COMPLETED

    summary = await coordinator.get_worker_summary("worker-a")
    assert summary["account"]["balance"] == "1600.00"
    assert summary["earnings"] == {"orders_counted": 1, "total": "1600.00"}
    assert summary["progress"]["total_completed_orders"] == 1

    payout = await coordinator.request_payout("worker-a", "1600.00", "mpesa", {"phone": "+254700000001"})
    await coordinator.approve_payout(payout.request_id, "admin-1")
    done = await coordinator.process_payout(payout.request_id, processor_ref="QX81ABC", admin_id="admin-1")
    assert done.status == PayoutStatus.COMPLETED

    # Reconciling after the payout must not pay the order twice
    assert await coordinator.recalculate_balance("worker-a") == Decimal("0.00")
    summary = await coordinator.get_worker_summary("worker-a")
    assert summary["open_payouts"] == []
    assert summary["completed_payouts"] == 1

    history = await coordinator.get_order_history(order.order_id)
    assert [log.new_status.value for log in history] == [
        "assigned", "in_progress", "delivered", "paid", "completed"
    ]

    types = event_types(worker_feed)
    for expected in ("order_assigned", "status_changed", "earnings_credited",
                     "payout_requested", "payout_approved", "payout_completed"):
        assert expected in types

    templates = [message["template"] for message in coordinator.dispatcher.sent]
    assert "order_assigned" in templates
    assert "order_completed" in templates
    assert "payout_completed" in templates


async def test_losing_bidder_is_told(coordinator, bus):
    await register_people(coordinator)
    loser_feed = QueueTransport()
    await bus.connect("worker-b", loser_feed)

    await assigned_order(coordinator)

    assert event_types(loser_feed) == ["bid_rejected"]


async def test_deliver_requires_reference_and_assigned_worker(coordinator):
    await register_people(coordinator)
    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "in_progress", actor="worker-a")

    with pytest.raises(ValidationError):
        await coordinator.deliver_order(order.order_id, "worker-a", "   ")
    with pytest.raises(ValidationError):
        await coordinator.deliver_order(order.order_id, "worker-b", "files/essay.docx")

    assert (await coordinator.get_order(order.order_id)).status == OrderStatus.IN_PROGRESS


async def test_deliver_from_wrong_status_leaves_no_reference(coordinator):
    await register_people(coordinator)
    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "in_progress", actor="worker-a")
    await coordinator.deliver_order(order.order_id, "worker-a", "files/v1.docx")
    await coordinator.confirm_payment(order.order_id, "admin-1")

    with pytest.raises(InvalidTransition):
        await coordinator.deliver_order(order.order_id, "worker-a", "files/v2.docx")

    assert (await coordinator.get_order(order.order_id)).deliverable_ref == "files/v1.docx"


async def test_completion_without_confirmed_payment_earns_nothing(coordinator):
    await register_people(coordinator)
    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "in_progress", actor="worker-a")
    await coordinator.deliver_order(order.order_id, "worker-a", "files/essay.docx")
    # Marked paid by an older back office that never confirmed the money
    await coordinator.state_machine.transition(order.order_id, OrderStatus.PAID, "admin-1")

    await coordinator.complete_order(order.order_id, actor="admin-1")

    summary = await coordinator.get_worker_summary("worker-a")
    assert summary["account"]["balance"] == "0.00"
    assert summary["earnings"]["orders_counted"] == 0
    assert await coordinator.recalculate_balance("worker-a") == Decimal("0.00")


async def test_cancelled_order_is_final(coordinator):
    await register_people(coordinator)
    order = await coordinator.create_order("client-1", page_count=2)

    await coordinator.transition_order(order.order_id, "cancelled", actor="client-1")

    with pytest.raises(InvalidTransition):
        await coordinator.transition_order(order.order_id, "pending", actor="admin-1")


async def test_create_order_validation(coordinator):
    with pytest.raises(ValidationError):
        await coordinator.create_order("", page_count=1)
    with pytest.raises(ValidationError):
        await coordinator.create_order("client-1", page_count=-1)


async def test_approve_worker_places_on_tier(coordinator):
    await coordinator.register_account("worker-c", "worker")

    progress = await coordinator.approve_worker("worker-c", completed_orders=25, specialized=True)

    assert progress.current_level == 4
    summary = await coordinator.get_worker_summary("worker-c")
    assert summary["account"]["approved"] is True
    assert summary["progress"]["current_rate"] == "260.00"

    await coordinator.register_account("client-2", "client")
    with pytest.raises(WorkerNotEligible):
        await coordinator.approve_worker("client-2")


async def test_dispatch_failure_does_not_undo_work(store):
    coordinator = SettlementCoordinator(store, dispatcher=FailingDispatcher())
    async with coordinator:
        order = await coordinator.create_order("client-1", page_count=3)
        assert (await coordinator.get_order(order.order_id)).status == OrderStatus.PENDING


async def test_requires_running_coordinator():
    coordinator = SettlementCoordinator(InMemoryStore())

    with pytest.raises(CoordinatorError):
        await coordinator.create_order("client-1")

    async with coordinator:
        assert coordinator.is_running
    assert not coordinator.is_running


async def test_statistics(coordinator):
    await register_people(coordinator)
    await assigned_order(coordinator)
    with pytest.raises(ValidationError):
        await coordinator.create_order("")

    stats = await coordinator.get_statistics()

    assert stats["running"] is True
    assert stats["errors"]["error_counts"] == {"ValidationError": 1}
    assert stats["store"]["backend"] == "memory"
    assert stats["store"]["orders_by_status"] == {"assigned": 1}
    assert stats["store"]["bids"] == 2


@pytest.mark.parametrize("target", ["delivered", "paid", "completed"])
async def test_transition_order_refuses_statuses_with_side_effects(coordinator, target):
    await register_people(coordinator)
    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "in_progress", actor="worker-a")

    with pytest.raises(ValidationError):
        await coordinator.transition_order(order.order_id, target, actor="admin-1")

    assert (await coordinator.get_order(order.order_id)).status == OrderStatus.IN_PROGRESS
    assert len(await coordinator.get_order_history(order.order_id)) == 2


async def test_completed_orders_always_reach_the_ledger(coordinator):
    await register_people(coordinator)
    order = await assigned_order(coordinator)
    await coordinator.transition_order(order.order_id, "editing", actor="worker-a")
    await coordinator.deliver_order(order.order_id, "worker-a", "files/essay.docx")
    await coordinator.confirm_payment(order.order_id, "admin-1")
    await coordinator.complete_order(order.order_id, actor="admin-1")

    summary = await coordinator.get_worker_summary("worker-a")
    assert summary["account"]["balance"] == "1600.00"
    assert await coordinator.recalculate_balance("worker-a") == Decimal("1600.00")


async def test_resolve_payout_requires_processing(coordinator):
    await register_people(coordinator)
    async with coordinator.store.transaction() as tx:
        await tx.credit_balance("worker-a", Decimal("500.00"), None)
    payout = await coordinator.request_payout("worker-a", "200", "mpesa", {"phone": "+254700000002"})

    with pytest.raises(InvalidState):
        await coordinator.resolve_payout(payout.request_id, "admin-1", processor_ref="QX1")


def test_default_processor_follows_configuration():
    assert isinstance(SettlementCoordinator(InMemoryStore()).processor, ManualPaymentProcessor)

    config = SettlementConfig(processor_url="https://payments.example.test", processor_timeout=7)
    processor = SettlementCoordinator(InMemoryStore(), config=config).processor

    assert isinstance(processor, HttpPaymentProcessor)
    assert processor.base_url == "https://payments.example.test"
    assert processor.timeout == 7


async def test_open_stream_uses_configured_queue_size(store):
    coordinator = SettlementCoordinator(store, config=SettlementConfig(connection_queue_size=1))
    async with coordinator:
        stream = await coordinator.open_stream("client-1")
        order = await coordinator.create_order("client-1", page_count=1)
        await coordinator.place_bid(order.order_id, "worker-a", "300")
        assert coordinator.bus.connection_count("client-1") == 1

        # A second frame overflows the one-slot queue and drops the connection
        await coordinator.place_bid(order.order_id, "worker-b", "280")

        assert coordinator.bus.connection_count("client-1") == 0
        assert stream.closed
        assert stream.pending() == 1

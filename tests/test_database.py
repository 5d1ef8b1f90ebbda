import asyncio
import os
from decimal import Decimal

import pytest

from order_settlement.core.exceptions import InsufficientBalance, InvalidState, OrderNotBiddable
from order_settlement.gateways.manual import ManualPaymentProcessor
from order_settlement.models.account import UserRole
from order_settlement.models.earnings import DEFAULT_TIER_SCHEDULE
from order_settlement.models.order import BidStatus, OrderStatus
from order_settlement.models.payout import PayoutStatus
from order_settlement.services.bid_ledger import BidAcceptance, BidLedger
from order_settlement.services.order_state_machine import OrderStateMachine
from order_settlement.services.payout_ledger import PayoutLedger
from order_settlement.utils.database import DatabaseManager

from .conftest import add_account, add_order

DATABASE_URL = os.environ.get("ORDER_SETTLEMENT_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not DATABASE_URL, reason="ORDER_SETTLEMENT_TEST_DATABASE_URL is not set")


@pytest.fixture
async def database():
    manager = DatabaseManager(DATABASE_URL, pool_size=8, max_overflow=4)
    await manager.initialize()
    await manager.initialize_schema()
    async with manager.get_connection() as conn:
        await conn.execute("""
            TRUNCATE earnings_entries, order_status_logs, bids, payout_requests,
                     worker_progress, earnings_tiers, orders, user_accounts CASCADE
        """)
    await manager.seed_tiers(DEFAULT_TIER_SCHEDULE)
    yield manager
    await manager.close()


@pytest.fixture
def payouts(database):
    return PayoutLedger(database, ManualPaymentProcessor(), processor_timeout=5)


async def balance_of(database, worker_id):
    async with database.transaction() as tx:
        return (await tx.get_account(worker_id)).balance


async def test_concurrent_accepts_have_single_winner(database):
    await add_account(database, "client-1", role=UserRole.CLIENT)
    await add_order(database)
    ledger = BidLedger(database, OrderStateMachine(database))
    bids = [await ledger.place_bid("order-1", f"worker-{i}", 1000 + i) for i in range(6)]

    results = await asyncio.gather(*(ledger.accept_bid(bid.bid_id) for bid in bids), return_exceptions=True)

    winners = [result for result in results if isinstance(result, BidAcceptance)]
    losers = [result for result in results if not isinstance(result, BidAcceptance)]
    assert len(winners) == 1
    assert len(losers) == 5
    assert all(isinstance(result, OrderNotBiddable) for result in losers)

    async with database.transaction() as tx:
        order = await tx.get_order("order-1")
        stored = await tx.list_bids("order-1")
        history = await tx.list_status_logs("order-1")
    assert order.status == OrderStatus.ASSIGNED
    assert order.assigned_worker_id == winners[0].bid.worker_id
    assert sorted(bid.status.value for bid in stored) == ["accepted"] + ["rejected"] * 5
    assert [log.new_status for log in history] == [OrderStatus.ASSIGNED]


async def test_reject_bid_while_accepting(database):
    await add_order(database)
    ledger = BidLedger(database, OrderStateMachine(database))
    first = await ledger.place_bid("order-1", "worker-1", "900")
    second = await ledger.place_bid("order-1", "worker-2", "950")

    accepted, rejected = await asyncio.gather(ledger.accept_bid(first.bid_id), ledger.reject_bid(second.bid_id))

    assert accepted.bid.status == BidStatus.ACCEPTED
    assert rejected.status == BidStatus.REJECTED


async def test_concurrent_payout_requests_never_overdraw(database, payouts):
    await add_account(database, "worker-1", balance="1000.00")

    results = await asyncio.gather(
        *(payouts.request_payout("worker-1", "300", "mpesa", {"phone": "+254700000000"}) for _ in range(5)),
        return_exceptions=True
    )

    succeeded = [result for result in results if not isinstance(result, Exception)]
    failed = [result for result in results if isinstance(result, Exception)]
    assert len(succeeded) == 3
    assert all(isinstance(error, InsufficientBalance) for error in failed)
    assert await balance_of(database, "worker-1") == Decimal("100.00")


async def test_reject_refunds_reserved_amount(database, payouts):
    await add_account(database, "worker-1", balance="1000.00")
    payout = await payouts.request_payout("worker-1", "400", "bank", {"account": "0011"})
    assert await balance_of(database, "worker-1") == Decimal("600.00")

    rejected = await payouts.reject_payout(payout.request_id, "admin-1", "wrong account")

    assert rejected.status == PayoutStatus.REJECTED
    assert rejected.rejection_reason == "wrong account"
    assert await balance_of(database, "worker-1") == Decimal("1000.00")
    with pytest.raises(InvalidState):
        await payouts.reject_payout(payout.request_id, "admin-1", "again")
    assert await balance_of(database, "worker-1") == Decimal("1000.00")


async def test_concurrent_processing_pays_once(database, payouts):
    await add_account(database, "worker-1", balance="1000.00")
    payout = await payouts.request_payout("worker-1", "250", "mpesa", {"phone": "+254700000000"})
    await payouts.approve_payout(payout.request_id, "admin-1")

    results = await asyncio.gather(
        payouts.process_payout(payout.request_id, processor_ref="QX1"),
        payouts.process_payout(payout.request_id, processor_ref="QX2"),
        return_exceptions=True
    )

    completed = [result for result in results if not isinstance(result, Exception)]
    assert len(completed) == 1
    assert completed[0].status == PayoutStatus.COMPLETED
    assert sum(isinstance(result, InvalidState) for result in results) == 1
    assert await balance_of(database, "worker-1") == Decimal("750.00")

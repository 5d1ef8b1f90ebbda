"""
BidLedger service for the order settlement core

Records worker bids on open orders and accepts exactly one of them: the
winning bid, the rejection of every other pending bid and the assignment of
the order commit together or not at all.
"""

import functools
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from uuid import uuid4

from ..models.common import utcnow, to_money
from ..models.order import Order, OrderStatus, Bid, BidStatus
from ..models.notification import NotificationEvent, EventType
from ..utils.store import SettlementStore
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..core.exceptions import (
    BidNotFound, OrderNotFound, OrderNotBiddable, InvalidAmount, InvalidState, InvalidTransition,
    ValidationError
)
from .order_state_machine import OrderStateMachine


@dataclass
class BidAcceptance:
    """Result of accepting a bid."""

    bid: Bid
    order: Order
    rejected_bids: List[Bid] = field(default_factory=list)


class BidLedger:
    """
    Manages bids on pending orders.

    Concurrent ``accept_bid`` calls on the same order are linearised by the
    order row lock and the compare-and-set on ``status = pending``: exactly
    one wins, the others see ``OrderNotBiddable``. The order row is always
    locked before any of its bid rows.
    """

    def __init__(self, store: SettlementStore, state_machine: OrderStateMachine, bus=None):
        """
        Initialize BidLedger.

        Args:
            store: Settlement store
            state_machine: Applies the pending -> assigned transition
            bus: Optional NotificationBus for bid events
        """
        self.store = store
        self.state_machine = state_machine
        self.bus = bus

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="bid_ledger")

    async def place_bid(self, order_id: str, worker_id: str, amount, message: str = "") -> Bid:
        """
        Place a bid on a pending order.

        Raises:
            InvalidAmount: If the amount is not a positive number
            OrderNotFound: If the order does not exist
            OrderNotBiddable: If the order is no longer pending
        """
        bid_amount = to_money(amount)
        if bid_amount <= 0:
            raise InvalidAmount(amount)
        if not worker_id:
            raise ValidationError("worker_id", "worker id is required")

        async with self.store.transaction() as tx:
            order = await tx.get_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != OrderStatus.PENDING:
                raise OrderNotBiddable(order_id, order.status.value)

            now = utcnow()
            bid = Bid(
                bid_id=uuid4().hex,
                order_id=order_id,
                worker_id=worker_id,
                amount=bid_amount,
                message=(message or "").strip(),
                created_at=now,
                updated_at=now
            )
            await tx.insert_bid(bid)

            if self.bus is not None:
                tx.on_commit(functools.partial(self.bus.publish, order.client_id, NotificationEvent(
                    EventType.BID_PLACED,
                    {"order_id": order_id, "bid_id": bid.bid_id, "worker_id": worker_id, "amount": str(bid_amount)}
                )))

        self.logger.info("Bid placed", extra={
            "order_id": order_id,
            "bid_id": bid.bid_id,
            "worker_id": worker_id,
            "amount": str(bid_amount)
        })
        return bid

    async def _lock_bid(self, tx, bid_id: str) -> Tuple[Bid, Order]:
        """
        Lock a bid's order row and then the bid row.

        Every writer of an order's bids takes the order lock first, so bid
        row locks are only ever taken by the holder of that order lock.
        """
        found = await tx.get_bid(bid_id)
        if found is None:
            raise BidNotFound(bid_id)
        order = await tx.get_order(found.order_id, for_update=True)
        if order is None:
            raise OrderNotFound(found.order_id)
        bid = await tx.get_bid(bid_id, for_update=True)
        if bid is None:
            raise BidNotFound(bid_id)
        return bid, order

    async def accept_bid(self, bid_id: str, actor: str = "system") -> BidAcceptance:
        """
        Accept a bid, reject its competitors and assign the order.

        Raises:
            BidNotFound: If the bid does not exist
            OrderNotFound: If the bid's order does not exist
            OrderNotBiddable: If the order is no longer pending
            InvalidState: If the bid itself is no longer pending
        """
        with LoggerContext(self.logger, bid_id=bid_id):
            async with self.store.transaction() as tx:
                bid, order = await self._lock_bid(tx, bid_id)
                if order.status != OrderStatus.PENDING:
                    raise OrderNotBiddable(order.order_id, order.status.value)
                if bid.status != BidStatus.PENDING:
                    raise InvalidState("bid", bid_id, bid.status.value, [BidStatus.PENDING.value])

                now = utcnow()
                if not await tx.cas_bid_status(bid_id, BidStatus.PENDING, BidStatus.ACCEPTED, now):
                    fresh = await tx.get_bid(bid_id)
                    raise InvalidState("bid", bid_id, fresh.status.value if fresh else "missing",
                                       [BidStatus.PENDING.value])
                bid.status = BidStatus.ACCEPTED
                bid.updated_at = now

                rejected = await tx.reject_pending_bids(order.order_id, bid_id, now)

                try:
                    order = await self.state_machine.transition(
                        order.order_id, OrderStatus.ASSIGNED, actor, tx=tx, assigned_worker_id=bid.worker_id
                    )
                except InvalidTransition as e:
                    # Someone moved the order out of pending first
                    raise OrderNotBiddable(order.order_id, e.current_status)

                if self.bus is not None:
                    tx.on_commit(functools.partial(self.bus.publish, bid.worker_id, NotificationEvent(
                        EventType.ORDER_ASSIGNED,
                        {"order_id": order.order_id, "bid_id": bid_id, "amount": str(bid.amount)}
                    )))
                    for losing in rejected:
                        tx.on_commit(functools.partial(self.bus.publish, losing.worker_id, NotificationEvent(
                            EventType.BID_REJECTED,
                            {"order_id": order.order_id, "bid_id": losing.bid_id}
                        )))

            self.logger.info("Bid accepted", extra={
                "order_id": order.order_id,
                "worker_id": bid.worker_id,
                "rejected_bids": len(rejected)
            })
            return BidAcceptance(bid=bid, order=order, rejected_bids=rejected)

    async def reject_bid(self, bid_id: str) -> Bid:
        """
        Reject a single bid. Rejecting an already rejected bid is a no-op.

        Raises:
            BidNotFound: If the bid does not exist
            InvalidState: If the bid was accepted
        """
        async with self.store.transaction() as tx:
            bid, _ = await self._lock_bid(tx, bid_id)
            if bid.status == BidStatus.REJECTED:
                return bid
            if bid.status == BidStatus.ACCEPTED:
                raise InvalidState("bid", bid_id, bid.status.value, [BidStatus.PENDING.value])

            now = utcnow()
            if not await tx.cas_bid_status(bid_id, BidStatus.PENDING, BidStatus.REJECTED, now):
                fresh = await tx.get_bid(bid_id)
                if fresh is not None and fresh.status == BidStatus.REJECTED:
                    return fresh
                raise InvalidState("bid", bid_id, fresh.status.value if fresh else "missing",
                                   [BidStatus.PENDING.value])
            bid.status = BidStatus.REJECTED
            bid.updated_at = now

            if self.bus is not None:
                tx.on_commit(functools.partial(self.bus.publish, bid.worker_id, NotificationEvent(
                    EventType.BID_REJECTED, {"order_id": bid.order_id, "bid_id": bid_id}
                )))

        self.logger.info("Bid rejected", extra={"bid_id": bid_id, "order_id": bid.order_id})
        return bid

    async def list_bids(self, order_id: str, status: Optional[BidStatus] = None) -> List[Bid]:
        async with self.store.transaction() as tx:
            if await tx.get_order(order_id) is None:
                raise OrderNotFound(order_id)
            bids = await tx.list_bids(order_id)
        if status is not None:
            bids = [bid for bid in bids if bid.status == status]
        return bids

"""
In-process settlement store

Single-process backend used by the test suite and by the CLI when no database
URL is configured. Transactions are serialised by one ``asyncio.Lock`` and
rolled back from a snapshot taken when the transaction opened, which gives
the same observable guarantees as row locks plus compare-and-set updates.
Transactions do not nest.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Collection, Dict, List, Optional

from ..models.order import Order, OrderStatus, Bid, BidStatus, OrderStatusLog
from ..models.earnings import EarningsTier, WorkerProgress, EarningsEntry
from ..models.account import UserAccount, UserRole
from ..models.payout import PayoutRequest, PayoutStatus
from .store import SettlementStore, StoreTransaction
from .logger import get_logger

_PAYOUT_UPDATABLE_FIELDS = frozenset({
    "processed_at", "processed_by", "processor_reference", "rejection_reason"
})


class _Tables:
    """Row storage. Every value handed out is a copy."""

    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.status_logs: List[OrderStatusLog] = []
        self.bids: Dict[str, Bid] = {}
        self.accounts: Dict[str, UserAccount] = {}
        self.tiers: Dict[int, EarningsTier] = {}
        self.progress: Dict[str, WorkerProgress] = {}
        self.earnings: Dict[str, EarningsEntry] = {}
        self.payouts: Dict[str, PayoutRequest] = {}


def _copy(row):
    return copy.deepcopy(row) if row is not None else None


class MemoryTransaction(StoreTransaction):
    """Transaction handle over the in-memory tables. Only valid while the store lock is held."""

    def __init__(self, tables: _Tables):
        super().__init__()
        self._t = tables

    # Orders
    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        await asyncio.sleep(0)
        return _copy(self._t.orders.get(order_id))

    async def insert_order(self, order: Order) -> None:
        await asyncio.sleep(0)
        if order.order_id in self._t.orders:
            raise ValueError(f"duplicate order id {order.order_id}")
        self._t.orders[order.order_id] = _copy(order)

    async def save_order_details(self, order: Order) -> None:
        await asyncio.sleep(0)
        stored = self._t.orders[order.order_id]
        updated = _copy(order)
        updated.status = stored.status
        updated.assigned_worker_id = stored.assigned_worker_id
        self._t.orders[order.order_id] = updated

    async def cas_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
        assigned_worker_id: Optional[str] = None
    ) -> bool:
        await asyncio.sleep(0)
        stored = self._t.orders.get(order_id)
        if stored is None or stored.status != expected:
            return False
        stored.status = new
        stored.updated_at = updated_at
        if assigned_worker_id is not None:
            stored.assigned_worker_id = assigned_worker_id
        return True

    async def list_settled_orders(self, worker_id: str) -> List[Order]:
        await asyncio.sleep(0)
        return [
            _copy(order) for order in self._t.orders.values()
            if order.assigned_worker_id == worker_id and order.is_settled()
        ]

    async def insert_status_log(self, log: OrderStatusLog) -> None:
        await asyncio.sleep(0)
        self._t.status_logs.append(_copy(log))

    async def list_status_logs(self, order_id: str) -> List[OrderStatusLog]:
        return [_copy(log) for log in self._t.status_logs if log.order_id == order_id]

    # Bids
    async def get_bid(self, bid_id: str, for_update: bool = False) -> Optional[Bid]:
        await asyncio.sleep(0)
        return _copy(self._t.bids.get(bid_id))

    async def insert_bid(self, bid: Bid) -> None:
        await asyncio.sleep(0)
        self._t.bids[bid.bid_id] = _copy(bid)

    async def list_bids(self, order_id: str) -> List[Bid]:
        bids = [_copy(bid) for bid in self._t.bids.values() if bid.order_id == order_id]
        return sorted(bids, key=lambda bid: bid.created_at)

    async def cas_bid_status(self, bid_id: str, expected: BidStatus, new: BidStatus, updated_at: datetime) -> bool:
        await asyncio.sleep(0)
        stored = self._t.bids.get(bid_id)
        if stored is None or stored.status != expected:
            return False
        stored.status = new
        stored.updated_at = updated_at
        return True

    async def reject_pending_bids(self, order_id: str, exclude_bid_id: str, updated_at: datetime) -> List[Bid]:
        await asyncio.sleep(0)
        rejected = []
        for bid in self._t.bids.values():
            if bid.order_id == order_id and bid.bid_id != exclude_bid_id and bid.status == BidStatus.PENDING:
                bid.status = BidStatus.REJECTED
                bid.updated_at = updated_at
                rejected.append(_copy(bid))
        return rejected

    # Accounts
    async def get_account(self, user_id: str, for_update: bool = False) -> Optional[UserAccount]:
        await asyncio.sleep(0)
        return _copy(self._t.accounts.get(user_id))

    async def upsert_account(self, account: UserAccount) -> None:
        await asyncio.sleep(0)
        self._t.accounts[account.user_id] = _copy(account)

    async def list_accounts(self, role: Optional[UserRole] = None) -> List[UserAccount]:
        return [
            _copy(account) for account in self._t.accounts.values()
            if role is None or account.role == role
        ]

    async def reserve_balance(self, user_id: str, amount: Decimal, updated_at: datetime) -> Optional[Decimal]:
        await asyncio.sleep(0)
        account = self._t.accounts.get(user_id)
        if account is None or account.balance < amount:
            return None
        account.balance -= amount
        account.updated_at = updated_at
        return account.balance

    async def credit_balance(
        self, user_id: str, amount: Decimal, updated_at: datetime, count_as_earned: bool = False
    ) -> Optional[Decimal]:
        await asyncio.sleep(0)
        account = self._t.accounts.get(user_id)
        if account is None:
            return None
        account.balance += amount
        if count_as_earned:
            account.total_earned += amount
        account.updated_at = updated_at
        return account.balance

    async def reconcile_balance(self, user_id: str, earned_total: Decimal, updated_at: datetime) -> Optional[Decimal]:
        await asyncio.sleep(0)
        account = self._t.accounts.get(user_id)
        if account is None:
            return None
        committed = sum(
            (payout.amount for payout in self._t.payouts.values()
             if payout.worker_id == user_id and payout.status != PayoutStatus.REJECTED),
            Decimal("0.00")
        )
        account.balance = max(earned_total - committed, Decimal("0.00"))
        account.updated_at = updated_at
        return account.balance

    # Tiers and progress
    async def list_tiers(self) -> List[EarningsTier]:
        return [self._t.tiers[level] for level in sorted(self._t.tiers)]

    async def upsert_tier(self, tier: EarningsTier) -> None:
        self._t.tiers[tier.level] = tier

    async def get_progress(self, worker_id: str, for_update: bool = False) -> Optional[WorkerProgress]:
        await asyncio.sleep(0)
        return _copy(self._t.progress.get(worker_id))

    async def upsert_progress(self, progress: WorkerProgress) -> None:
        await asyncio.sleep(0)
        self._t.progress[progress.worker_id] = _copy(progress)

    async def insert_earnings_entry(self, entry: EarningsEntry) -> bool:
        await asyncio.sleep(0)
        if entry.order_id in self._t.earnings:
            return False
        self._t.earnings[entry.order_id] = _copy(entry)
        return True

    async def list_earnings_entries(self, worker_id: str) -> List[EarningsEntry]:
        entries = [_copy(entry) for entry in self._t.earnings.values() if entry.worker_id == worker_id]
        return sorted(entries, key=lambda entry: entry.created_at)

    # Payouts
    async def insert_payout(self, payout: PayoutRequest) -> None:
        await asyncio.sleep(0)
        self._t.payouts[payout.request_id] = _copy(payout)

    async def get_payout(self, request_id: str, for_update: bool = False) -> Optional[PayoutRequest]:
        await asyncio.sleep(0)
        return _copy(self._t.payouts.get(request_id))

    async def list_payouts(
        self, worker_id: Optional[str] = None, status: Optional[PayoutStatus] = None
    ) -> List[PayoutRequest]:
        payouts = [
            _copy(payout) for payout in self._t.payouts.values()
            if (worker_id is None or payout.worker_id == worker_id)
            and (status is None or payout.status == status)
        ]
        return sorted(payouts, key=lambda payout: payout.requested_at, reverse=True)

    async def cas_payout_status(
        self,
        request_id: str,
        expected: Collection[PayoutStatus],
        new: PayoutStatus,
        updated_at: datetime,
        **fields: Any
    ) -> Optional[PayoutRequest]:
        await asyncio.sleep(0)
        unknown = set(fields) - _PAYOUT_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update payout fields: {', '.join(sorted(unknown))}")
        stored = self._t.payouts.get(request_id)
        if stored is None or stored.status not in expected:
            return None
        stored.status = new
        stored.updated_at = updated_at
        for name, value in fields.items():
            setattr(stored, name, value)
        return _copy(stored)


class InMemoryStore(SettlementStore):
    """
    Settlement store kept in process memory.

    Transactions run one at a time. A transaction that raises is rolled back
    to the snapshot taken when it opened; commit hooks run after the lock is
    released so they may open transactions of their own.
    """

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()
        self._initialized = False
        self.logger = get_logger(__name__)

    async def initialize(self) -> None:
        self._initialized = True
        self.logger.info("In-memory settlement store initialized")

    async def close(self) -> None:
        self._initialized = False

    async def is_healthy(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            tx = MemoryTransaction(self._tables)
            try:
                yield tx
            except BaseException:
                self._tables = snapshot
                tx.discard_commit_hooks()
                raise
        await tx.run_commit_hooks()

    async def get_statistics(self) -> Dict[str, Any]:
        t = self._tables
        orders_by_status: Dict[str, int] = {}
        for order in t.orders.values():
            orders_by_status[order.status.value] = orders_by_status.get(order.status.value, 0) + 1
        return {
            "backend": "memory",
            "orders": len(t.orders),
            "orders_by_status": orders_by_status,
            "bids": len(t.bids),
            "accounts": len(t.accounts),
            "payouts": len(t.payouts),
            "earnings_entries": len(t.earnings)
        }

"""
Persistence contract for the order settlement core

Services talk to storage only through a ``SettlementStore``: a factory for
transactions whose handles expose row reads (optionally locked ``FOR
UPDATE``), inserts, and compare-and-set updates. Every balance mutation is a
single conditional statement so that no read-then-write window exists.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Awaitable, Callable, Collection, Dict, List, Optional

from ..models.order import Order, OrderStatus, Bid, BidStatus, OrderStatusLog
from ..models.earnings import EarningsTier, WorkerProgress, EarningsEntry
from ..models.account import UserAccount, UserRole
from ..models.payout import PayoutRequest, PayoutStatus
from .logger import get_logger

CommitHook = Callable[[], Awaitable[Any]]

logger = get_logger(__name__)


class StoreTransaction(ABC):
    """
    Handle for one unit of work.

    Writes made through the handle commit together or not at all. Callbacks
    registered with ``on_commit`` run only after a successful commit.
    """

    def __init__(self):
        self._commit_hooks: List[CommitHook] = []

    def on_commit(self, hook: CommitHook) -> None:
        """Run ``hook`` after this transaction commits."""
        self._commit_hooks.append(hook)

    async def run_commit_hooks(self) -> None:
        """Run post-commit hooks. The data is already durable, so failures are logged, not raised."""
        hooks, self._commit_hooks = self._commit_hooks, []
        for hook in hooks:
            try:
                await hook()
            except Exception:
                logger.warning("Post-commit hook failed", exc_info=True, extra={
                    "hook": getattr(hook, "__qualname__", repr(hook))
                })

    def discard_commit_hooks(self) -> None:
        self._commit_hooks.clear()

    # Orders
    @abstractmethod
    async def get_order(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        """Load an order, locking its row when ``for_update`` is set."""

    @abstractmethod
    async def insert_order(self, order: Order) -> None:
        """Insert a new order."""

    @abstractmethod
    async def save_order_details(self, order: Order) -> None:
        """Persist every order column except ``status`` and ``assigned_worker_id``."""

    @abstractmethod
    async def cas_order_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        updated_at: datetime,
        assigned_worker_id: Optional[str] = None
    ) -> bool:
        """Set status to ``new`` only if it is still ``expected``. Returns whether a row changed."""

    @abstractmethod
    async def list_settled_orders(self, worker_id: str) -> List[Order]:
        """Orders of the worker that are completed with payment confirmed."""

    @abstractmethod
    async def insert_status_log(self, log: OrderStatusLog) -> None:
        """Append a status change record."""

    @abstractmethod
    async def list_status_logs(self, order_id: str) -> List[OrderStatusLog]:
        """Status history of an order, oldest first."""

    # Bids
    @abstractmethod
    async def get_bid(self, bid_id: str, for_update: bool = False) -> Optional[Bid]:
        """Load a bid."""

    @abstractmethod
    async def insert_bid(self, bid: Bid) -> None:
        """Insert a new bid."""

    @abstractmethod
    async def list_bids(self, order_id: str) -> List[Bid]:
        """All bids on an order, oldest first."""

    @abstractmethod
    async def cas_bid_status(self, bid_id: str, expected: BidStatus, new: BidStatus, updated_at: datetime) -> bool:
        """Set a bid's status only if it is still ``expected``."""

    @abstractmethod
    async def reject_pending_bids(self, order_id: str, exclude_bid_id: str, updated_at: datetime) -> List[Bid]:
        """Reject every other pending bid on the order. Returns the bids that changed."""

    # Accounts and balances
    @abstractmethod
    async def get_account(self, user_id: str, for_update: bool = False) -> Optional[UserAccount]:
        """Load a user account."""

    @abstractmethod
    async def upsert_account(self, account: UserAccount) -> None:
        """Insert or update a user account."""

    @abstractmethod
    async def list_accounts(self, role: Optional[UserRole] = None) -> List[UserAccount]:
        """List accounts, optionally filtered by role."""

    @abstractmethod
    async def reserve_balance(self, user_id: str, amount: Decimal, updated_at: datetime) -> Optional[Decimal]:
        """``balance -= amount WHERE balance >= amount``. Returns the new balance, or None if refused."""

    @abstractmethod
    async def credit_balance(
        self, user_id: str, amount: Decimal, updated_at: datetime, count_as_earned: bool = False
    ) -> Optional[Decimal]:
        """``balance += amount`` in one statement. Returns the new balance, or None if no such account."""

    @abstractmethod
    async def reconcile_balance(self, user_id: str, earned_total: Decimal, updated_at: datetime) -> Optional[Decimal]:
        """Overwrite balance with ``earned_total`` minus non-rejected payouts, floored at zero."""

    # Tier schedule and progress
    @abstractmethod
    async def list_tiers(self) -> List[EarningsTier]:
        """Tier schedule ordered by level."""

    @abstractmethod
    async def upsert_tier(self, tier: EarningsTier) -> None:
        """Insert or replace a tier row (seeding only)."""

    @abstractmethod
    async def get_progress(self, worker_id: str, for_update: bool = False) -> Optional[WorkerProgress]:
        """Load a worker's tier progress."""

    @abstractmethod
    async def upsert_progress(self, progress: WorkerProgress) -> None:
        """Insert or update tier progress."""

    @abstractmethod
    async def insert_earnings_entry(self, entry: EarningsEntry) -> bool:
        """Insert the ledger row for an order unless one exists. Returns whether it was inserted."""

    @abstractmethod
    async def list_earnings_entries(self, worker_id: str) -> List[EarningsEntry]:
        """Earnings ledger of a worker."""

    # Payout requests
    @abstractmethod
    async def insert_payout(self, payout: PayoutRequest) -> None:
        """Insert a payout request."""

    @abstractmethod
    async def get_payout(self, request_id: str, for_update: bool = False) -> Optional[PayoutRequest]:
        """Load a payout request."""

    @abstractmethod
    async def list_payouts(
        self, worker_id: Optional[str] = None, status: Optional[PayoutStatus] = None
    ) -> List[PayoutRequest]:
        """List payout requests, newest first."""

    @abstractmethod
    async def cas_payout_status(
        self,
        request_id: str,
        expected: Collection[PayoutStatus],
        new: PayoutStatus,
        updated_at: datetime,
        **fields: Any
    ) -> Optional[PayoutRequest]:
        """Move a payout to ``new`` only from one of ``expected``, setting ``fields``. Returns the updated row."""


class SettlementStore(ABC):
    """Factory for transactions plus lifecycle hooks."""

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections / prepare the backend."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def is_healthy(self) -> bool:
        """Check backend connectivity."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        """Open a transaction. Commits on normal exit, rolls back on exception."""

    async def seed_tiers(self, tiers) -> int:
        """Write the tier schedule. Returns the number of tiers written."""
        count = 0
        async with self.transaction() as tx:
            for tier in tiers:
                await tx.upsert_tier(tier)
                count += 1
        return count

    async def get_statistics(self) -> Dict[str, Any]:
        """Row counts for monitoring. Backends may override."""
        return {}

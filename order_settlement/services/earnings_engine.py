"""
EarningsEngine service for the order settlement core

Computes worker compensation from the piece-rate tier schedule, advances
tier progress when a settled order is counted, and reconciles balances.
"""

import functools
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from ..models.common import utcnow, to_money
from ..models.order import OrderStatus
from ..models.earnings import (
    EarningsTier, WorkerProgress, EarningsEntry, TierProgressReport, DEFAULT_TIER_SCHEDULE
)
from ..models.account import UserRole
from ..models.notification import NotificationEvent, EventType
from ..utils.store import SettlementStore, StoreTransaction
from ..utils.config import DEFAULT_TECHNICAL_CATEGORIES
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..core.exceptions import (
    OrderNotFound, InvalidState, ValidationError, WorkerNotEligible
)

ZERO = Decimal("0.00")

MANAGER_ASSIGN_FEE = Decimal("10")
MANAGER_SUBMIT_BASE_FEE = Decimal("10")
MANAGER_SUBMIT_PAGE_FEE = Decimal("5")


def normalize_work_type(work_type: Optional[str]) -> str:
    """Lower-case a work type and turn spaces/underscores into hyphens."""
    return (work_type or "").strip().lower().replace(" ", "-").replace("_", "-")


class EarningsEngine:
    """
    Tiered piece-rate earnings.

    A worker earns ``pages x tier rate + slides x slide rate`` for every
    completed, payment-confirmed order. Each counted order moves the worker
    toward the next tier; the level never goes down.
    """

    def __init__(
        self,
        store: SettlementStore,
        tiers: Optional[Iterable[EarningsTier]] = None,
        slide_rate: Decimal = Decimal("100"),
        technical_categories: Optional[Iterable[str]] = None,
        bus=None
    ):
        """
        Initialize EarningsEngine.

        Args:
            store: Settlement store
            tiers: Tier schedule used until (and seeded if missing on) start
            slide_rate: Fixed per-slide rate, independent of tier
            technical_categories: Work types paid at the technical rate
            bus: Optional NotificationBus for earnings/tier events
        """
        self.store = store
        self.bus = bus
        self.slide_rate = to_money(slide_rate, "slide_rate")
        self.technical_categories = frozenset(
            normalize_work_type(category)
            for category in (technical_categories if technical_categories is not None else DEFAULT_TECHNICAL_CATEGORIES)
        )
        self._set_schedule(tiers if tiers is not None else DEFAULT_TIER_SCHEDULE)

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="earnings_engine")

    async def start(self):
        """Load the tier schedule from the store, seeding it on first run."""
        async with self.store.transaction() as tx:
            stored = await tx.list_tiers()

        if stored:
            self._set_schedule(stored)
        else:
            await self.store.seed_tiers(self.tiers)

        self.logger.info("Starting EarningsEngine", extra={
            "tiers": len(self.tiers),
            "seeded": not stored,
            "slide_rate": str(self.slide_rate)
        })

    async def stop(self):
        self.logger.info("Stopping EarningsEngine")

    # Schedule
    def _set_schedule(self, tiers: Iterable[EarningsTier]):
        ordered = sorted(tiers, key=lambda tier: tier.level)
        if not ordered:
            raise ValidationError("tiers", "tier schedule is empty")
        self.tiers: List[EarningsTier] = ordered
        self._tiers_by_level: Dict[int, EarningsTier] = {tier.level: tier for tier in ordered}

    def get_tier(self, level: int) -> EarningsTier:
        tier = self._tiers_by_level.get(level)
        if tier is None:
            raise ValidationError("tier_level", f"unknown tier level {level}", level)
        return tier

    def new_progress(self, worker_id: str) -> WorkerProgress:
        """Progress of a worker with no completed orders, on the first tier of the schedule."""
        return WorkerProgress(worker_id=worker_id, current_level=self.tiers[0].level)

    def next_tier(self, level: int) -> Optional[EarningsTier]:
        for tier in self.tiers:
            if tier.level > level:
                return tier
        return None

    def tier_for_order_count(self, completed_orders: int) -> EarningsTier:
        """Highest tier whose threshold the lifetime count has reached."""
        reached = self.tiers[0]
        for tier in self.tiers:
            if tier.min_completed_orders <= completed_orders:
                reached = tier
        return reached

    # Pricing
    def is_technical(self, work_type: Optional[str]) -> bool:
        return normalize_work_type(work_type) in self.technical_categories

    def compute_worker_payout(self, page_count: int, slide_count: int, work_type: Optional[str],
                              tier_level: int) -> Decimal:
        """
        Worker payout for one order at a given tier.

        Negative counts are treated as zero; the result is rounded half-up
        to cents and is never negative.
        """
        tier = self.get_tier(tier_level)
        pages = max(0, int(page_count or 0))
        slides = max(0, int(slide_count or 0))
        rate = tier.rate_for(self.is_technical(work_type))
        return to_money(pages * rate + slides * self.slide_rate)

    @staticmethod
    def manager_earnings(assigned: bool, submitted: bool, page_count: int) -> Decimal:
        """Manager fee: 10 when the order is assigned, 10 + 5 per extra page when it is submitted."""
        total = ZERO
        if assigned:
            total += MANAGER_ASSIGN_FEE
        pages = int(page_count or 0)
        if submitted and pages > 0:
            total += MANAGER_SUBMIT_BASE_FEE + MANAGER_SUBMIT_PAGE_FEE * (pages - 1)
        return to_money(total)

    # Progress
    def _apply_level_ups(self, progress: WorkerProgress) -> None:
        """Advance while the in-tier count covers the next tier's requirement, carrying the excess."""
        while True:
            upcoming = self.next_tier(progress.current_level)
            if upcoming is None:
                return
            current = self.get_tier(progress.current_level)
            required = upcoming.min_completed_orders - current.min_completed_orders
            if progress.orders_in_current_level < required:
                return
            progress.orders_in_current_level -= required
            progress.current_level = upcoming.level

    async def initialize_progress(self, worker_id: str, completed_orders: int = 0,
                                  specialized: bool = False) -> WorkerProgress:
        """Create tier progress for a newly approved worker. Existing progress is returned unchanged."""
        if completed_orders < 0:
            raise ValidationError("completed_orders", "must not be negative", completed_orders)

        async with self.store.transaction() as tx:
            existing = await tx.get_progress(worker_id, for_update=True)
            if existing is not None:
                return existing

            tier = self.tier_for_order_count(completed_orders)
            progress = WorkerProgress(
                worker_id=worker_id,
                current_level=tier.level,
                total_completed_orders=completed_orders,
                orders_in_current_level=completed_orders - tier.min_completed_orders,
                is_specialized=specialized
            )
            await tx.upsert_progress(progress)

        self.logger.info("Worker progress initialized", extra={
            "worker_id": worker_id,
            "current_level": progress.current_level,
            "total_completed_orders": completed_orders
        })
        return progress

    async def advance_worker_progress(self, worker_id: str, order_id: str,
                                      tx: Optional[StoreTransaction] = None) -> WorkerProgress:
        """
        Count a settled order toward the worker's tier and credit its payout.

        Counting is idempotent per order: a second call for the same order
        returns the progress unchanged. The payout is computed at the rate in
        effect before any level-up this order triggers.

        Raises:
            OrderNotFound: If the order does not exist
            InvalidState: If the order is not completed with payment confirmed
            ValidationError: If the order belongs to another worker
            WorkerNotEligible: If the worker has no account to credit
        """
        if tx is None:
            async with self.store.transaction() as own_tx:
                return await self._advance(own_tx, worker_id, order_id)
        return await self._advance(tx, worker_id, order_id)

    async def _advance(self, tx: StoreTransaction, worker_id: str, order_id: str) -> WorkerProgress:
        with LoggerContext(self.logger, order_id=order_id, worker_id=worker_id):
            order = await tx.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(order_id)
            if not order.is_settled():
                status = order.status.value if order.status != OrderStatus.COMPLETED else "completed (payment unconfirmed)"
                raise InvalidState("order", order_id, status, [OrderStatus.COMPLETED.value])
            if order.assigned_worker_id != worker_id:
                raise ValidationError("worker_id", f"order {order_id} is assigned to another worker", worker_id)

            progress = await tx.get_progress(worker_id, for_update=True)
            if progress is None:
                progress = self.new_progress(worker_id)

            if order.earnings_counted:
                self.logger.debug("Order already counted")
                return progress

            rate_level = progress.current_level
            amount = self.compute_worker_payout(order.page_count, order.slide_count, order.work_type, rate_level)
            now = utcnow()

            if not await tx.insert_earnings_entry(EarningsEntry(order_id, worker_id, amount, rate_level, now)):
                self.logger.debug("Earnings entry already present")
                return progress

            order.earnings_counted = True
            order.updated_at = now
            await tx.save_order_details(order)

            progress.total_completed_orders += 1
            progress.orders_in_current_level += 1
            self._apply_level_ups(progress)
            progress.updated_at = now
            await tx.upsert_progress(progress)

            balance = await tx.credit_balance(worker_id, amount, now, count_as_earned=True)
            if balance is None:
                raise WorkerNotEligible(worker_id, "no account to credit")

            self.logger.info("Order counted toward tier progress", extra={
                "amount": str(amount),
                "rate_level": rate_level,
                "current_level": progress.current_level,
                "total_completed_orders": progress.total_completed_orders
            })

            if self.bus is not None:
                tx.on_commit(functools.partial(self.bus.publish, worker_id, NotificationEvent(
                    EventType.EARNINGS_CREDITED,
                    {"order_id": order_id, "amount": str(amount), "balance": str(balance), "tier_level": rate_level}
                )))
                if progress.current_level != rate_level:
                    new_tier = self.get_tier(progress.current_level)
                    tx.on_commit(functools.partial(self.bus.publish, worker_id, NotificationEvent(
                        EventType.TIER_ADVANCED,
                        {"old_level": rate_level, "new_level": new_tier.level, "label": new_tier.label}
                    )))
            return progress

    async def get_progress(self, worker_id: str) -> WorkerProgress:
        async with self.store.transaction() as tx:
            progress = await tx.get_progress(worker_id)
        return progress or self.new_progress(worker_id)

    async def progress_report(self, worker_id: str) -> TierProgressReport:
        """Where the worker stands: level, rates and orders left to the next tier."""
        progress = await self.get_progress(worker_id)
        current = self.get_tier(progress.current_level)
        upcoming = self.next_tier(progress.current_level)
        current_rate = current.rate_for(progress.is_specialized)

        if upcoming is None:
            return TierProgressReport(
                worker_id=worker_id,
                current_level=current.level,
                level_label=current.label,
                total_completed_orders=progress.total_completed_orders,
                orders_in_current_level=progress.orders_in_current_level,
                orders_to_next_level=0,
                progress_percent=100.0,
                current_rate=current_rate,
                next_level_rate=current_rate,
                is_specialized=progress.is_specialized
            )

        required = upcoming.min_completed_orders - current.min_completed_orders
        return TierProgressReport(
            worker_id=worker_id,
            current_level=current.level,
            level_label=current.label,
            total_completed_orders=progress.total_completed_orders,
            orders_in_current_level=progress.orders_in_current_level,
            orders_to_next_level=max(0, required - progress.orders_in_current_level),
            progress_percent=min(100.0, progress.orders_in_current_level / required * 100),
            current_rate=current_rate,
            next_level_rate=upcoming.rate_for(progress.is_specialized),
            is_specialized=progress.is_specialized,
            next_level=upcoming.level
        )

    # Balances
    async def recalculate_balance(self, worker_id: str) -> Decimal:
        """
        Reconcile a worker's available balance from scratch.

        Sums the payout of every completed, payment-confirmed order at the
        worker's current tier rate, subtracts every payout request that was
        not rejected, floors at zero and overwrites the stored balance.
        """
        async with self.store.transaction() as tx:
            account = await tx.get_account(worker_id, for_update=True)
            if account is None:
                raise WorkerNotEligible(worker_id, "no account")

            progress = await tx.get_progress(worker_id)
            level = (progress or self.new_progress(worker_id)).current_level

            orders = await tx.list_settled_orders(worker_id)
            earned = sum(
                (self.compute_worker_payout(order.page_count, order.slide_count, order.work_type, level)
                 for order in orders),
                ZERO
            )
            balance = await tx.reconcile_balance(worker_id, earned, utcnow())

        self.logger.info("Balance recalculated", extra={
            "worker_id": worker_id,
            "settled_orders": len(orders),
            "earned_total": str(earned),
            "balance": str(balance),
            "previous_balance": str(account.balance)
        })
        return balance

    async def recalculate_all_balances(self) -> Dict[str, Decimal]:
        """Reconcile every worker account. Returns the new balance per worker."""
        async with self.store.transaction() as tx:
            workers = await tx.list_accounts(UserRole.WORKER)

        balances: Dict[str, Decimal] = {}
        for account in workers:
            balances[account.user_id] = await self.recalculate_balance(account.user_id)

        self.logger.info("Recalculated all balances", extra={"workers": len(balances)})
        return balances

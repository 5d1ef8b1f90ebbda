"""
SettlementCoordinator: the entry point the API layer calls

Wires the state machine, bid ledger, earnings engine, payout ledger and
notification bus over one store, and runs each use case as a unit. After a
use case commits, durable messages go out through the dispatcher; dispatch
failures are logged and never undo the committed work.
"""

import asyncio
from decimal import Decimal
from typing import Dict, List, Optional, Any, Iterable, Union
from uuid import uuid4

from ..models.common import utcnow, to_money, parse_enum
from ..models.order import Order, OrderStatus, Bid, OrderStatusLog
from ..models.account import UserAccount, UserRole
from ..models.earnings import WorkerProgress
from ..models.payout import PayoutRequest, PayoutStatus, PayoutMethod
from ..services.order_state_machine import OrderStateMachine
from ..services.bid_ledger import BidLedger, BidAcceptance
from ..services.earnings_engine import EarningsEngine
from ..services.payout_ledger import PayoutLedger
from ..services.notification_bus import NotificationBus, QueueTransport
from ..gateways.base import PaymentProcessor, MessageDispatcher
from ..gateways.manual import ManualPaymentProcessor, LoggingDispatcher
from ..gateways.http import HttpPaymentProcessor
from ..utils.store import SettlementStore
from ..utils.config import SettlementConfig
from ..utils.logger import get_logger, set_log_context, LoggerContext
from .exceptions import (
    CoordinatorError, OrderNotFound, ValidationError, InvalidAmount, WorkerNotEligible, error_registry
)

# Statuses reached only through the use case that applies their side effects
DEDICATED_TRANSITIONS = {
    OrderStatus.DELIVERED: "deliver_order",
    OrderStatus.PAID: "confirm_payment",
    OrderStatus.COMPLETED: "complete_order",
}


class SettlementCoordinator:
    """
    Main coordinator class that ties the settlement services together.

    Provides a unified interface for:
    - Order creation, bidding and assignment
    - Delivery, payment confirmation and completion
    - Worker earnings, tier progress and balance reconciliation
    - Payout requests and their administration
    """

    def __init__(
        self,
        store: SettlementStore,
        bus: Optional[NotificationBus] = None,
        processor: Optional[PaymentProcessor] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        config: Optional[SettlementConfig] = None
    ):
        """
        Initialize the SettlementCoordinator.

        Args:
            store: Settlement store (PostgreSQL or in-memory)
            bus: Notification bus; one is created from config when omitted
            processor: Payment processor; HTTP when ``processor_url`` is configured,
                otherwise manual back-office confirmation
            dispatcher: Durable message dispatcher; logging only by default
            config: Settlement configuration
        """
        self.config = config or SettlementConfig()
        self.store = store
        self.bus = bus or NotificationBus(
            keepalive_interval=self.config.keepalive_interval,
            queue_size=self.config.connection_queue_size
        )
        self.processor = processor or self._default_processor()
        self.dispatcher = dispatcher or LoggingDispatcher()

        self.state_machine = OrderStateMachine(store, self.bus)
        self.bid_ledger = BidLedger(store, self.state_machine, self.bus)
        self.earnings = EarningsEngine(
            store,
            tiers=self.config.tier_schedule(),
            slide_rate=self.config.slide_rate,
            technical_categories=self.config.technical_categories,
            bus=self.bus
        )
        self.payouts = PayoutLedger(
            store,
            self.processor,
            bus=self.bus,
            processor_timeout=self.config.processor_timeout,
            minimum_payout=self.config.minimum_payout
        )

        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="coordinator")

    async def start(self):
        """Start the store and all services."""
        self.logger.info("Starting SettlementCoordinator", extra={
            "store": type(self.store).__name__,
            "processor": type(self.processor).__name__
        })

        try:
            await self.store.initialize()
            await self.earnings.start()
            await self.bus.start()
            self._is_running = True
            self.logger.info("SettlementCoordinator started successfully")
        except Exception as e:
            self.logger.error("Failed to start SettlementCoordinator", exc_info=True)
            await self.stop()
            raise CoordinatorError(f"Failed to start coordinator: {str(e)}") from e

    async def stop(self):
        """Stop all services and release resources."""
        self.logger.info("Stopping SettlementCoordinator")

        for name, closer in (
            ("notification_bus", self.bus.stop),
            ("earnings_engine", self.earnings.stop),
            ("processor", self.processor.close),
            ("store", self.store.close),
        ):
            try:
                await closer()
            except Exception:
                self.logger.error(f"Error stopping {name}", exc_info=True)

        self._is_running = False
        self.logger.info("SettlementCoordinator stopped")

    def _default_processor(self) -> PaymentProcessor:
        if self.config.processor_url:
            return HttpPaymentProcessor(
                self.config.processor_url,
                timeout=self.config.processor_timeout,
                api_key=self.config.processor_api_key
            )
        return ManualPaymentProcessor()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def _require_running(self):
        if not self._is_running:
            raise CoordinatorError("Coordinator is not running")

    async def _dispatch(self, user_ids: Iterable[Optional[str]], template: str, data: Dict[str, Any]):
        """Send a durable message to each user. Failures are logged, never raised."""
        for user_id in dict.fromkeys(uid for uid in user_ids if uid):
            try:
                await self.dispatcher.send(user_id, template, data)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.warning("Message dispatch failed", exc_info=True, extra={
                    "user_id": user_id,
                    "template": template
                })

    # Accounts
    async def register_account(self, user_id: str, role: Union[UserRole, str], approved: bool = False) -> UserAccount:
        """Create (or update the role/approval of) a user account."""
        self._require_running()
        if not user_id:
            raise ValidationError("user_id", "user id is required")
        account = UserAccount(user_id=user_id, role=parse_enum(UserRole, role, "role"), approved=approved)

        async with self.store.transaction() as tx:
            existing = await tx.get_account(user_id, for_update=True)
            if existing is not None:
                existing.role = account.role
                existing.approved = approved
                existing.updated_at = utcnow()
                account = existing
            await tx.upsert_account(account)

        if account.role == UserRole.WORKER and approved:
            await self.earnings.initialize_progress(user_id)
        return account

    async def approve_worker(self, worker_id: str, completed_orders: int = 0,
                             specialized: bool = False) -> WorkerProgress:
        """Approve a worker account and start their tier progress."""
        self._require_running()
        async with self.store.transaction() as tx:
            account = await tx.get_account(worker_id, for_update=True)
            if account is None or account.role != UserRole.WORKER:
                raise WorkerNotEligible(worker_id, "no worker account")
            account.approved = True
            account.updated_at = utcnow()
            await tx.upsert_account(account)

        progress = await self.earnings.initialize_progress(worker_id, completed_orders, specialized)
        await self._dispatch([worker_id], "worker_approved", {"level": progress.current_level})
        return progress

    # Orders
    async def create_order(
        self,
        client_id: str,
        work_type: str = "",
        page_count: int = 0,
        slide_count: int = 0,
        amount=Decimal("0"),
        manager_id: Optional[str] = None,
        order_id: Optional[str] = None
    ) -> Order:
        """Create a pending order open for bids."""
        self._require_running()
        if not client_id:
            raise ValidationError("client_id", "client id is required")
        if page_count < 0:
            raise ValidationError("page_count", "must not be negative", page_count)
        if slide_count < 0:
            raise ValidationError("slide_count", "must not be negative", slide_count)
        order_amount = to_money(amount)
        if order_amount < 0:
            raise InvalidAmount(amount)

        order = Order(
            order_id=order_id or uuid4().hex,
            client_id=client_id,
            work_type=work_type,
            page_count=page_count,
            slide_count=slide_count,
            amount=order_amount,
            manager_id=manager_id
        )
        async with self.store.transaction() as tx:
            await tx.insert_order(order)

        self.logger.info("Order created", extra={
            "order_id": order.order_id,
            "client_id": client_id,
            "work_type": work_type,
            "page_count": page_count
        })
        await self._dispatch([client_id], "order_created", {"order_id": order.order_id})
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self.state_machine.get_order(order_id)

    async def get_order_history(self, order_id: str) -> List[OrderStatusLog]:
        return await self.state_machine.get_history(order_id)

    async def transition_order(self, order_id: str, target: Union[OrderStatus, str], actor: str,
                               note: Optional[str] = None) -> Order:
        """
        Move an order along the status graph.

        Delivery, payment and completion carry side effects and go through
        ``deliver_order``, ``confirm_payment`` and ``complete_order``.

        Raises:
            ValidationError: If the target has its own use case
        """
        self._require_running()
        target = parse_enum(OrderStatus, target, "target_status")
        use_case = DEDICATED_TRANSITIONS.get(target)
        if use_case is not None:
            raise ValidationError("target_status", f"use {use_case} to move an order to {target.value}",
                                  target.value)
        before = await self.state_machine.get_order(order_id)
        order = await self.state_machine.transition(order_id, target, actor, note=note)
        if before.status != order.status:
            await self._dispatch(order.participants(), "order_status_changed", {
                "order_id": order_id,
                "old_status": before.status.value,
                "new_status": order.status.value
            })
        return order

    # Bids
    async def place_bid(self, order_id: str, worker_id: str, amount, message: str = "") -> Bid:
        self._require_running()
        return await self.bid_ledger.place_bid(order_id, worker_id, amount, message)

    async def accept_bid(self, bid_id: str, actor: str = "system") -> BidAcceptance:
        self._require_running()
        result = await self.bid_ledger.accept_bid(bid_id, actor)
        await self._dispatch([result.bid.worker_id], "order_assigned", {
            "order_id": result.order.order_id,
            "bid_id": bid_id
        })
        return result

    async def reject_bid(self, bid_id: str) -> Bid:
        self._require_running()
        return await self.bid_ledger.reject_bid(bid_id)

    async def list_bids(self, order_id: str) -> List[Bid]:
        return await self.bid_ledger.list_bids(order_id)

    # Delivery and settlement
    async def deliver_order(self, order_id: str, worker_id: str, deliverable_ref: str) -> Order:
        """
        Record the delivered work and move the order to delivered.

        Raises:
            ValidationError: If no deliverable reference is given or the worker is not assigned
        """
        self._require_running()
        deliverable_ref = (deliverable_ref or "").strip()
        if not deliverable_ref:
            raise ValidationError("deliverable_ref", "a deliverable is required to deliver an order")

        with LoggerContext(self.logger, order_id=order_id, worker_id=worker_id):
            async with self.store.transaction() as tx:
                order = await tx.get_order(order_id, for_update=True)
                if order is None:
                    raise OrderNotFound(order_id)
                if order.assigned_worker_id != worker_id:
                    raise ValidationError("worker_id", f"order {order_id} is not assigned to this worker", worker_id)

                order = await self.state_machine.transition(order_id, OrderStatus.DELIVERED, worker_id, tx=tx)
                order.deliverable_ref = deliverable_ref
                order.updated_at = utcnow()
                await tx.save_order_details(order)

            self.logger.info("Order delivered", extra={"deliverable_ref": deliverable_ref})

        await self._dispatch([order.client_id], "order_delivered", {
            "order_id": order_id,
            "deliverable_ref": deliverable_ref
        })
        return order

    async def confirm_payment(self, order_id: str, admin_id: str) -> Order:
        """Confirm the client's payment: approved or delivered -> paid, payment_confirmed set."""
        self._require_running()
        async with self.store.transaction() as tx:
            order = await self.state_machine.transition(order_id, OrderStatus.PAID, admin_id, tx=tx)
            if not order.payment_confirmed:
                order.payment_confirmed = True
                order.updated_at = utcnow()
                await tx.save_order_details(order)

        self.logger.info("Payment confirmed", extra={"order_id": order_id, "admin_id": admin_id})
        await self._dispatch(order.participants(), "payment_confirmed", {"order_id": order_id})
        return order

    async def complete_order(self, order_id: str, actor: str) -> Order:
        """
        Complete a paid order and count it toward the worker's earnings.

        Completion and the earnings credit commit together. An order completed
        without confirmed payment earns nothing.
        """
        self._require_running()
        progress = None
        async with self.store.transaction() as tx:
            order = await self.state_machine.transition(order_id, OrderStatus.COMPLETED, actor, tx=tx)
            if order.payment_confirmed:
                progress = await self.earnings.advance_worker_progress(order.assigned_worker_id, order_id, tx=tx)
            else:
                self.logger.warning("Order completed without confirmed payment; earnings not counted", extra={
                    "order_id": order_id
                })

        if progress is not None:
            await self._dispatch([order.assigned_worker_id], "order_completed", {
                "order_id": order_id,
                "current_level": progress.current_level,
                "total_completed_orders": progress.total_completed_orders
            })
        return order

    # Payouts
    async def request_payout(self, worker_id: str, amount, method: Union[PayoutMethod, str],
                             account_details: Optional[Dict[str, Any]] = None) -> PayoutRequest:
        self._require_running()
        payout = await self.payouts.request_payout(worker_id, amount, method, account_details)
        await self._dispatch([worker_id], "payout_requested", {
            "request_id": payout.request_id,
            "amount": str(payout.amount)
        })
        return payout

    async def approve_payout(self, request_id: str, admin_id: str) -> PayoutRequest:
        self._require_running()
        payout = await self.payouts.approve_payout(request_id, admin_id)
        await self._dispatch([payout.worker_id], "payout_approved", {"request_id": request_id})
        return payout

    async def reject_payout(self, request_id: str, admin_id: str, reason: str) -> PayoutRequest:
        self._require_running()
        payout = await self.payouts.reject_payout(request_id, admin_id, reason)
        await self._dispatch([payout.worker_id], "payout_rejected", {
            "request_id": request_id,
            "reason": payout.rejection_reason
        })
        return payout

    async def process_payout(self, request_id: str, processor_ref: Optional[str] = None,
                             admin_id: Optional[str] = None) -> PayoutRequest:
        self._require_running()
        payout = await self.payouts.process_payout(request_id, processor_ref, admin_id)
        await self._dispatch([payout.worker_id], "payout_completed", {
            "request_id": request_id,
            "reference": payout.processor_reference
        })
        return payout

    async def resolve_payout(self, request_id: str, admin_id: str,
                             processor_ref: Optional[str] = None) -> PayoutRequest:
        """Settle a payout left in processing: completed with a reference, otherwise back to approved."""
        self._require_running()
        payout = await self.payouts.resolve_payout(request_id, admin_id, processor_ref)
        if payout.status == PayoutStatus.COMPLETED:
            await self._dispatch([payout.worker_id], "payout_completed", {
                "request_id": request_id,
                "reference": payout.processor_reference
            })
        return payout

    # Earnings
    async def recalculate_balance(self, worker_id: str) -> Decimal:
        self._require_running()
        return await self.earnings.recalculate_balance(worker_id)

    async def recalculate_all_balances(self) -> Dict[str, Decimal]:
        self._require_running()
        return await self.earnings.recalculate_all_balances()

    async def get_worker_summary(self, worker_id: str) -> Dict[str, Any]:
        """Balance, tier progress, earnings ledger totals and open payouts of a worker."""
        async with self.store.transaction() as tx:
            account = await tx.get_account(worker_id)
            if account is None:
                raise WorkerNotEligible(worker_id, "no such user")
            entries = await tx.list_earnings_entries(worker_id)
            payouts = await tx.list_payouts(worker_id=worker_id)

        report = await self.earnings.progress_report(worker_id)
        open_statuses = (PayoutStatus.PENDING, PayoutStatus.APPROVED, PayoutStatus.PROCESSING)
        return {
            "account": account.to_dict(),
            "progress": report.to_dict(),
            "earnings": {
                "orders_counted": len(entries),
                "total": str(sum((entry.amount for entry in entries), Decimal("0.00")))
            },
            "open_payouts": [payout.to_dict() for payout in payouts if payout.status in open_statuses],
            "completed_payouts": sum(1 for payout in payouts if payout.status == PayoutStatus.COMPLETED)
        }

    # Notifications
    async def open_stream(self, user_id: str) -> QueueTransport:
        """Register a live connection for a user and return the queue to stream frames from."""
        return await self.bus.connect_queue(user_id)

    async def get_statistics(self) -> Dict[str, Any]:
        """Store row counts, bus delivery counters and raised error counts."""
        return {
            "store": await self.store.get_statistics(),
            "notifications": self.bus.get_statistics(),
            "errors": error_registry.get_error_statistics(),
            "running": self._is_running
        }

"""
PayoutLedger service for the order settlement core

Workers withdraw from their available balance through payout requests. The
requested amount is reserved when the request is made and returned only if
the request is rejected. Processing hands the money to a payment processor
under a timeout; a processor failure leaves the ledger as it was.
"""

import asyncio
import functools
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..models.common import utcnow, to_money, parse_enum
from ..models.account import UserRole
from ..models.payout import PayoutRequest, PayoutStatus, PayoutMethod, REJECTABLE_PAYOUT_STATUSES
from ..models.notification import NotificationEvent, EventType
from ..gateways.base import PaymentProcessor, ProcessorResult
from ..utils.store import SettlementStore, StoreTransaction
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..core.exceptions import (
    InvalidAmount, InsufficientBalance, WorkerNotEligible, InvalidState,
    MissingReason, ProcessorError, PayoutNotFound, ValidationError
)


class PayoutLedger:
    """
    Manages payout requests: request, approve, reject and process.

    Every status change is a compare-and-set on the expected status, and
    every balance change is a single conditional update, so concurrent
    requests can never reserve more than the worker holds.
    """

    def __init__(
        self,
        store: SettlementStore,
        processor: PaymentProcessor,
        bus=None,
        processor_timeout: float = 30.0,
        minimum_payout: Decimal = Decimal("0")
    ):
        """
        Initialize PayoutLedger.

        Args:
            store: Settlement store
            processor: Payment processor used by ``process_payout``
            bus: Optional NotificationBus for payout events
            processor_timeout: Seconds to wait for the processor
            minimum_payout: Smallest amount a worker may request
        """
        self.store = store
        self.processor = processor
        self.bus = bus
        self.processor_timeout = processor_timeout
        self.minimum_payout = to_money(minimum_payout, "minimum_payout")

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="payout_ledger")

    def _announce(self, tx: StoreTransaction, worker_id: str, event_type: EventType, payout: PayoutRequest,
                  **extra: Any):
        if self.bus is None:
            return
        payload = {
            "request_id": payout.request_id,
            "amount": str(payout.amount),
            "method": payout.method.value,
            "status": payout.status.value
        }
        payload.update(extra)
        tx.on_commit(functools.partial(self.bus.publish, worker_id, NotificationEvent(event_type, payload)))

    async def _load(self, tx: StoreTransaction, request_id: str) -> PayoutRequest:
        payout = await tx.get_payout(request_id, for_update=True)
        if payout is None:
            raise PayoutNotFound(request_id)
        return payout

    async def request_payout(
        self,
        worker_id: str,
        amount,
        method: Union[PayoutMethod, str],
        account_details: Optional[Dict[str, Any]] = None
    ) -> PayoutRequest:
        """
        Request a withdrawal, reserving the amount from the available balance.

        Raises:
            InvalidAmount: If the amount is not positive
            ValidationError: If the method is unknown or the amount is below the minimum
            WorkerNotEligible: If the user is missing, not a worker or not approved
            InsufficientBalance: If the balance does not cover the amount
        """
        payout_amount = to_money(amount)
        if payout_amount <= 0:
            raise InvalidAmount(amount)
        if payout_amount < self.minimum_payout:
            raise ValidationError("amount", f"minimum payout is {self.minimum_payout}", amount)
        payout_method = parse_enum(PayoutMethod, method, "method")
        if account_details is not None and not isinstance(account_details, dict):
            raise ValidationError("account_details", "must be a mapping", account_details)

        with LoggerContext(self.logger, worker_id=worker_id):
            async with self.store.transaction() as tx:
                account = await tx.get_account(worker_id)
                if account is None:
                    raise WorkerNotEligible(worker_id, "no such user")
                if account.role != UserRole.WORKER:
                    raise WorkerNotEligible(worker_id, f"role is {account.role.value}")
                if not account.approved:
                    raise WorkerNotEligible(worker_id, "account is not approved")

                now = utcnow()
                remaining = await tx.reserve_balance(worker_id, payout_amount, now)
                if remaining is None:
                    current = await tx.get_account(worker_id)
                    raise InsufficientBalance(worker_id, payout_amount, current.balance if current else None)

                payout = PayoutRequest(
                    request_id=uuid4().hex,
                    worker_id=worker_id,
                    amount=payout_amount,
                    method=payout_method,
                    account_details=dict(account_details or {}),
                    requested_at=now,
                    updated_at=now
                )
                await tx.insert_payout(payout)
                self._announce(tx, worker_id, EventType.PAYOUT_REQUESTED, payout, balance=str(remaining))

            self.logger.info("Payout requested", extra={
                "request_id": payout.request_id,
                "amount": str(payout_amount),
                "method": payout_method.value,
                "remaining_balance": str(remaining)
            })
            return payout

    async def approve_payout(self, request_id: str, admin_id: str) -> PayoutRequest:
        """
        Approve a pending request.

        Raises:
            PayoutNotFound: If the request does not exist
            InvalidState: If the request is not pending
        """
        async with self.store.transaction() as tx:
            payout = await self._load(tx, request_id)
            if payout.status != PayoutStatus.PENDING:
                raise InvalidState("payout", request_id, payout.status.value, [PayoutStatus.PENDING.value])

            now = utcnow()
            updated = await tx.cas_payout_status(
                request_id, [PayoutStatus.PENDING], PayoutStatus.APPROVED, now,
                processed_by=admin_id, processed_at=now
            )
            if updated is None:
                fresh = await tx.get_payout(request_id)
                raise InvalidState("payout", request_id, fresh.status.value, [PayoutStatus.PENDING.value])
            self._announce(tx, updated.worker_id, EventType.PAYOUT_APPROVED, updated)

        self.logger.info("Payout approved", extra={"request_id": request_id, "admin_id": admin_id})
        return updated

    async def reject_payout(self, request_id: str, admin_id: str, reason: str) -> PayoutRequest:
        """
        Reject a pending or approved request and return the reserved amount.

        Raises:
            MissingReason: If no reason is given
            PayoutNotFound: If the request does not exist
            InvalidState: If the request is processing, completed or already rejected
        """
        reason = (reason or "").strip()
        if not reason:
            raise MissingReason(request_id)

        expected = sorted(status.value for status in REJECTABLE_PAYOUT_STATUSES)
        async with self.store.transaction() as tx:
            payout = await self._load(tx, request_id)
            if payout.status not in REJECTABLE_PAYOUT_STATUSES:
                raise InvalidState("payout", request_id, payout.status.value, expected)

            now = utcnow()
            updated = await tx.cas_payout_status(
                request_id, REJECTABLE_PAYOUT_STATUSES, PayoutStatus.REJECTED, now,
                rejection_reason=reason, processed_by=admin_id, processed_at=now
            )
            if updated is None:
                fresh = await tx.get_payout(request_id)
                raise InvalidState("payout", request_id, fresh.status.value, expected)

            balance = await tx.credit_balance(updated.worker_id, updated.amount, now)
            self._announce(tx, updated.worker_id, EventType.PAYOUT_REJECTED, updated,
                           reason=reason, balance=str(balance) if balance is not None else None)

        self.logger.info("Payout rejected", extra={
            "request_id": request_id,
            "admin_id": admin_id,
            "refunded": str(updated.amount)
        })
        return updated

    async def process_payout(self, request_id: str, processor_ref: Optional[str] = None,
                             admin_id: Optional[str] = None) -> PayoutRequest:
        """
        Send an approved payout through the payment processor.

        The request is claimed (approved -> processing) before the processor
        is called so two callers cannot pay it twice. On failure or timeout it
        returns to approved and can be processed again. If that release or the
        final bookkeeping cannot be written, the request stays in processing
        until an administrator settles it with ``resolve_payout``.

        Raises:
            PayoutNotFound: If the request does not exist
            InvalidState: If the request is not approved
            ProcessorError: If the processor fails or times out
        """
        with LoggerContext(self.logger, request_id=request_id):
            async with self.store.transaction() as tx:
                payout = await self._load(tx, request_id)
                if payout.status != PayoutStatus.APPROVED:
                    raise InvalidState("payout", request_id, payout.status.value, [PayoutStatus.APPROVED.value])
                claimed = await tx.cas_payout_status(
                    request_id, [PayoutStatus.APPROVED], PayoutStatus.PROCESSING, utcnow()
                )
                if claimed is None:
                    fresh = await tx.get_payout(request_id)
                    raise InvalidState("payout", request_id, fresh.status.value, [PayoutStatus.APPROVED.value])

            self.logger.info("Submitting payout to processor", extra={
                "processor": getattr(self.processor, "name", type(self.processor).__name__),
                "amount": str(claimed.amount),
                "method": claimed.method.value
            })

            failure: Optional[ProcessorError] = None
            try:
                result: ProcessorResult = await asyncio.wait_for(
                    self.processor.submit_payout(
                        request_id, claimed.method, claimed.account_details, claimed.amount, processor_ref
                    ),
                    timeout=self.processor_timeout
                )
            except asyncio.TimeoutError:
                failure = ProcessorError(request_id, f"timed out after {self.processor_timeout}s", timed_out=True)
            except asyncio.CancelledError:
                await self._release_claim(request_id)
                raise
            except Exception as e:
                failure = ProcessorError(request_id, str(e))
                failure.__cause__ = e
            else:
                if not result.success:
                    failure = ProcessorError(request_id, result.reason or "payment was declined")

            if failure is not None:
                await self._release_claim(request_id)
                raise failure

            try:
                completed = await self._record_completion(request_id, result.reference,
                                                          admin_id or claimed.processed_by)
            except Exception:
                self.logger.critical("Payout was paid but could not be recorded; request left in processing",
                                     exc_info=True, extra={"reference": result.reference})
                raise

            self.logger.info("Payout completed", extra={"reference": result.reference})
            return completed

    async def _record_completion(self, request_id: str, reference: Optional[str],
                                 admin_id: Optional[str]) -> PayoutRequest:
        async with self.store.transaction() as tx:
            now = utcnow()
            completed = await tx.cas_payout_status(
                request_id, [PayoutStatus.PROCESSING], PayoutStatus.COMPLETED, now,
                processor_reference=reference,
                processed_at=now,
                processed_by=admin_id
            )
            if completed is None:
                fresh = await tx.get_payout(request_id)
                raise InvalidState("payout", request_id, fresh.status.value, [PayoutStatus.PROCESSING.value])
            self._announce(tx, completed.worker_id, EventType.PAYOUT_COMPLETED, completed, reference=reference)
        return completed

    async def _release_claim(self, request_id: str) -> bool:
        """Return a processing request to approved after a failed submission."""
        try:
            async with self.store.transaction() as tx:
                released = await tx.cas_payout_status(
                    request_id, [PayoutStatus.PROCESSING], PayoutStatus.APPROVED, utcnow()
                )
        except Exception:
            self.logger.error("Could not release payout claim; request left in processing", exc_info=True, extra={
                "request_id": request_id
            })
            return False
        self.logger.warning("Payout submission failed, request returned to approved", extra={
            "request_id": request_id,
            "released": released is not None
        })
        return released is not None

    async def resolve_payout(self, request_id: str, admin_id: str,
                             processor_ref: Optional[str] = None) -> PayoutRequest:
        """
        Settle a request left in processing.

        With a processor reference the transfer is recorded as completed;
        without one the request goes back to approved so it can be processed
        again. Only use this once the processor call has finished.

        Raises:
            PayoutNotFound: If the request does not exist
            InvalidState: If the request is not processing
        """
        processor_ref = (processor_ref or "").strip() or None
        async with self.store.transaction() as tx:
            payout = await self._load(tx, request_id)
            if payout.status != PayoutStatus.PROCESSING:
                raise InvalidState("payout", request_id, payout.status.value, [PayoutStatus.PROCESSING.value])

            now = utcnow()
            if processor_ref is None:
                updated = await tx.cas_payout_status(
                    request_id, [PayoutStatus.PROCESSING], PayoutStatus.APPROVED, now, processed_by=admin_id
                )
            else:
                updated = await tx.cas_payout_status(
                    request_id, [PayoutStatus.PROCESSING], PayoutStatus.COMPLETED, now,
                    processor_reference=processor_ref, processed_at=now, processed_by=admin_id
                )
            if updated is None:
                fresh = await tx.get_payout(request_id)
                raise InvalidState("payout", request_id, fresh.status.value, [PayoutStatus.PROCESSING.value])
            if updated.status == PayoutStatus.COMPLETED:
                self._announce(tx, updated.worker_id, EventType.PAYOUT_COMPLETED, updated, reference=processor_ref)

        self.logger.info("Payout resolved", extra={
            "request_id": request_id,
            "admin_id": admin_id,
            "status": updated.status.value
        })
        return updated

    async def get_payout(self, request_id: str) -> PayoutRequest:
        async with self.store.transaction() as tx:
            payout = await tx.get_payout(request_id)
        if payout is None:
            raise PayoutNotFound(request_id)
        return payout

    async def list_payouts(self, worker_id: Optional[str] = None,
                           status: Optional[Union[PayoutStatus, str]] = None) -> List[PayoutRequest]:
        status_filter = parse_enum(PayoutStatus, status, "status") if status is not None else None
        async with self.store.transaction() as tx:
            return await tx.list_payouts(worker_id=worker_id, status=status_filter)

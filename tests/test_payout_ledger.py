import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from order_settlement.core.exceptions import (
    DatabaseError, InsufficientBalance, InvalidAmount, InvalidState, MissingReason, PayoutNotFound,
    ProcessorError, ValidationError, WorkerNotEligible
)
from order_settlement.gateways.base import PaymentProcessor, ProcessorResult
from order_settlement.gateways.manual import ManualPaymentProcessor
from order_settlement.models.account import UserRole
from order_settlement.models.payout import PayoutMethod, PayoutStatus
from order_settlement.services.notification_bus import QueueTransport
from order_settlement.services.payout_ledger import PayoutLedger
from order_settlement.utils.memory_store import InMemoryStore

from .conftest import add_account, drain


class FakeProcessor(PaymentProcessor):
    name = "fake"

    def __init__(self, delay=0.0, error=None, result=None):
        self.delay = delay
        self.error = error
        self.result = result or ProcessorResult(success=True, reference="TX-1")
        self.calls = []

    async def submit_payout(self, request_id, method, account_details, amount, reference=None):
        self.calls.append(request_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def ledger(store, bus, processor):
    return PayoutLedger(store, processor, bus=bus, processor_timeout=1)


async def balance_of(store, worker_id):
    async with store.transaction() as tx:
        return (await tx.get_account(worker_id)).balance


async def approved_request(store, ledger, amount="400.00", balance="1000.00"):
    await add_account(store, "worker-1", balance=balance)
    payout = await ledger.request_payout("worker-1", amount, "mpesa", {"phone": "+254700000000"})
    return await ledger.approve_payout(payout.request_id, "admin-1")


async def test_request_payout_reserves_balance(store, bus, ledger):
    await add_account(store, "worker-1", balance="1000.00")
    transport = QueueTransport()
    await bus.connect("worker-1", transport)

    payout = await ledger.request_payout("worker-1", "250.50", PayoutMethod.BANK, {"iban": "DE00"})

    assert payout.status == PayoutStatus.PENDING
    assert payout.amount == Decimal("250.50")
    assert payout.account_details == {"iban": "DE00"}
    assert await balance_of(store, "worker-1") == Decimal("749.50")
    frames = drain(transport)
    assert frames[0]["type"] == "payout_requested"
    assert frames[0]["payload"]["balance"] == "749.50"


@pytest.mark.parametrize("amount", [0, "-5", "nope", "1e30"])
async def test_request_payout_rejects_bad_amounts(store, ledger, amount):
    await add_account(store, "worker-1", balance="1000.00")

    with pytest.raises(InvalidAmount):
        await ledger.request_payout("worker-1", amount, "mpesa")
    assert await balance_of(store, "worker-1") == Decimal("1000.00")


async def test_request_payout_validation(store, ledger):
    await add_account(store, "worker-1", balance="1000.00")

    with pytest.raises(ValidationError):
        await ledger.request_payout("worker-1", 100, "paypal")
    with pytest.raises(ValidationError):
        await ledger.request_payout("worker-1", 100, "mpesa", account_details=["not", "a", "dict"])

    strict = PayoutLedger(store, FakeProcessor(), minimum_payout=Decimal("500"))
    with pytest.raises(ValidationError):
        await strict.request_payout("worker-1", 100, "mpesa")


async def test_request_payout_eligibility(store, ledger):
    await add_account(store, "pending-worker", approved=False, balance="1000.00")
    await add_account(store, "client-1", role=UserRole.CLIENT, balance="1000.00")

    for user_id in ("pending-worker", "client-1", "ghost"):
        with pytest.raises(WorkerNotEligible):
            await ledger.request_payout(user_id, 100, "mpesa")


async def test_request_payout_insufficient_balance(store, ledger):
    await add_account(store, "worker-1", balance="99.99")

    with pytest.raises(InsufficientBalance) as exc_info:
        await ledger.request_payout("worker-1", 100, "mpesa")

    assert exc_info.value.details["available"] == "99.99"
    assert await ledger.list_payouts(worker_id="worker-1") == []


async def test_concurrent_requests_never_overdraw(store, ledger):
    await add_account(store, "worker-1", balance="1000.00")

    results = await asyncio.gather(
        *(ledger.request_payout("worker-1", 300, "mpesa") for _ in range(5)),
        return_exceptions=True
    )

    succeeded = [result for result in results if not isinstance(result, Exception)]
    failed = [result for result in results if isinstance(result, Exception)]
    assert len(succeeded) == 3
    assert all(isinstance(error, InsufficientBalance) for error in failed)
    assert await balance_of(store, "worker-1") == Decimal("100.00")
    assert len(await ledger.list_payouts(worker_id="worker-1")) == 3


async def test_approve_payout(store, ledger):
    payout = await approved_request(store, ledger)

    assert payout.status == PayoutStatus.APPROVED
    assert payout.processed_by == "admin-1"
    assert payout.processed_at is not None

    with pytest.raises(InvalidState):
        await ledger.approve_payout(payout.request_id, "admin-1")
    with pytest.raises(PayoutNotFound):
        await ledger.approve_payout("missing", "admin-1")


@pytest.mark.parametrize("approve_first", [False, True])
async def test_reject_payout_restores_reservation(store, bus, ledger, approve_first):
    await add_account(store, "worker-1", balance="1000.00")
    payout = await ledger.request_payout("worker-1", "333.33", "mpesa")
    if approve_first:
        await ledger.approve_payout(payout.request_id, "admin-1")
    transport = QueueTransport()
    await bus.connect("worker-1", transport)

    rejected = await ledger.reject_payout(payout.request_id, "admin-1", "  wrong phone number ")

    assert rejected.status == PayoutStatus.REJECTED
    assert rejected.rejection_reason == "wrong phone number"
    assert await balance_of(store, "worker-1") == Decimal("1000.00")
    frames = drain(transport)
    assert frames[0]["type"] == "payout_rejected"
    assert frames[0]["payload"]["reason"] == "wrong phone number"

    with pytest.raises(InvalidState):
        await ledger.reject_payout(payout.request_id, "admin-1", "again")
    assert await balance_of(store, "worker-1") == Decimal("1000.00")


async def test_reject_payout_requires_reason(store, ledger):
    await add_account(store, "worker-1", balance="1000.00")
    payout = await ledger.request_payout("worker-1", 100, "mpesa")

    for reason in ("", "   ", None):
        with pytest.raises(MissingReason):
            await ledger.reject_payout(payout.request_id, "admin-1", reason)

    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.PENDING
    assert await balance_of(store, "worker-1") == Decimal("900.00")


async def test_process_payout_completes(store, ledger, processor):
    payout = await approved_request(store, ledger)

    completed = await ledger.process_payout(payout.request_id, admin_id="admin-2")

    assert completed.status == PayoutStatus.COMPLETED
    assert completed.processor_reference == "TX-1"
    assert completed.processed_by == "admin-2"
    assert processor.calls == [payout.request_id]
    assert await balance_of(store, "worker-1") == Decimal("600.00")

    with pytest.raises(InvalidState):
        await ledger.reject_payout(payout.request_id, "admin-1", "too late")


async def test_process_requires_approval(store, ledger):
    await add_account(store, "worker-1", balance="1000.00")
    payout = await ledger.request_payout("worker-1", 100, "mpesa")

    with pytest.raises(InvalidState):
        await ledger.process_payout(payout.request_id)


async def test_processor_timeout_leaves_request_approved(store):
    slow = FakeProcessor(delay=5)
    ledger = PayoutLedger(store, slow, processor_timeout=0.05)
    payout = await approved_request(store, ledger)

    with pytest.raises(ProcessorError) as exc_info:
        await ledger.process_payout(payout.request_id)

    assert exc_info.value.timed_out is True
    assert exc_info.value.retryable is True
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.APPROVED
    assert await balance_of(store, "worker-1") == Decimal("600.00")


@pytest.mark.parametrize("processor", [
    FakeProcessor(error=RuntimeError("gateway exploded")),
    FakeProcessor(result=ProcessorResult(success=False, reason="declined")),
])
async def test_processor_failure_leaves_request_approved(store, ledger):
    payout = await approved_request(store, ledger)

    with pytest.raises(ProcessorError) as exc_info:
        await ledger.process_payout(payout.request_id)

    assert exc_info.value.timed_out is False
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.APPROVED
    assert await balance_of(store, "worker-1") == Decimal("600.00")


async def test_manual_processor_requires_reference(store):
    ledger = PayoutLedger(store, ManualPaymentProcessor())
    payout = await approved_request(store, ledger)

    with pytest.raises(ProcessorError):
        await ledger.process_payout(payout.request_id)
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.APPROVED

    completed = await ledger.process_payout(payout.request_id, processor_ref="MPESA-QX81")
    assert completed.processor_reference == "MPESA-QX81"


async def test_concurrent_processing_pays_once(store):
    processor = FakeProcessor(delay=0.05)
    ledger = PayoutLedger(store, processor)
    payout = await approved_request(store, ledger)

    results = await asyncio.gather(
        ledger.process_payout(payout.request_id),
        ledger.process_payout(payout.request_id),
        return_exceptions=True
    )

    assert sum(1 for result in results if isinstance(result, InvalidState)) == 1
    assert processor.calls == [payout.request_id]
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.COMPLETED


async def test_list_payouts_filters(store, ledger):
    await add_account(store, "worker-1", balance="1000.00")
    await add_account(store, "worker-2", balance="1000.00")
    first = await ledger.request_payout("worker-1", 100, "mpesa")
    await ledger.request_payout("worker-1", 200, "bank")
    await ledger.request_payout("worker-2", 300, "mpesa")
    await ledger.approve_payout(first.request_id, "admin-1")

    assert len(await ledger.list_payouts()) == 3
    assert len(await ledger.list_payouts(worker_id="worker-1")) == 2
    approved = await ledger.list_payouts(status="approved")
    assert [payout.request_id for payout in approved] == [first.request_id]
    with pytest.raises(ValidationError):
        await ledger.list_payouts(status="lost")


class OutageStore(InMemoryStore):
    """In-memory store whose transactions fail while ``down`` is set."""

    def __init__(self):
        super().__init__()
        self.down = False

    @asynccontextmanager
    async def transaction(self):
        if self.down:
            raise DatabaseError("transaction", "connection refused")
        async with super().transaction() as tx:
            yield tx


class OutageProcessor(FakeProcessor):
    """Takes the store down while the payout is in flight."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store
        self.outage = True

    async def submit_payout(self, request_id, method, account_details, amount, reference=None):
        if self.outage:
            self.store.down = True
        return await super().submit_payout(request_id, method, account_details, amount, reference)


async def test_failed_release_keeps_processor_error():
    store = OutageStore()
    processor = OutageProcessor(store, error=ConnectionError("gateway reset"))
    ledger = PayoutLedger(store, processor, processor_timeout=1)
    payout = await approved_request(store, ledger)

    with pytest.raises(ProcessorError):
        await ledger.process_payout(payout.request_id)

    store.down = False
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.PROCESSING
    with pytest.raises(InvalidState):
        await ledger.reject_payout(payout.request_id, "admin-1", "stuck")

    released = await ledger.resolve_payout(payout.request_id, "admin-1")
    assert released.status == PayoutStatus.APPROVED

    processor.error = None
    processor.outage = False
    completed = await ledger.process_payout(payout.request_id)
    assert completed.status == PayoutStatus.COMPLETED
    assert await balance_of(store, "worker-1") == Decimal("600.00")


async def test_paid_but_unrecorded_payout_is_resolved_with_reference():
    store = OutageStore()
    processor = OutageProcessor(store, result=ProcessorResult(success=True, reference="TX-9"))
    ledger = PayoutLedger(store, processor, processor_timeout=1)
    payout = await approved_request(store, ledger)

    with pytest.raises(DatabaseError):
        await ledger.process_payout(payout.request_id)

    store.down = False
    assert (await ledger.get_payout(payout.request_id)).status == PayoutStatus.PROCESSING

    resolved = await ledger.resolve_payout(payout.request_id, "admin-1", processor_ref=" TX-9 ")
    assert resolved.status == PayoutStatus.COMPLETED
    assert resolved.processor_reference == "TX-9"
    assert resolved.processed_by == "admin-1"
    assert await balance_of(store, "worker-1") == Decimal("600.00")
    assert processor.calls == [payout.request_id]


async def test_resolve_payout_only_applies_to_processing(store, ledger):
    payout = await approved_request(store, ledger)

    with pytest.raises(InvalidState):
        await ledger.resolve_payout(payout.request_id, "admin-1")
    with pytest.raises(PayoutNotFound):
        await ledger.resolve_payout("missing", "admin-1")

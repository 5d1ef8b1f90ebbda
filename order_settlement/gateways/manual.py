"""
Back-office payment processor and logging dispatcher.

Money is sent by an administrator outside the system (M-Pesa or bank
transfer); the processor only records the transaction reference they enter.
"""

from collections import deque
from decimal import Decimal
from typing import Deque, Dict, Any, Optional

from ..models.payout import PayoutMethod
from ..utils.logger import get_logger
from .base import PaymentProcessor, ProcessorResult, MessageDispatcher


class ManualPaymentProcessor(PaymentProcessor):
    """Confirms a payout with the reference of a transfer made by hand."""

    name = "manual"

    def __init__(self):
        self.logger = get_logger(__name__)

    async def submit_payout(
        self,
        request_id: str,
        method: PayoutMethod,
        account_details: Dict[str, Any],
        amount: Decimal,
        reference: Optional[str] = None
    ) -> ProcessorResult:
        reference = (reference or "").strip()
        if not reference:
            return ProcessorResult(success=False, reason="transaction reference is required")

        self.logger.info("Manual payout confirmed", extra={
            "request_id": request_id,
            "method": method.value,
            "amount": str(amount),
            "reference": reference
        })
        return ProcessorResult(success=True, reference=reference)


class LoggingDispatcher(MessageDispatcher):
    """
    Default dispatcher: records messages in the log instead of sending them.

    The most recent ``history_size`` messages stay available in ``sent``.
    """

    def __init__(self, history_size: int = 100):
        self.logger = get_logger(__name__)
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=history_size)

    async def send(self, user_id: str, template: str, data: Dict[str, Any]) -> None:
        self.sent.append({"user_id": user_id, "template": template, "data": data})
        self.logger.info(f"Dispatching '{template}' to {user_id}", extra={
            "user_id": user_id,
            "template": template
        })

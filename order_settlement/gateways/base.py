"""
Base gateway interfaces.

Defines the contracts the settlement core uses to reach the outside world:
the payment processor that moves money for payouts and the dispatcher that
delivers durable (email/push) messages.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Any, Optional

from ..models.payout import PayoutMethod


@dataclass
class ProcessorResult:
    """Outcome reported by a payment processor."""

    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reference": self.reference,
            "reason": self.reason
        }


class PaymentProcessor(ABC):
    """
    Abstract base class for payment processors.

    Implementations must be safe to call again with the same ``request_id``
    after a timeout; the payout ledger retries by re-running the payout.
    """

    name = "processor"

    @abstractmethod
    async def submit_payout(
        self,
        request_id: str,
        method: PayoutMethod,
        account_details: Dict[str, Any],
        amount: Decimal,
        reference: Optional[str] = None
    ) -> ProcessorResult:
        """
        Send money to a worker.

        Args:
            request_id: Payout request being paid, usable as an idempotency key
            method: Payout rail
            account_details: Opaque destination details captured at request time
            amount: Amount to send
            reference: Caller-supplied transaction reference, if any

        Returns:
            ProcessorResult describing success or failure
        """
        pass

    async def close(self) -> None:
        """Release processor resources."""


class MessageDispatcher(ABC):
    """Fire-and-forget delivery of templated messages to a user."""

    @abstractmethod
    async def send(self, user_id: str, template: str, data: Dict[str, Any]) -> None:
        """
        Queue a message for delivery.

        Args:
            user_id: Recipient
            template: Message template name
            data: Template variables
        """
        pass

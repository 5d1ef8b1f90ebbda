"""
Payout request models for the order settlement core
"""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from .common import utcnow, to_money, parse_enum, parse_datetime, iso


class PayoutStatus(Enum):
    """Payout request status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"


class PayoutMethod(Enum):
    """Supported payout rails."""
    MPESA = "mpesa"
    BANK = "bank"


# Statuses from which a payout may still be rejected (reserved amount refunded)
REJECTABLE_PAYOUT_STATUSES = frozenset({PayoutStatus.PENDING, PayoutStatus.APPROVED})

TERMINAL_PAYOUT_STATUSES = frozenset({PayoutStatus.COMPLETED, PayoutStatus.REJECTED})


@dataclass
class PayoutRequest:
    """A worker's withdrawal request against their available balance."""

    request_id: str
    worker_id: str
    amount: Decimal
    method: PayoutMethod
    account_details: Dict[str, Any] = field(default_factory=dict)
    status: PayoutStatus = PayoutStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    processor_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYOUT_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "worker_id": self.worker_id,
            "amount": str(self.amount),
            "method": self.method.value,
            "account_details": self.account_details,
            "status": self.status.value,
            "requested_at": iso(self.requested_at),
            "processed_at": iso(self.processed_at),
            "processed_by": self.processed_by,
            "processor_reference": self.processor_reference,
            "rejection_reason": self.rejection_reason,
            "updated_at": iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PayoutRequest":
        data = dict(data)
        for field_name in ["requested_at", "processed_at", "updated_at"]:
            if data.get(field_name) is not None:
                data[field_name] = parse_datetime(data[field_name])
        data["status"] = parse_enum(PayoutStatus, data.get("status", PayoutStatus.PENDING.value), "status")
        data["method"] = parse_enum(PayoutMethod, data["method"], "method")
        data["amount"] = to_money(data["amount"])
        data["account_details"] = data.get("account_details") or {}
        return cls(**data)

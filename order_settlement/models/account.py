"""
User account models for the order settlement core

Only the slice of a user the settlement core depends on: role, approval
and the available balance that payouts are reserved from.
"""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any
from dataclasses import dataclass, field

from .common import utcnow, to_money, parse_enum, parse_datetime, iso


class UserRole(Enum):
    """User role enumeration."""
    CLIENT = "client"
    WORKER = "worker"
    MANAGER = "manager"
    ADMIN = "admin"


@dataclass
class UserAccount:
    """User account with balance bookkeeping."""

    user_id: str
    role: UserRole
    approved: bool = False
    balance: Decimal = Decimal("0.00")
    total_earned: Decimal = Decimal("0.00")
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def can_request_payout(self) -> bool:
        return self.role == UserRole.WORKER and self.approved

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "approved": self.approved,
            "balance": str(self.balance),
            "total_earned": str(self.total_earned),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserAccount":
        data = dict(data)
        data["role"] = parse_enum(UserRole, data["role"], "role")
        data["balance"] = to_money(data.get("balance") or 0, "balance")
        data["total_earned"] = to_money(data.get("total_earned") or 0, "total_earned")
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name) is not None:
                data[field_name] = parse_datetime(data[field_name])
        return cls(**data)

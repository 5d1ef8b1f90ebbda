"""
Earnings tier models for the order settlement core

Defines the piece-rate tier schedule, per-worker tier progress, the
append-only earnings ledger and the derived progress report.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

from .common import utcnow, to_money, parse_datetime, iso


@dataclass(frozen=True)
class EarningsTier:
    """One entry of the piece-rate schedule. Immutable reference data."""

    level: int
    min_completed_orders: int
    standard_rate: Decimal
    technical_rate: Decimal
    label: str
    description: str = ""

    def rate_for(self, technical: bool) -> Decimal:
        """Per-page rate for standard or technical work."""
        return self.technical_rate if technical else self.standard_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "min_completed_orders": self.min_completed_orders,
            "standard_rate": str(self.standard_rate),
            "technical_rate": str(self.technical_rate),
            "label": self.label,
            "description": self.description
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EarningsTier":
        return cls(
            level=int(data["level"]),
            min_completed_orders=int(data["min_completed_orders"]),
            standard_rate=to_money(data["standard_rate"], "standard_rate"),
            technical_rate=to_money(data["technical_rate"], "technical_rate"),
            label=data["label"],
            description=data.get("description") or ""
        )


# Default schedule: thresholds are lifetime completed orders needed to unlock a level
DEFAULT_TIER_SCHEDULE = (
    EarningsTier(1, 0, Decimal("200.00"), Decimal("230.00"), "Starter", "Beginning your journey with us"),
    EarningsTier(2, 3, Decimal("210.00"), Decimal("240.00"), "Rising", "Showing consistent quality work"),
    EarningsTier(3, 8, Decimal("220.00"), Decimal("250.00"), "Established", "Building a strong reputation"),
    EarningsTier(4, 23, Decimal("230.00"), Decimal("260.00"), "Expert", "Trusted by many clients"),
    EarningsTier(5, 50, Decimal("250.00"), Decimal("280.00"), "Master", "Excellence in every project"),
)


@dataclass
class WorkerProgress:
    """Per-worker tier progression state."""

    worker_id: str
    current_level: int = DEFAULT_TIER_SCHEDULE[0].level
    total_completed_orders: int = 0
    orders_in_current_level: int = 0
    is_specialized: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "current_level": self.current_level,
            "total_completed_orders": self.total_completed_orders,
            "orders_in_current_level": self.orders_in_current_level,
            "is_specialized": self.is_specialized,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerProgress":
        data = dict(data)
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name) is not None:
                data[field_name] = parse_datetime(data[field_name])
        return cls(**data)


@dataclass
class EarningsEntry:
    """Ledger row crediting one settled order to a worker. Keyed by order id."""

    order_id: str
    worker_id: str
    amount: Decimal
    tier_level: int
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "worker_id": self.worker_id,
            "amount": str(self.amount),
            "tier_level": self.tier_level,
            "created_at": iso(self.created_at)
        }


@dataclass
class TierProgressReport:
    """Derived view of where a worker stands in the tier schedule."""

    worker_id: str
    current_level: int
    level_label: str
    total_completed_orders: int
    orders_in_current_level: int
    orders_to_next_level: int
    progress_percent: float
    current_rate: Decimal
    next_level_rate: Decimal
    is_specialized: bool
    next_level: Optional[int] = None

    @property
    def is_top_tier(self) -> bool:
        return self.next_level is None

    def status_message(self) -> str:
        if self.is_top_tier:
            return f"You've reached {self.level_label} tier. Enjoy a rate of {self.current_rate} for all your work."
        total = self.orders_in_current_level + self.orders_to_next_level
        return (
            f"{self.orders_in_current_level}/{total} orders completed in {self.level_label} tier. "
            f"{self.orders_to_next_level} more to advance!"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "current_level": self.current_level,
            "level_label": self.level_label,
            "total_completed_orders": self.total_completed_orders,
            "orders_in_current_level": self.orders_in_current_level,
            "orders_to_next_level": self.orders_to_next_level,
            "progress_percent": round(self.progress_percent, 2),
            "current_rate": str(self.current_rate),
            "next_level_rate": str(self.next_level_rate),
            "is_specialized": self.is_specialized,
            "next_level": self.next_level,
            "message": self.status_message()
        }

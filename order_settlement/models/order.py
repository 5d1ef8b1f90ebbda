"""
Order and bid data models for the order settlement core

Defines work orders, the bids workers place on them, the order status
transition table and the append-only status log.
"""

from enum import Enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, FrozenSet
from dataclasses import dataclass, field

from .common import utcnow, to_money, parse_enum, parse_datetime, iso


class OrderStatus(Enum):
    """Order lifecycle status enumeration."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    EDITING = "editing"  # QA stage
    DELIVERED = "delivered"
    REVISION = "revision"
    APPROVED = "approved"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BidStatus(Enum):
    """Bid status enumeration."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Order status transition rules
ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED, OrderStatus.EDITING}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.EDITING}),
    OrderStatus.EDITING: frozenset({OrderStatus.DELIVERED, OrderStatus.REVISION, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REVISION, OrderStatus.PAID, OrderStatus.APPROVED}),
    OrderStatus.REVISION: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.EDITING}),
    OrderStatus.APPROVED: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),  # Terminal state
    OrderStatus.CANCELLED: frozenset(),  # Terminal state
}

TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Statuses in which an order must carry an assigned worker
WORKER_REQUIRED_STATUSES = frozenset({
    OrderStatus.ASSIGNED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.EDITING,
    OrderStatus.DELIVERED,
    OrderStatus.REVISION,
    OrderStatus.APPROVED,
    OrderStatus.PAID,
    OrderStatus.COMPLETED,
})


def can_transition_to(current_status: OrderStatus, target_status: OrderStatus) -> bool:
    """Check if an order can move from current status to target status."""
    if current_status == target_status:
        return True
    return target_status in ORDER_STATUS_TRANSITIONS.get(current_status, frozenset())


def get_valid_transitions(current_status: OrderStatus) -> FrozenSet[OrderStatus]:
    """Get the set of valid next statuses from current status."""
    return ORDER_STATUS_TRANSITIONS.get(current_status, frozenset())


def is_terminal_status(status: OrderStatus) -> bool:
    """Check if a status is terminal (no further transitions allowed)."""
    return status in TERMINAL_STATUSES


@dataclass
class Order:
    """Core work order data model."""

    # Primary identification
    order_id: str
    client_id: str

    # Work description
    work_type: str = ""
    page_count: int = 0
    slide_count: int = 0
    amount: Decimal = Decimal("0.00")

    # Assignment
    assigned_worker_id: Optional[str] = None
    manager_id: Optional[str] = None

    # Status tracking
    status: OrderStatus = OrderStatus.PENDING
    payment_confirmed: bool = False
    earnings_counted: bool = False
    deliverable_ref: Optional[str] = None

    # Timing
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary for serialization."""
        return {
            "order_id": self.order_id,
            "client_id": self.client_id,
            "work_type": self.work_type,
            "page_count": self.page_count,
            "slide_count": self.slide_count,
            "amount": str(self.amount),
            "assigned_worker_id": self.assigned_worker_id,
            "manager_id": self.manager_id,
            "status": self.status.value,
            "payment_confirmed": self.payment_confirmed,
            "earnings_counted": self.earnings_counted,
            "deliverable_ref": self.deliverable_ref,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        """Create order from dictionary or database row."""
        data = dict(data)
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name) is not None:
                data[field_name] = parse_datetime(data[field_name])
        data["status"] = parse_enum(OrderStatus, data.get("status", OrderStatus.PENDING.value), "status")
        data["amount"] = to_money(data.get("amount") or 0)
        data["page_count"] = int(data.get("page_count") or 0)
        data["slide_count"] = int(data.get("slide_count") or 0)
        return cls(**data)

    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def is_settled(self) -> bool:
        """Completed with payment confirmed: the only state that earns the worker money."""
        return self.status == OrderStatus.COMPLETED and self.payment_confirmed

    def participants(self) -> List[str]:
        """Users who hear about changes to this order."""
        users = [self.client_id]
        if self.assigned_worker_id and self.assigned_worker_id not in users:
            users.append(self.assigned_worker_id)
        return users


@dataclass
class Bid:
    """A worker's offer to fulfil an order."""

    bid_id: str
    order_id: str
    worker_id: str
    amount: Decimal
    message: str = ""
    status: BidStatus = BidStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert bid to dictionary."""
        return {
            "bid_id": self.bid_id,
            "order_id": self.order_id,
            "worker_id": self.worker_id,
            "amount": str(self.amount),
            "message": self.message,
            "status": self.status.value,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bid":
        data = dict(data)
        for field_name in ["created_at", "updated_at"]:
            if data.get(field_name) is not None:
                data[field_name] = parse_datetime(data[field_name])
        data["status"] = parse_enum(BidStatus, data.get("status", BidStatus.PENDING.value), "status")
        data["amount"] = to_money(data["amount"])
        return cls(**data)


@dataclass
class OrderStatusLog:
    """Append-only record of an effective order status change."""

    log_id: str
    order_id: str
    old_status: OrderStatus
    new_status: OrderStatus
    actor: str
    note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_id": self.log_id,
            "order_id": self.order_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "actor": self.actor,
            "note": self.note,
            "created_at": iso(self.created_at)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderStatusLog":
        data = dict(data)
        data["old_status"] = parse_enum(OrderStatus, data["old_status"], "old_status")
        data["new_status"] = parse_enum(OrderStatus, data["new_status"], "new_status")
        if data.get("created_at") is not None:
            data["created_at"] = parse_datetime(data["created_at"])
        return cls(**data)

"""
Data models for the order settlement core

Orders and bids, the earnings tier schedule and worker progress, user
accounts, payout requests and notification events.
"""

# Order models
from .order import (
    Order,
    OrderStatus,
    Bid,
    BidStatus,
    OrderStatusLog,
    ORDER_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    WORKER_REQUIRED_STATUSES,
    can_transition_to,
    get_valid_transitions,
    is_terminal_status
)

# Earnings models
from .earnings import (
    EarningsTier,
    WorkerProgress,
    EarningsEntry,
    TierProgressReport,
    DEFAULT_TIER_SCHEDULE
)

# Account and payout models
from .account import UserAccount, UserRole
from .payout import PayoutRequest, PayoutStatus, PayoutMethod

# Events
from .notification import NotificationEvent, EventType

__all__ = [
    "Order",
    "OrderStatus",
    "Bid",
    "BidStatus",
    "OrderStatusLog",
    "ORDER_STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "WORKER_REQUIRED_STATUSES",
    "can_transition_to",
    "get_valid_transitions",
    "is_terminal_status",

    "EarningsTier",
    "WorkerProgress",
    "EarningsEntry",
    "TierProgressReport",
    "DEFAULT_TIER_SCHEDULE",

    "UserAccount",
    "UserRole",
    "PayoutRequest",
    "PayoutStatus",
    "PayoutMethod",

    "NotificationEvent",
    "EventType"
]

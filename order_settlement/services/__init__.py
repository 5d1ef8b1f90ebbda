"""
Services package for the order settlement core

Contains the state machine, ledgers, earnings engine and notification bus.
"""

from .order_state_machine import OrderStateMachine
from .bid_ledger import BidLedger, BidAcceptance
from .earnings_engine import EarningsEngine
from .payout_ledger import PayoutLedger
from .notification_bus import NotificationBus, Connection, Transport, QueueTransport, TransportClosed

__all__ = [
    "OrderStateMachine",
    "BidLedger",
    "BidAcceptance",
    "EarningsEngine",
    "PayoutLedger",
    "NotificationBus",
    "Connection",
    "Transport",
    "QueueTransport",
    "TransportClosed"
]

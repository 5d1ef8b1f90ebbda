"""
Notification event model shared by the bus, the ledgers and the dispatcher.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Dict, Any
from dataclasses import dataclass, field
from uuid import uuid4

from .common import utcnow


class EventType(Enum):
    """Event types announced to connected clients."""
    STATUS_CHANGED = "status_changed"
    ORDER_ASSIGNED = "order_assigned"
    BID_PLACED = "bid_placed"
    BID_REJECTED = "bid_rejected"
    PAYOUT_REQUESTED = "payout_requested"
    PAYOUT_APPROVED = "payout_approved"
    PAYOUT_REJECTED = "payout_rejected"
    PAYOUT_COMPLETED = "payout_completed"
    EARNINGS_CREDITED = "earnings_credited"
    TIER_ADVANCED = "tier_advanced"
    KEEPALIVE = "keepalive"


@dataclass
class NotificationEvent:
    """A structured state-change event."""

    event_type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.event_type.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat()
        }

    def serialize(self) -> bytes:
        """Encode the event as UTF-8 JSON."""
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False).encode("utf-8")

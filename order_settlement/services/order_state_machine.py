"""
OrderStateMachine service for the order settlement core

Enforces the order status transition table under concurrent writers. Every
effective change is a compare-and-set on the current status, is logged in the
same transaction and is announced to the order's participants after commit.
"""

import functools
from typing import FrozenSet, Optional, Union
from uuid import uuid4

from ..models.common import utcnow, parse_enum
from ..models.order import (
    Order, OrderStatus, OrderStatusLog,
    WORKER_REQUIRED_STATUSES, can_transition_to, get_valid_transitions, is_terminal_status
)
from ..models.notification import NotificationEvent, EventType
from ..utils.store import SettlementStore, StoreTransaction
from ..utils.logger import get_logger, set_log_context, LoggerContext
from ..core.exceptions import InvalidTransition, OrderNotFound


def _values(statuses: FrozenSet[OrderStatus]):
    return [status.value for status in statuses]


class OrderStateMachine:
    """
    Applies order status transitions.

    ``transition`` runs inside the caller's transaction when one is given
    (bid acceptance does this) and opens its own otherwise.
    """

    def __init__(self, store: SettlementStore, bus=None):
        """
        Initialize OrderStateMachine.

        Args:
            store: Settlement store
            bus: Optional NotificationBus receiving ``status_changed`` events
        """
        self.store = store
        self.bus = bus

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="order_state_machine")

    @staticmethod
    def allowed_transitions(status: Union[OrderStatus, str]) -> FrozenSet[OrderStatus]:
        return get_valid_transitions(parse_enum(OrderStatus, status, "status"))

    @staticmethod
    def is_terminal(status: Union[OrderStatus, str]) -> bool:
        return is_terminal_status(parse_enum(OrderStatus, status, "status"))

    @staticmethod
    def can_transition(current: Union[OrderStatus, str], target: Union[OrderStatus, str]) -> bool:
        return can_transition_to(
            parse_enum(OrderStatus, current, "current_status"),
            parse_enum(OrderStatus, target, "target_status")
        )

    async def transition(
        self,
        order_id: str,
        target: Union[OrderStatus, str],
        actor: str = "system",
        note: Optional[str] = None,
        tx: Optional[StoreTransaction] = None,
        assigned_worker_id: Optional[str] = None
    ) -> Order:
        """
        Move an order to ``target``.

        A transition to the current status is a no-op: nothing is written and
        nothing is published.

        Args:
            order_id: Order to move
            target: Target status
            actor: Who requested the change, recorded in the status log
            note: Optional free-text note for the status log
            tx: Caller's transaction, if any
            assigned_worker_id: Worker to assign together with the status change

        Returns:
            The order as it stands after the call

        Raises:
            OrderNotFound: If the order does not exist
            InvalidTransition: If the target is not reachable from the current status
        """
        target = parse_enum(OrderStatus, target, "target_status")
        if tx is None:
            async with self.store.transaction() as own_tx:
                return await self._transition(own_tx, order_id, target, actor, note, assigned_worker_id)
        return await self._transition(tx, order_id, target, actor, note, assigned_worker_id)

    async def _transition(self, tx: StoreTransaction, order_id: str, target: OrderStatus, actor: str,
                          note: Optional[str], assigned_worker_id: Optional[str]) -> Order:
        with LoggerContext(self.logger, order_id=order_id):
            order = await tx.get_order(order_id, for_update=True)
            if order is None:
                raise OrderNotFound(order_id)

            current = order.status
            if current == target:
                return order

            allowed = get_valid_transitions(current)
            if target not in allowed:
                raise InvalidTransition(order_id, current.value, target.value, _values(allowed))

            worker_id = assigned_worker_id or order.assigned_worker_id
            if target in WORKER_REQUIRED_STATUSES and not worker_id:
                raise InvalidTransition(
                    order_id, current.value, target.value, _values(allowed),
                    reason="order has no assigned worker"
                )

            now = utcnow()
            if not await tx.cas_order_status(order_id, current, target, now, assigned_worker_id):
                # Lost a race: judge the request against the fresh status
                fresh = await tx.get_order(order_id)
                if fresh is None:
                    raise OrderNotFound(order_id)
                if fresh.status == target:
                    return fresh
                raise InvalidTransition(
                    order_id, fresh.status.value, target.value, _values(get_valid_transitions(fresh.status)),
                    reason="status changed concurrently"
                )

            await tx.insert_status_log(OrderStatusLog(
                log_id=uuid4().hex,
                order_id=order_id,
                old_status=current,
                new_status=target,
                actor=actor,
                note=note,
                created_at=now
            ))

            order.status = target
            order.updated_at = now
            if assigned_worker_id:
                order.assigned_worker_id = assigned_worker_id

            self.logger.info("Order status changed", extra={
                "old_status": current.value,
                "new_status": target.value,
                "actor": actor
            })

            if self.bus is not None:
                event = NotificationEvent(EventType.STATUS_CHANGED, {
                    "order_id": order_id,
                    "old_status": current.value,
                    "new_status": target.value,
                    "actor": actor
                })
                tx.on_commit(functools.partial(self.bus.publish_many, order.participants(), event))

            return order

    async def get_order(self, order_id: str) -> Order:
        async with self.store.transaction() as tx:
            order = await tx.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def get_history(self, order_id: str):
        """Status log of an order, oldest first."""
        async with self.store.transaction() as tx:
            if await tx.get_order(order_id) is None:
                raise OrderNotFound(order_id)
            return await tx.list_status_logs(order_id)

"""
Exception classes for the order settlement core

Every failure a settlement operation can report is a typed, catchable exception
carrying an error code and a details payload. The API layer decides the
user-facing response from ``to_dict()``.
"""

from decimal import Decimal
from typing import Optional, Dict, Any, Iterable


class SettlementError(Exception):
    """Base exception for all settlement errors."""

    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        error_registry.record_error(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
            "retryable": self.retryable
        }


class InvalidTransition(SettlementError):
    """Raised when an order status change is not in the transition table."""

    def __init__(self, order_id: str, current_status: str, target_status: str,
                 allowed: Iterable[str], reason: Optional[str] = None):
        allowed_list = sorted(allowed)
        message = (
            f"Cannot transition order {order_id} from '{current_status}' to '{target_status}'. "
            f"Valid transitions: {', '.join(allowed_list) or 'none'}"
        )
        if reason:
            message += f" ({reason})"
        super().__init__(
            message,
            error_code="INVALID_TRANSITION",
            details={
                "order_id": order_id,
                "current_status": current_status,
                "target_status": target_status,
                "allowed": allowed_list,
                "reason": reason
            }
        )
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = allowed_list


class OrderNotFound(SettlementError):
    """Raised when a requested order cannot be found."""

    def __init__(self, order_id: str):
        super().__init__(
            f"Order {order_id} not found",
            error_code="ORDER_NOT_FOUND",
            details={"order_id": order_id}
        )


class OrderNotBiddable(SettlementError):
    """Raised when an order no longer accepts bids or bid acceptance."""

    def __init__(self, order_id: str, status: str):
        super().__init__(
            f"Order {order_id} is not open for bidding (status: {status})",
            error_code="ORDER_NOT_BIDDABLE",
            details={"order_id": order_id, "status": status}
        )


class BidNotFound(SettlementError):
    """Raised when a requested bid cannot be found."""

    def __init__(self, bid_id: str):
        super().__init__(
            f"Bid {bid_id} not found",
            error_code="BID_NOT_FOUND",
            details={"bid_id": bid_id}
        )


class InvalidAmount(SettlementError):
    """Raised when a monetary amount is zero, negative or malformed."""

    def __init__(self, amount: Any, field: str = "amount"):
        super().__init__(
            f"Invalid {field}: {amount}. Amount must be a positive number",
            error_code="INVALID_AMOUNT",
            details={"field": field, "amount": str(amount)}
        )


class InsufficientBalance(SettlementError):
    """Raised when a reservation exceeds the worker's available balance."""

    def __init__(self, worker_id: str, requested: Decimal, available: Optional[Decimal] = None):
        message = f"Insufficient balance for worker {worker_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(
            message,
            error_code="INSUFFICIENT_BALANCE",
            details={
                "worker_id": worker_id,
                "requested": str(requested),
                "available": str(available) if available is not None else None
            }
        )


class WorkerNotEligible(SettlementError):
    """Raised when a user may not request payouts."""

    def __init__(self, worker_id: str, reason: str):
        super().__init__(
            f"Worker {worker_id} is not eligible: {reason}",
            error_code="WORKER_NOT_ELIGIBLE",
            details={"worker_id": worker_id, "reason": reason}
        )


class InvalidState(SettlementError):
    """Raised when an entity is not in a state that permits the operation."""

    def __init__(self, entity: str, entity_id: str, status: str, expected: Iterable[str]):
        expected_list = sorted(expected)
        super().__init__(
            f"{entity} {entity_id} is {status}; expected one of: {', '.join(expected_list)}",
            error_code="INVALID_STATE",
            details={
                "entity": entity,
                "entity_id": entity_id,
                "status": status,
                "expected": expected_list
            }
        )
        self.status = status


class MissingReason(SettlementError):
    """Raised when a rejection is attempted without a reason."""

    def __init__(self, request_id: str):
        super().__init__(
            f"Rejection reason is required for payout request {request_id}",
            error_code="MISSING_REASON",
            details={"request_id": request_id}
        )


class ProcessorError(SettlementError):
    """Raised when the payment processor fails or times out. Safe to retry."""

    retryable = True

    def __init__(self, request_id: str, message: str, timed_out: bool = False):
        super().__init__(
            f"Payment processor failed for payout request {request_id}: {message}",
            error_code="PROCESSOR_TIMEOUT" if timed_out else "PROCESSOR_ERROR",
            details={"request_id": request_id, "timed_out": timed_out}
        )
        self.timed_out = timed_out


class PayoutNotFound(SettlementError):
    """Raised when a payout request cannot be found."""

    def __init__(self, request_id: str):
        super().__init__(
            f"Payout request {request_id} not found",
            error_code="PAYOUT_NOT_FOUND",
            details={"request_id": request_id}
        )


class ValidationError(SettlementError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class ConfigurationError(SettlementError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(SettlementError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class NotificationError(SettlementError):
    """Raised when an event cannot be serialized or a connection cannot be registered."""

    def __init__(self, message: str, connection_id: Optional[str] = None):
        super().__init__(
            f"Notification error: {message}",
            error_code="NOTIFICATION_ERROR",
            details={"connection_id": connection_id}
        )


class CoordinatorError(SettlementError):
    """Raised when the coordinator is used before start or fails to start."""

    def __init__(self, message: str):
        super().__init__(message, error_code="COORDINATOR_ERROR")


class ErrorRegistry:
    """Registry for tracking raised error types."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: SettlementError):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        self.error_counts.clear()


error_registry = ErrorRegistry()

"""
Core package for the order settlement core

Contains the coordinator and the exception hierarchy.
"""

from .exceptions import (
    SettlementError,
    InvalidTransition,
    OrderNotFound,
    OrderNotBiddable,
    BidNotFound,
    InvalidAmount,
    InsufficientBalance,
    WorkerNotEligible,
    InvalidState,
    MissingReason,
    ProcessorError,
    PayoutNotFound,
    ValidationError,
    ConfigurationError,
    DatabaseError,
    NotificationError,
    CoordinatorError,
    error_registry
)
from .coordinator import SettlementCoordinator

__all__ = [
    "SettlementCoordinator",
    "SettlementError",
    "InvalidTransition",
    "OrderNotFound",
    "OrderNotBiddable",
    "BidNotFound",
    "InvalidAmount",
    "InsufficientBalance",
    "WorkerNotEligible",
    "InvalidState",
    "MissingReason",
    "ProcessorError",
    "PayoutNotFound",
    "ValidationError",
    "ConfigurationError",
    "DatabaseError",
    "NotificationError",
    "CoordinatorError",
    "error_registry"
]

"""
Gateways to external collaborators: payment processors and message dispatch.
"""

from .base import PaymentProcessor, ProcessorResult, MessageDispatcher
from .manual import ManualPaymentProcessor, LoggingDispatcher
from .http import HttpPaymentProcessor, CircuitBreaker, CircuitBreakerConfig

__all__ = [
    "PaymentProcessor",
    "ProcessorResult",
    "MessageDispatcher",
    "ManualPaymentProcessor",
    "LoggingDispatcher",
    "HttpPaymentProcessor",
    "CircuitBreaker",
    "CircuitBreakerConfig"
]

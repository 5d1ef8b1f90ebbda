"""
HTTP payment processor.

Posts payout instructions to a payment gateway over HTTP and guards the
gateway with a circuit breaker so a failing provider is not hammered.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from dataclasses import dataclass
from typing import Dict, Any, Optional

import httpx

from ..models.payout import PayoutMethod
from ..utils.logger import get_logger
from .base import PaymentProcessor, ProcessorResult


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_duration: float = 60.0


class CircuitBreaker:
    """
    Tracks gateway failures and opens after ``failure_threshold`` in a row.

    While open, calls are refused until ``timeout_duration`` has passed; then
    a trial call is let through (half-open).
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time: Optional[datetime] = None
        self.logger = get_logger(__name__)

    def allow_request(self) -> bool:
        if self.state == CircuitState.OPEN:
            if datetime.now(timezone.utc) < self.next_attempt_time:
                return False
            self.state = CircuitState.HALF_OPEN
            self.success_count = 0
        return True

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
        elif self.state == CircuitState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            self.state = CircuitState.OPEN
            self.next_attempt_time = datetime.now(timezone.utc) + timedelta(seconds=self.config.timeout_duration)
            self.logger.warning(f"Circuit breaker opened due to {self.failure_count} failures")


class HttpPaymentProcessor(PaymentProcessor):
    """
    Submits payouts to ``{base_url}/payouts``.

    The gateway is expected to answer with JSON ``{"status": "success",
    "reference": "..."}``; any other status, a non-2xx response or a transport
    error is reported as a failed ``ProcessorResult``. The payout request id is
    sent as the ``Idempotency-Key`` header.
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client
        self._owns_client = client is None
        self.breaker = breaker or CircuitBreaker()
        self.logger = get_logger(__name__)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def submit_payout(
        self,
        request_id: str,
        method: PayoutMethod,
        account_details: Dict[str, Any],
        amount: Decimal,
        reference: Optional[str] = None
    ) -> ProcessorResult:
        if not self.breaker.allow_request():
            return ProcessorResult(success=False, reason="payment gateway circuit is open")

        try:
            response = await self._get_client().post(
                f"{self.base_url}/payouts",
                json={
                    "request_id": request_id,
                    "method": method.value,
                    "amount": str(amount),
                    "account_details": account_details,
                    "reference": reference
                },
                headers={"Idempotency-Key": request_id}
            )
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("expected a JSON object")
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            self.logger.error(f"HTTP error submitting payout {request_id}: {e}")
            return ProcessorResult(success=False, reason=f"network error: {e}")
        except ValueError as e:
            self.breaker.record_failure()
            return ProcessorResult(success=False, reason=f"invalid gateway response: {e}")

        self.breaker.record_success()
        if body.get("status") != "success":
            return ProcessorResult(
                success=False,
                reason=body.get("reason") or body.get("error") or f"gateway status {body.get('status')}"
            )
        return ProcessorResult(success=True, reference=body.get("reference") or reference)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

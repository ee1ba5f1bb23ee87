"""
Midtrans Core API client with retry logic and error classification.

Implements:
- Transaction status lookup (GET /v2/{id}/status)
- Exponential backoff for transient errors
- Circuit breaker pattern
- Mapping of Midtrans transaction statuses onto PaymentStatus
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.reconciliation import PaymentStatus
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSACTION_STATUS_MAP: Dict[str, PaymentStatus] = {
    "capture": PaymentStatus.PAID,
    "settlement": PaymentStatus.PAID,
    "deny": PaymentStatus.FAILED,
    "cancel": PaymentStatus.FAILED,
    "expire": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "refund": PaymentStatus.REFUNDED,
}


def map_transaction_status(
    transaction_status: Optional[str], fraud_status: Optional[str] = None
) -> PaymentStatus:
    """
    Map a Midtrans ``transaction_status`` onto the payment axis.

    capture/settlement are PAID, deny/cancel/expire/failure are FAILED,
    refund is REFUNDED; anything else (pending, authorize, ...) is PENDING.
    A capture held for fraud review (``fraud_status`` challenge) stays
    PENDING until the gateway accepts or denies it.
    """
    normalized = (transaction_status or "").strip().lower()
    if normalized == "capture" and (fraud_status or "").strip().lower() == "challenge":
        return PaymentStatus.PENDING
    status = TRANSACTION_STATUS_MAP.get(normalized)
    if status is None:
        if normalized not in ("pending", "authorize"):
            logger.warning("unmapped_transaction_status", transaction_status=transaction_status)
        return PaymentStatus.PENDING
    return status


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Raised when the gateway could not answer a status query."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


@dataclass
class GatewayStatus:
    """Result of a status lookup."""

    status: PaymentStatus
    transaction_status: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            # A definitive answer from the gateway says nothing about its health
            if e.retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class MidtransClient:
    """
    Async wrapper for the Midtrans status API.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Error classification (transient / permanent / rate limit)
    """

    def __init__(
        self,
        server_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_wait_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        settings = get_settings()
        self.server_key = (server_key or settings.midtrans_server_key).strip()
        self.base_url = (base_url or settings.midtrans_base_url).rstrip("/")
        self.max_attempts = max_attempts or settings.gateway_retry_max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self.server_key, ""),
            headers={"Accept": "application/json"},
            timeout=timeout or settings.gateway_timeout_seconds,
            transport=transport,
        )

        logger.info(
            "midtrans_client_initialized",
            base_url=self.base_url,
            sandbox="sandbox" in self.base_url,
        )

    async def __aenter__(self) -> "MidtransClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _classify_status_code(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _fetch_status(self, transaction_id: str) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            response = await self._client.get(f"/v2/{transaction_id}/status")
        except httpx.HTTPError as e:
            metrics.record_gateway_call("status", "error", time.perf_counter() - started)
            raise GatewayError(
                f"Midtrans request failed: {e}", GatewayErrorType.TRANSIENT, original_error=e
            ) from e

        duration = time.perf_counter() - started
        if response.status_code >= 400:
            metrics.record_gateway_call("status", str(response.status_code), duration)
            raise GatewayError(
                f"Midtrans returned HTTP {response.status_code}",
                self._classify_status_code(response.status_code),
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            metrics.record_gateway_call("status", "invalid_body", duration)
            raise GatewayError(
                "Midtrans returned a non-JSON body", GatewayErrorType.TRANSIENT, original_error=e
            ) from e

        # Midtrans reports errors with HTTP 200 and a status_code in the body
        body_code = str(data.get("status_code", "200"))
        if not data.get("transaction_status") and body_code.isdigit() and int(body_code) >= 300:
            metrics.record_gateway_call("status", body_code, duration)
            raise GatewayError(
                data.get("status_message") or f"Midtrans status_code {body_code}",
                self._classify_status_code(int(body_code)),
                status_code=int(body_code),
            )

        metrics.record_gateway_call("status", "ok", duration)
        return data

    async def get_transaction_status(self, transaction_id: str) -> GatewayStatus:
        """
        Query the current status of a transaction.

        Args:
            transaction_id: Midtrans transaction id or merchant order id

        Returns:
            GatewayStatus: Mapped status plus the raw gateway body

        Raises:
            GatewayError: If the gateway could not be queried
        """
        logger.info("querying_transaction_status", transaction_id=transaction_id)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(
                    lambda e: isinstance(e, GatewayError) and e.retryable
                ),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(
                    multiplier=self.retry_wait_seconds, max=self.retry_wait_seconds * 16
                ),
                reraise=True,
            ):
                with attempt:
                    data = await self.circuit_breaker.call(self._fetch_status, transaction_id)
        except GatewayError as e:
            metrics.record_gateway_error(e.error_type.value)
            logger.error(
                "midtrans_api_error",
                transaction_id=transaction_id,
                error_type=e.error_type.value,
                status_code=e.status_code,
                error_message=str(e),
            )
            raise

        transaction_status = str(data.get("transaction_status") or "")
        result = GatewayStatus(
            status=map_transaction_status(transaction_status, data.get("fraud_status")),
            transaction_status=transaction_status,
            transaction_id=data.get("transaction_id"),
            order_id=data.get("order_id"),
            payment_type=data.get("payment_type"),
            fraud_status=data.get("fraud_status"),
            raw=data,
        )
        logger.info(
            "transaction_status_received",
            transaction_id=result.transaction_id,
            transaction_status=transaction_status,
            payment_status=result.status.value,
        )
        return result

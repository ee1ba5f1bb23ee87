"""
HTTP OrderSource: talks to the reconciliation API like the storefront does.

Error responses are mapped back onto the domain exceptions, so a session
behaves the same over HTTP as it does in-process.
"""
from typing import Any, Dict, Optional, Type

import httpx
import structlog

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.exceptions import (
    GatewaySyncError,
    ManualOverrideForbiddenError,
    OrderNotFoundError,
    ReconciliationError,
    SyncUnavailableError,
    TransitionRejectedError,
)
from payment_reconciliation.core.session import OrderSnapshot

logger = structlog.get_logger(__name__)

_ERRORS_BY_CODE: Dict[str, Type[ReconciliationError]] = {
    cls.error_code: cls
    for cls in (
        OrderNotFoundError,
        TransitionRejectedError,
        ManualOverrideForbiddenError,
        SyncUnavailableError,
        GatewaySyncError,
    )
}


class StorefrontError(ReconciliationError):
    """Transport failure or unexpected response from the storefront API."""

    http_status = 503
    error_code = "storefront_unavailable"


class StorefrontClient:
    """``httpx`` implementation of the ``OrderSource`` protocol."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or get_settings().storefront_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "StorefrontClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StorefrontError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            error_cls = _ERRORS_BY_CODE.get(body.get("code", ""), StorefrontError)
            message = body.get("error") or f"{method} {path} returned HTTP {response.status_code}"
            logger.debug(
                "storefront_request_failed",
                path=path,
                status_code=response.status_code,
                code=body.get("code"),
            )
            raise error_cls(message)
        return body

    async def fetch_order(self, order_number: str) -> OrderSnapshot:
        body = await self._request("GET", f"/orders/{order_number}")
        return OrderSnapshot.from_payload(body)

    async def sync_payment(self, order_number: str) -> OrderSnapshot:
        body = await self._request("POST", f"/orders/{order_number}/sync-payment")
        return OrderSnapshot.from_payload(body["order"])

    async def cancel_order(self, order_number: str, reason: str = "expired") -> OrderSnapshot:
        body = await self._request(
            "PUT", f"/orders/{order_number}/cancel", json={"reason": reason}
        )
        return OrderSnapshot.from_payload(body)

    async def get_payment_timeout(self) -> int:
        body = await self._request("GET", "/settings/payment-timeout")
        return int(body["data"])

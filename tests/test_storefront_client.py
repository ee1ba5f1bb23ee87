"""
Tests for the HTTP order source.
"""
import json
from typing import List

import httpx
import pytest

from payment_reconciliation.core.exceptions import (
    GatewaySyncError,
    OrderNotFoundError,
    TransitionRejectedError,
)
from payment_reconciliation.core.reconciliation import OrderStatus, PaymentStatus
from payment_reconciliation.integrations.storefront_client import StorefrontClient, StorefrontError

ORDER = {
    "orderNumber": "ORD-000001",
    "status": "PENDING",
    "paymentStatus": "PENDING",
    "paymentMethod": "QRIS",
    "total": 150000.0,
    "currency": "IDR",
    "transactionId": None,
    "paidAt": None,
    "createdAt": "2026-03-01T09:00:00Z",
    "updatedAt": "2026-03-01T09:00:00Z",
    "paymentTransaction": {
        "id": 1,
        "provider": "MIDTRANS",
        "paymentType": "qris",
        "transactionId": "9aed5972",
        "status": "PENDING",
        "amount": 150000.0,
        "qrString": "00020101021226620014COM.GO-JEK.WWW",
        "expiresAt": "2026-03-01T09:15:00+00:00",
        "createdAt": "2026-03-01T09:00:00Z",
    },
    "timeRemainingSeconds": 900.0,
}


def make_client(handler) -> StorefrontClient:
    return StorefrontClient(base_url="http://storefront.test", transport=httpx.MockTransport(handler))


class TestStorefrontClient:
    """Test suite for StorefrontClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_order(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=ORDER)

        async with make_client(handler) as client:
            snapshot = await client.fetch_order("ORD-000001")

        assert requests[0].method == "GET"
        assert requests[0].url.path == "/orders/ORD-000001"
        assert snapshot.status == OrderStatus.PENDING
        assert snapshot.payment_status == PaymentStatus.PENDING
        assert snapshot.payment_type == "qris"
        assert snapshot.provider == "MIDTRANS"
        assert snapshot.transaction_id == "9aed5972"
        assert snapshot.expires_at.isoformat() == "2026-03-01T09:15:00+00:00"
        assert snapshot.created_at.tzinfo is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_payment_returns_order(self) -> None:
        paid = dict(ORDER, paymentStatus="PAID", paidAt="2026-03-01T09:05:00Z")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/orders/ORD-000001/sync-payment"
            return httpx.Response(
                200,
                json={"synced": True, "paymentStatus": "PAID", "sideEffect": "MARK_PAID", "order": paid},
            )

        async with make_client(handler) as client:
            snapshot = await client.sync_payment("ORD-000001")

        assert snapshot.payment_status == PaymentStatus.PAID
        assert snapshot.paid_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_sends_reason(self) -> None:
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=dict(ORDER, status="CANCELLED"))

        async with make_client(handler) as client:
            snapshot = await client.cancel_order("ORD-000001", reason="expired")

        assert bodies == [{"reason": "expired"}]
        assert snapshot.is_cancelled

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "data": 30})

        async with make_client(handler) as client:
            assert await client.get_payment_timeout() == 30

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,code,error_cls",
        [
            (404, "order_not_found", OrderNotFoundError),
            (409, "transition_rejected", TransitionRejectedError),
            (502, "gateway_unavailable", GatewaySyncError),
            (500, "internal_error", StorefrontError),
        ],
    )
    async def test_error_codes_map_to_exceptions(self, status_code, code, error_cls) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                status_code, json={"success": False, "error": "refused", "code": code}
            )

        async with make_client(handler) as client:
            with pytest.raises(error_cls, match="refused"):
                await client.cancel_order("ORD-000001")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="upstream unavailable")

        async with make_client(handler) as client:
            with pytest.raises(StorefrontError, match="HTTP 503"):
                await client.fetch_order("ORD-000001")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(StorefrontError):
                await client.fetch_order("ORD-000001")

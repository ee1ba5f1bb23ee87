"""
API routes for order payment reconciliation.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.core.sync import PaymentGateway, PaymentSyncer
from payment_reconciliation.database.connection import get_db
from payment_reconciliation.integrations.midtrans_client import MidtransClient
from payment_reconciliation.integrations.webhook_handler import WebhookError, WebhookHandler
from payment_reconciliation.monitoring.health import HealthCheck
from payment_reconciliation.monitoring.logging import bind_order_context

from .schemas import (
    AdminOrderUpdateRequest,
    AdminPaymentUpdateRequest,
    CancelOrderRequest,
    HealthCheckResponse,
    OrderResponse,
    PaymentTimeoutResponse,
    SyncResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
settings_router = APIRouter(prefix="/settings", tags=["settings"])
monitoring_router = APIRouter(tags=["monitoring"])

_gateway: Optional[MidtransClient] = None
_webhook_handler: Optional[WebhookHandler] = None
_health_check: Optional[HealthCheck] = None


def get_gateway() -> PaymentGateway:
    """Shared Midtrans client; overridden in tests."""
    global _gateway
    if _gateway is None:
        _gateway = MidtransClient()
    return _gateway


def get_webhook_handler() -> WebhookHandler:
    global _webhook_handler
    if _webhook_handler is None:
        _webhook_handler = WebhookHandler()
    return _webhook_handler


def get_health_check() -> HealthCheck:
    global _health_check
    if _health_check is None:
        _health_check = HealthCheck()
    return _health_check


async def close_clients() -> None:
    """Release shared clients on shutdown."""
    global _gateway, _webhook_handler
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    if _webhook_handler is not None:
        await _webhook_handler.close()
        _webhook_handler = None


async def _order_response(service: ReconciliationService, order: Any) -> OrderResponse:
    timeout = await service.get_payment_timeout()
    return OrderResponse.from_order(order, service.time_remaining(order, timeout))


@order_router.get(
    "/{order_number}",
    response_model=OrderResponse,
    summary="Get order payment state",
    description="Current order and latest payment transaction snapshot",
)
async def get_order(order_number: str, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    bind_order_context(order_number)
    service = ReconciliationService(db)
    order = await service.get_order(order_number)
    return await _order_response(service, order)


@order_router.post(
    "/{order_number}/sync-payment",
    response_model=SyncResponse,
    summary="Sync payment with the gateway",
    description="Query the gateway for the authoritative status and reconcile it",
)
async def sync_order_payment(
    order_number: str,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> SyncResponse:
    """
    Sync an order's payment.

    Idempotent: calling it again after a successful sync returns
    ``synced: false`` with the same order.
    """
    bind_order_context(order_number)
    syncer = PaymentSyncer(db, gateway)
    result = await syncer.sync_payment(order_number)
    return SyncResponse(
        synced=result.synced,
        payment_status=result.payment_status,
        side_effect=result.side_effect,
        order=await _order_response(syncer.service, result.order),
    )


@order_router.put(
    "/{order_number}/cancel",
    response_model=OrderResponse,
    summary="Cancel an order",
    description="Expire an overdue unpaid order, or cancel it on the customer's request",
)
async def cancel_order(
    order_number: str,
    body: Optional[CancelOrderRequest] = Body(default=None),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    reason = body.reason if body is not None else "expired"
    bind_order_context(order_number)
    service = ReconciliationService(db)
    order = await service.cancel_order(order_number, reason=reason)
    logger.info("api_order_cancelled", reason=reason)
    return await _order_response(service, order)


@admin_router.patch(
    "/orders/{order_number}",
    response_model=OrderResponse,
    summary="Update order fulfilment status",
)
async def admin_update_order(
    order_number: str,
    request: AdminOrderUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    bind_order_context(order_number)
    service = ReconciliationService(db)
    order = await service.update_order(order_number, status=request.status, notes=request.notes)
    return await _order_response(service, order)


@admin_router.patch(
    "/orders/{order_number}/payment",
    response_model=OrderResponse,
    summary="Override payment status",
    description="Manual payment status change; offline-settled orders only",
)
async def admin_update_payment(
    order_number: str,
    request: AdminPaymentUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    bind_order_context(order_number)
    service = ReconciliationService(db)
    order = await service.override_payment_status(
        order_number, request.payment_status, transaction_id=request.transaction_id
    )
    return await _order_response(service, order)


@webhook_router.post(
    "/midtrans",
    response_model=WebhookResponse,
    summary="Midtrans notification endpoint",
    description="Handle Midtrans payment notifications",
)
async def midtrans_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """Verify, deduplicate and reconcile a Midtrans notification."""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    try:
        result = await handler.process_notification(payload, db)
    except WebhookError as e:
        logger.warning("api_webhook_rejected", error=e.message, status_code=e.status_code)
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return {
        "success": True,
        "status": result["status"],
        "payment_status": result.get("payment_status"),
        "side_effect": result.get("side_effect"),
    }


@settings_router.get(
    "/payment-timeout",
    response_model=PaymentTimeoutResponse,
    summary="Payment timeout in minutes",
)
async def get_payment_timeout(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    service = ReconciliationService(db)
    return {"success": True, "data": await service.get_payment_timeout()}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint; 503 until every dependency answers."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

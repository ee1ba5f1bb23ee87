"""
Midtrans notification handler with signature verification and deduplication.

Implements:
- SHA-512 signature verification (order_id + status_code + gross_amount + server key)
- Notification deduplication using Redis (fail-open)
- Channel field pass-through onto the latest transaction snapshot
- Feeding the mapped status to the reconciliation core as a webhook observation
"""
import hashlib
import hmac
import time
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from payment_reconciliation.config import get_settings
from payment_reconciliation.core.reconciliation import (
    Observation,
    ObservationSource,
    PaymentStatus,
)
from payment_reconciliation.core.service import ReconciliationService
from payment_reconciliation.integrations.midtrans_client import map_transaction_status
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEEPLINK_ACTIONS = ("deeplink-redirect", "deeplink_redirect")


class WebhookError(Exception):
    """Raised when a notification is rejected."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def compute_signature(
    order_id: str, status_code: str, gross_amount: str, server_key: str
) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def notification_status(payload: Dict[str, Any]) -> PaymentStatus:
    """Payment status carried by a notification; same mapping as a status query."""
    return map_transaction_status(payload.get("transaction_status"), payload.get("fraud_status"))


def extract_channel_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull the opaque channel fields out of a notification.

    Values are copied verbatim; absent fields come back as None so that
    stored values are kept.
    """
    va_number: Optional[str] = None
    va_bank: Optional[str] = None
    if payload.get("payment_type") == "bank_transfer":
        va_numbers = payload.get("va_numbers") or []
        if va_numbers:
            va_number = va_numbers[0].get("va_number")
            va_bank = (va_numbers[0].get("bank") or "").upper() or None
        elif payload.get("permata_va_number"):
            va_number = payload["permata_va_number"]
            va_bank = "PERMATA"

    payment_url = None
    for action in payload.get("actions") or []:
        if action.get("name") in DEEPLINK_ACTIONS:
            payment_url = action.get("url")
            break

    return {
        "transaction_id": payload.get("transaction_id"),
        "va_number": va_number,
        "va_bank": va_bank,
        "qr_string": payload.get("qr_string"),
        "qr_image_url": payload.get("qr_url"),
        "payment_url": payment_url,
        "raw_response": payload,
    }


class WebhookHandler:
    """
    Handles Midtrans payment notifications.

    Features:
    - Signature verification against the server key
    - Deduplication on (transaction_id, transaction_status, fraud_status) in Redis
    - Every notification goes through the reconciliation core
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        server_key: Optional[str] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            redis_client: Optional Redis client for notification deduplication
            server_key: Midtrans server key (uses config if not provided)
        """
        self.settings = get_settings()
        self.server_key = (server_key or self.settings.midtrans_server_key).strip()
        self.redis_client = redis_client
        self._owns_redis = False

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def verify_signature(self, payload: Dict[str, Any]) -> None:
        """
        Verify the notification's ``signature_key``.

        Raises:
            WebhookError: If the signature is missing or does not match
        """
        signature = payload.get("signature_key")
        if not signature:
            logger.error("webhook_signature_missing", order_id=payload.get("order_id"))
            raise WebhookError("Missing signature", status_code=403)

        expected = compute_signature(
            str(payload.get("order_id", "")),
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
            self.server_key,
        )
        if not hmac.compare_digest(expected, str(signature)):
            logger.error("webhook_signature_verification_failed", order_id=payload.get("order_id"))
            raise WebhookError("Invalid signature", status_code=403)

    @staticmethod
    def _dedup_key(payload: Dict[str, Any]) -> str:
        """
        Key of one gateway state change.

        ``fraud_status`` is part of it: a challenged capture and its later
        acceptance share ``transaction_status`` but are distinct changes.
        """
        key = (
            f"webhook:processed:{payload.get('transaction_id') or payload.get('order_id')}:"
            f"{payload.get('transaction_status')}"
        )
        fraud_status = payload.get("fraud_status")
        if fraud_status:
            key = f"{key}:{fraud_status}"
        return key

    async def is_notification_processed(self, key: str) -> bool:
        """
        Check if a notification has already been processed.

        Redis being down is not fatal: the notification is processed again,
        which the core turns into a no-op.
        """
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(key))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), key=key)
            return False

    async def mark_notification_processed(self, key: str) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.setex(key, self.settings.webhook_dedup_ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), key=key)

    async def process_notification(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Process one notification.

        Args:
            payload: Parsed notification body
            db: Database session

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookError: Bad signature or payload
            OrderNotFoundError: Unknown order
        """
        started = time.perf_counter()
        transaction_status = str(payload.get("transaction_status") or "unknown")
        try:
            self.verify_signature(payload)
            order_number = payload.get("order_id")
            if not order_number:
                raise WebhookError("Missing order_id", status_code=400)
        except WebhookError:
            metrics.record_webhook_event(
                transaction_status, "rejected", time.perf_counter() - started
            )
            raise

        key = self._dedup_key(payload)
        if await self.is_notification_processed(key):
            logger.info("webhook_notification_already_processed", order_number=order_number)
            metrics.record_webhook_event(
                transaction_status, "duplicate", time.perf_counter() - started
            )
            return {"status": "duplicate", "order_number": order_number}

        service = ReconciliationService(db)
        order = await service.repo.require(order_number)
        await service.repo.update_transaction_snapshot(order, extract_channel_fields(payload))
        await db.commit()

        status = notification_status(payload)
        outcome = await service.apply_observation(
            order_number,
            Observation(ObservationSource.WEBHOOK, status.value, authorized=True),
            gateway_transaction_id=payload.get("transaction_id"),
            raw_response=payload,
        )

        await self.mark_notification_processed(key)
        metrics.record_webhook_event(transaction_status, "success", time.perf_counter() - started)
        logger.info(
            "webhook_notification_processed",
            order_number=order_number,
            transaction_status=transaction_status,
            side_effect=outcome.side_effect.value,
        )
        return {
            "status": "success",
            "order_number": order_number,
            "payment_status": outcome.order.payment_status,
            "side_effect": outcome.side_effect.value,
        }

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()

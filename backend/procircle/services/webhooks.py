"""Inbound Shopify webhook verification and delivery journal."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core import metrics
from procircle.core.config import settings
from procircle.core.errors import Unauthorized
from procircle.models.webhook import WebhookDelivery

logger = logging.getLogger(__name__)

TOPIC_ORDERS_CREATE = "orders/create"
TOPIC_APP_UNINSTALLED = "app/uninstalled"


def webhook_secret(topic: str) -> str | None:
    per_topic = {
        TOPIC_ORDERS_CREATE: settings.shopify_webhook_secret_orders_create,
        TOPIC_APP_UNINSTALLED: settings.shopify_webhook_secret_app_uninstalled,
    }.get(topic)
    secret = (per_topic or settings.shopify_api_secret or "").strip()
    return secret or None


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_webhook(body: Any, signature: str | None, secret: str | None, *, topic: str = "") -> None:
    """Fail closed unless ``signature`` is the base64 HMAC-SHA256 of the raw bytes."""
    reason = None
    if not isinstance(body, (bytes, bytearray)):
        reason = "body_not_raw"
    elif not secret:
        reason = "secret_missing"
    elif not signature:
        reason = "signature_missing"
    elif not hmac.compare_digest(compute_signature(secret, bytes(body)).encode("ascii"), signature.strip().encode("utf-8")):
        reason = "signature_mismatch"
    if reason is None:
        return
    metrics.record_webhook_rejected()
    logger.warning("webhook_rejected", extra={"topic": topic, "reason": reason})
    raise Unauthorized("Invalid webhook signature")


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def begin_delivery(
    session: AsyncSession,
    *,
    webhook_id: str | None,
    topic: str,
    shop_domain: str | None,
    payload_summary: dict[str, Any],
) -> tuple[WebhookDelivery | None, bool]:
    """Journal a verified delivery. Returns ``(record, already_processed)``."""
    if not webhook_id:
        return None, False
    now = _now()
    record = WebhookDelivery(
        webhook_id=webhook_id,
        topic=topic,
        shop_domain=shop_domain,
        attempts=1,
        last_attempt_at=now,
        payload=payload_summary,
    )
    session.add(record)
    try:
        await session.commit()
        await session.refresh(record)
        return record, False
    except IntegrityError:
        await session.rollback()

    existing = (
        await session.execute(select(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook_id))
    ).scalar_one()
    existing.attempts = int(existing.attempts or 0) + 1
    existing.last_attempt_at = now
    session.add(existing)
    await session.commit()
    await session.refresh(existing)
    if existing.processed_at is not None:
        metrics.record_webhook_duplicate()
        logger.info("webhook_duplicate", extra={"topic": topic, "shop": shop_domain, "reason": webhook_id})
        return existing, True
    return existing, False


async def finish_delivery(session: AsyncSession, record: WebhookDelivery | None, *, error: str | None = None) -> None:
    if record is None:
        return
    if error is None:
        record.processed_at = _now()
        record.last_error = None
    else:
        record.last_error = error[:2000]
    session.add(record)
    await session.commit()


async def drop_delivery(session: AsyncSession, record: WebhookDelivery | None, *, reason: str) -> None:
    """Close out a signed delivery that can never be processed so redelivery is skipped."""
    if record is None:
        return
    record.processed_at = _now()
    record.last_error = reason[:2000]
    session.add(record)
    await session.commit()

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core.errors import ValidationFailed
from procircle.db.session import get_session
from procircle.services import installations, redemptions
from procircle.services import webhooks as webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _parse_json(body: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


async def _drop_malformed(session: AsyncSession, *, webhook_id: str | None, topic: str, shop_domain: str | None) -> dict:
    # Shopify retries anything but a 2xx, and a signed body that fails to parse never will.
    logger.warning("webhook_malformed_payload", extra={"topic": topic, "shop": shop_domain, "reason": webhook_id})
    record, duplicate = await webhook_service.begin_delivery(
        session, webhook_id=webhook_id, topic=topic, shop_domain=shop_domain, payload_summary={"malformed": True}
    )
    if duplicate:
        return {"received": True, "duplicate": True}
    await webhook_service.drop_delivery(session, record, reason="Invalid payload")
    return {"received": True, "outcome": "malformed"}


async def _fail(session: AsyncSession, record, *, topic: str, shop_domain: str | None, exc: Exception) -> HTTPException:
    logger.exception("webhook_processing_failed", extra={"topic": topic, "shop": shop_domain})
    await session.rollback()
    await webhook_service.finish_delivery(session, record, error=str(exc) or exc.__class__.__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")


@router.post("/order-created", status_code=status.HTTP_200_OK)
@router.post("/orders-create", status_code=status.HTTP_200_OK, include_in_schema=False)
async def order_created(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
    x_shopify_webhook_id: str | None = Header(default=None),
    x_shopify_shop_domain: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> dict:
    topic = webhook_service.TOPIC_ORDERS_CREATE
    # Signature is checked against the untouched request bytes.
    body = await request.body()
    webhook_service.verify_webhook(body, x_shopify_hmac_sha256, webhook_service.webhook_secret(topic), topic=topic)
    order = _parse_json(body)
    if order is None:
        return await _drop_malformed(session, webhook_id=x_shopify_webhook_id, topic=topic, shop_domain=x_shopify_shop_domain)

    record, duplicate = await webhook_service.begin_delivery(
        session,
        webhook_id=x_shopify_webhook_id,
        topic=topic,
        shop_domain=x_shopify_shop_domain,
        payload_summary={"order_id": order.get("id"), "discount_code": redemptions.first_discount_code(order)},
    )
    if duplicate:
        return {"received": True, "duplicate": True}

    try:
        outcome = await redemptions.reconcile_order(session, order, shop_domain=x_shopify_shop_domain)
    except ValidationFailed as exc:
        await webhook_service.finish_delivery(session, record, error=exc.detail)
        raise
    except Exception as exc:
        raise await _fail(session, record, topic=topic, shop_domain=x_shopify_shop_domain, exc=exc) from exc

    await webhook_service.finish_delivery(session, record)
    return {"received": True, "outcome": outcome.value}


@router.post("/app-uninstalled", status_code=status.HTTP_200_OK)
async def app_uninstalled(
    request: Request,
    x_shopify_hmac_sha256: str | None = Header(default=None),
    x_shopify_webhook_id: str | None = Header(default=None),
    x_shopify_shop_domain: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> dict:
    topic = webhook_service.TOPIC_APP_UNINSTALLED
    body = await request.body()
    webhook_service.verify_webhook(body, x_shopify_hmac_sha256, webhook_service.webhook_secret(topic), topic=topic)
    payload = _parse_json(body)
    if payload is None:
        return await _drop_malformed(session, webhook_id=x_shopify_webhook_id, topic=topic, shop_domain=x_shopify_shop_domain)

    shop_domain = (x_shopify_shop_domain or payload.get("myshopify_domain") or payload.get("domain") or "").strip().lower()
    if not shop_domain:
        raise ValidationFailed("Missing shop domain")

    record, duplicate = await webhook_service.begin_delivery(
        session,
        webhook_id=x_shopify_webhook_id,
        topic=topic,
        shop_domain=shop_domain,
        payload_summary={"shop_domain": shop_domain},
    )
    if duplicate:
        return {"received": True, "duplicate": True}

    try:
        known = await installations.mark_uninstalled(session, shop_domain)
    except Exception as exc:
        raise await _fail(session, record, topic=topic, shop_domain=shop_domain, exc=exc) from exc

    await webhook_service.finish_delivery(session, record)
    return {"received": True, "known_shop": known}

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core import metrics
from procircle.core.errors import ValidationFailed
from procircle.services import ledger

logger = logging.getLogger(__name__)


class RedemptionOutcome(str, enum.Enum):
    no_code = "no_code"
    unknown_code = "unknown_code"
    recorded = "recorded"
    already_recorded = "already_recorded"


def first_discount_code(order: dict[str, Any]) -> str | None:
    codes = order.get("discount_codes")
    if not isinstance(codes, list) or not codes:
        return None
    first = codes[0]
    if not isinstance(first, dict):
        return None
    code = str(first.get("code") or "").strip()
    return code or None


def _order_amount(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    try:
        return Decimal(str(raw)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _order_created_at(raw: Any) -> datetime:
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = datetime.fromisoformat(raw.strip())
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


async def reconcile_order(session: AsyncSession, order: dict[str, Any], *, shop_domain: str | None = None) -> RedemptionOutcome:
    """Mark the discount used on ``order`` as redeemed, at most once."""
    code = first_discount_code(order)
    if code is None:
        return RedemptionOutcome.no_code

    order_id = str(order.get("id") or "").strip()
    if not order_id:
        raise ValidationFailed("Order payload missing id")

    discount = await ledger.find_by_code(session, code, active_only=True)
    if discount is None and code.upper() != code:
        discount = await ledger.find_by_code(session, code.upper(), active_only=True)
    if discount is None:
        logger.info("redemption_unknown_code", extra={"shop": shop_domain, "code": code, "order_id": order_id})
        return RedemptionOutcome.unknown_code

    applied = await ledger.update_redemption(
        session,
        code=discount.code,
        order_id=order_id,
        order_amount=_order_amount(order.get("total_price")),
        redeemed_at=_order_created_at(order.get("created_at")),
    )
    if not applied:
        logger.info("redemption_already_recorded", extra={"shop": shop_domain, "code": discount.code, "order_id": order_id})
        return RedemptionOutcome.already_recorded

    metrics.record_redemption()
    logger.info(
        "redemption_recorded",
        extra={"shop": shop_domain, "user_id": discount.user_id, "code": discount.code, "order_id": order_id},
    )
    return RedemptionOutcome.recorded

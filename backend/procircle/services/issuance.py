"""Issuance path: validate, gate, reserve, publish, persist.

The (shop, user) reservation is taken before the platform call, so a
concurrent duplicate request fails with Conflict before it can publish.
Nothing is written to the ledger unless the platform confirmed the code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core import metrics
from procircle.core.config import settings
from procircle.core.errors import CodeConflict, Conflict, NotEligible, NotFound
from procircle.models.discount import Discount
from procircle.models.shop import Shop
from procircle.services import eligibility, ledger
from procircle.services.codes import generate_discount_code
from procircle.services.shopify import DiscountPublisher, PublishRequest, ShopAccess
from procircle.services.validation import NormalizedIssueRequest, validate_issue_request

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedDiscount:
    discount: Discount
    shop_domain: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def load_shop(session: AsyncSession, shop_domain: str) -> Shop:
    shop = (await session.execute(select(Shop).where(Shop.shop_domain == shop_domain))).scalar_one_or_none()
    if shop is None:
        raise NotFound("Shop not found")
    return shop


def _ensure_installed(shop: Shop, request: NormalizedIssueRequest) -> None:
    if shop.installed and shop.access_token:
        return
    metrics.record_discount_rejected("shop_not_installed")
    logger.info(
        "discount_rejected",
        extra={"shop": shop.shop_domain, "user_id": request.user_id, "reason": "shop_not_installed"},
    )
    raise NotEligible("Shop is not installed", errors=[{"reason": "shop_not_installed"}])


async def _reserve(session: AsyncSession, shop_id: UUID, request: NormalizedIssueRequest) -> UUID:
    try:
        return await ledger.reserve(
            session, shop_id=shop_id, user_id=request.user_id, ttl_seconds=settings.reservation_ttl_seconds
        )
    except Conflict:
        metrics.record_discount_rejected("duplicate")
        logger.info(
            "discount_rejected",
            extra={"shop": request.shop_domain, "user_id": request.user_id, "reason": "in_flight"},
        )
        raise


async def _assign_code(session: AsyncSession, reservation_id: UUID, name: str) -> str:
    # One regeneration on collision, then give up.
    for attempt in range(2):
        code = generate_discount_code(name)
        try:
            await ledger.attach_code(session, reservation_id, code)
            return code
        except CodeConflict:
            logger.warning("discount_code_collision", extra={"code": code, "reason": f"attempt {attempt + 1}"})
    raise CodeConflict("Could not generate a unique discount code")


async def issue_discount(
    session: AsyncSession,
    body: Any,
    *,
    publisher: DiscountPublisher,
) -> IssuedDiscount:
    request = validate_issue_request(body)
    shop = await load_shop(session, request.shop_domain)
    _ensure_installed(shop, request)

    terms = eligibility.resolve_terms(request, shop.settings)
    eligibility.check_allow_lists(request, terms)

    # Rollbacks below expire ORM state, so keep plain copies of what is needed.
    shop_id = shop.id
    access = ShopAccess.from_shop(shop)

    reservation_id = await _reserve(session, shop_id, request)
    try:
        await eligibility.check_not_duplicate(session, request, shop_id=shop_id)
        await eligibility.check_quota(session, request, terms, shop_id=shop_id)
        code = await _assign_code(session, reservation_id, request.name)

        starts_at = _now()
        ends_at = starts_at + timedelta(days=terms.expiry_days)
        published = await publisher.publish(
            access,
            PublishRequest(
                code=code,
                kind=terms.kind,
                amount=terms.amount,
                starts_at=starts_at,
                ends_at=ends_at,
                one_time_use=terms.one_time_use,
                category_handles=terms.categories,
            ),
        )
    except Exception:
        await ledger.release(session, reservation_id)
        raise

    discount = await ledger.insert_discount(
        session,
        reservation_id,
        shop_id=shop_id,
        user_id=request.user_id,
        email=request.email,
        code=published.code,
        kind=terms.kind,
        amount=terms.amount,
        one_time_use=terms.one_time_use,
        created_at=starts_at,
        expires_at=ends_at,
        external_id=published.external_id,
    )
    metrics.record_discount_issued()
    logger.info(
        "discount_issued",
        extra={"shop": access.shop_domain, "user_id": request.user_id, "code": discount.code},
    )
    return IssuedDiscount(discount=discount, shop_domain=access.shop_domain)

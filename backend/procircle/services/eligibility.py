"""Shop-level rules deciding whether a normalised request may be issued."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core import metrics
from procircle.core.config import settings
from procircle.core.errors import Conflict, NotEligible, QuotaExceeded, ValidationFailed
from procircle.models.discount import DiscountKind
from procircle.models.shop import ShopSettings
from procircle.services import ledger
from procircle.services.validation import MAX_PERCENTAGE, PERCENTAGE_ERROR, NormalizedIssueRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssueTerms:
    """Request values merged over shop configuration and hard defaults."""

    kind: DiscountKind
    amount: Decimal
    expiry_days: int
    max_discounts: int | None
    one_time_use: bool
    categories: list[str] = field(default_factory=list)
    allowed_countries: list[str] = field(default_factory=list)
    allowed_member_types: list[str] = field(default_factory=list)


def _upper_set(values: list[str] | None) -> list[str]:
    return [str(v).strip().upper() for v in (values or []) if str(v).strip()]


def resolve_terms(request: NormalizedIssueRequest, config: ShopSettings | None) -> IssueTerms:
    kind = request.kind or (config.discount_type if config else None) or DiscountKind.percentage
    if kind == DiscountKind.percentage and request.amount > MAX_PERCENTAGE:
        raise ValidationFailed("Invalid discount request", errors=[dict(PERCENTAGE_ERROR)])
    expiry_days = request.expiry_days or (config.expiry_days if config else None) or settings.default_expiry_days
    max_discounts = request.max_discounts if request.max_discounts is not None else (config.max_discounts if config else None)
    one_time_use = request.one_time_use
    if one_time_use is None:
        one_time_use = config.one_time_use if config else True
    categories = request.categories or list((config.categories if config else None) or [])

    return IssueTerms(
        kind=kind,
        amount=request.amount,
        expiry_days=int(expiry_days),
        max_discounts=max_discounts,
        one_time_use=bool(one_time_use),
        categories=categories,
        allowed_countries=_upper_set(config.allowed_countries if config else None),
        allowed_member_types=_upper_set(config.allowed_member_types if config else None),
    )


def _reject(exc: NotEligible | Conflict | QuotaExceeded, *, reason: str, request: NormalizedIssueRequest):
    metrics.record_discount_rejected(reason)
    logger.info(
        "discount_rejected",
        extra={"shop": request.shop_domain, "user_id": request.user_id, "reason": reason},
    )
    return exc


def check_allow_lists(request: NormalizedIssueRequest, terms: IssueTerms) -> None:
    """Country then member-type allow-lists; an empty allow-list admits everyone."""
    if terms.allowed_countries and not set(request.countries) & set(terms.allowed_countries):
        raise _reject(
            NotEligible("Country not eligible for this shop", errors=[{"reason": "country_not_allowed"}]),
            reason="country_not_allowed",
            request=request,
        )
    if terms.allowed_member_types and not set(request.member_types) & set(terms.allowed_member_types):
        raise _reject(
            NotEligible("Member type not eligible for this shop", errors=[{"reason": "member_type_not_allowed"}]),
            reason="member_type_not_allowed",
            request=request,
        )


async def check_not_duplicate(session: AsyncSession, request: NormalizedIssueRequest, *, shop_id: UUID) -> None:
    # Only meaningful while the caller holds the (shop, user) reservation.
    if await ledger.has_active_discount(session, shop_id=shop_id, user_id=request.user_id):
        raise _reject(
            Conflict("An active discount already exists for this user"),
            reason="duplicate",
            request=request,
        )


async def check_quota(session: AsyncSession, request: NormalizedIssueRequest, terms: IssueTerms, *, shop_id: UUID) -> None:
    if terms.max_discounts is None:
        return
    issued = await ledger.count_for_shop(session, shop_id)
    if issued >= terms.max_discounts:
        raise _reject(
            QuotaExceeded("Max discounts reached", errors=[{"issued": issued, "quota": terms.max_discounts}]),
            reason="quota_exceeded",
            request=request,
        )

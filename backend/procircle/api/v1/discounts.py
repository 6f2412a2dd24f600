from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core.dependencies import get_discount_publisher, require_api_key
from procircle.core.errors import NotFound
from procircle.db.session import get_session
from procircle.models.discount import Discount
from procircle.models.shop import Shop
from procircle.schemas.discount import DiscountRead, SyncAckRequest, SyncAckResponse, UnsyncedDiscounts
from procircle.services import issuance, ledger
from procircle.services.shopify import DiscountPublisher

router = APIRouter(prefix="/discounts", tags=["discounts"], dependencies=[Depends(require_api_key)])


def to_discount_read(discount: Discount, shop_domain: str) -> DiscountRead:
    base = {
        column: getattr(discount, column)
        for column in (
            "code",
            "user_id",
            "email",
            "kind",
            "amount",
            "one_time_use",
            "external_id",
            "created_at",
            "expires_at",
            "synced",
            "redeemed_at",
            "order_id",
            "order_amount",
        )
    }
    return DiscountRead(**base, shop_domain=shop_domain, status=discount.status_at(datetime.now(timezone.utc)))


async def _shop_domains(session: AsyncSession, discounts: list[Discount]) -> dict[Any, str]:
    domains: dict[Any, str] = {}
    for discount in discounts:
        if discount.shop_id not in domains:
            shop = await session.get(Shop, discount.shop_id)
            domains[discount.shop_id] = shop.shop_domain if shop else ""
    return domains


@router.post("", response_model=DiscountRead, status_code=status.HTTP_201_CREATED)
async def create_discount(
    payload: Any = Body(default=None),
    session: AsyncSession = Depends(get_session),
    publisher: DiscountPublisher = Depends(get_discount_publisher),
) -> DiscountRead:
    issued = await issuance.issue_discount(session, payload, publisher=publisher)
    return to_discount_read(issued.discount, issued.shop_domain)


@router.get("/unsynced", response_model=UnsyncedDiscounts)
async def list_unsynced(
    shop_domain: str | None = None,
    session: AsyncSession = Depends(get_session),
) -> UnsyncedDiscounts:
    shop_id = None
    if shop_domain:
        shop_id = (await issuance.load_shop(session, shop_domain.strip().lower())).id
    rows = await ledger.find_unsynced_redeemed(session, shop_id=shop_id)
    domains = await _shop_domains(session, rows)
    return UnsyncedDiscounts(rows=[to_discount_read(row, domains[row.shop_id]) for row in rows])


@router.post("/sync-ack", response_model=SyncAckResponse)
async def acknowledge_sync(payload: SyncAckRequest, session: AsyncSession = Depends(get_session)) -> SyncAckResponse:
    discount = await ledger.mark_synced(session, payload.code.strip())
    return SyncAckResponse(code=discount.code, synced=discount.synced)


@router.get("/{code}", response_model=DiscountRead)
async def get_discount(code: str, session: AsyncSession = Depends(get_session)) -> DiscountRead:
    discount = await ledger.find_by_code(session, code.strip())
    if discount is None:
        raise NotFound("Discount not found")
    domains = await _shop_domains(session, [discount])
    return to_discount_read(discount, domains[discount.shop_id])

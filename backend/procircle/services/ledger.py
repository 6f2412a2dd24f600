"""Persistence operations for issued discounts.

All writes that matter for consistency go through a database constraint:
the (shop, user) reservation, the unique code and the partial unique
index on active discounts. Redemption updates are conditional so webhook
redelivery never rewrites them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.core.errors import CodeConflict, Conflict, NotFound
from procircle.models.discount import Discount, DiscountKind, DiscountReservation, as_utc

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _existing_reservation(session: AsyncSession, *, shop_id: UUID, user_id: str) -> DiscountReservation | None:
    result = await session.execute(
        select(DiscountReservation).where(
            DiscountReservation.shop_id == shop_id,
            DiscountReservation.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def _insert_reservation(session: AsyncSession, reservation: DiscountReservation) -> bool:
    session.add(reservation)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def reserve(session: AsyncSession, *, shop_id: UUID, user_id: str, ttl_seconds: int) -> UUID:
    """Claim (shop, user) for one in-flight issuance and return the reservation id.

    Raises Conflict while another request holds the pair. A reservation
    left behind by a crashed request is taken over once it is older than
    ``ttl_seconds``.
    """
    now = _now()
    reservation = DiscountReservation(
        shop_id=shop_id,
        user_id=user_id,
        reserved_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    if await _insert_reservation(session, reservation):
        return reservation.id

    stale = await _existing_reservation(session, shop_id=shop_id, user_id=user_id)
    if stale is not None and as_utc(stale.expires_at) <= now:
        await session.execute(delete(DiscountReservation).where(DiscountReservation.id == stale.id))
        await session.commit()
        logger.warning("stale_reservation_taken_over", extra={"user_id": user_id})
        reservation = DiscountReservation(
            shop_id=shop_id,
            user_id=user_id,
            reserved_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        if await _insert_reservation(session, reservation):
            return reservation.id

    raise Conflict("A discount request for this user is already in progress")


async def release(session: AsyncSession, reservation_id: UUID) -> None:
    await session.execute(delete(DiscountReservation).where(DiscountReservation.id == reservation_id))
    await session.commit()


async def code_exists(session: AsyncSession, code: str) -> bool:
    in_ledger = (await session.execute(select(func.count()).select_from(Discount).where(Discount.code == code))).scalar_one()
    return int(in_ledger) > 0


async def attach_code(session: AsyncSession, reservation_id: UUID, code: str) -> None:
    """Bind a candidate code to the reservation; CodeConflict if any other row holds it."""
    if await code_exists(session, code):
        raise CodeConflict("Generated code already exists")
    try:
        await session.execute(
            update(DiscountReservation).where(DiscountReservation.id == reservation_id).values(code=code)
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise CodeConflict("Generated code already reserved") from exc


async def has_active_discount(session: AsyncSession, *, shop_id: UUID, user_id: str) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(Discount)
        .where(Discount.shop_id == shop_id, Discount.user_id == user_id, Discount.active.is_(True))
    )
    return int(result.scalar_one()) > 0


async def count_for_shop(session: AsyncSession, shop_id: UUID) -> int:
    result = await session.execute(select(func.count()).select_from(Discount).where(Discount.shop_id == shop_id))
    return int(result.scalar_one())


async def insert_discount(
    session: AsyncSession,
    reservation_id: UUID,
    *,
    shop_id: UUID,
    user_id: str,
    email: str,
    code: str,
    kind: DiscountKind,
    amount: Decimal,
    one_time_use: bool,
    created_at: datetime,
    expires_at: datetime,
    external_id: str | None,
) -> Discount:
    """Persist the issued discount and drop its reservation in one transaction."""
    discount = Discount(
        shop_id=shop_id,
        user_id=user_id,
        email=email,
        code=code,
        kind=kind,
        amount=amount,
        one_time_use=one_time_use,
        external_id=external_id,
        created_at=created_at,
        expires_at=expires_at,
        active=True,
        synced=False,
    )
    session.add(discount)
    try:
        await session.execute(delete(DiscountReservation).where(DiscountReservation.id == reservation_id))
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        await release(session, reservation_id)
        if await code_exists(session, code):
            raise CodeConflict("Confirmed code already exists in the ledger") from exc
        raise Conflict("An active discount already exists for this user") from exc
    except SQLAlchemyError:
        # The code is already live on the platform; keep enough to find it there.
        logger.error(
            "discount_persist_failed",
            extra={"shop_id": str(shop_id), "user_id": user_id, "code": code, "external_id": external_id},
            exc_info=True,
        )
        await session.rollback()
        # A stale reservation is taken over after its TTL if this also fails.
        await release(session, reservation_id)
        raise
    await session.refresh(discount)
    return discount


async def find_by_code(session: AsyncSession, code: str, *, active_only: bool = False) -> Discount | None:
    query = select(Discount).where(Discount.code == code)
    if active_only:
        query = query.where(Discount.active.is_(True))
    return (await session.execute(query)).scalar_one_or_none()


async def update_redemption(
    session: AsyncSession,
    *,
    code: str,
    order_id: str,
    order_amount: Decimal | None,
    redeemed_at: datetime,
) -> bool:
    """Record the redemption once. Returns False when it was already recorded."""
    result = await session.execute(
        update(Discount)
        .where(Discount.code == code, Discount.redeemed_at.is_(None))
        .values(redeemed_at=redeemed_at, order_id=order_id, order_amount=order_amount)
    )
    await session.commit()
    return bool(result.rowcount)


async def find_unsynced_redeemed(session: AsyncSession, *, shop_id: UUID | None = None) -> list[Discount]:
    query = (
        select(Discount)
        .where(Discount.synced.is_(False), Discount.redeemed_at.is_not(None))
        .order_by(Discount.redeemed_at.asc())
    )
    if shop_id is not None:
        query = query.where(Discount.shop_id == shop_id)
    return list((await session.execute(query)).scalars().all())


async def mark_synced(session: AsyncSession, code: str) -> Discount:
    discount = await find_by_code(session, code)
    if discount is None:
        raise NotFound("Discount not found")
    if not discount.synced:
        discount.synced = True
        session.add(discount)
        await session.commit()
        await session.refresh(discount)
    return discount

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Enum, ForeignKey, Index, Numeric, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from procircle.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DiscountKind(str, enum.Enum):
    percentage = "percentage"
    fixed = "fixed"


class DiscountStatus(str, enum.Enum):
    issued = "issued"
    redeemed = "redeemed"
    expired = "expired"


class Discount(Base):
    __tablename__ = "discounts"
    __table_args__ = (
        Index(
            "uq_discounts_active_shop_user",
            "shop_id",
            "user_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        CheckConstraint("expires_at > created_at", name="ck_discounts_expiry_after_creation"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    kind: Mapped[DiscountKind] = mapped_column(Enum(DiscountKind, native_enum=False), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    one_time_use: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")

    def status_at(self, now: datetime) -> DiscountStatus:
        if self.redeemed_at is not None:
            return DiscountStatus.redeemed
        if as_utc(now) > as_utc(self.expires_at):
            return DiscountStatus.expired
        return DiscountStatus.issued


class DiscountReservation(Base):
    """In-flight issuance claim for a (shop, user) pair.

    Held only while the platform call is outstanding; replaced by a
    Discount row on success and removed on failure.
    """

    __tablename__ = "discount_reservations"
    __table_args__ = (UniqueConstraint("shop_id", "user_id", name="uq_discount_reservations_shop_user"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

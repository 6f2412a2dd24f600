import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procircle.db.base import Base
from procircle.models.discount import DiscountKind


class Shop(Base):
    """A merchant tenant. Written by the installation flow; read-only to issuance."""

    __tablename__ = "shops"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_domain: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    access_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scope: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    installed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    installed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    uninstalled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    settings: Mapped["ShopSettings | None"] = relationship(
        "ShopSettings", back_populates="shop", uselist=False, lazy="selectin"
    )


class ShopSettings(Base):
    __tablename__ = "shop_settings"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shop_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("shops.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    discount_type: Mapped[DiscountKind] = mapped_column(
        Enum(DiscountKind, native_enum=False), nullable=False, default=DiscountKind.percentage
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("20.00"))
    expiry_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_discounts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    one_time_use: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    allowed_countries: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    allowed_member_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    shop: Mapped[Shop] = relationship("Shop", back_populates="settings")

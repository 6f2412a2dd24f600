"""shops, shop settings and discount ledger

Revision ID: 0001
Revises:
Create Date: 2025-12-03
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    uuid_type = sa.dialects.postgresql.UUID(as_uuid=True)
    op.create_table(
        "shops",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("shop_domain", sa.String(length=255), nullable=False),
        sa.Column("access_token", sa.String(length=255), nullable=True),
        sa.Column("scope", sa.String(length=1000), nullable=True),
        sa.Column("installed", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("installed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("uninstalled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_shops_shop_domain", "shops", ["shop_domain"], unique=True)

    op.create_table(
        "shop_settings",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("shop_id", uuid_type, sa.ForeignKey("shops.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("discount_type", sa.String(length=10), nullable=False, server_default="percentage"),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False, server_default="20"),
        sa.Column("expiry_days", sa.Integer(), nullable=True),
        sa.Column("max_discounts", sa.Integer(), nullable=True),
        sa.Column("one_time_use", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("allowed_countries", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("allowed_member_types", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("categories", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "discounts",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("shop_id", uuid_type, sa.ForeignKey("shops.id"), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=10), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("one_time_use", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("synced", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("order_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint("expires_at > created_at", name="ck_discounts_expiry_after_creation"),
    )
    op.create_index("ix_discounts_code", "discounts", ["code"], unique=True)
    op.create_index("ix_discounts_shop_id", "discounts", ["shop_id"])
    op.create_index(
        "uq_discounts_active_shop_user",
        "discounts",
        ["shop_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("active"),
        sqlite_where=sa.text("active = 1"),
    )

    op.create_table(
        "discount_reservations",
        sa.Column("id", uuid_type, primary_key=True, nullable=False),
        sa.Column("shop_id", uuid_type, sa.ForeignKey("shops.id"), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True, unique=True),
        sa.Column("reserved_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("shop_id", "user_id", name="uq_discount_reservations_shop_user"),
    )
    op.create_index("ix_discount_reservations_expires_at", "discount_reservations", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_discount_reservations_expires_at", table_name="discount_reservations")
    op.drop_table("discount_reservations")
    op.drop_index("uq_discounts_active_shop_user", table_name="discounts")
    op.drop_index("ix_discounts_shop_id", table_name="discounts")
    op.drop_index("ix_discounts_code", table_name="discounts")
    op.drop_table("discounts")
    op.drop_table("shop_settings")
    op.drop_index("ix_shops_shop_domain", table_name="shops")
    op.drop_table("shops")

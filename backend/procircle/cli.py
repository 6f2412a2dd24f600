import argparse
import asyncio
import json
from decimal import Decimal

from sqlalchemy import select

import procircle.models  # noqa: F401
from procircle.db.base import Base
from procircle.db.session import SessionLocal, engine
from procircle.models.discount import DiscountKind
from procircle.models.shop import Shop, ShopSettings
from procircle.services import ledger


def _csv(raw: str | None) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


async def create_tables() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Tables created")


async def configure_shop(args: argparse.Namespace) -> None:
    domain = args.domain.strip().lower()
    async with SessionLocal() as session:
        shop = (await session.execute(select(Shop).where(Shop.shop_domain == domain))).scalar_one_or_none()
        if shop is None:
            shop = Shop(shop_domain=domain)
            session.add(shop)
        shop.access_token = args.token
        shop.installed = True
        shop.uninstalled_at = None
        await session.flush()

        config = (
            await session.execute(select(ShopSettings).where(ShopSettings.shop_id == shop.id))
        ).scalar_one_or_none()
        if config is None:
            config = ShopSettings(shop_id=shop.id)
            session.add(config)
        config.discount_type = DiscountKind(args.discount_type)
        config.discount_value = Decimal(str(args.discount_value))
        config.expiry_days = args.expiry_days
        config.max_discounts = args.max_discounts
        config.one_time_use = not args.multi_use
        config.allowed_countries = [c.upper() for c in _csv(args.countries)]
        config.allowed_member_types = [m.upper() for m in _csv(args.member_types)]
        config.categories = _csv(args.categories)
        await session.commit()
    print(f"Configured {domain}")


async def list_unsynced() -> None:
    async with SessionLocal() as session:
        rows = await ledger.find_unsynced_redeemed(session)
        for row in rows:
            print(
                json.dumps(
                    {
                        "code": row.code,
                        "user_id": row.user_id,
                        "order_id": row.order_id,
                        "order_amount": str(row.order_amount) if row.order_amount is not None else None,
                        "redeemed_at": row.redeemed_at.isoformat() if row.redeemed_at else None,
                    }
                )
            )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ProCircle discounts management CLI")
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("create-tables", help="Create database tables (local/dev)")
    subparsers.add_parser("list-unsynced", help="Print redeemed discounts not yet acknowledged by reporting")

    shop = subparsers.add_parser("configure-shop", help="Create or update a shop and its discount settings")
    shop.add_argument("--domain", required=True)
    shop.add_argument("--token", required=True, help="Admin API access token")
    shop.add_argument("--discount-type", choices=[k.value for k in DiscountKind], default=DiscountKind.percentage.value)
    shop.add_argument("--discount-value", type=float, default=20)
    shop.add_argument("--expiry-days", type=int, default=None)
    shop.add_argument("--max-discounts", type=int, default=None)
    shop.add_argument("--multi-use", action="store_true", help="Allow codes to be used more than once")
    shop.add_argument("--countries", default="", help="Comma separated ISO country codes")
    shop.add_argument("--member-types", default="", help="Comma separated member type codes")
    shop.add_argument("--categories", default="", help="Comma separated collection handles")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "create-tables":
        asyncio.run(create_tables())
        return True
    if args.command == "configure-shop":
        asyncio.run(configure_shop(args))
        return True
    if args.command == "list-unsynced":
        asyncio.run(list_unsynced())
        return True
    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.models.shop import Shop

logger = logging.getLogger(__name__)


async def mark_uninstalled(session: AsyncSession, shop_domain: str) -> bool:
    """Revoke the stored credential for ``shop_domain``. False when the shop is unknown."""
    shop = (await session.execute(select(Shop).where(Shop.shop_domain == shop_domain))).scalar_one_or_none()
    if shop is None:
        logger.warning("uninstall_unknown_shop", extra={"shop": shop_domain})
        return False
    if shop.installed or shop.access_token:
        shop.installed = False
        shop.access_token = None
        shop.uninstalled_at = datetime.now(timezone.utc)
        session.add(shop)
        await session.commit()
    logger.info("shop_uninstalled", extra={"shop": shop_domain})
    return True

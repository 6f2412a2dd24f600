import hmac

from fastapi import Header

from procircle.core.config import settings
from procircle.core.errors import Unauthorized
from procircle.services.shopify import DiscountPublisher, ShopifyDiscountPublisher


async def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    expected = (settings.internal_api_key or "").strip()
    if not expected or not x_api_key or not hmac.compare_digest(expected.encode(), x_api_key.strip().encode()):
        raise Unauthorized("Unauthorized API access")


def get_discount_publisher() -> DiscountPublisher:
    return ShopifyDiscountPublisher.from_settings(settings)

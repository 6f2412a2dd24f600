from procircle.db.base import Base  # noqa: F401
from procircle.models.shop import Shop, ShopSettings  # noqa: F401
from procircle.models.discount import Discount, DiscountKind, DiscountReservation, DiscountStatus  # noqa: F401
from procircle.models.webhook import WebhookDelivery  # noqa: F401

__all__ = [
    "Base",
    "Shop",
    "ShopSettings",
    "Discount",
    "DiscountKind",
    "DiscountReservation",
    "DiscountStatus",
    "WebhookDelivery",
]

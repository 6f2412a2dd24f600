from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from procircle.models.discount import DiscountKind, DiscountStatus


class DiscountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    shop_domain: str
    user_id: str
    email: str
    kind: DiscountKind
    amount: Decimal
    one_time_use: bool
    external_id: str | None = None
    created_at: datetime
    expires_at: datetime
    status: DiscountStatus
    synced: bool
    redeemed_at: datetime | None = None
    order_id: str | None = None
    order_amount: Decimal | None = None


class UnsyncedDiscounts(BaseModel):
    rows: list[DiscountRead]


class SyncAckRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class SyncAckResponse(BaseModel):
    code: str
    synced: bool = True

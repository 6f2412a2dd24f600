from datetime import datetime, timezone
from decimal import Decimal

import pytest

from procircle.core.errors import ValidationFailed
from procircle.services import redemptions


def test_first_discount_code_picks_the_first_entry() -> None:
    order = {"discount_codes": [{"code": " PRC-AL-AAAAAAAA "}, {"code": "OTHER"}]}
    assert redemptions.first_discount_code(order) == "PRC-AL-AAAAAAAA"


@pytest.mark.parametrize(
    "order",
    [{}, {"discount_codes": []}, {"discount_codes": "PRC"}, {"discount_codes": ["PRC"]}, {"discount_codes": [{"code": ""}]}],
)
def test_orders_without_a_usable_code(order) -> None:
    assert redemptions.first_discount_code(order) is None


def test_order_timestamps_are_normalised_to_utc() -> None:
    parsed = redemptions._order_created_at("2025-03-04T10:15:00-05:00")
    assert parsed == datetime(2025, 3, 4, 15, 15, tzinfo=timezone.utc)
    assert parsed.tzinfo == timezone.utc
    assert redemptions._order_created_at("garbage").tzinfo == timezone.utc


def test_order_amount_is_rounded_to_cents() -> None:
    assert redemptions._order_amount("19.999") == Decimal("20.00")
    assert redemptions._order_amount(None) is None
    assert redemptions._order_amount("n/a") is None


@pytest.mark.anyio
async def test_missing_order_id_is_invalid() -> None:
    with pytest.raises(ValidationFailed):
        await redemptions.reconcile_order(None, {"discount_codes": [{"code": "PRC-AL-AAAAAAAA"}]})  # type: ignore[arg-type]

"""Normalisation and bounds checks for issuance requests.

Field names follow the issuance sheet (camelCase) with snake_case
accepted as well. Every violation is collected before raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from procircle.core.errors import ValidationFailed
from procircle.models.discount import DiscountKind

MIN_EXPIRY_DAYS = 1
MAX_EXPIRY_DAYS = 365
MAX_PERCENTAGE = Decimal("100")
# discounts.amount is Numeric(10, 2).
MAX_AMOUNT = Decimal("99999999.99")
CENT = Decimal("0.01")

PERCENTAGE_ERROR = {"field": "amount", "message": "amount must be a percentage between 0 and 100"}


@dataclass(frozen=True)
class NormalizedIssueRequest:
    shop_domain: str
    user_id: str
    email: str
    name: str
    amount: Decimal
    kind: DiscountKind | None = None
    expiry_days: int | None = None
    max_discounts: int | None = None
    one_time_use: bool | None = None
    categories: list[str] = field(default_factory=list)
    countries: list[str] = field(default_factory=list)
    member_types: list[str] = field(default_factory=list)


def _field(body: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in body and body[name] is not None:
            return body[name]
    return None


def _clean_str(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _parse_int(value: Any) -> int | None:
    parsed = _parse_decimal(value)
    if parsed is None or parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def _parse_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    return None


def _string_list(value: Any, *, upper: bool = False) -> list[str]:
    if not isinstance(value, list):
        return []
    items: list[str] = []
    for item in value:
        cleaned = _clean_str(item)
        if not cleaned:
            continue
        items.append(cleaned.upper() if upper else cleaned)
    return list(dict.fromkeys(items))


def _parse_kind(value: Any, errors: list[dict[str, str]]) -> DiscountKind | None:
    if value is None:
        return None
    try:
        return DiscountKind(str(value).strip().lower())
    except ValueError:
        errors.append({"field": "kind", "message": "kind must be 'percentage' or 'fixed'"})
        return None


def _check_amount(raw: Any, kind: DiscountKind | None, errors: list[dict[str, str]]) -> Decimal:
    amount = _parse_decimal(raw)
    if amount is None:
        errors.append({"field": "amount", "message": "amount must be a number"})
        return Decimal("0")
    if amount <= 0:
        errors.append({"field": "amount", "message": "amount must be greater than 0"})
        return amount
    if amount > MAX_AMOUNT:
        errors.append({"field": "amount", "message": f"amount must be at most {MAX_AMOUNT}"})
        return amount
    if amount.normalize().as_tuple().exponent < -2:
        errors.append({"field": "amount", "message": "amount must have at most 2 decimal places"})
        return amount
    # A missing kind is capped later, once the shop default is known.
    if kind == DiscountKind.percentage and amount > MAX_PERCENTAGE:
        errors.append(dict(PERCENTAGE_ERROR))
    return amount.quantize(CENT)


def _check_expiry_days(raw: Any, errors: list[dict[str, str]]) -> int | None:
    if raw is None or raw == "":
        return None
    days = _parse_int(raw)
    if days is None or not (MIN_EXPIRY_DAYS <= days <= MAX_EXPIRY_DAYS):
        errors.append(
            {"field": "expiryDays", "message": f"expiryDays must be a whole number between {MIN_EXPIRY_DAYS} and {MAX_EXPIRY_DAYS}"}
        )
        return None
    return days


def _check_max_discounts(raw: Any, errors: list[dict[str, str]]) -> int | None:
    if raw is None or raw == "":
        return None
    quota = _parse_int(raw)
    if quota is None or quota < 1:
        errors.append({"field": "maxDiscounts", "message": "maxDiscounts must be a whole number of at least 1"})
        return None
    return quota


def validate_issue_request(body: Any) -> NormalizedIssueRequest:
    """Return the normalised request or raise ValidationFailed listing every bad field."""
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid payload", errors=[{"field": "body", "message": "body must be a JSON object"}])

    errors: list[dict[str, str]] = []

    shop_domain = _clean_str(_field(body, "shopDomain", "shop_domain")).lower()
    user_id = _clean_str(_field(body, "userId", "user_id"))
    email = _clean_str(_field(body, "email"))
    for name, value in (("shopDomain", shop_domain), ("userId", user_id), ("email", email)):
        if not value:
            errors.append({"field": name, "message": f"{name} required"})

    kind = _parse_kind(_field(body, "kind", "discountType", "discount_type"), errors)
    amount = _check_amount(_field(body, "amount"), kind, errors)
    expiry_days = _check_expiry_days(_field(body, "expiryDays", "expiry_days"), errors)
    max_discounts = _check_max_discounts(_field(body, "maxDiscounts", "max_discounts"), errors)

    if errors:
        raise ValidationFailed("Invalid discount request", errors=errors)

    return NormalizedIssueRequest(
        shop_domain=shop_domain,
        user_id=user_id,
        email=email,
        name=_clean_str(_field(body, "name")),
        amount=amount,
        kind=kind,
        expiry_days=expiry_days,
        max_discounts=max_discounts,
        one_time_use=_parse_bool(_field(body, "oneTimeUse", "one_time_use")),
        categories=_string_list(_field(body, "categories")),
        countries=_string_list(_field(body, "countries", "countryCodes"), upper=True),
        member_types=_string_list(_field(body, "memberTypes", "member_types"), upper=True),
    )

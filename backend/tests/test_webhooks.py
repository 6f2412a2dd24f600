import asyncio
import json
import logging
from decimal import Decimal
from typing import Callable, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from procircle.core import metrics
from procircle.core.config import settings
from procircle.core.errors import Unauthorized
from procircle.models.discount import Discount
from procircle.models.shop import Shop
from procircle.models.webhook import WebhookDelivery
from procircle.services import webhooks as webhook_service

from conftest import API_KEY, ORDERS_SECRET, SHOP_DOMAIN, UNINSTALL_SECRET, sign

ORDER_URL = "/api/v1/webhooks/order-created"


def _issue(client: TestClient) -> str:
    body = {"shopDomain": SHOP_DOMAIN, "userId": "alice", "email": "alice@example.com", "name": "Alice Liddell", "amount": 20}
    res = client.post("/api/v1/discounts", json=body, headers={"X-API-Key": API_KEY})
    assert res.status_code == 201, res.text
    return res.json()["code"]


def _order(code: str | None, order_id: int = 820982911946154508) -> bytes:
    order = {
        "id": order_id,
        "total_price": "80.00",
        "created_at": "2025-03-04T10:15:00-05:00",
        "discount_codes": [{"code": code, "amount": "16.00", "type": "percentage"}] if code else [],
    }
    return json.dumps(order).encode()


def _post_order(client: TestClient, body: bytes, *, webhook_id: str | None = "wh-1", signature: str | None = None):
    headers = {"X-Shopify-Hmac-Sha256": signature if signature is not None else sign(body), "X-Shopify-Shop-Domain": SHOP_DOMAIN}
    if webhook_id:
        headers["X-Shopify-Webhook-Id"] = webhook_id
    return client.post(ORDER_URL, content=body, headers=headers)


def _discount(session_factory: Callable, code: str) -> Discount:
    async def load() -> Discount:
        async with session_factory() as session:
            return (await session.execute(select(Discount).where(Discount.code == code))).scalar_one()

    return asyncio.run(load())


def test_signature_helpers() -> None:
    body = b'{"id": 1}'
    webhook_service.verify_webhook(body, sign(body), ORDERS_SECRET)
    with pytest.raises(Unauthorized):
        webhook_service.verify_webhook(body, sign(body, "other"), ORDERS_SECRET)
    with pytest.raises(Unauthorized):
        webhook_service.verify_webhook(body, None, ORDERS_SECRET)
    with pytest.raises(Unauthorized):
        webhook_service.verify_webhook(body, sign(body), None)
    with pytest.raises(Unauthorized):
        webhook_service.verify_webhook({"id": 1}, sign(body), ORDERS_SECRET)
    assert metrics.snapshot()["webhooks_rejected"] == 4


def test_topic_secret_falls_back_to_app_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "shopify_webhook_secret_orders_create", None)
    monkeypatch.setattr(settings, "shopify_api_secret", "app-secret")
    assert webhook_service.webhook_secret(webhook_service.TOPIC_ORDERS_CREATE) == "app-secret"
    assert webhook_service.webhook_secret(webhook_service.TOPIC_APP_UNINSTALLED) == UNINSTALL_SECRET


def test_order_with_issued_code_is_recorded(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]
    code = _issue(client)

    res = _post_order(client, _order(code))
    assert res.status_code == 200, res.text
    assert res.json() == {"received": True, "outcome": "recorded"}

    discount = _discount(session_factory, code)
    assert discount.order_id == "820982911946154508"
    assert discount.order_amount == Decimal("80.00")
    assert discount.redeemed_at is not None
    assert discount.synced is False


def test_tampered_body_is_rejected(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]
    code = _issue(client)

    original = _order(code)
    tampered = original.replace(b"80.00", b"1.00")
    res = _post_order(client, tampered, signature=sign(original))
    assert res.status_code == 401
    assert res.json()["code"] == "unauthorized"
    assert _discount(session_factory, code).redeemed_at is None


def test_missing_signature_or_secret_is_rejected(monkeypatch: pytest.MonkeyPatch, test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    body = _order("PRC-AL-AAAAAAAA")

    assert client.post(ORDER_URL, content=body).status_code == 401

    monkeypatch.setattr(settings, "shopify_webhook_secret_orders_create", None)
    assert _post_order(client, body).status_code == 401


def test_redelivery_is_idempotent(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]
    code = _issue(client)

    assert _post_order(client, _order(code)).json()["outcome"] == "recorded"
    first_redeemed = _discount(session_factory, code).redeemed_at

    duplicate = _post_order(client, _order(code))
    assert duplicate.status_code == 200
    assert duplicate.json() == {"received": True, "duplicate": True}

    # A second order reusing the code under a new delivery id leaves the first redemption intact.
    other = _post_order(client, _order(code, order_id=999), webhook_id="wh-2")
    assert other.json()["outcome"] == "already_recorded"

    # Without a delivery id the conditional update still holds.
    again = _post_order(client, _order(code), webhook_id=None)
    assert again.json()["outcome"] == "already_recorded"

    discount = _discount(session_factory, code)
    assert discount.redeemed_at == first_redeemed
    assert discount.order_id == "820982911946154508"

    async def deliveries() -> list[WebhookDelivery]:
        async with session_factory() as session:
            return list((await session.execute(select(WebhookDelivery).order_by(WebhookDelivery.webhook_id))).scalars().all())

    journal = asyncio.run(deliveries())
    assert [(d.webhook_id, d.attempts) for d in journal] == [("wh-1", 2), ("wh-2", 1)]
    assert all(d.processed_at is not None for d in journal)
    assert metrics.snapshot()["webhook_duplicates"] == 1
    assert metrics.snapshot()["redemptions_recorded"] == 1


def test_order_without_or_with_unknown_code_is_acknowledged(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]

    res = _post_order(client, _order(None))
    assert res.json() == {"received": True, "outcome": "no_code"}

    res = _post_order(client, _order("SUMMER10"), webhook_id="wh-2")
    assert res.json() == {"received": True, "outcome": "unknown_code"}


def test_lowercase_code_matches_issued_code(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]
    code = _issue(client)

    res = _post_order(client, _order(code.lower()))
    assert res.json()["outcome"] == "recorded"


def test_signed_malformed_payload_is_acknowledged_and_journaled(test_app: Dict[str, object], caplog: pytest.LogCaptureFixture) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]

    with caplog.at_level(logging.WARNING, logger="procircle.api.v1.webhooks"):
        res = _post_order(client, b"not json", webhook_id="wh-bad")
    assert res.status_code == 200, res.text
    assert res.json() == {"received": True, "outcome": "malformed"}
    assert any(r.getMessage() == "webhook_malformed_payload" for r in caplog.records)

    # A JSON array is just as unusable as invalid JSON.
    array = _post_order(client, b"[1, 2]", webhook_id="wh-array")
    assert array.json() == {"received": True, "outcome": "malformed"}

    redelivery = _post_order(client, b"not json", webhook_id="wh-bad")
    assert redelivery.json() == {"received": True, "duplicate": True}

    async def load() -> WebhookDelivery:
        async with session_factory() as session:
            return (await session.execute(select(WebhookDelivery).where(WebhookDelivery.webhook_id == "wh-bad"))).scalar_one()

    delivery = asyncio.run(load())
    assert delivery.payload == {"malformed": True}
    assert delivery.last_error == "Invalid payload"
    assert delivery.processed_at is not None
    assert delivery.attempts == 2


def test_signed_malformed_uninstall_is_acknowledged(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]

    body = b"{truncated"
    res = client.post(
        "/api/v1/webhooks/app-uninstalled",
        content=body,
        headers={"X-Shopify-Hmac-Sha256": sign(body, UNINSTALL_SECRET), "X-Shopify-Shop-Domain": SHOP_DOMAIN},
    )
    assert res.status_code == 200, res.text
    assert res.json() == {"received": True, "outcome": "malformed"}

    async def load() -> Shop:
        async with session_factory() as session:
            return (await session.execute(select(Shop).where(Shop.shop_domain == SHOP_DOMAIN))).scalar_one()

    assert asyncio.run(load()).installed is True


def test_unsigned_malformed_payload_is_still_unauthorized(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    res = _post_order(client, b"not json", signature="bm90LXRoZS1zaWduYXR1cmU=")
    assert res.status_code == 401


def test_legacy_route_alias(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    body = _order(None)
    res = client.post("/api/v1/webhooks/orders-create", content=body, headers={"X-Shopify-Hmac-Sha256": sign(body)})
    assert res.status_code == 200
    assert res.json()["outcome"] == "no_code"


def test_app_uninstalled_revokes_token(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    session_factory: Callable = test_app["session_factory"]  # type: ignore[assignment]
    test_app["seed"]()  # type: ignore[operator]

    body = json.dumps({"id": 548380009, "myshopify_domain": SHOP_DOMAIN}).encode()
    wrong = client.post("/api/v1/webhooks/app-uninstalled", content=body, headers={"X-Shopify-Hmac-Sha256": sign(body)})
    assert wrong.status_code == 401

    res = client.post(
        "/api/v1/webhooks/app-uninstalled",
        content=body,
        headers={"X-Shopify-Hmac-Sha256": sign(body, UNINSTALL_SECRET), "X-Shopify-Webhook-Id": "wh-u1"},
    )
    assert res.status_code == 200, res.text
    assert res.json() == {"received": True, "known_shop": True}

    async def load() -> Shop:
        async with session_factory() as session:
            return (await session.execute(select(Shop).where(Shop.shop_domain == SHOP_DOMAIN))).scalar_one()

    shop = asyncio.run(load())
    assert shop.installed is False
    assert shop.access_token is None
    assert shop.uninstalled_at is not None

    issue = client.post(
        "/api/v1/discounts",
        json={"shopDomain": SHOP_DOMAIN, "userId": "bob", "email": "bob@example.com", "amount": 10},
        headers={"X-API-Key": API_KEY},
    )
    assert issue.status_code == 403


def test_app_uninstalled_for_unknown_shop(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    body = json.dumps({"domain": "gone.myshopify.com"}).encode()
    res = client.post(
        "/api/v1/webhooks/app-uninstalled", content=body, headers={"X-Shopify-Hmac-Sha256": sign(body, UNINSTALL_SECRET)}
    )
    assert res.status_code == 200
    assert res.json() == {"received": True, "known_shop": False}

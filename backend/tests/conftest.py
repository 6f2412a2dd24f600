import asyncio
import base64
import hashlib
import hmac
import os
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from procircle.core import metrics
from procircle.core.config import settings
from procircle.core.dependencies import get_discount_publisher
from procircle.db.base import Base
from procircle.db.session import get_session
from procircle.main import app
from procircle.models.shop import Shop, ShopSettings
from procircle.services.shopify import PublishedDiscount, PublishRequest, ShopAccess

API_KEY = "test-internal-key"
ORDERS_SECRET = "orders-create-secret"
UNINSTALL_SECRET = "app-uninstalled-secret"
SHOP_DOMAIN = "pro-circle.myshopify.com"


def sign(body: bytes, secret: str = ORDERS_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


class FakePublisher:
    """Stands in for the Shopify Admin API; records every publish call."""

    def __init__(self) -> None:
        self.calls: list[tuple[ShopAccess, PublishRequest]] = []
        self.error: Exception | None = None
        self.confirmed_code: str | None = None
        self.delay: float = 0.0

    async def publish(self, shop: ShopAccess, request: PublishRequest) -> PublishedDiscount:
        self.calls.append((shop, request))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PublishedDiscount(
            code=self.confirmed_code or request.code,
            external_id=f"gid://shopify/DiscountCodeNode/{len(self.calls)}",
        )


async def make_session_factory(url: str = "sqlite+aiosqlite:///:memory:"):
    engine = create_async_engine(url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def create_shop(session_factory, *, domain: str = SHOP_DOMAIN, token: str | None = "shpat_test", installed: bool = True, config: dict[str, Any] | None = None):
    async with session_factory() as session:
        shop = Shop(shop_domain=domain, access_token=token, installed=installed)
        session.add(shop)
        await session.flush()
        if config is not None:
            session.add(ShopSettings(shop_id=shop.id, **config))
        await session.commit()
        return shop.id


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "internal_api_key", API_KEY)
    monkeypatch.setattr(settings, "shopify_api_secret", None)
    monkeypatch.setattr(settings, "shopify_webhook_secret_orders_create", ORDERS_SECRET)
    monkeypatch.setattr(settings, "shopify_webhook_secret_app_uninstalled", UNINSTALL_SECRET)


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def test_app(fake_publisher: FakePublisher) -> Generator[dict[str, object], None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_discount_publisher] = lambda: fake_publisher
    client = TestClient(app)

    def seed(**kwargs: Any):
        return asyncio.run(create_shop(SessionLocal, **kwargs))

    yield {"client": client, "session_factory": SessionLocal, "publisher": fake_publisher, "seed": seed}
    client.close()
    app.dependency_overrides.clear()

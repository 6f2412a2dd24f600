import logging
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from procircle.core import metrics
from procircle.core.sentry import _scrub_event


def test_healthcheck(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers.get("X-Request-ID")


def test_request_id_is_echoed(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    response = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_metrics_snapshot(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    metrics.record_discount_issued()
    metrics.record_discount_rejected("quota_exceeded")
    response = client.get("/api/v1/metrics")
    assert response.status_code == 200
    assert response.json() == {
        "discounts_issued": 1,
        "discounts_rejected": 1,
        "discounts_rejected:quota_exceeded": 1,
    }


def test_unknown_route_uses_error_envelope(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    response = client.get("/api/v1/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Not Found"


def test_readiness_checks_the_database(test_app: Dict[str, object]) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json() == {"status": "ready"}


def test_sentry_scrubs_credentials() -> None:
    event = {"request": {"headers": {"X-API-Key": "k", "X-Shopify-Hmac-Sha256": "sig", "Accept": "application/json"}}}
    scrubbed = _scrub_event(event, {})
    assert scrubbed["request"]["headers"] == {
        "X-API-Key": "[redacted]",
        "X-Shopify-Hmac-Sha256": "[redacted]",
        "Accept": "application/json",
    }


def test_request_log_carries_shop_header(test_app: Dict[str, object], caplog: pytest.LogCaptureFixture) -> None:
    client: TestClient = test_app["client"]  # type: ignore[assignment]
    with caplog.at_level(logging.INFO, logger="procircle.request"):
        client.get("/api/v1/health", headers={"X-Shopify-Shop-Domain": "pro-circle.myshopify.com"})
    records = [r for r in caplog.records if r.name == "procircle.request"]
    assert records
    assert records[-1].shop == "pro-circle.myshopify.com"
    assert records[-1].status_code == 200

from __future__ import annotations

from typing import Any

from procircle.core.config import settings

_SENSITIVE_HEADERS = {"x-api-key", "x-shopify-access-token", "x-shopify-hmac-sha256", "authorization"}


def _scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SENSITIVE_HEADERS:
                headers[name] = "[redacted]"
    return event


def init_sentry() -> None:
    if not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.app_version,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        before_send=_scrub_event,
        attach_stacktrace=True,
        send_default_pii=False,
    )

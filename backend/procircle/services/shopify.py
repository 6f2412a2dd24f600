"""Publishing discount codes to the Shopify Admin API.

Two wire shapes are supported and picked by ``shopify_discount_adapter``:

* ``basic_code`` - GraphQL ``discountCodeBasicCreate``; percentages go out
  as a fraction (20% -> 0.2).
* ``price_rule`` - REST price rule plus discount code; percentages go out
  as a negative whole number (20% -> "-20.00").

Collection handles are resolved to ids through GraphQL for both. A handle
that cannot be resolved is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

import httpx

from procircle.core import metrics
from procircle.core.config import Settings
from procircle.core.errors import ExternalRejected, ExternalUnavailable, NotEligible
from procircle.models.discount import DiscountKind
from procircle.models.shop import Shop

logger = logging.getLogger(__name__)

COLLECTION_BY_HANDLE = """
query CollectionByHandle($handle: String!) {
  collectionByHandle(handle: $handle) {
    id
  }
}
"""

DISCOUNT_BASIC_CREATE = """
mutation CreateBasicDiscount($basicCodeDiscount: DiscountCodeBasicInput!) {
  discountCodeBasicCreate(basicCodeDiscount: $basicCodeDiscount) {
    codeDiscountNode {
      id
      codeDiscount {
        ... on DiscountCodeBasic {
          title
          startsAt
          endsAt
          codes(first: 1) {
            nodes { code }
          }
        }
      }
    }
    userErrors { field message }
  }
}
"""


@dataclass(frozen=True)
class ShopAccess:
    """Credentials for one shop, detached from the ORM session."""

    shop_domain: str
    access_token: str | None

    @classmethod
    def from_shop(cls, shop: Shop) -> "ShopAccess":
        return cls(shop_domain=shop.shop_domain, access_token=shop.access_token)


@dataclass(frozen=True)
class PublishRequest:
    code: str
    kind: DiscountKind
    amount: Decimal
    starts_at: datetime
    ends_at: datetime
    one_time_use: bool
    category_handles: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PublishedDiscount:
    code: str
    external_id: str | None = None


class DiscountPublisher(Protocol):
    async def publish(self, shop: ShopAccess, request: PublishRequest) -> PublishedDiscount: ...


def _iso(value: datetime) -> str:
    return value.isoformat()


def _numeric_id(gid: str) -> int | None:
    tail = str(gid or "").rsplit("/", 1)[-1]
    return int(tail) if tail.isdigit() else None


def _user_errors(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [
        {"field": err.get("field"), "message": err.get("message")}
        for err in raw
        if isinstance(err, dict)
    ]


def _rest_errors(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, dict):
        errors: list[dict[str, Any]] = []
        for key, messages in raw.items():
            for message in messages if isinstance(messages, list) else [messages]:
                errors.append({"field": key, "message": str(message)})
        return errors
    if isinstance(raw, list):
        return [{"field": None, "message": str(item)} for item in raw]
    return [{"field": None, "message": str(raw)}]


async def _send(client: httpx.AsyncClient, method: str, url: str, *, json: dict[str, Any]) -> httpx.Response:
    try:
        return await client.request(method, url, json=json)
    except httpx.HTTPError as exc:
        raise ExternalUnavailable(f"Shopify request failed: {exc.__class__.__name__}") from exc


def _json_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise ExternalUnavailable("Shopify returned a non-JSON response") from exc


async def graphql(client: httpx.AsyncClient, query: str, variables: dict[str, Any]) -> dict[str, Any]:
    resp = await _send(client, "POST", "/graphql.json", json={"query": query, "variables": variables})
    if resp.status_code >= 400:
        raise ExternalUnavailable(f"Shopify GraphQL returned HTTP {resp.status_code}")
    body = _json_body(resp)
    if not isinstance(body, dict):
        raise ExternalUnavailable("Shopify GraphQL returned an unexpected body")
    if body.get("errors"):
        raise ExternalUnavailable("Shopify GraphQL error", errors=_rest_errors(body["errors"]))
    data = body.get("data")
    if not isinstance(data, dict):
        raise ExternalUnavailable("Shopify GraphQL response missing data")
    return data


class BasicCodeAdapter:
    name = "basic_code"

    def build_input(self, request: PublishRequest, *, title: str, collection_ids: list[str]) -> dict[str, Any]:
        if request.kind == DiscountKind.percentage:
            value: dict[str, Any] = {"percentage": float(request.amount / Decimal("100"))}
        else:
            value = {"discountAmount": {"amount": f"{request.amount:.2f}", "appliesOnEachItem": False}}
        items: dict[str, Any] = {"collections": {"add": collection_ids}} if collection_ids else {"all": True}
        return {
            "title": title,
            "code": request.code,
            "startsAt": _iso(request.starts_at),
            "endsAt": _iso(request.ends_at),
            "usageLimit": 1 if request.one_time_use else None,
            "appliesOncePerCustomer": False,
            "customerSelection": {"all": True},
            "customerGets": {"value": value, "items": items},
        }

    async def create(
        self, client: httpx.AsyncClient, request: PublishRequest, *, title: str, collection_ids: list[str]
    ) -> PublishedDiscount:
        data = await graphql(
            client,
            DISCOUNT_BASIC_CREATE,
            {"basicCodeDiscount": self.build_input(request, title=title, collection_ids=collection_ids)},
        )
        result = data.get("discountCodeBasicCreate")
        if not isinstance(result, dict):
            raise ExternalUnavailable("Shopify response missing discountCodeBasicCreate")
        errors = _user_errors(result.get("userErrors"))
        if errors:
            raise ExternalRejected("Shopify rejected the discount", errors=errors)
        node = result.get("codeDiscountNode")
        if not isinstance(node, dict) or not node.get("id"):
            raise ExternalUnavailable("Shopify response missing discount node")
        codes = (((node.get("codeDiscount") or {}).get("codes") or {}).get("nodes")) or []
        confirmed = codes[0].get("code") if codes and isinstance(codes[0], dict) else None
        return PublishedDiscount(code=str(confirmed or request.code), external_id=str(node["id"]))


class PriceRuleAdapter:
    name = "price_rule"

    def build_input(self, request: PublishRequest, *, title: str, collection_ids: list[str]) -> dict[str, Any]:
        numeric_ids = [cid for cid in (_numeric_id(gid) for gid in collection_ids) if cid is not None]
        rule: dict[str, Any] = {
            "title": title,
            "target_type": "line_item",
            "target_selection": "entitled" if numeric_ids else "all",
            "allocation_method": "across",
            "value_type": "percentage" if request.kind == DiscountKind.percentage else "fixed_amount",
            "value": f"-{request.amount:.2f}",
            "customer_selection": "all",
            "usage_limit": 1 if request.one_time_use else None,
            "once_per_customer": False,
            "starts_at": _iso(request.starts_at),
            "ends_at": _iso(request.ends_at),
        }
        if numeric_ids:
            rule["entitled_collection_ids"] = numeric_ids
        return {"price_rule": rule}

    async def _post(self, client: httpx.AsyncClient, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await _send(client, "POST", url, json=payload)
        if resp.status_code == 422:
            body = _json_body(resp)
            raw = body.get("errors") if isinstance(body, dict) else body
            raise ExternalRejected("Shopify rejected the discount", errors=_rest_errors(raw))
        if resp.status_code >= 400:
            raise ExternalUnavailable(f"Shopify REST returned HTTP {resp.status_code}")
        body = _json_body(resp)
        if not isinstance(body, dict):
            raise ExternalUnavailable("Shopify REST returned an unexpected body")
        return body

    async def create(
        self, client: httpx.AsyncClient, request: PublishRequest, *, title: str, collection_ids: list[str]
    ) -> PublishedDiscount:
        created = await self._post(
            client, "/price_rules.json", self.build_input(request, title=title, collection_ids=collection_ids)
        )
        rule_id = (created.get("price_rule") or {}).get("id")
        if not rule_id:
            raise ExternalUnavailable("Shopify response missing price rule id")
        try:
            body = await self._post(
                client, f"/price_rules/{rule_id}/discount_codes.json", {"discount_code": {"code": request.code}}
            )
        except (ExternalRejected, ExternalUnavailable):
            await self._discard_rule(client, rule_id)
            raise
        confirmed = (body.get("discount_code") or {}).get("code")
        return PublishedDiscount(code=str(confirmed or request.code), external_id=str(rule_id))

    async def _discard_rule(self, client: httpx.AsyncClient, rule_id: Any) -> None:
        try:
            await client.delete(f"/price_rules/{rule_id}.json")
        except httpx.HTTPError:
            logger.warning("shopify_price_rule_cleanup_failed", extra={"reason": str(rule_id)})


ADAPTERS: dict[str, type[BasicCodeAdapter] | type[PriceRuleAdapter]] = {
    BasicCodeAdapter.name: BasicCodeAdapter,
    PriceRuleAdapter.name: PriceRuleAdapter,
}


class ShopifyDiscountPublisher:
    """Per-request client for one shop's Admin API, built from settings."""

    def __init__(
        self,
        *,
        api_version: str,
        adapter: str = BasicCodeAdapter.name,
        timeout: float = 10.0,
        title_prefix: str = "ProCircle",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if adapter not in ADAPTERS:
            raise ValueError(f"Unknown Shopify discount adapter {adapter!r}")
        self.api_version = api_version
        self.adapter = ADAPTERS[adapter]()
        self.timeout = timeout
        self.title_prefix = title_prefix
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "ShopifyDiscountPublisher":
        return cls(
            api_version=settings.shopify_api_version,
            adapter=settings.shopify_discount_adapter,
            timeout=settings.shopify_timeout_seconds,
            title_prefix=settings.discount_title_prefix,
        )

    def _client(self, shop: ShopAccess) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"https://{shop.shop_domain}/admin/api/{self.api_version}",
            timeout=self.timeout,
            headers={
                "X-Shopify-Access-Token": shop.access_token or "",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            transport=self._transport,
        )

    async def resolve_collections(self, client: httpx.AsyncClient, shop: ShopAccess, handles: list[str]) -> list[str]:
        ids: list[str] = []
        for handle in handles:
            try:
                data = await graphql(client, COLLECTION_BY_HANDLE, {"handle": str(handle).strip()})
            except ExternalUnavailable as exc:
                logger.warning(
                    "shopify_collection_lookup_failed",
                    extra={"shop": shop.shop_domain, "reason": f"{handle}: {exc.detail}"},
                )
                continue
            collection = data.get("collectionByHandle")
            if isinstance(collection, dict) and collection.get("id"):
                ids.append(str(collection["id"]))
            else:
                logger.warning("shopify_collection_not_found", extra={"shop": shop.shop_domain, "reason": handle})
        return ids

    async def publish(self, shop: ShopAccess, request: PublishRequest) -> PublishedDiscount:
        if not shop.access_token:
            raise NotEligible("Shop is not installed", errors=[{"reason": "shop_not_installed"}])
        title = f"{self.title_prefix}-{request.code}"
        try:
            async with self._client(shop) as client:
                collection_ids = await self.resolve_collections(client, shop, request.category_handles)
                published = await self.adapter.create(client, request, title=title, collection_ids=collection_ids)
        except (ExternalRejected, ExternalUnavailable) as exc:
            metrics.record_external_failure()
            logger.warning(
                "shopify_publish_failed",
                extra={"shop": shop.shop_domain, "code": request.code, "reason": exc.code},
            )
            raise
        logger.info(
            "shopify_discount_created",
            extra={"shop": shop.shop_domain, "code": published.code, "reason": self.adapter.name},
        )
        return published

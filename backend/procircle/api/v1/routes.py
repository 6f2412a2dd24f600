from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from procircle.api.v1 import discounts, webhooks
from procircle.core.metrics import snapshot as metrics_snapshot
from procircle.db.session import get_session

api_router = APIRouter()

api_router.include_router(discounts.router)
api_router.include_router(webhooks.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    # The ledger is the only hard dependency; Shopify is checked per request.
    await session.execute(text("SELECT 1"))
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict[str, int]:
    return metrics_snapshot()

import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from procircle.core.logging_config import request_id_ctx_var

logger = logging.getLogger("procircle.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log one line per response.

    An incoming ``X-Request-ID`` (from the issuance sheet or a proxy) is
    reused so calls can be traced end to end. Shopify deliveries also
    carry their shop and topic headers into the log line.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx_var.set(request_id)
        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                extra = {
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": int((time.perf_counter() - start) * 1000),
                }
                shop = request.headers.get("X-Shopify-Shop-Domain")
                if shop:
                    extra["shop"] = shop
                topic = request.headers.get("X-Shopify-Topic")
                if topic:
                    extra["topic"] = topic
                logger.info("request", extra=extra)
            request_id_ctx_var.reset(token)

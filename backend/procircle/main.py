from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from procircle.api.v1 import api_router
from procircle.core.config import settings
from procircle.core.errors import DiscountError
from procircle.core.logging_config import configure_logging
from procircle.core.sentry import init_sentry
from procircle.middleware import RequestLoggingMiddleware
from procircle.schemas.error import ErrorResponse


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    init_sentry()
    tags_metadata = [
        {"name": "discounts", "description": "Member discount issuance and redemption sync"},
        {"name": "webhooks", "description": "Signed Shopify webhook intake"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(DiscountError)
    async def discount_error_handler(request: Request, exc: DiscountError):
        payload = ErrorResponse(detail=exc.detail, code=exc.code, errors=exc.errors, retryable=exc.retryable)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(detail="Invalid request", code="validation_error", errors=errors)
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()

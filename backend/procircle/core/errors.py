"""Failure taxonomy shared by the issuance and webhook paths.

Every error carries a stable ``code`` so upstream callers (the bulk
issuance sheet, the reporting puller) can decide whether to retry, skip
or alert a human without parsing messages.
"""

from __future__ import annotations

from typing import Any

from fastapi import status


class DiscountError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "error"
    retryable: bool = False

    def __init__(self, detail: str, *, errors: list[Any] | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.errors = errors


class ValidationFailed(DiscountError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_failed"


class Unauthorized(DiscountError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthorized"


class NotEligible(DiscountError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_eligible"


class NotFound(DiscountError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Conflict(DiscountError):
    status_code = status.HTTP_409_CONFLICT
    code = "conflict"


class QuotaExceeded(DiscountError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "quota_exceeded"


class CodeConflict(DiscountError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "code_conflict"
    retryable = True


class ExternalRejected(DiscountError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "external_rejected"


class ExternalUnavailable(DiscountError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "external_unavailable"
    retryable = True

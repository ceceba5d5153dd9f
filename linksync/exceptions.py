from __future__ import annotations
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


# ── Typed domain exceptions ───────────────────────────────────────────────────

class AppError(Exception):
    """Base for all application-level errors."""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, detail: str, context: Optional[Dict[str, Any]] = None):
        self.detail = detail
        self.context = context or {}
        super().__init__(detail)


class ValidationError(AppError):
    """Input that cannot be turned into a link; correctable by the user."""
    status_code = 422
    error_code = "VALIDATION_FAILED"


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConcurrencyConflict(AppError):
    """A sync run already holds the lock."""
    status_code = 409
    error_code = "SYNC_ALREADY_RUNNING"


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class CacheError(AppError):
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


# ── Provider errors ───────────────────────────────────────────────────────────
#
# `kind` is what gets written as errorKind on a per-link sync result.

class ProviderError(AppError):
    status_code = 502
    error_code = "PROVIDER_ERROR"
    kind: str = "provider_error"
    retryable: bool = False


class ProviderNotFound(ProviderError):
    """Link no longer exists upstream. Permanent."""
    error_code = "PROVIDER_NOT_FOUND"
    kind = "provider_not_found"


class RateLimited(ProviderError):
    status_code = 503
    error_code = "PROVIDER_RATE_LIMITED"
    kind = "rate_limited"
    retryable = True

    def __init__(
        self,
        detail: str,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        super().__init__(detail, context)


class TransientNetwork(ProviderError):
    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"
    kind = "transient_network"
    retryable = True


class AuthError(ProviderError):
    """Provider rejected our credentials. Fatal to a whole sync run."""
    error_code = "PROVIDER_AUTH_FAILED"
    kind = "auth_error"


class ProviderDataError(ProviderError):
    error_code = "PROVIDER_BAD_RESPONSE"
    kind = "provider_data"


# ── FastAPI exception handlers ────────────────────────────────────────────────

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "detail": exc.detail,
            "context": exc.context,
        },
    )


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "detail": exc.detail,
        },
    )

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


class NotFoundError(AppError):
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    error_code = "CONFLICT"


class ServiceUnavailableError(AppError):
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


class CacheError(AppError):
    status_code = 503
    error_code = "CACHE_UNAVAILABLE"


# ── Sync engine taxonomy ──────────────────────────────────────────────────────

class SyncError(AppError):
    """Base for errors raised by the synchronization engine."""
    error_code = "SYNC_ERROR"


class FetchError(SyncError):
    status_code = 502
    error_code = "UPSTREAM_FETCH_FAILED"


class TransientNetworkError(FetchError):
    """Timeout, connection failure, 5xx or rate-limit. Retryable per page."""
    error_code = "UPSTREAM_TRANSIENT"


class FatalFetchError(FetchError):
    """Aborts the whole fetch immediately, never retried."""
    error_code = "UPSTREAM_FATAL"


class AuthError(FatalFetchError):
    error_code = "UPSTREAM_AUTH_REJECTED"


class UpstreamRejectedError(FatalFetchError):
    error_code = "UPSTREAM_REJECTED"


class DataAccessError(SyncError):
    """A single data-access call failed. Caught and counted per item."""
    error_code = "DATA_ACCESS_FAILED"


class LockContention(SyncError):
    """Another run holds the lock. Expected under overlap; yields a skipped outcome."""
    status_code = 409
    error_code = "SYNC_IN_PROGRESS"


class RunTimeout(SyncError):
    status_code = 504
    error_code = "SYNC_RUN_TIMEOUT"


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

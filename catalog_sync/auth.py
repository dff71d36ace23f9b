from __future__ import annotations
import hmac
from fastapi import Security
from fastapi.security import APIKeyHeader
from catalog_sync.config import settings
from catalog_sync.exceptions import AppError

ADMIN_ACTOR = "admin:api"


class AuthenticationError(AppError):
    status_code = 401
    error_code = "UNAUTHORIZED"


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_admin(
    api_key: str | None = Security(_api_key_header),
) -> str:
    """Returns the actor id recorded in audit entries for admin actions."""
    if not api_key or not hmac.compare_digest(api_key.encode(), settings.API_KEY.encode()):
        raise AuthenticationError("Invalid or missing API key")
    return ADMIN_ACTOR

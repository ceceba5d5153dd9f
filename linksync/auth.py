from __future__ import annotations
import hmac
from fastapi import Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from linksync.config import settings
from linksync.exceptions import AuthenticationError


_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
_bearer = HTTPBearer(auto_error=False)


async def require_api_key(
    api_key: str | None = Security(_api_key_header),
) -> str:
    if not api_key or not hmac.compare_digest(api_key, settings.API_KEY):
        raise AuthenticationError("Invalid or missing API key")
    return api_key


async def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> str:
    """External scheduler auth. Disabled (always rejects) while CRON_SECRET is unset."""
    token = credentials.credentials if credentials else ""
    if not settings.CRON_SECRET or not hmac.compare_digest(token, settings.CRON_SECRET):
        raise AuthenticationError("Invalid or missing scheduler credentials")
    return token

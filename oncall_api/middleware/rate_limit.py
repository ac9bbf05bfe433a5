"""Rate limiting for the HTTP API using slowapi.

Keys on the X-API-Key header when present so separate service tokens
get separate limits, falling back to the client address.
"""

import hashlib

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from oncall_api.config import settings

# In-memory storage during tests and when no Redis is configured
_storage_uri = (
    "memory://"
    if settings.testing
    else (settings.redis_url if settings.redis_url else "memory://")
)


def _get_client_key(request: Request) -> str:
    api_key = request.headers.get("x-api-key")
    if api_key:
        # Whole-token digest; the raw key never reaches limiter storage
        return f"key:{hashlib.sha256(api_key.encode('utf-8')).hexdigest()}"
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(
    key_func=_get_client_key,
    storage_uri=_storage_uri,
    enabled=not settings.testing,
)

# Per-endpoint limits:
# Manual escalation scan: 10/minute
# Failure reports: 120/minute


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a 429 JSON response when a limit is exceeded."""
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )

"""Service-token authentication for the HTTP API."""

import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from oncall_api.config import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Depends(api_key_header)) -> None:
    """Reject requests without the configured service token.

    Comparison is constant-time. With no API_TOKEN configured every
    request is rejected.
    """
    if not settings.api_token or not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid API key",
        )
    if not hmac.compare_digest(api_key.encode("utf-8"), settings.api_token.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid API key",
        )

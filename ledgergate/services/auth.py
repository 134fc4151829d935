"""
Authentication for the gateway's management API.

Only the review/approval routes are guarded. The proxy itself never needs a
gateway key: it cannot reach the downstream API for writes, it only records
them.
"""
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ledgergate.di.container import container

# API Key header
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> str:
    """
    Verify the X-API-Key header against GATEWAY_API_KEY.

    Raises:
        HTTPException: 401 when the header is missing, 403 when it is wrong
    """
    expected = container.settings().api_key

    # If no API key is configured, allow all requests (development mode)
    if expected is None:
        return api_key or "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key

"""API auth: static API key header for the sync endpoints."""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from .config import settings

api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)


def require_api_key(api_key: Optional[str] = Depends(api_key_header)) -> str:
    """
    Validate the API key header.

    Security note: no anonymous mode. If API_KEY is not configured every request is refused.
    """
    if not settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Auth not configured. Set API_KEY.",
        )
    if not api_key or not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key

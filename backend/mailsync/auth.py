"""Optional static API key guard (X-API-Key). Open when API_KEY is unset."""
from typing import Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import APIKeyHeader

from .config import settings

api_key_header = APIKeyHeader(name=settings.api_key_header, auto_error=False)


def require_api_key(api_key: Optional[str] = Depends(api_key_header)) -> None:
    if not settings.api_key:
        return
    if api_key != settings.api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")


def require_api_key_for_sse(
    api_key: Optional[str] = Depends(api_key_header),
    key: Optional[str] = Query(None, description="API key (EventSource cannot set headers)"),
) -> None:
    """Like require_api_key, but also accepts ?key= since browsers' EventSource cannot set headers."""
    if not settings.api_key:
        return
    if settings.api_key not in (api_key, key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")

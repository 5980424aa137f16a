"""Optional API key authentication."""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(request: Request, api_key: Optional[str] = Security(API_KEY_HEADER)) -> Optional[str]:
    """Reject requests without the configured key; a server without a key accepts everyone."""
    expected = request.app.state.config.server.api_key
    if not expected:
        return None
    if not api_key or api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key

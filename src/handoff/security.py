from __future__ import annotations

import hashlib
from typing import List, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from src.handoff.config import settings

# Only consulted when ENABLE_API_AUTH is true.
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _parse_api_keys() -> List[str]:
    if not settings.api_keys:
        return []
    return [key.strip() for key in settings.api_keys.split(",") if key.strip()]


def key_fingerprint(api_key: str) -> str:
    """Stable, non-reversible label for a caller's key, safe for store keys and logs."""

    return "key-" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]


async def get_api_key(api_key: Optional[str] = Security(_api_key_header)) -> str:
    """Guard for the handoff and system routes.

    Returns an empty string when auth is disabled (the default for local runs
    and tests). With ENABLE_API_AUTH=true a missing or unknown key is a 401, as
    is a deployment that enabled auth without configuring API_KEYS.
    """

    if not settings.enable_api_auth:
        return ""

    allowed_keys = _parse_api_keys()
    if not allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API authentication is enabled but no API keys are configured.",
        )
    if not api_key or api_key not in allowed_keys:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )
    return api_key

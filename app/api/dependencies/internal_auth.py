# app/api/dependencies/internal_auth.py
from typing import Optional

from fastapi import Header, HTTPException, status

from app.core.config import get_settings


async def verify_internal_api_key(
    internal_api_key: Optional[str] = Header(
        default=None,
        alias="X-Internal-Api-Key",
        description="Internal API key required for /internal endpoints outside local/test.",
    ),
) -> None:
    """
    Dependency guarding the batch-job endpoints under /internal.

    Rules
    -----
    - APP_ENV in ("local", "test"):
        - no INTERNAL_API_KEY configured -> open, so schedulers can be tried locally.
        - INTERNAL_API_KEY configured    -> header must match.
    - any other APP_ENV:
        - INTERNAL_API_KEY missing -> 500 (misconfigured deployment).
        - header missing or wrong  -> 401.
    """
    settings = get_settings()
    env = (settings.APP_ENV or "local").lower()
    expected = settings.INTERNAL_API_KEY

    if env in ("local", "test") and not expected:
        return

    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="INTERNAL_API_KEY not configured for this environment.",
        )

    if not internal_api_key or internal_api_key != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing internal API key.",
        )

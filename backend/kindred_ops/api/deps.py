"""
Kindred Ops - API Dependencies
==============================

Shared dependencies for FastAPI endpoints.
"""

import hmac
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from kindred_ops.core.config import settings
from kindred_ops.core.database import get_db


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)


async def require_api_key(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> None:
    """
    Check the bearer key on ops routes.

    No-op when ``OPS_API_KEY`` is not configured.

    Raises:
        HTTPException: If the key is missing or does not match
    """
    expected = settings.OPS_API_KEY
    if not expected:
        return

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ==========================================================================
# Type Aliases
# ==========================================================================

DbSession = Annotated[AsyncSession, Depends(get_db)]

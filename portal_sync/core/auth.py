"""Operator bearer-token authentication."""

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from portal_sync.config import get_settings

security = HTTPBearer(auto_error=False)


async def require_operator(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str | None:
    """Check the operator token when one is configured.

    Routes stay open when ``admin_api_token`` is empty.

    Raises:
        HTTPException: If the token is missing or does not match
    """
    expected = get_settings().admin_api_token
    if not expected:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing operator token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid operator token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


# Dependency for protected routes
CurrentOperator = Annotated[str | None, Depends(require_operator)]

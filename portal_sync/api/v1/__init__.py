"""API v1 router."""

from fastapi import APIRouter, Depends

from portal_sync.api.v1.endpoints import sync
from portal_sync.core.auth import require_operator

router = APIRouter()

# Operator routes (bearer token when configured)
_auth = [Depends(require_operator)]
router.include_router(sync.router, prefix="/sync", tags=["sync"], dependencies=_auth)

"""
OAuth connect routes: /start redirects to the platform consent screen,
/callback exchanges the code and stores the discovered accounts.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .errors import (
    AuthError,
    ConfigurationError,
    RateLimitedError,
    RequestError,
    SyncError,
    TransientError,
)
from .integrations.api_client import ApiClient
from .models import Tenant
from .schemas import SocialAccountOut
from .services.oauth import build_authorization, handle_oauth_callback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

SessionDep = Depends(get_session)


def _http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, ConfigurationError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, AuthError):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(exc, RateLimitedError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
    elif isinstance(exc, TransientError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, RequestError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=str(exc))


@router.get("/{platform}/start")
async def oauth_start(
    platform: str,
    tenant_id: int = Query(...),
    session: AsyncSession = SessionDep,
):
    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    try:
        url, _ = await build_authorization(platform, tenant_id)
    except SyncError as e:
        raise _http_error(e)
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    session: AsyncSession = SessionDep,
):
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error_description or error)
    try:
        async with ApiClient() as api:
            tenant_id, accounts = await handle_oauth_callback(session, api, platform, code, state)
    except SyncError as e:
        logger.warning(f"[oauth] {platform} callback failed: {e}")
        raise _http_error(e)
    return {
        "tenant_id": tenant_id,
        "accounts": [SocialAccountOut.model_validate(a) for a in accounts],
    }

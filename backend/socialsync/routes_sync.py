"""
Sync API Routes

Cron triggers (Bearer CRON_SECRET), the SyncLog health view and the
scheduler status.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .errors import ConfigurationError
from .models import SyncLog, SyncStatus
from .schemas import SyncLogOut
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])
security = HTTPBearer(auto_error=False)

SessionDep = Depends(get_session)


class SyncLogsResponse(BaseModel):
    logs: list[SyncLogOut]
    success: int
    failed: int
    running: int


class SchedulerStatus(BaseModel):
    running: bool
    jobs_count: int
    jobs: list[dict]


def require_cron_secret(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> bool:
    """Dependency: Authorization must be `Bearer <CRON_SECRET>`."""
    expected = get_settings().cron_secret
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET not configured")
    if not credentials or not hmac.compare_digest(credentials.credentials, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return True


def _platform_filter(platform: str | None) -> str | None:
    if not platform or platform.lower() == "all":
        return None
    return platform.lower()


@router.api_route("/cron/sync", methods=["GET", "POST"])
async def cron_sync(
    tenant_id: Optional[int] = Query(default=None),
    platform: Optional[str] = Query(default=None),
    _: bool = Depends(require_cron_secret),
):
    """Sync one tenant (or every active tenant when tenant_id is omitted)."""
    platform = _platform_filter(platform)

    if get_settings().celery_enabled:
        from .worker.tasks import run_global, run_tenant

        if tenant_id is None:
            task = run_global.delay(platform)
        else:
            task = run_tenant.delay(tenant_id, platform)
        logger.info(f"[cron] sync queued (tenant={tenant_id}, platform={platform}, celery_id={task.id})")
        return {"queued": True, "task_id": task.id}

    from .services.sync import run_global_sync, run_tenant_sync

    try:
        if tenant_id is None:
            result = await run_global_sync(platform)
        else:
            result = await run_tenant_sync(tenant_id, platform)
    except ConfigurationError as e:
        logger.error(f"[cron] sync aborted: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"queued": False, "result": result}


@router.api_route("/cron/refresh-tokens", methods=["GET", "POST"])
async def cron_refresh_tokens(
    _: bool = Depends(require_cron_secret),
    session: AsyncSession = SessionDep,
):
    """Refresh every active token expiring within the lookahead window."""
    if get_settings().celery_enabled:
        from .worker.tasks import refresh_expiring

        task = refresh_expiring.delay()
        return {"queued": True, "task_id": task.id}

    from .integrations.api_client import ApiClient
    from .services.token_manager import TokenManager

    try:
        async with ApiClient() as api:
            result = await TokenManager(api).refresh_all_expiring(session)
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    return {"queued": False, "result": result}


@router.get("/sync/logs", response_model=SyncLogsResponse)
async def list_sync_logs(
    tenant_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = SessionDep,
):
    """Latest sync attempts, newest first, with status counts over the returned window."""
    query = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    if tenant_id is not None:
        query = query.where(SyncLog.tenant_id == tenant_id)
    result = await session.execute(query)
    logs = result.scalars().all()

    return SyncLogsResponse(
        logs=[SyncLogOut.model_validate(log) for log in logs],
        success=sum(1 for log in logs if log.status == SyncStatus.success.value),
        failed=sum(1 for log in logs if log.status == SyncStatus.failed.value),
        running=sum(1 for log in logs if log.status == SyncStatus.running.value),
    )


@router.get("/sync/status", response_model=SchedulerStatus)
async def get_sync_status():
    from .services.scheduler import scheduler_service

    jobs = scheduler_service.get_jobs()
    return SchedulerStatus(
        running=scheduler_service.is_running(),
        jobs_count=len(jobs),
        jobs=jobs,
    )

"""
Sync Orchestrator

Runs one job per active social account with a fixed-size worker pool:
  1. insert a running SyncLog (no audit row, no job)
  2. obtain a valid token (refresh if needed)
  3. call the platform connector
  4. LinkedIn only: turn daily follower deltas into a running total
  5. upsert DailyMetric + Post rows
  6. stamp last_sync_at
  7. finalize the SyncLog to success

Any failure in 2-7 finalizes the SyncLog to failed and stays inside the
job. Only a missing encryption secret aborts the whole batch.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialsync.errors import AuthError, RequestError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector
from socialsync.integrations.registry import get_connector
from socialsync.models import AuthStatus, Platform, SocialAccount, SyncStatus, Tenant
from socialsync.schemas import DailyMetricRow, SyncContext
from socialsync.services import repository
from socialsync.services.crypto import ensure_secret_configured
from socialsync.services.token_manager import TokenManager
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountJob:
    tenant_id: int
    social_account_id: int
    platform: str
    external_account_id: str


@dataclass
class JobOutcome:
    social_account_id: int
    status: str
    rows_upserted: int = 0
    error: str | None = None


class InFlightAccounts:
    """Account ids with a running job, shared by every orchestrator in the process."""

    def __init__(self):
        self._ids: set[int] = set()
        self._lock = threading.Lock()

    def try_acquire(self, account_id: int) -> bool:
        with self._lock:
            if account_id in self._ids:
                return False
            self._ids.add(account_id)
            return True

    def release(self, account_id: int) -> None:
        with self._lock:
            self._ids.discard(account_id)

    def __contains__(self, account_id: int) -> bool:
        with self._lock:
            return account_id in self._ids


in_flight_accounts = InFlightAccounts()


def reconcile_linkedin_followers(rows: list[DailyMetricRow], baseline: int) -> list[DailyMetricRow]:
    """Sort by date and accumulate per-day follower deltas on top of `baseline`."""
    running = baseline
    out: list[DailyMetricRow] = []
    for row in sorted(rows, key=lambda r: r.date):
        running += row.followers
        out.append(row.model_copy(update={"followers": running}))
    return out


class SyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        api: ApiClient,
        *,
        token_manager: TokenManager | None = None,
        connector_lookup: Callable[[str], Connector] = get_connector,
        concurrency: int | None = None,
        in_flight: InFlightAccounts | None = None,
    ):
        self._session_factory = session_factory
        self._api = api
        self._connector_lookup = connector_lookup
        self._tokens = token_manager or TokenManager(api, connector_lookup=connector_lookup)
        self._concurrency = max(1, concurrency or get_settings().sync_concurrency)
        self._in_flight = in_flight if in_flight is not None else in_flight_accounts

    async def load_jobs(self, tenant_id: int, platform: str | None = None) -> list[AccountJob]:
        async with self._session_factory() as session:
            query = (
                select(SocialAccount)
                .where(
                    SocialAccount.tenant_id == tenant_id,
                    SocialAccount.auth_status == AuthStatus.active.value,
                )
                .order_by(SocialAccount.created_at, SocialAccount.id)
            )
            if platform:
                query = query.where(SocialAccount.platform == platform)
            result = await session.execute(query)
            return [
                AccountJob(
                    tenant_id=a.tenant_id,
                    social_account_id=a.id,
                    platform=a.platform,
                    external_account_id=a.external_account_id,
                )
                for a in result.scalars().all()
            ]

    async def run_tenant_sync(self, tenant_id: int, platform: str | None = None) -> dict:
        ensure_secret_configured()

        jobs = await self.load_jobs(tenant_id, platform)
        if not jobs:
            logger.info(f"[sync] tenant {tenant_id}: no active accounts" + (f" for {platform}" if platform else ""))
            return _summary(tenant_id, [])

        queue: asyncio.Queue[AccountJob] = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        outcomes: list[JobOutcome] = []

        async def worker() -> None:
            while True:
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                outcomes.append(await self.run_account_job(job))

        workers = min(self._concurrency, len(jobs))
        logger.info(f"[sync] tenant {tenant_id}: {len(jobs)} accounts, {workers} workers")
        await asyncio.gather(*(worker() for _ in range(workers)))

        summary = _summary(tenant_id, outcomes)
        logger.info(
            f"[sync] tenant {tenant_id} done: {summary['success']} success, "
            f"{summary['failed']} failed, {summary['skipped']} skipped, {summary['rows_upserted']} rows"
        )
        return summary

    async def run_account_job(self, job: AccountJob) -> JobOutcome:
        if not self._in_flight.try_acquire(job.social_account_id):
            logger.warning(f"[sync] account {job.social_account_id} already in flight, skipping")
            return JobOutcome(job.social_account_id, "skipped")

        try:
            async with self._session_factory() as session:
                return await self._run_job(session, job)
        finally:
            self._in_flight.release(job.social_account_id)

    async def _run_job(self, session: AsyncSession, job: AccountJob) -> JobOutcome:
        try:
            log = await repository.start_sync_log(session, job.tenant_id, job.social_account_id, job.platform)
        except Exception as e:
            logger.exception(f"[sync] could not create sync log for account {job.social_account_id}")
            await session.rollback()
            return JobOutcome(job.social_account_id, "aborted", error=str(e))
        log_id = log.id

        try:
            rows_upserted = await self._sync_account(session, job)
            await repository.finish_sync_log(session, log_id, SyncStatus.success, rows_upserted=rows_upserted)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"[sync] {job.platform} account {job.social_account_id} failed: {message}")
            await session.rollback()
            await self._record_failure(session, job, log_id, e, message)
            return JobOutcome(job.social_account_id, SyncStatus.failed.value, error=message)

        logger.info(f"[sync] {job.platform} account {job.social_account_id}: {rows_upserted} rows")
        return JobOutcome(job.social_account_id, SyncStatus.success.value, rows_upserted=rows_upserted)

    async def _sync_account(self, session: AsyncSession, job: AccountJob) -> int:
        account = await session.get(SocialAccount, job.social_account_id)
        if account is None:
            raise RequestError(f"Social account {job.social_account_id} not found", platform=job.platform)
        tokens = await self._tokens.get_valid_tokens(session, account)

        connector = self._connector_lookup(job.platform)
        ctx = SyncContext(
            tenant_id=job.tenant_id,
            social_account_id=job.social_account_id,
            platform=job.platform,
            external_account_id=job.external_account_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )
        result = await connector.sync(self._api, ctx)

        daily = result.daily_metrics
        if job.platform == Platform.linkedin.value and daily:
            first_day = min(row.date for row in daily)
            baseline = await repository.latest_followers_before(session, job.social_account_id, first_day)
            daily = reconcile_linkedin_followers(daily, baseline or 0)

        await repository.upsert_daily_metrics(session, job.tenant_id, job.platform, job.social_account_id, daily)
        await repository.upsert_posts(session, job.tenant_id, job.platform, job.social_account_id, result.posts)
        await repository.mark_synced(session, job.social_account_id)
        return len(daily) + len(result.posts)

    async def _record_failure(
        self, session: AsyncSession, job: AccountJob, log_id: int, exc: Exception, message: str
    ) -> None:
        try:
            if isinstance(exc, AuthError):
                await repository.record_account_error(session, job.social_account_id, message)
            await repository.finish_sync_log(session, log_id, SyncStatus.failed, error_message=message)
        except Exception:
            logger.exception(f"[sync] could not finalize sync log {log_id} for account {job.social_account_id}")
            await session.rollback()


def _summary(tenant_id: int, outcomes: list[JobOutcome]) -> dict:
    return {
        "tenant_id": tenant_id,
        "accounts": len(outcomes),
        "success": sum(1 for o in outcomes if o.status == SyncStatus.success.value),
        "failed": sum(1 for o in outcomes if o.status in (SyncStatus.failed.value, "aborted")),
        "skipped": sum(1 for o in outcomes if o.status == "skipped"),
        "rows_upserted": sum(o.rows_upserted for o in outcomes),
        "errors": [
            {"account_id": o.social_account_id, "error": o.error} for o in outcomes if o.error
        ],
    }


async def run_tenant_sync(
    tenant_id: int,
    platform: str | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    api: ApiClient | None = None,
) -> dict:
    """Entry point for the cron route, scheduler and Celery task."""
    if session_factory is None:
        from socialsync.db import AsyncSessionLocal

        session_factory = AsyncSessionLocal
    if api is not None:
        return await SyncOrchestrator(session_factory, api).run_tenant_sync(tenant_id, platform)
    async with ApiClient() as owned:
        return await SyncOrchestrator(session_factory, owned).run_tenant_sync(tenant_id, platform)


async def run_global_sync(
    platform: str | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    api: ApiClient | None = None,
) -> dict:
    """Sync every active tenant, one tenant at a time."""
    ensure_secret_configured()
    if session_factory is None:
        from socialsync.db import AsyncSessionLocal

        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        result = await session.execute(
            select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
        )
        tenant_ids = list(result.scalars().all())

    summaries = []
    if api is not None:
        orchestrator = SyncOrchestrator(session_factory, api)
        for tenant_id in tenant_ids:
            summaries.append(await orchestrator.run_tenant_sync(tenant_id, platform))
    else:
        async with ApiClient() as owned:
            orchestrator = SyncOrchestrator(session_factory, owned)
            for tenant_id in tenant_ids:
                summaries.append(await orchestrator.run_tenant_sync(tenant_id, platform))

    logger.info(f"[sync] global sync done: {len(tenant_ids)} tenants")
    return {"tenants": len(tenant_ids), "results": summaries}

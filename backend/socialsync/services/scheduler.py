"""
Periodic sync triggers.

Two interval jobs run inside the API process:
- global_sync: every SYNC_INTERVAL_HOURS, every active tenant
- refresh_tokens: every 12 hours, tokens expiring within the lookahead

When several API replicas share one Postgres database, each tick is guarded
by a session-level advisory lock and only the holder does the work. Other
dialects (SQLite in local runs) skip the lock. Set SCHEDULER_ENABLED=false
to keep a process from scheduling anything.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from socialsync.db import session_factory_for
from socialsync.settings import get_settings

logger = logging.getLogger("scheduler")

# advisory lock keys, one per job
LOCK_GLOBAL_SYNC = 910_001
LOCK_REFRESH_TOKENS = 910_002

TOKEN_REFRESH_INTERVAL_HOURS = 12

Work = Callable[[async_sessionmaker], Awaitable[dict]]


async def _global_sync(factory: async_sessionmaker) -> dict:
    from socialsync.services.sync import run_global_sync

    result = await run_global_sync(session_factory=factory)
    logger.info(f"[global_sync] {result.get('tenants', 0)} tenants synced")
    return result


async def _refresh_tokens(factory: async_sessionmaker) -> dict:
    from socialsync.integrations.api_client import ApiClient
    from socialsync.services.token_manager import TokenManager

    async with factory() as session, ApiClient() as api:
        result = await TokenManager(api).refresh_all_expiring(session)
    logger.info(f"[refresh_tokens] {result['refreshed']} refreshed, {result['failed']} failed")
    return result


class SchedulerService:
    """Singleton around the AsyncIOScheduler."""

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str) -> None:
        _, self._session_factory = session_factory_for(database_url)

    def use_session_factory(self, factory: async_sessionmaker) -> None:
        self._session_factory = factory

    def _factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self.configure(get_settings().async_database_url)
        return self._session_factory

    @staticmethod
    def _is_postgres(session: AsyncSession) -> bool:
        return session.get_bind().dialect.name == "postgresql"

    async def leader_tick(self, name: str, lock_key: int, work: Work) -> dict | None:
        """Run `work` if this process wins the advisory lock; None when another replica holds it.

        The lock is taken on a dedicated session that stays open for the
        whole tick; `work` opens its own sessions.
        """
        factory = self._factory()
        async with factory() as lock_session:
            postgres = self._is_postgres(lock_session)
            if postgres:
                acquired = await lock_session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
                if not acquired.scalar():
                    logger.debug(f"[{name}] lock held elsewhere, skipping tick")
                    return None
            try:
                logger.info(f"[{name}] tick started")
                return await work(factory)
            finally:
                if postgres:
                    await lock_session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    async def _run_global_sync(self) -> dict | None:
        return await self.leader_tick("global_sync", LOCK_GLOBAL_SYNC, _global_sync)

    async def _run_refresh_tokens(self) -> dict | None:
        return await self.leader_tick("refresh_tokens", LOCK_REFRESH_TOKENS, _refresh_tokens)

    def start(self) -> None:
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler disabled (SCHEDULER_ENABLED=false)")
            return
        if self._running:
            return

        jobs = (
            ("global_sync", "Sync all active tenants", self._run_global_sync, settings.sync_interval_hours),
            ("refresh_tokens", "Refresh expiring OAuth tokens", self._run_refresh_tokens, TOKEN_REFRESH_INTERVAL_HOURS),
        )
        for job_id, name, func, hours in jobs:
            # one run per job at a time; missed runs collapse into one
            self.scheduler.add_job(
                func,
                IntervalTrigger(hours=hours),
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started: sync every {settings.sync_interval_hours}h")

    def stop(self) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def get_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger),
            }
            for job in self.scheduler.get_jobs()
        ]


scheduler_service = SchedulerService.get_instance()

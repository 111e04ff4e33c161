"""
Celery tasks: tenant sync, global sync and the token refresh sweep.

Worker processes have no event loop, so every task drives its coroutine
with asyncio.run() on an engine of its own and disposes it afterwards.
A missing secret (ConfigurationError) is never retried.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from socialsync.errors import ConfigurationError
from socialsync.worker.celery_app import SYNC_QUEUE, celery_app

logger = logging.getLogger(__name__)

TASK_OPTIONS = dict(
    bind=True,
    autoretry_for=(Exception,),
    dont_autoretry_for=(ConfigurationError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
    queue=SYNC_QUEUE,
)


async def _with_engine(run: Callable[[async_sessionmaker], Awaitable[dict]]) -> dict:
    from socialsync.db import session_factory_for
    from socialsync.settings import get_settings

    engine, session_factory = session_factory_for(get_settings().async_database_url)
    try:
        return await run(session_factory)
    finally:
        await engine.dispose()


def _drive(task, label: str, run: Callable[[async_sessionmaker], Awaitable[dict]]) -> dict:
    attempt = task.request.retries + 1
    logger.info(f"[worker] {label} (celery_id={task.request.id}, attempt={attempt})")
    try:
        return asyncio.run(_with_engine(run))
    except Exception as e:
        logger.error(f"[worker] {label} failed on attempt {attempt}: {e}")
        raise


@celery_app.task(name="sync.run_tenant", **TASK_OPTIONS)
def run_tenant(self, tenant_id: int, platform: str | None = None) -> dict:
    from socialsync.services.sync import run_tenant_sync

    return _drive(
        self, f"tenant {tenant_id} sync",
        lambda factory: run_tenant_sync(tenant_id, platform, session_factory=factory),
    )


@celery_app.task(name="sync.run_global", **TASK_OPTIONS)
def run_global(self, platform: str | None = None) -> dict:
    from socialsync.services.sync import run_global_sync

    return _drive(self, "global sync", lambda factory: run_global_sync(platform, session_factory=factory))


async def _refresh_sweep(factory: async_sessionmaker) -> dict:
    from socialsync.integrations.api_client import ApiClient
    from socialsync.services.token_manager import TokenManager

    async with factory() as session, ApiClient() as api:
        return await TokenManager(api).refresh_all_expiring(session)


@celery_app.task(name="tokens.refresh_expiring", **TASK_OPTIONS)
def refresh_expiring(self) -> dict:
    return _drive(self, "token refresh sweep", _refresh_sweep)

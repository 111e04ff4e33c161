"""
Persistence helpers for the sync core.

Upserts pick the dialect-specific INSERT so ON CONFLICT works on both
PostgreSQL (production) and SQLite (tests). Values are fully replaced
per composite key.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from socialsync.integrations.base import utcnow
from socialsync.models import AuthStatus, DailyMetric, Post, SocialAccount, SyncLog, SyncStatus
from socialsync.schemas import COUNTER_FIELDS, DailyMetricRow, OAuthAccount, PostRow
from socialsync.services.crypto import encrypt_token

logger = logging.getLogger(__name__)

UPSERT_CHUNK = 100

DAILY_KEY = ("tenant_id", "platform", "social_account_id", "date")
POST_KEY = ("tenant_id", "platform", "social_account_id", "external_post_id")
POST_FIELDS = ("posted_at", "url", "caption", "media_type", "thumbnail_url", "media_url", "metrics", "raw_json")


def _insert_for(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"upsert not supported for dialect {dialect}")


def _chunks(items: list[dict], size: int = UPSERT_CHUNK) -> Iterable[list[dict]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


async def _upsert(session: AsyncSession, model, values: list[dict], key: tuple[str, ...], fields: Iterable[str]) -> int:
    if not values:
        return 0
    for chunk in _chunks(values):
        stmt = _insert_for(session, model).values(chunk)
        set_ = {name: stmt.excluded[name] for name in fields}
        set_["updated_at"] = func.now()
        await session.execute(stmt.on_conflict_do_update(index_elements=list(key), set_=set_))
    await session.commit()
    return len(values)


async def upsert_daily_metrics(
    session: AsyncSession,
    tenant_id: int,
    platform: str,
    social_account_id: int,
    rows: list[DailyMetricRow],
) -> int:
    # last row wins when a connector emits the same date twice
    by_date: dict[dt.date, dict] = {}
    for row in rows:
        by_date[row.date] = {
            "tenant_id": tenant_id,
            "platform": platform,
            "social_account_id": social_account_id,
            **row.model_dump(),
        }
    return await _upsert(session, DailyMetric, list(by_date.values()), DAILY_KEY, (*COUNTER_FIELDS, "raw_json"))


async def upsert_posts(
    session: AsyncSession,
    tenant_id: int,
    platform: str,
    social_account_id: int,
    rows: list[PostRow],
) -> int:
    by_id: dict[str, dict] = {}
    for row in rows:
        by_id[row.external_post_id] = {
            "tenant_id": tenant_id,
            "platform": platform,
            "social_account_id": social_account_id,
            **row.model_dump(),
        }
    return await _upsert(session, Post, list(by_id.values()), POST_KEY, POST_FIELDS)


async def latest_followers_before(session: AsyncSession, social_account_id: int, before: dt.date) -> int | None:
    """Most recent persisted follower value strictly before `before`."""
    result = await session.execute(
        select(DailyMetric.followers)
        .where(DailyMetric.social_account_id == social_account_id, DailyMetric.date < before)
        .order_by(DailyMetric.date.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_synced(session: AsyncSession, social_account_id: int) -> None:
    await session.execute(
        update(SocialAccount).where(SocialAccount.id == social_account_id).values(last_sync_at=utcnow())
    )
    await session.commit()


async def record_account_error(session: AsyncSession, social_account_id: int, message: str) -> None:
    await session.execute(
        update(SocialAccount).where(SocialAccount.id == social_account_id).values(last_error=message[:1000])
    )
    await session.commit()


async def start_sync_log(session: AsyncSession, tenant_id: int, social_account_id: int, platform: str) -> SyncLog:
    log = SyncLog(
        tenant_id=tenant_id,
        social_account_id=social_account_id,
        platform=platform,
        status=SyncStatus.running.value,
        started_at=utcnow(),
        rows_upserted=0,
    )
    session.add(log)
    await session.commit()
    return log


async def finish_sync_log(
    session: AsyncSession,
    log_id: int,
    status: SyncStatus,
    *,
    rows_upserted: int = 0,
    error_message: str | None = None,
) -> None:
    """Finalize a running log row. Rows already finalized are left untouched."""
    await session.execute(
        update(SyncLog)
        .where(SyncLog.id == log_id, SyncLog.status == SyncStatus.running.value)
        .values(
            status=status.value,
            finished_at=utcnow(),
            rows_upserted=rows_upserted,
            error_message=error_message[:2000] if error_message else None,
        )
    )
    await session.commit()


async def upsert_social_account(session: AsyncSession, tenant_id: int, account: OAuthAccount) -> SocialAccount:
    """Insert or re-connect an account discovered by an OAuth callback."""
    result = await session.execute(
        select(SocialAccount).where(
            SocialAccount.tenant_id == tenant_id,
            SocialAccount.platform == account.platform,
            SocialAccount.external_account_id == account.external_account_id,
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = SocialAccount(
            tenant_id=tenant_id,
            platform=account.platform,
            external_account_id=account.external_account_id,
        )
        session.add(row)

    row.account_name = account.account_name or row.account_name
    row.token_encrypted = encrypt_token(account.access_token)
    row.refresh_token_encrypted = encrypt_token(account.refresh_token) if account.refresh_token else None
    row.token_expires_at = account.expires_at
    row.auth_status = AuthStatus.active.value
    row.last_error = None
    # force a full-window backfill on the next sync
    row.last_sync_at = None
    await session.commit()
    await session.refresh(row)
    logger.info(f"[oauth] upserted {account.platform} account {account.external_account_id} for tenant {tenant_id}")
    return row

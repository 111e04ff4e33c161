import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from socialsync.errors import AuthError, ConfigurationError, RequestError
from socialsync.integrations.base import Connector
from socialsync.models import AuthStatus, DailyMetric, Post, SocialAccount, SyncLog, SyncStatus
from socialsync.schemas import ConnectorResult, DailyMetricRow, PostRow, TokenGrant
from socialsync.services.sync import (
    AccountJob,
    InFlightAccounts,
    SyncOrchestrator,
    in_flight_accounts,
    reconcile_linkedin_followers,
)
from socialsync.settings import get_settings

START = date(2026, 2, 1)


def _rows(days: int = 3, followers: int = 10) -> list[DailyMetricRow]:
    return [
        DailyMetricRow(date=START + timedelta(days=i), followers=followers + i, impressions=100 * i, raw_json={"i": i})
        for i in range(days)
    ]


def _posts(count: int = 2, prefix: str = "p") -> list[PostRow]:
    return [
        PostRow(
            external_post_id=f"{prefix}{i}",
            posted_at=datetime(2026, 2, 1, 12, tzinfo=timezone.utc),
            caption=f"post {i}",
            media_type="video",
            metrics={"likes": i, "views": 10 * i},
        )
        for i in range(count)
    ]


class FakeConnectors:
    """connector_lookup stand-in: per-account behavior, records every call."""

    def __init__(self):
        self.behaviors: dict[str, object] = {}
        self.calls: list[tuple[str, str]] = []
        self.refresh_grant: TokenGrant | None = None
        self.refresh_error: Exception | None = None

    async def _sync(self, api, ctx):
        self.calls.append(("sync", ctx.external_account_id))
        behavior = self.behaviors.get(ctx.external_account_id, ConnectorResult(daily_metrics=_rows(), posts=_posts()))
        if isinstance(behavior, Exception):
            raise behavior
        if callable(behavior):
            return await behavior(ctx)
        return behavior

    async def _refresh(self, api, access_token, refresh_token):
        self.calls.append(("refresh", access_token))
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_grant

    def __call__(self, platform: str) -> Connector:
        return Connector(platform=platform, sync=self._sync, refresh=self._refresh)


async def _count(session, model, **filters) -> int:
    query = select(func.count()).select_from(model)
    for key, value in filters.items():
        query = query.where(getattr(model, key) == value)
    return (await session.execute(query)).scalar_one()


async def _logs(session, account_id: int) -> list[SyncLog]:
    result = await session.execute(select(SyncLog).where(SyncLog.social_account_id == account_id))
    return list(result.scalars().all())


@pytest.fixture
def connectors():
    return FakeConnectors()


@pytest.fixture
def orchestrator(session_factory, unreachable_api, connectors):
    return SyncOrchestrator(
        session_factory, unreachable_api, connector_lookup=connectors, concurrency=2, in_flight=InFlightAccounts()
    )


@pytest.mark.asyncio
async def test_resync_is_idempotent(session, tenant, add_account, orchestrator):
    first = await add_account(tenant.id, "tiktok", "tt-1")
    second = await add_account(tenant.id, "youtube", "yt-1")

    summary_1 = await orchestrator.run_tenant_sync(tenant.id)
    snapshot_1 = (await session.execute(
        select(DailyMetric.social_account_id, DailyMetric.date, DailyMetric.followers, DailyMetric.impressions)
        .order_by(DailyMetric.social_account_id, DailyMetric.date)
    )).all()

    summary_2 = await orchestrator.run_tenant_sync(tenant.id)
    snapshot_2 = (await session.execute(
        select(DailyMetric.social_account_id, DailyMetric.date, DailyMetric.followers, DailyMetric.impressions)
        .order_by(DailyMetric.social_account_id, DailyMetric.date)
    )).all()

    assert summary_1["success"] == summary_2["success"] == 2
    assert summary_1["rows_upserted"] == 10
    assert snapshot_1 == snapshot_2
    assert await _count(session, DailyMetric) == 6
    assert await _count(session, Post) == 4
    for account in (first, second):
        logs = await _logs(session, account.id)
        assert [log.status for log in logs] == [SyncStatus.success.value] * 2
        assert all(log.rows_upserted == 5 and log.finished_at is not None for log in logs)


@pytest.mark.asyncio
async def test_upsert_replaces_values_on_conflict(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(tenant.id, "twitter", "tw-1")
    await orchestrator.run_tenant_sync(tenant.id)

    connectors.behaviors["tw-1"] = ConnectorResult(
        daily_metrics=[DailyMetricRow(date=START, followers=999)],
        posts=[PostRow(external_post_id="p0", caption="edited", metrics={"likes": 50})],
    )
    await orchestrator.run_tenant_sync(tenant.id)

    day = (await session.execute(
        select(DailyMetric).where(DailyMetric.social_account_id == account.id, DailyMetric.date == START)
    )).scalar_one()
    assert day.followers == 999
    assert day.impressions == 0
    post = (await session.execute(select(Post).where(Post.external_post_id == "p0"))).scalar_one()
    assert post.caption == "edited"
    assert post.metrics == {"likes": 50}
    assert post.media_type is None


@pytest.mark.asyncio
async def test_one_failing_account_does_not_affect_the_others(session, tenant, add_account, orchestrator, connectors):
    a1 = await add_account(tenant.id, "tiktok", "one")
    a2 = await add_account(tenant.id, "tiktok", "two")
    a3 = await add_account(tenant.id, "tiktok", "three")
    connectors.behaviors["two"] = RequestError("video list exploded", platform="tiktok")

    summary = await orchestrator.run_tenant_sync(tenant.id)

    assert (summary["success"], summary["failed"]) == (2, 1)
    for account in (a1, a3):
        [log] = await _logs(session, account.id)
        assert log.status == SyncStatus.success.value
        assert log.rows_upserted == 5
    [failed] = await _logs(session, a2.id)
    assert failed.status == SyncStatus.failed.value
    assert failed.error_message == "video list exploded"
    assert failed.finished_at is not None
    assert await _count(session, DailyMetric, social_account_id=a2.id) == 0


@pytest.mark.asyncio
async def test_linkedin_deltas_accumulate_from_prior_day(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(tenant.id, "linkedin", "org-1")
    session.add(DailyMetric(
        tenant_id=tenant.id, platform="linkedin", social_account_id=account.id,
        date=START - timedelta(days=1), followers=100,
    ))
    await session.commit()

    # deliberately out of order
    connectors.behaviors["org-1"] = ConnectorResult(daily_metrics=[
        DailyMetricRow(date=START + timedelta(days=2), followers=10),
        DailyMetricRow(date=START, followers=5),
        DailyMetricRow(date=START + timedelta(days=1), followers=-2),
    ])
    await orchestrator.run_tenant_sync(tenant.id)

    result = await session.execute(
        select(DailyMetric.followers)
        .where(DailyMetric.social_account_id == account.id, DailyMetric.date >= START)
        .order_by(DailyMetric.date)
    )
    assert list(result.scalars().all()) == [105, 103, 113]


@pytest.mark.asyncio
async def test_linkedin_without_history_starts_from_zero(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(tenant.id, "linkedin", "org-2")
    connectors.behaviors["org-2"] = ConnectorResult(daily_metrics=[
        DailyMetricRow(date=START, followers=3),
        DailyMetricRow(date=START + timedelta(days=1), followers=4),
    ])
    await orchestrator.run_tenant_sync(tenant.id)
    result = await session.execute(
        select(DailyMetric.followers).where(DailyMetric.social_account_id == account.id).order_by(DailyMetric.date)
    )
    assert list(result.scalars().all()) == [3, 7]


def test_reconcile_helper_does_not_mutate_input():
    rows = [DailyMetricRow(date=START, followers=5)]
    out = reconcile_linkedin_followers(rows, 100)
    assert out[0].followers == 105
    assert rows[0].followers == 5


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_once_before_connector(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(
        tenant.id, "tiktok", "tt-exp",
        access_token="stale", refresh_token="rt",
        expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    connectors.refresh_grant = TokenGrant(
        access_token="fresh", refresh_token="rt2", expires_at=datetime.now(timezone.utc) + timedelta(days=1)
    )
    seen_tokens = []

    async def capture(ctx):
        seen_tokens.append(ctx.access_token)
        return ConnectorResult()

    connectors.behaviors["tt-exp"] = capture

    summary = await orchestrator.run_tenant_sync(tenant.id)

    assert summary["success"] == 1
    assert connectors.calls == [("refresh", "stale"), ("sync", "tt-exp")]
    assert seen_tokens == ["fresh"]
    [log] = await _logs(session, account.id)
    assert log.status == SyncStatus.success.value


@pytest.mark.asyncio
async def test_refresh_failure_fails_job_without_calling_connector(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(
        tenant.id, "twitter", "tw-exp", refresh_token="revoked",
        expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    connectors.refresh_error = AuthError("invalid_grant", platform="twitter", status_code=400)

    summary = await orchestrator.run_tenant_sync(tenant.id)

    assert summary["failed"] == 1
    assert ("sync", "tw-exp") not in connectors.calls
    [log] = await _logs(session, account.id)
    assert log.status == SyncStatus.failed.value
    assert "invalid_grant" in log.error_message
    stored = (await session.execute(select(SocialAccount).where(SocialAccount.id == account.id))).scalar_one()
    await session.refresh(stored)
    assert stored.auth_status == AuthStatus.expired.value


@pytest.mark.asyncio
async def test_auth_error_records_last_error_but_keeps_status(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(tenant.id, "facebook", "page-9")
    connectors.behaviors["page-9"] = AuthError("Error validating access token", platform="facebook", status_code=400)

    await orchestrator.run_tenant_sync(tenant.id)

    await session.refresh(account)
    assert account.last_error == "Error validating access token"
    assert account.auth_status == AuthStatus.active.value
    assert account.last_sync_at is None


@pytest.mark.asyncio
async def test_success_stamps_last_sync_at(session, tenant, add_account, orchestrator):
    account = await add_account(tenant.id, "youtube", "UC-stamp")
    await orchestrator.run_tenant_sync(tenant.id)
    await session.refresh(account)
    assert account.last_sync_at is not None


@pytest.mark.asyncio
async def test_only_active_accounts_matching_platform_are_synced(session, tenant, add_account, orchestrator, connectors):
    await add_account(tenant.id, "linkedin", "li-1")
    await add_account(tenant.id, "tiktok", "tt-1")
    await add_account(tenant.id, "linkedin", "li-expired", auth_status=AuthStatus.expired)

    summary = await orchestrator.run_tenant_sync(tenant.id, "linkedin")

    assert summary["accounts"] == 1
    assert connectors.calls == [("sync", "li-1")]


@pytest.mark.asyncio
async def test_worker_pool_bounds_concurrency(session, tenant, add_account, session_factory, unreachable_api, connectors):
    for i in range(5):
        await add_account(tenant.id, "tiktok", f"acct-{i}")

    active = 0
    peak = 0

    async def slow(ctx):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.05)
        active -= 1
        return ConnectorResult()

    for i in range(5):
        connectors.behaviors[f"acct-{i}"] = slow

    orchestrator = SyncOrchestrator(session_factory, unreachable_api, connector_lookup=connectors, concurrency=2)
    summary = await orchestrator.run_tenant_sync(tenant.id)

    assert summary["success"] == 5
    assert peak == 2


@pytest.mark.asyncio
async def test_account_already_in_flight_is_skipped(session, tenant, add_account, orchestrator, connectors):
    account = await add_account(tenant.id, "tiktok", "busy")
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(ctx):
        started.set()
        await release.wait()
        return ConnectorResult()

    connectors.behaviors["busy"] = blocking
    job = AccountJob(tenant.id, account.id, "tiktok", "busy")

    first = asyncio.create_task(orchestrator.run_account_job(job))
    await started.wait()
    second = await orchestrator.run_account_job(job)
    release.set()
    outcome = await first

    assert second.status == "skipped"
    assert outcome.status == SyncStatus.success.value
    assert len(await _logs(session, account.id)) == 1


@pytest.mark.asyncio
async def test_orchestrators_in_one_process_share_the_in_flight_guard(
    session, tenant, add_account, session_factory, unreachable_api, connectors
):
    busy = await add_account(tenant.id, "tiktok", "busy")
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(ctx):
        started.set()
        await release.wait()
        return ConnectorResult()

    connectors.behaviors["busy"] = blocking
    cron = SyncOrchestrator(session_factory, unreachable_api, connector_lookup=connectors, concurrency=2)
    scheduler = SyncOrchestrator(session_factory, unreachable_api, connector_lookup=connectors, concurrency=2)

    first = asyncio.create_task(cron.run_tenant_sync(tenant.id))
    await started.wait()
    second = await scheduler.run_tenant_sync(tenant.id)
    release.set()
    first = await first

    assert connectors.calls.count(("sync", "busy")) == 1
    assert (first["success"], first["skipped"]) == (1, 0)
    assert (second["success"], second["skipped"]) == (0, 1)
    assert len(await _logs(session, busy.id)) == 1
    assert busy.id not in in_flight_accounts


def test_in_flight_guard_is_released_for_reuse():
    guard = InFlightAccounts()
    assert guard.try_acquire(7)
    assert not guard.try_acquire(7)
    guard.release(7)
    assert guard.try_acquire(7)


@pytest.mark.asyncio
async def test_missing_secret_aborts_batch_before_any_log(session, tenant, add_account, orchestrator, monkeypatch, connectors):
    await add_account(tenant.id, "tiktok", "tt-1")
    monkeypatch.setenv("ENCRYPTION_SECRET", "")
    get_settings.cache_clear()

    with pytest.raises(ConfigurationError):
        await orchestrator.run_tenant_sync(tenant.id)

    assert await _count(session, SyncLog) == 0
    assert connectors.calls == []


@pytest.mark.asyncio
async def test_tenant_without_accounts_returns_empty_summary(tenant, orchestrator):
    summary = await orchestrator.run_tenant_sync(tenant.id)
    assert summary["accounts"] == 0
    assert summary["rows_upserted"] == 0

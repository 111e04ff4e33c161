from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from socialsync.db import get_session
from socialsync.main import app
from socialsync.models import SyncLog, SyncStatus
from socialsync.services import sync as sync_service
from socialsync.services.oauth import encode_state
from socialsync.settings import get_settings

AUTH = {"Authorization": "Bearer test-cron-secret"}


@pytest_asyncio.fixture
async def client(session_factory):
    async def _session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = _session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def recorded_runs(monkeypatch):
    calls = []

    async def fake_tenant(tenant_id, platform=None):
        calls.append(("tenant", tenant_id, platform))
        return {"tenant_id": tenant_id, "accounts": 0}

    async def fake_global(platform=None):
        calls.append(("global", platform))
        return {"tenants": 0, "results": []}

    monkeypatch.setattr(sync_service, "run_tenant_sync", fake_tenant)
    monkeypatch.setattr(sync_service, "run_global_sync", fake_global)
    return calls


@pytest.mark.asyncio
async def test_ping(client):
    response = await client.get("/ping")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic abc"}])
async def test_cron_requires_bearer_secret(client, recorded_runs, headers):
    response = await client.post("/api/cron/sync", headers=headers)
    assert response.status_code == 401
    assert recorded_runs == []


@pytest.mark.asyncio
async def test_cron_without_configured_secret_is_unavailable(client, recorded_runs, monkeypatch):
    monkeypatch.setenv("CRON_SECRET", "")
    get_settings.cache_clear()
    response = await client.get("/api/cron/sync", headers=AUTH)
    assert response.status_code == 503
    assert recorded_runs == []


@pytest.mark.asyncio
async def test_cron_sync_runs_tenant_inline(client, recorded_runs):
    response = await client.post("/api/cron/sync?tenant_id=5&platform=LinkedIn", headers=AUTH)
    assert response.status_code == 200
    assert response.json() == {"queued": False, "result": {"tenant_id": 5, "accounts": 0}}
    assert recorded_runs == [("tenant", 5, "linkedin")]


@pytest.mark.asyncio
async def test_cron_sync_all_platforms_for_every_tenant(client, recorded_runs):
    response = await client.get("/api/cron/sync?platform=all", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["result"] == {"tenants": 0, "results": []}
    assert recorded_runs == [("global", None)]


@pytest.mark.asyncio
async def test_sync_logs_newest_first_with_counts(client, session, tenant):
    base = datetime(2026, 3, 1, tzinfo=timezone.utc)
    for offset, status in enumerate([SyncStatus.success, SyncStatus.failed, SyncStatus.success, SyncStatus.running]):
        session.add(SyncLog(
            tenant_id=tenant.id,
            platform="instagram",
            status=status.value,
            started_at=base + timedelta(minutes=offset),
            error_message="boom" if status == SyncStatus.failed else None,
        ))
    await session.commit()

    response = await client.get(f"/api/sync/logs?tenant_id={tenant.id}")
    assert response.status_code == 200
    body = response.json()
    assert (body["success"], body["failed"], body["running"]) == (2, 1, 1)
    assert [log["status"] for log in body["logs"]] == ["running", "success", "failed", "success"]

    limited = (await client.get(f"/api/sync/logs?tenant_id={tenant.id}&limit=1")).json()
    assert len(limited["logs"]) == 1

    other = (await client.get("/api/sync/logs?tenant_id=999")).json()
    assert other["logs"] == []


@pytest.mark.asyncio
async def test_sync_logs_limit_is_bounded(client):
    response = await client.get("/api/sync/logs?limit=0")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_scheduler_status_when_not_started(client):
    response = await client.get("/api/sync/status")
    assert response.status_code == 200
    assert response.json()["running"] is False


@pytest.mark.asyncio
async def test_oauth_start_for_unknown_tenant(client):
    response = await client.get("/api/oauth/linkedin/start?tenant_id=999")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_oauth_start_for_unknown_platform(client, tenant):
    response = await client.get(f"/api/oauth/myspace/start?tenant_id={tenant.id}")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_oauth_callback_reports_provider_error(client):
    response = await client.get("/api/oauth/tiktok/callback?error=access_denied&error_description=User+cancelled")
    assert response.status_code == 400
    assert response.json()["detail"] == "User cancelled"


@pytest.mark.asyncio
async def test_demo_connect_flow_round_trip(client, tenant, monkeypatch):
    monkeypatch.setenv("DEMO_MODE", "true")
    get_settings.cache_clear()

    start = await client.get(f"/api/oauth/linkedin/start?tenant_id={tenant.id}")
    assert start.status_code == 302
    location = start.headers["location"]
    assert location.startswith("/api/oauth/linkedin/callback?code=demo&state=")

    callback = await client.get(location)
    assert callback.status_code == 200
    body = callback.json()
    assert body["tenant_id"] == tenant.id
    [account] = body["accounts"]
    assert account["platform"] == "linkedin"
    assert account["auth_status"] == "active"
    assert "token_encrypted" not in account


@pytest.mark.asyncio
async def test_demo_callback_rejects_state_the_server_never_issued(client, tenant, monkeypatch):
    monkeypatch.setenv("DEMO_MODE", "true")
    get_settings.cache_clear()
    minted = encode_state(tenant.id)

    response = await client.get(f"/api/oauth/linkedin/callback?code=demo&state={minted}")

    assert response.status_code == 400
    assert "not issued" in response.json()["detail"]


@pytest.mark.asyncio
async def test_demo_callback_rejects_a_replayed_state(client, tenant, monkeypatch):
    monkeypatch.setenv("DEMO_MODE", "true")
    get_settings.cache_clear()
    start = await client.get(f"/api/oauth/linkedin/start?tenant_id={tenant.id}")
    location = start.headers["location"]

    first = await client.get(location)
    replay = await client.get(location)

    assert first.status_code == 200
    assert replay.status_code == 400
    assert "already used" in replay.json()["detail"]

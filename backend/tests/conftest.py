"""
Pytest fixtures for the sync core.

Provides:
- Test settings (encryption secret, cron secret, scheduler disabled)
- A file-backed SQLite database per test (aiosqlite)
- ApiClient instances routed through httpx.MockTransport
- Tenant / account factories
"""
from __future__ import annotations

import os

# settings are cached on first import; pin the test environment before that
os.environ["ENCRYPTION_SECRET"] = "test-encryption-secret"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CELERY_ENABLED"] = "false"
os.environ["DEMO_MODE"] = "false"

from datetime import datetime
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from socialsync.db import Base
from socialsync.integrations.api_client import ApiClient
from socialsync.models import AuthStatus, SocialAccount, Tenant
from socialsync.services.crypto import encrypt_token
from socialsync.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'socialsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def make_api():
    """Build an ApiClient whose transport is `handler`; retries never actually sleep."""
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> ApiClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        kwargs.setdefault("sleep", _no_sleep)
        kwargs.setdefault("backoff_base", 0.0)
        return ApiClient(client, **kwargs)

    return _make


@pytest.fixture
def unreachable_api(make_api):
    """ApiClient that fails the test if any request goes out."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected outbound request: {request.method} {request.url}")

    return make_api(handler)


@pytest_asyncio.fixture
async def tenant(session) -> Tenant:
    row = Tenant(name="Acme", slug="acme")
    session.add(row)
    await session.commit()
    return row


@pytest.fixture
def add_account(session):
    async def _add(
        tenant_id: int,
        platform: str,
        external_id: str,
        *,
        access_token: str = "access-token",
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        auth_status: AuthStatus = AuthStatus.active,
    ) -> SocialAccount:
        account = SocialAccount(
            tenant_id=tenant_id,
            platform=platform,
            external_account_id=external_id,
            account_name=f"{platform} {external_id}",
            auth_status=auth_status.value,
            token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=expires_at,
        )
        session.add(account)
        await session.commit()
        return account

    return _add

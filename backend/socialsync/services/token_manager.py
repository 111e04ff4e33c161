"""
Token Manager

Returns a currently valid access token for a social account:
- decrypts the stored tokens
- refreshes through the platform connector when expiry is within the buffer
- re-encrypts and persists refreshed tokens
- marks the account expired when refresh fails

Accounts with no expiry (Meta page tokens) are never refreshed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from socialsync.errors import RequestError, SyncError, TokenRefreshError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, as_utc, utcnow
from socialsync.integrations.registry import get_connector
from socialsync.models import META_PLATFORMS, AuthStatus, SocialAccount
from socialsync.schemas import TokenGrant
from socialsync.services.crypto import decrypt_token, encrypt_token
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountTokens:
    access_token: str
    refresh_token: str | None


class TokenManager:
    def __init__(
        self,
        api: ApiClient,
        *,
        connector_lookup: Callable[[str], Connector] = get_connector,
        refresh_buffer_sec: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self._api = api
        self._connector_lookup = connector_lookup
        self._buffer = timedelta(
            seconds=settings.token_refresh_buffer_sec if refresh_buffer_sec is None else refresh_buffer_sec
        )
        self._clock = clock

    def needs_refresh(self, expires_at: datetime | None) -> bool:
        if expires_at is None:
            return False
        return as_utc(expires_at) <= self._clock() + self._buffer

    async def get_valid_access_token(self, session: AsyncSession, account_id: int) -> str:
        account = await session.get(SocialAccount, account_id)
        if account is None:
            raise RequestError(f"Social account {account_id} not found")
        tokens = await self.get_valid_tokens(session, account)
        return tokens.access_token

    async def get_valid_tokens(self, session: AsyncSession, account: SocialAccount) -> AccountTokens:
        tokens = _stored_tokens(account)
        if not self.needs_refresh(account.token_expires_at):
            return tokens
        return await self.refresh_account(session, account, tokens)

    async def refresh_account(
        self, session: AsyncSession, account: SocialAccount, tokens: AccountTokens | None = None
    ) -> AccountTokens:
        """
        Refresh through the platform connector and persist the new grant.

        Any SyncError while refreshing marks the account expired and is
        raised as TokenRefreshError.
        """
        connector = self._connector_lookup(account.platform)
        logger.info(f"[token-manager] refreshing {account.platform} token for account {account.id}")
        try:
            if tokens is None:
                tokens = _stored_tokens(account)
            if connector.refresh is None:
                raise RequestError(f"{account.platform} does not support token refresh", platform=account.platform)
            grant = await connector.refresh(self._api, tokens.access_token, tokens.refresh_token)
        except SyncError as exc:
            await self.mark_expired(session, account, str(exc))
            raise TokenRefreshError(
                f"Token refresh failed for {account.platform} account {account.id}: {exc}",
                platform=account.platform,
                operation="token_refresh",
                status_code=exc.status_code,
            ) from exc

        await self.store_tokens(session, account, grant)
        return AccountTokens(grant.access_token, grant.refresh_token or tokens.refresh_token)

    async def mark_expired(self, session: AsyncSession, account: SocialAccount, message: str) -> None:
        account.auth_status = AuthStatus.expired.value
        account.last_error = message[:1000]
        session.add(account)
        await session.commit()
        logger.warning(f"[token-manager] account {account.id} marked expired: {message}")

    async def store_tokens(self, session: AsyncSession, account: SocialAccount, grant: TokenGrant) -> None:
        account.token_encrypted = encrypt_token(grant.access_token)
        if grant.refresh_token:
            account.refresh_token_encrypted = encrypt_token(grant.refresh_token)
        account.token_expires_at = grant.expires_at
        account.auth_status = AuthStatus.active.value
        account.last_error = None
        session.add(account)
        await session.commit()

    async def refresh_all_expiring(self, session: AsyncSession, lookahead_hours: int | None = None) -> dict:
        """Proactively refresh active non-Meta accounts expiring within the lookahead window."""
        hours = get_settings().token_refresh_lookahead_hours if lookahead_hours is None else lookahead_hours
        horizon = self._clock() + timedelta(hours=hours)
        result = await session.execute(
            select(SocialAccount)
            .where(
                SocialAccount.auth_status == AuthStatus.active.value,
                SocialAccount.token_expires_at.is_not(None),
                SocialAccount.platform.not_in(sorted(META_PLATFORMS)),
            )
            .order_by(SocialAccount.id)
        )
        accounts = [a for a in result.scalars().all() if as_utc(a.token_expires_at) <= horizon]

        refreshed = 0
        failed = 0
        results = []
        for account in accounts:
            try:
                await self.refresh_account(session, account)
            except TokenRefreshError as exc:
                failed += 1
                results.append({"account_id": account.id, "status": "failed", "error": str(exc.__cause__ or exc)})
                continue
            refreshed += 1
            results.append({"account_id": account.id, "status": "refreshed", "error": None})

        logger.info(f"[token-manager] refresh sweep: {refreshed} refreshed, {failed} failed")
        return {"refreshed": refreshed, "failed": failed, "results": results}


def _stored_tokens(account: SocialAccount) -> AccountTokens:
    access = decrypt_token(account.token_encrypted) if account.token_encrypted else ""
    refresh = decrypt_token(account.refresh_token_encrypted) if account.refresh_token_encrypted else None
    return AccountTokens(access, refresh)

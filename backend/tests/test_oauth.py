import base64
import hashlib
import json
from datetime import datetime, timezone

import pytest

from socialsync.errors import OAuthStateError, RequestError
from socialsync.integrations.base import Connector
from socialsync.models import AuthStatus, SocialAccount
from socialsync.schemas import ConnectorResult, OAuthAccount
from socialsync.services import oauth
from socialsync.services.crypto import decrypt_token
from socialsync.services.oauth import (
    InMemoryVerifierStore,
    build_authorization,
    encode_state,
    generate_pkce_pair,
    handle_oauth_callback,
    parse_state,
    resolve_platform,
)

NOW = 1_780_000_000.0


def test_state_round_trip():
    state = encode_state(42, now=NOW, nonce="abc")
    payload = json.loads(base64.urlsafe_b64decode(state + "=" * (-len(state) % 4)))
    assert payload == {"tenantId": 42, "ts": int(NOW * 1000), "nonce": "abc"}
    assert "=" not in state
    assert parse_state(state, now=NOW + 30) == 42


def test_state_expires_after_max_age():
    state = encode_state(1, now=NOW)
    assert parse_state(state, max_age_sec=3600, now=NOW + 3599) == 1
    with pytest.raises(OAuthStateError, match="expired"):
        parse_state(state, max_age_sec=3600, now=NOW + 3601)


def test_state_from_the_future_is_rejected():
    state = encode_state(1, now=NOW + 600)
    with pytest.raises(OAuthStateError):
        parse_state(state, now=NOW)


@pytest.mark.parametrize("state", [None, "", "not-base64!!", base64.urlsafe_b64encode(b'{"ts": 1}').decode()])
def test_bad_state_is_rejected(state):
    with pytest.raises(OAuthStateError) as exc_info:
        parse_state(state, now=NOW)
    assert exc_info.value.status_code == 400


def test_pkce_pair():
    verifier, challenge = generate_pkce_pair()
    assert len(verifier) == 64
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    assert challenge == expected
    assert generate_pkce_pair()[0] != verifier


def test_platform_aliases():
    assert resolve_platform("meta") == "facebook"
    assert resolve_platform("LinkedIn") == "linkedin"
    with pytest.raises(RequestError):
        resolve_platform("myspace")


@pytest.mark.asyncio
async def test_verifier_store_is_read_once():
    store = InMemoryVerifierStore(ttl_sec=600)
    await store.put("s1", "v1")
    assert await store.pop("s1") == "v1"
    assert await store.pop("s1") is None


@pytest.mark.asyncio
async def test_verifier_store_evicts_after_ttl():
    now = [0.0]
    store = InMemoryVerifierStore(ttl_sec=600, clock=lambda: now[0])
    await store.put("old", "v-old")
    now[0] = 601.0
    await store.put("new", "v-new")
    assert len(store) == 1
    assert await store.pop("old") is None
    assert await store.pop("new") == "v-new"


class FakeOAuthConnector:
    """Connector stand-in that records exchanges and returns fixed accounts."""

    def __init__(self, accounts: list[OAuthAccount], uses_pkce: bool = False):
        self.accounts = accounts
        self.uses_pkce = uses_pkce
        self.exchanges: list[tuple[str, str | None]] = []

    async def _sync(self, api, ctx):
        return ConnectorResult()

    async def _exchange(self, api, code, code_verifier=None):
        self.exchanges.append((code, code_verifier))
        return self.accounts

    def _authorize(self, state, code_challenge=None):
        return f"https://auth.example.com/?state={state}&challenge={code_challenge}"

    def connector(self, platform: str) -> Connector:
        return Connector(
            platform=platform,
            sync=self._sync,
            authorize_url=self._authorize,
            exchange_code=self._exchange,
            uses_pkce=self.uses_pkce,
        )


@pytest.fixture
def fake_connector(monkeypatch):
    def _install(accounts, uses_pkce=False) -> FakeOAuthConnector:
        fake = FakeOAuthConnector(accounts, uses_pkce=uses_pkce)
        monkeypatch.setattr(oauth, "get_connector", fake.connector)
        return fake

    return _install


@pytest.mark.asyncio
async def test_callback_upserts_every_discovered_account(session, tenant, unreachable_api, fake_connector):
    fake = fake_connector([
        OAuthAccount(platform="facebook", external_account_id="page-1", account_name="Page", access_token="p1"),
        OAuthAccount(platform="instagram", external_account_id="ig-1", account_name="IG", access_token="p1"),
    ])

    store = InMemoryVerifierStore(ttl_sec=600)
    _, state = await build_authorization("meta", tenant.id, store=store)

    tenant_id, accounts = await handle_oauth_callback(
        session, unreachable_api, "meta", "the-code", state, store=store
    )

    assert tenant_id == tenant.id
    assert fake.exchanges == [("the-code", None)]
    assert sorted(a.platform for a in accounts) == ["facebook", "instagram"]
    for account in accounts:
        assert account.auth_status == AuthStatus.active.value
        assert decrypt_token(account.token_encrypted) == "p1"


@pytest.mark.asyncio
async def test_reconnect_updates_tokens_and_resets_sync_marker(
    session, tenant, add_account, unreachable_api, fake_connector
):
    existing = await add_account(tenant.id, "twitter", "42", access_token="old", auth_status=AuthStatus.expired)
    existing.last_sync_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
    existing.last_error = "token revoked"
    await session.commit()

    fake_connector([OAuthAccount(platform="twitter", external_account_id="42", access_token="new", refresh_token="rt")])
    store = InMemoryVerifierStore(ttl_sec=600)
    _, state = await build_authorization("twitter", tenant.id, store=store)
    _, [account] = await handle_oauth_callback(session, unreachable_api, "twitter", "c", state, store=store)

    assert account.id == existing.id
    assert account.last_sync_at is None
    assert account.last_error is None
    assert account.auth_status == AuthStatus.active.value
    assert decrypt_token(account.token_encrypted) == "new"
    assert decrypt_token(account.refresh_token_encrypted) == "rt"


@pytest.mark.asyncio
async def test_pkce_flow_pops_the_stored_verifier(session, tenant, unreachable_api, fake_connector):
    fake = fake_connector(
        [OAuthAccount(platform="tiktok", external_account_id="open-1", access_token="t")], uses_pkce=True
    )
    store = InMemoryVerifierStore(ttl_sec=600)

    url, state = await build_authorization("tiktok", tenant.id, store=store)
    assert f"state={state}" in url
    assert "challenge=None" not in url

    await handle_oauth_callback(session, unreachable_api, "tiktok", "code", state, store=store)
    [(_, verifier)] = fake.exchanges
    assert verifier and len(verifier) == 64

    with pytest.raises(OAuthStateError, match="already used"):
        await handle_oauth_callback(session, unreachable_api, "tiktok", "code", state, store=store)
    assert len(fake.exchanges) == 1


@pytest.mark.asyncio
async def test_callback_for_unknown_tenant_is_rejected(session, unreachable_api, fake_connector):
    fake = fake_connector([OAuthAccount(platform="youtube", external_account_id="UC1", access_token="t")])
    store = InMemoryVerifierStore(ttl_sec=600)
    _, state = await build_authorization("youtube", 999, store=store)
    with pytest.raises(OAuthStateError, match="Unknown tenant"):
        await handle_oauth_callback(session, unreachable_api, "youtube", "code", state, store=store)
    assert fake.exchanges == []


@pytest.mark.asyncio
async def test_callback_without_code_is_rejected(session, tenant, unreachable_api, fake_connector):
    fake_connector([])
    with pytest.raises(RequestError, match="authorization code"):
        await handle_oauth_callback(session, unreachable_api, "youtube", None, encode_state(tenant.id))


@pytest.mark.asyncio
async def test_callback_with_expired_state_writes_nothing(session, tenant, unreachable_api, fake_connector):
    fake = fake_connector([OAuthAccount(platform="youtube", external_account_id="UC1", access_token="t")])
    stale = encode_state(tenant.id, now=NOW - 10 * 3600)
    with pytest.raises(OAuthStateError):
        await handle_oauth_callback(session, unreachable_api, "youtube", "code", stale)
    assert fake.exchanges == []
    assert await session.get(SocialAccount, 1) is None


@pytest.mark.asyncio
async def test_well_formed_state_that_was_never_issued_is_rejected(session, tenant, unreachable_api, fake_connector):
    fake = fake_connector([OAuthAccount(platform="linkedin", external_account_id="attacker-org", access_token="t")])
    store = InMemoryVerifierStore(ttl_sec=600)
    minted = encode_state(tenant.id)

    with pytest.raises(OAuthStateError, match="not issued"):
        await handle_oauth_callback(session, unreachable_api, "linkedin", "c", minted, store=store)
    assert fake.exchanges == []
    assert await session.get(SocialAccount, 1) is None


@pytest.mark.asyncio
async def test_issued_state_works_once_without_pkce(session, tenant, unreachable_api, fake_connector):
    fake = fake_connector([OAuthAccount(platform="linkedin", external_account_id="org-1", access_token="t")])
    store = InMemoryVerifierStore(ttl_sec=600)
    _, state = await build_authorization("linkedin", tenant.id, store=store)

    _, [account] = await handle_oauth_callback(session, unreachable_api, "linkedin", "c", state, store=store)
    assert account.external_account_id == "org-1"
    with pytest.raises(OAuthStateError, match="already used"):
        await handle_oauth_callback(session, unreachable_api, "linkedin", "c", state, store=store)
    assert fake.exchanges == [("c", None)]


@pytest.mark.asyncio
async def test_issued_state_outlives_the_verifier_ttl_without_pkce(tenant, fake_connector):
    fake_connector([])
    now = [0.0]
    store = InMemoryVerifierStore(ttl_sec=600, clock=lambda: now[0])
    _, state = await build_authorization("youtube", tenant.id, store=store)

    now[0] = 3000.0
    assert await store.pop(state) == oauth.ISSUED_MARKER

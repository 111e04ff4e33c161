"""
OAuth connect flow: state encoding, PKCE pairs, the short-lived verifier
store and the callback path (code exchange + account upsert).

State is base64url JSON {tenantId, ts, nonce}; it is valid for one hour.
Every issued state is recorded in the verifier store (holding the PKCE
verifier where the platform uses one) and the callback consumes it, so a
state works once and only if this server issued it.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
import threading
import time
from typing import Callable, Protocol

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from socialsync.errors import ConfigurationError, OAuthStateError, RequestError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.registry import get_connector
from socialsync.models import Platform, SocialAccount, Tenant
from socialsync.services import repository
from socialsync.services.crypto import ensure_secret_configured
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

VERIFIER_LENGTH = 64
_VERIFIER_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._~"
# stored for issued states of platforms without PKCE
ISSUED_MARKER = "issued"

# "meta" is the single Facebook Login app that yields both page and IG accounts
PLATFORM_ALIASES = {"meta": Platform.facebook.value}


def resolve_platform(platform: str) -> str:
    key = (platform or "").lower()
    key = PLATFORM_ALIASES.get(key, key)
    if key not in {p.value for p in Platform}:
        raise RequestError(f"Unsupported platform: {platform}")
    return key


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def encode_state(tenant_id: int, *, now: float | None = None, nonce: str | None = None) -> str:
    payload = {
        "tenantId": tenant_id,
        "ts": int((time.time() if now is None else now) * 1000),
        "nonce": nonce or secrets.token_hex(16),
    }
    return _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def parse_state(state: str | None, *, max_age_sec: int | None = None, now: float | None = None) -> int:
    """Return the tenant id carried by `state`; raise OAuthStateError if bad or expired."""
    if not state:
        raise OAuthStateError("Missing OAuth state", operation="oauth_callback", status_code=400)
    try:
        padded = state + "=" * (-len(state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        tenant_id = int(payload["tenantId"])
        issued_ms = int(payload["ts"])
    except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError):
        raise OAuthStateError("Invalid OAuth state", operation="oauth_callback", status_code=400)

    max_age = get_settings().oauth_state_ttl_sec if max_age_sec is None else max_age_sec
    now_ms = (time.time() if now is None else now) * 1000
    if now_ms - issued_ms > max_age * 1000 or issued_ms - now_ms > 60_000:
        raise OAuthStateError("OAuth state expired", operation="oauth_callback", status_code=400)
    return tenant_id


def generate_pkce_pair() -> tuple[str, str]:
    """(code_verifier, S256 code_challenge)."""
    verifier = "".join(secrets.choice(_VERIFIER_ALPHABET) for _ in range(VERIFIER_LENGTH))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


class VerifierStore(Protocol):
    async def put(self, state: str, verifier: str, ttl_sec: int | None = None) -> None: ...

    async def pop(self, state: str) -> str | None: ...


class InMemoryVerifierStore:
    """Process-local verifier store with TTL eviction on every access."""

    def __init__(self, ttl_sec: int | None = None, clock: Callable[[], float] = time.monotonic):
        self._ttl = get_settings().oauth_verifier_ttl_sec if ttl_sec is None else ttl_sec
        self._clock = clock
        self._items: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        for key in [k for k, (_, exp) in self._items.items() if exp <= now]:
            del self._items[key]

    async def put(self, state: str, verifier: str, ttl_sec: int | None = None) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._items[state] = (verifier, now + (self._ttl if ttl_sec is None else ttl_sec))

    async def pop(self, state: str) -> str | None:
        with self._lock:
            self._prune(self._clock())
            item = self._items.pop(state, None)
        return item[0] if item else None

    def __len__(self) -> int:
        return len(self._items)


class RedisVerifierStore:
    """Verifier store shared across API processes; Redis expires keys itself."""

    def __init__(self, redis: aioredis.Redis, ttl_sec: int | None = None, prefix: str = "oauth:state:"):
        self._redis = redis
        self._ttl = get_settings().oauth_verifier_ttl_sec if ttl_sec is None else ttl_sec
        self._prefix = prefix

    async def put(self, state: str, verifier: str, ttl_sec: int | None = None) -> None:
        await self._redis.setex(f"{self._prefix}{state}", self._ttl if ttl_sec is None else ttl_sec, verifier)

    async def pop(self, state: str) -> str | None:
        key = f"{self._prefix}{state}"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            value, _ = await pipe.execute()
        return value


_verifier_store: VerifierStore | None = None


def get_verifier_store() -> VerifierStore:
    global _verifier_store
    if _verifier_store is None:
        settings = get_settings()
        if settings.oauth_verifier_backend == "redis":
            _verifier_store = RedisVerifierStore(aioredis.from_url(settings.redis_url, decode_responses=True))
        else:
            _verifier_store = InMemoryVerifierStore()
    return _verifier_store


async def build_authorization(
    platform: str, tenant_id: int, *, store: VerifierStore | None = None
) -> tuple[str, str]:
    """Return (authorization URL, state) for a connect request."""
    key = resolve_platform(platform)
    connector = get_connector(key)
    if connector.authorize_url is None:
        raise ConfigurationError(f"{key} does not support OAuth connect", platform=key)

    state = encode_state(tenant_id)
    store = store or get_verifier_store()
    if connector.uses_pkce:
        verifier, challenge = generate_pkce_pair()
        await store.put(state, verifier)
    else:
        challenge = None
        await store.put(state, ISSUED_MARKER, ttl_sec=get_settings().oauth_state_ttl_sec)
    return connector.authorize_url(state, challenge), state


async def handle_oauth_callback(
    session: AsyncSession,
    api: ApiClient,
    platform: str,
    code: str | None,
    state: str | None,
    code_verifier: str | None = None,
    *,
    store: VerifierStore | None = None,
) -> tuple[int, list[SocialAccount]]:
    """Consume the issued state (+ PKCE verifier), exchange the code and upsert the accounts."""
    key = resolve_platform(platform)
    if not code:
        raise RequestError("Missing authorization code", platform=key, operation="oauth_callback", status_code=400)
    tenant_id = parse_state(state)

    ensure_secret_configured()
    connector = get_connector(key)
    if connector.exchange_code is None:
        raise ConfigurationError(f"{key} does not support OAuth connect", platform=key)
    issued = await (store or get_verifier_store()).pop(state)
    if issued is None:
        raise OAuthStateError(
            "OAuth state was not issued or was already used", platform=key, operation="oauth_callback", status_code=400
        )
    if connector.uses_pkce and not code_verifier:
        if issued == ISSUED_MARKER:
            raise OAuthStateError(
                "PKCE code verifier missing or expired", platform=key, operation="oauth_callback", status_code=400
            )
        code_verifier = issued

    tenant = await session.get(Tenant, tenant_id)
    if tenant is None:
        raise OAuthStateError(f"Unknown tenant {tenant_id}", platform=key, operation="oauth_callback", status_code=400)

    discovered = await connector.exchange_code(api, code, code_verifier)
    accounts = [await repository.upsert_social_account(session, tenant_id, item) for item in discovered]
    logger.info(f"[oauth] {key} callback for tenant {tenant_id}: {len(accounts)} accounts connected")
    return tenant_id, accounts

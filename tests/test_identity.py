"""Tests for credential selection and username resolution."""

from __future__ import annotations

import asyncio

import pytest
from pydantic import SecretStr

from grailsync.models import DelegatedCredential, DelegatedLogin, ManualCredential
from grailsync.sync.discogs import DiscogsAuthError
from grailsync.sync.identity import IdentityResolver, LoginRedirect, complete_delegated_login


class _GatedClient:
    """Client whose identity lookup waits until the test releases it."""

    def __init__(self, gate: asyncio.Event, username: str) -> None:
        self._gate = gate
        self._username = username

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def fetch_identity(self) -> str:
        await self._gate.wait()
        return self._username


# ---------------------------------------------------------------------------
# IdentityResolver
# ---------------------------------------------------------------------------


def test_starts_pending():
    resolver = IdentityResolver(lambda c: None)
    assert resolver.credential is None
    assert resolver.username is None
    assert resolver.is_pending is True


@pytest.mark.asyncio()
async def test_resolve_without_credential_returns_none():
    resolver = IdentityResolver(lambda c: None)
    assert await resolver.resolve() is None


@pytest.mark.asyncio()
async def test_manual_token_resolves_through_identity(fake_discogs):
    resolver = IdentityResolver(fake_discogs.factory)
    resolver.use_manual_token("tok")

    assert isinstance(resolver.credential, ManualCredential)
    assert await resolver.resolve() == "digger"
    assert resolver.is_pending is False

    # Cached for the session
    assert await resolver.resolve() == "digger"
    assert fake_discogs.count("/oauth/identity") == 1


@pytest.mark.asyncio()
async def test_manual_token_rejected(fake_discogs):
    fake_discogs.fail["/oauth/identity"] = 401
    resolver = IdentityResolver(fake_discogs.factory)
    resolver.use_manual_token("bad")

    with pytest.raises(DiscogsAuthError):
        await resolver.resolve()
    assert resolver.username is None


@pytest.mark.asyncio()
async def test_delegated_needs_no_lookup(fake_discogs):
    resolver = IdentityResolver(fake_discogs.factory)
    resolver.use_delegated("digger", "at", "ts")

    assert isinstance(resolver.credential, DelegatedCredential)
    assert await resolver.resolve() == "digger"
    assert fake_discogs.calls == []


def test_switching_credentials_drops_username():
    resolver = IdentityResolver(lambda c: None)
    resolver.use_delegated("digger", "at", "ts")
    resolver.use_manual_token("tok")

    assert isinstance(resolver.credential, ManualCredential)
    assert resolver.username is None


@pytest.mark.asyncio()
async def test_restore_from_store(db):
    await db.upsert_user(username="digger", access_token="at", token_secret="ts")
    resolver = IdentityResolver(lambda c: None)

    assert await resolver.restore(db, "digger") is True
    assert resolver.username == "digger"
    assert resolver.credential.access_token.get_secret_value() == "at"


@pytest.mark.asyncio()
async def test_restore_unknown_user(db):
    resolver = IdentityResolver(lambda c: None)
    assert await resolver.restore(db, "ghost") is False
    assert resolver.credential is None


@pytest.mark.asyncio()
async def test_stale_lookup_is_discarded():
    gate = asyncio.Event()
    resolver = IdentityResolver(lambda c: _GatedClient(gate, "old-account"))
    resolver.use_manual_token("old")

    task = asyncio.create_task(resolver.resolve())
    await asyncio.sleep(0)
    resolver.use_delegated("new-account", "at", "ts")
    gate.set()

    assert await task == "new-account"
    assert resolver.username == "new-account"


@pytest.mark.asyncio()
async def test_sign_out_discards_in_flight_lookup():
    gate = asyncio.Event()
    resolver = IdentityResolver(lambda c: _GatedClient(gate, "digger"))
    resolver.use_manual_token("tok")

    task = asyncio.create_task(resolver.resolve())
    await asyncio.sleep(0)
    resolver.sign_out()
    gate.set()

    assert await task is None
    assert resolver.username is None
    assert resolver.credential is None


# ---------------------------------------------------------------------------
# Delegated login completion
# ---------------------------------------------------------------------------


def _login_result() -> DelegatedLogin:
    return DelegatedLogin(username="digger", access_token=SecretStr("at"), token_secret=SecretStr("ts"))


@pytest.mark.asyncio()
async def test_complete_delegated_login_returns_result():
    seen: list[str] = []

    async def login(verifier: str) -> DelegatedLogin:
        seen.append(verifier)
        return _login_result()

    result = await complete_delegated_login(login, "v123", is_cancelled=lambda: False)

    assert seen == ["v123"]
    assert result is not None
    assert result.username == "digger"


@pytest.mark.asyncio()
async def test_complete_delegated_login_cancelled_meanwhile():
    cancelled = False

    async def login(verifier: str) -> DelegatedLogin:
        nonlocal cancelled
        cancelled = True
        return _login_result()

    assert await complete_delegated_login(login, "v123", is_cancelled=lambda: cancelled) is None


def test_login_redirect_flag():
    redirect = LoginRedirect()
    assert redirect.in_flight is False
    redirect.begin()
    assert redirect.in_flight is True
    redirect.clear()
    assert redirect.in_flight is False

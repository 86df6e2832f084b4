"""Tests for the async Discogs client, served through httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest
from pydantic import SecretStr

from grailsync.config import DiscogsConfig
from grailsync.models import DelegatedCredential, ManualCredential
from grailsync.sync.discogs import (
    DiscogsAPIError,
    DiscogsAuthError,
    DiscogsClient,
    DiscogsNetworkError,
    DiscogsPageError,
)

_TOKEN = ManualCredential(token=SecretStr("tok"))


def _client(handler, credential=_TOKEN, config: DiscogsConfig | None = None, page_size: int = 2) -> DiscogsClient:
    return DiscogsClient(
        credential,
        config or DiscogsConfig(),
        page_size=page_size,
        page_delay=0,
        _transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# Auth headers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_manual_token_header():
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, json={"username": "digger"})

    async with _client(handler) as client:
        assert await client.fetch_identity() == "digger"

    assert seen["authorization"] == "Discogs token=tok"
    assert seen["user-agent"].startswith("grailsync/")


@pytest.mark.asyncio()
async def test_delegated_header_uses_plaintext_signature():
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.headers)
        return httpx.Response(200, json={"username": "digger"})

    cred = DelegatedCredential(access_token=SecretStr("at"), token_secret=SecretStr("ts"))
    config = DiscogsConfig(consumer_key="ck", consumer_secret=SecretStr("cs"))
    async with _client(handler, cred, config) as client:
        await client.fetch_identity()

    header = seen["authorization"]
    assert header.startswith("OAuth ")
    assert 'oauth_consumer_key="ck"' in header
    assert 'oauth_token="at"' in header
    assert 'oauth_signature="cs%26ts"' in header
    assert 'oauth_signature_method="PLAINTEXT"' in header


@pytest.mark.asyncio()
async def test_delegated_without_consumer_secret_raises():
    cred = DelegatedCredential(access_token=SecretStr("at"), token_secret=SecretStr("ts"))
    async with _client(lambda r: httpx.Response(200), cred) as client:
        with pytest.raises(DiscogsAuthError, match="consumer key"):
            await client.fetch_identity()


# ---------------------------------------------------------------------------
# Identity / profile
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_identity_failure_is_auth_error():
    async with _client(lambda r: httpx.Response(401, text="Invalid consumer token")) as client:
        with pytest.raises(DiscogsAuthError, match="401"):
            await client.fetch_identity()


@pytest.mark.asyncio()
async def test_network_error_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(DiscogsNetworkError, match="failed before reaching the server"):
            await client.fetch_identity()


@pytest.mark.asyncio()
async def test_profile_network_failure_yields_empty_avatar():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    async with _client(handler) as client:
        profile = await client.fetch_user_profile("digger")

    assert profile.username == "digger"
    assert profile.avatar_url == ""


@pytest.mark.asyncio()
async def test_profile_not_found():
    async with _client(lambda r: httpx.Response(404)) as client:
        with pytest.raises(DiscogsAPIError, match="not found") as exc_info:
            await client.fetch_user_profile("ghost")
    assert exc_info.value.status_code == 404


# ---------------------------------------------------------------------------
# Collection / want list
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_fetch_collection_paginates_and_reports_progress(fake_discogs, make_release):
    fake_discogs.releases.append(make_release(104))
    progress: list[tuple[int, int]] = []

    async with fake_discogs.factory(_TOKEN) as client:
        fetched = await client.fetch_collection("digger", on_progress=lambda n, t: progress.append((n, t)))

    assert [i.release_id for i in fetched.items] == [101, 102, 103, 104]
    assert fetched.folders == ["All", "Uncategorized", "Jazz"]
    assert progress == [(2, 4), (4, 4)]
    assert fake_discogs.count("/collection/folders/0/releases") == 2


@pytest.mark.asyncio()
async def test_fetch_collection_dedupes_multi_folder_release(fake_discogs, make_release):
    fake_discogs.releases.append(make_release(101, artist="Miles Davis", folder_id=2))

    async with fake_discogs.factory(_TOKEN) as client:
        fetched = await client.fetch_collection("digger")

    assert [i.release_id for i in fetched.items] == [101, 102, 103]
    assert fetched.items[0].folder == "Jazz"


@pytest.mark.asyncio()
async def test_page_failure_aborts_fetch(make_release):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/collection/folders"):
            return httpx.Response(200, json={"folders": []})
        if path.endswith("/collection/fields"):
            return httpx.Response(200, json={"fields": []})
        if request.url.params["page"] == "2":
            return httpx.Response(502)
        return httpx.Response(
            200,
            json={"pagination": {"page": 1, "pages": 3, "items": 6}, "releases": [make_release(1), make_release(2)]},
        )

    async with _client(handler) as client:
        with pytest.raises(DiscogsPageError) as exc_info:
            await client.fetch_collection("digger")

    err = exc_info.value
    assert err.page == 2
    assert err.status_code == 502
    assert err.listing == "collection"
    assert "page 2" in str(err)


@pytest.mark.asyncio()
async def test_username_is_escaped_in_every_user_path():
    raw_paths: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raw_paths.append(request.url.raw_path.split(b"?")[0])
        path = request.url.path
        if path.endswith("/collection/folders"):
            return httpx.Response(200, json={"folders": []})
        if path.endswith("/collection/fields"):
            return httpx.Response(200, json={"fields": []})
        if path.endswith("/wants"):
            return httpx.Response(200, json={"pagination": {"pages": 1, "items": 0}, "wants": []})
        if path.endswith("/releases"):
            return httpx.Response(200, json={"pagination": {"pages": 1, "items": 0}, "releases": []})
        return httpx.Response(200, json={"username": "dj/shadow x", "avatar_url": ""})

    async with _client(handler) as client:
        await client.fetch_user_profile("dj/shadow x")
        await client.fetch_collection("dj/shadow x")
        await client.fetch_wantlist("dj/shadow x")

    assert len(raw_paths) == 5
    for raw in raw_paths:
        assert raw.startswith(b"/users/dj%2Fshadow%20x"), raw


@pytest.mark.asyncio()
async def test_custom_fields_failure_is_tolerated(fake_discogs):
    fake_discogs.fail["/collection/fields"] = 500

    async with fake_discogs.factory(_TOKEN) as client:
        fetched = await client.fetch_collection("digger")

    assert len(fetched.items) == 3


@pytest.mark.asyncio()
async def test_fetch_wantlist(fake_discogs, make_want):
    fake_discogs.wants.extend([make_want(902), make_want(903)])
    progress: list[tuple[int, int]] = []

    async with fake_discogs.factory(_TOKEN) as client:
        wants = await client.fetch_wantlist("digger", on_progress=lambda n, t: progress.append((n, t)))

    assert [w.id for w in wants] == ["w-901", "w-902", "w-903"]
    assert progress[-1] == (3, 3)


@pytest.mark.asyncio()
async def test_wantlist_page_failure(fake_discogs):
    fake_discogs.fail["/wants"] = 500

    async with fake_discogs.factory(_TOKEN) as client:
        with pytest.raises(DiscogsPageError, match="want list page 1"):
            await client.fetch_wantlist("digger")


# ---------------------------------------------------------------------------
# Valuation / pricing
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_collection_value_parses_currency(fake_discogs):
    async with fake_discogs.factory(_TOKEN) as client:
        value = await client.fetch_collection_value("digger")

    assert (value.minimum, value.median, value.maximum) == (100.0, 250.5, 400.0)
    assert value.fetched_at > 0


@pytest.mark.asyncio()
async def test_collection_value_rejects_non_numeric(fake_discogs):
    fake_discogs.value = {"minimum": "$1.00", "median": "n/a", "maximum": "$3.00"}

    async with fake_discogs.factory(_TOKEN) as client:
        with pytest.raises(DiscogsAPIError, match="not finite"):
            await client.fetch_collection_value("digger")


@pytest.mark.asyncio()
async def test_price_suggestions_in_grade_order(fake_discogs):
    grades = ["Very Good (VG)", "Mint (M)", "Good (G)"]

    async with fake_discogs.factory(_TOKEN) as client:
        prices = await client.fetch_price_suggestions(101, grades)

    assert [(p.condition, p.value) for p in prices] == [("Very Good (VG)", 15.0), ("Mint (M)", 40.0)]


@pytest.mark.asyncio()
async def test_market_stats(fake_discogs):
    async with fake_discogs.factory(_TOKEN) as client:
        stats = await client.fetch_market_stats(101)

    assert stats.lowest_price == 12.0
    assert stats.num_for_sale == 7
    assert stats.currency == "USD"


@pytest.mark.asyncio()
async def test_price_suggestions_error(fake_discogs):
    fake_discogs.fail["/price_suggestions/101"] = 403

    async with fake_discogs.factory(_TOKEN) as client:
        with pytest.raises(DiscogsAPIError) as exc_info:
            await client.fetch_price_suggestions(101, ["Mint (M)"])
    assert exc_info.value.status_code == 403

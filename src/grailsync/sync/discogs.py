"""Async Discogs API client using httpx.

Endpoints:
- GET /oauth/identity (token → username)
- GET /users/{username} (profile, avatar)
- GET /users/{username}/collection/folders
- GET /users/{username}/collection/fields
- GET /users/{username}/collection/folders/0/releases (paginated)
- GET /users/{username}/wants (paginated)
- GET /users/{username}/collection/value
- GET /marketplace/price_suggestions/{release_id}
- GET /marketplace/stats/{release_id}

Pages are fetched one at a time with a short pause in between to stay under
the 60 requests/minute limit. Nothing here retries: a failed request surfaces
to the caller, and retrying is a user action.
"""

from __future__ import annotations

import asyncio
import math
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import quote

import httpx
import structlog

from grailsync.config import DiscogsConfig
from grailsync.models import (
    CollectionItem,
    CollectionValue,
    ConditionPrice,
    DelegatedCredential,
    MarketplaceStats,
    SyncCredential,
    UserProfile,
    WantItem,
)
from grailsync.sync.mapping import build_field_map, dedupe_by_release, map_release, map_want

log = structlog.get_logger(__name__)

API_BASE = "https://api.discogs.com"
_DEFAULT_PAGE_SIZE = 100
_DEFAULT_PAGE_DELAY = 0.25

ProgressCallback = Callable[[int, int], None]


class DiscogsError(Exception):
    """Base class for Discogs client errors."""


class DiscogsAuthError(DiscogsError):
    """Raised when the token is invalid/expired or identity lookup fails."""


class DiscogsNetworkError(DiscogsError):
    """Raised when a request never reached the server."""


class DiscogsAPIError(DiscogsError):
    """Raised when the server rejects a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DiscogsPageError(DiscogsAPIError):
    """Raised when a page of a paginated listing fails; aborts the whole fetch."""

    def __init__(self, listing: str, page: int, status_code: int) -> None:
        super().__init__(f"Failed to fetch {listing} page {page} ({status_code})", status_code=status_code)
        self.listing = listing
        self.page = page


@dataclass
class CollectionFetch:
    items: list[CollectionItem]
    folders: list[str]


def _parse_currency(raw: object) -> float:
    """Parse values like ``"$250.00"``; anything unparseable becomes NaN."""
    cleaned = re.sub(r"[^0-9.\-]", "", str(raw if raw is not None else ""))
    try:
        return float(cleaned)
    except ValueError:
        return math.nan


def _user_path(username: str, suffix: str = "") -> str:
    return f"/users/{quote(username, safe='')}{suffix}"


class DiscogsClient:
    """Async Discogs API client authenticated with a :data:`SyncCredential`."""

    def __init__(
        self,
        credential: SyncCredential,
        config: DiscogsConfig,
        *,
        page_size: int = _DEFAULT_PAGE_SIZE,
        page_delay: float = _DEFAULT_PAGE_DELAY,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._credential = credential
        self._config = config
        self._page_size = page_size
        self._page_delay = page_delay
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> DiscogsClient:
        kw: dict = {
            "base_url": API_BASE,
            "timeout": 30.0,
            "headers": {"User-Agent": self._config.user_agent},
        }
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- auth --

    def _auth_header(self) -> str:
        cred = self._credential
        if not isinstance(cred, DelegatedCredential):
            return f"Discogs token={cred.token.get_secret_value()}"

        consumer_key = self._config.consumer_key
        consumer_secret = self._config.consumer_secret.get_secret_value()
        if not consumer_key or not consumer_secret:
            raise DiscogsAuthError(
                "Missing Discogs consumer key/secret, run: "
                "grailsync config set discogs.consumer_key <key>"
            )
        # OAuth 1.0a PLAINTEXT: the signature is the two secrets joined by "&".
        signature = quote(f"{consumer_secret}&{cred.token_secret.get_secret_value()}", safe="")
        return (
            f'OAuth oauth_consumer_key="{consumer_key}", '
            f'oauth_nonce="{secrets.token_hex(16)}", '
            f'oauth_token="{cred.access_token.get_secret_value()}", '
            f'oauth_signature="{signature}", '
            f'oauth_signature_method="PLAINTEXT", '
            f'oauth_timestamp="{int(time.time())}"'
        )

    # -- request helper --

    async def _get(self, path: str, *, params: dict | None = None) -> httpx.Response:
        assert self._client is not None  # noqa: S101
        try:
            return await self._client.get(path, params=params, headers={"Authorization": self._auth_header()})
        except httpx.TransportError as exc:
            raise DiscogsNetworkError(
                f"Network request to Discogs failed before reaching the server "
                f"(offline, blocked or proxy error). URL: {API_BASE}{path}: {exc}"
            ) from exc

    async def _paginate(
        self,
        listing: str,
        path: str,
        key: str,
        *,
        params: dict | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[dict]:
        entries: list[dict] = []
        page = 1
        total_pages = 1

        while page <= total_pages:
            if page > 1:
                await asyncio.sleep(self._page_delay)
            resp = await self._get(path, params={**(params or {}), "per_page": self._page_size, "page": page})
            if resp.status_code != 200:
                log.error("page_fetch_failed", listing=listing, page=page, status=resp.status_code)
                raise DiscogsPageError(listing, page, resp.status_code)

            data = resp.json()
            pagination = data.get("pagination") or {}
            total_pages = pagination.get("pages", 1)
            entries.extend(data.get(key) or [])

            if on_progress is not None:
                on_progress(len(entries), pagination.get("items", len(entries)))
            page += 1

        return entries

    # -- identity / profile --

    async def fetch_identity(self) -> str:
        """Return the username the credential belongs to."""
        resp = await self._get("/oauth/identity")
        if resp.status_code != 200:
            body = resp.text
            log.error("identity_failed", status=resp.status_code)
            raise DiscogsAuthError(f"Discogs auth failed ({resp.status_code}): {body or 'Check your token'}")
        username = resp.json()["username"]
        log.info("identity_resolved", username=username)
        return username

    async def fetch_user_profile(self, username: str) -> UserProfile:
        """Fetch the public profile; a network failure yields an empty avatar."""
        try:
            resp = await self._get(_user_path(username))
        except DiscogsNetworkError:
            log.warning("profile_fetch_skipped", username=username)
            return UserProfile(username=username)

        if resp.status_code == 404:
            raise DiscogsAPIError(f'User "{username}" not found on Discogs.', status_code=404)
        if resp.status_code != 200:
            raise DiscogsAPIError(f"Failed to fetch user profile ({resp.status_code})", status_code=resp.status_code)
        data = resp.json()
        return UserProfile(username=data.get("username", username), avatar_url=data.get("avatar_url") or "")

    # -- collection --

    async def fetch_folder_map(self, username: str) -> dict[int, str]:
        resp = await self._get(_user_path(username, "/collection/folders"))
        if resp.status_code != 200:
            raise DiscogsAPIError(f"Failed to fetch folders ({resp.status_code})", status_code=resp.status_code)
        return {f["id"]: f["name"] for f in resp.json().get("folders") or []}

    async def fetch_custom_fields(self, username: str) -> list[dict]:
        resp = await self._get(_user_path(username, "/collection/fields"))
        if resp.status_code != 200:
            log.warning("custom_fields_failed", status=resp.status_code)
            return []
        return resp.json().get("fields") or []

    async def fetch_collection(
        self,
        username: str,
        on_progress: ProgressCallback | None = None,
    ) -> CollectionFetch:
        """Fetch every collection item across all pages.

        A release filed in several folders collapses to one item, keeping the
        last folder seen.
        """
        folder_map = await self.fetch_folder_map(username)
        field_map = build_field_map(await self.fetch_custom_fields(username))

        raw = await self._paginate(
            "collection",
            _user_path(username, "/collection/folders/0/releases"),
            "releases",
            params={"sort": "artist", "sort_order": "asc"},
            on_progress=on_progress,
        )
        items = dedupe_by_release([map_release(r, folder_map, field_map) for r in raw])
        folders = ["All", *(name for name in folder_map.values() if name != "All")]
        log.info("collection_fetched", username=username, raw=len(raw), items=len(items))
        return CollectionFetch(items=items, folders=folders)

    async def fetch_wantlist(
        self,
        username: str,
        on_progress: ProgressCallback | None = None,
    ) -> list[WantItem]:
        raw = await self._paginate("want list", _user_path(username, "/wants"), "wants", on_progress=on_progress)
        wants = [map_want(w) for w in raw]
        log.info("wantlist_fetched", username=username, items=len(wants))
        return wants

    # -- valuation / pricing --

    async def fetch_collection_value(self, username: str) -> CollectionValue:
        resp = await self._get(_user_path(username, "/collection/value"))
        if resp.status_code != 200:
            raise DiscogsAPIError(
                f"Failed to fetch collection value ({resp.status_code})", status_code=resp.status_code
            )
        data = resp.json()
        values = [_parse_currency(data.get(k)) for k in ("minimum", "median", "maximum")]
        if not all(math.isfinite(v) for v in values):
            raise DiscogsAPIError(
                "Collection value fields are not finite numbers: "
                f"minimum={data.get('minimum')!r} median={data.get('median')!r} maximum={data.get('maximum')!r}"
            )
        minimum, median, maximum = values
        return CollectionValue(
            minimum=minimum,
            median=median,
            maximum=maximum,
            currency=data.get("currency") or "USD",
            fetched_at=time.time(),
        )

    async def fetch_price_suggestions(self, release_id: int, grades: list[str]) -> list[ConditionPrice]:
        """Per-grade suggested prices, in *grades* order; grades without data are omitted."""
        resp = await self._get(f"/marketplace/price_suggestions/{release_id}")
        if resp.status_code != 200:
            raise DiscogsAPIError(f"Price suggestions failed ({resp.status_code})", status_code=resp.status_code)
        data = resp.json()
        prices: list[ConditionPrice] = []
        for grade in grades:
            entry = data.get(grade)
            if isinstance(entry, dict) and isinstance(entry.get("value"), (int, float)):
                prices.append(
                    ConditionPrice(condition=grade, value=entry["value"], currency=entry.get("currency") or "USD")
                )
        return prices

    async def fetch_market_stats(self, release_id: int) -> MarketplaceStats:
        resp = await self._get(f"/marketplace/stats/{release_id}")
        if resp.status_code != 200:
            raise DiscogsAPIError(f"Marketplace stats failed ({resp.status_code})", status_code=resp.status_code)
        data = resp.json()
        lowest = data.get("lowest_price") or {}
        return MarketplaceStats(
            lowest_price=lowest.get("value"),
            num_for_sale=data.get("num_for_sale") or 0,
            currency=lowest.get("currency") or "USD",
        )

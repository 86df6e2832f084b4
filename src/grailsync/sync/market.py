"""Persisted, TTL-bounded cache of per-release market prices.

The in-memory map and its durable mirror are written together: every
mutation persists the full snapshot, never a diff.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from grailsync.models import ConditionPrice, MarketCacheEntry, MarketplaceStats, SyncCredential

if TYPE_CHECKING:
    from grailsync.storage.kv import KeyValueStore
    from grailsync.sync.discogs import DiscogsClient

log = structlog.get_logger(__name__)

STORAGE_KEY = "market_cache"
MARKET_CACHE_TTL = 30 * 24 * 3600  # seconds
BATCH_DELAY = 0.5

# Best to worst.
CONDITION_GRADES = [
    "Mint (M)",
    "Near Mint (NM or M-)",
    "Very Good Plus (VG+)",
    "Very Good (VG)",
    "Good Plus (G+)",
    "Good (G)",
    "Fair (F)",
    "Poor (P)",
]

CONDITION_SHORT = {
    "Mint (M)": "M",
    "Near Mint (NM or M-)": "NM",
    "Very Good Plus (VG+)": "VG+",
    "Very Good (VG)": "VG",
    "Good Plus (G+)": "G+",
    "Good (G)": "G",
    "Fair (F)": "F",
    "Poor (P)": "P",
}

_PAREN = re.compile(r"\(([^)]+)\)")


def _abbrev(text: str) -> str | None:
    m = _PAREN.search(text)
    return m.group(1).strip().lower() if m else None


def _aliases(grade: str) -> set[str]:
    """Short code plus every abbreviation in the label's parenthetical."""
    names = {CONDITION_SHORT[grade].lower()}
    paren = _abbrev(grade)
    if paren:
        names.update(part.strip() for part in paren.split(" or "))
    return names


def _name_part(text: str) -> str:
    return text.split("(")[0].strip().lower()


def _abbrev_compatible(raw_abbrev: str | None, grade: str) -> bool:
    if raw_abbrev is None:
        return True
    grade_abbrev = _abbrev(grade)
    return grade_abbrev is not None and raw_abbrev in grade_abbrev


def normalize_condition(raw: str | None) -> str | None:
    """Map a free-text condition onto one of :data:`CONDITION_GRADES`.

    Each pass runs over all grades before the next one starts: exact label,
    then short code or parenthetical abbreviation, then the name before the
    parenthesis, then a prefix of that name.

    >>> normalize_condition("Near Mint (NM)")
    'Near Mint (NM or M-)'
    >>> normalize_condition("vg+")
    'Very Good Plus (VG+)'
    """
    if not raw or not raw.strip():
        return None
    lower = raw.strip().lower()

    for grade in CONDITION_GRADES:
        if grade.lower() == lower:
            return grade

    raw_abbrev = _abbrev(lower)
    bare = lower.strip("() ")
    for grade in CONDITION_GRADES:
        aliases = _aliases(grade)
        if bare in aliases or (raw_abbrev is not None and not _name_part(lower) and raw_abbrev in aliases):
            return grade

    name = _name_part(lower)
    if not name:
        return None

    for grade in CONDITION_GRADES:
        if _name_part(grade) == name and _abbrev_compatible(raw_abbrev, grade):
            return grade

    for grade in CONDITION_GRADES:
        if _name_part(grade).startswith(name) and _abbrev_compatible(raw_abbrev, grade):
            return grade

    return None


def price_for_condition(entry: MarketCacheEntry | None, raw_condition: str | None) -> ConditionPrice | None:
    """Return the suggested price matching a user's condition text, if any."""
    if entry is None:
        return None
    grade = normalize_condition(raw_condition)
    if grade is None:
        return None
    return next((p for p in entry.prices if p.condition == grade), None)


class MarketDataCache:
    """Per-release price cache with a TTL, mirrored to durable key-value storage."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        ttl_seconds: float = MARKET_CACHE_TTL,
        client_factory: Callable[[SyncCredential], DiscogsClient] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._ttl = ttl_seconds
        self._client_factory = client_factory
        self._clock = clock
        self._entries: dict[int, MarketCacheEntry] = {}
        self._load()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_fresh(self, entry: MarketCacheEntry) -> bool:
        return self._clock() - entry.fetched_at < self._ttl

    def _load(self) -> None:
        raw = self._storage.get(STORAGE_KEY) or {}
        dropped = 0
        for key, value in raw.items():
            try:
                entry = MarketCacheEntry.model_validate(value)
                release_id = int(key)
            except (ValidationError, ValueError):
                dropped += 1
                continue
            if self._is_fresh(entry):
                self._entries[release_id] = entry
            else:
                dropped += 1
        log.debug("market_cache_loaded", entries=len(self._entries), dropped=dropped)

    def _persist(self) -> None:
        self._storage.set(
            STORAGE_KEY,
            {str(rid): entry.model_dump(mode="json") for rid, entry in self._entries.items()},
        )

    def get(self, release_id: int) -> MarketCacheEntry | None:
        entry = self._entries.get(release_id)
        if entry is None or not self._is_fresh(entry):
            return None
        return entry

    def put(self, release_id: int, entry: MarketCacheEntry) -> None:
        self._entries[release_id] = entry
        self._persist()

    def clear(self) -> None:
        self._entries.clear()
        self._storage.delete(STORAGE_KEY)

    def _create_client(self, credential: SyncCredential) -> DiscogsClient:
        if self._client_factory:
            return self._client_factory(credential)
        from grailsync.config import load_config
        from grailsync.sync.discogs import DiscogsClient

        return DiscogsClient(credential, load_config().discogs)

    async def _lookup(self, client: DiscogsClient, release_id: int) -> MarketCacheEntry:
        from grailsync.sync.discogs import DiscogsError

        prices: list[ConditionPrice] = []
        stats = MarketplaceStats()
        try:
            prices = await client.fetch_price_suggestions(release_id, CONDITION_GRADES)
        except DiscogsError as exc:
            log.warning("price_suggestions_failed", release_id=release_id, error=str(exc))
        try:
            stats = await client.fetch_market_stats(release_id)
        except DiscogsError as exc:
            log.warning("market_stats_failed", release_id=release_id, error=str(exc))

        entry = MarketCacheEntry(prices=prices, stats=stats, fetched_at=self._clock())
        self.put(release_id, entry)
        return entry

    async def fetch(
        self,
        release_id: int,
        credential: SyncCredential,
        *,
        force_refresh: bool = False,
    ) -> MarketCacheEntry:
        """Return a fresh cached entry, or look the release up and cache it."""
        if not force_refresh:
            cached = self.get(release_id)
            if cached is not None:
                return cached

        async with self._create_client(credential) as client:
            return await self._lookup(client, release_id)

    async def prefetch(
        self,
        release_ids: Iterable[int],
        credential: SyncCredential,
        *,
        delay: float = BATCH_DELAY,
    ) -> dict[int, MarketCacheEntry]:
        """Fetch prices for several releases, one at a time.

        Fresh entries are skipped. Lookups are spaced by *delay* seconds and a
        failing release is logged and skipped.
        """
        fetched: dict[int, MarketCacheEntry] = {}
        pending = [rid for rid in dict.fromkeys(release_ids) if self.get(rid) is None]
        if not pending:
            return fetched

        async with self._create_client(credential) as client:
            for i, release_id in enumerate(pending):
                if i > 0:
                    await asyncio.sleep(delay)
                try:
                    fetched[release_id] = await self._lookup(client, release_id)
                except Exception as exc:
                    log.warning("price_prefetch_failed", release_id=release_id, error=str(exc))
        log.info("price_prefetch_done", requested=len(pending), fetched=len(fetched))
        return fetched

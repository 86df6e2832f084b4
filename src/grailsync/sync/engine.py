"""Sync orchestrator: pulls the Discogs catalog into local state."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

import structlog

from grailsync.models import SyncResult
from grailsync.sync.discogs import DiscogsAuthError, DiscogsError
from grailsync.sync.hydration import (
    HydrationCategory,
    HydrationStatus,
    hydration_step,
    merge_annotations,
    merge_play_history,
    priority_index,
    purge_tag_index,
)

if TYPE_CHECKING:
    from grailsync.models import SyncCredential
    from grailsync.state import LibraryState
    from grailsync.storage.database import Database
    from grailsync.sync.discogs import DiscogsClient
    from grailsync.sync.hydration import HydrationReconciler
    from grailsync.sync.identity import IdentityResolver
    from grailsync.sync.market import MarketDataCache

log = structlog.get_logger(__name__)


class SyncState(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SyncInProgressError(RuntimeError):
    """Raised when a sync is requested while another one is running."""

    def __init__(self) -> None:
        super().__init__("Sync already in progress")


class SyncOrchestrator:
    """Runs one sync pass at a time and reports progress through the state.

    Steps run strictly in order. The avatar and collection value are
    non-fatal; a failing collection or want-list fetch aborts the pass.
    Whatever was committed to state before the failure stays there, and the
    last-synced timestamp is only written when every step succeeded.
    """

    def __init__(
        self,
        state: LibraryState,
        store: Database,
        *,
        client_factory: Callable[[SyncCredential], DiscogsClient],
        reconciler: HydrationReconciler,
        market_cache: MarketDataCache | None = None,
        resolver: IdentityResolver | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._client_factory = client_factory
        self._reconciler = reconciler
        self._market_cache = market_cache
        self._resolver = resolver
        self._on_progress = on_progress
        self._sync_state = SyncState.IDLE
        self._lock = asyncio.Lock()

    @property
    def state(self) -> SyncState:
        return self._sync_state

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def progress(self) -> str:
        return self._state.sync_progress

    @property
    def last_result(self) -> SyncResult | None:
        return self._state.last_result

    def _progress(self, message: str) -> None:
        self._state.sync_progress = message
        if self._on_progress is not None:
            self._on_progress(message)

    # ── entry points ───────────────────────────────────────────────────────

    async def perform_sync(self, username: str, credential: SyncCredential) -> SyncResult:
        """Run a full sync pass for *username*. Raises if one is already running."""
        if self._lock.locked():
            raise SyncInProgressError

        async with self._lock:
            self._sync_state = SyncState.SYNCING
            log.info("sync_start", username=username, kind=credential.kind)
            try:
                result = await self._do_sync(username, credential)
            except Exception as exc:
                self._progress("")
                self._sync_state = SyncState.ERROR
                log.error("sync_failed", username=username, error=str(exc))
                raise
            self._sync_state = SyncState.IDLE
            self._state.last_result = result
            log.info("sync_completed", **result.model_dump())
            return result

    async def dev_sync(self, token: str) -> SyncResult:
        """Switch to a manual token and sync it from a clean slate.

        Everything local is dropped first (collection, want list, sessions,
        play history, market prices, store reads, hydration flags, identity)
        so nothing from the previous account can leak into the new one.
        """
        if self._resolver is None:
            msg = "dev_sync requires an identity resolver"
            raise RuntimeError(msg)
        if self._lock.locked():
            raise SyncInProgressError

        self._state.wipe()
        if self._market_cache is not None:
            self._market_cache.clear()
        self._reconciler.reset()
        self._resolver.use_manual_token(token)
        log.info("dev_sync_reset")

        self._progress("Authenticating...")
        try:
            username = await self._resolver.resolve()
        except DiscogsError as exc:
            self._progress("")
            log.error("dev_sync_auth_failed", error=str(exc))
            raise
        credential = self._resolver.credential
        if username is None or credential is None:
            self._progress("")
            raise DiscogsAuthError("Could not resolve a username for this token")
        self._state.username = username
        return await self.perform_sync(username, credential)

    # ── sync pass ──────────────────────────────────────────────────────────

    async def _do_sync(self, username: str, credential: SyncCredential) -> SyncResult:
        state = self._state
        state.sync_error = None

        async with self._client_factory(credential) as client:
            self._progress("Authenticating...")
            try:
                profile = await client.fetch_user_profile(username)
                state.avatar_url = profile.avatar_url
            except DiscogsError as exc:
                log.warning("avatar_fetch_failed", username=username, error=str(exc))

            self._progress("Fetching collection...")
            fetched = await client.fetch_collection(
                username,
                lambda loaded, total: self._progress(f"Fetching collection... {loaded}/{total}"),
            )
            state.items = fetched.items
            state.folders = fetched.folders
            self._merge_known(HydrationCategory.RATINGS)

            self._progress("Fetching want list...")
            state.wants = await client.fetch_wantlist(
                username,
                lambda loaded, total: self._progress(f"Fetching wants... {loaded}/{total}"),
            )
            self._merge_known(HydrationCategory.PRIORITIES)
            self._merge_known(HydrationCategory.PLAY_HISTORY)

            self._progress("Fetching collection value...")
            try:
                state.collection_value = await client.fetch_collection_value(username)
            except DiscogsError as exc:
                log.warning("collection_value_failed", username=username, error=str(exc))

        await self._store.update_last_synced(username)
        state.last_synced = datetime.now(UTC)
        self._progress("")

        return SyncResult(
            album_count=len(state.items),
            folder_count=len([f for f in state.folders if f != "All"]),
            want_count=len(state.wants),
        )

    def _merge_known(self, category: HydrationCategory) -> None:
        """Fold already-read store rows for *category* into the fresh lists.

        Sync replaces items wholesale, so the merge runs on every pass even
        when the category hydrated earlier. Categories whose store read has
        not resolved are left alone for the reconciler.
        """
        state = self._state
        snap = state.annotations
        if category is HydrationCategory.RATINGS:
            rows, target = snap.purge_tags, state.items
        elif category is HydrationCategory.PRIORITIES:
            rows, target = snap.priorities, state.wants
        else:
            rows, target = snap.play_history, state.items
        if rows is None:
            return

        if category is HydrationCategory.RATINGS:
            state.items = merge_annotations(state.items, purge_tag_index(rows), "purge_tag")
        elif category is HydrationCategory.PRIORITIES:
            state.wants = merge_annotations(state.wants, priority_index(rows), "priority")
        else:
            state.play_history = merge_play_history(state.items, rows, state.play_history)

        status = hydration_step(HydrationStatus.PENDING, store_resolved=True, target_nonempty=bool(target))
        if status is HydrationStatus.HYDRATED:
            self._reconciler.mark_hydrated(category)

"""Application wiring and the top-level sync trigger.

:class:`GrailApp` owns one of each component and is the only place where a
failed sync is caught: the error lands in ``state.sync_error`` and the
loading phase is released instead of spinning forever.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from grailsync.state import LibraryState
from grailsync.storage.database import Database
from grailsync.storage.kv import KeyValueStore
from grailsync.sync.discogs import DiscogsClient, DiscogsError
from grailsync.sync.engine import SyncOrchestrator
from grailsync.sync.hydration import HydrationReconciler
from grailsync.sync.identity import IdentityResolver, LoginRedirect, complete_delegated_login
from grailsync.sync.loading import LoadingPhaseMachine, LoadingSignals
from grailsync.sync.market import MarketDataCache

if TYPE_CHECKING:
    from grailsync.config import AppConfig
    from grailsync.models import DelegatedLogin, MarketCacheEntry, SyncCredential, SyncResult

log = structlog.get_logger(__name__)

LAST_USERNAME_KEY = "last_username"
LAST_SYNC_KEY = "last_sync"


class NotSignedInError(RuntimeError):
    """Raised when an operation needs a credential and none is set."""


class GrailApp:
    """One signed-in library: identity, state, sync, hydration, prices."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        kv: KeyValueStore,
        *,
        client_factory: Callable[[SyncCredential], DiscogsClient] | None = None,
        on_progress: Callable[[str], None] | None = None,
        hold_seconds: float = 0.5,
    ) -> None:
        self.config = config
        self.db = db
        self.kv = kv
        self._client_factory = client_factory or self._default_client
        self.resolver = IdentityResolver(self._client_factory)
        self.redirect = LoginRedirect()
        self.state = LibraryState(db)
        self.reconciler = HydrationReconciler(self.state)
        self.market = MarketDataCache(
            kv,
            ttl_seconds=config.cache.market_ttl_days * 24 * 3600,
            client_factory=self._client_factory,
        )
        self.orchestrator = SyncOrchestrator(
            self.state,
            db,
            client_factory=self._client_factory,
            reconciler=self.reconciler,
            market_cache=self.market,
            resolver=self.resolver,
            on_progress=on_progress,
        )
        self.loading = LoadingPhaseMachine(hold_seconds=hold_seconds)
        self._identity_loading = False
        self._sync_running = False
        self._closed = False

    def _default_client(self, credential: SyncCredential) -> DiscogsClient:
        return DiscogsClient(
            credential,
            self.config.discogs,
            page_size=self.config.sync.page_size,
            page_delay=self.config.sync.page_delay_seconds,
        )

    # -- loading phase ------------------------------------------------------------

    def _tick(self) -> None:
        self.loading.update(
            LoadingSignals(
                identity_loading=self._identity_loading,
                has_session=self.resolver.credential is not None,
                collection_resolved=self.state.collection_resolved,
                sync_running=self._sync_running,
            )
        )

    def on_foreground(self) -> None:
        self.loading.on_foreground(self.redirect)

    # -- identity -----------------------------------------------------------------

    def _adopt_username(self, username: str) -> None:
        """Point local state at *username*, dropping another account's data."""
        previous = self.state.username
        if previous is not None and previous != username:
            log.info("account_switched", old=previous, new=username)
            self.state.wipe()
            self.reconciler.reset()
        self.state.username = username
        self.kv.set(LAST_USERNAME_KEY, username)

    async def restore_session(self, username: str | None = None) -> SyncResult | None:
        """Resume a returning session and sync it.

        A stored delegated account for *username* wins; otherwise the
        personal token from the config is used, if there is one.
        """
        self._identity_loading = True
        self._tick()
        try:
            restored = username is not None and await self.resolver.restore(self.db, username)
            if not restored and self.config.has_manual_token():
                self.resolver.use_manual_token(self.config.discogs.token.get_secret_value())
            resolved = await self.resolver.resolve()
        except DiscogsError as exc:
            log.error("restore_failed", error=str(exc))
            self.state.sync_error = str(exc)
            self.resolver.sign_out()
            resolved = None
        finally:
            self._identity_loading = False

        if resolved is None:
            self._tick()
            return None

        self._adopt_username(resolved)
        return await self.trigger_sync()

    async def login_with_token(self, token: str) -> SyncResult | None:
        """Switch to a personal token. Raises ``DiscogsAuthError`` if Discogs rejects it."""
        self.resolver.use_manual_token(token)
        username = await self.resolver.resolve()
        if username is None:
            raise NotSignedInError("No username for this token")
        self._adopt_username(username)
        return await self.trigger_sync()

    def begin_delegated_login(self) -> None:
        """Mark that the user is being sent to the Discogs authorization page."""
        self.redirect.begin()

    async def finish_delegated_login(
        self,
        login: Callable[[str], Awaitable[DelegatedLogin]],
        verifier: str,
    ) -> SyncResult | None:
        """Exchange *verifier* and sign in, unless the app closed meanwhile."""
        result = await complete_delegated_login(login, verifier, is_cancelled=lambda: self._closed)
        if result is None:
            return None
        self.redirect.clear()
        return await self.login_delegated(result)

    async def login_delegated(self, login: DelegatedLogin) -> SyncResult | None:
        access_token = login.access_token.get_secret_value()
        token_secret = login.token_secret.get_secret_value()
        await self.db.upsert_user(
            username=login.username,
            access_token=access_token,
            token_secret=token_secret,
            avatar_url=login.avatar_url,
        )
        self.resolver.use_delegated(login.username, access_token, token_secret)
        self._adopt_username(login.username)
        self.state.avatar_url = login.avatar_url
        return await self.trigger_sync()

    # -- store reads / hydration ----------------------------------------------------

    async def load_annotations(self) -> None:
        """Re-read every annotation category and hydrate what is ready."""
        username = self.state.username
        if username is None:
            return
        await self.state.flush()
        self.state.annotations = await self.db.load_annotations(username)
        self.reconciler.reconcile()

    # -- sync -----------------------------------------------------------------------

    async def _run_sync(self, run: Callable[[], Awaitable[SyncResult]]) -> SyncResult | None:
        if self._sync_running or self.orchestrator.is_syncing:
            log.info("sync_skipped_in_flight")
            return None

        self._sync_running = True
        self._tick()
        try:
            result = await run()
        except Exception as exc:
            log.error("sync_trigger_failed", error=str(exc))
            self.state.sync_error = str(exc)
            return None
        else:
            self.reconciler.reconcile()
            self.kv.set(
                LAST_SYNC_KEY,
                {
                    "username": self.state.username,
                    "at": datetime.now(UTC).isoformat(),
                    **result.model_dump(),
                },
            )
            return result
        finally:
            self._sync_running = False
            self._tick()

    async def trigger_sync(self) -> SyncResult | None:
        """Sync the signed-in account; ``None`` if skipped or failed."""
        username = self.state.username
        credential = self.resolver.credential
        if username is None or credential is None:
            log.info("sync_skipped_no_session")
            return None
        await self.load_annotations()
        return await self._run_sync(lambda: self.orchestrator.perform_sync(username, credential))

    async def dev_sync(self, token: str) -> SyncResult | None:
        """Wipe everything local and sync *token* from scratch."""
        result = await self._run_sync(lambda: self.orchestrator.dev_sync(token))
        if result is not None and self.state.username is not None:
            self.kv.set(LAST_USERNAME_KEY, self.state.username)
        return result

    # -- prices -----------------------------------------------------------------------

    def _credential(self) -> SyncCredential:
        credential = self.resolver.credential
        if credential is None:
            raise NotSignedInError("Not signed in")
        return credential

    async def price(self, release_id: int, *, force_refresh: bool = False) -> MarketCacheEntry:
        return await self.market.fetch(release_id, self._credential(), force_refresh=force_refresh)

    async def prefetch_prices(self, release_ids: Iterable[int]) -> dict[int, MarketCacheEntry]:
        return await self.market.prefetch(
            release_ids,
            self._credential(),
            delay=self.config.sync.price_batch_delay_seconds,
        )

    # -- sign-out / wipe ----------------------------------------------------------------

    async def sign_out(self) -> None:
        await self.state.flush()
        self.resolver.sign_out()
        self.state.wipe()
        self.reconciler.reset()
        self.loading.reset()
        self.kv.delete(LAST_USERNAME_KEY)
        log.info("signed_out")

    async def wipe(self) -> None:
        """Delete the account's stored annotations and every local trace of it."""
        await self.state.flush()
        username = self.state.username
        if username is not None:
            await self.db.wipe_user(username)
        self.market.clear()
        self.kv.delete(LAST_SYNC_KEY)
        await self.sign_out()
        log.info("data_wiped", username=username)

    async def close(self) -> None:
        self._closed = True
        await self.state.flush()


@asynccontextmanager
async def open_app(config: AppConfig, **kwargs: object) -> AsyncIterator[GrailApp]:
    """Connect the store, build a :class:`GrailApp`, and close both on exit."""
    db = Database(config.db_path)
    await db.connect()
    kv = KeyValueStore(config.storage_path)
    app = GrailApp(config, db, kv, **kwargs)  # type: ignore[arg-type]
    try:
        yield app
    finally:
        await app.close()
        await db.close()

"""Credential selection and username resolution."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog
from pydantic import SecretStr

from grailsync.models import DelegatedCredential, DelegatedLogin, ManualCredential, SyncCredential

if TYPE_CHECKING:
    from grailsync.storage.database import Database
    from grailsync.sync.discogs import DiscogsClient

log = structlog.get_logger(__name__)


class IdentityResolver:
    """Holds the single authoritative credential and the username it maps to.

    The username is the partition key for every store query. Once resolved it
    is kept for the rest of the session; switching credentials drops both the
    other credential and the cached username.
    """

    def __init__(self, client_factory: Callable[[SyncCredential], DiscogsClient]) -> None:
        self._client_factory = client_factory
        self._credential: SyncCredential | None = None
        self._username: str | None = None
        # Bumped on every credential switch so a stale in-flight lookup is discarded.
        self._generation = 0

    @property
    def credential(self) -> SyncCredential | None:
        return self._credential

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def is_pending(self) -> bool:
        return self._username is None

    def use_delegated(self, username: str, access_token: str, token_secret: str) -> None:
        self._credential = DelegatedCredential(
            access_token=SecretStr(access_token),
            token_secret=SecretStr(token_secret),
        )
        self._username = username
        self._generation += 1
        log.info("credential_selected", kind="delegated", username=username)

    def use_manual_token(self, token: str) -> None:
        self._credential = ManualCredential(token=SecretStr(token))
        self._username = None
        self._generation += 1
        log.info("credential_selected", kind="manual")

    async def restore(self, store: Database, username: str) -> bool:
        """Adopt the delegated credential stored for *username*, if any."""
        record = await store.get_user(username)
        if record is None:
            log.info("restore_no_account", username=username)
            return False
        self.use_delegated(record.username, record.access_token, record.token_secret)
        return True

    async def resolve(self) -> str | None:
        """Return the username, looking it up for a manual token if needed.

        Returns ``None`` while no credential is set. Raises
        :class:`~grailsync.sync.discogs.DiscogsAuthError` when the identity
        endpoint rejects the credential.
        """
        if self._username is not None:
            return self._username
        if self._credential is None:
            return None

        generation = self._generation
        async with self._client_factory(self._credential) as client:
            username = await client.fetch_identity()

        if generation != self._generation:
            log.info("identity_discarded_stale")
            return self._username
        self._username = username
        return username

    def sign_out(self) -> None:
        self._credential = None
        self._username = None
        self._generation += 1


class LoginRedirect:
    """Marks that the user was sent to the external Discogs login page.

    Cleared by a successful return; still set when the app regains focus
    means the user backed out.
    """

    def __init__(self) -> None:
        self.in_flight = False

    def begin(self) -> None:
        self.in_flight = True

    def clear(self) -> None:
        self.in_flight = False


async def complete_delegated_login(
    login: Callable[[str], Awaitable[DelegatedLogin]],
    verifier: str,
    *,
    is_cancelled: Callable[[], bool],
) -> DelegatedLogin | None:
    """Exchange *verifier* through *login*; ``None`` if cancelled meanwhile."""
    result = await login(verifier)
    if is_cancelled():
        log.info("login_completion_cancelled", username=result.username)
        return None
    return result

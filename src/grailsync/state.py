"""In-memory library state and the direct mutation paths that edit it.

Every user edit updates memory immediately and fires a write to the
persisted store without waiting for it; a failed write is logged.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from grailsync.models import CollectionItem, CollectionValue, Preferences, PurgeTag, Session, SyncResult, WantItem
from grailsync.storage.models import AnnotationSnapshot

if TYPE_CHECKING:
    from grailsync.storage.database import Database

log = structlog.get_logger(__name__)

DEFAULT_SESSION_NAME = "Saved for Later"


def _now() -> datetime:
    return datetime.now(UTC)


class LibraryState:
    """Collection, want-list, sessions and play history for one signed-in user."""

    def __init__(self, store: Database | None = None) -> None:
        self._store = store
        self._pending: set[asyncio.Task] = set()
        self.username: str | None = None
        self._reset_fields()

    def _reset_fields(self) -> None:
        self.items: list[CollectionItem] = []
        self.wants: list[WantItem] = []
        self.sessions: list[Session] = []
        self.folders: list[str] = []
        self.play_history: dict[str, datetime] = {}
        self.preferences = Preferences()
        self.annotations = AnnotationSnapshot()
        self.avatar_url = ""
        self.collection_value: CollectionValue | None = None
        self.sync_progress = ""
        self.last_synced: datetime | None = None
        self.last_result: SyncResult | None = None
        self.sync_error: str | None = None
        self.first_session_just_created = False

    # -- store writes -----------------------------------------------------------

    def _fire(self, coro: Coroutine[Any, Any, Any], what: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.warning("store_write_failed", write=what, error=str(t.exception()))

        task.add_done_callback(_done)

    def _write(self, what: str, factory: Any) -> None:
        """Schedule ``factory(store, username)`` when signed in with a store."""
        if self._store is None or self.username is None:
            return
        self._fire(factory(self._store, self.username), what)

    async def flush(self) -> None:
        """Wait for every pending store write to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -- lookups -------------------------------------------------------------------

    def item(self, item_id: str) -> CollectionItem | None:
        return next((i for i in self.items if i.id == item_id), None)

    def is_in_collection(self, release_id: int | str) -> bool:
        rid = int(release_id)
        return any(i.release_id == rid for i in self.items)

    def is_in_wants(self, release_id: int | str) -> bool:
        rid = int(release_id)
        return any(w.release_id == rid for w in self.wants)

    @property
    def collection_resolved(self) -> bool:
        return bool(self.items) or self.last_result is not None

    # -- collection ------------------------------------------------------------------

    def set_purge_tag(self, item_id: str, tag: PurgeTag | None) -> None:
        item = self.item(item_id)
        if item is None:
            return
        self.items = [i.model_copy(update={"purge_tag": tag}) if i.id == item_id else i for i in self.items]
        if tag is None:
            self._write("purge_tag", lambda s, u: s.remove_purge_tag(u, item.release_id))
        else:
            self._write("purge_tag", lambda s, u: s.upsert_purge_tag(u, item.release_id, tag))

    def mark_played(self, item_id: str) -> None:
        item = self.item(item_id)
        if item is None:
            return
        played_at = _now()
        self.play_history[item_id] = played_at
        self._write("last_played", lambda s, u: s.upsert_last_played(u, item.release_id, played_at))

    # -- want list -----------------------------------------------------------------------

    def add_to_want_list(self, want: WantItem) -> bool:
        """Append *want* unless its release is already wanted. Returns True if added."""
        if self.is_in_wants(want.release_id):
            return False
        self.wants = [*self.wants, want]
        return True

    def toggle_want_priority(self, want_id: str) -> None:
        want = next((w for w in self.wants if w.id == want_id), None)
        if want is None:
            return
        flag = not want.priority
        self.wants = [w.model_copy(update={"priority": flag}) if w.id == want_id else w for w in self.wants]
        self._write("want_priority", lambda s, u: s.upsert_want_priority(u, want.release_id, flag))

    # -- sessions --------------------------------------------------------------------------

    def _session(self, session_id: str) -> Session | None:
        return next((s for s in self.sessions if s.id == session_id), None)

    def _replace_session(self, updated: Session) -> None:
        self.sessions = [updated if s.id == updated.id else s for s in self.sessions]

    @staticmethod
    def _release_ids(item_ids: list[str]) -> list[int]:
        return [int(i) for i in item_ids if i.isdigit()]

    def create_session(self, name: str, initial_ids: list[str] | None = None) -> str:
        now = _now()
        session = Session(
            id=f"s{time.time_ns()}",
            name=name,
            item_ids=list(initial_ids or []),
            created_at=now,
            last_modified=now,
        )
        self.sessions = [session, *self.sessions]
        ids = self._release_ids(session.item_ids)
        self._write("session", lambda s, u: s.create_session(u, session.id, name, ids))
        return session.id

    def bookmark(self, item_id: str) -> str | None:
        """Open the session picker for *item_id*.

        With no sessions yet, a default session holding the item is created
        and its id returned.
        """
        if self.sessions:
            return None
        session_id = self.create_session(DEFAULT_SESSION_NAME, [item_id])
        self.first_session_just_created = True
        return session_id

    def is_in_session(self, item_id: str, session_id: str) -> bool:
        session = self._session(session_id)
        return session is not None and item_id in session.item_ids

    def is_in_any_session(self, item_id: str) -> bool:
        return any(item_id in s.item_ids for s in self.sessions)

    def toggle_in_session(self, item_id: str, session_id: str) -> None:
        """Add or remove an item; either way ``last_modified`` moves."""
        session = self._session(session_id)
        if session is None:
            return
        if item_id in session.item_ids:
            item_ids = [i for i in session.item_ids if i != item_id]
            updated = session.model_copy(update={"item_ids": item_ids, "last_modified": _now()})
        else:
            updated = session.model_copy(update={"item_ids": [*session.item_ids, item_id], "last_modified": _now()})
        self._replace_session(updated)
        ids = self._release_ids(updated.item_ids)
        self._write("session", lambda s, u: s.update_session(u, session_id, release_ids=ids))

    def reorder_session(self, session_id: str, item_ids: list[str]) -> None:
        session = self._session(session_id)
        if session is None:
            return
        self._replace_session(session.model_copy(update={"item_ids": list(item_ids), "last_modified": _now()}))
        ids = self._release_ids(item_ids)
        self._write("session", lambda s, u: s.update_session(u, session_id, release_ids=ids))

    def rename_session(self, session_id: str, name: str) -> None:
        """Rename only; ``last_modified`` tracks membership and order, not names."""
        session = self._session(session_id)
        if session is None:
            return
        self._replace_session(session.model_copy(update={"name": name}))
        self._write("session", lambda s, u: s.update_session(u, session_id, name=name))

    def delete_session(self, session_id: str) -> None:
        self.sessions = [s for s in self.sessions if s.id != session_id]
        self._write("session", lambda s, u: s.remove_session(u, session_id))

    @property
    def most_recent_session_id(self) -> str | None:
        if not self.sessions:
            return None
        return max(self.sessions, key=lambda s: s.last_modified).id

    # -- preferences -------------------------------------------------------------------------

    def set_preferences(self, **changes: Any) -> None:
        self.preferences = self.preferences.model_copy(update=changes)
        self._write("preferences", lambda s, u: s.upsert_preferences(u, **changes))

    # -- lifecycle ---------------------------------------------------------------------------

    def wipe(self) -> None:
        """Drop every piece of local state, including the signed-in username."""
        self.username = None
        self._reset_fields()

"""Async SQLite implementation of the persisted annotation store.

Every table is partitioned by ``username``; reads return all rows for one
user, writes upsert or remove a single row.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from grailsync.storage.models import (
    AnnotationSnapshot,
    PlayRow,
    PreferencesRow,
    PriorityRow,
    PurgeTagRow,
    SessionRow,
    UserRecord,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT NOT NULL UNIQUE,
    avatar_url TEXT NOT NULL DEFAULT '',
    access_token TEXT NOT NULL,
    token_secret TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_synced_at TEXT
);

CREATE TABLE IF NOT EXISTS purge_tags (
    username TEXT NOT NULL,
    release_id INTEGER NOT NULL,
    tag TEXT NOT NULL CHECK(tag IN ('keep', 'cut', 'maybe')),
    tagged_at TEXT NOT NULL,
    UNIQUE(username, release_id)
);

CREATE TABLE IF NOT EXISTS sessions (
    username TEXT NOT NULL,
    session_id TEXT NOT NULL,
    name TEXT NOT NULL,
    release_ids TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    last_modified TEXT NOT NULL,
    UNIQUE(username, session_id)
);

CREATE TABLE IF NOT EXISTS last_played (
    username TEXT NOT NULL,
    release_id INTEGER NOT NULL,
    played_at TEXT NOT NULL,
    UNIQUE(username, release_id)
);

CREATE TABLE IF NOT EXISTS want_priorities (
    username TEXT NOT NULL,
    release_id INTEGER NOT NULL,
    is_priority INTEGER NOT NULL,
    UNIQUE(username, release_id)
);

CREATE TABLE IF NOT EXISTS preferences (
    username TEXT NOT NULL UNIQUE,
    theme TEXT NOT NULL DEFAULT 'system' CHECK(theme IN ('light', 'dark', 'system')),
    hide_purge_indicators INTEGER NOT NULL DEFAULT 0,
    hide_gallery_meta INTEGER NOT NULL DEFAULT 0
);
"""

_USER_TABLES = ("purge_tags", "sessions", "last_played", "want_priorities", "preferences")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionNotFoundError(LookupError):
    """Raised when updating a session that does not exist."""


class Database:
    """Async SQLite database wrapper for the annotation store."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- users ------------------------------------------------------------------

    async def get_user(self, username: str) -> UserRecord | None:
        cur = await self.conn.execute("SELECT * FROM users WHERE username = ?", (username,))
        row = await cur.fetchone()
        return self._row_to_user(row) if row else None

    async def upsert_user(
        self,
        *,
        username: str,
        access_token: str,
        token_secret: str,
        avatar_url: str = "",
    ) -> UserRecord:
        cur = await self.conn.execute(
            """
            INSERT INTO users (username, avatar_url, access_token, token_secret, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (username) DO UPDATE SET
                avatar_url = excluded.avatar_url,
                access_token = excluded.access_token,
                token_secret = excluded.token_secret
            RETURNING *
            """,
            (username, avatar_url, access_token, token_secret, _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_user(row)

    async def update_last_synced(self, username: str) -> None:
        await self.conn.execute(
            "UPDATE users SET last_synced_at = ? WHERE username = ?",
            (_now_iso(), username),
        )
        await self.conn.commit()

    async def clear_user(self, username: str) -> None:
        await self.conn.execute("DELETE FROM users WHERE username = ?", (username,))
        await self.conn.commit()

    # -- purge_tags ---------------------------------------------------------------

    async def list_purge_tags(self, username: str) -> list[PurgeTagRow]:
        cur = await self.conn.execute(
            "SELECT * FROM purge_tags WHERE username = ? ORDER BY release_id", (username,)
        )
        rows = await cur.fetchall()
        return [PurgeTagRow(**dict(r)) for r in rows]

    async def upsert_purge_tag(self, username: str, release_id: int, tag: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO purge_tags (username, release_id, tag, tagged_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (username, release_id) DO UPDATE SET
                tag = excluded.tag,
                tagged_at = excluded.tagged_at
            """,
            (username, release_id, tag, _now_iso()),
        )
        await self.conn.commit()

    async def remove_purge_tag(self, username: str, release_id: int) -> None:
        await self.conn.execute(
            "DELETE FROM purge_tags WHERE username = ? AND release_id = ?",
            (username, release_id),
        )
        await self.conn.commit()

    # -- sessions -------------------------------------------------------------------

    async def list_sessions(self, username: str) -> list[SessionRow]:
        cur = await self.conn.execute(
            "SELECT * FROM sessions WHERE username = ? ORDER BY created_at", (username,)
        )
        rows = await cur.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def create_session(
        self,
        username: str,
        session_id: str,
        name: str,
        release_ids: list[int],
    ) -> SessionRow:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO sessions (username, session_id, name, release_ids, created_at, last_modified)
            VALUES (?, ?, ?, ?, ?, ?)
            RETURNING *
            """,
            (username, session_id, name, json.dumps(release_ids), now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_session(row)

    async def update_session(
        self,
        username: str,
        session_id: str,
        *,
        name: str | None = None,
        release_ids: list[int] | None = None,
    ) -> SessionRow:
        """Patch a session; ``last_modified`` moves only when membership changes."""
        sets: list[str] = []
        params: list[object] = []
        if name is not None:
            sets.append("name = ?")
            params.append(name)
        if release_ids is not None:
            sets.append("release_ids = ?")
            params.append(json.dumps(release_ids))
            sets.append("last_modified = ?")
            params.append(_now_iso())
        if not sets:
            sets.append("name = name")

        cur = await self.conn.execute(
            f"UPDATE sessions SET {', '.join(sets)} WHERE username = ? AND session_id = ? RETURNING *",  # noqa: S608
            (*params, username, session_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        if row is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return self._row_to_session(row)

    async def remove_session(self, username: str, session_id: str) -> None:
        await self.conn.execute(
            "DELETE FROM sessions WHERE username = ? AND session_id = ?",
            (username, session_id),
        )
        await self.conn.commit()

    # -- last_played ------------------------------------------------------------------

    async def list_last_played(self, username: str) -> list[PlayRow]:
        cur = await self.conn.execute(
            "SELECT * FROM last_played WHERE username = ? ORDER BY release_id", (username,)
        )
        rows = await cur.fetchall()
        return [PlayRow(**dict(r)) for r in rows]

    async def upsert_last_played(self, username: str, release_id: int, played_at: datetime) -> None:
        await self.conn.execute(
            """
            INSERT INTO last_played (username, release_id, played_at)
            VALUES (?, ?, ?)
            ON CONFLICT (username, release_id) DO UPDATE SET played_at = excluded.played_at
            """,
            (username, release_id, played_at.isoformat()),
        )
        await self.conn.commit()

    # -- want_priorities ----------------------------------------------------------------

    async def list_want_priorities(self, username: str) -> list[PriorityRow]:
        cur = await self.conn.execute(
            "SELECT * FROM want_priorities WHERE username = ? ORDER BY release_id", (username,)
        )
        rows = await cur.fetchall()
        return [
            PriorityRow(username=r["username"], release_id=r["release_id"], is_priority=bool(r["is_priority"]))
            for r in rows
        ]

    async def upsert_want_priority(self, username: str, release_id: int, is_priority: bool) -> None:
        await self.conn.execute(
            """
            INSERT INTO want_priorities (username, release_id, is_priority)
            VALUES (?, ?, ?)
            ON CONFLICT (username, release_id) DO UPDATE SET is_priority = excluded.is_priority
            """,
            (username, release_id, int(is_priority)),
        )
        await self.conn.commit()

    # -- preferences ----------------------------------------------------------------------

    async def get_preferences(self, username: str) -> PreferencesRow | None:
        cur = await self.conn.execute("SELECT * FROM preferences WHERE username = ?", (username,))
        row = await cur.fetchone()
        if row is None:
            return None
        return PreferencesRow(
            username=row["username"],
            theme=row["theme"],
            hide_purge_indicators=bool(row["hide_purge_indicators"]),
            hide_gallery_meta=bool(row["hide_gallery_meta"]),
        )

    async def upsert_preferences(
        self,
        username: str,
        *,
        theme: str | None = None,
        hide_purge_indicators: bool | None = None,
        hide_gallery_meta: bool | None = None,
    ) -> PreferencesRow:
        """Insert defaults for missing fields on first write; patch only given fields after."""
        await self.conn.execute(
            "INSERT INTO preferences (username) VALUES (?) ON CONFLICT (username) DO NOTHING",
            (username,),
        )
        updates = {
            "theme": theme,
            "hide_purge_indicators": None if hide_purge_indicators is None else int(hide_purge_indicators),
            "hide_gallery_meta": None if hide_gallery_meta is None else int(hide_gallery_meta),
        }
        for column, value in updates.items():
            if value is not None:
                await self.conn.execute(
                    f"UPDATE preferences SET {column} = ? WHERE username = ?",  # noqa: S608
                    (value, username),
                )
        await self.conn.commit()
        prefs = await self.get_preferences(username)
        assert prefs is not None  # noqa: S101
        return prefs

    # -- aggregate ------------------------------------------------------------------------

    async def load_annotations(self, username: str) -> AnnotationSnapshot:
        """Read every annotation category for *username*."""
        prefs = await self.get_preferences(username)
        return AnnotationSnapshot(
            purge_tags=await self.list_purge_tags(username),
            sessions=await self.list_sessions(username),
            play_history=await self.list_last_played(username),
            priorities=await self.list_want_priorities(username),
            preferences=[prefs] if prefs else [],
        )

    async def wipe_user(self, username: str) -> None:
        """Delete every row belonging to *username*, account record included."""
        for table in _USER_TABLES:
            await self.conn.execute(f"DELETE FROM {table} WHERE username = ?", (username,))  # noqa: S608
        await self.conn.execute("DELETE FROM users WHERE username = ?", (username,))
        await self.conn.commit()

    # -- row → model helpers ----------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: aiosqlite.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            username=row["username"],
            avatar_url=row["avatar_url"],
            access_token=row["access_token"],
            token_secret=row["token_secret"],
            created_at=row["created_at"],
            last_synced_at=row["last_synced_at"],
        )

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRow:
        return SessionRow(
            username=row["username"],
            session_id=row["session_id"],
            name=row["name"],
            release_ids=json.loads(row["release_ids"]),
            created_at=row["created_at"],
            last_modified=row["last_modified"],
        )

"""Tests for the grailsync storage layer."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from grailsync.storage import Database, KeyValueStore, SessionNotFoundError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_connect_creates_tables(db: Database):
    cur = await db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in await cur.fetchall()}
    assert tables >= {"users", "purge_tags", "sessions", "last_played", "want_priorities", "preferences"}


def test_conn_before_connect_raises(tmp_path):
    with pytest.raises(RuntimeError, match="not connected"):
        _ = Database(tmp_path / "x.db").conn


# ---------------------------------------------------------------------------
# users
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_upsert_user_insert_then_update(db: Database):
    first = await db.upsert_user(username="digger", access_token="a1", token_secret="s1")
    second = await db.upsert_user(username="digger", access_token="a2", token_secret="s2", avatar_url="http://a")

    assert second.id == first.id
    assert second.access_token == "a2"
    assert second.avatar_url == "http://a"
    assert second.last_synced_at is None


@pytest.mark.asyncio()
async def test_get_user_missing(db: Database):
    assert await db.get_user("nobody") is None


@pytest.mark.asyncio()
async def test_update_last_synced(db: Database):
    await db.upsert_user(username="digger", access_token="a", token_secret="s")
    await db.update_last_synced("digger")

    user = await db.get_user("digger")
    assert user is not None
    assert user.last_synced_at is not None


@pytest.mark.asyncio()
async def test_clear_user(db: Database):
    await db.upsert_user(username="digger", access_token="a", token_secret="s")
    await db.clear_user("digger")
    assert await db.get_user("digger") is None


# ---------------------------------------------------------------------------
# purge tags
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_purge_tag_upsert_overwrites(db: Database):
    await db.upsert_purge_tag("digger", 101, "keep")
    await db.upsert_purge_tag("digger", 101, "cut")
    await db.upsert_purge_tag("other", 101, "maybe")

    rows = await db.list_purge_tags("digger")
    assert [(r.release_id, r.tag) for r in rows] == [(101, "cut")]


@pytest.mark.asyncio()
async def test_remove_purge_tag(db: Database):
    await db.upsert_purge_tag("digger", 101, "keep")
    await db.remove_purge_tag("digger", 101)
    assert await db.list_purge_tags("digger") == []


# ---------------------------------------------------------------------------
# sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_create_and_list_sessions(db: Database):
    await db.create_session("digger", "s1", "Sunday", [101, 102])
    rows = await db.list_sessions("digger")

    assert len(rows) == 1
    assert rows[0].session_id == "s1"
    assert rows[0].release_ids == [101, 102]


@pytest.mark.asyncio()
async def test_update_session_rename_keeps_last_modified(db: Database):
    created = await db.create_session("digger", "s1", "Sunday", [101])
    renamed = await db.update_session("digger", "s1", name="Monday")

    assert renamed.name == "Monday"
    assert renamed.last_modified == created.last_modified


@pytest.mark.asyncio()
async def test_update_session_membership_moves_last_modified(db: Database):
    created = await db.create_session("digger", "s1", "Sunday", [101])
    updated = await db.update_session("digger", "s1", release_ids=[102, 101])

    assert updated.release_ids == [102, 101]
    assert updated.last_modified >= created.last_modified


@pytest.mark.asyncio()
async def test_update_missing_session_raises(db: Database):
    with pytest.raises(SessionNotFoundError):
        await db.update_session("digger", "nope", name="x")


@pytest.mark.asyncio()
async def test_remove_session(db: Database):
    await db.create_session("digger", "s1", "Sunday", [])
    await db.remove_session("digger", "s1")
    assert await db.list_sessions("digger") == []


# ---------------------------------------------------------------------------
# last played / priorities / preferences
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_last_played_upsert(db: Database):
    early = datetime(2024, 1, 1, tzinfo=UTC)
    late = datetime(2024, 6, 1, tzinfo=UTC)
    await db.upsert_last_played("digger", 101, early)
    await db.upsert_last_played("digger", 101, late)

    rows = await db.list_last_played("digger")
    assert len(rows) == 1
    assert rows[0].played_at == late


@pytest.mark.asyncio()
async def test_want_priority_upsert(db: Database):
    await db.upsert_want_priority("digger", 901, True)
    await db.upsert_want_priority("digger", 902, False)
    await db.upsert_want_priority("digger", 902, True)

    rows = await db.list_want_priorities("digger")
    assert {(r.release_id, r.is_priority) for r in rows} == {(901, True), (902, True)}


@pytest.mark.asyncio()
async def test_preferences_patch_only_given_fields(db: Database):
    assert await db.get_preferences("digger") is None

    prefs = await db.upsert_preferences("digger", theme="dark")
    assert prefs.theme == "dark"
    assert prefs.hide_purge_indicators is False

    prefs = await db.upsert_preferences("digger", hide_gallery_meta=True)
    assert prefs.theme == "dark"
    assert prefs.hide_gallery_meta is True


# ---------------------------------------------------------------------------
# aggregates
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_load_annotations_resolves_every_category(db: Database):
    snap = await db.load_annotations("digger")

    assert snap.purge_tags == []
    assert snap.sessions == []
    assert snap.play_history == []
    assert snap.priorities == []
    assert snap.preferences == []


@pytest.mark.asyncio()
async def test_wipe_user_only_touches_that_user(db: Database):
    await db.upsert_user(username="digger", access_token="a", token_secret="s")
    await db.upsert_purge_tag("digger", 101, "keep")
    await db.create_session("digger", "s1", "Sunday", [101])
    await db.upsert_preferences("digger", theme="light")
    await db.upsert_purge_tag("other", 101, "cut")

    await db.wipe_user("digger")

    snap = await db.load_annotations("digger")
    assert snap.purge_tags == []
    assert snap.sessions == []
    assert snap.preferences == []
    assert await db.get_user("digger") is None
    assert len(await db.list_purge_tags("other")) == 1


# ---------------------------------------------------------------------------
# KeyValueStore
# ---------------------------------------------------------------------------


def test_kv_set_get_delete(tmp_path):
    kv = KeyValueStore(tmp_path / "kv.json")
    assert kv.get("missing", 1) == 1

    kv.set("a", {"x": 1})
    kv.set("b", [1, 2])
    assert KeyValueStore(tmp_path / "kv.json").get("a") == {"x": 1}

    kv.delete("a")
    assert kv.get("a") is None
    assert kv.get("b") == [1, 2]


def test_kv_clear_removes_file(tmp_path):
    path = tmp_path / "kv.json"
    kv = KeyValueStore(path)
    kv.set("a", 1)
    kv.clear()
    assert not path.exists()
    assert kv.get("a") is None


def test_kv_corrupt_file_reads_empty(tmp_path):
    path = tmp_path / "kv.json"
    path.write_text("{not json")
    assert KeyValueStore(path).get("a") is None

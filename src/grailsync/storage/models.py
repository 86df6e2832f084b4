"""Pydantic row models for the persisted annotation store."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from grailsync.models import PurgeTag, Theme


class UserRecord(BaseModel):
    """Account record holding the delegated credential pair."""

    id: int | None = None
    username: str
    avatar_url: str = ""
    access_token: str
    token_secret: str
    created_at: datetime | None = None
    last_synced_at: datetime | None = None


class PurgeTagRow(BaseModel):
    username: str
    release_id: int
    tag: PurgeTag
    tagged_at: datetime | None = None


class SessionRow(BaseModel):
    username: str
    session_id: str
    name: str
    release_ids: list[int] = Field(default_factory=list)
    created_at: datetime
    last_modified: datetime


class PlayRow(BaseModel):
    username: str
    release_id: int
    played_at: datetime


class PriorityRow(BaseModel):
    username: str
    release_id: int
    is_priority: bool


class PreferencesRow(BaseModel):
    username: str
    theme: Theme = "system"
    hide_purge_indicators: bool = False
    hide_gallery_meta: bool = False


class AnnotationSnapshot(BaseModel):
    """Latest persisted-store reads per category.

    ``None`` means the read for that category has not resolved yet; an empty
    list means it resolved with no rows.
    """

    purge_tags: list[PurgeTagRow] | None = None
    sessions: list[SessionRow] | None = None
    play_history: list[PlayRow] | None = None
    priorities: list[PriorityRow] | None = None
    preferences: list[PreferencesRow] | None = None

"""One-shot merge of persisted annotations into freshly loaded local state.

Each annotation category runs through the same two-state reducer
(:func:`hydration_step`). A category hydrates once per session, as soon as
its store read has resolved and the local list it attaches to is non-empty.
After that, user edits reach local state through the direct mutation paths
and are never re-merged.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, TypeVar

import structlog
from pydantic import BaseModel

from grailsync.models import CollectionItem, Preferences, Session

if TYPE_CHECKING:
    from grailsync.state import LibraryState
    from grailsync.storage.models import PlayRow, PreferencesRow, PriorityRow, PurgeTagRow, SessionRow

log = structlog.get_logger(__name__)

ItemT = TypeVar("ItemT", bound=BaseModel)


class HydrationCategory(StrEnum):
    RATINGS = "ratings"
    SESSIONS = "sessions"
    PLAY_HISTORY = "play_history"
    PRIORITIES = "priorities"
    PREFERENCES = "preferences"


class HydrationStatus(StrEnum):
    PENDING = "pending"
    HYDRATED = "hydrated"


def hydration_step(
    status: HydrationStatus,
    *,
    store_resolved: bool,
    target_nonempty: bool,
) -> HydrationStatus:
    """Advance one category. ``HYDRATED`` is absorbing."""
    if status is HydrationStatus.HYDRATED:
        return status
    if store_resolved and target_nonempty:
        return HydrationStatus.HYDRATED
    return HydrationStatus.PENDING


# ---------------------------------------------------------------------------
# Merge functions (shared by the sync path and the reconciler)
# ---------------------------------------------------------------------------


def merge_annotations(items: list[ItemT], annotations: Mapping[int, object], field: str) -> list[ItemT]:
    """Set *field* on every item whose ``release_id`` has an annotation.

    Items without an annotation are returned untouched, so merging the same
    annotations twice yields the same list as merging once.
    """
    return [
        item.model_copy(update={field: annotations[item.release_id]})  # type: ignore[attr-defined]
        if item.release_id in annotations  # type: ignore[attr-defined]
        else item
        for item in items
    ]


def purge_tag_index(rows: Iterable[PurgeTagRow]) -> dict[int, str]:
    return {r.release_id: r.tag for r in rows}


def priority_index(rows: Iterable[PriorityRow]) -> dict[int, bool]:
    return {r.release_id: r.is_priority for r in rows}


def merge_play_history(
    items: list[CollectionItem],
    rows: Iterable[PlayRow],
    current: Mapping[str, datetime],
) -> dict[str, datetime]:
    """Fold stored play timestamps into *current*, keyed by local item id.

    Rows for releases not in the collection are ignored; when both sides
    know a play, the later timestamp wins.
    """
    by_release = {item.release_id: item.id for item in items}
    merged = dict(current)
    for row in rows:
        item_id = by_release.get(row.release_id)
        if item_id is None:
            continue
        known = merged.get(item_id)
        if known is None or row.played_at > known:
            merged[item_id] = row.played_at
    return merged


def sessions_from_rows(rows: Iterable[SessionRow]) -> list[Session]:
    return [
        Session(
            id=r.session_id,
            name=r.name,
            item_ids=[str(rid) for rid in r.release_ids],
            created_at=r.created_at,
            last_modified=r.last_modified,
        )
        for r in rows
    ]


def merge_sessions(local: list[Session], rows: Iterable[SessionRow]) -> list[Session]:
    """Stored sessions first, then local-only sessions that are not stored yet."""
    stored = sessions_from_rows(rows)
    stored_ids = {s.id for s in stored}
    return stored + [s for s in local if s.id not in stored_ids]


def preferences_from_rows(rows: list[PreferencesRow], current: Preferences) -> Preferences:
    if not rows:
        return current
    row = rows[0]
    return Preferences(
        theme=row.theme,
        hide_purge_indicators=row.hide_purge_indicators,
        hide_gallery_meta=row.hide_gallery_meta,
    )


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class HydrationReconciler:
    """Tracks per-category hydration and applies each merge exactly once."""

    def __init__(self, state: LibraryState) -> None:
        self._state = state
        self._status = {c: HydrationStatus.PENDING for c in HydrationCategory}

    def status(self, category: HydrationCategory) -> HydrationStatus:
        return self._status[category]

    def is_hydrated(self, category: HydrationCategory) -> bool:
        return self._status[category] is HydrationStatus.HYDRATED

    def mark_hydrated(self, category: HydrationCategory) -> None:
        """Record that another path (a sync pass) already merged *category*."""
        self._status[category] = HydrationStatus.HYDRATED

    def reset(self) -> None:
        """Back to all-pending; used on sign-out, wipe and account switch."""
        self._status = {c: HydrationStatus.PENDING for c in HydrationCategory}

    def _rows(self, category: HydrationCategory) -> list | None:
        snap = self._state.annotations
        return {
            HydrationCategory.RATINGS: snap.purge_tags,
            HydrationCategory.SESSIONS: snap.sessions,
            HydrationCategory.PLAY_HISTORY: snap.play_history,
            HydrationCategory.PRIORITIES: snap.priorities,
            HydrationCategory.PREFERENCES: snap.preferences,
        }[category]

    def _target_nonempty(self, category: HydrationCategory) -> bool:
        if category is HydrationCategory.PRIORITIES:
            return bool(self._state.wants)
        if category is HydrationCategory.PREFERENCES:
            return True
        return bool(self._state.items)

    def _apply(self, category: HydrationCategory, rows: list) -> None:
        state = self._state
        if category is HydrationCategory.RATINGS:
            state.items = merge_annotations(state.items, purge_tag_index(rows), "purge_tag")
        elif category is HydrationCategory.PRIORITIES:
            state.wants = merge_annotations(state.wants, priority_index(rows), "priority")
        elif category is HydrationCategory.PLAY_HISTORY:
            state.play_history = merge_play_history(state.items, rows, state.play_history)
        elif category is HydrationCategory.SESSIONS:
            state.sessions = merge_sessions(state.sessions, rows)
        else:
            state.preferences = preferences_from_rows(rows, state.preferences)

    def reconcile(self) -> list[HydrationCategory]:
        """Hydrate every category whose inputs are now ready; return those merged."""
        hydrated: list[HydrationCategory] = []
        for category in HydrationCategory:
            current = self._status[category]
            rows = self._rows(category)
            nxt = hydration_step(
                current,
                store_resolved=rows is not None,
                target_nonempty=self._target_nonempty(category),
            )
            if current is HydrationStatus.PENDING and nxt is HydrationStatus.HYDRATED:
                self._apply(category, rows or [])
                hydrated.append(category)
            self._status[category] = nxt
        if hydrated:
            log.info("hydrated", categories=[c.value for c in hydrated])
        return hydrated

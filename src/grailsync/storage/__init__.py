"""grailsync storage layer: persisted annotation store and local key-value storage."""

from grailsync.storage.database import Database, SessionNotFoundError
from grailsync.storage.kv import KeyValueStore
from grailsync.storage.models import (
    AnnotationSnapshot,
    PlayRow,
    PreferencesRow,
    PriorityRow,
    PurgeTagRow,
    SessionRow,
    UserRecord,
)

__all__ = [
    "AnnotationSnapshot",
    "Database",
    "KeyValueStore",
    "PlayRow",
    "PreferencesRow",
    "PriorityRow",
    "PurgeTagRow",
    "SessionNotFoundError",
    "SessionRow",
    "UserRecord",
]

"""Storage infrastructure - finished trip persistence."""

from .session_store import (
    DEFAULT_STORAGE_KEY,
    MemorySessionStore,
    SessionStore,
    SqliteSessionStore,
    dump_records,
    load_records,
)

__all__ = [
    "DEFAULT_STORAGE_KEY",
    "MemorySessionStore",
    "SessionStore",
    "SqliteSessionStore",
    "dump_records",
    "load_records",
]

from tabchat.storage.base import KeyValueStore, StorageError, StorageQuotaExceededError
from tabchat.storage.memory_store import InMemoryStore
from tabchat.storage.sqlite_store import SqliteStore

__all__ = [
    "InMemoryStore",
    "KeyValueStore",
    "SqliteStore",
    "StorageError",
    "StorageQuotaExceededError",
]

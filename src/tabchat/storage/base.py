from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


class StorageError(RuntimeError):
    pass


class StorageQuotaExceededError(StorageError):
    pass


@runtime_checkable
class KeyValueStore(Protocol):
    """Whole-record storage. Values are JSON-compatible and replaced wholesale."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def keys(self, prefix: str = "") -> list[str]: ...

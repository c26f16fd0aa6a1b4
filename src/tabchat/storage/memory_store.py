from __future__ import annotations

import copy
import json
from typing import Any

from tabchat.storage.base import StorageError, StorageQuotaExceededError


class InMemoryStore:
    """Dict-backed store. ``quota_bytes`` bounds the serialised size of all values (0 = unlimited)."""

    def __init__(self, quota_bytes: int = 0):
        self._quota_bytes = max(0, quota_bytes)
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(copy.deepcopy(value), ensure_ascii=True)
        except (TypeError, ValueError) as ex:
            raise StorageError(f"Value for {key!r} is not serialisable: {ex}") from ex

        if self._quota_bytes:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(raw) > self._quota_bytes:
                raise StorageQuotaExceededError(
                    f"Storage quota exceeded writing {key!r}: "
                    f"{used + len(raw)} > {self._quota_bytes} bytes"
                )
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

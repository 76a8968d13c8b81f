import time
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass
class _Entry:
    value: Any
    expires_at: float


class QueryCache:
    """
    Short-lived read-through cache for list queries.

    Keys look like ``"<entity>:<user_id>:<filter>..."`` so a mutation can drop
    every cached list of one entity for one owner with a single prefix.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        lifetime = self.ttl_seconds if ttl is None else ttl
        self._entries[key] = _Entry(value=value, expires_at=self._clock() + lifetime)

    def invalidate(self, prefix: str) -> int:
        stale = [key for key in self._entries if key.startswith(prefix)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def owner_prefix(entity: str, user_id: int) -> str:
    return f"{entity}:{user_id}:"


def cache_key(entity: str, user_id: int, *parts: object) -> str:
    rendered = ["all" if part is None else str(part) for part in parts]
    return owner_prefix(entity, user_id) + ":".join(rendered)

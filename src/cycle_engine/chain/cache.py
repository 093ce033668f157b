"""Short-lived cache for contract view reads."""
from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Hashable


class ReadCache:
    """
    TTL cache with a bypass window.

    After a submission every read goes to the node for ``bypass_window``
    seconds so the caller never acts on state from before its own write.
    """

    def __init__(
        self,
        ttl: float = 3.0,
        bypass_window: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.bypass_window = bypass_window
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}
        self._bypass_until = 0.0
        self.hits = 0
        self.misses = 0

    @property
    def bypassing(self) -> bool:
        return self._clock() < self._bypass_until

    def get(self, key: Hashable) -> tuple[bool, Any]:
        if self.bypassing or self.ttl <= 0:
            return False, None
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        stored_at, value = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return False, None
        return True, value

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def note_submission(self) -> None:
        """Start a bypass window and drop everything cached."""
        self._entries.clear()
        self._bypass_until = self._clock() + self.bypass_window

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        hit, value = self.get(key)
        if hit:
            self.hits += 1
            return value
        self.misses += 1
        value = await loader()
        self.put(key, value)
        return value

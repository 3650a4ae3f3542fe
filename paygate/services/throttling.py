"""In-memory TTL cache, per-key sliding-window rate limiter and a volume circuit breaker.

All three are owned by an ``AccessGate`` instance and live for the app's
lifespan; nothing here is module-level state. Time comes from an injectable
monotonic clock so tests can move it.
"""

import enum
import logging
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class TTLCache:
    """Bounded LRU cache whose entries expire after a per-entry TTL.

    Expired entries stay readable through ``get_stale`` until evicted, so a
    caller can fall back to the last known value.
    """

    def __init__(self, max_entries: int = 10_000, clock: Clock = time.monotonic):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None or entry.expires_at <= self._clock():
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def get_stale(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def set(self, key: Hashable, value: Any, ttl: float) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def pop(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SlidingWindowRateLimiter:
    """Allow at most ``limit`` calls per key within a rolling ``window`` seconds."""

    def __init__(self, limit: int, window: float, max_keys: int = 10_000, clock: Clock = time.monotonic):
        self.limit = limit
        self.window = window
        self.max_keys = max_keys
        self._clock = clock
        self._hits: OrderedDict[Hashable, deque[float]] = OrderedDict()

    def allow(self, key: Hashable) -> bool:
        now = self._clock()
        hits = self._hits.get(key)
        if hits is None:
            hits = deque()
            self._hits[key] = hits
        self._hits.move_to_end(key)
        while hits and hits[0] <= now - self.window:
            hits.popleft()
        while len(self._hits) > self.max_keys:
            self._hits.popitem(last=False)
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True

    def reset(self, key: Hashable | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"


class VolumeCircuitBreaker:
    """Opens when total call volume in a rolling window exceeds a threshold.

    While open every call is refused until ``cooldown`` seconds have passed;
    the breaker then closes with an empty window.
    """

    def __init__(self, threshold: int, window: float, cooldown: float, clock: Clock = time.monotonic):
        self.threshold = threshold
        self.window = window
        self.cooldown = cooldown
        self._clock = clock
        self._calls: deque[float] = deque()
        self._opened_until = 0.0
        self.state = CircuitState.CLOSED

    def allow(self) -> bool:
        now = self._clock()
        if self.state is CircuitState.OPEN:
            if now < self._opened_until:
                return False
            self._transition(CircuitState.CLOSED)
            self._calls.clear()

        while self._calls and self._calls[0] <= now - self.window:
            self._calls.popleft()
        self._calls.append(now)
        if len(self._calls) > self.threshold:
            self._opened_until = now + self.cooldown
            self._transition(CircuitState.OPEN, f"{len(self._calls)} calls in {self.window:.0f}s")
            return False
        return True

    def retry_after(self) -> int:
        """Seconds until the breaker closes (at least 1)."""
        if self.state is not CircuitState.OPEN:
            return 0
        return max(1, int(self._opened_until - self._clock() + 0.999))

    def _transition(self, new_state: CircuitState, reason: str = "") -> None:
        if new_state is self.state:
            return
        logger.warning("Access circuit %s -> %s %s", self.state.value, new_state.value, reason)
        self.state = new_state

    def reset(self) -> None:
        self._calls.clear()
        self._opened_until = 0.0
        self.state = CircuitState.CLOSED

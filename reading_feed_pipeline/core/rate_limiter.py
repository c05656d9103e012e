"""
Time-based gating helpers.

- RefreshRateLimiter: decides whether a key (usually a reading feed) is due
  for another refresh, remembering the last refresh per key.
- RequestThrottle: spaces out calls to a remote API by a minimum interval.

Both take an injectable clock so they can be driven by a fake one in tests.
"""

import logging
import threading
import time
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def current_time_ms() -> int:
    """Wall-clock time in UTC epoch milliseconds."""
    return int(time.time() * 1000)


class RefreshStore(Protocol):
    def get_last_refresh(self, key: str) -> Optional[int]: ...

    def set_last_refresh(self, key: str, timestamp: int) -> None: ...


class RefreshRateLimiter:
    """Remember when each key was last refreshed and gate new refreshes."""

    def __init__(self, clock: Clock = current_time_ms, store: Optional[RefreshStore] = None) -> None:
        self.clock = clock
        self.store = store
        self._last_refresh: dict[str, int] = {}

    def _lookup(self, key: str) -> Optional[int]:
        if self.store is not None:
            return self.store.get_last_refresh(key)
        return self._last_refresh.get(key)

    def get_last_refresh(self, key: str) -> int:
        return self._lookup(key) or 0

    def mark_refreshed(self, key: str, timestamp: Optional[int] = None) -> None:
        timestamp = self.clock() if timestamp is None else timestamp
        if self.store is not None:
            self.store.set_last_refresh(key, timestamp)
        else:
            self._last_refresh[key] = timestamp

    def should_refresh(self, key: str, interval_minutes: int) -> bool:
        """True when the key was never refreshed or at least ``interval_minutes``
        whole minutes passed since its last refresh."""
        last_refresh = self._lookup(key)
        if last_refresh is None:
            return True
        elapsed_minutes = (self.clock() - last_refresh) // 60_000
        return elapsed_minutes >= interval_minutes


class RequestThrottle:
    """Enforce a minimum delay between consecutive remote requests."""

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Clock = current_time_ms,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval_ms = int(min_interval_seconds * 1000)
        self.clock = clock
        self.sleep = sleep
        self._last_request = 0
        self._lock = threading.Lock()

    def wait(self) -> None:
        """Block until the next request may be sent, then claim the slot."""
        with self._lock:
            elapsed = self.clock() - self._last_request
            if self._last_request > 0 and elapsed < self.min_interval_ms:
                wait_ms = self.min_interval_ms - elapsed
                logger.debug("Rate limiting: waiting %dms before next request", wait_ms)
                self.sleep(wait_ms / 1000)
            self._last_request = self.clock()

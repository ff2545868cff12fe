# theme_guard/services/kv_store.py
"""
TTL key-value store contract shared by the rate limiter and the sessions.

Backends raise StoreUnavailableError when they cannot be reached; an absent
key is reported as None / False, never as an exception.
"""
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from theme_guard.core.exceptions import store_error


class KVStore(ABC):
    """Expiring byte storage with an atomic counter primitive"""

    name = "KVStore"

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the stored bytes or None when the key is absent or expired"""

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        """Store bytes with a TTL in seconds; returns True when written"""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key; returns True when something was deleted"""

    @abstractmethod
    async def touch(self, key: str, ttl: int) -> bool:
        """Restart the TTL of an existing key without rewriting it; False when absent"""

    @abstractmethod
    async def atomic_increment(self, key: str, ttl: float, amount: int = 1) -> int:
        """
        Increment an integer counter as a single atomic operation.

        A counter that does not exist yet starts at 0 and receives the TTL
        (fractional seconds allowed, millisecond resolution); incrementing an
        existing counter leaves its expiry untouched.

        Returns:
            The counter value after the increment
        """


@dataclass
class _Entry:
    value: bytes
    expires_at: float


class InMemoryKVStore(KVStore):
    """
    Process-local store for tests and single-worker deployments.

    Expiry is evaluated lazily against the injected clock, so tests can move
    time forward without sleeping.
    """

    name = "InMemoryKVStore"

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.RLock()
        self._data: Dict[str, _Entry] = {}
        self.available = True

    def _check_available(self, key: str, operation: str) -> None:
        if not self.available:
            raise store_error("In-memory store marked unavailable", key=key, operation=operation, store=self.name)

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[bytes]:
        self._check_available(key, "get")
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    async def set(self, key: str, value: bytes, ttl: int) -> bool:
        self._check_available(key, "set")
        if ttl <= 0:
            return False
        with self._lock:
            self._data[key] = _Entry(value=bytes(value), expires_at=self._clock() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        self._check_available(key, "delete")
        with self._lock:
            return self._data.pop(key, None) is not None

    async def touch(self, key: str, ttl: int) -> bool:
        self._check_available(key, "touch")
        if ttl <= 0:
            return False
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + ttl
            return True

    async def atomic_increment(self, key: str, ttl: float, amount: int = 1) -> int:
        self._check_available(key, "atomic_increment")
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                entry = _Entry(value=b"0", expires_at=self._clock() + ttl)
                self._data[key] = entry
            count = int(entry.value) + amount
            entry.value = str(count).encode()
            return count

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until expiry, None when absent (test helper)"""
        with self._lock:
            entry = self._live_entry(key)
            return entry.expires_at - self._clock() if entry else None

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live_entry(key))

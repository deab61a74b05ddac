import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, Tuple

from relay.models import CacheEntry

_MAX_AGE_RE = re.compile(r"(?:^|[,\s])max-age\s*=", re.IGNORECASE)


def is_cacheable(status_code: int, headers: Iterable[Tuple[str, str]]) -> bool:
    """Successful image responses and anything carrying a max-age directive."""
    if status_code != 200:
        return False
    for name, value in headers:
        name = name.lower()
        if name == "content-type" and value.lower().startswith("image/"):
            return True
        if name == "cache-control" and _MAX_AGE_RE.search(value):
            return True
    return False


class ResponseCacheBase(ABC):
    @abstractmethod
    def get(self, url: str) -> CacheEntry | None:
        pass

    @abstractmethod
    def store(
        self,
        url: str,
        status_code: int,
        headers: Iterable[Tuple[str, str]],
        body: bytes,
    ) -> CacheEntry:
        pass


def response_cache(enabled: bool = True, ttl: float = 3600) -> ResponseCacheBase:
    if enabled:
        return InMemoryResponseCache(ttl=ttl)
    return NullResponseCache()


class InMemoryResponseCache(ResponseCacheBase):
    """
    TTL cache keyed by the absolute URL. Expired entries are evicted lazily
    on the next lookup. Safe to share between concurrent requests.
    """

    def __init__(self, ttl: float = 3600, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, url: str) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            if self._clock() - entry.inserted_at >= self.ttl:
                del self._entries[url]
                return None
            return entry

    def store(
        self,
        url: str,
        status_code: int,
        headers: Iterable[Tuple[str, str]],
        body: bytes,
    ) -> CacheEntry:
        entry = CacheEntry(
            status_code=status_code,
            headers=tuple(headers),
            body=body,
            inserted_at=self._clock(),
        )
        with self._lock:
            self._entries[url] = entry
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class NullResponseCache(ResponseCacheBase):
    """Used when FETCH_CACHE_ENABLED is off: every lookup misses."""

    def get(self, url: str) -> CacheEntry | None:
        return None

    def store(
        self,
        url: str,
        status_code: int,
        headers: Iterable[Tuple[str, str]],
        body: bytes,
    ) -> CacheEntry:
        return CacheEntry(
            status_code=status_code,
            headers=tuple(headers),
            body=body,
            inserted_at=time.monotonic(),
        )

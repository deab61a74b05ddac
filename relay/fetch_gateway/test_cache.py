import threading

import pytest

from relay.fetch_gateway.cache import (
    InMemoryResponseCache,
    NullResponseCache,
    is_cacheable,
    response_cache,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InMemoryResponseCache(ttl=3600, clock=clock)


URL = "https://fonts.gstatic.com/s/kavoon/v1/a.woff2"


def test_store_and_get(cache, clock):
    stored = cache.store(URL, 200, [("content-type", "font/woff2")], b"font")

    entry = cache.get(URL)

    assert entry is stored
    assert entry.body == b"font"
    assert entry.headers == (("content-type", "font/woff2"),)
    assert entry.inserted_at == clock.now


def test_miss(cache):
    assert cache.get(URL) is None


def test_entry_expires_after_ttl(cache, clock):
    cache.store(URL, 200, [], b"font")

    clock.now += 3599
    assert cache.get(URL) is not None

    clock.now += 1
    assert cache.get(URL) is None
    assert len(cache) == 0


def test_keyed_by_full_url(cache):
    cache.store(URL + "?v=1", 200, [], b"one")
    assert cache.get(URL + "?v=2") is None
    assert cache.get(URL + "?v=1").body == b"one"


def test_concurrent_inserts(cache):
    def insert(n):
        for i in range(200):
            cache.store(f"{URL}?n={n}&i={i}", 200, [], b"x")
            cache.get(f"{URL}?n={n}&i={i}")

    threads = [threading.Thread(target=insert, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 8 * 200


def test_null_cache_never_hits():
    cache = NullResponseCache()
    cache.store(URL, 200, [], b"font")
    assert cache.get(URL) is None


def test_factory():
    assert isinstance(response_cache(enabled=True, ttl=5), InMemoryResponseCache)
    assert response_cache(enabled=True, ttl=5).ttl == 5
    assert isinstance(response_cache(enabled=False), NullResponseCache)


@pytest.mark.parametrize(
    "status, headers, expected",
    [
        (200, [("content-type", "image/png")], True),
        (200, [("Content-Type", "IMAGE/svg+xml")], True),
        (200, [("cache-control", "public, max-age=31536000")], True),
        (200, [("cache-control", "max-age=0")], True),
        (200, [("content-type", "text/css")], False),
        (200, [("cache-control", "no-cache, s-maxage=60")], False),
        (404, [("content-type", "image/png")], False),
        (302, [("cache-control", "max-age=60")], False),
    ],
)
def test_is_cacheable(status, headers, expected):
    assert is_cacheable(status, headers) is expected

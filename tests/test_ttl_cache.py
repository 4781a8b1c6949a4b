import pytest

from src.athrean.infrastructure.ttl_cache import TTLCache


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    clock.now = 9.9
    assert cache.get("a") == 1
    clock.now = 10.0
    assert cache.get("a") is None
    assert len(cache) == 0


def test_touch_extends_expiry():
    clock = Clock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("a", 1)
    clock.now = 8
    assert cache.touch("a")
    clock.now = 15
    assert cache.has("a")
    assert not cache.touch("missing")


def test_capacity_evicts_oldest_entry():
    cache = TTLCache(ttl_seconds=60, max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)  # rewrite moves "a" to the newest slot
    cache.set("c", 3)
    assert cache.keys() == ["a", "c"]


def test_evict_expired_counts_removed():
    clock = Clock()
    cache = TTLCache(ttl_seconds=5, clock=clock)
    cache.set("a", 1)
    clock.now = 3
    cache.set("b", 2)
    clock.now = 6
    assert cache.evict_expired() == 1
    assert cache.keys() == ["b"]


def test_delete_and_clear():
    cache = TTLCache(ttl_seconds=5)
    cache.set("a", 1)
    assert cache.delete("a")
    assert not cache.delete("a")
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0


def test_dispose_stops_sweeper_and_rejects_writes():
    cache = TTLCache(ttl_seconds=5, eviction_interval=0.01)
    cache.start()
    cache.set("a", 1)
    cache.dispose()
    assert cache.disposed
    assert len(cache) == 0
    with pytest.raises(RuntimeError):
        cache.set("b", 2)
    with pytest.raises(RuntimeError):
        cache.start()


@pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"max_entries": 0}])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValueError):
        TTLCache(**kwargs)

"""Unit tests for ResultCache — bounded FIFO of temporal slices."""

from __future__ import annotations

import pytest

from layersync.timeline.cache import ResultCache
from tests.layersync.fakes import make_collection

pytestmark = pytest.mark.unit


def _keys(n: int) -> list[str]:
    return [f"2024-{m:02d}-15" for m in range(1, n + 1)]


class TestResultCache:
    def test_miss(self):
        cache = ResultCache()
        assert cache.get("2024-01-15") is None
        assert cache.lookup("2024-01-15").hit is False
        assert "2024-01-15" not in cache

    def test_put_then_get(self):
        cache = ResultCache()
        fc = make_collection(2)
        cache.put("2024-01-15", fc)
        assert cache.get("2024-01-15") is fc
        assert cache.lookup("2024-01-15") == (True, fc)

    def test_empty_collection_is_a_hit(self):
        cache = ResultCache()
        cache.put("2024-01-15", make_collection(0))
        assert cache.lookup("2024-01-15").hit is True

    def test_eleventh_insert_evicts_the_first(self):
        cache = ResultCache(capacity=10)
        keys = _keys(11)
        for key in keys:
            cache.put(key, make_collection(1, prefix=key))
        assert len(cache) == 10
        assert keys[0] not in cache
        assert cache.keys() == keys[1:]

    def test_reads_do_not_refresh_age(self):
        cache = ResultCache(capacity=3)
        a, b, c, d = _keys(4)
        for key in (a, b, c):
            cache.put(key, make_collection(1))
        cache.get(a)
        cache.lookup(a)
        cache.put(d, make_collection(1))
        assert a not in cache
        assert cache.keys() == [b, c, d]

    def test_reput_replaces_value_but_keeps_position(self):
        cache = ResultCache(capacity=3)
        a, b, c, d = _keys(4)
        for key in (a, b, c):
            cache.put(key, make_collection(1))
        first_entry = cache.entry(a)
        newer = make_collection(5)
        cache.put(a, newer)
        assert cache.get(a) is newer
        assert cache.entry(a) is not first_entry
        assert cache.keys() == [a, b, c]
        cache.put(d, make_collection(1))
        assert a not in cache

    def test_inserted_at_uses_clock(self):
        cache = ResultCache(clock=lambda: 123.0)
        cache.put("2024-01-15", make_collection(1))
        assert cache.entry("2024-01-15").inserted_at == 123.0

    def test_clear(self):
        cache = ResultCache()
        cache.put("2024-01-15", make_collection(1))
        cache.clear()
        assert len(cache) == 0
        assert cache.get("2024-01-15") is None

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ResultCache(capacity=0)

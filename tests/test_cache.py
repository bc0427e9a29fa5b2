"""
tests/test_cache.py — SnapshotCache Unit Tests
===============================================

TTL validity against an injected clock, skip_cache, and invalidation.
"""

from __future__ import annotations

import pytest

from rewardtrack.engine.cache import SnapshotCache


class TestSnapshotCache:
    @pytest.fixture
    def cache(self, clock):
        return SnapshotCache(ttl=60.0, clock=clock)

    def test_empty_cache_misses(self, cache):
        assert cache.get() is None
        assert cache.age() is None
        assert cache.is_valid() is False

    def test_hit_within_ttl(self, cache, clock):
        cache.store("snapshot")
        clock.advance(59.9)
        assert cache.get() == "snapshot"
        assert cache.age() == pytest.approx(59.9)

    def test_expires_exactly_at_ttl(self, cache, clock):
        """Valid iff now - timestamp < ttl (strict)."""
        cache.store("snapshot")
        clock.advance(60.0)
        assert cache.get() is None

    def test_skip_cache_forces_miss(self, cache):
        cache.store("snapshot")
        assert cache.get(skip_cache=True) is None
        # The entry itself is untouched
        assert cache.get() == "snapshot"

    def test_invalidate_clears_entry(self, cache):
        cache.store("snapshot")
        cache.invalidate()
        assert cache.entry.data is None
        assert cache.entry.timestamp == 0.0
        assert cache.get() is None

    def test_falsy_snapshots_are_cached(self, cache):
        """An empty tuple is a real snapshot, not a miss."""
        cache.store(())
        assert cache.get() == ()

    def test_negative_ttl_rejected(self, clock):
        with pytest.raises(ValueError):
            SnapshotCache(ttl=-1, clock=clock)

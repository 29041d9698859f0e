"""
npu-router :: Test Memory Manager

Tests for:
  - idle sessions past the TTL are evicted, recent ones kept
  - persistent names are never evicted
  - set_persistent / set_ttl at runtime
  - background sweep thread start / stop

Run:
    pytest tests/test_memory.py -v

INL - 2025
"""

import time
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from npu_router.engine.memory import MemoryManager
from npu_router.engine.pool import ModelPool

from fakes import model_config, spy_factory


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _setup(*names, ttl_s=300.0, persistent=("whisper", "phi")):
    sessions = {}
    pool = ModelPool({n: model_config(n) for n in names}, factory=spy_factory(sessions=sessions))
    clock = FakeClock()
    manager = MemoryManager(pool, ttl_s=ttl_s, persistent=persistent, clock=clock)
    for name in names:
        pool.ensure_loaded(name)
        manager.touch(name)
    return pool, manager, clock, sessions


# =========================================================================
# Sweep
# =========================================================================

class TestSweep:
    def test_stale_model_evicted(self):
        pool, manager, clock, sessions = _setup("phi", "llama")
        clock.advance(301)
        assert manager.sweep() == ["llama"]
        assert not pool.is_loaded("llama")
        assert sessions["llama"].closed
        assert "llama" not in manager.stats()["idle_seconds"]

    def test_persistent_never_evicted(self):
        pool, manager, clock, sessions = _setup("phi", "llama")
        clock.advance(10_000)
        manager.sweep()
        assert pool.is_loaded("phi")
        assert not sessions["phi"].closed

    def test_recent_use_kept(self):
        pool, manager, clock, _ = _setup("llama")
        clock.advance(200)
        manager.touch("llama")
        clock.advance(200)
        assert manager.sweep() == []
        assert pool.is_loaded("llama")

    def test_ttl_boundary_exclusive(self):
        pool, manager, clock, _ = _setup("llama")
        clock.advance(300)
        assert manager.sweep() == []
        clock.advance(0.5)
        assert manager.sweep() == ["llama"]

    def test_unknown_name_forgotten(self):
        pool, manager, clock, _ = _setup("llama")
        manager.touch("ghost")
        clock.advance(301)
        manager.sweep()
        assert "ghost" not in manager.stats()["idle_seconds"]

    def test_unloaded_entry_forgotten(self):
        pool, manager, clock, _ = _setup("llama")
        pool.evict("llama")
        clock.advance(301)
        assert manager.sweep() == []
        assert manager.stats()["idle_seconds"] == {}

    def test_in_flight_request_blocks_eviction_until_done(self):
        pool, manager, clock, sessions = _setup("llama")
        clock.advance(301)
        with pool.lease("llama"):
            # touched while holding the lease: the sweep re-checks and keeps it
            manager.touch("llama")
        assert manager.sweep() == []
        assert pool.is_loaded("llama")


# =========================================================================
# Runtime settings
# =========================================================================

class TestSettings:
    def test_set_persistent(self):
        pool, manager, clock, _ = _setup("llama", "phi")
        manager.set_persistent("llama", True)
        manager.set_persistent("phi", False)
        assert manager.is_persistent("llama")
        assert not manager.is_persistent("phi")
        clock.advance(301)
        assert manager.sweep() == ["phi"]
        assert pool.is_loaded("llama")

    def test_set_ttl(self):
        pool, manager, clock, _ = _setup("llama")
        manager.set_ttl(60)
        clock.advance(61)
        assert manager.sweep() == ["llama"]

    @pytest.mark.parametrize("ttl", [0, -5])
    def test_set_ttl_rejects(self, ttl):
        _, manager, _, _ = _setup("llama")
        with pytest.raises(ValueError):
            manager.set_ttl(ttl)
        assert manager.ttl_s == 300.0

    def test_stats(self):
        _, manager, clock, _ = _setup("phi", "llama")
        clock.advance(12)
        stats = manager.stats()
        assert sorted(stats["loaded_models"]) == ["llama", "phi"]
        assert stats["total_loaded"] == 2
        assert stats["idle_seconds"] == {"phi": 12.0, "llama": 12.0}
        assert stats["persistent"] == ["phi", "whisper"]
        assert stats["ttl_seconds"] == 300.0


# =========================================================================
# Background thread
# =========================================================================

class TestBackgroundThread:
    def test_sweeps_on_tick(self):
        sessions = {}
        pool = ModelPool({"llama": model_config("llama")}, factory=spy_factory(sessions=sessions))
        manager = MemoryManager(pool, ttl_s=0.05, persistent=(), tick_interval_s=0.02)
        pool.ensure_loaded("llama")
        manager.touch("llama")
        manager.start()
        try:
            assert manager.running
            deadline = time.monotonic() + 2
            while pool.is_loaded("llama") and time.monotonic() < deadline:
                time.sleep(0.02)
            assert not pool.is_loaded("llama")
            assert sessions["llama"].closed
        finally:
            manager.stop(1)
        assert not manager.running

    def test_stop_is_prompt(self):
        pool = ModelPool({}, factory=spy_factory())
        manager = MemoryManager(pool, tick_interval_s=30)
        manager.start()
        manager.start()
        start = time.monotonic()
        manager.stop(2)
        assert time.monotonic() - start < 1.0
        assert not manager.running


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

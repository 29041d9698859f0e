"""
npu-router :: Memory Manager

Unloads sessions that sat idle longer than the TTL.

  - touch(name) records the last use (monotonic clock)
  - a daemon thread sweeps every tick_interval_s until stop()
  - persistent names are never evicted
  - eviction goes through ModelPool.evict, which drains in-flight leases
    before closing the session

The usage lock is never held across pool.evict: an in-flight request may
call touch() while eviction waits for it.

INL - 2025
"""

import time
import threading
from typing import Callable, Dict, Iterable, List, Optional

from npu_router.core.logging import get_logger
from npu_router.engine.pool import ModelPool

logger = get_logger("npu_router.memory")


class MemoryManager:
    """Usage table plus background eviction loop."""

    def __init__(
        self,
        pool: ModelPool,
        ttl_s: float = 300.0,
        persistent: Iterable[str] = ("whisper", "phi"),
        tick_interval_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.ttl_s = ttl_s
        self.tick_interval_s = tick_interval_s
        self.clock = clock
        self._persistent = set(persistent)
        self._last_used: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =====================================================================
    # Usage table
    # =====================================================================

    def touch(self, name: str):
        with self._lock:
            self._last_used[name] = self.clock()

    def forget(self, name: str):
        with self._lock:
            self._last_used.pop(name, None)

    def set_persistent(self, name: str, persistent: bool):
        with self._lock:
            if persistent:
                self._persistent.add(name)
            else:
                self._persistent.discard(name)
        logger.info(f"{name}: persistent={persistent}")

    def is_persistent(self, name: str) -> bool:
        with self._lock:
            return name in self._persistent

    def set_ttl(self, seconds: float):
        if seconds <= 0:
            raise ValueError("ttl must be > 0")
        with self._lock:
            self.ttl_s = seconds
        logger.info(f"Idle TTL set to {seconds:.0f}s")

    def _is_stale(self, name: str, now: float) -> bool:
        """Caller holds the usage lock."""
        if name in self._persistent:
            return False
        last = self._last_used.get(name)
        return last is not None and now - last > self.ttl_s

    def _still_stale(self, name: str) -> bool:
        with self._lock:
            return self._is_stale(name, self.clock())

    # =====================================================================
    # Sweep
    # =====================================================================

    def sweep(self) -> List[str]:
        """Evict every stale, non-persistent session. Returns the names unloaded."""
        now = self.clock()
        with self._lock:
            candidates = [
                (name, now - last) for name, last in self._last_used.items()
                if self._is_stale(name, now)
            ]

        evicted = []
        for name, idle in candidates:
            if name not in self.pool:
                self.forget(name)
                continue
            # Re-checked under the slot lock: a request may have touched it since
            if self.pool.evict(name, should_evict=lambda n=name: self._still_stale(n)):
                logger.info(f"Evicted {name} (idle {idle:.0f}s > ttl {self.ttl_s:.0f}s)")
                evicted.append(name)
                self.forget(name)
            elif not self.pool.is_loaded(name) and self._still_stale(name):
                self.forget(name)
        return evicted

    def _run(self):
        logger.debug(f"Memory manager started (tick {self.tick_interval_s}s, ttl {self.ttl_s}s)")
        while not self._stop.wait(self.tick_interval_s):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Eviction sweep failed: {e}", exc_info=True)
        logger.debug("Memory manager stopped")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="memory-manager", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        """Signal the sweep thread and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =====================================================================
    # Stats
    # =====================================================================

    def stats(self) -> Dict:
        loaded = self.pool.loaded_names()
        now = self.clock()
        with self._lock:
            idle = {name: round(now - t, 1) for name, t in self._last_used.items()}
            persistent = sorted(self._persistent)
            ttl = self.ttl_s
        return {
            "loaded_models": loaded,
            "total_loaded": len(loaded),
            "idle_seconds": idle,
            "persistent": persistent,
            "ttl_seconds": ttl,
        }

"""
npu-router :: Model Pool

Slots keyed by model name, each moving through explicit states:

    UNLOADED ──ensure_loaded──▶ LOADING ──ok──▶ LOADED ──evict──▶ EVICTING ──▶ UNLOADED
                                   │
                                   └──error──▶ FAILED (backoff, then retried)

Locking:
  - pool RW lock: readers check state, writers flip LOADING→LOADED,
    LOADED→EVICTING and the final teardown; held only for the flip
  - per-slot condition: name-scoped exclusion between construction,
    dispatch and destruction; other names never block
  - order is always pool lock → slot condition

Construction and teardown run outside the pool lock, so a slow load of one
model never stalls dispatch to another.

INL - 2025
"""

import time
import threading
from contextlib import contextmanager
from enum import Enum
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterator, List, Optional

from npu_router.core.config import ModelConfig
from npu_router.core.exceptions import ModelLoadError, ModelUnavailableError
from npu_router.core.logging import get_logger
from npu_router.core.metrics import RouterMetrics
from npu_router.engine.session import ModelSession

logger = get_logger("npu_router.pool")

SessionFactory = Callable[[str, ModelConfig], ModelSession]


class ReadWriteLock:
    """
    Writer-preferring readers/writer lock.

    Many readers or one writer. Once a writer waits, new readers queue
    behind it so a stream of readers cannot starve the flip.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_lock(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_lock(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class SlotState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    EVICTING = "evicting"


class ModelSlot:
    """Per-name record: state, session and lease count."""

    def __init__(self, name: str, config: ModelConfig):
        self.name = name
        self.config = config
        self.state = SlotState.UNLOADED
        self.session: Optional[ModelSession] = None
        self.in_flight = 0
        self.failures = 0
        self.retry_at = 0.0
        self.last_error: Optional[str] = None
        self.cond = threading.Condition(threading.Lock())

    def _wait_settled(self):
        """Block while another thread is constructing or destroying. Caller holds cond."""
        while self.state in (SlotState.LOADING, SlotState.EVICTING):
            self.cond.wait()

    def to_dict(self) -> Dict:
        info = {
            "name": self.config.name,
            "state": self.state.value,
            "in_flight": self.in_flight,
        }
        if self.state == SlotState.FAILED:
            info["failures"] = self.failures
            info["last_error"] = self.last_error
            info["retry_in_s"] = round(max(0.0, self.retry_at - time.monotonic()), 1)
        return info


class ModelPool:
    """
    Lazily loaded sessions for a fixed set of model names.

    Lazy loads (`ensure_loaded`) log failures and return False; eager loads
    (`load_all`) raise ModelLoadError with every failure collected.
    """

    def __init__(
        self,
        configs: Dict[str, ModelConfig],
        factory: Optional[SessionFactory] = None,
        retry_base_s: float = 5.0,
        retry_max_s: float = 300.0,
        metrics: Optional[RouterMetrics] = None,
    ):
        self._slots: Dict[str, ModelSlot] = {
            name: ModelSlot(name, config) for name, config in configs.items()
        }
        self.factory = factory or ModelSession.from_config
        self.retry_base_s = retry_base_s
        self.retry_max_s = retry_max_s
        self.metrics = metrics
        self._lock = ReadWriteLock()

    # =====================================================================
    # Queries
    # =====================================================================

    @property
    def names(self) -> List[str]:
        return list(self._slots)

    def _slot(self, name: str) -> ModelSlot:
        slot = self._slots.get(name)
        if slot is None:
            raise KeyError(f"Unknown model '{name}'")
        return slot

    def __contains__(self, name: str) -> bool:
        return name in self._slots

    def state(self, name: str) -> SlotState:
        with self._lock.read_lock():
            return self._slot(name).state

    def is_loaded(self, name: str) -> bool:
        with self._lock.read_lock():
            slot = self._slots.get(name)
            return slot is not None and slot.state == SlotState.LOADED

    def loaded_names(self) -> List[str]:
        with self._lock.read_lock():
            return [n for n, s in self._slots.items() if s.state == SlotState.LOADED]

    def describe(self) -> Dict[str, Dict]:
        with self._lock.read_lock():
            return {name: slot.to_dict() for name, slot in self._slots.items()}

    # =====================================================================
    # Loading
    # =====================================================================

    def _backoff_s(self, failures: int) -> float:
        return min(self.retry_base_s * (2 ** (failures - 1)), self.retry_max_s)

    def _record_load(self, name: str, outcome: str):
        if self.metrics is not None:
            self.metrics.on_load(name, outcome)
            self.metrics.set_loaded(len(self.loaded_names()))

    def ensure_loaded(self, name: str) -> bool:
        """
        Make sure `name` has a live session; construct it if needed.

        Exactly one caller constructs; concurrent callers for the same name
        wait for its outcome. Construction errors are logged and swallowed:
        the slot enters FAILED and further calls return False until the
        backoff window passes.
        """
        slot = self._slot(name)

        with self._lock.read_lock():
            if slot.state == SlotState.LOADED:
                return True

        with slot.cond:
            slot._wait_settled()
            if slot.state == SlotState.LOADED:
                return True
            if slot.state == SlotState.FAILED and time.monotonic() < slot.retry_at:
                logger.warning(
                    f"{name}: load skipped, retry in {slot.retry_at - time.monotonic():.1f}s "
                    f"(last error: {slot.last_error})"
                )
                self._record_load(name, "skipped")
                return False
            slot.state = SlotState.LOADING

        logger.info(f"Loading {name} ({slot.config.name})...")
        start = time.perf_counter()
        try:
            session = self.factory(name, slot.config)
        except Exception as e:
            with slot.cond:
                slot.failures += 1
                slot.last_error = str(e)
                slot.retry_at = time.monotonic() + self._backoff_s(slot.failures)
                slot.state = SlotState.FAILED
                slot.cond.notify_all()
            logger.error(
                f"Failed to load {name}: {e} "
                f"(attempt {slot.failures}, next retry in {self._backoff_s(slot.failures):.0f}s)"
            )
            self._record_load(name, "failed")
            return False
        except BaseException:
            self._abandon_loading(slot, SlotState.UNLOADED)
            raise

        with self._lock.write_lock():
            with slot.cond:
                slot.session = session
                slot.state = SlotState.LOADED
                slot.failures = 0
                slot.last_error = None
                slot.cond.notify_all()
        logger.info(f"Loaded {name} in {(time.perf_counter() - start) * 1000:.0f}ms")
        self._record_load(name, "ok")
        return True

    def _abandon_loading(self, slot: ModelSlot, state: SlotState):
        """Hand a LOADING slot back without a session and wake its waiters."""
        with slot.cond:
            if slot.state == SlotState.LOADING:
                slot.state = state
            slot.cond.notify_all()

    def load_all(self, names: Optional[List[str]] = None):
        """
        Eagerly construct every model in parallel, one thread each.

        Each slot is claimed (LOADING) the same way ensure_loaded claims it,
        so an eager and a lazy load of one name never both construct; names
        already LOADED are kept as they are. All constructions are joined.
        If any failed, the sessions built here are closed again, their slots
        return to their previous state and ModelLoadError carries every
        failure. Backoff does not apply.
        """
        names = list(names) if names is not None else self.names
        for name in names:
            self._slot(name)

        previous: Dict[str, SlotState] = {}
        claim_lock = threading.Lock()

        def build(name: str) -> Optional[ModelSession]:
            slot = self._slots[name]
            with slot.cond:
                slot._wait_settled()
                if slot.state == SlotState.LOADED:
                    return None
                with claim_lock:
                    previous[name] = slot.state
                slot.state = SlotState.LOADING
            logger.info(f"Loading {name} ({slot.config.name})...")
            try:
                return self.factory(name, slot.config)
            except BaseException:
                self._abandon_loading(slot, previous[name])
                raise

        results: Dict[str, ModelSession] = {}
        errors: Dict[str, str] = {}
        interrupted: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=max(1, len(names)), thread_name_prefix="load") as pool:
            futures = {name: pool.submit(build, name) for name in names}
            for name, future in futures.items():
                try:
                    session = future.result()
                except Exception as e:
                    errors[name] = str(e)
                    logger.error(f"Failed to load {name}: {e}")
                    continue
                except BaseException as e:
                    interrupted = e
                    continue
                if session is not None:
                    results[name] = session

        if errors or interrupted is not None:
            for name, session in results.items():
                session.close()
                self._abandon_loading(self._slots[name], previous[name])
            if interrupted is not None:
                raise interrupted
            for name in errors:
                self._record_load(name, "failed")
            raise ModelLoadError(errors)

        with self._lock.write_lock():
            for name, session in results.items():
                slot = self._slots[name]
                with slot.cond:
                    slot.session = session
                    slot.state = SlotState.LOADED
                    slot.failures = 0
                    slot.last_error = None
                    slot.cond.notify_all()
        for name in results:
            self._record_load(name, "ok")
        logger.info(f"Loaded {len(results)} model(s): {', '.join(results) or '-'}")

    # =====================================================================
    # Dispatch
    # =====================================================================

    @contextmanager
    def lease(self, name: str) -> Iterator[ModelSession]:
        """
        Borrow the session for one request.

        Waits out an in-progress load or eviction. Raises
        ModelUnavailableError when the slot is not LOADED afterwards.
        Eviction waits for every lease to be returned.
        """
        slot = self._slot(name)
        with slot.cond:
            slot._wait_settled()
            if slot.state != SlotState.LOADED or slot.session is None:
                detail = slot.last_error if slot.state == SlotState.FAILED else slot.state.value
                raise ModelUnavailableError(name, detail)
            slot.in_flight += 1
            session = slot.session
        try:
            yield session
        finally:
            with slot.cond:
                slot.in_flight -= 1
                slot.cond.notify_all()

    # =====================================================================
    # Eviction
    # =====================================================================

    def evict(self, name: str, should_evict: Optional[Callable[[], bool]] = None) -> bool:
        """
        Unload `name` if it is loaded (and `should_evict()` still agrees).

        New leases block while EVICTING; in-flight leases are drained first,
        then the session is closed and the slot returns to UNLOADED.
        Returns True if this call unloaded the session.
        """
        slot = self._slot(name)

        with self._lock.write_lock():
            with slot.cond:
                if slot.state != SlotState.LOADED:
                    return False
                if should_evict is not None and not should_evict():
                    return False
                slot.state = SlotState.EVICTING

        with slot.cond:
            while slot.in_flight > 0:
                slot.cond.wait()
            session = slot.session

        try:
            if session is not None:
                session.close()
        finally:
            with self._lock.write_lock():
                with slot.cond:
                    slot.session = None
                    slot.state = SlotState.UNLOADED
                    slot.cond.notify_all()

        logger.info(f"Unloaded {name}")
        if self.metrics is not None:
            self.metrics.on_evict(name)
            self.metrics.set_loaded(len(self.loaded_names()))
        return True

    def close(self):
        """Unload every loaded session, waiting out loads still in progress."""
        for name in self.names:
            slot = self._slots[name]
            with slot.cond:
                slot._wait_settled()
            self.evict(name)

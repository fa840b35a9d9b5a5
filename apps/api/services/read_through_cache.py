"""
Client Read-Through Cache (stale-while-revalidate)

Wraps any async ``fetcher() -> payload`` behind a per-key shared slot:

    cache = ReadThroughCache("insights:{...}", fetcher, durable=RedisDurableTier())
    state = await cache.get()       # hydrate, fetch if empty, revalidate if stale
    cache.on_focus()                # background revalidation, returns immediately
    await cache.refresh()           # user-initiated; skips the min-interval gate once

Guarantees:
  - once a key holds data it is never cleared; failures only set ``error``
  - ``loading`` means "no data yet", not "a fetch is running"
  - concurrent callers for one key share a single fetch
  - calls inside ``min_interval_ms`` of the previous fetch are dropped, not queued
  - hydration order is memory, then durable tier, then network; every
    resolved value is written back to both tiers
  - a fetch result from a superseded generation never overwrites newer data
  - durable tier reads and writes run in worker threads, never on the loop

Slots live at module level so every cache instance in the process that
uses the same key sees the same data and the same in-flight fetch.
"""
import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set, Tuple

from core.cache import get_cache, set_cache
from core.config import settings

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def wall_clock_ms() -> float:
    return time.time() * 1000


@dataclass
class CacheState:
    """Snapshot handed to callers."""
    data: Any
    error: Optional[BaseException]
    updated_at: Optional[float]
    is_fetching: bool

    @property
    def loading(self) -> bool:
        return self.data is None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


class _Slot:
    """Memory tier entry plus the coordination state for one key."""

    def __init__(self):
        self.data: Any = None
        self.at: Optional[float] = None
        self.error: Optional[BaseException] = None
        self.is_fetching = False
        self.inflight: Optional[asyncio.Task] = None
        self.last_invoke: Optional[float] = None
        self.generation = 0  # last generation issued
        self.applied_generation = 0  # generation of the data currently held


# Least recently used first. Bounded by CLIENT_CACHE_MAX_KEYS; slots with a
# fetch in flight are never evicted.
_slots: "OrderedDict[str, _Slot]" = OrderedDict()

# Strong references to fire-and-forget tasks (durable writes, mount hydration).
_background: Set[asyncio.Task] = set()


def _slot_for(key: str) -> _Slot:
    slot = _slots.get(key)
    if slot is not None:
        _slots.move_to_end(key)
        return slot
    slot = _slots[key] = _Slot()
    _trim(settings.CLIENT_CACHE_MAX_KEYS, keep=key)
    return slot


def _trim(max_keys: int, keep: Optional[str] = None) -> None:
    excess = len(_slots) - max_keys
    if excess <= 0:
        return
    for key in [k for k, s in _slots.items() if s.inflight is None and k != keep][:excess]:
        del _slots[key]
        logger.debug(f"Evicted {key} from memory tier")


def evict(key: str) -> bool:
    """Drop one key from the memory tier. Returns False if it is unknown or mid-fetch."""
    slot = _slots.get(key)
    if slot is None or slot.inflight is not None:
        return False
    del _slots[key]
    return True


def clear_memory_tier() -> None:
    """Drop every in-process slot (tests, logout)."""
    for slot in _slots.values():
        if slot.inflight is not None and not slot.inflight.done():
            slot.inflight.cancel()
    _slots.clear()
    for task in list(_background):
        if not task.done():
            task.cancel()
    _background.clear()


class RedisDurableTier:
    """Cross-session tier stored through core.cache. Entries are {"data", "at"}."""

    def __init__(self, prefix: str = "rtc", ttl: Optional[int] = None):
        self.prefix = prefix
        self.ttl = ttl if ttl is not None else settings.CLIENT_CACHE_DURABLE_TTL

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{hashlib.sha256(key.encode('utf-8')).hexdigest()}"

    def get(self, key: str) -> Optional[Tuple[Any, float]]:
        entry = get_cache(self._key(key))
        if not isinstance(entry, dict) or entry.get("data") is None:
            return None
        try:
            at = float(entry.get("at") or 0)
        except (TypeError, ValueError):
            at = 0.0
        return entry["data"], at

    def set(self, key: str, data: Any, at: float) -> bool:
        return set_cache(self._key(key), {"data": data, "at": at}, self.ttl)


class ReadThroughCache:
    def __init__(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        stale_ms: Optional[int] = None,
        min_interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        revalidate_on_mount: bool = True,
        revalidate_on_focus: bool = True,
        revalidate_on_visible: bool = True,
        durable: Optional[RedisDurableTier] = None,
        clock: Callable[[], float] = wall_clock_ms,
    ):
        self.key = key
        self.fetcher = fetcher
        self.stale_ms = settings.CLIENT_CACHE_STALE_MS if stale_ms is None else stale_ms
        self.min_interval_ms = (
            settings.CLIENT_CACHE_MIN_INTERVAL_MS if min_interval_ms is None else min_interval_ms
        )
        self.timeout_ms = settings.CLIENT_CACHE_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self.revalidate_on_mount = revalidate_on_mount
        self.revalidate_on_focus = revalidate_on_focus
        self.revalidate_on_visible = revalidate_on_visible
        self.durable = durable
        self.clock = clock

    @property
    def _slot(self) -> _Slot:
        return _slot_for(self.key)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> CacheState:
        slot = self._slot
        return CacheState(
            data=slot.data,
            error=slot.error,
            updated_at=slot.at,
            is_fetching=slot.is_fetching,
        )

    def is_stale(self) -> bool:
        slot = self._slot
        if slot.data is None or slot.at is None:
            return True
        return self.clock() - slot.at > self.stale_ms

    async def hydrate(self) -> CacheState:
        """Fill the memory tier from the durable tier if memory is empty."""
        slot = self._slot
        if slot.data is None and self.durable is not None:
            entry = await asyncio.to_thread(self.durable.get, self.key)
            # A fetch may have landed while the read was in the worker thread.
            if entry is not None and slot.data is None:
                slot.data, slot.at = entry
                logger.debug(f"Hydrated {self.key} from durable tier")
        return self.state

    async def get(self) -> CacheState:
        """Read through: cached value now, fetch when empty, revalidate when stale."""
        await self.hydrate()
        if self._slot.data is None:
            return await self.fetch()
        if self.is_stale():
            self._start()
        return self.state

    async def fetch(self) -> CacheState:
        """Join the in-flight fetch or start one (subject to the gate)."""
        task = self._start()
        if task is not None:
            await asyncio.shield(task)
        return self.state

    async def refresh(self) -> CacheState:
        """Manual refresh: bypasses the min-interval gate once, still single-flight."""
        task = self._start(bypass_gate=True)
        if task is not None:
            await asyncio.shield(task)
        return self.state

    def mutate(self, data: Any) -> CacheState:
        """Set data locally. Any fetch already running is superseded."""
        slot = self._slot
        slot.generation += 1
        if self._apply(slot, slot.generation, data) and self.durable is not None:
            self._spawn(self._persist(slot.data, slot.at))
        return self.state

    # ------------------------------------------------------------------
    # Background triggers: schedule and return immediately
    # ------------------------------------------------------------------

    def mount(self) -> CacheState:
        if self._slot.data is None and self.durable is not None:
            self._spawn(self._mount_from_durable())
        elif self._slot.data is None:
            self._start()
        elif self.revalidate_on_mount and self.is_stale():
            self._start()
        return self.state

    async def _mount_from_durable(self) -> None:
        await self.hydrate()
        if self._slot.data is None or (self.revalidate_on_mount and self.is_stale()):
            self._start()

    def on_focus(self) -> Optional[asyncio.Task]:
        if not self.revalidate_on_focus:
            return None
        return self._start()

    def on_visibility_change(self, visible: bool) -> Optional[asyncio.Task]:
        if not visible or not self.revalidate_on_visible:
            return None
        return self._start()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start(self, bypass_gate: bool = False) -> Optional[asyncio.Task]:
        slot = self._slot
        if slot.inflight is not None and not slot.inflight.done():
            return slot.inflight

        now = self.clock()
        if (
            not bypass_gate
            and slot.last_invoke is not None
            and now - slot.last_invoke < self.min_interval_ms
        ):
            logger.debug(f"Dropped fetch for {self.key}: inside min interval")
            return None

        slot.last_invoke = now
        slot.generation += 1
        slot.is_fetching = True
        task = asyncio.get_running_loop().create_task(self._run(slot, slot.generation))
        slot.inflight = task
        return task

    async def _run(self, slot: _Slot, generation: int) -> None:
        applied = False
        try:
            payload = await asyncio.wait_for(self.fetcher(), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            self._fail(slot, generation, TimeoutError(f"Timed out after {self.timeout_ms}ms"))
        except Exception as e:
            self._fail(slot, generation, e)
        else:
            if payload is not None:
                applied = self._apply(slot, generation, payload)
            elif generation >= slot.applied_generation:
                slot.error = None
        finally:
            slot.is_fetching = False
            if slot.inflight is asyncio.current_task():
                slot.inflight = None
        if applied:
            await self._persist(slot.data, slot.at)

    def _apply(self, slot: _Slot, generation: int, data: Any) -> bool:
        if generation < slot.applied_generation:
            logger.debug(f"Discarded superseded result for {self.key} (generation {generation})")
            return False
        slot.data = data
        slot.at = self.clock()
        slot.error = None
        slot.applied_generation = generation
        return True

    async def _persist(self, data: Any, at: float) -> None:
        if self.durable is None:
            return
        await asyncio.to_thread(self.durable.set, self.key, data, at)

    @staticmethod
    def _spawn(coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        _background.add(task)
        task.add_done_callback(_background.discard)
        return task

    def _fail(self, slot: _Slot, generation: int, error: BaseException) -> None:
        if generation < slot.applied_generation:
            return
        slot.error = error
        logger.warning(f"Read-through fetch failed for {self.key}: {error}")

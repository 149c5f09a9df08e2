"""Bounded pool of warm browser processes.

Launching Chromium costs seconds, so handles are reused across requests.
The pool bounds how many processes exist at once, hands each one to at most
one session at a time, and periodically recycles handles that disconnected or
grew old while idle (long-lived automated browsers leak memory and renderer
processes).

Bookkeeping invariants:
  - len(handles) + creating <= max_size at all times
  - a handle id is either in the in-use set or available, never both
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from src.classutp.browser import ResourceHandle
from src.classutp.config import ScraperConfig
from src.classutp.errors import BrowserLaunchError, PoolExhausted
from src.classutp.logging import get_logger
from src.classutp.models import PoolStats

log = get_logger(__name__)


class Launcher(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def launch(self) -> ResourceHandle: ...


class BrowserPool:
    """Lease-based access to at most ``max_size`` browser processes."""

    def __init__(
        self,
        launcher: Launcher,
        *,
        max_size: int = 1,
        acquire_timeout: float = 30.0,
        poll_interval: float = 0.5,
        max_age: float = 600.0,
        health_check_interval: float = 90.0,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.launcher = launcher
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self.poll_interval = poll_interval
        self.max_age = max_age
        self.health_check_interval = health_check_interval

        self._handles: dict[str, ResourceHandle] = {}
        self._in_use: set[str] = set()
        self._creating = 0
        self._waiting = 0
        self._creation_failures = 0
        self._lock = asyncio.Lock()
        self._health_task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    def from_config(cls, launcher: Launcher, config: ScraperConfig) -> "BrowserPool":
        return cls(
            launcher,
            max_size=1 if config.gate_mode == "single" else config.pool_max_size,
            acquire_timeout=config.pool_acquire_timeout_seconds,
            poll_interval=config.pool_poll_interval_seconds,
            max_age=config.pool_max_handle_age_seconds,
            health_check_interval=config.pool_health_check_interval_seconds,
        )

    # Lifecycle

    async def start(self, *, prewarm: bool = False) -> None:
        await self.launcher.start()
        if prewarm:
            await self._warm_one()
        if self.health_check_interval > 0 and self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())
        log.info("pool_started", max_size=self.max_size, prewarm=prewarm)

    async def shutdown(self) -> None:
        self._closed = True
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._in_use.clear()
        for handle in handles:
            await handle.close()
        await self.launcher.stop()
        log.info("pool_shutdown", closed=len(handles))

    # Leasing

    async def acquire(self, timeout: float | None = None) -> ResourceHandle:
        """Hand out a healthy handle, launching one if under ``max_size``.

        Blocks, polling every ``poll_interval`` seconds, while the pool is
        full and every handle is in use.

        Raises:
            PoolExhausted: If nothing frees up within ``timeout`` seconds.
            BrowserLaunchError: If a new handle had to be launched and failed.
        """
        if self._closed:
            raise PoolExhausted("El servicio se está apagando.")
        timeout = self.acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        self._waiting += 1
        try:
            while True:
                should_create = False
                dead: list[ResourceHandle] = []
                async with self._lock:
                    handle = self._take_available(dead)
                    if handle is None and len(self._handles) + self._creating < self.max_size:
                        self._creating += 1
                        should_create = True
                try:
                    for stale in dead:
                        await asyncio.shield(stale.close())
                except BaseException:
                    # Cancelled while closing: give back whatever was reserved
                    if handle is not None:
                        self._in_use.discard(handle.id)
                        handle.in_use = False
                    if should_create:
                        self._creating -= 1
                    raise

                if handle is not None:
                    log.debug("pool_acquired", handle_id=handle.id, reused=True)
                    return handle
                if should_create:
                    handle = await self._create(in_use=True)
                    log.debug("pool_acquired", handle_id=handle.id, reused=False)
                    return handle

                remaining = deadline - loop.time()
                if remaining <= 0:
                    log.warning(
                        "pool_exhausted",
                        timeout_seconds=timeout,
                        in_use=len(self._in_use),
                        max_size=self.max_size,
                    )
                    raise PoolExhausted(retry_after=max(1, int(self.poll_interval * 4)))
                await asyncio.sleep(min(self.poll_interval, remaining))
        finally:
            self._waiting -= 1

    async def release(self, handle: ResourceHandle) -> None:
        """Return a handle to the available set. No-op if it is not checked out."""
        async with self._lock:
            if handle.id not in self._in_use:
                return
            self._in_use.discard(handle.id)
            handle.in_use = False
            evict = not handle.connected
            if evict:
                self._handles.pop(handle.id, None)
        if evict:
            log.warning("pool_release_disconnected", handle_id=handle.id)
            await handle.close()
        else:
            log.debug("pool_released", handle_id=handle.id)

    async def remove(self, handle: ResourceHandle) -> None:
        """Evict a handle (crashed, disconnected) and close its process."""
        async with self._lock:
            self._handles.pop(handle.id, None)
            self._in_use.discard(handle.id)
            handle.in_use = False
        log.info("pool_removed", handle_id=handle.id)
        await handle.close()

    @asynccontextmanager
    async def lease(self, timeout: float | None = None) -> AsyncIterator[ResourceHandle]:
        """Acquire a handle for the duration of the block.

        The handle is released on normal exit and removed when it is found
        disconnected afterwards.
        """
        handle = await self.acquire(timeout)
        try:
            yield handle
        finally:
            if handle.connected:
                await self.release(handle)
            else:
                await self.remove(handle)

    # Health

    async def health_check(self) -> list[str]:
        """Close disconnected handles and idle handles older than ``max_age``.

        If that empties the pool while nobody is waiting on ``acquire``, one
        replacement is launched so the next request starts warm.

        Returns:
            Ids of the evicted handles.
        """
        evicted: list[ResourceHandle] = []
        async with self._lock:
            for handle in list(self._handles.values()):
                idle = handle.id not in self._in_use
                if not handle.connected:
                    reason = "disconnected"
                elif idle and handle.age_seconds > self.max_age:
                    reason = "max_age"
                else:
                    continue
                self._handles.pop(handle.id)
                self._in_use.discard(handle.id)
                handle.in_use = False
                evicted.append(handle)
                log.info(
                    "pool_evicting",
                    handle_id=handle.id,
                    reason=reason,
                    age_seconds=round(handle.age_seconds, 1),
                )
            became_empty = (
                bool(evicted)
                and not self._handles
                and self._creating == 0
                and self._waiting == 0
            )

        for handle in evicted:
            await handle.close()

        if became_empty and not self._closed:
            await self._warm_one()
        return [h.id for h in evicted]

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.health_check()
            except Exception as e:
                log.error("pool_health_check_failed", error=str(e), type=type(e).__name__)

    # Stats

    def stats(self) -> PoolStats:
        handles = list(self._handles.values())
        return PoolStats(
            pool_size=len(handles),
            max_size=self.max_size,
            in_use=len(self._in_use),
            available=len(handles) - len(self._in_use),
            connected_count=sum(1 for h in handles if h.connected),
            creating=self._creating,
            creation_failures=self._creation_failures,
        )

    # Internals

    def _take_available(self, dead: list[ResourceHandle]) -> ResourceHandle | None:
        # Caller holds self._lock. Disconnected handles are moved to `dead`.
        for handle_id, handle in list(self._handles.items()):
            if handle_id in self._in_use:
                continue
            if not handle.connected:
                self._handles.pop(handle_id)
                dead.append(handle)
                continue
            self._in_use.add(handle_id)
            handle.in_use = True
            return handle
        return None

    async def _create(self, *, in_use: bool) -> ResourceHandle:
        # Caller already reserved a slot by incrementing self._creating
        handle: ResourceHandle | None = None
        try:
            handle = await self.launcher.launch()
            try:
                await handle.smoke_test()
            except Exception as smoke_error:
                raise BrowserLaunchError(
                    "El navegador no superó la verificación inicial."
                ) from smoke_error
        except BaseException as e:
            # No await before the counters are fixed, so a second cancel cannot skip it
            self._creating -= 1
            if not isinstance(e, asyncio.CancelledError):
                self._creation_failures += 1
            log.error(
                "pool_create_failed",
                error=str(e),
                type=type(e).__name__,
                failures=self._creation_failures,
            )
            if handle is not None:
                await asyncio.shield(handle.close())
            raise

        async with self._lock:
            self._creating -= 1
            self._handles[handle.id] = handle
            if in_use:
                self._in_use.add(handle.id)
                handle.in_use = True
        log.info("pool_handle_added", handle_id=handle.id, pool_size=len(self._handles))
        return handle

    async def _warm_one(self) -> None:
        async with self._lock:
            if len(self._handles) + self._creating >= self.max_size:
                return
            self._creating += 1
        try:
            await self._create(in_use=False)
        except Exception:
            # Already counted and logged; the next acquire launches lazily
            pass

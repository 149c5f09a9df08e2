"""ScheduleService - composition root for one schedule scrape.

Request flow:
  quota/gate admission -> pool lease -> session tab -> navigator -> release

The service is constructed once per process, started and shut down by the
HTTP lifespan (or the CLI), and handed to request handlers explicitly.
Whatever ends a session (success, error, watchdog, client disconnect) runs
the same cleanup: tab closed, handle released or evicted, gate released.
"""

import asyncio
import time
import uuid
from typing import Any

from structlog.contextvars import bound_contextvars

from src.classutp.browser import BrowserLauncher
from src.classutp.config import ScraperConfig
from src.classutp.errors import ResourceCrashed, ScrapingError, SessionTimeout
from src.classutp.gate import QuotaLimiter, RequestGate
from src.classutp.logging import get_logger
from src.classutp.models import Credentials, ExtractionResult
from src.classutp.navigator import ExtractionStrategies, ScheduleNavigator, summarize
from src.classutp.pool import BrowserPool
from src.classutp.progress import NullEmitter, ProgressEmitter
from src.classutp.session import SessionContext

log = get_logger(__name__)


class ScheduleService:
    """Owns the pool and the gate and runs sessions against them."""

    def __init__(
        self,
        config: ScraperConfig,
        *,
        pool: BrowserPool | None = None,
        gate: RequestGate | None = None,
        strategies: ExtractionStrategies | None = None,
    ) -> None:
        self.config = config
        self.pool = pool or BrowserPool.from_config(BrowserLauncher(config), config)
        self.gate = gate or RequestGate(
            config.gate_mode,
            ceiling=config.session_ceiling_seconds,
            retry_after=config.busy_retry_after_seconds,
            quota=QuotaLimiter(
                config.rate_limit_requests, config.rate_limit_window_seconds
            ),
        )
        self.strategies = strategies
        self.started_at = time.monotonic()

    async def start(self) -> None:
        self.started_at = time.monotonic()
        await self.pool.start(prewarm=self.config.pool_prewarm)
        log.info("service_started", gate_mode=self.gate.mode, pool_max=self.pool.max_size)

    async def shutdown(self) -> None:
        await self.pool.shutdown()
        log.info("service_stopped")

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    async def fetch_schedule(
        self,
        credentials: Credentials,
        emitter: ProgressEmitter | None = None,
        *,
        client_id: str | None = None,
    ) -> ExtractionResult:
        """Run one full scrape for ``credentials``.

        Emits ``done`` with the result or ``error`` with the error payload
        before returning or raising.

        Raises:
            ScrapingError: Any classified failure (see errors module).
        """
        emitter = emitter or NullEmitter()
        session_id = uuid.uuid4().hex[:12]
        with bound_contextvars(session_id=session_id, user=credentials.masked_username):
            try:
                ticket = self.gate.admit(client_id, owner=credentials.masked_username)
            except ScrapingError as e:
                emitter.emit("error", e.to_payload())
                raise

            started = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._run_session(credentials, emitter),
                    timeout=self.config.session_ceiling_seconds,
                )
            except asyncio.TimeoutError as e:
                error = SessionTimeout(self.config.session_ceiling_seconds)
                log.error("session_watchdog_expired", ceiling=self.config.session_ceiling_seconds)
                emitter.emit("error", error.to_payload())
                raise error from e
            except ScrapingError as e:
                log.warning("session_failed", code=e.code, step=e.step)
                emitter.emit("error", e.to_payload())
                raise
            except asyncio.CancelledError:
                log.info("session_cancelled")
                raise
            except Exception as e:
                log.exception("session_error", type=type(e).__name__)
                emitter.emit("error", internal_error_payload())
                raise
            finally:
                self.gate.release(ticket)

            log.info(
                "session_succeeded",
                elapsed_ms=int((time.monotonic() - started) * 1000),
                **summarize(result),
            )
            emitter.emit("done", result.to_payload())
            return result

    async def _run_session(
        self, credentials: Credentials, emitter: ProgressEmitter
    ) -> ExtractionResult:
        handle = await self.pool.acquire()
        evict = False
        try:
            session = SessionContext(handle, self.config)
            async with session:
                navigator = ScheduleNavigator(self.config, self.strategies, emitter)
                return await navigator.run(session, credentials)
        except ResourceCrashed:
            evict = True
            raise
        finally:
            if evict or not handle.connected:
                await self.pool.remove(handle)
            else:
                await self.pool.release(handle)


def internal_error_payload() -> dict[str, Any]:
    return {
        "success": False,
        "code": "InternalError",
        "error": "Error al obtener eventos. Verifica tus credenciales o intenta más tarde.",
    }

"""Browser process handles and the launcher that creates them.

A ResourceHandle wraps one live headless Chromium process. The pool owns
handles; sessions borrow them and carve isolated browsing contexts out of
them.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from src.classutp.config import ScraperConfig
from src.classutp.errors import BrowserLaunchError
from src.classutp.logging import get_logger

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Playwright

log = get_logger(__name__)


class ResourceHandle:
    """One live browser process plus the bookkeeping the pool needs."""

    def __init__(self, browser: "Browser", handle_id: str | None = None) -> None:
        self.id = handle_id or uuid.uuid4().hex[:8]
        self.browser = browser
        self.created_at = datetime.now(timezone.utc)
        self.in_use = False
        self.sessions_served = 0
        self._created_monotonic = time.monotonic()
        self._closed = False

    def __repr__(self) -> str:
        return f"<ResourceHandle {self.id} connected={self.connected} in_use={self.in_use}>"

    @property
    def connected(self) -> bool:
        return not self._closed and self.browser.is_connected()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self._created_monotonic

    @property
    def open_contexts(self) -> int:
        if self._closed:
            return 0
        return len(self.browser.contexts)

    async def new_context(self, **kwargs: Any) -> "BrowserContext":
        self.sessions_served += 1
        return await self.browser.new_context(**kwargs)

    async def smoke_test(self) -> None:
        """Open and close a blank page to prove the process actually renders."""
        page = await self.browser.new_page()
        await page.close()

    async def close(self) -> None:
        """Close the browser process. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.browser.close()
        except PlaywrightError as e:
            # Already gone (crash or disconnect); nothing left to release
            log.debug("browser_close_failed", handle_id=self.id, error=str(e))
        log.info(
            "browser_closed",
            handle_id=self.id,
            age_seconds=round(self.age_seconds, 1),
            sessions_served=self.sessions_served,
        )


class BrowserLauncher:
    """Starts the Playwright driver and launches Chromium processes on demand."""

    def __init__(self, config: ScraperConfig) -> None:
        self.config = config
        self._playwright: "Playwright | None" = None

    async def start(self) -> None:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            log.info("playwright_started")

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            log.info("playwright_stopped")

    async def launch(self) -> ResourceHandle:
        """Launch one headless Chromium process.

        Raises:
            BrowserLaunchError: If the launch fails or exceeds the launch timeout.
        """
        await self.start()
        timeout = self.config.browser_launch_timeout_seconds
        started = time.monotonic()
        try:
            browser = await asyncio.wait_for(
                self._playwright.chromium.launch(
                    headless=self.config.browser_headless,
                    executable_path=self.config.browser_executable_path,
                    args=self.config.browser_args,
                    timeout=timeout * 1000,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise BrowserLaunchError(
                f"El navegador no inició en {int(timeout)} segundos."
            ) from e
        except PlaywrightError as e:
            log.error("browser_launch_failed", error=str(e))
            raise BrowserLaunchError() from e

        handle = ResourceHandle(browser)
        log.info(
            "browser_launched",
            handle_id=handle.id,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )
        return handle

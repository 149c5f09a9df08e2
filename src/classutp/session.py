"""Per-request browsing contexts carved out of a pooled browser.

A SessionContext owns one isolated BrowserContext (cookies, storage) and one
page inside it. It never outlives the request that opened it and its context
is closed exactly once, whichever exit path gets there first.
"""

import uuid
from typing import TYPE_CHECKING

from playwright.async_api import Error as PlaywrightError

from src.classutp.browser import ResourceHandle
from src.classutp.config import ScraperConfig
from src.classutp.errors import ResourceCrashed
from src.classutp.logging import get_logger
from src.classutp.utils import configure_page_for_scraping

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page

logger = get_logger(__name__)


class SessionContext:
    """One-shot tab scoped to a single request."""

    def __init__(self, handle: ResourceHandle, config: ScraperConfig) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.handle = handle
        self.config = config
        self.context: "BrowserContext | None" = None
        self._page: "Page | None" = None
        self._closed = False

    @property
    def page(self) -> "Page":
        if self._page is None:
            raise RuntimeError("SessionContext is not open")
        return self._page

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "SessionContext":
        """Create a fresh context and page on the handle's browser.

        Raises:
            ResourceCrashed: If the browser is gone before the tab can be created.
        """
        try:
            self.context = await self.handle.new_context(
                viewport={
                    "width": self.config.viewport_width,
                    "height": self.config.viewport_height,
                },
                user_agent=self.config.user_agent,
            )
            self._page = await self.context.new_page()
            await configure_page_for_scraping(
                self._page,
                timeout_seconds=self.config.navigation_timeout_seconds,
                blocked_types=self.config.block_resource_types,
            )
        except PlaywrightError as e:
            await self.close()
            if not self.handle.connected:
                raise ResourceCrashed() from e
            raise
        logger.debug("session_opened", session_id=self.id, handle_id=self.handle.id)
        return self

    async def close(self) -> None:
        """Close the context and its page. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        if self.context is None:
            return
        try:
            await self.context.close()
        except PlaywrightError as e:
            # The browser died underneath us; the pool evicts the handle
            logger.debug("session_close_failed", session_id=self.id, error=str(e))
        logger.debug("session_closed", session_id=self.id, handle_id=self.handle.id)

    async def __aenter__(self) -> "SessionContext":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

"""Shared page utilities for resource blocking and default timeouts."""

from collections.abc import Iterable

from playwright.async_api import Page, Route

from src.classutp.logging import get_logger

log = get_logger(__name__)

BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset({"image", "media", "font"})


async def configure_page_for_scraping(
    page: Page,
    *,
    timeout_seconds: float = 30.0,
    blocked_types: Iterable[str] = BLOCKED_RESOURCE_TYPES,
) -> None:
    """Set up a Playwright page for efficient scraping.

    Blocks resource types the extraction never reads (images, media, fonts)
    and applies default timeouts to every wait and navigation that does not
    pass its own.

    Args:
        page: Playwright Page instance.
        timeout_seconds: Default timeout for waits and navigations.
        blocked_types: Playwright resource types to abort.
    """
    blocked = frozenset(blocked_types)

    async def _block_resources(route: Route) -> None:
        if route.request.resource_type in blocked:
            await route.abort()
        else:
            await route.continue_()

    if blocked:
        await page.route("**/*", _block_resources)
    page.set_default_timeout(timeout_seconds * 1000)
    page.set_default_navigation_timeout(timeout_seconds * 1000)
    log.debug("page_configured", blocked=sorted(blocked), timeout_seconds=timeout_seconds)

"""ScheduleNavigator - the authenticated navigation pipeline.

Drives one SessionContext through a fixed sequence of steps:

  init -> connecting -> authenticating -> authenticated -> loading_schedule
       -> extracting_metadata -> extracting_events -> done

Any unrecoverable error moves the run to ``failed`` and propagates a typed
error naming the step. Steps run strictly in order, every wait carries its
own timeout, and the session's tab is closed on every exit path. Returning
the browser handle to the pool is the caller's job.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.classutp.config import ScraperConfig
from src.classutp.errors import (
    InvalidCredentials,
    ResourceCrashed,
    ScrapingError,
    StepTimeout,
    UpstreamMarkupMismatch,
)
from src.classutp.logging import get_logger
from src.classutp.models import Course, Credentials, ExtractionResult, WeekInfo
from src.classutp.pages.portal import PortalPage
from src.classutp.progress import NullEmitter, ProgressEmitter
from src.classutp.retry import retry_async
from src.classutp.session import SessionContext

if TYPE_CHECKING:
    from playwright.async_api import Page

    from src.classutp.models import Event

log = get_logger(__name__)


class PipelineState(str, Enum):
    INIT = "init"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    LOADING_SCHEDULE = "loading_schedule"
    EXTRACTING_METADATA = "extracting_metadata"
    EXTRACTING_EVENTS = "extracting_events"
    DONE = "done"
    FAILED = "failed"


class ExtractionStrategies(Protocol):
    """What the navigator needs from a portal parser. No navigation allowed."""

    async def student_name(self, page: "Page") -> str | None: ...

    async def courses(self, page: "Page") -> list[Course]: ...

    async def week_info(self, page: "Page") -> WeekInfo: ...

    async def events(self, page: "Page") -> list["Event"]: ...


class ScheduleNavigator:
    """Runs the step pipeline for one session. Not reusable across runs."""

    def __init__(
        self,
        config: ScraperConfig,
        strategies: ExtractionStrategies | None = None,
        emitter: ProgressEmitter | None = None,
    ) -> None:
        self.config = config
        self.strategies = strategies or PortalPage(config.student_name_selector)
        self.emitter = emitter or NullEmitter()
        self.state = PipelineState.INIT
        self.current_step: str | None = None
        self.history: list[PipelineState] = [PipelineState.INIT]

    async def run(self, session: SessionContext, credentials: Credentials) -> ExtractionResult:
        """Execute every step against ``session`` and aggregate the result.

        Raises:
            InvalidCredentials: The portal rejected the login.
            StepTimeout: A wait exceeded its deadline after any allowed retries.
            UpstreamMarkupMismatch: A mandatory element was missing.
            ResourceCrashed: The browser disconnected mid-run.
        """
        started = time.monotonic()
        try:
            page = session.page
            await self._connect(page)
            await self._authenticate(page, credentials)
            student_name = await self._confirm_identity(page)
            courses = await self._read_courses(page)
            await self._open_schedule(page)
            week_info = await self._extract_metadata(page)
            events = await self._extract_events(page)
            self._transition(PipelineState.DONE)
            log.info(
                "pipeline_completed",
                events=len(events),
                courses=len(courses),
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            return ExtractionResult(
                student_name=student_name,
                week_info=week_info,
                courses=courses,
                events=events,
            )
        except ScrapingError:
            self._fail()
            raise
        except PlaywrightError as e:
            self._fail()
            if not session.handle.connected:
                raise ResourceCrashed(step=self.current_step) from e
            log.error("pipeline_browser_error", step=self.current_step, error=str(e))
            raise
        except asyncio.CancelledError:
            self._fail()
            log.info("pipeline_cancelled", step=self.current_step)
            raise
        finally:
            await session.close()

    # Steps

    async def _connect(self, page: "Page") -> None:
        async with self._step(PipelineState.CONNECTING, "connect", "Conectando con Class UTP..."):
            await retry_async(
                self._goto_portal,
                page,
                retries=self.config.navigation_retries,
                delay=self.config.navigation_retry_backoff_seconds,
                retry_on=(PlaywrightTimeoutError,),
            )

    async def _authenticate(self, page: "Page", credentials: Credentials) -> None:
        attempts = 0

        async def attempt() -> None:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                await self._goto_portal(page)
            await self._login(page, credentials)

        async with self._step(
            PipelineState.AUTHENTICATING, "authenticate", "Iniciando sesión..."
        ):
            await retry_async(
                attempt,
                retries=self.config.auth_retries,
                delay=self.config.auth_retry_backoff_seconds,
                retry_on=(PlaywrightTimeoutError,),
            )

    async def _confirm_identity(self, page: "Page") -> str | None:
        timeout_ms = self.config.student_name_timeout_seconds * 1000

        async def attempt() -> str | None:
            await page.wait_for_selector(
                self.config.student_name_selector, state="attached", timeout=timeout_ms
            )
            return await self.strategies.student_name(page)

        async with self._step(
            PipelineState.AUTHENTICATED, "student_name", "Obteniendo nombre del estudiante..."
        ):
            name = await retry_async(
                attempt,
                retries=self.config.student_name_retries,
                delay=self.config.student_name_backoff_seconds,
                retry_on=(PlaywrightTimeoutError,),
                retry_if=lambda value: value is None,
            )
        if name is None:
            log.warning("student_name_empty", selector=self.config.student_name_selector)
        self.emitter.emit("name", {"studentName": name})
        return name

    async def _read_courses(self, page: "Page") -> list[Course]:
        async with self._step(
            PipelineState.AUTHENTICATED, "courses", "Obteniendo cursos..."
        ):
            try:
                await page.wait_for_selector(
                    self.config.course_card_selector,
                    state="attached",
                    timeout=self.config.dashboard_timeout_seconds * 1000,
                )
            except PlaywrightTimeoutError:
                # Optional field: degrade to an empty list
                log.warning("courses_not_found", selector=self.config.course_card_selector)
                courses: list[Course] = []
            else:
                courses = await self.strategies.courses(page)
        self.emitter.emit(
            "courses", {"courses": [c.model_dump(by_alias=True) for c in courses]}
        )
        return courses

    async def _open_schedule(self, page: "Page") -> None:
        async with self._step(
            PipelineState.LOADING_SCHEDULE, "open_calendar", "Abriendo el calendario..."
        ):
            link = await page.query_selector(self.config.calendar_link_selector)
            if link is None:
                raise UpstreamMarkupMismatch(
                    self.config.calendar_link_selector, step=self.current_step
                )
            await link.click()
            await page.wait_for_selector(
                self.config.calendar_ready_selector,
                timeout=self.config.calendar_timeout_seconds * 1000,
            )

        async with self._step(
            PipelineState.LOADING_SCHEDULE, "week_view", "Cambiando a vista semanal..."
        ):
            button = await page.query_selector(self.config.week_view_button_selector)
            if button is None:
                log.warning(
                    "week_view_button_missing",
                    selector=self.config.week_view_button_selector,
                )
            else:
                await button.click()
                await asyncio.sleep(self.config.week_view_settle_seconds)

    async def _extract_metadata(self, page: "Page") -> WeekInfo:
        async with self._step(
            PipelineState.EXTRACTING_METADATA, "week_info", "Leyendo información de la semana..."
        ):
            week_info = await self.strategies.week_info(page)
        self.emitter.emit("week", {"weekInfo": week_info.model_dump(by_alias=True)})
        return week_info

    async def _extract_events(self, page: "Page") -> list["Event"]:
        async with self._step(
            PipelineState.EXTRACTING_EVENTS, "events", "Extrayendo eventos..."
        ):
            events = await self.strategies.events(page)
        self.emitter.emit(
            "events", {"events": [e.model_dump(by_alias=True) for e in events]}
        )
        return events

    # Helpers

    async def _goto_portal(self, page: "Page") -> None:
        await page.goto(
            self.config.portal_url,
            wait_until="networkidle",
            timeout=self.config.navigation_timeout_seconds * 1000,
        )

    async def _login(self, page: "Page", credentials: Credentials) -> None:
        if await page.query_selector(self.config.authenticated_selector) is not None:
            log.info("already_authenticated")
            return

        await page.wait_for_selector(
            self.config.username_selector,
            timeout=self.config.login_form_timeout_seconds * 1000,
        )
        await page.fill(self.config.username_selector, credentials.username)
        await page.fill(
            self.config.password_selector, credentials.password.get_secret_value()
        )
        async with page.expect_navigation(
            wait_until="networkidle",
            timeout=self.config.login_navigation_timeout_seconds * 1000,
        ):
            await page.click(self.config.submit_selector)

        if await page.query_selector(self.config.login_error_selector) is not None:
            log.info("login_rejected")
            raise InvalidCredentials(step=self.current_step)
        log.info("login_succeeded")

    @asynccontextmanager
    async def _step(self, state: PipelineState, step: str, message: str) -> AsyncIterator[None]:
        self._transition(state)
        self.current_step = step
        self.emitter.emit("status", {"step": step, "state": state.value, "message": message})
        started = time.monotonic()
        try:
            yield
        except PlaywrightTimeoutError as e:
            log.warning("step_timeout", step=step, error=str(e))
            raise StepTimeout(step) from e
        log.info(
            "step_completed",
            step=step,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    def _transition(self, state: PipelineState) -> None:
        if state is not self.state:
            log.debug("pipeline_transition", from_state=self.state.value, to_state=state.value)
            self.state = state
            self.history.append(state)

    def _fail(self) -> None:
        if self.state is not PipelineState.FAILED:
            log.warning("pipeline_failed", step=self.current_step, state=self.state.value)
        self._transition(PipelineState.FAILED)


def summarize(result: ExtractionResult) -> dict[str, Any]:
    """Compact counts for logs."""
    kinds: dict[str, int] = {}
    for event in result.events:
        kinds[event.kind] = kinds.get(event.kind, 0) + 1
    return {"courses": len(result.courses), "events": kinds}

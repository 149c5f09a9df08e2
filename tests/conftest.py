import asyncio
from contextlib import asynccontextmanager
from typing import Any

import pytest
from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from src.classutp.browser import ResourceHandle
from src.classutp.config import ScraperConfig
from src.classutp.errors import BrowserLaunchError

VALID_USERNAME = "U20201234"
VALID_PASSWORD = "clave-segura"

LOGIN_HTML = """
<html><body>
<form id="kc-form-login" method="post">
  <input id="username" name="username"/>
  <input id="password" name="password" type="password"/>
  <input id="kc-login" type="submit" value="Iniciar sesión"/>
</form>
</body></html>
"""

LOGIN_ERROR_HTML = """
<html><body>
<form id="kc-form-login" method="post">
  <input id="username" name="username"/>
  <span id="input-error">Usuario o contraseña inválidos.</span>
  <input id="password" name="password" type="password"/>
  <input id="kc-login" type="submit" value="Iniciar sesión"/>
</form>
</body></html>
"""

DASHBOARD_HTML = """
<html><body>
<div id="app">
  <div class="header"><p class="text-body font-bold">Juan   Pérez</p></div>
  <div class="layout">
    <div class="sidebar"><a title="Calendario" href="/calendario">Calendario</a></div>
    <div class="main">
      <div class="items-center grid mt-xxlg sc-kvZOFW ibxudr">
        <div data-testid="course-card-container">
          <p class="font-black">Cálculo
             Aplicado</p>
          <p class="text-small-02 lg:text-body text-neutral-02">100000MA01 - Presencial</p>
          <p class="text-small-02">Docente: <span class="capitalize">maría lópez</span></p>
        </div>
        <div data-testid="course-card-container">
          <p class="font-black">Programación Orientada a Objetos</p>
          <p class="text-small-02 lg:text-body text-neutral-02">Virtual en vivo</p>
        </div>
      </div>
    </div>
  </div>
</div>
</body></html>
"""

CALENDAR_HTML = """
<html><body>
<div id="app">
  <div class="header"><p class="text-body font-bold">Juan Pérez</p></div>
  <div class="layout">
    <div class="sidebar"><a title="Calendario" href="/calendario">Calendario</a></div>
    <div class="main">
      <div class="toolbar"></div>
      <div class="page">
        <div><div><div><div>
          <div class="calendar-header">
            <div class="week-meta">
              <div><p>Ciclo 2025 - 2</p></div>
              <div><p>Semana 7</p><p>6 oct - 12 oct</p></div>
            </div>
            <div class="calendar fc">
              <div class="fc-header-toolbar">
                <button class="fc-timeGridWeek-button">semana</button>
              </div>
              <div class="fc-view-harness">
                <table>
                  <thead><tr>
                    <th class="fc-col-header-cell" data-date="2025-10-06">
                      <div class="fc-col-header-cell-cushion"><div>lun. 6</div></div>
                    </th>
                    <th class="fc-col-header-cell" data-date="2025-10-08">
                      <div class="fc-col-header-cell-cushion"><div>mié. 8</div></div>
                    </th>
                  </tr></thead>
                  <tbody>
                    <tr><td>
                      <div class="fc-daygrid-event-harness">
                        <a class="fc-daygrid-event">
                          <div data-testid="multiple-day-event-card-container">
                            <span class="font-black">Inglés II</span>
                            <span class="font-bold text-body rounded-lg">Virtual asincrónico</span>
                          </div>
                        </a>
                      </div>
                    </td></tr>
                    <tr>
                      <td class="fc-timegrid-col fc-day fc-day-mon" data-date="2025-10-06">
                        <div class="fc-timegrid-event-harness">
                          <a class="fc-timegrid-event">
                            <div data-testid="single-day-event-card-container">
                              <p class="font-black">Cálculo Aplicado</p>
                              <p class="mt-sm text-neutral-04 text-small-02">08:00 - 10:00</p>
                              <span class="font-bold text-body rounded-lg">Presencial</span>
                            </div>
                          </a>
                        </div>
                      </td>
                      <td class="fc-timegrid-col fc-day fc-day-wed" data-date="2025-10-08">
                        <div class="fc-timegrid-event-harness">
                          <a class="fc-timegrid-event">
                            <div data-testid="single-day-activity-card-container">
                              <p id="activity-name-text">Tarea 1</p>
                              <p id="course-name-text">Cálculo Aplicado</p>
                              <div data-testid="activity-state-tag-container"><span>Por entregar</span></div>
                            </div>
                          </a>
                        </div>
                      </td>
                    </tr>
                  </tbody>
                </table>
              </div>
            </div>
          </div>
        </div></div></div></div>
      </div>
    </div>
  </div>
</div>
</body></html>
"""

BLANK_HTML = "<html><body></body></html>"


class FakePortal:
    """Scriptable stand-in for the remote site shared by every fake page.

    Tests tweak the knobs below to simulate slow navigations, rejected
    logins, late-rendering elements and browser crashes.
    """

    def __init__(self) -> None:
        self.username = VALID_USERNAME
        self.password = VALID_PASSWORD
        self.session_authenticated = False
        self.html: dict[str, str] = {
            "blank": BLANK_HTML,
            "login": LOGIN_HTML,
            "login_error": LOGIN_ERROR_HTML,
            "dashboard": DASHBOARD_HTML,
            "calendar": CALENDAR_HTML,
        }
        # Failure knobs
        self.goto_timeouts = 0
        self.goto_sleep = 0.0
        self.login_hangs = 0
        self.selector_delays: dict[str, int] = {}
        self.crash_on_calendar = False
        # Observations
        self.goto_calls = 0
        self.fills: list[tuple] = []
        self.submit_calls = 0
        self.week_view_clicked = False
        self.wait_calls: dict[str, int] = {}
        self.goto_started = asyncio.Event()


class FakeElement:
    def __init__(self, page: "FakePage", selector: str):
        self._page = page
        self.selector = selector

    async def click(self) -> None:
        await self._page.click(self.selector)


class FakePage:
    def __init__(self, context: "FakeContext", portal: FakePortal):
        self.context = context
        self.portal = portal
        self.state = "blank"
        self.url = "about:blank"
        self.routes: list[str] = []
        self.default_timeout: float | None = None
        self.closed = False
        self._navigation_timed_out = False

    # Navigation

    async def goto(self, url: str, wait_until: str | None = None, timeout: float | None = None):
        self.portal.goto_calls += 1
        self.portal.goto_started.set()
        if self.portal.goto_sleep:
            await asyncio.sleep(self.portal.goto_sleep)
        if self.portal.goto_timeouts > 0:
            self.portal.goto_timeouts -= 1
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded navigating to {url}")
        self.url = url
        self.state = "dashboard" if self.portal.session_authenticated else "login"

    @asynccontextmanager
    async def expect_navigation(self, wait_until: str | None = None, timeout: float | None = None):
        self._navigation_timed_out = False
        yield
        if self._navigation_timed_out:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for navigation")

    # DOM

    def _soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.portal.html[self.state], "html.parser")

    async def content(self) -> str:
        return self.portal.html[self.state]

    async def query_selector(self, selector: str) -> FakeElement | None:
        if self._soup().select_one(selector) is None:
            return None
        return FakeElement(self, selector)

    async def wait_for_selector(self, selector: str, state: str | None = None, timeout: float | None = None):
        self.portal.wait_calls[selector] = self.portal.wait_calls.get(selector, 0) + 1
        pending = self.portal.selector_delays.get(selector, 0)
        if pending > 0:
            self.portal.selector_delays[selector] = pending - 1
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        element = await self.query_selector(selector)
        if element is None:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        return element

    async def fill(self, selector: str, value: str) -> None:
        self.portal.fills.append((selector, value))

    async def click(self, selector: str) -> None:
        portal = self.portal
        if selector == "#kc-login":
            portal.submit_calls += 1
            if portal.login_hangs > 0:
                portal.login_hangs -= 1
                self._navigation_timed_out = True
                return
            filled = dict(portal.fills[-2:])
            if filled.get("#username") == portal.username and filled.get("#password") == portal.password:
                portal.session_authenticated = True
                self.state = "dashboard"
            else:
                self.state = "login_error"
        elif selector == 'a[title="Calendario"]':
            if portal.crash_on_calendar:
                self.context.browser.crash()
                raise PlaywrightError("Target page, context or browser has been closed")
            self.state = "calendar"
        elif selector == ".fc-timeGridWeek-button, .fc-week-button":
            portal.week_view_clicked = True

    # Setup

    async def route(self, pattern: str, handler: Any) -> None:
        self.routes.append(pattern)

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    def set_default_navigation_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, browser: "FakeBrowser", portal: FakePortal, options: dict[str, Any]):
        self.browser = browser
        self.portal = portal
        self.options = options
        self.pages: list[FakePage] = []
        self.close_calls = 0

    async def new_page(self) -> FakePage:
        page = FakePage(self, self.portal)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.close_calls += 1
        if self in self.browser.contexts:
            self.browser.contexts.remove(self)
        if not self.browser.is_connected():
            raise PlaywrightError("Target page, context or browser has been closed")


class FakeBrowser:
    def __init__(self, portal: FakePortal, *, smoke_fails: bool = False):
        self.portal = portal
        self.contexts: list[FakeContext] = []
        self.all_contexts: list[FakeContext] = []
        self.smoke_fails = smoke_fails
        self.smoke_delay = 0.0
        self.close_delay = 0.0
        self.close_calls = 0
        self._connected = True

    def is_connected(self) -> bool:
        return self._connected

    def crash(self) -> None:
        self._connected = False

    async def new_context(self, **options: Any) -> FakeContext:
        if not self._connected:
            raise PlaywrightError("Browser has been closed")
        context = FakeContext(self, self.portal, options)
        self.contexts.append(context)
        self.all_contexts.append(context)
        return context

    async def new_page(self):
        if self.smoke_delay:
            await asyncio.sleep(self.smoke_delay)
        if self.smoke_fails:
            raise PlaywrightError("Renderer crashed")
        return FakePage(FakeContext(self, self.portal, {}), self.portal)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self._connected = False


class FakeLauncher:
    """Pool launcher producing handles around FakeBrowser instances."""

    def __init__(self, portal: FakePortal):
        self.portal = portal
        self.browsers: list[FakeBrowser] = []
        self.fail_next = 0
        self.smoke_fail_next = 0
        self.launch_delay = 0.0
        self.smoke_delay = 0.0
        self.started = 0
        self.stopped = 0

    @property
    def launches(self) -> int:
        return len(self.browsers)

    async def start(self) -> None:
        self.started += 1

    async def stop(self) -> None:
        self.stopped += 1

    async def launch(self) -> ResourceHandle:
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise BrowserLaunchError("launch failed")
        smoke_fails = self.smoke_fail_next > 0
        if smoke_fails:
            self.smoke_fail_next -= 1
        browser = FakeBrowser(self.portal, smoke_fails=smoke_fails)
        browser.smoke_delay = self.smoke_delay
        self.browsers.append(browser)
        return ResourceHandle(browser)

    def open_contexts(self) -> int:
        return sum(len(b.contexts) for b in self.browsers)

    def all_contexts(self) -> list[FakeContext]:
        return [c for b in self.browsers for c in b.all_contexts]


def make_config(**overrides: Any) -> ScraperConfig:
    values: dict[str, Any] = dict(
        pool_poll_interval_seconds=0.01,
        pool_acquire_timeout_seconds=1.0,
        pool_health_check_interval_seconds=0,
        navigation_retry_backoff_seconds=0,
        auth_retry_backoff_seconds=0,
        student_name_backoff_seconds=0,
        week_view_settle_seconds=0,
        session_ceiling_seconds=5,
        rate_limit_requests=100,
    )
    values.update(overrides)
    return ScraperConfig(**values)


@pytest.fixture
def config() -> ScraperConfig:
    return make_config()


@pytest.fixture
def portal() -> FakePortal:
    return FakePortal()


@pytest.fixture
def launcher(portal: FakePortal) -> FakeLauncher:
    return FakeLauncher(portal)

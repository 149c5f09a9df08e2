"""Service configuration loaded from environment variables.

Every tunable of the browser pool, the step pipeline and the request gate
lives here so that the core never hardcodes a timeout, a retry count or a
selector.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--window-size=1920,1080",
]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


class ScraperConfig(BaseSettings):
    """Service configuration loaded from environment variables.

    Settings are loaded from environment variables with sensible defaults.
    For local development, create a .env file in the project root.
    """

    # Portal and browser
    portal_url: str = Field(
        default="https://class.utp.edu.pe/",
        description="Class UTP portal entry URL",
    )
    browser_executable_path: str | None = Field(
        default=None,
        description="Chromium binary; unset uses the Playwright-managed build",
    )
    browser_headless: bool = Field(default=True)
    browser_args: list[str] = Field(default_factory=lambda: list(DEFAULT_BROWSER_ARGS))
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    viewport_width: int = Field(default=1920)
    viewport_height: int = Field(default=1080)
    block_resource_types: list[str] = Field(
        default_factory=lambda: ["image", "media", "font"],
        description="Playwright resource types aborted on every session page",
    )

    # Pool and admission
    gate_mode: Literal["single", "pool"] = Field(
        default="single",
        description="single = one scrape per process, pool = queue inside the pool",
    )
    pool_max_size: int = Field(default=2, ge=1)
    pool_prewarm: bool = Field(
        default=False,
        description="Launch one browser at startup to hide the cold-start cost",
    )
    pool_acquire_timeout_seconds: float = Field(default=30.0)
    pool_poll_interval_seconds: float = Field(default=0.5)
    pool_health_check_interval_seconds: float = Field(default=90.0)
    pool_max_handle_age_seconds: float = Field(default=600.0)
    browser_launch_timeout_seconds: float = Field(default=30.0)

    # Step timeouts
    navigation_timeout_seconds: float = Field(default=60.0)
    login_form_timeout_seconds: float = Field(default=30.0)
    login_navigation_timeout_seconds: float = Field(default=60.0)
    student_name_timeout_seconds: float = Field(default=30.0)
    dashboard_timeout_seconds: float = Field(default=10.0)
    calendar_timeout_seconds: float = Field(default=60.0)
    week_view_settle_seconds: float = Field(default=3.0)

    # Retries (N retries = at most N + 1 invocations)
    navigation_retries: int = Field(default=1, ge=0)
    navigation_retry_backoff_seconds: float = Field(default=2.0)
    auth_retries: int = Field(default=1, ge=0)
    auth_retry_backoff_seconds: float = Field(default=2.0)
    student_name_retries: int = Field(default=2, ge=0)
    student_name_backoff_seconds: float = Field(default=1.0)

    # Request gate
    session_ceiling_seconds: float = Field(
        default=300.0,
        description="Watchdog: a session running longer than this is cancelled",
    )
    busy_retry_after_seconds: int = Field(default=30)
    rate_limit_requests: int = Field(default=5, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0)

    # HTTP surface
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    allowed_origins: list[str] = Field(
        default_factory=lambda: [
            "http://127.0.0.1:5500",
            "https://utpschedule.vercel.app",
        ]
    )
    min_username_length: int = Field(default=3)
    min_password_length: int = Field(default=4)
    progress_queue_size: int = Field(default=64, ge=4)

    # Logging
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (for production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # CSS selectors (override when the portal markup drifts)
    username_selector: str = Field(default="#username")
    password_selector: str = Field(default="#password")
    submit_selector: str = Field(default="#kc-login")
    login_error_selector: str = Field(
        default="#input-error, .kc-feedback-text, .alert-error",
        description="Marker rendered by the login page after a rejected submit",
    )
    authenticated_selector: str = Field(
        default='a[title="Calendario"]',
        description="Element only present once the dashboard is loaded",
    )
    student_name_selector: str = Field(default=".text-body.font-bold")
    course_card_selector: str = Field(default='[data-testid="course-card-container"]')
    calendar_link_selector: str = Field(default='a[title="Calendario"]')
    calendar_ready_selector: str = Field(default=".fc-view-harness")
    week_view_button_selector: str = Field(
        default=".fc-timeGridWeek-button, .fc-week-button"
    )

    model_config = {
        "env_prefix": "",
        "case_sensitive": False,
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# Singleton pattern
_config: ScraperConfig | None = None


def get_config() -> ScraperConfig:
    """Get the service configuration singleton.

    Returns:
        ScraperConfig: Service configuration instance
    """
    global _config
    if _config is None:
        _config = ScraperConfig()
    return _config

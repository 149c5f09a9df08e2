"""Error hierarchy for scraping retry classification and HTTP mapping.

The transient/permanent split lets tenacity retry decorators classify
failures automatically (retry a timeout, never retry a rejected login).
Every concrete error also carries the stable ``code`` and HTTP status the
API surfaces to clients.

Example usage with tenacity:
    @retry(retry=retry_if_exception_type(TransientError), stop=stop_after_attempt(3))
    async def open_portal(page):
        ...
"""

from typing import Any


class ScrapingError(Exception):
    """Base exception for all scraping errors."""

    code = "ScrapingError"
    status_code = 500
    default_message = "Error al obtener eventos. Intenta más tarde."

    def __init__(
        self,
        message: str | None = None,
        *,
        step: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.step = step
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        """JSON body returned to clients and sent as the SSE ``error`` event."""
        payload: dict[str, Any] = {
            "success": False,
            "code": self.code,
            "error": self.message,
        }
        if self.step:
            payload["step"] = self.step
        if self.retry_after is not None:
            payload["retryAfter"] = self.retry_after
        return payload


class TransientError(ScrapingError):
    """Temporary failure that may succeed on retry.

    Examples: navigation timeouts, a crashed browser, no free browser slot.
    """


class PermanentError(ScrapingError):
    """Failure that won't succeed on retry.

    Examples: bad request payload, rejected credentials, missing mandatory element.
    """


class InvalidInput(PermanentError):
    """Missing or malformed credentials in the request."""

    code = "InvalidInput"
    status_code = 400
    default_message = "Se requieren usuario y contraseña."


class InvalidCredentials(PermanentError):
    """The portal rejected the submitted username/password.

    Never retried: a second submit only burns a browser slot.
    """

    code = "InvalidCredentials"
    status_code = 401
    default_message = "Credenciales inválidas. Verifica tu usuario y contraseña."


class UpstreamMarkupMismatch(PermanentError):
    """A mandatory page element was not found although the page loaded."""

    code = "UpstreamMarkupMismatch"
    status_code = 502
    default_message = "El portal cambió su estructura; no se pudo continuar."

    def __init__(self, element: str, *, step: str | None = None) -> None:
        self.element = element
        super().__init__(
            f"{self.default_message} (elemento: {element})",
            step=step,
        )


class StepTimeout(TransientError):
    """A bounded wait exceeded its deadline."""

    code = "StepTimeout"
    status_code = 408
    default_message = "El portal tardó demasiado en responder."

    def __init__(self, step: str, message: str | None = None) -> None:
        super().__init__(
            message or f"{self.default_message} (paso: {step})",
            step=step,
        )


class SessionTimeout(StepTimeout):
    """The whole session ran past the watchdog ceiling."""

    def __init__(self, ceiling_seconds: float) -> None:
        self.ceiling_seconds = ceiling_seconds
        super().__init__(
            "session",
            f"La sesión superó el tiempo máximo de {int(ceiling_seconds)} segundos.",
        )


class CapacityError(TransientError):
    """No capacity to serve the request right now; the client should retry later."""

    code = "CapacityError"
    status_code = 503
    default_message = "El servicio está ocupado. Intenta nuevamente en unos segundos."


class PoolExhausted(CapacityError):
    """No browser became available within the acquisition timeout."""

    code = "PoolExhausted"


class CapacityRejected(CapacityError):
    """The single-flight gate is already serving another session."""

    code = "CapacityRejected"


class RateLimitExceeded(CapacityRejected):
    """The caller exceeded its request quota for the current window."""

    code = "RateLimitExceeded"
    status_code = 429
    default_message = "Demasiadas solicitudes. Espera un momento antes de reintentar."


class BrowserLaunchError(TransientError):
    """The browser process could not be started or failed its smoke test."""

    code = "BrowserLaunchError"
    status_code = 503
    default_message = "No se pudo iniciar el navegador. Intenta más tarde."


class ResourceCrashed(TransientError):
    """The browser process disconnected or crashed mid-session."""

    code = "ResourceCrashed"
    status_code = 500
    default_message = "El navegador se cerró inesperadamente. Intenta nuevamente."

"""HTTP surface: JSON and Server-Sent-Events endpoints over ScheduleService.

Routes:
  POST     /api/events         -> one JSON response when the scrape finishes
  GET|POST /api/events-stream  -> SSE progress stream ending in done/error
  GET      /status             -> gate diagnostics
  GET      /health             -> liveness + pool counts
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import SecretStr
from slowapi.util import get_remote_address

from src.classutp.config import ScraperConfig, get_config
from src.classutp.errors import InvalidInput, ScrapingError
from src.classutp.logging import get_logger, setup_logging
from src.classutp.models import Credentials
from src.classutp.progress import BufferedEmitter, StreamEmitter, format_sse
from src.classutp.service import ScheduleService, internal_error_payload

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}


def validate_credentials(data: dict[str, Any], config: ScraperConfig) -> Credentials:
    """Build Credentials from a request body or query mapping.

    Raises:
        InvalidInput: If either field is missing, not a string, or too short.
    """
    username = data.get("username")
    password = data.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        raise InvalidInput()
    username = username.strip()
    if not username or not password:
        raise InvalidInput()
    if (
        len(username) < config.min_username_length
        or len(password) < config.min_password_length
    ):
        raise InvalidInput("Usuario o contraseña demasiado cortos.")
    return Credentials(username=username, password=SecretStr(password))


async def _read_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise InvalidInput("El cuerpo de la solicitud no es JSON válido.") from e
    if not isinstance(data, dict):
        raise InvalidInput()
    return data


def client_identity(request: Request) -> str:
    """Best-effort source address, honouring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


def _error_response(error: ScrapingError) -> JSONResponse:
    headers = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(error.to_payload(), status_code=error.status_code, headers=headers)


def _consume_task_result(task: asyncio.Task) -> None:
    # The stream already carried the error event; keep asyncio from warning
    if not task.cancelled():
        task.exception()


def create_app(
    config: ScraperConfig | None = None,
    service: ScheduleService | None = None,
) -> FastAPI:
    """Build the FastAPI app. Tests inject a service built on fakes."""
    config = config or get_config()
    service = service or ScheduleService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="Class UTP schedule API", lifespan=lifespan)
    app.state.service = service
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    @app.exception_handler(ScrapingError)
    async def scraping_error_handler(request: Request, exc: ScrapingError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_error", path=request.url.path, type=type(exc).__name__)
        return JSONResponse(internal_error_payload(), status_code=500)

    @app.post("/api/events")
    async def fetch_events(request: Request) -> dict[str, Any]:
        credentials = validate_credentials(await _read_body(request), config)
        result = await service.fetch_schedule(
            credentials, BufferedEmitter(), client_id=client_identity(request)
        )
        return result.to_payload()

    @app.api_route("/api/events-stream", methods=["GET", "POST"])
    async def stream_events(request: Request) -> StreamingResponse:
        if request.method == "POST":
            data = await _read_body(request)
        else:
            data = dict(request.query_params)
        credentials = validate_credentials(data, config)

        emitter = StreamEmitter(config.progress_queue_size)
        task = asyncio.create_task(
            service.fetch_schedule(
                credentials, emitter, client_id=client_identity(request)
            )
        )
        task.add_done_callback(lambda _: emitter.close())
        task.add_done_callback(_consume_task_result)

        async def generate():
            try:
                async for tag, payload in emitter.messages():
                    yield format_sse(tag, payload)
            finally:
                # Client went away or the stream finished; either way the
                # session must not keep its browser and gate slot
                emitter.close()
                if not task.done():
                    logger.info("stream_client_disconnected")
                    task.cancel()

        return StreamingResponse(
            generate(), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @app.get("/status")
    async def status() -> dict[str, Any]:
        gate_status = service.gate.status().model_dump(mode="json", by_alias=True)
        gate_status["uptime"] = round(service.uptime, 3)
        return gate_status

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "uptime": round(service.uptime, 3),
            "busy": service.gate.busy,
            "pool": service.pool.stats().model_dump(by_alias=True),
        }

    return app


def run() -> None:
    """Entry point: configure logging and serve with uvicorn."""
    import uvicorn

    config = get_config()
    setup_logging(json_output=config.log_json, log_level=config.log_level)
    uvicorn.run(create_app(config), host=config.host, port=config.port)

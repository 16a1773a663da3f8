"""FastAPI application.

With ``use_temporal`` the API only publishes events (the worker runs the
pipeline). Without it, the API process hosts the in-memory bus, runs
workflows itself and sweeps stuck runs.
"""

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from flyer_pipeline.api.routes import flyers, health
from flyer_pipeline.config import settings
from flyer_pipeline.engine.reaper import RunReaper
from flyer_pipeline.logging import configure_logging
from flyer_pipeline.services import build_services

configure_logging("api")

logger = structlog.get_logger()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    temporal_client = None
    if settings.use_temporal:
        from flyer_pipeline.worker import create_temporal_client

        temporal_client = await create_temporal_client()

    services = build_services(temporal_client=temporal_client)
    app.state.services = services

    reaper: asyncio.Task | None = None
    if temporal_client is None:
        reaper = asyncio.create_task(RunReaper(services.engine).run_forever())
    logger.info("api_started", use_temporal=settings.use_temporal, environment=settings.environment)
    try:
        yield
    finally:
        if reaper is not None:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
        await services.close()
        logger.info("api_stopped")


app = FastAPI(
    title="Flyer Pipeline API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a unique request ID to every request for log correlation.

    Sets the ID in structlog context vars (appears in all log entries for the
    request) and returns it in the X-Request-ID response header.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, service="api")
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _with_request_id(request: Request, response: JSONResponse) -> JSONResponse:
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return the ErrorResponse shape for request validation errors instead of {"detail": [...]}."""
    messages = []
    for err in exc.errors():
        loc = " -> ".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    response = JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "; ".join(messages),
            "retryable": False,
        },
    )
    return _with_request_id(request, response)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return consistent ErrorResponse JSON for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    response = JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "retryable": True,
        },
    )
    return _with_request_id(request, response)


app.include_router(health.router)
app.include_router(flyers.router, prefix="/api/v1")

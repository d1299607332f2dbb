"""FluxERP Backend - FastAPI Application."""

import uuid
from contextlib import asynccontextmanager
from email.message import EmailMessage
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from fluxerp.config import Settings, get_settings
from fluxerp.dependencies import build_services
from fluxerp.errors import (
    APIError,
    RateLimitExceededError,
    StoreUnavailableError,
    api_error_handler,
    http_exception_handler,
    rate_limit_error_handler,
    unhandled_exception_handler,
)
from fluxerp.logging import get_logger, set_request_id, setup_logging
from fluxerp.ratelimit import general_limiter
from fluxerp.routes import health, jobs

# Initialize logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting FluxERP backend",
        env=settings.env,
        host=settings.server_host,
        port=settings.server_port,
    )

    services = await build_services(settings, email_transport=app.state.email_transport)
    app.state.services = services

    if settings.workers_enabled:
        try:
            await services.workers.start()
        except StoreUnavailableError as e:
            logger.error("Workers not started", error=str(e))
    else:
        logger.info("Workers disabled for this process")

    yield

    # Cleanup
    services.shutting_down = True
    logger.info("Shutting down FluxERP backend")
    await services.workers.stop(settings.worker_shutdown_timeout_seconds)
    await services.close()


async def request_id_middleware(request: Request, call_next):
    """Extract or generate request ID and propagate it."""
    request_id = request.headers.get("x-request-id")
    if not request_id:
        request_id = str(uuid.uuid4())

    # Set in context for logging
    set_request_id(request_id)

    response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


async def logging_middleware(request: Request, call_next):
    """Log requests and responses."""
    logger.info(
        "Request started",
        method=request.method,
        path=request.url.path,
        client=request.client.host if request.client else None,
    )

    response = await call_next(request)

    logger.info(
        "Request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
    )
    return response


def create_app(
    settings: Settings | None = None,
    email_transport: Callable[[EmailMessage], Awaitable[None]] | None = None,
) -> FastAPI:
    """Create the FastAPI application; services are built when it starts."""
    settings = settings or get_settings()

    app = FastAPI(
        title="FluxERP Backend",
        description="ERP API with background jobs, caching and rate limiting",
        version="0.1.0",
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.email_transport = email_transport

    # Register exception handlers
    # Note: type: ignore needed due to FastAPI's overly strict ExceptionHandler typing
    app.add_exception_handler(RateLimitExceededError, rate_limit_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(APIError, api_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)  # type: ignore[arg-type]

    if settings.env == "dev":
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Registered last so it runs first and the request ID is set for logging
    app.middleware("http")(logging_middleware)
    app.middleware("http")(request_id_middleware)

    # Register routers; /health and /health/live are exempt from the general policy
    app.include_router(health.router, tags=["Health"], dependencies=[Depends(general_limiter)])
    app.include_router(
        jobs.router,
        prefix="/api/jobs",
        tags=["Jobs"],
        dependencies=[Depends(general_limiter)],
    )
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "fluxerp.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.env == "dev",
    )

"""Health check endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fluxerp.dependencies import ServicesDep

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "fluxerp-backend"
    version: str = "0.1.0"
    redis: str = "not_configured"
    job_store: str = "ok"
    workers: str = "stopped"


@router.get("/health", response_model=HealthResponse)
async def health_check(services: ServicesDep) -> HealthResponse:
    """
    Health check endpoint.

    Reports store connectivity. Exempt from rate limiting; used by load
    balancers and container orchestrators.
    """
    redis_status = "not_configured"
    if services.settings.redis_url:
        redis_status = "ok" if await services.cache.is_available() else "error"

    job_store_status = "ok" if await services.job_store.ping() else "error"
    workers_status = "running" if services.workers.is_running else "stopped"

    overall_status = "ok"
    if redis_status == "error" or job_store_status == "error":
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        redis=redis_status,
        job_store=job_store_status,
        workers=workers_status,
    )


@router.get("/health/live")
async def liveness(services: ServicesDep) -> JSONResponse:
    """Liveness probe; 503 once shutdown has begun."""
    if services.shutting_down:
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    return JSONResponse(content={"status": "alive"})


@router.get("/health/ready")
async def readiness(services: ServicesDep) -> JSONResponse:
    """Readiness probe; 503 while shutting down or when the job store is unreachable."""
    if services.shutting_down:
        return JSONResponse(status_code=503, content={"status": "shutting_down"})
    if not await services.job_store.ping():
        return JSONResponse(status_code=503, content={"status": "not_ready", "job_store": "error"})
    return JSONResponse(content={"status": "ready"})

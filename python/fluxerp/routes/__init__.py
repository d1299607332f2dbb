"""API routes for the FluxERP backend."""

from fluxerp.routes import health, jobs

__all__ = [
    "health",
    "jobs",
]

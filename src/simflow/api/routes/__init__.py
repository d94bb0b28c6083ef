"""API routes."""

from simflow.api.routes.health import router as health_router
from simflow.api.routes.projects import router as projects_router
from simflow.api.routes.requests import discussions_router
from simflow.api.routes.requests import router as requests_router

__all__ = ["health_router", "projects_router", "requests_router", "discussions_router"]

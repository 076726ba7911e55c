"""SchoolDesk API Router - aggregates all /api routes."""

from fastapi import APIRouter

from schooldesk.api import health, roles

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

# Include routers
api_router.include_router(health.router)  # /api/health, excluded from bearer auth
api_router.include_router(roles.router)

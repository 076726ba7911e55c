"""Health check endpoint with database and revocation store connectivity.

Accessible without authentication so container health checks can reach it.
"""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from schooldesk.core.database import check_db_connection

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if either the database or Redis is unavailable; without
    Redis no token can be issued or verified.
    """
    state = request.app.state
    db_healthy = await check_db_connection(state.session_maker)
    redis_healthy = await state.revocation_store.ping()

    healthy = db_healthy and redis_healthy
    # Set appropriate status code for container orchestration
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=state.settings.app_version,
        database="connected" if db_healthy else "disconnected",
        redis="connected" if redis_healthy else "disconnected",
    )

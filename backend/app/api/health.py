"""Health check endpoint with database connectivity check.

Served outside ``/api`` so monitoring probes are neither authenticated nor
rate limited.
"""

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from app.core import check_db_connection, settings

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    revocations: int = 0


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

    Returns 503 if the database is unavailable.
    """
    db_healthy = await check_db_connection()

    # Set appropriate status code for container orchestration
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        revocations=len(request.app.state.revocation_store),
    )

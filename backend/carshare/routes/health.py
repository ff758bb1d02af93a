"""
Liveness and metrics endpoints.

Both are public: ``/health`` never touches the database and ``/metrics``
serves the custom Prometheus registry fed by @measure_operation and the
payment lifecycle counters.
"""

from fastapi import APIRouter, Response
from pydantic import BaseModel

from ..core.config import settings
from ..monitoring.prometheus_metrics import prometheus_metrics

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    environment: str


@router.get("/health", response_model=HealthResponse)
def health(response: Response) -> HealthResponse:
    response.headers["Cache-Control"] = "no-store"
    return HealthResponse(status="healthy", environment=settings.environment)


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
    )

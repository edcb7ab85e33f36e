from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from guardian import __version__
from guardian.api.deps import get_aggregator
from guardian.clusters.aggregator import ClusterAggregator

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str = __version__


class ReadinessResponse(BaseModel):
    status: str
    clusters: dict[str, bool]


@router.get("/health", response_model=HealthResponse, status_code=status.HTTP_200_OK)
async def health_check() -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(status="healthy")


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    response: Response,
    aggregator: ClusterAggregator = Depends(get_aggregator),  # noqa: B008
) -> ReadinessResponse:
    """Ready once every cluster's policy store completed its initial sync."""
    clusters = {cid: runtime.ready for cid, runtime in sorted(aggregator.runtimes().items())}
    ready = bool(clusters) and all(clusters.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status="ready" if ready else "not_ready", clusters=clusters)

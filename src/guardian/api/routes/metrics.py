from __future__ import annotations

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    """Prometheus exposition of Guardian's counters."""
    return Response(
        content=generate_latest(request.app.state.metrics_registry),
        media_type=CONTENT_TYPE_LATEST,
    )

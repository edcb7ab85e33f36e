from __future__ import annotations

from fastapi import HTTPException, Request, status

from guardian.clusters.aggregator import ClusterAggregator
from guardian.clusters.runtime import ClusterRuntime
from guardian.config import Settings, get_settings


def get_aggregator(request: Request) -> ClusterAggregator:
    return request.app.state.aggregator


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def resolve_runtime(
    aggregator: ClusterAggregator, settings: Settings, cluster_id: str | None
) -> ClusterRuntime:
    """Find the runtime a webhook call is addressed to."""
    target = cluster_id or settings.cluster_id
    runtime = aggregator.runtime(target)
    if runtime is None and cluster_id is None and len(aggregator.runtimes()) == 1:
        runtime = next(iter(aggregator.runtimes().values()))
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown cluster: {target}",
        )
    return runtime

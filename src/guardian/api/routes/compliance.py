"""Cross-cluster compliance view."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from guardian.api.deps import get_aggregator
from guardian.clusters.aggregator import ClusterAggregator

router = APIRouter()


@router.get("/compliance")
async def get_compliance(
    aggregator: ClusterAggregator = Depends(get_aggregator),  # noqa: B008
) -> dict[str, Any]:
    """Current AggregatedComplianceView."""
    return aggregator.current_view().to_dict()


@router.get("/compliance/{cluster_id}/policies")
async def get_cluster_policies(
    cluster_id: str,
    aggregator: ClusterAggregator = Depends(get_aggregator),  # noqa: B008
) -> dict[str, Any]:
    """Per-policy reconcile phase and status of one cluster."""
    runtime = aggregator.runtime(cluster_id)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown cluster")

    statuses = runtime.engine.statuses()
    phases = runtime.engine.phases()
    return {
        "cluster": cluster_id,
        "policies": [
            {
                "name": name,
                "phase": phases[name].value,
                "status": statuses[name].to_dict() if name in statuses else None,
            }
            for name in sorted(phases)
        ],
    }

"""
Cross-cluster compliance models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

from guardian.reconcile.engine import ReconcilePhase


@dataclass
class ClusterHandle:
    """One configured cluster. Owned by the aggregator."""

    cluster_id: str
    api_endpoint_ref: str
    last_sync_time: datetime | None = None
    reachable: bool = False


@dataclass(frozen=True)
class ClusterPoll:
    """Raw state fetched from one cluster during a poll."""

    phases: Mapping[str, ReconcilePhase]
    allowed_total: int
    denied_total: int
    denied_last_24h: int


@dataclass(frozen=True)
class ComplianceSummary:
    """Policy health and admission outcomes of one cluster."""

    ready_policies: int
    failed_policies: int
    denied_last_24h: int
    last_sync: datetime
    pending_policies: int = 0
    allowed_total: int = 0
    denied_total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "readyPolicies": self.ready_policies,
            "failedPolicies": self.failed_policies,
            "pendingPolicies": self.pending_policies,
            "deniedLast24h": self.denied_last_24h,
            "allowedTotal": self.allowed_total,
            "deniedTotal": self.denied_total,
            "lastSync": self.last_sync.isoformat(),
        }


@dataclass(frozen=True)
class AggregatedComplianceView:
    """Compliance across all clusters. Rebuilt on every request, never patched."""

    per_cluster: Mapping[str, ComplianceSummary]
    stale_clusters: frozenset[str]
    generated_at: datetime
    _totals: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "per_cluster", MappingProxyType(dict(self.per_cluster)))
        totals = {"readyPolicies": 0, "failedPolicies": 0, "pendingPolicies": 0, "deniedLast24h": 0}
        for summary in self.per_cluster.values():
            totals["readyPolicies"] += summary.ready_policies
            totals["failedPolicies"] += summary.failed_policies
            totals["pendingPolicies"] += summary.pending_policies
            totals["deniedLast24h"] += summary.denied_last_24h
        object.__setattr__(self, "_totals", totals)

    @property
    def totals(self) -> dict[str, int]:
        """Additive merge of every cluster's summary."""
        return dict(self._totals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "perCluster": {cid: s.to_dict() for cid, s in sorted(self.per_cluster.items())},
            "staleClusters": sorted(self.stale_clusters),
            "generatedAt": self.generated_at.isoformat(),
            "totals": self.totals,
        }

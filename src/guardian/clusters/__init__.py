"""Multi-cluster ownership and compliance aggregation."""

from guardian.clusters.aggregator import ClusterAggregator, summarize
from guardian.clusters.models import (
    AggregatedComplianceView,
    ClusterHandle,
    ClusterPoll,
    ComplianceSummary,
)
from guardian.clusters.runtime import ClusterRuntime

__all__ = [
    "AggregatedComplianceView",
    "ClusterAggregator",
    "ClusterHandle",
    "ClusterPoll",
    "ClusterRuntime",
    "ComplianceSummary",
    "summarize",
]

"""
Wiring from settings to running components.
"""

from __future__ import annotations

from guardian.clusters.aggregator import ClusterAggregator
from guardian.clusters.models import ClusterHandle
from guardian.clusters.runtime import ClusterRuntime
from guardian.config import ClusterConfig, Settings, load_clusters
from guardian.reconcile.kubernetes import KubernetesPolicyApi


def kubernetes_runtime_factory(settings: Settings, clusters: list[ClusterConfig]):
    """Build runtimes whose API talks to the configured Kubernetes clusters."""
    by_id = {cluster.id: cluster for cluster in clusters}

    def factory(handle: ClusterHandle) -> ClusterRuntime:
        cluster = by_id.get(handle.cluster_id) or ClusterConfig(id=handle.cluster_id)
        api = KubernetesPolicyApi(
            kubeconfig=cluster.kubeconfig,
            context=cluster.context,
            timeout=settings.kube_request_timeout,
            finalizer_name=settings.finalizer_name,
        )
        return ClusterRuntime.from_settings(handle, api, settings)

    return factory


def build_aggregator(settings: Settings) -> ClusterAggregator:
    """Create an aggregator with one runtime per configured cluster."""
    clusters = load_clusters(settings)
    aggregator = ClusterAggregator(
        kubernetes_runtime_factory(settings, clusters),
        interval=settings.aggregation_interval,
        poll_timeout=settings.cluster_poll_timeout,
    )
    for cluster in clusters:
        aggregator.add_cluster(ClusterHandle(cluster_id=cluster.id, api_endpoint_ref=cluster.endpoint_ref))
    return aggregator

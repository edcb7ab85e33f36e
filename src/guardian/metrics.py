"""
Prometheus bridge for the in-core counters.

The engine, gate and aggregator keep plain counters; this collector reads them
at scrape time so none of the core has to know about the exposition format.
"""

from __future__ import annotations

from typing import Iterator

from prometheus_client import CollectorRegistry
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from guardian.clusters.aggregator import ClusterAggregator


class GuardianCollector(Collector):
    """Exports reconcile, admission and staleness counters for every cluster."""

    def __init__(self, aggregator: ClusterAggregator) -> None:
        self.aggregator = aggregator

    def collect(self) -> Iterator[Metric]:
        attempts = CounterMetricFamily(
            "guardian_reconcile_attempts", "Change events handled", labels=["cluster"]
        )
        successes = CounterMetricFamily(
            "guardian_reconcile_successes", "Successful reconciliations", labels=["cluster"]
        )
        failures = CounterMetricFamily(
            "guardian_reconcile_failures", "Reconciliations requeued after an error", labels=["cluster"]
        )
        invalid = CounterMetricFamily(
            "guardian_reconcile_validation_failures", "Policies rejected as invalid", labels=["cluster"]
        )
        decisions = CounterMetricFamily(
            "guardian_admission_decisions",
            "Admission decisions",
            labels=["cluster", "allowed", "policy"],
        )
        stale_polls = CounterMetricFamily(
            "guardian_cluster_stale_polls", "Failed or timed out cluster polls", labels=["cluster"]
        )
        synced = GaugeMetricFamily(
            "guardian_policy_store_synced", "1 once the policy store finished its initial sync",
            labels=["cluster"],
        )
        stale = GaugeMetricFamily(
            "guardian_cluster_stale", "1 while the cluster's summary is stale", labels=["cluster"]
        )

        stale_ids = self.aggregator.current_view().stale_clusters
        stale_counts = self.aggregator.stale_poll_counts()

        for cluster_id, runtime in sorted(self.aggregator.runtimes().items()):
            counters = runtime.engine.counters
            attempts.add_metric([cluster_id], counters.attempts)
            successes.add_metric([cluster_id], counters.successes)
            failures.add_metric([cluster_id], counters.failures)
            invalid.add_metric([cluster_id], counters.validation_failures)

            for (allowed, policy), count in sorted(
                runtime.gate.counters.snapshot().items(), key=lambda kv: (kv[0][0], kv[0][1] or "")
            ):
                decisions.add_metric(
                    [cluster_id, "true" if allowed else "false", policy or ""], count
                )

            stale_polls.add_metric([cluster_id], stale_counts.get(cluster_id, 0))
            synced.add_metric([cluster_id], 1 if runtime.ready else 0)
            stale.add_metric([cluster_id], 1 if cluster_id in stale_ids else 0)

        yield from (attempts, successes, failures, invalid, decisions, stale_polls, synced, stale)


def build_registry(aggregator: ClusterAggregator) -> CollectorRegistry:
    """Create a registry holding only Guardian's metrics."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(GuardianCollector(aggregator))
    return registry

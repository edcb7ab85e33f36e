"""Tests for per-cluster runtimes and the multi-cluster aggregator."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from guardian.clusters.aggregator import ClusterAggregator, summarize
from guardian.clusters.models import ClusterHandle, ClusterPoll
from guardian.clusters.runtime import ClusterRuntime
from guardian.core.errors import ConfigurationError, NotFoundError, TransientApiError
from guardian.policies.models import (
    Condition,
    Operator,
    Policy,
    Rule,
    Severity,
    WorkloadDescription,
)
from guardian.policies.store import PolicyStore
from guardian.reconcile.backoff import Backoff
from guardian.reconcile.engine import ReconcileEngine, ReconcilePhase
from guardian.reconcile.events import UpsertEvent
from guardian.reconcile.memory import InMemoryPolicyApi

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class StepClock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def policy(name, rules=None, severity=Severity.HIGH):
    if rules is None:
        rules = (Rule("metadata.labels.team", Operator.EXISTS),)
    return Policy(name=name, severity=severity, rules=rules)


def memory_api(*policies, ping_delay=0.0):
    api = InMemoryPolicyApi(ping_delay=ping_delay)
    for item in policies:
        api.apply(item)
    return api


def build_aggregator(apis, clock=None):
    def factory(handle):
        api = apis[handle.cluster_id]
        engine = ReconcileEngine(
            PolicyStore(handle.cluster_id), api, backoff=Backoff(base=0.005, cap=0.02)
        )
        return ClusterRuntime(handle.cluster_id, api, engine=engine)

    aggregator = ClusterAggregator(factory, interval=60, poll_timeout=0.05, clock=clock or StepClock())
    for cluster_id in apis:
        aggregator.add_cluster(ClusterHandle(cluster_id, f"context:{cluster_id}"))
    return aggregator


async def wait_ready(aggregator, timeout=2.0):
    async def _all_ready():
        while not all(runtime.ready for runtime in aggregator.runtimes().values()):
            await asyncio.sleep(0.005)
        for runtime in aggregator.runtimes().values():
            await runtime.engine.join()

    await asyncio.wait_for(_all_ready(), timeout)


def three_clusters(slow_second=True):
    return {
        "cluster-1": memory_api(policy("require-team"), policy("require-owner")),
        "cluster-2": memory_api(policy("require-team"), ping_delay=1.0 if slow_second else 0.0),
        "cluster-3": memory_api(policy("require-team"), policy("broken", rules=())),
    }


class TestSummarize:
    def test_counts_phases_and_decisions(self):
        poll = ClusterPoll(
            phases={
                "a": ReconcilePhase.READY,
                "b": ReconcilePhase.READY,
                "c": ReconcilePhase.FAILED,
                "d": ReconcilePhase.PENDING,
                "e": ReconcilePhase.RECONCILING,
                "f": ReconcilePhase.DELETING,
            },
            allowed_total=5,
            denied_total=3,
            denied_last_24h=3,
        )

        summary = summarize(poll, T0)

        assert summary.ready_policies == 2
        assert summary.failed_policies == 1
        assert summary.pending_policies == 2
        assert summary.allowed_total == 5
        assert summary.denied_total == 3
        assert summary.denied_last_24h == 3
        assert summary.last_sync == T0

    @pytest.mark.asyncio
    async def test_summary_of_live_cluster(self):
        api = memory_api()
        engine = ReconcileEngine(PolicyStore("a"), api, backoff=Backoff(base=60, cap=60))
        runtime = ClusterRuntime("a", api, engine=engine)
        engine.store.mark_synced()
        engine.start()
        try:
            engine.on_change_event(UpsertEvent(api.apply(policy("require-team"))))
            await engine.join()
            api.fail_next("update_status", TransientApiError("unavailable"))
            engine.on_change_event(UpsertEvent(api.apply(policy("flaky"))))
            await engine.join()
            engine.on_change_event(UpsertEvent(api.apply(policy("broken", rules=()))))
            await engine.join()
            api.fail_next("add_finalizer", NotFoundError("gone"))
            engine.on_change_event(UpsertEvent(api.apply(policy("late"))))
            await engine.join()

            await runtime.gate.decide(WorkloadDescription.from_manifest({"metadata": {"name": "web"}}))
            await runtime.gate.decide(
                WorkloadDescription.from_manifest({"metadata": {"name": "api", "labels": {"team": "x"}}})
            )

            summary = summarize(await runtime.poll(), T0)
        finally:
            await engine.stop()

        assert engine.phase("flaky") is ReconcilePhase.FAILED
        assert "flaky" not in engine.statuses()
        assert summary.ready_policies == 1
        assert summary.failed_policies == 2
        assert summary.pending_policies == 1
        assert summary.denied_total == 1
        assert summary.allowed_total == 1


class TestClusterAggregator:
    @pytest.mark.asyncio
    async def test_slow_cluster_is_stale_and_others_report(self):
        aggregator = build_aggregator(three_clusters())
        await aggregator.start()
        try:
            await wait_ready(aggregator)

            view = await aggregator.poll_all()

            assert view.stale_clusters == frozenset({"cluster-2"})
            assert set(view.per_cluster) == {"cluster-1", "cluster-3"}
            assert view.per_cluster["cluster-1"].ready_policies == 2
            assert view.per_cluster["cluster-3"].ready_policies == 1
            assert view.per_cluster["cluster-3"].failed_policies == 1
            assert view.totals["readyPolicies"] == 3
            assert view.totals["failedPolicies"] == 1
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_stale_cluster_keeps_last_summary(self):
        apis = three_clusters(slow_second=False)
        clock = StepClock()
        aggregator = build_aggregator(apis, clock)
        await aggregator.start()
        try:
            await wait_ready(aggregator)
            first = await aggregator.poll_all()
            assert first.stale_clusters == frozenset()
            retained = first.per_cluster["cluster-2"]

            apis["cluster-2"].ping_delay = 1.0
            clock.advance(30)
            second = await aggregator.poll_all()

            assert second.stale_clusters == frozenset({"cluster-2"})
            assert second.per_cluster["cluster-2"] == retained
            assert second.per_cluster["cluster-1"].last_sync == clock.now
            assert second.generated_at == clock.now
            handle = next(h for h in aggregator.handles() if h.cluster_id == "cluster-2")
            assert handle.reachable is False
            assert handle.last_sync_time == T0
            assert aggregator.stale_poll_counts()["cluster-2"] >= 1
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_failing_ping_marks_stale_until_recovery(self):
        apis = {"only": memory_api(policy("require-team"))}
        aggregator = build_aggregator(apis)
        await aggregator.start()
        try:
            await wait_ready(aggregator)

            apis["only"].fail_next("ping", TransientApiError("connection refused"))
            assert await aggregator.poll_cluster("only") is False
            assert aggregator.current_view().stale_clusters == frozenset({"only"})

            assert await aggregator.poll_cluster("only") is True
            assert aggregator.current_view().stale_clusters == frozenset()
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_denials_are_reported_per_cluster(self):
        apis = three_clusters(slow_second=False)
        aggregator = build_aggregator(apis)
        await aggregator.start()
        try:
            await wait_ready(aggregator)
            unlabelled = WorkloadDescription.from_manifest({"metadata": {"name": "web"}})
            await aggregator.runtime("cluster-1").gate.decide(unlabelled)

            view = await aggregator.poll_all()

            assert view.per_cluster["cluster-1"].denied_last_24h == 1
            assert view.per_cluster["cluster-3"].denied_last_24h == 0
            assert view.totals["deniedLast24h"] == 1
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_duplicate_cluster_rejected(self):
        aggregator = build_aggregator({"a": memory_api()})

        with pytest.raises(ConfigurationError):
            aggregator.add_cluster(ClusterHandle("a", "context:a"))

    @pytest.mark.asyncio
    async def test_removed_cluster_leaves_view(self):
        aggregator = build_aggregator(three_clusters(slow_second=False))
        await aggregator.start()
        try:
            await wait_ready(aggregator)
            await aggregator.poll_all()

            await aggregator.remove_cluster("cluster-3")
            view = aggregator.current_view()

            assert set(view.per_cluster) == {"cluster-1", "cluster-2"}
            assert aggregator.runtime("cluster-3") is None
            assert await aggregator.poll_cluster("cluster-3") is False
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_cluster_added_while_running_is_started(self):
        apis = {"a": memory_api(policy("require-team"))}
        aggregator = build_aggregator(apis)
        await aggregator.start()
        try:
            apis["b"] = memory_api(policy("require-team"))
            aggregator.add_cluster(ClusterHandle("b", "context:b"))
            await wait_ready(aggregator)

            view = await aggregator.poll_all()

            assert set(view.per_cluster) == {"a", "b"}
        finally:
            await aggregator.stop()

    @pytest.mark.asyncio
    async def test_view_serializes(self):
        aggregator = build_aggregator({"a": memory_api(policy("require-team"))})
        await aggregator.start()
        try:
            await wait_ready(aggregator)
            body = (await aggregator.poll_all()).to_dict()

            assert body["staleClusters"] == []
            assert body["perCluster"]["a"]["readyPolicies"] == 1
            assert body["perCluster"]["a"]["lastSync"] == T0.isoformat()
        finally:
            await aggregator.stop()


class TestClusterRuntime:
    @pytest.mark.asyncio
    async def test_watch_feed_applies_later_changes(self):
        api = memory_api(policy("require-team"))
        runtime = ClusterRuntime("a", api)
        runtime.start()
        try:
            await asyncio.wait_for(_until(lambda: runtime.ready), 2.0)

            api.apply(policy("require-owner", severity=Severity.LOW))
            await asyncio.wait_for(_until(lambda: runtime.store.get("require-owner") is not None), 2.0)
            await runtime.engine.join()

            assert runtime.engine.statuses()["require-owner"].condition is Condition.READY
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_poll_fails_when_api_unreachable(self):
        api = memory_api()
        api.fail_next("ping", TransientApiError("connection refused"))
        runtime = ClusterRuntime("a", api)

        with pytest.raises(TransientApiError):
            await runtime.poll()


async def _until(predicate):
    while not predicate():
        await asyncio.sleep(0.005)

"""
Multi-cluster compliance aggregator.

Owns one ClusterRuntime per configured cluster and polls each of them on its
own schedule. A cluster whose poll fails or times out keeps its last summary
and is flagged stale; the others are unaffected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog

from guardian.clusters.models import (
    AggregatedComplianceView,
    ClusterHandle,
    ClusterPoll,
    ComplianceSummary,
)
from guardian.clusters.runtime import ClusterRuntime
from guardian.core.errors import AggregationError, ConfigurationError
from guardian.reconcile.engine import ReconcilePhase

logger = structlog.get_logger()

RuntimeFactory = Callable[[ClusterHandle], ClusterRuntime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def summarize(poll: ClusterPoll, now: datetime) -> ComplianceSummary:
    """
    Compute a ComplianceSummary from one poll.

    Counts follow the reconcile phase, so a policy waiting out a retry is
    failed and one not yet reconciled is pending. Policies being deleted are
    not counted.
    """
    phases = list(poll.phases.values())
    return ComplianceSummary(
        ready_policies=phases.count(ReconcilePhase.READY),
        failed_policies=phases.count(ReconcilePhase.FAILED),
        pending_policies=phases.count(ReconcilePhase.PENDING) + phases.count(ReconcilePhase.RECONCILING),
        denied_last_24h=poll.denied_last_24h,
        allowed_total=poll.allowed_total,
        denied_total=poll.denied_total,
        last_sync=now,
    )


@dataclass
class _ClusterEntry:
    handle: ClusterHandle
    runtime: ClusterRuntime
    summary: ComplianceSummary | None = None
    stale: bool = True
    stale_polls: int = 0
    task: asyncio.Task[None] | None = None


class ClusterAggregator:
    """Aggregates compliance across independently managed clusters."""

    def __init__(
        self,
        runtime_factory: RuntimeFactory,
        *,
        interval: float = 30.0,
        poll_timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize aggregator.

        Args:
            runtime_factory: Builds the runtime for a cluster handle
            interval: Seconds between two polls of the same cluster
            poll_timeout: Seconds a single poll may take before the
                cluster is considered stale
        """
        self.runtime_factory = runtime_factory
        self.interval = interval
        self.poll_timeout = poll_timeout
        self.clock = clock
        self._clusters: dict[str, _ClusterEntry] = {}
        self._running = False

    # -- membership --

    def add_cluster(self, handle: ClusterHandle) -> ClusterRuntime:
        if handle.cluster_id in self._clusters:
            raise ConfigurationError("cluster already registered", {"cluster_id": handle.cluster_id})

        entry = _ClusterEntry(handle=handle, runtime=self.runtime_factory(handle))
        self._clusters[handle.cluster_id] = entry
        logger.info("cluster_added", cluster_id=handle.cluster_id, endpoint=handle.api_endpoint_ref)

        if self._running:
            self._start_entry(entry)
        return entry.runtime

    async def remove_cluster(self, cluster_id: str) -> None:
        entry = self._clusters.pop(cluster_id, None)
        if entry is None:
            return
        await self._stop_entry(entry)
        logger.info("cluster_removed", cluster_id=cluster_id)

    def runtime(self, cluster_id: str) -> ClusterRuntime | None:
        entry = self._clusters.get(cluster_id)
        return entry.runtime if entry else None

    def runtimes(self) -> dict[str, ClusterRuntime]:
        return {cid: entry.runtime for cid, entry in self._clusters.items()}

    def handles(self) -> list[ClusterHandle]:
        return [entry.handle for entry in self._clusters.values()]

    def stale_poll_counts(self) -> dict[str, int]:
        return {cid: entry.stale_polls for cid, entry in self._clusters.items()}

    # -- lifecycle --

    async def start(self) -> None:
        """Start every cluster runtime and its polling loop."""
        self._running = True
        for entry in self._clusters.values():
            self._start_entry(entry)

    async def stop(self) -> None:
        self._running = False
        await asyncio.gather(*(self._stop_entry(e) for e in self._clusters.values()))

    def _start_entry(self, entry: _ClusterEntry) -> None:
        entry.runtime.start()
        if entry.task is None:
            entry.task = asyncio.create_task(
                self._poll_loop(entry.handle.cluster_id),
                name=f"poll-{entry.handle.cluster_id}",
            )

    async def _stop_entry(self, entry: _ClusterEntry) -> None:
        if entry.task is not None:
            entry.task.cancel()
            await asyncio.gather(entry.task, return_exceptions=True)
            entry.task = None
        await entry.runtime.stop()

    async def _poll_loop(self, cluster_id: str) -> None:
        while True:
            await self.poll_cluster(cluster_id)
            await asyncio.sleep(self.interval)

    # -- polling --

    async def _fetch(self, entry: _ClusterEntry) -> ClusterPoll:
        cluster_id = entry.handle.cluster_id
        try:
            return await asyncio.wait_for(entry.runtime.poll(), timeout=self.poll_timeout)
        except asyncio.TimeoutError as exc:
            raise AggregationError(cluster_id, f"poll timed out after {self.poll_timeout}s") from exc
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise AggregationError(cluster_id, f"poll failed: {exc}") from exc

    async def poll_cluster(self, cluster_id: str) -> bool:
        """
        Poll one cluster and refresh its summary.

        Returns:
            True if the poll succeeded; False if the cluster is now stale
        """
        entry = self._clusters.get(cluster_id)
        if entry is None:
            return False

        try:
            poll = await self._fetch(entry)
        except AggregationError as exc:
            if self._clusters.get(cluster_id) is entry:
                entry.stale = True
                entry.stale_polls += 1
                entry.handle.reachable = False
            logger.warning(
                "cluster_poll_failed",
                cluster_id=cluster_id,
                error=exc.message,
                retained_summary=entry.summary is not None,
            )
            return False

        if self._clusters.get(cluster_id) is not entry:
            return False

        now = self.clock()
        entry.summary = summarize(poll, now)
        entry.stale = False
        entry.handle.reachable = True
        entry.handle.last_sync_time = now
        logger.debug("cluster_polled", cluster_id=cluster_id)
        return True

    async def poll_all(self) -> AggregatedComplianceView:
        """Run one polling cycle over every cluster concurrently."""
        await asyncio.gather(*(self.poll_cluster(cid) for cid in list(self._clusters)))
        return self.current_view()

    def current_view(self) -> AggregatedComplianceView:
        """Build a fresh view from each cluster's latest summary."""
        per_cluster = {
            cid: entry.summary for cid, entry in self._clusters.items() if entry.summary is not None
        }
        stale = frozenset(cid for cid, entry in self._clusters.items() if entry.stale)
        return AggregatedComplianceView(
            per_cluster=per_cluster,
            stale_clusters=stale,
            generated_at=self.clock(),
        )

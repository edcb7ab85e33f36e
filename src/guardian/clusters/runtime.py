"""
Per-cluster runtime: one PolicyStore, ReconcileEngine and AdmissionGate bound
to one cluster API, plus the watch feed that keeps them current.
"""

from __future__ import annotations

import asyncio

from guardian.admission.gate import AdmissionGate
from guardian.clusters.models import ClusterHandle, ClusterPoll
from guardian.config.settings import Settings
from guardian.logging import bind_cluster
from guardian.policies.evaluator import PolicyEvaluator
from guardian.policies.store import PolicyStore
from guardian.reconcile.api import PolicyApi
from guardian.reconcile.backoff import Backoff
from guardian.reconcile.engine import ReconcileEngine


class ClusterRuntime:
    """Everything Guardian runs for a single cluster."""

    def __init__(
        self,
        cluster_id: str,
        api: PolicyApi,
        *,
        engine: ReconcileEngine | None = None,
        gate: AdmissionGate | None = None,
        feed_backoff: Backoff | None = None,
    ) -> None:
        self.cluster_id = cluster_id
        self.api = api
        self.store = engine.store if engine else PolicyStore(cluster_id)
        self.engine = engine or ReconcileEngine(self.store, api)
        self.gate = gate or AdmissionGate(self.store)
        self.feed_backoff = feed_backoff or Backoff(base=1.0, factor=2.0, cap=30.0)
        self._feed_task: asyncio.Task[None] | None = None
        self._log = bind_cluster(cluster_id)

    @classmethod
    def from_settings(cls, handle: ClusterHandle, api: PolicyApi, settings: Settings) -> ClusterRuntime:
        store = PolicyStore(handle.cluster_id)
        engine = ReconcileEngine(
            store,
            api,
            backoff=Backoff(
                base=settings.backoff_base,
                factor=settings.backoff_factor,
                cap=settings.backoff_cap,
            ),
            workers=settings.reconcile_workers,
            manage_finalizer=settings.manage_finalizer,
        )
        gate = AdmissionGate(
            store,
            PolicyEvaluator(deny_severity=settings.deny_severity),
            failure_policy=settings.failure_policy,
            default_timeout=settings.admission_timeout,
        )
        return cls(handle.cluster_id, api, engine=engine, gate=gate)

    @property
    def ready(self) -> bool:
        """Readiness predicate: the store finished its initial sync."""
        return self.store.synced

    def start(self) -> None:
        """Start the reconcile workers and the watch feed."""
        self.engine.start()
        if self._feed_task is None:
            self._feed_task = asyncio.create_task(self._run_feed(), name=f"feed-{self.cluster_id}")

    async def stop(self) -> None:
        if self._feed_task is not None:
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)
            self._feed_task = None
        await self.engine.stop()
        await self.api.aclose()

    async def _run_feed(self) -> None:
        """
        List, resync, then follow the watch stream.

        Whenever the stream ends or fails, relist and resync; the engine
        tolerates the replay without repeating side effects.
        """
        failures = 0
        while True:
            try:
                policies = await self.api.list_policies()
                await self.engine.resync(policies)
                self._log.info("policy_feed_synced", policies=len(policies))
                failures = 0
                async for event in self.api.watch():
                    self.engine.on_change_event(event)
                self._log.debug("policy_watch_ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = self.feed_backoff.delay(failures)
                failures += 1
                self._log.warning(
                    "policy_feed_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    retry_in=round(delay, 3),
                )
                await asyncio.sleep(delay)

    async def poll(self) -> ClusterPoll:
        """Fetch this cluster's compliance inputs. Fails if the API is unreachable."""
        await self.api.ping()
        return ClusterPoll(
            phases=self.engine.phases(),
            allowed_total=self.gate.counters.allowed_total,
            denied_total=self.gate.counters.denied_total,
            denied_last_24h=self.gate.counters.denied_within(24),
        )

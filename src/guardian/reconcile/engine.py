"""
Policy reconciliation engine.

Consumes change events for one cluster and drives every policy through

    Pending -> Reconciling -> Ready
    Reconciling -> Failed (transient error, retried after backoff)
    Deleting -> removed (once the finalizer has been cleared)

Events for different policies are handled in parallel by a fixed pool of
worker tasks. Events for the same policy are processed one at a time in the
order they were delivered.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from guardian.core.errors import (
    ConflictError,
    GuardianError,
    NotFoundError,
    ValidationError,
    format_error_message,
)
from guardian.logging import bind_cluster
from guardian.policies.models import Condition, Policy, PolicyStatus
from guardian.policies.schema import validate_policy
from guardian.policies.store import PolicyStore
from guardian.reconcile.api import PolicyApi
from guardian.reconcile.backoff import Backoff
from guardian.reconcile.events import ChangeEvent, DeleteEvent, UpsertEvent


class ReconcilePhase(str, Enum):
    PENDING = "Pending"
    RECONCILING = "Reconciling"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"


@dataclass
class ReconcileCounters:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    validation_failures: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class _KeyState:
    pending: deque[ChangeEvent] = field(default_factory=deque)
    current: ChangeEvent | None = None
    attempts: int = 0
    retry_handle: asyncio.TimerHandle | None = None
    queued: bool = False
    in_flight: bool = False

    @property
    def idle(self) -> bool:
        return not (self.pending or self.current or self.queued or self.in_flight)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconcileEngine:
    """Keeps one cluster's policy store and policy statuses in line with the API."""

    def __init__(
        self,
        store: PolicyStore,
        api: PolicyApi,
        *,
        backoff: Backoff | None = None,
        workers: int = 4,
        manage_finalizer: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.api = api
        self.backoff = backoff or Backoff()
        self.workers = workers
        self.manage_finalizer = manage_finalizer
        self.clock = clock
        self.counters = ReconcileCounters()
        self._log = bind_cluster(store.cluster_id)
        self._keys: dict[str, _KeyState] = {}
        self._phases: dict[str, ReconcilePhase] = {}
        self._statuses: dict[str, PolicyStatus] = {}
        self._ready: asyncio.Queue[str] = asyncio.Queue()
        self._tasks: list[asyncio.Task[None]] = []

    # -- lifecycle --

    def start(self) -> None:
        if self._tasks:
            return
        for index in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(index), name=f"reconcile-{index}"))
        self._log.info("reconcile_engine_started", workers=self.workers)

    async def stop(self) -> None:
        for state in self._keys.values():
            if state.retry_handle is not None:
                state.retry_handle.cancel()
                state.retry_handle = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._log.info("reconcile_engine_stopped")

    async def join(self) -> None:
        """Wait until every queued event has been handled.

        Events waiting for a backoff deadline are not waited for.
        """
        await self._ready.join()

    # -- inputs --

    def on_change_event(self, event: ChangeEvent) -> None:
        """Queue a change event for its policy."""
        if isinstance(event, UpsertEvent) and event.policy.deleting:
            event = DeleteEvent(event.policy.id)
        key = event.key
        state = self._keys.setdefault(key, _KeyState())
        if isinstance(event, UpsertEvent):
            self._phases.setdefault(key, ReconcilePhase.PENDING)

        # A newer event supersedes an upsert that is waiting out its backoff.
        if state.retry_handle is not None and isinstance(state.current, UpsertEvent):
            state.retry_handle.cancel()
            state.retry_handle = None
            state.current = None
            state.attempts = 0
            self._log.debug("reconcile_retry_superseded", policy=key)

        last = state.pending[-1] if state.pending else None
        if isinstance(event, UpsertEvent) and isinstance(last, UpsertEvent):
            if event.policy.generation >= last.policy.generation:
                state.pending[-1] = event
        else:
            state.pending.append(event)

        if state.retry_handle is None:
            self._schedule(key)

    async def resync(self, policies: Iterable[Policy]) -> None:
        """
        Replay a full listing of the cluster's policies.

        Every listed policy is treated as an upsert, or as a delete when the
        cluster is already deleting it. Tracked policies missing from the
        listing are deleted, whether or not they made it into the store. The
        store is marked synced once the replay has been handled.
        """
        listed: set[str] = set()
        for policy in policies:
            listed.add(policy.id)
            self.on_change_event(UpsertEvent(policy))

        known = {stored.id for stored in self.store.snapshot()} | set(self._phases)
        for key in sorted(known - listed):
            self.on_change_event(DeleteEvent(key))

        await self.join()
        self.store.mark_synced()

    # -- observability --

    def phase(self, policy_id: str) -> ReconcilePhase | None:
        return self._phases.get(policy_id)

    def statuses(self) -> dict[str, PolicyStatus]:
        return dict(self._statuses)

    def phases(self) -> dict[str, ReconcilePhase]:
        return dict(self._phases)

    # -- scheduling --

    def _schedule(self, key: str) -> None:
        state = self._keys[key]
        if state.queued or state.in_flight:
            return
        state.queued = True
        self._ready.put_nowait(key)

    def _retry(self, key: str) -> None:
        state = self._keys.get(key)
        if state is None:
            return
        state.retry_handle = None
        self._schedule(key)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._ready.get()
            try:
                await self._process_key(key)
            finally:
                self._ready.task_done()

    async def _process_key(self, key: str) -> None:
        state = self._keys[key]
        state.queued = False
        if state.current is None:
            if not state.pending:
                return
            state.current = state.pending.popleft()

        event = state.current
        state.in_flight = True
        try:
            if isinstance(event, UpsertEvent):
                await self._reconcile_upsert(event.policy)
            else:
                await self._reconcile_delete(event.policy_id)
        except Exception as exc:  # reconcile errors never take a worker down
            state.in_flight = False
            if isinstance(event, UpsertEvent) and state.pending:
                # Superseded while in flight: move on to the newer event.
                self.counters.failures += 1
                state.current = None
                state.attempts = 0
                self._schedule(key)
            else:
                self._requeue(key, state, event, exc)
            return
        finally:
            state.in_flight = False

        state.current = None
        state.attempts = 0
        if state.pending:
            self._schedule(key)
        elif state.idle and state.retry_handle is None:
            del self._keys[key]

    def _requeue(self, key: str, state: _KeyState, event: ChangeEvent, exc: Exception) -> None:
        self.counters.failures += 1
        delay = self.backoff.delay(state.attempts)
        state.attempts += 1

        if isinstance(event, DeleteEvent):
            self._phases[key] = ReconcilePhase.DELETING
        else:
            self._phases[key] = ReconcilePhase.FAILED

        retryable = isinstance(exc, GuardianError) and exc.retryable
        log = self._log.warning if retryable else self._log.error
        log(
            "reconcile_failed",
            policy=key,
            error_type=type(exc).__name__,
            error=format_error_message(exc) if isinstance(exc, GuardianError) else str(exc),
            attempt=state.attempts,
            retry_in=round(delay, 3),
        )
        state.retry_handle = asyncio.get_running_loop().call_later(delay, self._retry, key)

    # -- handlers --

    async def _reconcile_upsert(self, policy: Policy) -> None:
        key = policy.id
        self.counters.attempts += 1

        stored = self.store.get(key)
        if stored is not None and policy.generation < stored.generation:
            self._log.debug(
                "stale_upsert_dropped",
                policy=key,
                generation=policy.generation,
                stored_generation=stored.generation,
            )
            return

        known = self._statuses.get(key)
        if known is not None and known.observed_generation == policy.generation:
            if known.condition is Condition.FAILED:
                # Validation failures are terminal until the spec changes.
                return
            if (
                known.condition is Condition.READY
                and stored is not None
                and stored.generation == policy.generation
            ):
                self._phases[key] = ReconcilePhase.READY
                return

        self._phases[key] = ReconcilePhase.RECONCILING

        try:
            validate_policy(policy)
        except ValidationError as exc:
            self.counters.validation_failures += 1
            status = PolicyStatus(
                observed_generation=policy.generation,
                condition=Condition.FAILED,
                last_evaluated=self.clock(),
                message=exc.message,
            )
            if await self._write_status(policy, status):
                self._statuses[key] = status
                self._phases[key] = ReconcilePhase.FAILED
            else:
                self._phases[key] = ReconcilePhase.PENDING
            self._log.warning(
                "policy_invalid",
                policy=key,
                generation=policy.generation,
                problems=exc.problems,
            )
            return

        if self.manage_finalizer and not policy.finalizer_present:
            try:
                await self.api.add_finalizer(policy.name)
            except NotFoundError:
                # Deleted before we got to it; the delete event follows.
                self._phases[key] = ReconcilePhase.PENDING
                return
            policy = replace(policy, finalizer_present=True)

        if not self.store.upsert(policy) and stored is not None and stored.generation == policy.generation:
            if stored.finalizer_present != policy.finalizer_present:
                self.store.replace(replace(stored, finalizer_present=policy.finalizer_present))

        status = PolicyStatus(
            observed_generation=policy.generation,
            condition=Condition.READY,
            last_evaluated=self.clock(),
            message="policy is enforced" if policy.enabled else "policy is disabled",
        )
        if not await self._write_status(policy, status):
            self._phases[key] = ReconcilePhase.PENDING
            return

        current = self.store.get(key)
        if current is not None and current.generation == policy.generation:
            self.store.replace(replace(current, status=status))

        self._statuses[key] = status
        self._phases[key] = ReconcilePhase.READY
        self.counters.successes += 1
        self._log.info("policy_reconciled", policy=key, generation=policy.generation)

    async def _write_status(self, policy: Policy, status: PolicyStatus) -> bool:
        """
        Write a policy status, refetching and reapplying once on conflict.

        Returns:
            False when the object moved to a newer generation or vanished;
            the change event for that will reconcile it.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                retry=retry_if_exception_type(ConflictError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        latest = await self.api.get_policy(policy.name)
                        if latest.generation > policy.generation:
                            self._log.debug(
                                "status_write_superseded",
                                policy=policy.id,
                                generation=policy.generation,
                                latest_generation=latest.generation,
                            )
                            return False
                    await self.api.update_status(policy.name, policy.generation, status)
        except NotFoundError:
            self._log.debug("status_write_target_gone", policy=policy.id)
            return False
        return True

    async def _reconcile_delete(self, policy_id: str) -> None:
        self.counters.attempts += 1
        stored = self.store.get(policy_id)
        if stored is None:
            await self._release_unstored(policy_id)
            return

        self._phases[policy_id] = ReconcilePhase.DELETING

        if stored.finalizer_present:
            try:
                await self.api.remove_finalizer(policy_id)
            except NotFoundError:
                self._log.debug("finalizer_target_gone", policy=policy_id)

        self.store.remove(policy_id)
        self._phases.pop(policy_id, None)
        self._statuses.pop(policy_id, None)
        self.counters.successes += 1
        self._log.info("policy_removed", policy=policy_id, had_finalizer=stored.finalizer_present)

    async def _release_unstored(self, policy_id: str) -> None:
        """
        Finish deleting a policy that never reached the store.

        A policy whose only accepted generations failed validation, or one
        first seen after a restart while already terminating, can still carry
        our finalizer. The object is read back so that finalizer is released.
        """
        try:
            current = await self.api.get_policy(policy_id)
        except NotFoundError:
            current = None

        if current is not None and current.deleting and current.finalizer_present:
            self._phases[policy_id] = ReconcilePhase.DELETING
            try:
                await self.api.remove_finalizer(policy_id)
            except NotFoundError:
                self._log.debug("finalizer_target_gone", policy=policy_id)
            self.counters.successes += 1
            self._log.info("policy_removed", policy=policy_id, had_finalizer=True, stored=False)

        self._phases.pop(policy_id, None)
        self._statuses.pop(policy_id, None)

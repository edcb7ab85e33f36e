"""Tests for the reconcile engine.

The engine runs against the in-memory policy API with a fast backoff so
retries settle within a test.
"""

import asyncio
from collections import Counter

import pytest
import pytest_asyncio
import structlog.testing
from guardian.core.errors import ApiTimeoutError, ConflictError, TransientApiError
from guardian.policies.models import Condition, Operator, Policy, Rule, Severity
from guardian.policies.store import PolicyStore
from guardian.reconcile.backoff import Backoff
from guardian.reconcile.engine import ReconcileEngine, ReconcilePhase
from guardian.reconcile.events import DeleteEvent, UpsertEvent
from guardian.reconcile.memory import InMemoryPolicyApi

FAST = dict(base=0.005, factor=2.0, cap=0.02)


def make_policy(name="require-labels", generation=1, **kwargs):
    kwargs.setdefault("rules", (Rule("metadata.labels.team", Operator.EXISTS),))
    return Policy(name=name, generation=generation, **kwargs)


async def settle(engine, predicate, timeout=2.0):
    """Wait until ``predicate`` holds, letting backoff retries fire."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        await engine.join()
        if predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("engine did not settle")
        await asyncio.sleep(0.005)


@pytest.fixture
def api():
    return InMemoryPolicyApi()


@pytest_asyncio.fixture
async def engine(api):
    store = PolicyStore("test")
    engine = ReconcileEngine(store, api, backoff=Backoff(**FAST), workers=4)
    engine.start()
    yield engine
    await engine.stop()


class TestUpsert:
    @pytest.mark.asyncio
    async def test_new_policy_becomes_ready(self, api, engine):
        policy = api.apply(make_policy())

        engine.on_change_event(UpsertEvent(policy))
        await engine.join()

        assert engine.phase("require-labels") is ReconcilePhase.READY
        status = engine.statuses()["require-labels"]
        assert status.condition is Condition.READY
        assert status.observed_generation == 1
        assert status.last_evaluated is not None
        assert api.objects["require-labels"].status == status
        assert engine.store.get("require-labels").status == status
        assert engine.counters.successes == 1

    @pytest.mark.asyncio
    async def test_finalizer_is_attached(self, api, engine):
        policy = api.apply(make_policy())

        engine.on_change_event(UpsertEvent(policy))
        await engine.join()

        assert api.objects["require-labels"].finalizer_present is True
        assert engine.store.get("require-labels").finalizer_present is True

    @pytest.mark.asyncio
    async def test_duplicate_upsert_is_idempotent(self, api, engine):
        policy = api.apply(make_policy())
        engine.on_change_event(UpsertEvent(policy))
        await engine.join()
        snapshot = engine.store.snapshot()
        statuses = engine.statuses()
        writes = len(api.status_writes)

        engine.on_change_event(UpsertEvent(policy))
        engine.on_change_event(UpsertEvent(api.objects["require-labels"]))
        await engine.join()

        assert engine.store.snapshot() is snapshot
        assert engine.statuses() == statuses
        assert len(api.status_writes) == writes

    @pytest.mark.asyncio
    async def test_stale_generation_is_dropped(self, api, engine):
        api.apply(make_policy(severity=Severity.LOW))
        newer = api.apply(make_policy(severity=Severity.HIGH))
        assert newer.generation == 2

        engine.on_change_event(UpsertEvent(newer))
        await engine.join()
        engine.on_change_event(UpsertEvent(make_policy(generation=1, severity=Severity.LOW)))
        await engine.join()

        stored = engine.store.get("require-labels")
        assert stored.generation == 2
        assert stored.severity is Severity.HIGH
        assert engine.statuses()["require-labels"].observed_generation == 2

    @pytest.mark.asyncio
    async def test_new_generation_is_reconciled(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await engine.join()

        updated = api.apply(make_policy(severity=Severity.MEDIUM))
        engine.on_change_event(UpsertEvent(updated))
        await engine.join()

        assert engine.store.get("require-labels").severity is Severity.MEDIUM
        assert engine.statuses()["require-labels"].observed_generation == 2


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_policy_fails_without_retry(self, api, engine):
        invalid = api.apply(make_policy(rules=(Rule("kind", Operator.MATCHES, "(oops"),)))

        engine.on_change_event(UpsertEvent(invalid))
        await engine.join()
        await asyncio.sleep(0.05)
        engine.on_change_event(UpsertEvent(invalid))
        await engine.join()

        status = engine.statuses()["require-labels"]
        assert status.condition is Condition.FAILED
        assert "invalid pattern" in status.message
        assert engine.phase("require-labels") is ReconcilePhase.FAILED
        assert engine.store.get("require-labels") is None
        assert len(api.status_writes) == 1
        assert engine.counters.validation_failures == 1
        assert engine.counters.failures == 0

    @pytest.mark.asyncio
    async def test_fixed_generation_recovers(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy(rules=()))))
        await engine.join()

        fixed = api.apply(make_policy())
        engine.on_change_event(UpsertEvent(fixed))
        await engine.join()

        assert engine.phase("require-labels") is ReconcilePhase.READY
        assert engine.statuses()["require-labels"].observed_generation == 2


class TestTransientErrors:
    @pytest.mark.asyncio
    async def test_timeout_is_retried_with_backoff(self, api, engine):
        api.fail_next("update_status", ApiTimeoutError("timed out"), times=3)

        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await settle(engine, lambda: engine.phase("require-labels") is ReconcilePhase.READY)

        assert engine.counters.failures == 3
        assert engine.counters.successes == 1

    @pytest.mark.asyncio
    async def test_failed_state_while_waiting(self, api):
        store = PolicyStore("test")
        engine = ReconcileEngine(store, api, backoff=Backoff(base=60, cap=60))
        engine.start()
        try:
            api.fail_next("update_status", TransientApiError("unavailable"))
            engine.on_change_event(UpsertEvent(api.apply(make_policy())))
            await engine.join()

            assert engine.phase("require-labels") is ReconcilePhase.FAILED
            assert engine.counters.failures == 1
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_single_conflict_is_reapplied_without_backoff(self, api, engine):
        api.fail_next("update_status", ConflictError("conflict"))

        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await engine.join()

        assert engine.phase("require-labels") is ReconcilePhase.READY
        assert engine.counters.failures == 0

    @pytest.mark.asyncio
    async def test_repeated_conflict_escalates(self, api, engine):
        api.fail_next("update_status", ConflictError("conflict"), times=2)

        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await settle(engine, lambda: engine.phase("require-labels") is ReconcilePhase.READY)

        assert engine.counters.failures == 1

    @pytest.mark.asyncio
    async def test_newer_event_supersedes_waiting_retry(self, api):
        store = PolicyStore("test")
        engine = ReconcileEngine(store, api, backoff=Backoff(base=60, cap=60))
        engine.start()
        try:
            api.fail_next("update_status", TransientApiError("unavailable"))
            engine.on_change_event(UpsertEvent(api.apply(make_policy())))
            await engine.join()
            assert engine.phase("require-labels") is ReconcilePhase.FAILED

            engine.on_change_event(UpsertEvent(api.apply(make_policy(severity=Severity.LOW))))
            await engine.join()

            assert engine.phase("require-labels") is ReconcilePhase.READY
            assert store.get("require-labels").generation == 2
        finally:
            await engine.stop()


class TestDelete:
    @pytest.mark.asyncio
    async def test_finalizer_cleared_before_removal(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await engine.join()

        api.delete("require-labels")
        assert "require-labels" in api.objects
        engine.on_change_event(DeleteEvent("require-labels"))
        await engine.join()

        assert engine.store.get("require-labels") is None
        assert engine.phase("require-labels") is None
        assert "require-labels" not in api.objects

    @pytest.mark.asyncio
    async def test_policy_stays_while_finalizer_removal_fails(self, api):
        store = PolicyStore("test")
        engine = ReconcileEngine(store, api, backoff=Backoff(base=60, cap=60))
        engine.start()
        try:
            engine.on_change_event(UpsertEvent(api.apply(make_policy())))
            await engine.join()

            api.fail_next("remove_finalizer", TransientApiError("unavailable"))
            api.delete("require-labels")
            engine.on_change_event(DeleteEvent("require-labels"))
            await engine.join()

            assert store.get("require-labels") is not None
            assert engine.phase("require-labels") is ReconcilePhase.DELETING

            # A resync replay must not resurrect or drop the pending deletion.
            engine.on_change_event(UpsertEvent(api.objects["require-labels"]))
            await engine.join()
            assert store.get("require-labels") is not None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_deletion_retries_until_acknowledged(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy())))
        await engine.join()

        api.fail_next("remove_finalizer", TransientApiError("unavailable"), times=2)
        api.delete("require-labels")
        engine.on_change_event(DeleteEvent("require-labels"))
        await settle(engine, lambda: engine.store.get("require-labels") is None)

        assert "require-labels" not in api.objects
        assert engine.counters.failures == 2

    @pytest.mark.asyncio
    async def test_without_finalizer_removal_is_direct(self, api):
        store = PolicyStore("test")
        engine = ReconcileEngine(store, api, manage_finalizer=False)
        engine.start()
        try:
            engine.on_change_event(UpsertEvent(api.apply(make_policy())))
            await engine.join()
            assert store.get("require-labels").finalizer_present is False

            api.delete("require-labels")
            engine.on_change_event(DeleteEvent("require-labels"))
            await engine.join()

            assert store.get("require-labels") is None
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_delete_of_unknown_policy_is_noop(self, engine):
        engine.on_change_event(DeleteEvent("never-seen"))
        await engine.join()
        assert engine.phase("never-seen") is None


class TrackingApi(InMemoryPolicyApi):
    """Records how many status writes run at once, per policy and overall."""

    def __init__(self):
        super().__init__()
        self.active = Counter()
        self.max_per_key = 0
        self.max_total = 0

    async def update_status(self, name, generation, status):
        self.active[name] += 1
        self.max_per_key = max(self.max_per_key, self.active[name])
        self.max_total = max(self.max_total, sum(self.active.values()))
        try:
            await asyncio.sleep(0.01)
            await super().update_status(name, generation, status)
        finally:
            self.active[name] -= 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized_and_keys_run_in_parallel(self):
        api = TrackingApi()
        engine = ReconcileEngine(PolicyStore("test"), api, workers=4)
        engine.start()
        try:
            for name in ("a", "b", "c"):
                engine.on_change_event(UpsertEvent(api.apply(make_policy(name))))
            await asyncio.sleep(0.002)
            engine.on_change_event(UpsertEvent(api.apply(make_policy("a", severity=Severity.LOW))))
            await engine.join()

            assert api.max_per_key == 1
            assert api.max_total > 1
            assert engine.statuses()["a"].observed_generation == 2
            assert engine.store.get("a").severity is Severity.LOW
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_events_for_one_key_keep_delivery_order(self, api, engine):
        policy = api.apply(make_policy())

        engine.on_change_event(UpsertEvent(policy))
        engine.on_change_event(DeleteEvent(policy.name))
        await engine.join()

        assert engine.store.get(policy.name) is None
        assert engine.phase(policy.name) is None


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_marks_store_synced_and_drops_missing(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy("old"))))
        await engine.join()
        fresh = api.apply(make_policy("fresh"))

        await engine.resync([fresh])

        assert engine.store.synced is True
        assert engine.store.get("old") is None
        assert engine.phase("fresh") is ReconcilePhase.READY

    @pytest.mark.asyncio
    async def test_replayed_resync_has_no_side_effects(self, api, engine):
        api.apply(make_policy("a"))
        api.apply(make_policy("b"))
        await engine.resync(await api.list_policies())
        writes = len(api.status_writes)
        snapshot = engine.store.snapshot()

        await engine.resync(await api.list_policies())

        assert len(api.status_writes) == writes
        assert engine.store.snapshot() is snapshot

    @pytest.mark.asyncio
    async def test_resync_forgets_failed_policy_missing_from_listing(self, api, engine):
        engine.on_change_event(UpsertEvent(api.apply(make_policy(rules=()))))
        await engine.join()
        assert engine.phase("require-labels") is ReconcilePhase.FAILED
        del api.objects["require-labels"]

        await engine.resync([])

        assert engine.phase("require-labels") is None
        assert "require-labels" not in engine.statuses()
        assert engine.phases() == {}


class TestRestart:
    """A fresh engine over a cluster that an earlier engine already managed."""

    @staticmethod
    async def managed_by_previous_engine(api, *policies):
        previous = ReconcileEngine(PolicyStore("test"), api, backoff=Backoff(**FAST))
        previous.start()
        try:
            for policy in policies:
                previous.on_change_event(UpsertEvent(api.apply(policy)))
                await previous.join()
        finally:
            await previous.stop()

    @pytest.mark.asyncio
    async def test_terminating_policy_is_released_on_initial_sync(self, api, engine):
        await self.managed_by_previous_engine(api, make_policy())
        api.delete("require-labels")
        assert api.objects["require-labels"].deleting is True

        await engine.resync(await api.list_policies())

        assert "require-labels" not in api.objects
        assert engine.store.get("require-labels") is None
        assert engine.phase("require-labels") is None
        assert engine.store.synced is True

    @pytest.mark.asyncio
    async def test_invalid_latest_generation_still_releases_finalizer(self, api, engine):
        await self.managed_by_previous_engine(api, make_policy(), make_policy(rules=()))
        assert api.objects["require-labels"].generation == 2
        assert api.objects["require-labels"].finalizer_present is True

        await engine.resync(await api.list_policies())
        assert engine.phase("require-labels") is ReconcilePhase.FAILED
        assert engine.store.get("require-labels") is None

        api.delete("require-labels")
        engine.on_change_event(DeleteEvent("require-labels"))
        await engine.join()

        assert "require-labels" not in api.objects
        assert engine.phase("require-labels") is None

    @pytest.mark.asyncio
    async def test_unstored_delete_leaves_live_object_alone(self, api, engine):
        api.apply(make_policy(finalizer_present=True))

        engine.on_change_event(DeleteEvent("require-labels"))
        await engine.join()

        assert api.objects["require-labels"].finalizer_present is True
        assert engine.phase("require-labels") is None


class RecordingBackoff(Backoff):
    """Backoff that remembers every delay the engine scheduled."""

    def __post_init__(self):
        super().__post_init__()
        self.scheduled = []

    def delay(self, attempt):
        value = super().delay(attempt)
        self.scheduled.append((attempt, value))
        return value


class TestBackoffSchedule:
    @pytest.mark.asyncio
    async def test_scheduled_delays_stay_under_cap(self, api):
        backoff = RecordingBackoff(base=0.001, factor=2.0, cap=0.004)
        engine = ReconcileEngine(PolicyStore("test"), api, backoff=backoff)
        engine.start()
        try:
            api.fail_next("update_status", TransientApiError("unavailable"), times=6)
            engine.on_change_event(UpsertEvent(api.apply(make_policy())))
            await settle(engine, lambda: engine.phase("require-labels") is ReconcilePhase.READY)
        finally:
            await engine.stop()

        assert [attempt for attempt, _ in backoff.scheduled] == [0, 1, 2, 3, 4, 5]
        assert all(0.0 <= delay <= 0.004 for _, delay in backoff.scheduled)
        assert all(delay <= backoff.ceiling(attempt) for attempt, delay in backoff.scheduled)


class TestFailureLogging:
    @pytest.mark.asyncio
    async def test_log_level_follows_retryable_flag(self, api):
        with structlog.testing.capture_logs() as logs:
            engine = ReconcileEngine(PolicyStore("test"), api, backoff=Backoff(base=60, cap=60))
            engine.start()
            try:
                api.fail_next("update_status", TransientApiError("unavailable"))
                engine.on_change_event(UpsertEvent(api.apply(make_policy("a"))))
                await engine.join()
                api.fail_next("add_finalizer", RuntimeError("boom"))
                engine.on_change_event(UpsertEvent(api.apply(make_policy("b"))))
                await engine.join()
            finally:
                await engine.stop()

        levels = {entry["policy"]: entry["log_level"] for entry in logs if entry["event"] == "reconcile_failed"}
        assert levels == {"a": "warning", "b": "error"}

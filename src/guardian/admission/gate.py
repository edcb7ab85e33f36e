"""
Admission decision gate.

Answers allow/deny for one incoming workload within a deadline. The gate reads
one store snapshot per request and never mutates the store.
"""

from __future__ import annotations

import asyncio

from guardian.admission.counters import DecisionCounters
from guardian.core.errors import EvaluationTimeout
from guardian.logging import bind_cluster
from guardian.policies.evaluator import PolicyEvaluator
from guardian.policies.models import FailurePolicy, Verdict, WorkloadDescription
from guardian.policies.store import PolicyStore

TIMEOUT_REASON = "evaluation timeout"
ERROR_REASON = "evaluation error"


class AdmissionGate:
    """Synchronous allow/deny decisions for one cluster."""

    def __init__(
        self,
        store: PolicyStore,
        evaluator: PolicyEvaluator | None = None,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED,
        default_timeout: float = 2.0,
        counters: DecisionCounters | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator or PolicyEvaluator()
        self.failure_policy = failure_policy
        self.default_timeout = default_timeout
        self.counters = counters or DecisionCounters()
        self._log = bind_cluster(store.cluster_id)

    async def _evaluate(self, request: WorkloadDescription, timeout: float) -> Verdict:
        try:
            snapshot = await asyncio.wait_for(self.store.fetch_snapshot(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise EvaluationTimeout(
                "policy snapshot not available before deadline", {"timeout": timeout}
            ) from exc
        return self.evaluator.evaluate(snapshot, request)

    def _fallback(self, reason: str) -> Verdict:
        return Verdict(
            allowed=self.failure_policy is FailurePolicy.FAIL_OPEN,
            reasons=(reason,),
        )

    async def decide(self, request: WorkloadDescription, deadline: float | None = None) -> Verdict:
        """
        Decide on an admission request.

        Args:
            request: Flattened workload under admission
            deadline: Time budget in seconds; defaults to ``default_timeout``

        Returns:
            Verdict; on timeout or evaluation failure, the failure policy's
            verdict. Never raises.
        """
        timeout = self.default_timeout if deadline is None else max(deadline, 0.0)

        try:
            verdict = await self._evaluate(request, timeout)
        except EvaluationTimeout as exc:
            verdict = self._fallback(TIMEOUT_REASON)
            self._log.warning(
                "admission_timeout",
                failure_policy=self.failure_policy.value,
                allowed=verdict.allowed,
                **exc.details,
            )
        except Exception as exc:
            verdict = self._fallback(ERROR_REASON)
            self._log.error(
                "admission_evaluation_failed",
                failure_policy=self.failure_policy.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        self.counters.record(verdict)
        if not verdict.allowed:
            self._log.info(
                "admission_denied",
                operation=request.operation.value,
                matched_policy=verdict.matched_policy,
                reasons=list(verdict.reasons),
            )
        return verdict

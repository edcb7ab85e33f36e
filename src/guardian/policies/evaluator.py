"""
Policy evaluator.

Turns a policy set plus a workload description into a Verdict.

Rules describe what a compliant workload looks like. A policy is *matched*
by a workload when at least one of its rules is not satisfied:

    require-labels (High)
        metadata.labels.team  Exists
    -> a workload without the label matches the policy and is denied

Among the matched policies the one with the highest severity decides, ties
going to the lexicographically smallest id. A severity at or above the deny
threshold (High by default) denies; anything below allows and only records
the reasons.

The evaluator has no I/O and no mutable state, so identical inputs always
produce identical verdicts.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, Callable, Iterable

from guardian.policies.models import Operator, Policy, Rule, Severity, Verdict, WorkloadDescription

_MISSING = object()


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def _as_string(value: Any) -> str | None:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return None


def coerce(expected: Any, actual: Any) -> Any:
    """
    Coerce an expected value to the type of the workload value.

    Returns _MISSING when the expected value cannot be expressed in that type,
    which makes the comparison unequal.
    """
    if isinstance(actual, bool):
        if isinstance(expected, bool):
            return expected
        text = _as_string(expected)
        if text is not None and text.lower() in ("true", "false"):
            return text.lower() == "true"
        return _MISSING
    if isinstance(actual, int):
        if isinstance(expected, bool):
            return _MISSING
        if isinstance(expected, float):
            return expected
        try:
            return int(expected)
        except (TypeError, ValueError):
            try:
                return float(expected)
            except (TypeError, ValueError):
                return _MISSING
    if isinstance(actual, float):
        try:
            return float(expected) if not isinstance(expected, bool) else _MISSING
        except (TypeError, ValueError):
            return _MISSING
    if isinstance(actual, str):
        text = _as_string(expected)
        return text if text is not None else _MISSING
    if actual is None:
        return expected
    return _MISSING


def _equals(present: bool, actual: Any, expected: Any) -> bool:
    if not present:
        return False
    coerced = coerce(expected, actual)
    return coerced is not _MISSING and coerced == actual


def _not_equals(present: bool, actual: Any, expected: Any) -> bool:
    return not _equals(present, actual, expected)


def _exists(present: bool, actual: Any, expected: Any) -> bool:
    return present


def _matches(present: bool, actual: Any, expected: Any) -> bool:
    if not present or not isinstance(expected, str):
        return False
    text = _as_string(actual)
    if text is None:
        return False
    return _compile(expected).fullmatch(text) is not None


class PolicyEvaluator:
    """
    Evaluates workloads against a policy set.

    The operator set is closed, so dispatch goes through a fixed table.
    """

    OPERATORS: dict[Operator, Callable[[bool, Any, Any], bool]] = {
        Operator.EQUALS: _equals,
        Operator.NOT_EQUALS: _not_equals,
        Operator.EXISTS: _exists,
        Operator.MATCHES: _matches,
    }

    def __init__(self, deny_severity: Severity = Severity.HIGH):
        """
        Initialize evaluator.

        Args:
            deny_severity: Lowest severity that denies a matched workload
        """
        self.deny_severity = deny_severity

    def rule_satisfied(self, rule: Rule, workload: WorkloadDescription) -> bool:
        """Check a single rule against a workload."""
        present, actual = workload.lookup(rule.field_path)
        return self.OPERATORS[rule.operator](present, actual, rule.expected)

    def violations(self, policy: Policy, workload: WorkloadDescription) -> list[Rule]:
        """Rules of ``policy`` the workload does not satisfy, in declared order."""
        return [rule for rule in policy.rules if not self.rule_satisfied(rule, workload)]

    def evaluate(self, policies: Iterable[Policy], workload: WorkloadDescription) -> Verdict:
        """
        Evaluate a workload against a policy set.

        Args:
            policies: Policy set, typically a store snapshot
            workload: Flattened workload under admission

        Returns:
            Verdict naming the deciding policy, if any
        """
        matched: list[tuple[Policy, list[Rule]]] = []
        for policy in policies:
            if not policy.enabled:
                continue
            failed = self.violations(policy, workload)
            if failed:
                matched.append((policy, failed))

        if not matched:
            return Verdict(allowed=True)

        matched.sort(key=lambda item: (-item[0].severity.rank, item[0].id))
        decider = matched[0][0]

        reasons = tuple(
            f"{policy.id} ({policy.severity.value}): {rule.describe()}"
            for policy, failed in matched
            for rule in failed
        )

        return Verdict(
            allowed=decider.severity.rank < self.deny_severity.rank,
            matched_policy=decider.id,
            reasons=reasons,
        )


def evaluate(
    policies: Iterable[Policy],
    workload: WorkloadDescription,
    deny_severity: Severity = Severity.HIGH,
) -> Verdict:
    """Convenience function to evaluate with a one-off evaluator."""
    return PolicyEvaluator(deny_severity=deny_severity).evaluate(policies, workload)

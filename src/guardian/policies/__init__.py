"""
Policy data model, wire schema, evaluation and the per-cluster store.
"""

from guardian.policies.evaluator import PolicyEvaluator, evaluate
from guardian.policies.models import (
    Condition,
    FailurePolicy,
    Operation,
    Operator,
    Policy,
    PolicyStatus,
    Rule,
    Severity,
    Verdict,
    WorkloadDescription,
    flatten,
)
from guardian.policies.schema import policy_from_resource, validate_policy
from guardian.policies.store import PolicySnapshot, PolicyStore

__all__ = [
    "Condition",
    "FailurePolicy",
    "Operation",
    "Operator",
    "Policy",
    "PolicyEvaluator",
    "PolicySnapshot",
    "PolicyStatus",
    "PolicyStore",
    "Rule",
    "Severity",
    "Verdict",
    "WorkloadDescription",
    "evaluate",
    "flatten",
    "policy_from_resource",
    "validate_policy",
]

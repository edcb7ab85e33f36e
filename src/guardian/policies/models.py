"""
Policy data models.

Immutable records shared by the store, the evaluator, the reconcile engine
and the admission gate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Severity(str, Enum):
    """Policy severity, ordered Low < Medium < High."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class Operator(str, Enum):
    """Rule operators. The set is closed."""

    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    EXISTS = "Exists"
    MATCHES = "Matches"


class Condition(str, Enum):
    """Externally visible policy condition."""

    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


class Operation(str, Enum):
    """Admission operation of a workload request."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class FailurePolicy(str, Enum):
    """What the admission gate answers when it cannot decide in time."""

    FAIL_OPEN = "FailOpen"
    FAIL_CLOSED = "FailClosed"


@dataclass(frozen=True)
class Rule:
    """A single predicate over a workload field."""

    field_path: str
    operator: Operator
    expected: Any = None

    def describe(self) -> str:
        if self.operator is Operator.EXISTS:
            return f"{self.field_path} must exist"
        if self.operator is Operator.MATCHES:
            return f"{self.field_path} must match {self.expected!r}"
        if self.operator is Operator.NOT_EQUALS:
            return f"{self.field_path} must not equal {self.expected!r}"
        return f"{self.field_path} must equal {self.expected!r}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"fieldPath": self.field_path, "operator": self.operator.value}
        if self.expected is not None:
            data["expected"] = self.expected
        return data


@dataclass(frozen=True)
class PolicyStatus:
    """Reconciled status of a policy. Written only by the reconcile engine."""

    observed_generation: int = 0
    condition: Condition = Condition.PENDING
    last_evaluated: datetime | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "observedGeneration": self.observed_generation,
            "condition": self.condition.value,
            "lastEvaluated": self.last_evaluated.isoformat() if self.last_evaluated else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class Policy:
    """A GuardianPolicy as known to one cluster."""

    name: str
    severity: Severity = Severity.HIGH
    rules: tuple[Rule, ...] = ()
    enabled: bool = True
    finalizer_present: bool = False
    generation: int = 1
    status: PolicyStatus = field(default_factory=PolicyStatus)
    uid: str | None = None
    # Set once the cluster accepted a delete; only finalizers keep it alive.
    deleting: bool = False
    # Problems found while decoding the manifest; reported by validation.
    schema_errors: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.name


@dataclass(frozen=True)
class WorkloadDescription:
    """Flattened view of a resource manifest under admission."""

    fields: Mapping[str, Any]
    operation: Operation = Operation.CREATE

    def __post_init__(self) -> None:
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def lookup(self, path: str) -> tuple[bool, Any]:
        """Return (present, value) for a field path."""
        if path == "operation":
            return True, self.operation.value
        if path in self.fields:
            return True, self.fields[path]
        # A path naming a non-empty subtree is present; its value is the subtree.
        prefix = f"{path}."
        subtree = {k[len(prefix) :]: v for k, v in self.fields.items() if k.startswith(prefix)}
        if subtree:
            return True, subtree
        return False, None

    @classmethod
    def from_manifest(
        cls, manifest: Mapping[str, Any], operation: Operation = Operation.CREATE
    ) -> WorkloadDescription:
        return cls(fields=flatten(manifest), operation=operation)


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating a workload against the active policies."""

    allowed: bool
    matched_policy: str | None = None
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "matchedPolicy": self.matched_policy,
            "reasons": list(self.reasons),
        }


def flatten(value: Any, prefix: str = "") -> dict[str, Any]:
    """
    Flatten a manifest into field-path -> value pairs.

    Mapping keys are joined with '.', list items by index. Empty containers
    are kept as leaves so that ``Exists`` can see them.
    """
    out: dict[str, Any] = {}
    if isinstance(value, Mapping) and value:
        for key, item in value.items():
            out.update(flatten(item, f"{prefix}.{key}" if prefix else str(key)))
    elif isinstance(value, (list, tuple)) and value:
        for index, item in enumerate(value):
            out.update(flatten(item, f"{prefix}.{index}" if prefix else str(index)))
    elif prefix:
        out[prefix] = value
    return out

"""
GuardianPolicy wire schema (group guardian.io, version v1).

Decoding is lenient: a malformed spec still yields a Policy whose
``schema_errors`` lists what was wrong, so the reconcile engine can report the
problem in the policy status instead of dropping the event.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from guardian.core.errors import ValidationError
from guardian.policies.models import Condition, Operator, Policy, PolicyStatus, Rule, Severity

GROUP = "guardian.io"
VERSION = "v1"
PLURAL = "guardianpolicies"

SCALAR_TYPES = (str, int, float, bool)


class RuleSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    field_path: str = Field(alias="fieldPath")
    operator: Operator
    expected: Any = None


class ObjectMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    uid: str | None = None
    generation: int = 1
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = Field(default=None, alias="deletionTimestamp")


class StatusSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    observed_generation: int = Field(default=0, alias="observedGeneration")
    condition: Condition = Condition.PENDING
    last_evaluated: datetime | None = Field(default=None, alias="lastEvaluated")
    message: str = ""


def _format_pydantic_error(exc: PydanticValidationError, prefix: str) -> list[str]:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        problems.append(f"{prefix}.{loc}: {err['msg']}" if loc else f"{prefix}: {err['msg']}")
    return problems


def _decode_rules(raw: Any) -> tuple[tuple[Rule, ...], list[str]]:
    if raw is None:
        return (), []
    if not isinstance(raw, list):
        return (), ["spec.rules: must be a list"]

    rules: list[Rule] = []
    problems: list[str] = []
    for index, item in enumerate(raw):
        try:
            spec = RuleSpec.model_validate(item)
        except PydanticValidationError as exc:
            problems.extend(_format_pydantic_error(exc, f"spec.rules[{index}]"))
            continue
        rules.append(Rule(field_path=spec.field_path, operator=spec.operator, expected=spec.expected))
    return tuple(rules), problems


def policy_from_resource(resource: dict[str, Any], finalizer_name: str) -> Policy:
    """
    Decode a GuardianPolicy object as returned by the cluster API.

    Raises:
        ValidationError: when the object has no usable metadata, which means
            it cannot even be identified
    """
    try:
        meta = ObjectMeta.model_validate(resource.get("metadata") or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            "GuardianPolicy metadata is invalid",
            problems=_format_pydantic_error(exc, "metadata"),
        ) from exc

    spec = resource.get("spec")
    problems: list[str] = []
    if not isinstance(spec, dict):
        problems.append("spec: must be an object")
        spec = {}

    severity = Severity.HIGH
    raw_severity = spec.get("severity")
    try:
        severity = Severity(raw_severity)
    except ValueError:
        allowed = ", ".join(s.value for s in Severity)
        problems.append(f"spec.severity: {raw_severity!r} is not one of {allowed}")

    enabled = spec.get("enabled", True)
    if not isinstance(enabled, bool):
        problems.append("spec.enabled: must be a boolean")
        enabled = True

    rules, rule_problems = _decode_rules(spec.get("rules"))
    problems.extend(rule_problems)

    status = PolicyStatus()
    if isinstance(resource.get("status"), dict):
        try:
            decoded = StatusSpec.model_validate(resource["status"])
            status = PolicyStatus(
                observed_generation=decoded.observed_generation,
                condition=decoded.condition,
                last_evaluated=decoded.last_evaluated,
                message=decoded.message,
            )
        except PydanticValidationError:
            # A status we cannot read will be overwritten by the next reconcile.
            status = PolicyStatus()

    return Policy(
        name=meta.name,
        severity=severity,
        rules=rules,
        enabled=enabled,
        finalizer_present=finalizer_name in meta.finalizers,
        generation=meta.generation,
        status=status,
        uid=meta.uid,
        deleting=meta.deletion_timestamp is not None,
        schema_errors=tuple(problems),
    )


def is_being_deleted(resource: dict[str, Any]) -> bool:
    return bool((resource.get("metadata") or {}).get("deletionTimestamp"))


def _rule_problems(index: int, rule: Rule) -> list[str]:
    where = f"spec.rules[{index}]"
    problems = []

    path = rule.field_path
    if not path or any(not segment for segment in path.split(".")):
        problems.append(f"{where}.fieldPath: {path!r} is not a valid field path")

    if rule.operator in (Operator.EQUALS, Operator.NOT_EQUALS):
        if rule.expected is None:
            problems.append(f"{where}.expected: required for {rule.operator.value}")
        elif not isinstance(rule.expected, SCALAR_TYPES):
            problems.append(f"{where}.expected: must be a string, number or boolean")
    elif rule.operator is Operator.MATCHES:
        if not isinstance(rule.expected, str):
            problems.append(f"{where}.expected: Matches requires a pattern string")
        else:
            try:
                re.compile(rule.expected)
            except re.error as exc:
                problems.append(f"{where}.expected: invalid pattern ({exc})")

    return problems


def validate_policy(policy: Policy) -> None:
    """
    Check a policy for schema and rule well-formedness.

    Raises:
        ValidationError: listing every problem found
    """
    problems = list(policy.schema_errors)

    if policy.generation < 1:
        problems.append(f"metadata.generation: {policy.generation} must be positive")
    if not policy.rules and not policy.schema_errors:
        problems.append("spec.rules: at least one rule is required")

    for index, rule in enumerate(policy.rules):
        problems.extend(_rule_problems(index, rule))

    if problems:
        raise ValidationError(
            "; ".join(problems),
            problems=problems,
            policy=policy.name,
            generation=policy.generation,
        )

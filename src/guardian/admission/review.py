"""
AdmissionReview codec (admission.k8s.io/v1).

Decodes webhook requests into WorkloadDescriptions and encodes Verdicts back
into AdmissionReview responses. The response uid always echoes the request.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from guardian.policies.models import Operation, Verdict, WorkloadDescription, flatten

ADMISSION_API_VERSION = "admission.k8s.io/v1"

_OPERATIONS = {
    "CREATE": Operation.CREATE,
    "UPDATE": Operation.UPDATE,
    "DELETE": Operation.DELETE,
}


class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


class AdmissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    uid: str
    kind: GroupVersionKind = Field(default_factory=GroupVersionKind)
    operation: str
    namespace: str | None = None
    name: str | None = None
    object: dict[str, Any] | None = None
    old_object: dict[str, Any] | None = Field(default=None, alias="oldObject")


class AdmissionReview(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    request: AdmissionRequest


class ResponseStatus(BaseModel):
    message: str = ""
    code: int | None = None


class AdmissionResponse(BaseModel):
    uid: str
    allowed: bool
    status: ResponseStatus | None = None


class AdmissionReviewResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=ADMISSION_API_VERSION, alias="apiVersion")
    kind: str = "AdmissionReview"
    response: AdmissionResponse


def workload_from_request(request: AdmissionRequest) -> WorkloadDescription | None:
    """
    Build the workload description for a request.

    Returns None for operations policies do not govern (e.g. CONNECT).
    DELETE requests are evaluated against the object being deleted.
    """
    operation = _OPERATIONS.get(request.operation.upper())
    if operation is None:
        return None

    manifest = request.old_object if operation is Operation.DELETE else request.object
    fields = flatten(manifest or {})

    if request.kind.kind:
        fields.setdefault("kind", request.kind.kind)
    if request.namespace:
        fields.setdefault("metadata.namespace", request.namespace)
    if request.name:
        fields.setdefault("metadata.name", request.name)

    return WorkloadDescription(fields=fields, operation=operation)


def review_response(review: AdmissionReview, verdict: Verdict) -> dict[str, Any]:
    """Encode a verdict as an AdmissionReview response body."""
    status = None
    if not verdict.allowed:
        status = ResponseStatus(message="; ".join(verdict.reasons), code=403)
    elif verdict.reasons:
        status = ResponseStatus(message="; ".join(verdict.reasons))

    body = AdmissionReviewResponse(
        api_version=review.api_version,
        response=AdmissionResponse(uid=review.request.uid, allowed=verdict.allowed, status=status),
    )
    return body.model_dump(by_alias=True, exclude_none=True)

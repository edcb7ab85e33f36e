"""Admission-time enforcement: the decision gate and the webhook codec."""

from guardian.admission.counters import DecisionCounters
from guardian.admission.gate import AdmissionGate
from guardian.admission.review import (
    AdmissionReview,
    review_response,
    workload_from_request,
)

__all__ = [
    "AdmissionGate",
    "AdmissionReview",
    "DecisionCounters",
    "review_response",
    "workload_from_request",
]

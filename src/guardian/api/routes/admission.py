"""Validating admission webhook."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError as PydanticValidationError

from guardian.admission.review import AdmissionReview, review_response, workload_from_request
from guardian.api.deps import get_aggregator, get_app_settings, resolve_runtime
from guardian.clusters.aggregator import ClusterAggregator
from guardian.config import Settings
from guardian.policies.models import Verdict

router = APIRouter()
logger = structlog.get_logger()


async def _review(
    payload: dict[str, Any],
    aggregator: ClusterAggregator,
    settings: Settings,
    cluster_id: str | None,
) -> dict[str, Any]:
    try:
        review = AdmissionReview.model_validate(payload)
    except PydanticValidationError as exc:
        logger.warning("admission_review_invalid", errors=exc.error_count())
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Malformed AdmissionReview",
        ) from exc

    runtime = resolve_runtime(aggregator, settings, cluster_id)
    workload = workload_from_request(review.request)
    if workload is None:
        verdict = Verdict(allowed=True)
    else:
        verdict = await runtime.gate.decide(workload)

    logger.debug(
        "admission_reviewed",
        cluster_id=runtime.cluster_id,
        uid=review.request.uid,
        operation=review.request.operation,
        allowed=verdict.allowed,
        matched_policy=verdict.matched_policy,
    )
    return review_response(review, verdict)


@router.post("/validate")
async def validate(
    payload: dict[str, Any] = Body(...),  # noqa: B008
    aggregator: ClusterAggregator = Depends(get_aggregator),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """Admission webhook for the default cluster."""
    return await _review(payload, aggregator, settings, None)


@router.post("/validate/{cluster_id}")
async def validate_cluster(
    cluster_id: str,
    payload: dict[str, Any] = Body(...),  # noqa: B008
    aggregator: ClusterAggregator = Depends(get_aggregator),  # noqa: B008
    settings: Settings = Depends(get_app_settings),  # noqa: B008
) -> dict[str, Any]:
    """Admission webhook for a named cluster."""
    return await _review(payload, aggregator, settings, cluster_id)

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from policytracker.apps.api.deps import Principal, get_current_principal, get_usage_tracker
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from policytracker.apps.api.response import SuccessEnvelope, success_response
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.usage import UsageTracker, format_storage_size


router = APIRouter(
    prefix="/usage",
    tags=["usage"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)


class UsageLimits(BaseModel):
    max_policies: int | None
    max_ocr_scans: int | None
    max_storage_bytes: int
    backup_frequency_days: int


class UsageResponse(BaseModel):
    tier: str
    month_year: str
    policy_count: int
    ocr_scans_used: int
    storage_used_bytes: int
    storage_used_display: str
    storage_limit_display: str
    last_backup_at: datetime | None
    limits: UsageLimits
    percentages: dict[str, int]
    can_add_policy: bool
    can_use_ocr: bool
    backup_due: bool


def usage_payload(tracker: UsageTracker) -> dict[str, Any]:
    usage = tracker.usage
    limits = tracker.limits
    payload = UsageResponse(
        tier=tracker.tier,
        month_year=tracker.month_year,
        policy_count=usage.policy_count,
        ocr_scans_used=usage.ocr_scans_used,
        storage_used_bytes=usage.storage_used_bytes,
        storage_used_display=format_storage_size(usage.storage_used_bytes),
        storage_limit_display=format_storage_size(limits.max_storage_bytes),
        last_backup_at=usage.last_backup_at,
        limits=UsageLimits(
            max_policies=limits.max_policies,
            max_ocr_scans=limits.max_ocr_scans,
            max_storage_bytes=limits.max_storage_bytes,
            backup_frequency_days=limits.backup_frequency_days,
        ),
        percentages=tracker.percentages(),
        can_add_policy=tracker.can_add_policy,
        can_use_ocr=tracker.can_use_ocr,
        backup_due=tracker.backup_due,
    )
    return payload.model_dump(mode="json")


def quota_exceeded(*, metric: str, limit: int | None, used: int, tier: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "code": "QUOTA_EXCEEDED",
            "message": message,
            "metric": metric,
            "limit": limit,
            "used": used,
            "tier": tier,
        },
    )


@router.get("", response_model=SuccessEnvelope[UsageResponse])
async def get_usage(
    request: Request,
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> dict:
    return success_response(request=request, data=usage_payload(tracker))


@router.post("/ocr", response_model=SuccessEnvelope[UsageResponse])
async def consume_ocr_scan(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> dict:
    # Reserve one OCR scan before the client runs extraction.
    if not await tracker.increment_ocr_usage():
        await record_event(
            AuditEventType.OCR_BLOCKED,
            user_id=principal.user_id,
            request=request,
            metadata={"used": tracker.usage.ocr_scans_used, "limit": tracker.limits.max_ocr_scans},
        )
        raise quota_exceeded(
            metric="ocr_scans",
            limit=tracker.limits.max_ocr_scans,
            used=tracker.usage.ocr_scans_used,
            tier=tracker.tier,
            message="Monthly OCR scan limit reached. Upgrade to Pro for unlimited scans.",
        )
    return success_response(request=request, data=usage_payload(tracker))


@router.post("/backup", response_model=SuccessEnvelope[UsageResponse])
async def mark_backup(
    request: Request,
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> dict:
    if not await tracker.record_backup():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Failed to record backup"},
        )
    return success_response(request=request, data=usage_payload(tracker))

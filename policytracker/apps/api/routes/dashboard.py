from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import Principal, get_current_principal, get_db, get_usage_tracker
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from policytracker.apps.api.response import SuccessEnvelope, success_response
from policytracker.apps.api.routes.usage import usage_payload
from policytracker.services import dashboard
from policytracker.services.usage import UsageTracker


router = APIRouter(prefix="/dashboard", tags=["dashboard"], responses=DEFAULT_ERROR_RESPONSES)


class DashboardResponse(BaseModel):
    stats: dict[str, int]
    renewals: dict[str, Any]
    follow_ups: list[dict[str, Any]]
    commission: dict[str, Any]
    recent_activity: list[dict[str, Any]]
    usage: dict[str, Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@router.get("", response_model=SuccessEnvelope[DashboardResponse])
async def get_dashboard(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> dict:
    now = _utc_now()
    today = now.date()
    renewals = await dashboard.upcoming_renewals(db, principal.user_id, today=today)
    follow_ups = await dashboard.todays_follow_ups(db, principal.user_id, today=today)
    commission = await dashboard.commission_summary(db, principal.user_id, now=now)
    stats = await dashboard.policy_stats(db, principal.user_id, now=now)
    recent = await dashboard.recent_activity(db, principal.user_id)
    data = DashboardResponse(
        stats=asdict(stats),
        renewals=asdict(renewals),
        follow_ups=follow_ups,
        commission=asdict(commission),
        recent_activity=recent,
        usage=usage_payload(tracker),
    )
    return success_response(request=request, data=data.model_dump(mode="json"))

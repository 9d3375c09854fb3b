from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.domain.models import Policy
from policytracker.services.companies import aggregate_by_company
from policytracker.services.subscription import as_utc


RENEWAL_WINDOW_DAYS = 30
FOLLOW_UP_WINDOW_DAYS = 7
WIDGET_ROW_LIMIT = 5


@dataclass(frozen=True)
class RenewalSummary:
    policies: list[dict[str, Any]]
    count: int
    total_premium: float


@dataclass(frozen=True)
class CommissionSummary:
    monthly: float = 0.0
    yearly: float = 0.0
    expected_future: float = 0.0
    lifetime: float = 0.0
    by_company: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class PolicyStats:
    total: int = 0
    due: int = 0
    active: int = 0
    expired: int = 0
    new_this_month: int = 0


def commission_for(net_premium: float | None, commission_percentage: float | None) -> float:
    return float(net_premium or 0) * float(commission_percentage or 0) / 100


def _policy_brief(policy: Policy) -> dict[str, Any]:
    return {
        "id": policy.id,
        "client_name": policy.client_name,
        "policy_number": policy.policy_number,
        "insurance_type": policy.insurance_type,
        "contact_number": policy.contact_number,
        "policy_expiry_date": policy.policy_expiry_date.isoformat(),
        "net_premium": policy.net_premium,
    }


async def upcoming_renewals(session: AsyncSession, user_id: str, *, today: date) -> RenewalSummary:
    """Policies expiring within the renewal window, soonest first.

    ``count`` covers the whole window while ``total_premium`` sums only the
    rows returned.
    """
    window_end = today + timedelta(days=RENEWAL_WINDOW_DAYS)
    in_window = (
        Policy.user_id == user_id,
        Policy.policy_expiry_date >= today,
        Policy.policy_expiry_date <= window_end,
    )
    result = await session.execute(
        select(Policy).where(*in_window).order_by(Policy.policy_expiry_date.asc()).limit(WIDGET_ROW_LIMIT)
    )
    rows = list(result.scalars().all())
    count = await session.scalar(select(func.count()).select_from(Policy).where(*in_window))
    return RenewalSummary(
        policies=[_policy_brief(row) for row in rows],
        count=int(count or 0),
        total_premium=sum(float(row.net_premium or 0) for row in rows),
    )


async def todays_follow_ups(session: AsyncSession, user_id: str, *, today: date) -> list[dict[str, Any]]:
    window_end = today + timedelta(days=FOLLOW_UP_WINDOW_DAYS)
    result = await session.execute(
        select(Policy)
        .where(
            Policy.user_id == user_id,
            Policy.policy_expiry_date >= today,
            Policy.policy_expiry_date <= window_end,
        )
        .order_by(Policy.policy_expiry_date.asc())
        .limit(WIDGET_ROW_LIMIT)
    )
    follow_ups = []
    for row in result.scalars().all():
        entry = _policy_brief(row)
        entry["days_remaining"] = (row.policy_expiry_date - today).days
        follow_ups.append(entry)
    return follow_ups


async def recent_activity(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    result = await session.execute(
        select(Policy)
        .where(Policy.user_id == user_id)
        .order_by(Policy.created_at.desc(), Policy.id.desc())
        .limit(WIDGET_ROW_LIMIT)
    )
    return [
        {
            "id": row.id,
            "client_name": row.client_name,
            "policy_number": row.policy_number,
            "insurance_type": row.insurance_type,
            "created_at": as_utc(row.created_at).isoformat() if row.created_at else None,
        }
        for row in result.scalars().all()
    ]


async def _summary_rows(session: AsyncSession, user_id: str) -> list[Any]:
    result = await session.execute(
        select(
            Policy.company_name,
            Policy.net_premium,
            Policy.commission_percentage,
            Policy.policy_expiry_date,
            Policy.created_at,
        ).where(Policy.user_id == user_id)
    )
    return list(result.all())


def summarize_commission(rows: list[Any], *, now: datetime) -> CommissionSummary:
    # Rows carry (company_name, net_premium, commission_percentage, expiry, created_at).
    now = as_utc(now)
    today = now.date()
    monthly = yearly = expected_future = lifetime = 0.0
    for _company, premium, percentage, expiry, created_at in rows:
        commission = commission_for(premium, percentage)
        lifetime += commission
        created = as_utc(created_at) if created_at is not None else None
        if created is not None and created.year == now.year:
            yearly += commission
            if created.month == now.month:
                monthly += commission
        if expiry is not None and expiry > today:
            expected_future += commission

    totals = aggregate_by_company((row[0], row[1], row[2]) for row in rows)
    by_company = [
        {
            "company": name,
            "count": entry.count,
            "premium": entry.premium,
            "commission": entry.commission,
        }
        for name, entry in sorted(totals.items(), key=lambda item: item[1].commission, reverse=True)
    ]
    return CommissionSummary(
        monthly=monthly,
        yearly=yearly,
        expected_future=expected_future,
        lifetime=lifetime,
        by_company=by_company,
    )


def summarize_policies(rows: list[Any], *, now: datetime) -> PolicyStats:
    now = as_utc(now)
    today = now.date()
    window_end = today + timedelta(days=RENEWAL_WINDOW_DAYS)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    due = active = expired = new_this_month = 0
    for _company, _premium, _percentage, expiry, created_at in rows:
        if expiry is not None:
            if today <= expiry <= window_end:
                due += 1
            if expiry > today:
                active += 1
            elif expiry < today:
                expired += 1
        if created_at is not None and as_utc(created_at) >= month_start:
            new_this_month += 1
    return PolicyStats(
        total=len(rows),
        due=due,
        active=active,
        expired=expired,
        new_this_month=new_this_month,
    )


async def commission_summary(session: AsyncSession, user_id: str, *, now: datetime) -> CommissionSummary:
    return summarize_commission(await _summary_rows(session, user_id), now=now)


async def policy_stats(session: AsyncSession, user_id: str, *, now: datetime) -> PolicyStats:
    return summarize_policies(await _summary_rows(session, user_id), now=now)

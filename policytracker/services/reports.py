from __future__ import annotations

import csv
from dataclasses import dataclass, field
from datetime import date, timedelta
import html
import io
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.errors import NotificationDeliveryError
from policytracker.domain.models import Policy, Profile
from policytracker.services.notifications import EmailAttachment, EmailSender
from policytracker.services.subscription import as_utc


logger = logging.getLogger(__name__)

EXPIRING_WINDOW_DAYS = 30

_CSV_COLUMNS = (
    "S.No",
    "Policy Number",
    "Client Name",
    "Vehicle Number",
    "Company",
    "Net Premium (INR)",
    "Active Date",
    "Expiry Date",
    "Added On",
)


def is_last_day_of_month(today: date) -> bool:
    return (today + timedelta(days=1)).day == 1


def month_bounds(today: date) -> tuple[date, date]:
    # Half-open [first day, first day of next month).
    start = today.replace(day=1)
    next_start = (start + timedelta(days=32)).replace(day=1)
    return start, next_start


@dataclass(frozen=True)
class MonthlyPremiumReport:
    period_label: str
    month_policies: list[Policy]
    total_policies: int
    expiring_count: int
    expired_count: int

    @property
    def total_premium(self) -> float:
        return sum(float(policy.net_premium or 0) for policy in self.month_policies)

    @property
    def average_premium(self) -> float:
        if not self.month_policies:
            return 0.0
        return self.total_premium / len(self.month_policies)


@dataclass
class ReportRunResult:
    skipped: bool = False
    success_count: int = 0
    error_count: int = 0
    total_users: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "totalUsers": self.total_users,
            "errors": list(self.errors),
        }


def build_monthly_report(policies: list[Policy], *, today: date) -> MonthlyPremiumReport:
    """Summarize one owner's book: premiums written this month plus expiry counts."""
    start, next_start = month_bounds(today)
    month_policies = [
        policy
        for policy in policies
        if policy.created_at is not None and start <= as_utc(policy.created_at).date() < next_start
    ]
    month_policies.sort(key=lambda policy: as_utc(policy.created_at), reverse=True)
    window_end = today + timedelta(days=EXPIRING_WINDOW_DAYS)
    return MonthlyPremiumReport(
        period_label=start.strftime("%B %Y"),
        month_policies=month_policies,
        total_policies=len(policies),
        expiring_count=sum(1 for p in policies if today <= p.policy_expiry_date <= window_end),
        expired_count=sum(1 for p in policies if p.policy_expiry_date < today),
    )


def _format_inr(amount: float) -> str:
    return f"₹{amount:,.2f}"


def render_report_subject(report: MonthlyPremiumReport) -> str:
    return f"Monthly Premium Report - {report.period_label} | PolicyTracker"


def render_report_email(*, recipient: str, report: MonthlyPremiumReport) -> str:
    rows = "".join(
        "<tr>"
        f"<td>{html.escape(policy.policy_number or '')}</td>"
        f"<td>{html.escape(policy.client_name or '')}</td>"
        f"<td>{html.escape(policy.company_name or '-')}</td>"
        f"<td style=\"text-align: right;\">{_format_inr(float(policy.net_premium or 0))}</td>"
        "</tr>"
        for policy in report.month_policies
    )
    if not rows:
        rows = '<tr><td colspan="4">No policies were added this month.</td></tr>'
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: sans-serif; color: #1e293b; max-width: 640px; margin: 0 auto;\">"
        "<h1>Policy Tracker</h1>"
        f"<h2>Hello {html.escape(recipient)}!</h2>"
        f"<p>Here is your premium report for <strong>{report.period_label}</strong>.</p>"
        "<table style=\"width: 100%;\"><tr>"
        f"<td><strong>{report.total_policies}</strong><br>Total Policies</td>"
        f"<td><strong>{report.expiring_count}</strong><br>Expiring Soon</td>"
        f"<td><strong>{report.expired_count}</strong><br>Expired</td>"
        "</tr></table>"
        f"<p>Policies added this month: <strong>{len(report.month_policies)}</strong><br>"
        f"Total net premium: <strong>{_format_inr(report.total_premium)}</strong><br>"
        f"Average premium: <strong>{_format_inr(report.average_premium)}</strong></p>"
        "<table style=\"width: 100%; border-collapse: collapse;\">"
        "<thead><tr><th>Policy No.</th><th>Client</th><th>Insurer</th><th>Net Premium</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
        "<p>The full list is attached as a spreadsheet.</p>"
        "<p>Best regards,<br><strong>PolicyTracker Team</strong></p>"
        "</body></html>"
    )


def render_report_csv(report: MonthlyPremiumReport) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(_CSV_COLUMNS)
    for index, policy in enumerate(report.month_policies, start=1):
        writer.writerow(
            [
                index,
                policy.policy_number,
                policy.client_name,
                policy.vehicle_number or "",
                policy.company_name or "-",
                f"{float(policy.net_premium or 0):.2f}",
                policy.policy_active_date.strftime("%d/%m/%Y"),
                policy.policy_expiry_date.strftime("%d/%m/%Y"),
                as_utc(policy.created_at).strftime("%d/%m/%Y"),
            ]
        )
    writer.writerow(["", "", "", "", "TOTAL", f"{report.total_premium:.2f}", "", "", ""])
    # BOM so spreadsheet apps pick up UTF-8 client names.
    return buffer.getvalue().encode("utf-8-sig")


async def _owner_policies(session: AsyncSession, user_id: str) -> list[Policy]:
    result = await session.execute(
        select(Policy).where(Policy.user_id == user_id).order_by(Policy.policy_expiry_date.asc())
    )
    return list(result.scalars().all())


async def send_monthly_reports(
    session: AsyncSession,
    *,
    today: date,
    sender: EmailSender | None = None,
    manual_trigger: bool = False,
) -> ReportRunResult:
    """Email every profile its monthly premium report.

    Scheduled runs only act on the last day of the month; ``manual_trigger``
    skips that check. Owners without policies are counted but not emailed.
    Raises ``NotificationConfigError`` before any work when email is not set up.
    """
    if not manual_trigger and not is_last_day_of_month(today):
        logger.info("monthly_report_skipped reason=not_last_day date=%s", today.isoformat())
        return ReportRunResult(skipped=True)

    sender = sender or EmailSender()
    sender.ensure_configured()
    profiles = list((await session.execute(select(Profile).order_by(Profile.id))).scalars().all())
    outcome = ReportRunResult(total_users=len(profiles))
    logger.info("monthly_report_started users=%s manual=%s", len(profiles), manual_trigger)

    for profile in profiles:
        short_id = profile.id[:8]
        try:
            policies = await _owner_policies(session, profile.id)
        except SQLAlchemyError as exc:
            outcome.error_count += 1
            outcome.errors.append(f"Database error fetching policies for user {short_id}")
            logger.error("monthly_report_policy_lookup_failed user_id=%s", short_id, exc_info=exc)
            continue
        if not policies:
            logger.info("monthly_report_no_policies user_id=%s", short_id)
            continue

        report = build_monthly_report(policies, today=today)
        attachment = EmailAttachment(
            filename=f"premium_report_{today.strftime('%Y_%m')}.csv",
            content=render_report_csv(report),
        )
        try:
            await sender.send(
                to=profile.email,
                subject=render_report_subject(report),
                html_body=render_report_email(recipient=profile.full_name or profile.email, report=report),
                attachments=[attachment],
            )
        except NotificationDeliveryError as exc:
            outcome.error_count += 1
            outcome.errors.append(f"Failed to send report to user {short_id}: {exc}")
            logger.warning("monthly_report_email_failed user_id=%s", short_id, exc_info=exc)
            continue
        outcome.success_count += 1
        logger.info("monthly_report_sent user_id=%s month_policies=%s", short_id, len(report.month_policies))

    logger.info(
        "monthly_report_finished success=%s errors=%s", outcome.success_count, outcome.error_count
    )
    return outcome

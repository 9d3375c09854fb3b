from __future__ import annotations

import base64
import csv
from datetime import date, datetime, timedelta, timezone
import io

import pytest

from policytracker.core.errors import NotificationConfigError, NotificationDeliveryError
from policytracker.persistence.db import SessionLocal
from policytracker.services.notifications import EmailAttachment
from policytracker.services.reports import (
    build_monthly_report,
    is_last_day_of_month,
    render_report_csv,
    render_report_email,
    render_report_subject,
    send_monthly_reports,
)
from policytracker.tests.utils.auth import create_profile, make_policy, new_user_id, seed_policies


_MONTH_END = date(2026, 6, 30)


def _in_month(day: int) -> datetime:
    return datetime(2026, 6, day, 9, 30, tzinfo=timezone.utc)


class _FakeSender:
    def __init__(self, *, configured: bool = True, failing: set[str] | None = None) -> None:
        self.configured = configured
        self.failing = failing or set()
        self.sent: list[dict] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise NotificationConfigError("Email service not configured")

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        attachments: list[EmailAttachment] | None = None,
    ) -> str | None:
        if to in self.failing:
            raise NotificationDeliveryError("provider rejected message")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "attachments": attachments or []})
        return "msg-1"


def test_last_day_of_month_handles_short_months_and_leap_years() -> None:
    assert is_last_day_of_month(date(2026, 6, 30))
    assert is_last_day_of_month(date(2026, 12, 31))
    assert is_last_day_of_month(date(2028, 2, 29))
    assert not is_last_day_of_month(date(2028, 2, 28))
    assert not is_last_day_of_month(date(2026, 6, 15))


def test_report_counts_only_this_months_premiums() -> None:
    policies = [
        make_policy("u", expiry=_MONTH_END + timedelta(days=10), net_premium=12000.0, created_at=_in_month(3)),
        make_policy("u", expiry=_MONTH_END + timedelta(days=200), net_premium=8000.0, created_at=_in_month(28)),
        make_policy(
            "u",
            expiry=_MONTH_END - timedelta(days=5),
            net_premium=50000.0,
            created_at=_in_month(1) - timedelta(days=40),
        ),
    ]

    report = build_monthly_report(policies, today=_MONTH_END)

    assert report.period_label == "June 2026"
    assert len(report.month_policies) == 2
    assert report.total_premium == 20000.0
    assert report.average_premium == 10000.0
    assert (report.total_policies, report.expiring_count, report.expired_count) == (3, 1, 1)
    # Newest first.
    assert report.month_policies[0].created_at == _in_month(28)


def test_email_escapes_fields_and_shows_totals() -> None:
    policy = make_policy(
        "u",
        expiry=_MONTH_END + timedelta(days=90),
        client_name="<b>Ravi</b>",
        net_premium=1234.5,
        created_at=_in_month(10),
    )
    report = build_monthly_report([policy], today=_MONTH_END)

    body = render_report_email(recipient="Asha & Co", report=report)

    assert "<b>Ravi</b>" not in body
    assert "&lt;b&gt;Ravi&lt;/b&gt;" in body
    assert "Asha &amp; Co" in body
    assert "₹1,234.50" in body
    assert render_report_subject(report) == "Monthly Premium Report - June 2026 | PolicyTracker"


def test_empty_month_still_renders() -> None:
    old = make_policy("u", expiry=_MONTH_END + timedelta(days=90), created_at=_in_month(1) - timedelta(days=60))
    report = build_monthly_report([old], today=_MONTH_END)

    assert report.month_policies == []
    assert report.average_premium == 0.0
    assert "No policies were added this month." in render_report_email(recipient="Asha", report=report)


def test_csv_lists_policies_with_total_row() -> None:
    policy = make_policy(
        "u", expiry=date(2027, 6, 1), client_name="Meera, Shah", net_premium=9999.0, created_at=_in_month(12)
    )
    report = build_monthly_report([policy], today=_MONTH_END)

    raw = render_report_csv(report)

    assert raw.startswith(b"\xef\xbb\xbf")
    rows = list(csv.reader(io.StringIO(raw.decode("utf-8-sig"))))
    assert rows[0][0] == "S.No"
    assert rows[1][1] == policy.policy_number
    assert rows[1][2] == "Meera, Shah"
    assert rows[1][5] == "9999.00"
    assert rows[1][7] == "01/06/2027"
    assert rows[1][8] == "12/06/2026"
    assert rows[-1][4:6] == ["TOTAL", "9999.00"]


@pytest.mark.asyncio
async def test_scheduled_run_skips_before_month_end() -> None:
    sender = _FakeSender()
    async with SessionLocal() as session:
        result = await send_monthly_reports(session, today=date(2026, 6, 29), sender=sender)

    assert result.skipped
    assert result.as_dict()["totalUsers"] == 0
    assert sender.sent == []


@pytest.mark.asyncio
async def test_skip_happens_before_config_check() -> None:
    async with SessionLocal() as session:
        result = await send_monthly_reports(
            session, today=date(2026, 6, 29), sender=_FakeSender(configured=False)
        )

    assert result.skipped


@pytest.mark.asyncio
async def test_month_end_run_emails_owners_with_policies() -> None:
    reported = new_user_id()
    bounced = new_user_id()
    idle = new_user_id()
    await create_profile(reported, email="report-ok@example.com", full_name="Kiran")
    await create_profile(bounced, email="report-bounce@example.com")
    await create_profile(idle, email="report-idle@example.com")
    await seed_policies(
        [
            make_policy(reported, expiry=date(2027, 1, 1), net_premium=15000.0, created_at=_in_month(5)),
            make_policy(bounced, expiry=date(2027, 1, 1), created_at=_in_month(6)),
        ]
    )
    sender = _FakeSender(failing={"report-bounce@example.com"})

    async with SessionLocal() as session:
        result = await send_monthly_reports(session, today=_MONTH_END, sender=sender)

    assert not result.skipped
    assert (result.total_users, result.success_count, result.error_count) == (3, 1, 1)
    assert bounced[:8] in result.errors[0]
    recipients = [message["to"] for message in sender.sent]
    assert "report-ok@example.com" in recipients
    assert "report-idle@example.com" not in recipients

    message = next(m for m in sender.sent if m["to"] == "report-ok@example.com")
    assert message["subject"] == "Monthly Premium Report - June 2026 | PolicyTracker"
    assert "Hello Kiran!" in message["html"]
    (attachment,) = message["attachments"]
    assert attachment.filename == "premium_report_2026_06.csv"
    payload = attachment.as_payload()
    assert base64.b64decode(payload["content"]) == attachment.content
    assert b"15000.00" in attachment.content


@pytest.mark.asyncio
async def test_manual_trigger_runs_mid_month() -> None:
    owner = new_user_id()
    await create_profile(owner, email="report-manual@example.com")
    await seed_policies([make_policy(owner, expiry=date(2027, 1, 1), created_at=_in_month(2))])
    sender = _FakeSender()

    async with SessionLocal() as session:
        result = await send_monthly_reports(
            session, today=date(2026, 6, 15), sender=sender, manual_trigger=True
        )

    assert not result.skipped
    assert "report-manual@example.com" in [message["to"] for message in sender.sent]


@pytest.mark.asyncio
async def test_unconfigured_email_raises_on_month_end() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotificationConfigError):
            await send_monthly_reports(session, today=_MONTH_END, sender=_FakeSender(configured=False))

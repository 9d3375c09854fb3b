from __future__ import annotations

from datetime import date, timedelta

import pytest

from policytracker.core.errors import NotificationConfigError, NotificationDeliveryError
from policytracker.persistence.db import SessionLocal
from policytracker.services.notifications import (
    render_expiry_email,
    render_expiry_subject,
    send_expiry_notifications,
)
from policytracker.tests.utils.auth import create_profile, make_policy, new_user_id, seed_policies


_TODAY = date(2026, 7, 1)


class _FakeSender:
    # Records messages and fails for configured recipients.
    def __init__(self, *, configured: bool = True, failing: set[str] | None = None) -> None:
        self.configured = configured
        self.failing = failing or set()
        self.sent: list[dict[str, str]] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise NotificationConfigError("Email service not configured")

    async def send(self, *, to: str, subject: str, html_body: str) -> str | None:
        if to in self.failing:
            raise NotificationDeliveryError("provider rejected message")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return "msg-1"


def test_subject_pluralizes() -> None:
    assert render_expiry_subject(1) == "1 Policy Expiring Soon - Action Required"
    assert render_expiry_subject(3) == "3 Policies Expiring Soon - Action Required"


def test_email_escapes_policy_fields_and_marks_urgency() -> None:
    policy = make_policy("u", expiry=_TODAY + timedelta(days=2), client_name="<script>x</script>")
    body = render_expiry_email(full_name="Asha & Co", policies=[policy], today=_TODAY, window_days=30)

    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "Asha &amp; Co" in body
    assert "#ef4444" in body
    assert "2 days" in body
    assert policy.policy_expiry_date.strftime("%d/%m/%Y") in body


@pytest.mark.asyncio
async def test_one_digest_per_owner_with_failures_recorded() -> None:
    delivered = new_user_id()
    bounced = new_user_id()
    missing_profile = new_user_id()
    await create_profile(delivered, email="ok@example.com")
    await create_profile(bounced, email="bounce@example.com")
    await seed_policies(
        [
            make_policy(delivered, expiry=_TODAY + timedelta(days=5)),
            make_policy(delivered, expiry=_TODAY + timedelta(days=25)),
            make_policy(delivered, expiry=_TODAY + timedelta(days=45)),
            make_policy(bounced, expiry=_TODAY + timedelta(days=1)),
            make_policy(missing_profile, expiry=_TODAY + timedelta(days=3)),
        ]
    )
    sender = _FakeSender(failing={"bounce@example.com"})

    async with SessionLocal() as session:
        result = await send_expiry_notifications(session, today=_TODAY, sender=sender, window_days=30)

    assert result.emails_sent == 1
    assert result.emails_failed == 2
    assert len(result.errors) == 2
    assert any(f"user {missing_profile[:8]}" in error for error in result.errors)
    assert sender.sent[0]["to"] == "ok@example.com"
    assert sender.sent[0]["subject"] == "2 Policies Expiring Soon - Action Required"
    assert result.as_dict() == {
        "emailsSent": 1,
        "emailsFailed": 2,
        "errors": result.errors,
    }


@pytest.mark.asyncio
async def test_unconfigured_sender_aborts_before_work() -> None:
    async with SessionLocal() as session:
        with pytest.raises(NotificationConfigError):
            await send_expiry_notifications(session, today=_TODAY, sender=_FakeSender(configured=False))

from __future__ import annotations

import base64
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
import html
import logging
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.config import get_settings
from policytracker.core.errors import NotificationConfigError, NotificationDeliveryError
from policytracker.domain.models import Policy, Profile
from policytracker.services.resilience import retry_async


logger = logging.getLogger(__name__)

URGENT_DAYS = 3


@dataclass
class ExpiryRunResult:
    emails_sent: int = 0
    emails_failed: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "emailsSent": self.emails_sent,
            "emailsFailed": self.emails_failed,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes

    def as_payload(self) -> dict[str, str]:
        # The provider expects attachment bodies base64-encoded.
        return {"filename": self.filename, "content": base64.b64encode(self.content).decode("ascii")}


class EmailSender:
    """Send transactional email through the provider's HTTP API."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def ensure_configured(self) -> None:
        if not self._settings.email_api_key:
            raise NotificationConfigError("Email service not configured")

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        attachments: list[EmailAttachment] | None = None,
    ) -> str | None:
        self.ensure_configured()
        payload: dict[str, Any] = {
            "from": self._settings.email_from_address,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        if attachments:
            payload["attachments"] = [attachment.as_payload() for attachment in attachments]
        headers = {"Authorization": f"Bearer {self._settings.email_api_key}"}
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(self._settings.email_api_url, json=payload, headers=headers)
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"Email provider rejected message ({response.status_code})",
                    request=response.request,
                    response=response,
                )
            return response

        try:
            response = await retry_async(_call)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise NotificationDeliveryError(str(exc) or type(exc).__name__) from exc
        try:
            return response.json().get("id")
        except ValueError:
            return None


def _days_remaining(expiry: date, today: date) -> int:
    return (expiry - today).days


def render_expiry_subject(count: int) -> str:
    noun = "Policy" if count == 1 else "Policies"
    return f"{count} {noun} Expiring Soon - Action Required"


def render_expiry_email(
    *,
    full_name: str | None,
    policies: list[Policy],
    today: date,
    window_days: int,
) -> str:
    rows = []
    for policy in policies:
        days_left = _days_remaining(policy.policy_expiry_date, today)
        colour = "#ef4444" if days_left <= URGENT_DAYS else "#f59e0b"
        rows.append(
            "<tr>"
            f"<td>{html.escape(policy.client_name or '')}</td>"
            f"<td>{html.escape(policy.policy_number or '')}</td>"
            f"<td>{html.escape(policy.vehicle_number or 'N/A')}</td>"
            f"<td>{html.escape(policy.company_name or 'N/A')}</td>"
            f"<td>{policy.policy_expiry_date.strftime('%d/%m/%Y')}</td>"
            f'<td style="color: {colour}; font-weight: 600;">{days_left} days</td>'
            "</tr>"
        )
    phrase = "policy is" if len(policies) == 1 else "policies are"
    greeting = html.escape(full_name or "there")
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: sans-serif; color: #333; max-width: 800px; margin: 0 auto;\">"
        "<h1>Policy Expiry Alert</h1>"
        f"<p>Hi {greeting},</p>"
        f"<p>The following <strong>{len(policies)} {phrase}</strong> expiring within the next "
        f"{window_days} days:</p>"
        "<table style=\"width: 100%; border-collapse: collapse;\">"
        "<thead><tr><th>Client</th><th>Policy No.</th><th>Vehicle</th><th>Insurer</th>"
        "<th>Expiry Date</th><th>Days Left</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
        "<p>Please contact your clients to remind them about their upcoming policy renewals.</p>"
        "<p>Best regards,<br><strong>PolicyTracker Team</strong></p>"
        "</body></html>"
    )


async def load_expiring_policies(
    session: AsyncSession,
    *,
    today: date,
    window_days: int,
) -> dict[str, list[Policy]]:
    window_end = today + timedelta(days=window_days)
    result = await session.execute(
        select(Policy)
        .where(Policy.policy_expiry_date >= today, Policy.policy_expiry_date <= window_end)
        .order_by(Policy.user_id.asc(), Policy.policy_expiry_date.asc())
    )
    grouped: dict[str, list[Policy]] = defaultdict(list)
    for policy in result.scalars().all():
        grouped[policy.user_id].append(policy)
    return dict(grouped)


async def send_expiry_notifications(
    session: AsyncSession,
    *,
    today: date,
    sender: EmailSender | None = None,
    window_days: int | None = None,
) -> ExpiryRunResult:
    """Email each owner one digest of their policies expiring in the window.

    Failures for one owner are recorded in the result and do not stop the run.
    Raises ``NotificationConfigError`` before any work when email is not set up.
    """
    sender = sender or EmailSender()
    sender.ensure_configured()
    window_days = window_days if window_days is not None else get_settings().expiry_notice_window_days
    outcome = ExpiryRunResult()

    grouped = await load_expiring_policies(session, today=today, window_days=window_days)
    logger.info("expiry_notifications_started owners=%s", len(grouped))

    for user_id, policies in grouped.items():
        short_id = user_id[:8]
        try:
            profile = await session.get(Profile, user_id)
        except SQLAlchemyError as exc:
            outcome.emails_failed += 1
            outcome.errors.append(f"Database error fetching profile for user {short_id}")
            logger.error("expiry_profile_lookup_failed user_id=%s", short_id, exc_info=exc)
            continue
        if profile is None or not profile.email:
            outcome.emails_failed += 1
            outcome.errors.append(f"No profile found for user {short_id}")
            logger.warning("expiry_profile_missing user_id=%s", short_id)
            continue

        body = render_expiry_email(
            full_name=profile.full_name,
            policies=policies,
            today=today,
            window_days=window_days,
        )
        try:
            await sender.send(to=profile.email, subject=render_expiry_subject(len(policies)), html_body=body)
        except NotificationDeliveryError as exc:
            outcome.emails_failed += 1
            outcome.errors.append(f"Failed to send email to user {short_id}: {exc}")
            logger.warning("expiry_email_failed user_id=%s", short_id, exc_info=exc)
            continue
        outcome.emails_sent += 1
        logger.info("expiry_email_sent user_id=%s policies=%s", short_id, len(policies))

    logger.info(
        "expiry_notifications_finished sent=%s failed=%s", outcome.emails_sent, outcome.emails_failed
    )
    return outcome

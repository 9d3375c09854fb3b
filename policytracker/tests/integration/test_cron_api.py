from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
import json

import httpx
import pytest
from sqlalchemy import select

from policytracker.apps.api.routes.cron import get_email_sender
from policytracker.core.config import get_settings
from policytracker.domain.models import AuditEvent
from policytracker.persistence.db import SessionLocal
from policytracker.services.notifications import EmailSender
from policytracker.tests.utils.auth import create_profile, make_policy, new_user_id, seed_policies


_SECRET = "cron-test-secret"


@pytest.fixture
def cron_env(monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", _SECRET)
    monkeypatch.setenv("EMAIL_API_KEY", "re_test_key")
    get_settings.cache_clear()


@pytest.fixture
def sent_emails(app, cron_env) -> list[dict]:
    sent: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"id": f"email-{len(sent)}"})

    sender = EmailSender(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    app.dependency_overrides[get_email_sender] = lambda: sender
    return sent


@pytest.mark.asyncio
async def test_unset_secret_disables_endpoint(client, monkeypatch) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)
    get_settings.cache_clear()

    response = await client.post(
        "/v1/cron/expiry-notifications", headers={"Authorization": "Bearer anything"}
    )

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_wrong_secret_is_unauthorized(client, sent_emails) -> None:
    response = await client.post(
        "/v1/cron/expiry-notifications", headers={"Authorization": "Bearer wrong"}
    )

    assert response.status_code == 401
    assert sent_emails == []


@pytest.mark.asyncio
async def test_digest_sent_per_owner(client, sent_emails) -> None:
    today = datetime.now(timezone.utc).date()
    owner = new_user_id()
    orphan = new_user_id()
    await create_profile(owner, email="owner@example.com", full_name="Kiran")
    await seed_policies(
        [
            make_policy(owner, expiry=today + timedelta(days=2)),
            make_policy(owner, expiry=today + timedelta(days=20)),
            make_policy(owner, expiry=today + timedelta(days=60)),
            make_policy(orphan, expiry=today + timedelta(days=5)),
        ]
    )

    response = await client.post(
        "/v1/cron/expiry-notifications", headers={"Authorization": f"Bearer {_SECRET}"}
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["emailsSent"] == 1
    assert data["emailsFailed"] == 1
    assert len(data["errors"]) == 1
    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == ["owner@example.com"]
    assert sent_emails[0]["subject"] == "2 Policies Expiring Soon - Action Required"
    assert "Hi Kiran" in sent_emails[0]["html"]


@pytest.mark.asyncio
async def test_missing_email_key_returns_500(client, app, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", _SECRET)
    monkeypatch.delenv("EMAIL_API_KEY", raising=False)
    get_settings.cache_clear()
    app.dependency_overrides[get_email_sender] = lambda: EmailSender()

    response = await client.post(
        "/v1/cron/expiry-notifications", headers={"Authorization": f"Bearer {_SECRET}"}
    )

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_monthly_report_requires_secret(client, sent_emails) -> None:
    response = await client.post(
        "/v1/cron/monthly-report", json={"manual_trigger": True}, headers={"Authorization": "Bearer wrong"}
    )

    assert response.status_code == 401
    assert sent_emails == []


@pytest.mark.asyncio
async def test_monthly_report_disabled_without_secret(client, monkeypatch) -> None:
    monkeypatch.delenv("CRON_SECRET", raising=False)
    get_settings.cache_clear()

    response = await client.post("/v1/cron/monthly-report", json={"manual_trigger": True})

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_manual_monthly_report_emails_csv(client, sent_emails) -> None:
    owner = new_user_id()
    await create_profile(owner, email="monthly@example.com", full_name="Devika")
    await seed_policies(
        [make_policy(owner, expiry=datetime.now(timezone.utc).date() + timedelta(days=120), net_premium=4321.0)]
    )

    response = await client.post(
        "/v1/cron/monthly-report",
        json={"manual_trigger": True},
        headers={"Authorization": f"Bearer {_SECRET}"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["skipped"] is False
    assert (data["totalUsers"], data["successCount"], data["errorCount"]) == (1, 1, 0)
    message = next(m for m in sent_emails if m["to"] == ["monthly@example.com"])
    assert message["subject"].startswith("Monthly Premium Report - ")
    assert "Hello Devika!" in message["html"]
    (attachment,) = message["attachments"]
    assert attachment["filename"].endswith(".csv")
    assert b"4321.00" in base64.b64decode(attachment["content"])

    async with SessionLocal() as session:
        event = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "reports.monthly.completed"))
        ).scalar_one()
    assert event.actor_type == "system"
    assert event.metadata_json == {"manual": True, "sent": 1, "failed": 0, "users": 1}


@pytest.mark.asyncio
async def test_monthly_report_tolerates_unparseable_body(client, sent_emails) -> None:
    response = await client.post(
        "/v1/cron/monthly-report",
        content=b"not json",
        headers={"Authorization": f"Bearer {_SECRET}", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert set(response.json()["data"]) >= {"skipped", "successCount", "errorCount", "totalUsers"}


@pytest.mark.asyncio
async def test_manual_monthly_report_without_email_key_returns_500(client, app, monkeypatch) -> None:
    monkeypatch.setenv("CRON_SECRET", _SECRET)
    monkeypatch.delenv("EMAIL_API_KEY", raising=False)
    get_settings.cache_clear()
    app.dependency_overrides[get_email_sender] = lambda: EmailSender()

    response = await client.post(
        "/v1/cron/monthly-report",
        json={"manual_trigger": True},
        headers={"Authorization": f"Bearer {_SECRET}"},
    )

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_ERROR"

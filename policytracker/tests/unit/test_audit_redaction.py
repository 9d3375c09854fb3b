from __future__ import annotations

import pytest
from sqlalchemy import select

from policytracker.domain.models import AuditEvent
from policytracker.persistence.db import SessionLocal
from policytracker.services.audit import AuditEventType, build_event, record_event, sanitize_metadata


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "provider": "payu",
        "hash": "abc",
        "nested": {"razorpay_key_secret": "s", "amount": 199},
        "items": [{"token": "t", "plan": "Pro"}],
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized["provider"] == "payu"
    assert sanitized["hash"] == "[REDACTED]"
    assert sanitized["nested"] == {"razorpay_key_secret": "[REDACTED]", "amount": 199}
    assert sanitized["items"] == [{"token": "[REDACTED]", "plan": "Pro"}]


def test_every_event_type_has_a_shape() -> None:
    for event in AuditEventType:
        row = build_event(event, user_id="user-1")
        assert row.event_type == event.value
        assert row.outcome in {"success", "failure"}
        assert row.resource_type


def test_quota_blocks_carry_error_code() -> None:
    row = build_event(AuditEventType.STORAGE_BLOCKED, user_id="user-1")

    assert row.outcome == "failure"
    assert row.resource_type == "usage"
    assert row.error_code == "QUOTA_EXCEEDED"
    assert row.actor_type == "user"


def test_cron_events_are_system_actions() -> None:
    row = build_event(AuditEventType.MONTHLY_REPORT_COMPLETED, user_id=None, metadata={"sent": 3})

    assert row.actor_type == "system"
    assert row.user_id is None
    assert row.error_code is None
    assert row.metadata_json == {"sent": 3}


@pytest.mark.asyncio
async def test_record_event_persists_sanitized_row() -> None:
    await record_event(
        AuditEventType.ORDER_CREATED,
        user_id="user-1",
        resource_id="order_abc",
        metadata={"provider": "razorpay", "merchant_salt": "x"},
    )

    async with SessionLocal() as session:
        event = (await session.execute(select(AuditEvent))).scalar_one()
    assert event.event_type == "billing.order.created"
    assert event.outcome == "success"
    assert event.resource_type == "payment_request"
    assert event.resource_id == "order_abc"
    assert event.metadata_json == {"provider": "razorpay", "merchant_salt": "[REDACTED]"}

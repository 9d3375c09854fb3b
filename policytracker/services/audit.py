from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from policytracker.domain.models import AuditEvent
from policytracker.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Gateway payloads carry merchant salts, PayU hashes and key ids.
_SECRET_FRAGMENTS = ("key", "authorization", "token", "secret", "salt", "password", "hash")
_REDACTED = "[REDACTED]"


class AuditEventType(str, Enum):
    ORDER_CREATED = "billing.order.created"
    RATE_LIMITED = "security.rate_limited"
    OCR_BLOCKED = "usage.ocr.blocked"
    STORAGE_BLOCKED = "usage.storage.blocked"
    POLICY_BLOCKED = "usage.policy.blocked"
    EXPIRY_DIGEST_COMPLETED = "notifications.expiry_digest.completed"
    MONTHLY_REPORT_COMPLETED = "reports.monthly.completed"


@dataclass(frozen=True)
class _EventShape:
    outcome: str
    resource_type: str
    error_code: str | None = None


_SHAPES: dict[AuditEventType, _EventShape] = {
    AuditEventType.ORDER_CREATED: _EventShape("success", "payment_request"),
    AuditEventType.RATE_LIMITED: _EventShape("failure", "rate_limit", "RATE_LIMITED"),
    AuditEventType.OCR_BLOCKED: _EventShape("failure", "usage", "QUOTA_EXCEEDED"),
    AuditEventType.STORAGE_BLOCKED: _EventShape("failure", "usage", "QUOTA_EXCEEDED"),
    AuditEventType.POLICY_BLOCKED: _EventShape("failure", "policy", "QUOTA_EXCEEDED"),
    AuditEventType.EXPIRY_DIGEST_COMPLETED: _EventShape("success", "cron_job"),
    AuditEventType.MONTHLY_REPORT_COMPLETED: _EventShape("success", "cron_job"),
}


def sanitize_metadata(value: Any) -> Any:
    """Replace values under secret-looking keys, recursing into dicts and lists."""
    if isinstance(value, dict):
        return {
            str(key): _REDACTED
            if any(fragment in str(key).lower() for fragment in _SECRET_FRAGMENTS)
            else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def build_event(
    event: AuditEventType,
    *,
    user_id: str | None,
    request: Request | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEvent:
    shape = _SHAPES[event]
    request_id = None
    ip_address = None
    if request is not None:
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
        ip_address = request.client.host if request.client else None
    return AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        user_id=user_id,
        # Cron runs have no caller.
        actor_type="user" if user_id else "system",
        event_type=event.value,
        outcome=shape.outcome,
        resource_type=shape.resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=shape.error_code,
    )


async def record_event(
    event: AuditEventType,
    *,
    user_id: str | None,
    request: Request | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    session: AsyncSession | None = None,
) -> None:
    """Append one audit row; failures are logged and never reach the caller.

    With ``session`` the row is committed on that session, otherwise a
    short-lived session is opened for it.
    """
    row = build_event(event, user_id=user_id, request=request, resource_id=resource_id, metadata=metadata)
    if session is not None:
        await _commit(session, row)
        return
    async with SessionLocal() as audit_session:
        await _commit(audit_session, row)


async def _commit(session: AsyncSession, row: AuditEvent) -> None:
    try:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "audit_event_write_failed event_type=%s request_id=%s",
            row.event_type,
            row.request_id,
            exc_info=exc,
        )

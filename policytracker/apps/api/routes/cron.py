from __future__ import annotations

from datetime import datetime, timezone
import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import get_db
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from policytracker.apps.api.response import SuccessEnvelope, success_response
from policytracker.core.config import get_settings
from policytracker.core.errors import NotificationConfigError
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.notifications import EmailSender, send_expiry_notifications
from policytracker.services.reports import send_monthly_reports


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], responses=DEFAULT_ERROR_RESPONSES)


class ExpiryRunResponse(BaseModel):
    emailsSent: int
    emailsFailed: int
    errors: list[str]


_email_sender: EmailSender | None = None


def get_email_sender() -> EmailSender:
    global _email_sender
    if _email_sender is None:
        _email_sender = EmailSender()
    return _email_sender


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    # An unset secret disables the endpoint entirely.
    secret = get_settings().cron_secret
    if not secret:
        logger.error("cron_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service not configured"},
        )
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("cron_unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Invalid authorization header"},
        )


@router.post(
    "/expiry-notifications",
    response_model=SuccessEnvelope[ExpiryRunResponse],
    dependencies=[Depends(require_cron_secret)],
)
async def run_expiry_notifications(
    request: Request,
    db: AsyncSession = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
) -> dict:
    today = datetime.now(timezone.utc).date()
    try:
        result = await send_expiry_notifications(db, today=today, sender=sender)
    except NotificationConfigError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Email service not configured"},
        ) from exc
    await record_event(
        AuditEventType.EXPIRY_DIGEST_COMPLETED,
        user_id=None,
        request=request,
        metadata={"sent": result.emails_sent, "failed": result.emails_failed},
    )
    return success_response(request=request, data=result.as_dict())


class MonthlyReportRequest(BaseModel):
    manual_trigger: bool = False


class MonthlyReportResponse(BaseModel):
    skipped: bool
    successCount: int
    errorCount: int
    totalUsers: int
    errors: list[str]


async def read_monthly_report_request(request: Request) -> MonthlyReportRequest:
    # Schedulers often post an empty or non-JSON body; treat it as a scheduled run.
    raw = await request.body()
    if not raw.strip():
        return MonthlyReportRequest()
    try:
        return MonthlyReportRequest.model_validate_json(raw)
    except ValidationError:
        logger.info("monthly_report_body_ignored")
        return MonthlyReportRequest()


@router.post(
    "/monthly-report",
    response_model=SuccessEnvelope[MonthlyReportResponse],
    dependencies=[Depends(require_cron_secret)],
    openapi_extra={
        "requestBody": {
            "required": False,
            "content": {"application/json": {"schema": MonthlyReportRequest.model_json_schema()}},
        }
    },
)
async def run_monthly_report(
    request: Request,
    payload: MonthlyReportRequest = Depends(read_monthly_report_request),
    db: AsyncSession = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
) -> dict:
    today = datetime.now(timezone.utc).date()
    try:
        result = await send_monthly_reports(
            db, today=today, sender=sender, manual_trigger=payload.manual_trigger
        )
    except NotificationConfigError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "INTERNAL_ERROR", "message": "Email service not configured"},
        ) from exc
    if not result.skipped:
        await record_event(
            AuditEventType.MONTHLY_REPORT_COMPLETED,
            user_id=None,
            request=request,
            metadata={
                "manual": payload.manual_trigger,
                "sent": result.success_count,
                "failed": result.error_count,
                "users": result.total_users,
            },
        )
    return success_response(request=request, data=result.as_dict())

from __future__ import annotations

from datetime import datetime, timezone
import logging

from arq import cron
from arq.connections import RedisSettings

from policytracker.core.config import get_settings
from policytracker.core.errors import NotificationConfigError
from policytracker.core.logging import configure_logging
from policytracker.persistence.db import SessionLocal
from policytracker.services.notifications import EmailSender, send_expiry_notifications
from policytracker.services.reports import send_monthly_reports

logger = logging.getLogger(__name__)


async def send_expiry_digest(ctx) -> dict:
    # Run the same digest the cron endpoint triggers, on the worker's schedule.
    today = datetime.now(timezone.utc).date()
    sender = ctx.get("email_sender") or EmailSender()
    async with SessionLocal() as session:
        try:
            result = await send_expiry_notifications(session, today=today, sender=sender)
        except NotificationConfigError:
            logger.error("expiry_digest_skipped reason=email_not_configured")
            return {"emailsSent": 0, "emailsFailed": 0, "errors": ["Email service not configured"]}
    return result.as_dict()


async def send_monthly_report(ctx) -> dict:
    # Fires daily; the report service itself skips every day but the last of the month.
    today = datetime.now(timezone.utc).date()
    sender = ctx.get("email_sender") or EmailSender()
    async with SessionLocal() as session:
        try:
            result = await send_monthly_reports(session, today=today, sender=sender)
        except NotificationConfigError:
            logger.error("monthly_report_skipped reason=email_not_configured")
            return {
                "skipped": True,
                "successCount": 0,
                "errorCount": 0,
                "totalUsers": 0,
                "errors": ["Email service not configured"],
            }
    return result.as_dict()


async def _startup(ctx) -> None:
    configure_logging()
    ctx["email_sender"] = EmailSender()


async def _shutdown(ctx) -> None:
    ctx.pop("email_sender", None)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    functions = [send_expiry_digest, send_monthly_report]
    cron_jobs = [
        cron(send_expiry_digest, hour={settings.notify_cron_hour_utc}, minute={0}),
        cron(send_monthly_report, hour={settings.report_cron_hour_utc}, minute={0}),
    ]
    on_startup = _startup
    on_shutdown = _shutdown

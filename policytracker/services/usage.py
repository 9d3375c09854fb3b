from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.domain.models import Policy, UsageRecord
from policytracker.services.subscription import NOT_SUBSCRIBED, SubscriptionStatus, as_utc, check_subscription


logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_PRO = "pro"

_GIB = 1024 * 1024 * 1024
_MIB = 1024 * 1024
_KIB = 1024


@dataclass(frozen=True)
class TierLimits:
    # None means unbounded for the metric.
    max_policies: int | None
    max_ocr_scans: int | None
    max_storage_bytes: int
    backup_frequency_days: int


SUBSCRIPTION_LIMITS: dict[str, TierLimits] = {
    TIER_FREE: TierLimits(
        max_policies=200,
        max_ocr_scans=50,
        max_storage_bytes=2 * _GIB,
        backup_frequency_days=15,
    ),
    TIER_PRO: TierLimits(
        max_policies=None,
        max_ocr_scans=None,
        max_storage_bytes=10 * _GIB,
        backup_frequency_days=7,
    ),
}


@dataclass(frozen=True)
class UsageSnapshot:
    policy_count: int = 0
    ocr_scans_used: int = 0
    storage_used_bytes: int = 0
    last_backup_at: datetime | None = None


def tier_for(status: SubscriptionStatus) -> str:
    return TIER_PRO if status.subscribed else TIER_FREE


def limits_for(status: SubscriptionStatus) -> TierLimits:
    return SUBSCRIPTION_LIMITS[tier_for(status)]


def current_month_year(now: datetime) -> str:
    return now.strftime("%Y-%m")


def _is_unbounded(limit: float | None) -> bool:
    return limit is None or math.isinf(limit)


def get_usage_percentage(used: int | float, limit: int | float | None) -> int:
    """Percentage of ``limit`` consumed, capped at 100.

    Unbounded limits (``None`` or ``math.inf``) always report 0. Halves round
    up so 0.5% reads as 1%.
    """
    if _is_unbounded(limit):
        return 0
    if limit <= 0:
        return 100
    percentage = math.floor((used / limit) * 100 + 0.5)
    return min(int(percentage), 100)


def format_storage_size(size_bytes: int) -> str:
    if size_bytes >= _GIB:
        return f"{size_bytes / _GIB:.2f} GB"
    if size_bytes >= _MIB:
        return f"{size_bytes / _MIB:.1f} MB"
    if size_bytes >= _KIB:
        return f"{size_bytes / _KIB:.0f} KB"
    return f"{size_bytes} B"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageTracker:
    """Monthly usage metering for one user against their subscription tier.

    Reads and lazy creation of the month's ``usage_tracking`` row happen in
    ``fetch_usage``. The mutators check the cached snapshot first and then
    apply a single conditional UPDATE, so concurrent callers can never push a
    counter past the tier limit. Every database failure is logged and reported
    as ``False`` (or a zeroed snapshot); nothing raises to the caller.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        subscription: SubscriptionStatus | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._user_id = user_id
        self._time_provider = time_provider or _utc_now
        self._subscription = subscription
        self._usage = UsageSnapshot()

    @classmethod
    async def load(
        cls,
        session: AsyncSession,
        user_id: str,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> "UsageTracker":
        # Resolve the tier first so limits are ready before the first predicate check.
        tracker = cls(session, user_id, time_provider=time_provider)
        tracker._subscription = await check_subscription(
            session, user_id, now=tracker._time_provider()
        )
        await tracker.fetch_usage()
        return tracker

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def subscription(self) -> SubscriptionStatus:
        return self._subscription or NOT_SUBSCRIBED

    @property
    def tier(self) -> str:
        return tier_for(self.subscription)

    @property
    def limits(self) -> TierLimits:
        return limits_for(self.subscription)

    @property
    def usage(self) -> UsageSnapshot:
        return self._usage

    @property
    def month_year(self) -> str:
        return current_month_year(self._time_provider())

    @property
    def can_add_policy(self) -> bool:
        limit = self.limits.max_policies
        return limit is None or self._usage.policy_count < limit

    @property
    def can_use_ocr(self) -> bool:
        limit = self.limits.max_ocr_scans
        return limit is None or self._usage.ocr_scans_used < limit

    def can_upload_file(self, size_bytes: int) -> bool:
        return self._usage.storage_used_bytes + size_bytes <= self.limits.max_storage_bytes

    @property
    def backup_due(self) -> bool:
        last = self._usage.last_backup_at
        if last is None:
            return True
        interval = timedelta(days=self.limits.backup_frequency_days)
        return as_utc(last) + interval <= as_utc(self._time_provider())

    async def fetch_usage(self) -> UsageSnapshot:
        try:
            policy_count = await self._count_policies()
            record = await self._get_or_create_record(self.month_year)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("usage_fetch_failed user_id=%s", self._user_id[:8], exc_info=exc)
            return self._usage

        self._usage = UsageSnapshot(
            policy_count=policy_count,
            ocr_scans_used=int(record.ocr_scans_used or 0),
            storage_used_bytes=int(record.storage_used_bytes or 0),
            last_backup_at=record.last_backup_at,
        )
        return self._usage

    async def increment_ocr_usage(self) -> bool:
        if not self.can_use_ocr:
            return False
        limit = self.limits.max_ocr_scans
        stmt = update(UsageRecord).where(
            UsageRecord.user_id == self._user_id,
            UsageRecord.month_year == self.month_year,
        )
        if limit is not None:
            stmt = stmt.where(UsageRecord.ocr_scans_used + 1 <= limit)
        stmt = stmt.values(ocr_scans_used=UsageRecord.ocr_scans_used + 1, updated_at=func.now())
        new_value = await self._apply_conditional_update(stmt, UsageRecord.ocr_scans_used, "ocr")
        if new_value is None:
            return False
        self._usage = replace(self._usage, ocr_scans_used=new_value)
        return True

    async def add_storage_usage(self, size_bytes: int) -> bool:
        if size_bytes < 0 or not self.can_upload_file(size_bytes):
            return False
        stmt = (
            update(UsageRecord)
            .where(
                UsageRecord.user_id == self._user_id,
                UsageRecord.month_year == self.month_year,
                UsageRecord.storage_used_bytes + size_bytes <= self.limits.max_storage_bytes,
            )
            .values(
                storage_used_bytes=UsageRecord.storage_used_bytes + size_bytes,
                updated_at=func.now(),
            )
        )
        new_value = await self._apply_conditional_update(stmt, UsageRecord.storage_used_bytes, "storage")
        if new_value is None:
            return False
        self._usage = replace(self._usage, storage_used_bytes=new_value)
        return True

    async def record_backup(self) -> bool:
        now = self._time_provider()
        try:
            await self._get_or_create_record(self.month_year)
            await self._session.execute(
                update(UsageRecord)
                .where(
                    UsageRecord.user_id == self._user_id,
                    UsageRecord.month_year == self.month_year,
                )
                .values(last_backup_at=now, updated_at=func.now())
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("usage_backup_mark_failed user_id=%s", self._user_id[:8], exc_info=exc)
            return False
        self._usage = replace(self._usage, last_backup_at=now)
        return True

    def percentages(self) -> dict[str, int]:
        limits = self.limits
        return {
            "policies": get_usage_percentage(self._usage.policy_count, limits.max_policies),
            "ocr_scans": get_usage_percentage(self._usage.ocr_scans_used, limits.max_ocr_scans),
            "storage": get_usage_percentage(self._usage.storage_used_bytes, limits.max_storage_bytes),
        }

    async def _apply_conditional_update(self, stmt, column, metric: str) -> int | None:
        # Returns the post-update counter, or None when the guard rejected the write.
        try:
            await self._get_or_create_record(self.month_year)
            result = await self._session.execute(stmt)
            if result.rowcount != 1:
                await self._session.rollback()
                logger.info(
                    "usage_increment_rejected user_id=%s metric=%s", self._user_id[:8], metric
                )
                return None
            await self._session.commit()
            value = await self._session.scalar(
                select(column).where(
                    UsageRecord.user_id == self._user_id,
                    UsageRecord.month_year == self.month_year,
                )
            )
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error(
                "usage_increment_failed user_id=%s metric=%s", self._user_id[:8], metric, exc_info=exc
            )
            return None
        return int(value or 0)

    async def _count_policies(self) -> int:
        count = await self._session.scalar(
            select(func.count()).select_from(Policy).where(Policy.user_id == self._user_id)
        )
        return int(count or 0)

    async def _get_or_create_record(self, month_year: str) -> UsageRecord:
        record = await self._select_record(month_year)
        if record is not None:
            return record
        record = UsageRecord(
            user_id=self._user_id,
            month_year=month_year,
            ocr_scans_used=0,
            storage_used_bytes=0,
        )
        self._session.add(record)
        try:
            await self._session.commit()
        except IntegrityError:
            # Another request created the month's row first; use theirs.
            await self._session.rollback()
            existing = await self._select_record(month_year)
            if existing is None:
                raise
            return existing
        return record

    async def _select_record(self, month_year: str) -> UsageRecord | None:
        result = await self._session.execute(
            select(UsageRecord).where(
                UsageRecord.user_id == self._user_id,
                UsageRecord.month_year == month_year,
            )
        )
        return result.scalar_one_or_none()

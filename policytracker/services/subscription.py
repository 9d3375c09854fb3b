from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.config import get_settings
from policytracker.domain.models import Subscription
from policytracker.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"


@dataclass(frozen=True)
class SubscriptionStatus:
    # Resolved subscription view; tier is only set while the subscription is live.
    subscribed: bool
    tier: str | None
    end_date: datetime | None


NOT_SUBSCRIBED = SubscriptionStatus(subscribed=False, tier=None, end_date=None)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_subscription_active(row: Subscription | None, now: datetime) -> bool:
    # Active means status is active and the end date is strictly after now.
    if row is None or row.status != STATUS_ACTIVE or row.end_date is None:
        return False
    return as_utc(row.end_date) > as_utc(now)


async def check_subscription(
    session: AsyncSession,
    user_id: str,
    *,
    now: datetime | None = None,
) -> SubscriptionStatus:
    """Resolve the user's subscription state from at most one subscription row.

    Database failures degrade to "not subscribed" so callers always get the
    free tier rather than an error.
    """
    now = now or _utc_now()
    try:
        result = await session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.end_date.desc().nulls_last())
            .limit(1)
        )
        row = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.warning("subscription_check_failed user_id=%s", user_id[:8], exc_info=exc)
        return NOT_SUBSCRIBED

    end_date = as_utc(row.end_date) if row is not None and row.end_date is not None else None
    if not is_subscription_active(row, now):
        return SubscriptionStatus(subscribed=False, tier=None, end_date=end_date)
    return SubscriptionStatus(subscribed=True, tier=row.plan_name, end_date=end_date)


class SubscriptionPoller:
    """Keep a user's subscription status fresh while a session is alive.

    Payment verification completes out-of-band, so the status is re-read on a
    fixed interval. ``start`` performs one check immediately and then launches
    the periodic task; ``stop`` cancels it. The poller is also an async context
    manager so callers can tie it to a session's lifetime.
    """

    def __init__(
        self,
        user_id: str,
        *,
        interval_s: float | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
        on_change: Callable[[SubscriptionStatus], Awaitable[None]] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._user_id = user_id
        self._interval_s = interval_s if interval_s is not None else get_settings().subscription_poll_interval_s
        self._session_factory = session_factory or SessionLocal
        self._on_change = on_change
        self._time_provider = time_provider or _utc_now
        self._status = NOT_SUBSCRIBED
        self._task: asyncio.Task[None] | None = None

    @property
    def status(self) -> SubscriptionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> SubscriptionStatus:
        async with self._session_factory() as session:
            status = await check_subscription(session, self._user_id, now=self._time_provider())
        changed = status != self._status
        self._status = status
        if changed and self._on_change is not None:
            await self._on_change(status)
        return status

    async def start(self) -> SubscriptionStatus:
        status = await self.refresh()
        if not self.running:
            self._task = asyncio.create_task(self._run())
        return status

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.refresh()
            except Exception:  # noqa: BLE001 - keep polling alive while surfacing failures in logs.
                logger.exception("subscription_poll_failed user_id=%s", self._user_id[:8])

    async def __aenter__(self) -> "SubscriptionPoller":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

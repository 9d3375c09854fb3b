from __future__ import annotations

import asyncio
from datetime import datetime
import json
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import Principal, get_current_principal, get_db
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from policytracker.apps.api.response import SuccessEnvelope, success_response
from policytracker.services.subscription import SubscriptionPoller, SubscriptionStatus, check_subscription


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"], responses=DEFAULT_ERROR_RESPONSES)

# Bounded wait between disconnect checks while streaming.
_STREAM_TICK_S = 1.0


class SubscriptionResponse(BaseModel):
    subscribed: bool
    tier: str | None
    end_date: datetime | None


def _status_payload(status: SubscriptionStatus) -> dict:
    return SubscriptionResponse(
        subscribed=status.subscribed,
        tier=status.tier,
        end_date=status.end_date,
    ).model_dump(mode="json")


def _sse_message(payload: dict) -> str:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: message\ndata: {data}\n\n"


@router.get("", response_model=SuccessEnvelope[SubscriptionResponse])
async def get_subscription(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    status = await check_subscription(db, principal.user_id)
    return success_response(request=request, data=_status_payload(status))


@router.get("/stream")
async def stream_subscription(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> StreamingResponse:
    """Push the subscription status now and whenever a periodic re-check changes it.

    The poller lives exactly as long as the client connection.
    """
    queue: asyncio.Queue[SubscriptionStatus] = asyncio.Queue()

    async def _on_change(status: SubscriptionStatus) -> None:
        await queue.put(status)

    async def event_stream() -> AsyncGenerator[str, None]:
        poller = SubscriptionPoller(principal.user_id, on_change=_on_change)
        try:
            initial = await poller.start()
            # The first refresh only fires on_change when the user is subscribed.
            if queue.empty():
                yield _sse_message({"type": "subscription.status", "data": _status_payload(initial)})
            while True:
                if await request.is_disconnected():
                    break
                try:
                    status = await asyncio.wait_for(queue.get(), timeout=_STREAM_TICK_S)
                except asyncio.TimeoutError:
                    continue
                yield _sse_message({"type": "subscription.status", "data": _status_payload(status)})
        finally:
            await poller.stop()
            logger.info("subscription_stream_closed user_id=%s", principal.user_id[:8])

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")

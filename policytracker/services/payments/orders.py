from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.core.errors import DatabaseError
from policytracker.domain.models import PaymentRequest


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"


async def store_pending_payment(
    session: AsyncSession,
    *,
    user_id: str,
    order_id: str,
    amount: float,
    currency: str,
    plan_type: str,
    provider: str,
) -> PaymentRequest:
    # Persist the pending request that the external verification flow later settles.
    row = PaymentRequest(
        id=uuid4().hex,
        user_id=user_id,
        order_id=order_id,
        amount=amount,
        currency=currency,
        plan_type=plan_type,
        provider=provider,
        status=STATUS_PENDING,
    )
    session.add(row)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("payment_request_store_failed provider=%s order_id=%s", provider, order_id, exc_info=exc)
        raise DatabaseError("Failed to create payment request") from exc
    logger.info("payment_request_created provider=%s order_id=%s", provider, order_id)
    return row

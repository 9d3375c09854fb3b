from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import get_db
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from policytracker.apps.api.response import SuccessEnvelope, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload.model_dump(exclude_none=True))


@router.get("/health/ready", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def readiness(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded rather than failing so load balancers can read the body.
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("readiness_database_unavailable", exc_info=exc)
        database = "unavailable"
    payload = HealthResponse(status="ok" if database == "ok" else "degraded", database=database)
    return success_response(request=request, data=payload.model_dump())

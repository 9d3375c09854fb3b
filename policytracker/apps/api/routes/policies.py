from __future__ import annotations

from datetime import date
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import Principal, get_current_principal, get_db, get_usage_tracker
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES, QUOTA_ERROR_RESPONSES
from policytracker.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from policytracker.apps.api.routes.usage import quota_exceeded
from policytracker.domain import validation
from policytracker.services import policies as policy_service
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.usage import UsageTracker


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/policies",
    tags=["policies"],
    responses={**DEFAULT_ERROR_RESPONSES, **QUOTA_ERROR_RESPONSES},
)


class _PolicyInput(BaseModel):
    @field_validator("client_name", check_fields=False)
    @classmethod
    def _client_name(cls, value: str | None) -> str:
        value = validation.not_null(value, label="Client name")
        return validation.required_text(value, label="Client name", max_length=200)

    @field_validator("policy_number", check_fields=False)
    @classmethod
    def _policy_number(cls, value: str | None) -> str:
        return validation.policy_number(validation.not_null(value, label="Policy number"))

    @field_validator("insurance_type", check_fields=False)
    @classmethod
    def _insurance_type(cls, value: str | None) -> str:
        return validation.insurance_type(validation.not_null(value, label="Insurance type"))

    @field_validator("policy_active_date", "policy_expiry_date", "status", check_fields=False)
    @classmethod
    def _required(cls, value, info: ValidationInfo):
        return validation.not_null(value, label=info.field_name)

    @field_validator("company_name", check_fields=False)
    @classmethod
    def _company_name(cls, value: str | None) -> str | None:
        return validation.optional_text(value, label="Company name", max_length=200)

    @field_validator("contact_number", check_fields=False)
    @classmethod
    def _contact_number(cls, value: str | None) -> str | None:
        return validation.ten_digit_number(value, label="Contact number")

    @field_validator("vehicle_number", check_fields=False)
    @classmethod
    def _vehicle_number(cls, value: str | None) -> str | None:
        return validation.vehicle_number(value)


class PolicyCreateRequest(_PolicyInput):
    client_name: str
    policy_number: str
    insurance_type: str = validation.DEFAULT_INSURANCE_TYPE
    company_name: str | None = None
    contact_number: str | None = None
    vehicle_number: str | None = None
    policy_active_date: date
    policy_expiry_date: date
    net_premium: float | None = Field(default=None, ge=0)
    commission_percentage: float | None = Field(default=None, ge=0, le=100)
    status: str = "active"
    document_url: str | None = None

    @model_validator(mode="after")
    def _check_dates(self) -> "PolicyCreateRequest":
        if self.policy_expiry_date < self.policy_active_date:
            raise ValueError("policy_expiry_date must not precede policy_active_date")
        return self


class PolicyUpdateRequest(_PolicyInput):
    # Partial update; required columns may be omitted but not nulled.
    client_name: str | None = None
    policy_number: str | None = None
    insurance_type: str | None = None
    company_name: str | None = None
    contact_number: str | None = None
    vehicle_number: str | None = None
    policy_active_date: date | None = None
    policy_expiry_date: date | None = None
    net_premium: float | None = Field(default=None, ge=0)
    commission_percentage: float | None = Field(default=None, ge=0, le=100)
    status: str | None = None
    document_url: str | None = None


class PolicyResponse(BaseModel):
    id: str
    client_name: str
    policy_number: str
    insurance_type: str
    company_name: str | None
    contact_number: str | None
    vehicle_number: str | None
    policy_active_date: date
    policy_expiry_date: date
    net_premium: float | None
    commission_percentage: float | None
    status: str
    document_url: str | None
    created_at: str | None
    updated_at: str | None


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": "Policy not found"},
    )


@router.get("", response_model=SuccessEnvelope[Page[PolicyResponse]])
async def list_policies(
    request: Request,
    q: str | None = Query(default=None, max_length=200),
    policy_status: str | None = Query(default=None, alias="status"),
    expiring_from: date | None = Query(default=None),
    expiring_to: date | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await policy_service.list_policies(
        db,
        principal.user_id,
        search=q,
        status=policy_status,
        expiring_from=expiring_from,
        expiring_to=expiring_to,
        limit=limit,
        offset=offset,
    )
    page = Page[PolicyResponse](
        items=[PolicyResponse(**policy_service.policy_to_dict(row)) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
    return page_response(request=request, page=page)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[PolicyResponse])
async def create_policy(
    request: Request,
    payload: PolicyCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    tracker: UsageTracker = Depends(get_usage_tracker),
) -> dict:
    if not tracker.can_add_policy:
        await record_event(
            AuditEventType.POLICY_BLOCKED,
            user_id=principal.user_id,
            request=request,
            metadata={"used": tracker.usage.policy_count, "limit": tracker.limits.max_policies},
        )
        raise quota_exceeded(
            metric="policies",
            limit=tracker.limits.max_policies,
            used=tracker.usage.policy_count,
            tier=tracker.tier,
            message="Policy limit reached for the free plan. Upgrade to Pro for unlimited policies.",
        )
    policy = await policy_service.create_policy(db, principal.user_id, payload.model_dump())
    return success_response(request=request, data=policy_service.policy_to_dict(policy))


@router.get("/{policy_id}", response_model=SuccessEnvelope[PolicyResponse])
async def get_policy(
    request: Request,
    policy_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await policy_service.get_policy(db, principal.user_id, policy_id)
    if policy is None:
        raise _not_found()
    return success_response(request=request, data=policy_service.policy_to_dict(policy))


@router.patch("/{policy_id}", response_model=SuccessEnvelope[PolicyResponse])
async def update_policy(
    request: Request,
    policy_id: str,
    payload: PolicyUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    policy = await policy_service.get_policy(db, principal.user_id, policy_id)
    if policy is None:
        raise _not_found()
    active = changes.get("policy_active_date", policy.policy_active_date)
    expiry = changes.get("policy_expiry_date", policy.policy_expiry_date)
    if active is not None and expiry is not None and expiry < active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "policy_expiry_date must not precede policy_active_date"},
        )
    updated = await policy_service.update_policy(db, principal.user_id, policy_id, changes)
    if updated is None:
        raise _not_found()
    return success_response(request=request, data=policy_service.policy_to_dict(updated))


@router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_policy(
    policy_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    if not await policy_service.delete_policy(db, principal.user_id, policy_id):
        raise _not_found()

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import Principal, get_current_principal, get_db
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from policytracker.apps.api.response import Page, SuccessEnvelope, page_response, success_response
from policytracker.domain import validation
from policytracker.services import policies as record_service


router = APIRouter(prefix="/clients", tags=["clients"], responses=DEFAULT_ERROR_RESPONSES)


class _ClientInput(BaseModel):
    @field_validator("name", check_fields=False)
    @classmethod
    def _name(cls, value: str | None) -> str:
        value = validation.not_null(value, label="Client name")
        return validation.required_text(value, label="Client name", max_length=200)

    @field_validator("phone", check_fields=False)
    @classmethod
    def _phone(cls, value: str | None) -> str | None:
        return validation.ten_digit_number(value, label="Phone number")

    @field_validator("email", check_fields=False)
    @classmethod
    def _email(cls, value: str | None) -> str | None:
        return validation.email_address(value)

    @field_validator("address", check_fields=False)
    @classmethod
    def _address(cls, value: str | None) -> str | None:
        return validation.optional_text(value, label="Address", max_length=500)


class ClientRequest(_ClientInput):
    name: str
    phone: str | None = None
    email: str | None = None
    address: str | None = None


class ClientUpdateRequest(_ClientInput):
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    address: str | None = None


class ClientResponse(BaseModel):
    id: str
    name: str
    phone: str | None
    email: str | None
    address: str | None
    created_at: str | None


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "NOT_FOUND", "message": "Client not found"},
    )


@router.get("", response_model=SuccessEnvelope[Page[ClientResponse]])
async def list_clients(
    request: Request,
    q: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await record_service.list_clients(db, principal.user_id, search=q, limit=limit, offset=offset)
    page = Page[ClientResponse](
        items=[ClientResponse(**record_service.client_to_dict(row)) for row in rows],
        total=total,
        limit=limit,
        offset=offset,
    )
    return page_response(request=request, page=page)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[ClientResponse])
async def create_client(
    request: Request,
    payload: ClientRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await record_service.create_client(db, principal.user_id, payload.model_dump())
    return success_response(request=request, data=record_service.client_to_dict(client))


@router.get("/{client_id}", response_model=SuccessEnvelope[ClientResponse])
async def get_client(
    request: Request,
    client_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await record_service.get_client(db, principal.user_id, client_id)
    if client is None:
        raise _not_found()
    return success_response(request=request, data=record_service.client_to_dict(client))


@router.patch("/{client_id}", response_model=SuccessEnvelope[ClientResponse])
async def update_client(
    request: Request,
    client_id: str,
    payload: ClientUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await record_service.update_client(
        db, principal.user_id, client_id, payload.model_dump(exclude_unset=True)
    )
    if client is None:
        raise _not_found()
    return success_response(request=request, data=record_service.client_to_dict(client))


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(
    client_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> None:
    if not await record_service.delete_client(db, principal.user_id, client_id):
        raise _not_found()

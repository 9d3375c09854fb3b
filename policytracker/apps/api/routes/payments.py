from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from policytracker.apps.api.deps import Principal, get_current_principal, get_db
from policytracker.apps.api.openapi import DEFAULT_ERROR_RESPONSES, PAYMENT_ERROR_RESPONSES
from policytracker.apps.api.rate_limit import FUNCTION_PAYU_ORDER, FUNCTION_RAZORPAY_ORDER, enforce_rate_limit
from policytracker.apps.api.response import SuccessEnvelope, success_response
from policytracker.core.config import get_settings
from policytracker.domain.models import Profile
from policytracker.services.audit import AuditEventType, record_event
from policytracker.services.payments import (
    PayUCustomer,
    RazorpayGateway,
    build_checkout,
    resolve_price,
    store_pending_payment,
)
from policytracker.services.payments import payu, razorpay


logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["payments"],
    responses={**DEFAULT_ERROR_RESPONSES, **PAYMENT_ERROR_RESPONSES},
)


class OrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str | None = Field(default=None, alias="planType")
    billing_cycle: str | None = Field(default=None, alias="billingCycle")


_ORDER_REQUEST_BODY = {
    "required": False,
    "content": {"application/json": {"schema": OrderRequest.model_json_schema(by_alias=True)}},
}


async def read_order_request(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
) -> OrderRequest:
    """Parse the optional order body; malformed payloads raise 400 BAD_REQUEST.

    Depends on the principal so unauthenticated callers see 401 first.
    """
    raw = await request.body()
    if not raw.strip():
        return OrderRequest()
    try:
        return OrderRequest.model_validate_json(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "BAD_REQUEST",
                "message": "Malformed order payload",
                "errors": jsonable_encoder(exc.errors(include_url=False, include_input=False)),
            },
        ) from exc


class RazorpayOrderResponse(BaseModel):
    orderId: str
    amount: int
    currency: str
    keyId: str
    planType: str


class PayUOrderResponse(BaseModel):
    paymentUrl: str
    params: dict[str, str]
    txnId: str
    amount: int
    currency: str


_razorpay_gateway: RazorpayGateway | None = None


def get_razorpay_gateway() -> RazorpayGateway:
    # Share one gateway so its HTTP client pools connections across requests.
    global _razorpay_gateway
    if _razorpay_gateway is None:
        _razorpay_gateway = RazorpayGateway()
    return _razorpay_gateway


async def _audit_order(
    *,
    request: Request,
    principal: Principal,
    provider: str,
    order_id: str,
    amount: int,
    plan_type: str,
) -> None:
    await record_event(
        AuditEventType.ORDER_CREATED,
        user_id=principal.user_id,
        resource_id=order_id,
        request=request,
        metadata={"provider": provider, "amount": amount, "plan_type": plan_type},
    )


@router.post(
    "/razorpay/orders",
    response_model=SuccessEnvelope[RazorpayOrderResponse],
    openapi_extra={"requestBody": _ORDER_REQUEST_BODY},
)
async def create_razorpay_order(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    payload: OrderRequest = Depends(read_order_request),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_razorpay_gateway),
) -> dict:
    # Unknown plans fail before the request counts against the window.
    quote = resolve_price(payload.plan_type, payload.billing_cycle)
    await enforce_rate_limit(
        request=request,
        response=response,
        principal=principal,
        db=db,
        function_name=FUNCTION_RAZORPAY_ORDER,
    )
    currency = get_settings().payment_currency
    order = await gateway.create_order(user_id=principal.user_id, quote=quote, currency=currency)
    await store_pending_payment(
        db,
        user_id=principal.user_id,
        order_id=order.order_id,
        amount=quote.amount,
        currency=order.currency,
        plan_type=quote.plan_type,
        provider=razorpay.PROVIDER,
    )
    await _audit_order(
        request=request,
        principal=principal,
        provider=razorpay.PROVIDER,
        order_id=order.order_id,
        amount=quote.amount,
        plan_type=quote.plan_type,
    )
    data = RazorpayOrderResponse(
        orderId=order.order_id,
        amount=order.amount,
        currency=order.currency,
        keyId=gateway.key_id,
        planType=quote.plan_type,
    )
    return success_response(request=request, data=data.model_dump())


async def _resolve_customer(db: AsyncSession, principal: Principal) -> PayUCustomer:
    profile = await db.get(Profile, principal.user_id)
    email = principal.email or (profile.email if profile is not None else None)
    if not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "User email not available"},
        )
    full_name = principal.full_name or (profile.full_name if profile is not None else None)
    phone = principal.mobile_number or (profile.mobile_number if profile is not None else None)
    first_name = full_name.split(" ")[0] if full_name else "Customer"
    return PayUCustomer(email=email, first_name=first_name or "Customer", phone=phone or "")


@router.post(
    "/payu/orders",
    response_model=SuccessEnvelope[PayUOrderResponse],
    openapi_extra={"requestBody": _ORDER_REQUEST_BODY},
)
async def create_payu_order(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    payload: OrderRequest = Depends(read_order_request),
    db: AsyncSession = Depends(get_db),
) -> dict:
    quote = resolve_price(payload.plan_type, payload.billing_cycle)
    await enforce_rate_limit(
        request=request,
        response=response,
        principal=principal,
        db=db,
        function_name=FUNCTION_PAYU_ORDER,
    )
    customer = await _resolve_customer(db, principal)
    checkout = build_checkout(quote=quote, customer=customer, origin=request.headers.get("origin"))
    currency = get_settings().payment_currency
    # PayU has no server-side order; the local transaction id is the order id.
    await store_pending_payment(
        db,
        user_id=principal.user_id,
        order_id=checkout.txn_id,
        amount=quote.amount,
        currency=currency,
        plan_type=quote.plan_key,
        provider=payu.PROVIDER,
    )
    await _audit_order(
        request=request,
        principal=principal,
        provider=payu.PROVIDER,
        order_id=checkout.txn_id,
        amount=quote.amount,
        plan_type=quote.plan_key,
    )
    data = PayUOrderResponse(
        paymentUrl=checkout.payment_url,
        params=checkout.params,
        txnId=checkout.txn_id,
        amount=quote.amount,
        currency=currency,
    )
    return success_response(request=request, data=data.model_dump())

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import secrets
import time
from typing import Any

import httpx

from policytracker.core.config import get_settings
from policytracker.core.errors import PaymentConfigError, PaymentGatewayError
from policytracker.services.payments.pricing import PlanQuote
from policytracker.services.resilience import default_retry_policy, retry_async


logger = logging.getLogger(__name__)

PROVIDER = "razorpay"


@dataclass(frozen=True)
class RazorpayOrder:
    order_id: str
    # Amount as echoed by the gateway, in paise.
    amount: int
    currency: str
    receipt: str


def generate_receipt() -> str:
    return f"order_{int(time.time() * 1000)}{secrets.token_hex(5)}"


class RazorpayGateway:
    """Create orders against the Razorpay Orders API."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per gateway for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    @property
    def key_id(self) -> str:
        key_id = self._settings.razorpay_key_id
        if not key_id or not self._settings.razorpay_key_secret:
            raise PaymentConfigError("Payment gateway not configured properly")
        return key_id

    async def create_order(self, *, user_id: str, quote: PlanQuote, currency: str) -> RazorpayOrder:
        key_id = self.key_id
        key_secret = self._settings.razorpay_key_secret or ""
        receipt = generate_receipt()
        # Notes carry identifiers only; no PII leaves the service.
        payload: dict[str, Any] = {
            "amount": quote.amount_paise,
            "currency": currency,
            "receipt": receipt,
            "notes": {"user_id": user_id, "plan_type": quote.plan_type},
        }
        url = f"{self._settings.razorpay_api_base.rstrip('/')}/orders"
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(url, json=payload, auth=(key_id, key_secret))
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            # Order creation is not idempotent; one attempt, bounded by the call timeout.
            response = await retry_async(_call, policy=replace(default_retry_policy(), max_attempts=1))
        except (httpx.HTTPError, TimeoutError) as exc:
            logger.error("razorpay_order_failed user_id=%s error=%s", user_id[:8], type(exc).__name__)
            raise PaymentGatewayError("Failed to create payment order. Please try again later.") from exc

        if response.status_code >= 400:
            logger.error(
                "razorpay_order_rejected user_id=%s status=%s", user_id[:8], response.status_code
            )
            raise PaymentGatewayError(
                "Failed to create payment order. Please try again later.",
                status_code=response.status_code,
            )
        try:
            body = response.json()
            order = RazorpayOrder(
                order_id=str(body["id"]),
                amount=int(body.get("amount", quote.amount_paise)),
                currency=str(body.get("currency", currency)),
                receipt=receipt,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise PaymentGatewayError("Payment gateway returned an invalid order") from exc
        logger.info("razorpay_order_created user_id=%s order_id=%s", user_id[:8], order.order_id)
        return order

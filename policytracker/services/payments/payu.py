from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
import time
from urllib.parse import urlencode

from policytracker.core.config import get_settings
from policytracker.core.errors import PaymentConfigError
from policytracker.services.payments.pricing import PlanQuote


PROVIDER = "payu"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_LOCAL_ORIGIN_MARKERS = ("localhost", "127.0.0.1")


@dataclass(frozen=True)
class PayUCustomer:
    email: str
    first_name: str = "Customer"
    phone: str = ""


@dataclass(frozen=True)
class PayUCheckout:
    payment_url: str
    txn_id: str
    params: dict[str, str]


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_txn_id(now_ms: int | None = None) -> str:
    # PT + base36 millisecond timestamp + random base36 suffix, uppercased.
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"PT{_base36(now_ms)}{suffix}".upper()


def payu_hash(params: dict[str, str], salt: str) -> str:
    """SHA-512 request hash over the fields PayU signs, in PayU's order.

    The eleven empty slots stand for ``udf1``..``udf5`` and reserved fields.
    """
    hash_string = (
        f"{params['key']}|{params['txnid']}|{params['amount']}|{params['productinfo']}|"
        f"{params['firstname']}|{params['email']}|||||||||||{salt}"
    )
    return hashlib.sha512(hash_string.encode("utf-8")).hexdigest()


def callback_url_for(origin: str | None) -> str:
    # Local front-ends get redirected back to themselves after verification.
    settings = get_settings()
    frontend_url = settings.frontend_url
    if origin and any(marker in origin for marker in _LOCAL_ORIGIN_MARKERS):
        frontend_url = origin
    return f"{settings.payu_callback_url}?{urlencode({'redirect_to': frontend_url})}"


def build_checkout(
    *,
    quote: PlanQuote,
    customer: PayUCustomer,
    origin: str | None = None,
    txn_id: str | None = None,
) -> PayUCheckout:
    settings = get_settings()
    merchant_key = settings.payu_merchant_key
    merchant_salt = settings.payu_merchant_salt
    if not merchant_key or not merchant_salt:
        raise PaymentConfigError("Payment gateway not configured")

    txn_id = txn_id or generate_txn_id()
    callback_url = callback_url_for(origin)
    params = {
        "key": merchant_key,
        "txnid": txn_id,
        "amount": f"{quote.amount:.2f}",
        "productinfo": f"PolicyTracker.in {quote.plan_type} - {quote.billing_cycle}",
        "firstname": customer.first_name or "Customer",
        "email": customer.email,
        "phone": customer.phone or "",
        "surl": callback_url,
        "furl": callback_url,
    }
    params["hash"] = payu_hash(params, merchant_salt)
    return PayUCheckout(payment_url=settings.payu_payment_url, txn_id=txn_id, params=params)

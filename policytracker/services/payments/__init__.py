from __future__ import annotations

# Re-export payment services for centralized imports.

from policytracker.services.payments.orders import store_pending_payment
from policytracker.services.payments.payu import PayUCheckout, PayUCustomer, build_checkout, payu_hash
from policytracker.services.payments.pricing import PLAN_PRICES, PlanQuote, resolve_price
from policytracker.services.payments.razorpay import RazorpayGateway, RazorpayOrder

__all__ = [
    "store_pending_payment",
    "PayUCheckout",
    "PayUCustomer",
    "build_checkout",
    "payu_hash",
    "PLAN_PRICES",
    "PlanQuote",
    "resolve_price",
    "RazorpayGateway",
    "RazorpayOrder",
]

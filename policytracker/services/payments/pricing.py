from __future__ import annotations

from dataclasses import dataclass

from policytracker.core.errors import UnknownPlanError


DEFAULT_PLAN = "Pro"
DEFAULT_BILLING_CYCLE = "monthly"
BILLING_CYCLES = ("monthly", "yearly")

# Server-side price table in whole rupees; client-supplied amounts are never trusted.
PLAN_PRICES: dict[str, dict[str, int]] = {
    "Pro": {"monthly": 199, "yearly": 1999},
}


@dataclass(frozen=True)
class PlanQuote:
    plan_type: str
    billing_cycle: str
    amount: int

    @property
    def amount_paise(self) -> int:
        return self.amount * 100

    @property
    def plan_key(self) -> str:
        return f"{self.plan_type}_{self.billing_cycle}"


def resolve_price(plan_type: str | None, billing_cycle: str | None) -> PlanQuote:
    """Look up the price for a plan and billing cycle.

    Missing values fall back to ``Pro``/``monthly``. Unknown plans raise
    ``UnknownPlanError``; any cycle other than ``yearly`` bills monthly.
    """
    plan = plan_type or DEFAULT_PLAN
    prices = PLAN_PRICES.get(plan)
    if prices is None:
        raise UnknownPlanError(f"Unknown plan type: {plan}")
    cycle = "yearly" if billing_cycle == "yearly" else DEFAULT_BILLING_CYCLE
    return PlanQuote(plan_type=plan, billing_cycle=cycle, amount=prices[cycle])

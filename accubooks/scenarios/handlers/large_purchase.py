"""
Large Purchase Scenario Handler.

One-time purchases leave cash in their month, or spread evenly over
``instalments`` monthly payments. Recurring purchases add their monthly
equivalent to burn.
"""

from decimal import Decimal
from typing import Any, Dict, List

from accubooks.analytics import money
from accubooks.forecast.types import Sensitivity
from accubooks.scenarios.timeline import CashDelta, OneTimeFlow, RecurringFlow
from accubooks.scenarios.types import CriticalAssumption, RecommendationType, ScenarioType
from .base import (
    Alternative,
    BaseScenarioHandler,
    Baseline,
    assumption,
    choice_param,
    decimal_param,
    int_param,
)

FREQUENCY_MONTHS = {"monthly": 1, "quarterly": 3, "annual": 12}


class LargePurchaseHandler(BaseScenarioHandler):
    """Handler for a one-time or recurring purchase."""

    scenario_type = ScenarioType.LARGE_PURCHASE
    complexity_base = 20.0

    def required_params(self) -> List[str]:
        return ["amount"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        return {
            "amount": money(decimal_param(params, "amount", allow_zero=False)),
            "description": str(params.get("description") or "purchase"),
            "recurring": bool(params.get("recurring", False)),
            "frequency": choice_param(params, "frequency", list(FREQUENCY_MONTHS), default="monthly"),
            "month": int_param(params, "month", default=1, minimum=1, maximum=24),
            "instalments": int_param(params, "instalments", default=1, minimum=1, maximum=36),
        }

    def monthly_equivalent(self, params: Dict[str, Any]) -> Decimal:
        return money(params["amount"] / FREQUENCY_MONTHS[params["frequency"]])

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        if params["recurring"]:
            return CashDelta(recurring=(
                RecurringFlow(amount=-self.monthly_equivalent(params), start_month=params["month"]),
            ))
        count = params["instalments"]
        if count == 1:
            return CashDelta(one_time=(OneTimeFlow(month=params["month"], amount=-params["amount"]),))
        payment = params["amount"] / count
        return CashDelta(recurring=(
            RecurringFlow(amount=-payment, start_month=params["month"], end_month=params["month"] + count - 1),
        ))

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        if params["recurring"]:
            return (
                f"Recurring {params['frequency']} {params['description']} of {params['amount']} "
                f"adds {self.monthly_equivalent(params)} to monthly burn"
            )
        if params["instalments"] > 1:
            return (
                f"{params['description'].capitalize()} of {params['amount']} paid over "
                f"{params['instalments']} months from month {params['month']}"
            )
        return f"One-time {params['description']} of {params['amount']} in month {params['month']}"

    def default_name(self, params: Dict[str, Any]) -> str:
        return f"Purchase: {params['description']}"

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        if params["recurring"]:
            return [
                assumption("recurring_indefinitely", "The recurring cost continues for the whole horizon",
                           Sensitivity.HIGH, params["amount"]),
                assumption("price_fixed", "The price does not rise at renewal", Sensitivity.MEDIUM, True),
            ]
        share = params["amount"] / baseline.current_cash if baseline.current_cash > 0 else None
        return [
            assumption("no_other_large_expenses", "No other large purchases over the horizon",
                       Sensitivity.HIGH, params["amount"]),
            assumption("purchase_price_fixed", "The quoted price is final",
                       Sensitivity.HIGH if share is not None and share > Decimal("0.2") else Sensitivity.LOW,
                       params["amount"]),
        ]

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": (
                "Negotiate a lower recurring rate or an annual discount" if params["recurring"]
                else "Finance the purchase or pay in instalments"
            ),
            "assumption_risk": "Get a fixed written quote before committing",
            "market_volatility": "Time the purchase after a strong revenue month",
            "execution_complexity": "Agree delivery and payment milestones with the vendor",
        }

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        if params["recurring"]:
            reduced = money(params["amount"] * Decimal("0.85"))
            return [
                Alternative(
                    type=RecommendationType.REDUCE,
                    title=f"Negotiate the rate down to {reduced}",
                    params={**params, "amount": reduced},
                    explanation="Vendors often discount 10-20% for longer commitments or volume.",
                ),
                Alternative(
                    type=RecommendationType.DELAY,
                    title="Start the subscription 3 months later",
                    params={**params, "month": params["month"] + 3},
                    explanation="Three fewer months of the recurring cost inside the horizon.",
                ),
            ]
        alts = [
            Alternative(
                type=RecommendationType.DELAY,
                title="Delay the purchase by 3 months",
                params={**params, "month": params["month"] + 3},
                explanation="Lets cash reserves rebuild before the outflow.",
            ),
        ]
        if params["instalments"] < 6:
            alts.append(Alternative(
                type=RecommendationType.PHASE,
                title="Pay in 6 monthly instalments",
                params={**params, "instalments": 6},
                explanation="Spreading payments avoids one large drop in cash.",
            ))
        return alts

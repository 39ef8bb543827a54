"""
Revenue Change Scenario Handler.

Scales monthly inflow by ``change_pct`` (needs a baseline inflow) or moves
it by a fixed ``amount`` for ``duration_months`` (open-ended if omitted).
``cost_offset_monthly`` models expense cuts made alongside a loss.
"""

from decimal import Decimal
from typing import Any, Dict, List

from accubooks.analytics import money
from accubooks.errors import ValidationError
from accubooks.forecast.types import Sensitivity
from accubooks.scenarios.timeline import CashDelta, RecurringFlow
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


class RevenueChangeHandler(BaseScenarioHandler):
    """Handler for gaining or losing monthly revenue."""

    scenario_type = ScenarioType.REVENUE_CHANGE
    complexity_base = 30.0
    behavioural = True

    def required_params(self) -> List[str]:
        return ["change_pct|amount"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        pct = decimal_param(params, "change_pct", minimum=Decimal("-100"))
        if pct is not None:
            if baseline.monthly_inflow is None:
                raise ValidationError(
                    "A percentage revenue change needs a baseline with monthly inflow; give 'amount' instead."
                )
            monthly_change = baseline.monthly_inflow * pct / 100
        else:
            change_type = choice_param(params, "change_type", ["gain", "loss"], default="loss")
            amount = decimal_param(params, "amount", allow_zero=False)
            monthly_change = amount if change_type == "gain" else -amount

        return {
            "monthly_change": money(monthly_change),
            "change_pct": pct,
            "start_month": int_param(params, "start_month", default=1, minimum=1, maximum=24),
            "duration_months": int_param(params, "duration_months", minimum=1, maximum=120),
            "cost_offset_monthly": money(decimal_param(params, "cost_offset_monthly", default=0)),
            "reason": params.get("reason"),
        }

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        start = params["start_month"]
        end = start + params["duration_months"] - 1 if params["duration_months"] else None
        flows = [RecurringFlow(amount=params["monthly_change"], start_month=start, end_month=end)]
        if params["cost_offset_monthly"] > 0:
            flows.append(RecurringFlow(amount=params["cost_offset_monthly"], start_month=start))
        return CashDelta(recurring=tuple(flows))

    def _is_loss(self, params: Dict[str, Any]) -> bool:
        return params["monthly_change"] < 0

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        kind = "Revenue loss" if self._is_loss(params) else "Revenue increase"
        text = f"{kind} of {abs(params['monthly_change'])} per month from month {params['start_month']}"
        if params["duration_months"]:
            text += f" for {params['duration_months']} months"
        if params["reason"]:
            text += f" due to {params['reason']}"
        return text

    def default_name(self, params: Dict[str, Any]) -> str:
        return "Revenue loss" if self._is_loss(params) else "Revenue gain"

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        if self._is_loss(params):
            items = [assumption("no_further_decline", "Revenue does not fall further than modelled",
                                Sensitivity.HIGH, params["monthly_change"])]
        else:
            items = [assumption("growth_sustained", "The new revenue is retained for the modelled period",
                                Sensitivity.HIGH, params["monthly_change"])]
        items.append(assumption("collection_timing", "Revenue is collected in the month it is earned",
                                Sensitivity.MEDIUM, True))
        if params["cost_offset_monthly"]:
            items.append(assumption("cost_cuts_achieved", "Planned expense cuts are fully realised",
                                    Sensitivity.HIGH, params["cost_offset_monthly"]))
        return items

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": "Cut non-essential expenses to offset the lost revenue",
            "assumption_risk": "Confirm the change with the affected customers' contracts",
            "market_volatility": "Diversify revenue so no single customer moves runway this much",
            "execution_complexity": "Sequence cost cuts before the revenue change lands",
        }

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        if not self._is_loss(params):
            return []
        offset = money(baseline.monthly_burn * Decimal("0.2"))
        return [
            Alternative(
                type=RecommendationType.REDUCE,
                title=f"Reduce expenses by 20% ({offset} per month)",
                params={**params, "cost_offset_monthly": params["cost_offset_monthly"] + offset},
                explanation="Expense reduction offsets the revenue loss and preserves cash.",
            ),
        ]

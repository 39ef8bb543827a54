"""
Hiring Scenario Handler.

A hire costs a one-time amount (recruiting, equipment) in the start month
and a recurring monthly cost (salary and benefits) from the start month on.
The ramp period does not change cost; it is carried as an assumption and
as execution complexity.
"""

from decimal import Decimal
from typing import Any, Dict, List

from accubooks.analytics import money
from accubooks.errors import ValidationError
from accubooks.forecast.types import Sensitivity
from accubooks.scenarios.timeline import CashDelta, OneTimeFlow, RecurringFlow
from accubooks.scenarios.types import CriticalAssumption, RecommendationType, ScenarioType
from .base import (
    Alternative,
    BaseScenarioHandler,
    Baseline,
    assumption,
    decimal_param,
    int_param,
)


class HiringHandler(BaseScenarioHandler):
    """Handler for adding one or more employees."""

    scenario_type = ScenarioType.HIRING
    complexity_base = 40.0

    def required_params(self) -> List[str]:
        return ["monthly_cost|annual_salary"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        monthly_cost = decimal_param(params, "monthly_cost")
        if monthly_cost is None:
            salary = decimal_param(params, "annual_salary")
            benefits = decimal_param(params, "annual_benefits", default=0)
            monthly_cost = (salary + benefits) / 12
        if monthly_cost <= 0:
            raise ValidationError("A hire must have a positive monthly cost.")

        return {
            "role": str(params.get("role") or "new hire"),
            "monthly_cost": money(monthly_cost),
            "one_time_cost": money(decimal_param(params, "one_time_cost", default=0)),
            "headcount": int_param(params, "headcount", default=1, minimum=1, maximum=100),
            "start_month": int_param(params, "start_month", default=1, minimum=1, maximum=24),
            "ramp_months": int_param(params, "ramp_months", default=0, minimum=0, maximum=24),
            "stagger_months": int_param(params, "stagger_months", default=0, minimum=0, maximum=12),
        }

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        one_time, recurring = [], []
        for i in range(params["headcount"]):
            start = params["start_month"] + i * params["stagger_months"]
            if params["one_time_cost"] > 0:
                one_time.append(OneTimeFlow(month=start, amount=-params["one_time_cost"]))
            recurring.append(RecurringFlow(amount=-params["monthly_cost"], start_month=start))
        if params["stagger_months"] == 0:
            # Simultaneous hires collapse into one flow of each kind
            one_time = [OneTimeFlow(month=f.month, amount=f.amount * len(one_time)) for f in one_time[:1]]
            recurring = [RecurringFlow(amount=-params["monthly_cost"] * params["headcount"],
                                       start_month=params["start_month"])]
        return CashDelta(one_time=tuple(one_time), recurring=tuple(recurring))

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        total = params["monthly_cost"] * params["headcount"]
        return (
            f"Hiring {params['headcount']} x {params['role']} from month {params['start_month']} "
            f"increases monthly burn by {money(total)}"
            + (f", plus {params['one_time_cost']} one-time cost per hire" if params["one_time_cost"] else "")
        )

    def default_name(self, params: Dict[str, Any]) -> str:
        return f"Hire {params['role']}" if params["headcount"] == 1 else f"Hire {params['headcount']} x {params['role']}"

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        items = [
            assumption("hire_monthly_cost", "Monthly cost per hire, including benefits, stays fixed",
                       Sensitivity.HIGH, params["monthly_cost"]),
            assumption("no_additional_hires", "No other hires are made over the horizon",
                       Sensitivity.HIGH, params["headcount"]),
            assumption("revenue_flat", "The hire does not change revenue over the horizon",
                       Sensitivity.MEDIUM, True),
        ]
        if params["ramp_months"]:
            items.append(assumption(
                "ramp_period", f"Full productivity is reached after {params['ramp_months']} months",
                Sensitivity.MEDIUM if params["ramp_months"] <= 3 else Sensitivity.HIGH, params["ramp_months"],
            ))
        return items

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": "Delay the start date or lower the monthly cost until runway stays above 6 months",
            "assumption_risk": "Confirm the fully loaded monthly cost, including taxes and benefits, before the offer",
            "market_volatility": "Make the hire contingent on next quarter's bookings",
            "execution_complexity": "Plan onboarding for the ramp period and stagger multiple hires",
        }

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        alts = [
            Alternative(
                type=RecommendationType.DELAY,
                title="Delay the hire by 2 months",
                params={**params, "start_month": params["start_month"] + 2},
                explanation="Two more months at the current burn before the added cost starts.",
            ),
            Alternative(
                type=RecommendationType.REDUCE,
                title=f"Reduce monthly cost to {money(params['monthly_cost'] * Decimal('0.85'))}",
                params={**params, "monthly_cost": money(params["monthly_cost"] * Decimal("0.85"))},
                explanation="A 15% lower package keeps the hire while preserving runway.",
            ),
            Alternative(
                type=RecommendationType.SUBSTITUTE,
                title="Use a part-time contractor instead",
                params={**params, "monthly_cost": money(params["monthly_cost"] * Decimal("0.6")),
                        "one_time_cost": Decimal("0.00")},
                explanation="A contractor at 60% of the cost with no recruiting or equipment outlay.",
            ),
        ]
        if params["headcount"] > 1 and params["stagger_months"] < 2:
            alts.append(Alternative(
                type=RecommendationType.PHASE,
                title="Stagger the hires 2 months apart",
                params={**params, "stagger_months": 2},
                explanation="Spreading start dates lets each hire's cost land after the previous one ramps.",
            ))
        return alts

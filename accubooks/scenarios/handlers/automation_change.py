"""
Automation Change Scenario Handler.

Enabling or modifying an automation rule improves monthly cash flow by its
estimated impact; disabling one gives that benefit up. An optional setup
cost is paid in the start month.
"""

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
    choice_param,
    decimal_param,
    int_param,
)


class AutomationChangeHandler(BaseScenarioHandler):
    """Handler for turning automation rules on, off or changing them."""

    scenario_type = ScenarioType.AUTOMATION_CHANGE
    complexity_base = 15.0

    def required_params(self) -> List[str]:
        return ["monthly_impact|annual_impact"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        monthly = decimal_param(params, "monthly_impact")
        if monthly is None:
            monthly = decimal_param(params, "annual_impact") / 12
        if monthly == 0:
            raise ValidationError("An automation change needs a non-zero estimated impact.")
        return {
            "rule_name": str(params.get("rule_name") or "automation rule"),
            "change_type": choice_param(params, "change_type", ["enable", "modify", "disable"], default="enable"),
            "monthly_impact": money(monthly),
            "setup_cost": money(decimal_param(params, "setup_cost", default=0)),
            "start_month": int_param(params, "start_month", default=1, minimum=1, maximum=24),
        }

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        sign = -1 if params["change_type"] == "disable" else 1
        one_time = ()
        if params["setup_cost"] > 0:
            one_time = (OneTimeFlow(month=params["start_month"], amount=-params["setup_cost"]),)
        return CashDelta(
            one_time=one_time,
            recurring=(RecurringFlow(amount=params["monthly_impact"] * sign, start_month=params["start_month"]),),
        )

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        verb = {"enable": "Enabling", "modify": "Modifying", "disable": "Disabling"}[params["change_type"]]
        effect = "costs" if params["change_type"] == "disable" else "improves cash flow by"
        return f"{verb} {params['rule_name']} {effect} {params['monthly_impact']} per month"

    def default_name(self, params: Dict[str, Any]) -> str:
        return f"{params['change_type'].capitalize()} {params['rule_name']}"

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        return [
            assumption("automation_performs", "The rule delivers its estimated monthly impact",
                       Sensitivity.MEDIUM, params["monthly_impact"]),
        ]

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": "Keep the rule running until a replacement process is in place",
            "assumption_risk": "Measure the rule's impact over a month before relying on it",
            "market_volatility": "Review the estimate after the next billing cycle",
            "execution_complexity": "Preview the rule with a dry run before enabling it",
        }

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        if params["change_type"] == "disable":
            return [Alternative(
                type=RecommendationType.DELAY,
                title=f"Keep {params['rule_name']} for 3 more months",
                params={**params, "start_month": params["start_month"] + 3},
                explanation="The rule keeps contributing while a replacement is prepared.",
            )]
        if params["start_month"] > 1:
            return [Alternative(
                type=RecommendationType.ADJUST_TIMING,
                title=f"Enable {params['rule_name']} now",
                params={**params, "start_month": 1},
                explanation="The benefit starts accruing immediately.",
            )]
        return []

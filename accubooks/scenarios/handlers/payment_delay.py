"""
Payment Delay Scenario Handler.

An expected receipt of ``amount`` in ``expected_month`` arrives
ceil(delay_days / 30) months later, less any share that defaults and any
early-payment discount offered.
"""

from decimal import Decimal
from typing import Any, Dict, List

from accubooks.analytics import money
from accubooks.forecast.types import Sensitivity
from accubooks.scenarios.timeline import DAYS_PER_MONTH, CashDelta, OneTimeFlow
from accubooks.scenarios.types import CriticalAssumption, RecommendationType, ScenarioType
from .base import (
    Alternative,
    BaseScenarioHandler,
    Baseline,
    assumption,
    decimal_param,
    int_param,
)


def delay_months(days: int) -> int:
    return -(-days // DAYS_PER_MONTH)


class PaymentDelayHandler(BaseScenarioHandler):
    """Handler for customer payments arriving late."""

    scenario_type = ScenarioType.PAYMENT_DELAY
    complexity_base = 25.0
    behavioural = True

    def required_params(self) -> List[str]:
        return ["amount", "delay_days"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        return {
            "amount": money(decimal_param(params, "amount", allow_zero=False)),
            "delay_days": int_param(params, "delay_days", minimum=0, maximum=365),
            "expected_month": int_param(params, "expected_month", default=1, minimum=1, maximum=24),
            "default_pct": decimal_param(params, "default_pct", default=0, minimum=Decimal("0")),
            "discount_pct": decimal_param(params, "discount_pct", default=0, minimum=Decimal("0")),
            "customer": params.get("customer"),
        }

    def received(self, params: Dict[str, Any]) -> Decimal:
        kept = (1 - min(params["default_pct"], Decimal("100")) / 100)
        kept *= (1 - min(params["discount_pct"], Decimal("100")) / 100)
        return money(params["amount"] * kept)

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        expected = params["expected_month"]
        arrival = expected + delay_months(params["delay_days"])
        flows = [OneTimeFlow(month=expected, amount=-params["amount"])]
        received = self.received(params)
        if received > 0:
            flows.append(OneTimeFlow(month=arrival, amount=received))
        return CashDelta(one_time=tuple(flows))

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        who = f" from {params['customer']}" if params["customer"] else ""
        return (
            f"{params['delay_days']}-day delay on {params['amount']}{who} expected in month "
            f"{params['expected_month']}; {self.received(params)} eventually received"
        )

    def default_name(self, params: Dict[str, Any]) -> str:
        return f"{params['delay_days']}-day payment delay"

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        return [
            assumption("payment_eventually_received", "The payment is delayed, not lost",
                       Sensitivity.HIGH, str(self.received(params))),
            assumption("delay_length", f"The delay does not exceed {params['delay_days']} days",
                       Sensitivity.MEDIUM, params["delay_days"]),
        ]

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": "Arrange a credit line or defer non-essential spend during the gap",
            "assumption_risk": "Get a committed payment date from the customer in writing",
            "market_volatility": "Automate reminders so late payments are chased before they slip further",
            "execution_complexity": "Assign one owner to follow up the overdue invoice",
        }

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        if params["delay_days"] == 0:
            return []
        return [
            Alternative(
                type=RecommendationType.ADJUST_TIMING,
                title="Automate collection reminders",
                params={**params, "delay_days": params["delay_days"] // 2},
                explanation="Reminder sequences typically halve how late an overdue invoice is paid.",
            ),
            Alternative(
                type=RecommendationType.SUBSTITUTE,
                title="Offer a 2% early-payment discount",
                params={**params, "delay_days": 0, "discount_pct": Decimal("2")},
                explanation="Trades 2% of the invoice for receiving it on time.",
            ),
        ]

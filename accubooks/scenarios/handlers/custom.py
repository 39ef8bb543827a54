"""
Custom Scenario Handler - user-supplied cash-flow deltas.

    one_time:  [{"month": 2, "amount": -15000}, ...]
    recurring: [{"amount": -2000, "start_month": 1, "end_month": 6}, ...]

Amounts are signed: negative means cash leaving.
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

MAX_COMPONENTS = 24


class CustomHandler(BaseScenarioHandler):

    scenario_type = ScenarioType.CUSTOM
    complexity_base = 35.0

    def required_params(self) -> List[str]:
        return ["one_time|recurring"]

    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        one_time = params.get("one_time") or []
        recurring = params.get("recurring") or []
        if not isinstance(one_time, list) or not isinstance(recurring, list):
            raise ValidationError("'one_time' and 'recurring' must be lists.")
        if len(one_time) + len(recurring) > MAX_COMPONENTS:
            raise ValidationError(f"A custom scenario may have at most {MAX_COMPONENTS} components.")

        normalized_one_time = []
        for item in one_time:
            if not isinstance(item, dict):
                raise ValidationError("Each one-time entry must be an object with 'month' and 'amount'.")
            normalized_one_time.append({
                "month": int_param(item, "month", default=1, minimum=1, maximum=36),
                "amount": money(decimal_param(item, "amount", minimum=None, allow_zero=False)),
            })

        normalized_recurring = []
        for item in recurring:
            if not isinstance(item, dict):
                raise ValidationError("Each recurring entry must be an object with 'amount'.")
            start = int_param(item, "start_month", default=1, minimum=1, maximum=36)
            end = int_param(item, "end_month", minimum=start, maximum=120)
            normalized_recurring.append({
                "amount": money(decimal_param(item, "amount", minimum=None, allow_zero=False)),
                "start_month": start,
                "end_month": end,
            })

        return {
            "description": str(params.get("description") or "custom scenario"),
            "one_time": normalized_one_time,
            "recurring": normalized_recurring,
        }

    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        return CashDelta(
            one_time=tuple(OneTimeFlow(month=i["month"], amount=i["amount"]) for i in params["one_time"]),
            recurring=tuple(
                RecurringFlow(amount=i["amount"], start_month=i["start_month"], end_month=i["end_month"])
                for i in params["recurring"]
            ),
        )

    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        one_time = sum((i["amount"] for i in params["one_time"]), Decimal("0"))
        recurring = sum((i["amount"] for i in params["recurring"]), Decimal("0"))
        return (
            f"{params['description'].capitalize()}: {money(one_time)} in one-time flows and "
            f"{money(recurring)} per month in recurring flows"
        )

    def default_name(self, params: Dict[str, Any]) -> str:
        return params["description"].capitalize()

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        return [
            assumption("user_supplied_flows", "The entered cash flows are complete and accurate",
                       Sensitivity.HIGH, len(params["one_time"]) + len(params["recurring"])),
        ]

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        outflows = [i for i in params["one_time"] + params["recurring"] if i["amount"] < 0]
        if not outflows:
            return []
        return [
            Alternative(
                type=RecommendationType.DELAY,
                title="Shift all outflows 2 months later",
                params={
                    **params,
                    "one_time": [
                        {**i, "month": i["month"] + 2} if i["amount"] < 0 else i for i in params["one_time"]
                    ],
                    "recurring": [
                        {**i, "start_month": i["start_month"] + 2,
                         "end_month": i["end_month"] + 2 if i["end_month"] else None}
                        if i["amount"] < 0 else i
                        for i in params["recurring"]
                    ],
                },
                explanation="The same costs, starting two months later.",
            ),
            Alternative(
                type=RecommendationType.REDUCE,
                title="Reduce every outflow by 20%",
                params={
                    **params,
                    "one_time": [
                        {**i, "amount": money(i["amount"] * Decimal("0.8"))} if i["amount"] < 0 else i
                        for i in params["one_time"]
                    ],
                    "recurring": [
                        {**i, "amount": money(i["amount"] * Decimal("0.8"))} if i["amount"] < 0 else i
                        for i in params["recurring"]
                    ],
                },
                explanation="Trimming each cost by a fifth keeps the plan's shape.",
            ),
        ]

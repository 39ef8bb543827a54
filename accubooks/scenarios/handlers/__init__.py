"""
Scenario Handlers - Type-specific scenario processing.

Each handler implements:
- required_params(): List of required parameter names
- normalize(): Coerce and default parameters
- build_delta(): Cash-flow changes against the baseline
- alternatives(): Variants the engine re-simulates as recommendations
"""

from typing import Dict

from accubooks.errors import ValidationError
from accubooks.scenarios.types import ScenarioType
from .base import Alternative, BaseScenarioHandler, Baseline
from .hiring import HiringHandler
from .large_purchase import LargePurchaseHandler
from .revenue_change import RevenueChangeHandler
from .payment_delay import PaymentDelayHandler
from .automation_change import AutomationChangeHandler
from .custom import CustomHandler

HANDLERS: Dict[ScenarioType, BaseScenarioHandler] = {
    ScenarioType.HIRING: HiringHandler(),
    ScenarioType.LARGE_PURCHASE: LargePurchaseHandler(),
    ScenarioType.REVENUE_CHANGE: RevenueChangeHandler(),
    ScenarioType.PAYMENT_DELAY: PaymentDelayHandler(),
    ScenarioType.AUTOMATION_CHANGE: AutomationChangeHandler(),
    ScenarioType.CUSTOM: CustomHandler(),
}


def get_handler(scenario_type) -> BaseScenarioHandler:
    """Get the appropriate handler for a scenario type."""
    try:
        handler = HANDLERS.get(ScenarioType(scenario_type))
    except ValueError:
        handler = None
    if not handler:
        raise ValidationError(f"No handler for scenario type: {scenario_type}")
    return handler


__all__ = [
    "Alternative",
    "BaseScenarioHandler",
    "Baseline",
    "HANDLERS",
    "get_handler",
]

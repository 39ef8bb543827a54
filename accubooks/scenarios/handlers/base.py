"""
Base Scenario Handler - Abstract base class for scenario handlers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from accubooks.errors import ValidationError
from accubooks.forecast.types import Sensitivity
from accubooks.scenarios.timeline import CashDelta
from accubooks.scenarios.types import CriticalAssumption, RecommendationType, ScenarioType


@dataclass(frozen=True)
class Baseline:
    """Cash position a scenario starts from, read off a cash-runway forecast."""
    forecast_id: str
    current_cash: Decimal
    monthly_burn: Decimal  # net monthly outflow
    monthly_inflow: Optional[Decimal]
    runway_days: float
    confidence: float


@dataclass(frozen=True)
class Alternative:
    """A variant of the submitted parameters worth re-simulating."""
    type: RecommendationType
    title: str
    params: Dict[str, Any]
    explanation: str
    extra: Optional[CashDelta] = None


class BaseScenarioHandler(ABC):
    """
    Abstract base class for scenario handlers.

    Each scenario type has a handler that knows how to:
    1. Validate and normalize its parameters
    2. Turn them into cash-flow changes against the baseline
    3. State the assumptions it relies on
    4. Propose alternatives that the engine re-simulates as recommendations
    """

    scenario_type: ScenarioType
    complexity_base: float = 20.0
    # Depends on customers doing something, which adds to market volatility
    behavioural: bool = False

    @abstractmethod
    def required_params(self) -> List[str]:
        """Parameter names that must be present."""
        pass

    @abstractmethod
    def normalize(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        """Return params with defaults filled in and types coerced. Raise ValidationError if malformed."""
        pass

    @abstractmethod
    def build_delta(self, params: Dict[str, Any], baseline: Baseline) -> CashDelta:
        pass

    @abstractmethod
    def describe(self, params: Dict[str, Any], baseline: Baseline) -> str:
        pass

    @abstractmethod
    def default_name(self, params: Dict[str, Any]) -> str:
        pass

    def assumptions(self, params: Dict[str, Any], baseline: Baseline) -> List[CriticalAssumption]:
        return []

    def alternatives(self, params: Dict[str, Any], baseline: Baseline) -> List[Alternative]:
        return []

    def mitigations(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {
            "runway_impact": "Build a larger cash buffer before committing to the change",
            "assumption_risk": "Validate the highest-sensitivity assumptions with current figures",
            "market_volatility": "Stress-test the plan against a weaker revenue month",
            "execution_complexity": "Break the change into smaller, separately reviewed steps",
        }

    def validate(self, params: Dict[str, Any], baseline: Baseline) -> Dict[str, Any]:
        """Check required parameters, then normalize."""
        if not isinstance(params, dict):
            raise ValidationError("Scenario parameters must be an object.")
        missing = self.validate_params(params)
        if missing:
            raise ValidationError(
                f"Missing parameters for {self.scenario_type.value} scenario: {', '.join(missing)}.",
                details={"missing": missing},
            )
        return self.normalize(params, baseline)

    def validate_params(self, params: Dict[str, Any]) -> List[str]:
        """
        Validate that all required parameters are present.

        Entries written "a|b" are satisfied by either name.
        Returns list of missing parameter names.
        """
        missing = []
        for param in self.required_params():
            options = param.split("|")
            if not any(params.get(name) not in (None, "") for name in options):
                missing.append(param)
        return missing


# =============================================================================
# Parameter helpers
# =============================================================================

def decimal_param(params: Dict[str, Any], key: str, default: Any = None,
                  minimum: Optional[Decimal] = Decimal("0"), allow_zero: bool = True) -> Optional[Decimal]:
    raw = params.get(key, default)
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Parameter '{key}' must be a number, got {raw!r}.")
    if not value.is_finite():
        raise ValidationError(f"Parameter '{key}' must be a finite number.")
    if minimum is not None and value < minimum:
        raise ValidationError(f"Parameter '{key}' must be at least {minimum}, got {value}.")
    if not allow_zero and value == 0:
        raise ValidationError(f"Parameter '{key}' must not be zero.")
    return value


def int_param(params: Dict[str, Any], key: str, default: Optional[int] = None,
              minimum: int = 0, maximum: Optional[int] = None) -> Optional[int]:
    raw = params.get(key, default)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"Parameter '{key}' must be a whole number.")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"Parameter '{key}' must be a whole number, got {raw!r}.")
    if value != raw and not (isinstance(raw, str) and raw.strip().lstrip("-").isdigit()):
        raise ValidationError(f"Parameter '{key}' must be a whole number, got {raw!r}.")
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f"at least {minimum}"
        raise ValidationError(f"Parameter '{key}' must be {bound}, got {value}.")
    return value


def choice_param(params: Dict[str, Any], key: str, choices: List[str], default: Optional[str] = None) -> str:
    value = params.get(key, default)
    if value not in choices:
        raise ValidationError(f"Parameter '{key}' must be one of {', '.join(choices)}, got {value!r}.")
    return value


def assumption(key: str, description: str, sensitivity: Sensitivity, value: Any = None) -> CriticalAssumption:
    if isinstance(value, Decimal):
        value = str(value)
    return CriticalAssumption(key=key, description=description, sensitivity=sensitivity, current_value=value)

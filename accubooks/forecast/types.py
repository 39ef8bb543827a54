"""
Forecast Types - explainable, immutable financial forecasts.

Every forecast carries the literal formula, the same formula with the values
substituted, the inputs it was computed from and at least one assumption.
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from decimal import Decimal

from accubooks.base import generate_id
from accubooks.data import HistoryWindow


class ForecastType(str, Enum):
    CASH_RUNWAY = "cash_runway"
    BURN_RATE = "burn_rate"
    REVENUE_GROWTH = "revenue_growth"
    EXPENSE_TRAJECTORY = "expense_trajectory"
    PAYMENT_INFLOW = "payment_inflow"


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


FORMULAS: Dict[ForecastType, str] = {
    ForecastType.CASH_RUNWAY: "cash_runway_months = current_cash / monthly_burn_rate",
    ForecastType.BURN_RATE: "monthly_burn_rate = sum(expenses, last 90 days) / 3",
    ForecastType.REVENUE_GROWTH: (
        "revenue_growth_pct = (current_month_revenue - previous_month_revenue) "
        "/ previous_month_revenue * 100"
    ),
    ForecastType.EXPENSE_TRAJECTORY: "expenses(m) = current_expenses * (1 + growth_rate) ^ m",
    ForecastType.PAYMENT_INFLOW: "payment_inflow = (on_time_payments / total_payments) * average_payment_value",
}

UNITS: Dict[ForecastType, str] = {
    ForecastType.CASH_RUNWAY: "months",
    ForecastType.BURN_RATE: "currency_per_month",
    ForecastType.REVENUE_GROWTH: "percent",
    ForecastType.EXPENSE_TRAJECTORY: "currency_per_month",
    ForecastType.PAYMENT_INFLOW: "currency",
}


class Assumption(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    description: str
    sensitivity: Sensitivity
    current_value: Any = None


class ConfidenceBreakdown(BaseModel):
    """Points awarded per component. ``total`` is their clipped sum."""
    model_config = ConfigDict(frozen=True)

    data_availability: float
    consistency: float
    sample_size: float
    trend_stability: float
    total: float
    notes: Tuple[str, ...] = ()


class ProjectionPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    month: int
    value: Optional[Decimal] = None


class FinancialForecast(BaseModel):
    """An immutable forecast."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("fcst"))
    tenant_id: str
    forecast_type: ForecastType
    formula: str
    calculation: str
    inputs_snapshot: Dict[str, Any] = Field(default_factory=dict)
    projected_value: Optional[Decimal] = None
    unit: str
    is_defined: bool = True
    confidence_score: float = Field(ge=0, le=100)
    confidence_level: ConfidenceLevel
    confidence_breakdown: Optional[ConfidenceBreakdown] = None
    assumptions: Tuple[Assumption, ...]
    data_sources: Tuple[str, ...] = ()
    historical_baseline: Optional[Decimal] = None
    projections: Tuple[ProjectionPoint, ...] = ()
    horizon_months: int = 0
    source_window: Optional[HistoryWindow] = None
    generated_at: datetime

    @model_validator(mode="after")
    def _explained(self):
        if not self.assumptions:
            raise ValueError("a forecast must state at least one assumption")
        return self

    def input_decimal(self, key: str) -> Optional[Decimal]:
        value = self.inputs_snapshot.get(key)
        if value is None:
            return None
        return Decimal(str(value))


def high_sensitivity_count(assumptions: List[Assumption]) -> int:
    return sum(1 for a in assumptions if a.sensitivity == Sensitivity.HIGH)

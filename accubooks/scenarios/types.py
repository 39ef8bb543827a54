"""
Scenario Types - Core Data Structures.

- Scenario: immutable result of perturbing a baseline forecast
- RiskDriver / CriticalAssumption: what drives the risk score
- CashFlowImpact: month-by-month projected balances against the baseline
- Recommendation: advisory alternative, never applied automatically
"""

from enum import Enum
from typing import Optional, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from decimal import Decimal

from accubooks.base import generate_id
from accubooks.forecast.types import FinancialForecast, Sensitivity


# =============================================================================
# ENUMS
# =============================================================================

class ScenarioType(str, Enum):
    HIRING = "hiring"
    LARGE_PURCHASE = "large_purchase"
    REVENUE_CHANGE = "revenue_change"
    PAYMENT_DELAY = "payment_delay"
    AUTOMATION_CHANGE = "automation_change"
    CUSTOM = "custom"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecommendationType(str, Enum):
    DELAY = "delay"
    REDUCE = "reduce"
    SUBSTITUTE = "substitute"
    PHASE = "phase"
    ADJUST_TIMING = "adjust_timing"
    INCREASE_BUFFER = "increase_buffer"


# =============================================================================
# RESULT PARTS
# =============================================================================

class RiskDriver(BaseModel):
    model_config = ConfigDict(frozen=True)

    factor: str
    impact: float  # weighted contribution to the risk score, in points
    sub_score: float = Field(ge=0, le=100)
    description: str
    mitigation: str


class RiskBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    runway_impact: float = Field(ge=0, le=100)
    assumption_risk: float = Field(ge=0, le=100)
    market_volatility: float = Field(ge=0, le=100)
    execution_complexity: float = Field(ge=0, le=100)
    weights: Dict[str, float]


class CriticalAssumption(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    description: str
    sensitivity: Sensitivity
    current_value: Any = None


class MonthlyCashPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    month: int
    baseline_balance: Decimal
    projected_balance: Decimal
    delta: Decimal
    cumulative_delta: Decimal


class CashFlowImpact(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly: Tuple[MonthlyCashPoint, ...]
    cumulative: Decimal
    description: str


class Recommendation(BaseModel):
    """Advisory only. Applying one means creating a new scenario explicitly."""
    model_config = ConfigDict(frozen=True)

    type: RecommendationType
    title: str
    expected_benefit: float  # runway days gained versus the scenario as submitted
    risk_reduction: float  # risk score points removed
    confidence_score: float = Field(ge=0, le=100)
    explanation: str
    proposed_params: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# SCENARIO
# =============================================================================

class Scenario(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("scn"))
    tenant_id: str
    scenario_type: ScenarioType
    name: str
    input_params: Dict[str, Any]
    baseline_forecast_id: str
    baseline_runway_days: Optional[float] = None
    projected_runway_days: Optional[float] = None
    runway_change_days: Optional[float] = None
    projected_forecast: FinancialForecast
    risk_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    risk_breakdown: RiskBreakdown
    top_risk_drivers: Tuple[RiskDriver, ...]
    critical_assumptions: Tuple[CriticalAssumption, ...]
    cash_flow_impact: CashFlowImpact
    recommendations: Tuple[Recommendation, ...] = ()
    success_probability: float = Field(ge=0, le=100)
    summary: str
    created_at: datetime

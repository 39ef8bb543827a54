"""Smart insight types."""

from enum import Enum
from typing import Optional, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime
from decimal import Decimal

from accubooks.base import generate_id
from accubooks.data import HistoryWindow


class InsightType(str, Enum):
    EXPENSE_ANOMALY = "expense_anomaly"
    CASH_FLOW_TREND = "cash_flow_trend"
    PAYMENT_PATTERN = "payment_pattern"
    REVENUE_TREND = "revenue_trend"
    BUDGET_ALERT = "budget_alert"


class InsightSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ContributingFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    factor: str
    value: Any = None
    weight: float = Field(ge=0, le=1)
    description: str


class InsightExplanation(BaseModel):
    """Why an insight was raised: the method, its factors ranked by weight, and a narrative."""
    model_config = ConfigDict(frozen=True)

    method: str
    summary: str
    factors: Tuple[ContributingFactor, ...]
    confidence_components: Dict[str, float] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _has_factors(self):
        if not self.factors:
            raise ValueError("an insight explanation needs at least one contributing factor")
        return self


class SuggestedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    description: str


class SmartInsight(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("ins"))
    tenant_id: str
    insight_type: InsightType
    severity: InsightSeverity
    title: str
    description: str
    confidence_score: float = Field(ge=0, le=100)
    explanation: InsightExplanation
    suggested_actions: Tuple[SuggestedAction, ...] = ()
    impact_amount: Optional[Decimal] = None
    subject: Optional[str] = None  # category, customer or budget the insight is about
    dedup_key: str
    dismissed: bool = False
    dismissed_reason: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    source_window: HistoryWindow
    generated_at: datetime
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return not self.dismissed and (self.expires_at is None or self.expires_at > now)

"""Pydantic schemas for the scenario API."""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator

from .types import ScenarioType


class SimulateScenarioRequest(BaseModel):
    """
    Either reference a stored cash-runway forecast as the baseline, or state
    the baseline figures directly.
    """
    scenario_type: ScenarioType
    name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    baseline_forecast_id: Optional[str] = None
    current_cash: Optional[Decimal] = None
    monthly_burn_rate: Optional[Decimal] = None
    monthly_inflow: Optional[Decimal] = None

    @model_validator(mode="after")
    def _has_baseline(self):
        if self.baseline_forecast_id is None and (self.current_cash is None or self.monthly_burn_rate is None):
            raise ValueError("give baseline_forecast_id, or current_cash and monthly_burn_rate")
        return self

"""Deterministic financial forecasts with visible formulas and confidence scores."""
from .types import (
    ForecastType,
    Sensitivity,
    ConfidenceLevel,
    Assumption,
    ConfidenceBreakdown,
    ProjectionPoint,
    FinancialForecast,
    FORMULAS,
)
from .engine import ForecastingEngine, build_cash_runway_forecast, compute_forecast

__all__ = [
    "ForecastType",
    "Sensitivity",
    "ConfidenceLevel",
    "Assumption",
    "ConfidenceBreakdown",
    "ProjectionPoint",
    "FinancialForecast",
    "FORMULAS",
    "ForecastingEngine",
    "build_cash_runway_forecast",
    "compute_forecast",
]

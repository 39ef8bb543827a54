"""
Scenario simulation.

A scenario perturbs a baseline cash-runway forecast with one hypothetical
change and reports the projected runway, a weighted risk score and advisory
recommendations. Scenarios are immutable.
"""
from .types import (
    ScenarioType,
    RiskLevel,
    RecommendationType,
    RiskDriver,
    RiskBreakdown,
    CriticalAssumption,
    MonthlyCashPoint,
    CashFlowImpact,
    Recommendation,
    Scenario,
)
from .timeline import CashDelta, OneTimeFlow, RecurringFlow, RunwayPolicy, walk
from .risk_scoring import assess, risk_level, success_probability
from .engine import ScenarioEngine, baseline_from_forecast, build_scenario, simulate

__all__ = [
    "ScenarioType",
    "RiskLevel",
    "RecommendationType",
    "RiskDriver",
    "RiskBreakdown",
    "CriticalAssumption",
    "MonthlyCashPoint",
    "CashFlowImpact",
    "Recommendation",
    "Scenario",
    "CashDelta",
    "OneTimeFlow",
    "RecurringFlow",
    "RunwayPolicy",
    "walk",
    "assess",
    "risk_level",
    "success_probability",
    "ScenarioEngine",
    "baseline_from_forecast",
    "build_scenario",
    "simulate",
]

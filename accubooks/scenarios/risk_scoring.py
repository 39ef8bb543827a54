"""
Scenario risk scoring.

    risk_score = 0.4 * runway_impact
               + 0.3 * assumption_risk
               + 0.2 * market_volatility
               + 0.1 * execution_complexity

Sub-scores, each clipped to [0, 100]:

runway_impact
    max(relative runway reduction %, shortfall below the safe buffer %)
    relative reduction = (baseline - projected) / baseline * 100
    shortfall          = (safe - projected) / safe * 100
    safe is RunwayPolicy.safe_days, 180 unless SAFE_RUNWAY_DAYS says otherwise

assumption_risk
    min(70, sum of sensitivity points: high 20, medium 10, low 5)
    + (100 - baseline confidence) * 0.3

market_volatility
    coefficient of variation of 30-day revenue totals * 200,
    or 30 when revenue history is too thin to say;
    +15 for scenarios that depend on customer behaviour

execution_complexity
    base per scenario type (see handlers), +5 per cash-flow component
    beyond the first

Levels: <= 25 LOW, <= 50 MEDIUM, <= 75 HIGH, above that CRITICAL.

Success probability is read off a piecewise-linear calibration table
(SUCCESS_CALIBRATION) so that it always falls as risk rises.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from accubooks.analytics import clip
from accubooks.forecast.types import Sensitivity
from .timeline import RunwayPolicy
from .types import CriticalAssumption, RiskBreakdown, RiskLevel

RISK_WEIGHTS: Dict[str, float] = {
    "runway_impact": 0.4,
    "assumption_risk": 0.3,
    "market_volatility": 0.2,
    "execution_complexity": 0.1,
}

SENSITIVITY_POINTS = {Sensitivity.HIGH: 20.0, Sensitivity.MEDIUM: 10.0, Sensitivity.LOW: 5.0}
ASSUMPTION_POINTS_CAP = 70.0
CONFIDENCE_GAP_WEIGHT = 0.3

VOLATILITY_CV_MULTIPLIER = 200.0
DEFAULT_VOLATILITY = 30.0
BEHAVIOURAL_VOLATILITY = 15.0

COMPLEXITY_PER_COMPONENT = 5.0

# (risk score, success probability %)
SUCCESS_CALIBRATION: List[Tuple[float, float]] = [
    (0.0, 95.0),
    (25.0, 80.0),
    (50.0, 60.0),
    (75.0, 35.0),
    (100.0, 10.0),
]


def runway_impact(baseline_days: float, projected_days: float, safe_days: Optional[float] = None) -> float:
    safe_days = safe_days or RunwayPolicy.from_settings().safe_days
    reduction = 0.0
    if baseline_days > 0:
        reduction = (baseline_days - projected_days) / baseline_days * 100
    shortfall = (safe_days - projected_days) / safe_days * 100
    return clip(max(reduction, shortfall))


def assumption_risk(assumptions: Sequence[CriticalAssumption], baseline_confidence: float) -> float:
    points = min(ASSUMPTION_POINTS_CAP, sum(SENSITIVITY_POINTS[a.sensitivity] for a in assumptions))
    return clip(points + (100 - baseline_confidence) * CONFIDENCE_GAP_WEIGHT)


def market_volatility(revenue_cv: Optional[float], behavioural: bool = False) -> float:
    score = DEFAULT_VOLATILITY if revenue_cv is None else revenue_cv * VOLATILITY_CV_MULTIPLIER
    if behavioural:
        score += BEHAVIOURAL_VOLATILITY
    return clip(score)


def execution_complexity(base: float, component_count: int) -> float:
    return clip(base + COMPLEXITY_PER_COMPONENT * max(0, component_count - 1))


def risk_level(score: float) -> RiskLevel:
    if score <= 25:
        return RiskLevel.LOW
    if score <= 50:
        return RiskLevel.MEDIUM
    if score <= 75:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def success_probability(score: float) -> float:
    score = clip(score)
    for (x0, y0), (x1, y1) in zip(SUCCESS_CALIBRATION, SUCCESS_CALIBRATION[1:]):
        if score <= x1:
            return round(y0 + (y1 - y0) * (score - x0) / (x1 - x0), 2)
    return SUCCESS_CALIBRATION[-1][1]


@dataclass(frozen=True)
class RiskAssessment:
    breakdown: RiskBreakdown
    score: float
    level: RiskLevel
    success_probability: float

    def contributions(self) -> Dict[str, float]:
        """Weighted points each sub-score adds to the total."""
        return {
            name: round(getattr(self.breakdown, name) * weight, 2)
            for name, weight in RISK_WEIGHTS.items()
        }


def assess(
    baseline_days: float,
    projected_days: float,
    assumptions: Sequence[CriticalAssumption],
    baseline_confidence: float,
    revenue_cv: Optional[float],
    behavioural: bool,
    complexity_base: float,
    component_count: int,
    safe_days: Optional[float] = None,
) -> RiskAssessment:
    breakdown = RiskBreakdown(
        runway_impact=round(runway_impact(baseline_days, projected_days, safe_days), 2),
        assumption_risk=round(assumption_risk(assumptions, baseline_confidence), 2),
        market_volatility=round(market_volatility(revenue_cv, behavioural), 2),
        execution_complexity=round(execution_complexity(complexity_base, component_count), 2),
        weights=dict(RISK_WEIGHTS),
    )
    score = round(clip(sum(getattr(breakdown, name) * w for name, w in RISK_WEIGHTS.items())), 2)
    return RiskAssessment(
        breakdown=breakdown,
        score=score,
        level=risk_level(score),
        success_probability=success_probability(score),
    )

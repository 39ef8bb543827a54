"""
Confidence scoring for forecasts.

The score is the sum of four components, clipped to 0-100:

- Data availability (40 pts): full credit at >= 90 observed days, linear below
- Consistency (25 pts): 25 * (1 - coefficient of variation of the series)
- Sample size (20 pts): full credit at the target number of records
- Trend stability (15 pts): 15 * (1 - |relative monthly slope| / 0.5)

Levels: >= 75 high, >= 50 medium, otherwise low. An undefined forecast
(division by zero, insufficient data) is capped at 20 so it always reads low.
"""
from typing import List, Optional, Sequence

from accubooks.analytics import clip, coefficient_of_variation, relative_slope
from accubooks.config import settings
from .types import ConfidenceBreakdown, ConfidenceLevel

AVAILABILITY_POINTS = 40.0
CONSISTENCY_POINTS = 25.0
SAMPLE_POINTS = 20.0
STABILITY_POINTS = 15.0

UNSTABLE_RELATIVE_SLOPE = 0.5
UNDEFINED_CAP = 20.0


def confidence_level(score: float) -> ConfidenceLevel:
    if score >= 75:
        return ConfidenceLevel.HIGH
    if score >= 50:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def score_confidence(
    observed_days: int,
    series: Sequence = (),
    sample_size: int = 0,
    sample_target: int = 30,
    full_availability_days: Optional[int] = None,
    defined: bool = True,
) -> ConfidenceBreakdown:
    """Score how well the history supports a forecast."""
    full_days = full_availability_days or settings.FORECAST_FULL_AVAILABILITY_DAYS
    notes: List[str] = []

    availability = AVAILABILITY_POINTS * min(1.0, observed_days / full_days) if full_days else 0.0
    if observed_days < full_days:
        notes.append(f"Only {observed_days} of {full_days} days of history are available.")

    cv = coefficient_of_variation(series)
    if cv is None:
        consistency = CONSISTENCY_POINTS / 2
        notes.append("Too few periods to measure consistency; half credit given.")
    else:
        consistency = CONSISTENCY_POINTS * max(0.0, 1.0 - cv)
        if cv > 0.2:
            notes.append(f"Values vary by {cv:.0%} around their mean.")

    sample = SAMPLE_POINTS * min(1.0, sample_size / sample_target) if sample_target else 0.0
    if sample_size < sample_target:
        notes.append(f"{sample_size} records against a target of {sample_target}.")

    slope = relative_slope(series)
    if slope is None:
        stability = STABILITY_POINTS / 2
    else:
        stability = STABILITY_POINTS * max(0.0, 1.0 - abs(slope) / UNSTABLE_RELATIVE_SLOPE)
        if abs(slope) > 0.1:
            notes.append(f"Trend moves {slope:+.0%} of its level per month.")

    total = clip(availability + consistency + sample + stability)
    if not defined:
        total = min(total, UNDEFINED_CAP)
        notes.append("Result is undefined; confidence capped.")

    return ConfidenceBreakdown(
        data_availability=round(availability, 2),
        consistency=round(consistency, 2),
        sample_size=round(sample, 2),
        trend_stability=round(stability, 2),
        total=round(total, 2),
        notes=tuple(notes),
    )

"""
Plain statistics shared by forecasts, insights and scenarios.

Everything here is a pure function over already-fetched values. Money stays
Decimal; ratios and slopes are floats.
"""
import statistics
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Tuple

from accubooks.data import HistoryWindow

BUCKET_DAYS = 30

CENTS = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def clip(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def bucket_bounds(window: HistoryWindow, months: Optional[int] = None) -> List[Tuple[date, date]]:
    """
    Consecutive 30-day periods ending at ``window.end``, oldest first.

    Days at the start of the window that do not fill a whole period are left out.
    """
    count = window.days // BUCKET_DAYS
    if months is not None:
        count = min(count, months)
    bounds = []
    for i in range(count, 0, -1):
        end = window.end - timedelta(days=BUCKET_DAYS * (i - 1))
        bounds.append((end - timedelta(days=BUCKET_DAYS - 1), end))
    return bounds


def monthly_totals(items: Iterable[Tuple[date, Decimal]], window: HistoryWindow,
                   months: Optional[int] = None) -> List[Decimal]:
    bounds = bucket_bounds(window, months)
    totals = [Decimal("0")] * len(bounds)
    for day, amount in items:
        for i, (start, end) in enumerate(bounds):
            if start <= day <= end:
                totals[i] += amount
                break
    return totals


def mean(values: Sequence) -> Optional[float]:
    if not values:
        return None
    return float(statistics.fmean(float(v) for v in values))


def coefficient_of_variation(values: Sequence) -> Optional[float]:
    """Population stdev / |mean|. None with fewer than two points or a zero mean."""
    if len(values) < 2:
        return None
    floats = [float(v) for v in values]
    avg = statistics.fmean(floats)
    if avg == 0:
        return None
    return statistics.pstdev(floats) / abs(avg)


def linear_slope(values: Sequence, xs: Optional[Sequence[float]] = None) -> Optional[float]:
    """Least-squares slope against ``xs`` (default x = 0..n-1)."""
    if len(values) < 2:
        return None
    ys = [float(v) for v in values]
    xs = [float(x) for x in xs] if xs is not None else list(range(len(ys)))
    x_bar = statistics.fmean(xs)
    y_bar = statistics.fmean(ys)
    denominator = sum((x - x_bar) ** 2 for x in xs)
    if denominator == 0:
        return None
    return sum((x - x_bar) * (y - y_bar) for x, y in zip(xs, ys)) / denominator


def relative_slope(values: Sequence) -> Optional[float]:
    """Slope per period as a fraction of the mean level."""
    slope = linear_slope(values)
    avg = mean(values)
    if slope is None or not avg:
        return None
    return slope / abs(avg)


def zscore(value, population: Sequence) -> Optional[float]:
    if len(population) < 2:
        return None
    floats = [float(v) for v in population]
    stdev = statistics.pstdev(floats)
    if stdev == 0:
        return None
    return (float(value) - statistics.fmean(floats)) / stdev


def iqr_fence(population: Sequence, k: float = 1.5) -> Optional[Tuple[float, float, float]]:
    """(q1, q3, upper fence) using inclusive quartiles."""
    if len(population) < 4:
        return None
    q1, _, q3 = statistics.quantiles([float(v) for v in population], n=4, method="inclusive")
    return q1, q3, q3 + k * (q3 - q1)

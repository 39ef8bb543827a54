"""
Forecasting Engine - deterministic formulas with visible math.

Five forecasts, each carrying its literal formula, the same formula with the
numbers substituted, the inputs it used, and the assumptions behind it:

- cash_runway:        current_cash / monthly_burn_rate            (months)
- burn_rate:          sum(expenses, last 90 days) / 3             (per month)
- revenue_growth:     (current - previous) / previous * 100       (percent)
- expense_trajectory: current_expenses * (1 + growth_rate) ^ m    (per month)
- payment_inflow:     (on_time / total) * average_payment_value   (currency)

"Month" means a 30-day period ending at the window end. Division by zero
and missing data never raise: the forecast comes back undefined, with low
confidence and the reason stated as an assumption.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from accubooks.analytics import mean, monthly_totals, money, relative_slope
from accubooks.config import settings
from accubooks.data import FinancialHistory, HistoryWindow
from accubooks.errors import InsufficientDataError, NotFoundError, PlanLimitExceeded
from accubooks.tenancy import TenantContext, ensure_tenant
from .confidence import confidence_level, score_confidence
from .types import (
    FORMULAS,
    UNITS,
    Assumption,
    ConfidenceBreakdown,
    FinancialForecast,
    ForecastType,
    ProjectionPoint,
    Sensitivity,
)

logger = logging.getLogger(__name__)

BURN_LOOKBACK_DAYS = 90
TRAJECTORY_MONTHS = 6


# =============================================================================
# Static assumptions per forecast type
# =============================================================================

BASE_ASSUMPTIONS: Dict[ForecastType, List[Assumption]] = {
    ForecastType.CASH_RUNWAY: [
        Assumption(key="revenue_constant", description="Revenue remains at current levels",
                   sensitivity=Sensitivity.MEDIUM, current_value=True),
        Assumption(key="no_large_expenses", description="No unexpected large expenses",
                   sensitivity=Sensitivity.MEDIUM, current_value=True),
    ],
    ForecastType.BURN_RATE: [
        Assumption(key="spending_pattern_stable", description="Spending continues at the last 90 days' pace",
                   sensitivity=Sensitivity.MEDIUM, current_value=True),
    ],
    ForecastType.REVENUE_GROWTH: [
        Assumption(key="growth_persists", description="Month-over-month growth continues at the same rate",
                   sensitivity=Sensitivity.HIGH, current_value=True),
        Assumption(key="no_seasonality", description="No seasonal effects between the two months compared",
                   sensitivity=Sensitivity.MEDIUM, current_value=True),
    ],
    ForecastType.EXPENSE_TRAJECTORY: [
        Assumption(key="no_major_changes", description="No major operational changes anticipated",
                   sensitivity=Sensitivity.HIGH, current_value=True),
        Assumption(key="linear_trend", description="The fitted linear trend continues",
                   sensitivity=Sensitivity.MEDIUM, current_value=True),
    ],
    ForecastType.PAYMENT_INFLOW: [
        Assumption(key="payment_behavior_consistent", description="Customer payment behaviour remains consistent",
                   sensitivity=Sensitivity.HIGH, current_value=True),
        Assumption(key="invoice_terms_unchanged", description="Invoice payment terms remain the same",
                   sensitivity=Sensitivity.LOW, current_value=True),
    ],
}


@dataclass
class _Computation:
    value: Decimal
    calculation: str
    inputs: Dict[str, Any]
    assumptions: List[Assumption]
    projections: List[ProjectionPoint] = field(default_factory=list)
    baseline: Optional[Decimal] = None
    series: Sequence = ()
    sample_size: int = 0
    sample_target: int = 30
    data_sources: List[str] = field(default_factory=list)


# =============================================================================
# History helpers
# =============================================================================

def _between(day: date, end: date, days: int) -> bool:
    return end - timedelta(days=days - 1) <= day <= end


def _expense_total(history: FinancialHistory, end: date, days: int = BURN_LOOKBACK_DAYS):
    records = [e for e in history.expenses if _between(e.date, end, days)]
    return sum((e.amount for e in records), Decimal("0")), len(records)


def _monthly_burn(history: FinancialHistory, end: date) -> Optional[Decimal]:
    total, count = _expense_total(history, end)
    if count == 0:
        return None
    return total / 3


def _monthly_inflow(history: FinancialHistory, end: date) -> Optional[Decimal]:
    records = [r for r in history.revenue if _between(r.date, end, BURN_LOOKBACK_DAYS)]
    if not records:
        return None
    return money(sum((r.amount for r in records), Decimal("0")) / 3)


def _cash_on(history: FinancialHistory, day: date) -> Optional[Decimal]:
    points = [p for p in history.cash_balances if p.date <= day]
    if not points:
        return None
    return max(points, key=lambda p: p.date).balance


# =============================================================================
# Calculators
# =============================================================================

def _runway(current_cash: Decimal, monthly_burn_rate: Decimal, horizon: int,
            monthly_inflow: Optional[Decimal] = None) -> _Computation:
    inputs: Dict[str, Any] = {
        "current_cash": money(current_cash),
        "monthly_burn_rate": money(monthly_burn_rate),
    }
    if monthly_inflow is not None:
        inputs["monthly_inflow"] = money(monthly_inflow)

    if monthly_burn_rate <= 0:
        raise InsufficientDataError(
            "Monthly burn rate is zero, so runway is unbounded and cannot be stated as a number.",
            details={"inputs": inputs},
        )

    months = Decimal("0") if current_cash <= 0 else current_cash / monthly_burn_rate
    value = money(months)
    inputs["runway_days"] = money(months * 30)

    return _Computation(
        value=value,
        calculation=f"cash_runway_months = {money(current_cash)} / {money(monthly_burn_rate)} = {value}",
        inputs=inputs,
        assumptions=[
            Assumption(key="current_cash", description="Cash balance at the end of the window",
                       sensitivity=Sensitivity.HIGH, current_value=str(money(current_cash))),
            Assumption(key="monthly_burn_rate", description="Average monthly expenses over the last 90 days",
                       sensitivity=Sensitivity.HIGH, current_value=str(money(monthly_burn_rate))),
        ],
        projections=[
            ProjectionPoint(month=m, value=money(current_cash - monthly_burn_rate * m))
            for m in range(1, horizon + 1)
        ],
    )


def _cash_runway(history: FinancialHistory, horizon: int) -> _Computation:
    end = history.window.end
    cash = history.current_cash
    burn = _monthly_burn(history, end)
    if cash is None:
        raise InsufficientDataError("No cash balance was recorded in the window.")
    if burn is None:
        raise InsufficientDataError(
            "No expenses were recorded in the last 90 days, so the burn rate is unknown.",
            details={"inputs": {"current_cash": money(cash)}},
        )

    computation = _runway(cash, burn, horizon, _monthly_inflow(history, end))

    earlier = end - timedelta(days=BURN_LOOKBACK_DAYS)
    earlier_cash, earlier_burn = _cash_on(history, earlier), _monthly_burn(history, earlier)
    if earlier_cash is not None and earlier_burn:
        computation.baseline = money(max(earlier_cash, Decimal("0")) / earlier_burn)

    _, count = _expense_total(history, end)
    computation.series = monthly_totals(((e.date, e.amount) for e in history.expenses), history.window, 3)
    computation.sample_size = count
    computation.data_sources = ["cash_balances", "expenses"]
    return computation


def _burn_rate(history: FinancialHistory, horizon: int) -> _Computation:
    end = history.window.end
    total, count = _expense_total(history, end)
    if count == 0:
        raise InsufficientDataError("No expenses were recorded in the last 90 days.")

    value = money(total / 3)
    earlier_total, earlier_count = _expense_total(history, end - timedelta(days=BURN_LOOKBACK_DAYS))
    return _Computation(
        value=value,
        calculation=f"monthly_burn_rate = {money(total)} / 3 = {value}",
        inputs={"expenses_90_days": money(total), "expense_count": count},
        assumptions=[
            Assumption(key="expenses_90_days", description="Total expenses over the last 90 days",
                       sensitivity=Sensitivity.HIGH, current_value=str(money(total))),
        ],
        projections=[ProjectionPoint(month=m, value=value) for m in range(1, horizon + 1)],
        baseline=money(earlier_total / 3) if earlier_count else None,
        series=monthly_totals(((e.date, e.amount) for e in history.expenses), history.window, 3),
        sample_size=count,
        data_sources=["expenses"],
    )


def _revenue_growth(history: FinancialHistory, horizon: int) -> _Computation:
    buckets = monthly_totals(((r.date, r.amount) for r in history.revenue), history.window)
    if len(buckets) < 2:
        raise InsufficientDataError("Revenue growth needs two full 30-day periods in the window.")

    previous, current = buckets[-2], buckets[-1]
    inputs = {"current_month_revenue": money(current), "previous_month_revenue": money(previous)}
    if previous == 0:
        raise InsufficientDataError(
            "Previous month revenue is zero, so growth cannot be expressed as a percentage.",
            details={"inputs": inputs, "series": buckets},
        )

    growth = (current - previous) / previous * 100
    value = money(growth)
    baseline = None
    if len(buckets) >= 3 and buckets[-3] != 0:
        baseline = money((previous - buckets[-3]) / buckets[-3] * 100)

    return _Computation(
        value=value,
        calculation=(
            f"revenue_growth_pct = ({money(current)} - {money(previous)}) / {money(previous)} * 100 = {value}"
        ),
        inputs=inputs,
        assumptions=[
            Assumption(key="current_month_revenue", description="Revenue in the latest 30-day period",
                       sensitivity=Sensitivity.HIGH, current_value=str(money(current))),
        ],
        projections=[
            ProjectionPoint(month=m, value=money(current * (1 + growth / 100) ** m))
            for m in range(1, horizon + 1)
        ],
        baseline=baseline,
        series=buckets,
        sample_size=sum(1 for r in history.revenue),
        data_sources=["revenue"],
    )


def _expense_trajectory(history: FinancialHistory, horizon: int) -> _Computation:
    buckets = monthly_totals(((e.date, e.amount) for e in history.expenses), history.window, TRAJECTORY_MONTHS)
    if len(buckets) < 2:
        raise InsufficientDataError("Expense trajectory needs two full 30-day periods in the window.")

    slope = relative_slope(buckets)
    if slope is None:
        raise InsufficientDataError(
            "Expenses were zero across the window, so no growth rate can be fitted.",
            details={"series": buckets},
        )

    growth_rate = Decimal(str(round(slope, 6)))
    current = buckets[-1]
    value = money(current * (1 + growth_rate) ** horizon)
    return _Computation(
        value=value,
        calculation=(
            f"expenses({horizon}) = {money(current)} * (1 + {growth_rate}) ^ {horizon} = {value}"
        ),
        inputs={
            "current_expenses": money(current),
            "growth_rate": growth_rate,
            "months": horizon,
            "monthly_expenses": [money(b) for b in buckets],
        },
        assumptions=[
            Assumption(key="growth_rate",
                       description=f"Expenses grow {float(growth_rate):.2%} per month (linear fit)",
                       sensitivity=Sensitivity.HIGH, current_value=str(growth_rate)),
        ],
        projections=[
            ProjectionPoint(month=m, value=money(current * (1 + growth_rate) ** m))
            for m in range(1, horizon + 1)
        ],
        baseline=money(Decimal(str(mean(buckets)))),
        series=buckets,
        sample_size=len(history.expenses),
        data_sources=["expenses"],
    )


def _payment_inflow(history: FinancialHistory, horizon: int) -> _Computation:
    due = [p for p in history.payments if p.due_date <= history.window.end]
    if not due:
        raise InsufficientDataError("No invoices fell due in the window.")

    total = len(due)
    on_time = sum(1 for p in due if p.on_time)
    average = sum((p.amount for p in due), Decimal("0")) / total
    value = money(Decimal(on_time) / Decimal(total) * average)
    return _Computation(
        value=value,
        calculation=f"payment_inflow = ({on_time} / {total}) * {money(average)} = {value}",
        inputs={
            "on_time_payments": on_time,
            "total_payments": total,
            "average_payment_value": money(average),
        },
        assumptions=[
            Assumption(key="on_time_ratio", description="Share of invoices paid by their due date",
                       sensitivity=Sensitivity.HIGH, current_value=round(on_time / total, 4)),
        ],
        series=monthly_totals(((p.due_date, p.amount) for p in due), history.window),
        sample_size=total,
        sample_target=20,
        data_sources=["payments"],
    )


CALCULATORS: Dict[ForecastType, Callable[[FinancialHistory, int], _Computation]] = {
    ForecastType.CASH_RUNWAY: _cash_runway,
    ForecastType.BURN_RATE: _burn_rate,
    ForecastType.REVENUE_GROWTH: _revenue_growth,
    ForecastType.EXPENSE_TRAJECTORY: _expense_trajectory,
    ForecastType.PAYMENT_INFLOW: _payment_inflow,
}


# =============================================================================
# Assembly
# =============================================================================

def _assemble(
    tenant_id: str,
    forecast_type: ForecastType,
    computation: _Computation,
    confidence: ConfidenceBreakdown,
    generated_at: datetime,
    horizon: int,
    source_window: Optional[HistoryWindow],
) -> FinancialForecast:
    return FinancialForecast(
        tenant_id=tenant_id,
        forecast_type=forecast_type,
        formula=FORMULAS[forecast_type],
        calculation=computation.calculation,
        inputs_snapshot=computation.inputs,
        projected_value=computation.value,
        unit=UNITS[forecast_type],
        is_defined=True,
        confidence_score=confidence.total,
        confidence_level=confidence_level(confidence.total),
        confidence_breakdown=confidence,
        assumptions=tuple(computation.assumptions + BASE_ASSUMPTIONS[forecast_type]),
        data_sources=tuple(computation.data_sources),
        historical_baseline=computation.baseline,
        projections=tuple(computation.projections),
        horizon_months=horizon,
        source_window=source_window,
        generated_at=generated_at,
    )


def _undefined(
    tenant_id: str,
    forecast_type: ForecastType,
    error: InsufficientDataError,
    confidence: ConfidenceBreakdown,
    generated_at: datetime,
    horizon: int,
    source_window: Optional[HistoryWindow],
    data_sources: Sequence[str] = (),
) -> FinancialForecast:
    reason = Assumption(
        key="undefined_reason",
        description=error.explanation,
        sensitivity=Sensitivity.HIGH,
        current_value=None,
    )
    return FinancialForecast(
        tenant_id=tenant_id,
        forecast_type=forecast_type,
        formula=FORMULAS[forecast_type],
        calculation=f"undefined: {error.explanation}",
        inputs_snapshot=error.details.get("inputs", {}),
        projected_value=None,
        unit=UNITS[forecast_type],
        is_defined=False,
        confidence_score=confidence.total,
        confidence_level=confidence_level(confidence.total),
        confidence_breakdown=confidence,
        assumptions=(reason, *BASE_ASSUMPTIONS[forecast_type]),
        data_sources=tuple(data_sources),
        horizon_months=horizon,
        source_window=source_window,
        generated_at=generated_at,
    )


def compute_forecast(
    tenant_id: str,
    forecast_type: ForecastType,
    history: FinancialHistory,
    generated_at: datetime,
    horizon_months: Optional[int] = None,
    full_availability_days: Optional[int] = None,
) -> FinancialForecast:
    """Pure: one forecast from one history snapshot. Never raises for data problems."""
    horizon = horizon_months or settings.FORECAST_HORIZON_MONTHS
    forecast_type = ForecastType(forecast_type)
    try:
        computation = CALCULATORS[forecast_type](history, horizon)
    except InsufficientDataError as e:
        logger.info(f"{forecast_type.value} forecast undefined for tenant {tenant_id}: {e.explanation}")
        confidence = score_confidence(
            history.observed_days,
            series=e.details.get("series", ()),
            full_availability_days=full_availability_days,
            defined=False,
        )
        return _undefined(tenant_id, forecast_type, e, confidence, generated_at, horizon,
                          history.window, history.sources())

    confidence = score_confidence(
        history.observed_days,
        series=computation.series,
        sample_size=computation.sample_size,
        sample_target=computation.sample_target,
        full_availability_days=full_availability_days,
    )
    return _assemble(tenant_id, forecast_type, computation, confidence, generated_at, horizon, history.window)


def build_cash_runway_forecast(
    tenant_id: str,
    current_cash,
    monthly_burn_rate,
    generated_at: datetime,
    monthly_inflow=None,
    horizon_months: Optional[int] = None,
    observed_days: int = 0,
    sample_size: int = 0,
) -> FinancialForecast:
    """
    Cash-runway forecast from explicitly stated inputs.

    Used for baselines the caller states directly rather than derives from
    history. Confidence reflects how much history backs the stated numbers.
    """
    horizon = horizon_months or settings.FORECAST_HORIZON_MONTHS
    cash = Decimal(str(current_cash))
    burn = Decimal(str(monthly_burn_rate))
    inflow = Decimal(str(monthly_inflow)) if monthly_inflow is not None else None
    try:
        computation = _runway(cash, burn, horizon, inflow)
    except InsufficientDataError as e:
        confidence = score_confidence(observed_days, sample_size=sample_size, defined=False)
        return _undefined(tenant_id, ForecastType.CASH_RUNWAY, e, confidence, generated_at, horizon, None)

    confidence = score_confidence(observed_days, sample_size=sample_size)
    return _assemble(tenant_id, ForecastType.CASH_RUNWAY, computation, confidence, generated_at, horizon, None)


# =============================================================================
# Engine
# =============================================================================

class ForecastingEngine:
    """
    Plan-checked, persisted and audited forecast generation.

    Each call reads one immutable history snapshot, so forecasts for
    different tenants can run concurrently without coordination.
    """

    def __init__(self, repository, data_provider, audit, plan_guard, clock,
                 window_days: Optional[int] = None, horizon_months: Optional[int] = None):
        self.repository = repository
        self.data_provider = data_provider
        self.audit = audit
        self.plan_guard = plan_guard
        self.clock = clock
        self.window_days = window_days or settings.FORECAST_WINDOW_DAYS
        self.horizon_months = horizon_months or settings.FORECAST_HORIZON_MONTHS

    def default_window(self) -> HistoryWindow:
        return HistoryWindow.trailing(self.clock.now().date(), self.window_days)

    async def generate_forecast(
        self,
        ctx: TenantContext,
        forecast_type: ForecastType,
        window: Optional[HistoryWindow] = None,
    ) -> FinancialForecast:
        try:
            await self.plan_guard.check_forecast_generation(ctx)
        except PlanLimitExceeded as e:
            await self.audit.log_plan_denial(ctx, "forecasting", e.explanation)
            raise

        window = window or self.default_window()
        history = ensure_tenant(ctx, await self.data_provider.get_history(ctx.tenant_id, window))

        forecast = compute_forecast(
            ctx.tenant_id, forecast_type, history, self.clock.now(), horizon_months=self.horizon_months,
        )
        await self.repository.save_forecast(forecast)
        await self.audit.log_forecast_generated(forecast)
        logger.info(
            f"Generated {forecast.forecast_type.value} forecast {forecast.id} for tenant {ctx.tenant_id}: "
            f"{forecast.projected_value} {forecast.unit} (confidence {forecast.confidence_score})"
        )
        return forecast

    async def get_forecast(self, ctx: TenantContext, forecast_id: str) -> FinancialForecast:
        forecast = await self.repository.get_forecast(ctx.tenant_id, forecast_id)
        if forecast is None:
            raise NotFoundError(f"Forecast {forecast_id} not found.")
        return ensure_tenant(ctx, forecast)

    async def list_forecasts(self, ctx: TenantContext,
                             forecast_type: Optional[ForecastType] = None) -> List[FinancialForecast]:
        forecasts = await self.repository.list_forecasts(ctx.tenant_id, forecast_type)
        return [ensure_tenant(ctx, f) for f in forecasts]

"""
Scenario Engine - perturbs a baseline cash-runway forecast with a hypothetical change.

Flow for one scenario:

1. The baseline forecast is checked against the caller's tenant and read
   into a Baseline (current cash, net monthly burn, optional inflow).
2. The type's handler turns the parameters into a CashDelta.
3. Baseline and scenario timelines are walked month by month
   (see timeline.py) to get balances and runway in days.
4. Risk is scored from four sub-scores (see risk_scoring.py).
5. Each handler-proposed alternative is simulated the same way; those that
   gain runway or remove risk become advisory recommendations.

Scenarios are immutable. Nothing here changes real data or applies a
recommendation.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from accubooks.analytics import clip, coefficient_of_variation, money, monthly_totals
from accubooks.config import settings
from accubooks.data import HistoryWindow
from accubooks.errors import NotFoundError, PlanLimitExceeded, ValidationError
from accubooks.forecast import build_cash_runway_forecast
from accubooks.forecast.confidence import confidence_level
from accubooks.forecast.types import (
    Assumption,
    FinancialForecast,
    ForecastType,
    ProjectionPoint,
    Sensitivity,
)
from accubooks.tenancy import TenantContext, ensure_tenant, ensure_tenant_audited
from .handlers import Alternative, BaseScenarioHandler, Baseline, get_handler
from .handlers.base import assumption
from .risk_scoring import RiskAssessment, assess
from .timeline import DAYS_PER_MONTH, CashDelta, OneTimeFlow, RunwayPolicy, Timeline, walk
from .types import (
    CashFlowImpact,
    CriticalAssumption,
    MonthlyCashPoint,
    Recommendation,
    RecommendationType,
    RiskDriver,
    Scenario,
    ScenarioType,
)

logger = logging.getLogger(__name__)

PROJECTED_RUNWAY_FORMULA = (
    "runway_days = 30 * (m - 1) + 30 * balance_at_start_of_m / net_outflow(m), "
    "m = first month the balance reaches zero"
)

HIGH_SENSITIVITY_CONFIDENCE_PENALTY = 5.0

DRIVER_LABELS = {
    "runway_impact": "Runway reduction",
    "assumption_risk": "Assumption uncertainty",
    "market_volatility": "Revenue volatility",
    "execution_complexity": "Execution complexity",
}


# =============================================================================
# Baseline
# =============================================================================

def baseline_from_forecast(forecast: FinancialForecast, policy: Optional[RunwayPolicy] = None) -> Baseline:
    """Read a Baseline off a defined cash-runway forecast."""
    if forecast.forecast_type != ForecastType.CASH_RUNWAY:
        raise ValidationError(
            f"A scenario baseline must be a cash_runway forecast, got {forecast.forecast_type.value}."
        )
    if not forecast.is_defined:
        raise ValidationError(
            "The baseline forecast has no defined runway, so there is nothing to compare a scenario against.",
            details={"forecast_id": forecast.id},
        )
    cash = forecast.input_decimal("current_cash")
    burn = forecast.input_decimal("monthly_burn_rate")
    if cash is None or burn is None or burn <= 0:
        raise ValidationError("The baseline forecast does not state current cash and a positive monthly burn.")
    return Baseline(
        forecast_id=forecast.id,
        current_cash=cash,
        monthly_burn=burn,
        monthly_inflow=forecast.input_decimal("monthly_inflow"),
        runway_days=walk(cash, burn, horizon_months=1, policy=policy).runway_days,
        confidence=forecast.confidence_score,
    )


# =============================================================================
# Simulation
# =============================================================================

@dataclass
class Simulation:
    params: Dict[str, Any]
    delta: CashDelta
    baseline_timeline: Timeline
    timeline: Timeline
    assumptions: List[CriticalAssumption]
    risk: RiskAssessment
    policy: RunwayPolicy

    @property
    def runway_change_days(self) -> float:
        return round(self.timeline.runway_days - self.baseline_timeline.runway_days, 2)


def common_assumptions(baseline: Baseline) -> List[CriticalAssumption]:
    return [
        assumption("baseline_burn_holds", "Baseline net monthly burn stays at its current level",
                   Sensitivity.HIGH, money(baseline.monthly_burn)),
    ]


def simulate(handler: BaseScenarioHandler, params: Dict[str, Any], baseline: Baseline,
             revenue_cv: Optional[float] = None, horizon_months: int = 12,
             extra: Optional[CashDelta] = None, policy: Optional[RunwayPolicy] = None) -> Simulation:
    """Pure simulation of already-normalized parameters."""
    policy = policy or RunwayPolicy.from_settings()
    delta = handler.build_delta(params, baseline)
    if extra is not None:
        delta = delta.merged(extra)
    baseline_timeline = walk(baseline.current_cash, baseline.monthly_burn,
                             horizon_months=horizon_months, policy=policy)
    timeline = walk(baseline.current_cash, baseline.monthly_burn, delta,
                    horizon_months=horizon_months, policy=policy)
    assumptions = common_assumptions(baseline) + handler.assumptions(params, baseline)
    risk = assess(
        baseline_days=baseline_timeline.runway_days,
        projected_days=timeline.runway_days,
        assumptions=assumptions,
        baseline_confidence=baseline.confidence,
        revenue_cv=revenue_cv,
        behavioural=handler.behavioural,
        complexity_base=handler.complexity_base,
        component_count=delta.component_count,
        safe_days=policy.safe_days,
    )
    return Simulation(
        params=params,
        delta=delta,
        baseline_timeline=baseline_timeline,
        timeline=timeline,
        assumptions=assumptions,
        risk=risk,
        policy=policy,
    )


def buffer_alternative(sim: Simulation, baseline: Baseline) -> Optional[Alternative]:
    """Extra cash that would lift runway to the safe buffer, if it is short of it."""
    safe_days = sim.policy.safe_days
    if sim.timeline.runway_days >= safe_days:
        return None
    months_short = (safe_days - sim.timeline.runway_days) / DAYS_PER_MONTH
    outflows = [baseline.monthly_burn - sim.delta.recurring_in(m) for m in range(1, 7)]
    peak = max(outflows)
    if peak <= 0:
        return None
    amount = money(peak * Decimal(str(months_short)))
    return Alternative(
        type=RecommendationType.INCREASE_BUFFER,
        title=f"Raise an additional {amount} of cash before proceeding",
        params={**sim.params, "additional_cash": amount},
        explanation=f"Covers about {months_short:.1f} months of outflow to restore a {safe_days:.0f}-day buffer.",
        extra=CashDelta(one_time=(OneTimeFlow(month=1, amount=amount),)),
    )


def recommend(handler: BaseScenarioHandler, sim: Simulation, baseline: Baseline,
              revenue_cv: Optional[float], horizon_months: int) -> List[Recommendation]:
    """Re-simulate each alternative and keep those that improve on the scenario."""
    alternatives = list(handler.alternatives(sim.params, baseline))
    buffer = buffer_alternative(sim, baseline)
    if buffer is not None:
        alternatives.append(buffer)

    recommendations = []
    for alt in alternatives:
        params = {k: v for k, v in alt.params.items() if k != "additional_cash"}
        alt_sim = simulate(handler, params, baseline, revenue_cv, horizon_months, extra=alt.extra, policy=sim.policy)
        benefit = round(alt_sim.timeline.runway_days - sim.timeline.runway_days, 2)
        reduction = round(sim.risk.score - alt_sim.risk.score, 2)
        if benefit <= 0 and reduction <= 0:
            continue
        recommendations.append(Recommendation(
            type=alt.type,
            title=alt.title,
            expected_benefit=benefit,
            risk_reduction=reduction,
            confidence_score=round(clip(0.5 * baseline.confidence + 0.5 * alt_sim.risk.success_probability), 2),
            explanation=(
                f"{alt.explanation} Re-simulated: runway {alt_sim.timeline.runway_days:.0f} days "
                f"({benefit:+.0f}), risk {alt_sim.risk.score:.0f} ({alt_sim.risk.level.value})."
            ),
            proposed_params=alt.params,
        ))
    return sorted(recommendations, key=lambda r: (r.risk_reduction, r.expected_benefit), reverse=True)


def risk_drivers(handler: BaseScenarioHandler, sim: Simulation, baseline: Baseline,
                 revenue_cv: Optional[float]) -> List[RiskDriver]:
    """Top 3 sub-scores by weighted contribution, each with a mitigation."""
    breakdown = sim.risk.breakdown
    mitigations = handler.mitigations(sim.params)
    high = sum(1 for a in sim.assumptions if a.sensitivity == Sensitivity.HIGH)
    descriptions = {
        "runway_impact": (
            f"Runway moves from {sim.baseline_timeline.runway_days:.0f} to {sim.timeline.runway_days:.0f} "
            f"days against a {sim.policy.safe_days:.0f}-day buffer"
        ),
        "assumption_risk": (
            f"{len(sim.assumptions)} assumptions, {high} highly sensitive; "
            f"baseline confidence {baseline.confidence:.0f}"
        ),
        "market_volatility": (
            f"Monthly revenue varies by {revenue_cv:.0%}" if revenue_cv is not None
            else "Revenue history is too short to measure variability"
        ),
        "execution_complexity": f"{sim.delta.component_count} cash-flow changes to carry out",
    }
    ranked = sorted(sim.risk.contributions().items(), key=lambda kv: kv[1], reverse=True)[:3]
    return [
        RiskDriver(
            factor=DRIVER_LABELS[name],
            impact=points,
            sub_score=getattr(breakdown, name),
            description=descriptions[name],
            mitigation=mitigations[name],
        )
        for name, points in ranked
    ]


def cash_flow_impact(handler: BaseScenarioHandler, sim: Simulation, baseline: Baseline) -> CashFlowImpact:
    points = []
    for month, (base, projected) in enumerate(zip(sim.baseline_timeline.balances, sim.timeline.balances), start=1):
        points.append(MonthlyCashPoint(
            month=month,
            baseline_balance=base,
            projected_balance=projected,
            delta=money(sim.delta.in_month(month)),
            cumulative_delta=money(projected - base),
        ))
    cumulative = points[-1].cumulative_delta if points else Decimal("0.00")
    return CashFlowImpact(
        monthly=tuple(points),
        cumulative=cumulative,
        description=handler.describe(sim.params, baseline),
    )


def projected_forecast(tenant_id: str, baseline_forecast: FinancialForecast, baseline: Baseline,
                       sim: Simulation, generated_at: datetime, horizon_months: int) -> FinancialForecast:
    """The scenario's own cash-runway forecast, with the walk shown as its calculation."""
    high = sum(1 for a in sim.assumptions if a.sensitivity == Sensitivity.HIGH)
    score = round(clip(baseline.confidence - HIGH_SENSITIVITY_CONFIDENCE_PENALTY * high), 2)
    return FinancialForecast(
        tenant_id=tenant_id,
        forecast_type=ForecastType.CASH_RUNWAY,
        formula=PROJECTED_RUNWAY_FORMULA,
        calculation=sim.timeline.calculation,
        inputs_snapshot={
            "current_cash": str(money(baseline.current_cash)),
            "monthly_burn_rate": str(money(baseline.monthly_burn)),
            "monthly_inflow": str(money(baseline.monthly_inflow)) if baseline.monthly_inflow is not None else None,
            "runway_days": sim.timeline.runway_days,
            "baseline_forecast_id": baseline.forecast_id,
            "one_time_flows": [{"month": f.month, "amount": str(money(f.amount))} for f in sim.delta.one_time],
            "recurring_flows": [
                {"amount": str(money(f.amount)), "start_month": f.start_month, "end_month": f.end_month}
                for f in sim.delta.recurring
            ],
        },
        projected_value=money(Decimal(str(sim.timeline.runway_days)) / DAYS_PER_MONTH),
        unit="months",
        is_defined=True,
        confidence_score=score,
        confidence_level=confidence_level(score),
        confidence_breakdown=baseline_forecast.confidence_breakdown,
        assumptions=tuple(Assumption(**a.model_dump()) for a in sim.assumptions),
        data_sources=baseline_forecast.data_sources,
        historical_baseline=baseline_forecast.projected_value,
        projections=tuple(
            ProjectionPoint(month=m, value=balance) for m, balance in enumerate(sim.timeline.balances, start=1)
        ),
        horizon_months=horizon_months,
        source_window=baseline_forecast.source_window,
        generated_at=generated_at,
    )


def build_scenario(tenant_id: str, scenario_type: ScenarioType, params: Dict[str, Any],
                   baseline_forecast: FinancialForecast, created_at: datetime,
                   revenue_cv: Optional[float] = None, horizon_months: int = 12,
                   name: Optional[str] = None, policy: Optional[RunwayPolicy] = None) -> Scenario:
    """Validate parameters, simulate and assemble a Scenario. Pure apart from id generation."""
    handler = get_handler(scenario_type)
    policy = policy or RunwayPolicy.from_settings()
    baseline = baseline_from_forecast(baseline_forecast, policy)
    normalized = handler.validate(params, baseline)
    sim = simulate(handler, normalized, baseline, revenue_cv, horizon_months, policy=policy)
    name = name or handler.default_name(normalized)

    summary = (
        f"{name}: runway {sim.baseline_timeline.runway_days:.0f} to {sim.timeline.runway_days:.0f} days "
        f"({sim.runway_change_days:+.0f}), risk {sim.risk.score:.0f} ({sim.risk.level.value}), "
        f"success probability {sim.risk.success_probability:.0f}%."
    )
    return Scenario(
        tenant_id=tenant_id,
        scenario_type=handler.scenario_type,
        name=name,
        input_params=normalized,
        baseline_forecast_id=baseline.forecast_id,
        baseline_runway_days=sim.baseline_timeline.runway_days,
        projected_runway_days=sim.timeline.runway_days,
        runway_change_days=sim.runway_change_days,
        projected_forecast=projected_forecast(
            tenant_id, baseline_forecast, baseline, sim, created_at, horizon_months,
        ),
        risk_score=sim.risk.score,
        risk_level=sim.risk.level,
        risk_breakdown=sim.risk.breakdown,
        top_risk_drivers=tuple(risk_drivers(handler, sim, baseline, revenue_cv)),
        critical_assumptions=tuple(sim.assumptions),
        cash_flow_impact=cash_flow_impact(handler, sim, baseline),
        recommendations=tuple(recommend(handler, sim, baseline, revenue_cv, horizon_months)),
        success_probability=sim.risk.success_probability,
        summary=summary,
        created_at=created_at,
    )


# =============================================================================
# Engine
# =============================================================================

class ScenarioEngine:
    """Plan-checked, persisted and audited scenario simulation."""

    def __init__(self, repository, data_provider, audit, plan_guard, clock,
                 horizon_months: Optional[int] = None, window_days: Optional[int] = None,
                 policy: Optional[RunwayPolicy] = None):
        self.repository = repository
        self.data_provider = data_provider
        self.audit = audit
        self.plan_guard = plan_guard
        self.clock = clock
        self.horizon_months = horizon_months or settings.SCENARIO_HORIZON_MONTHS
        self.window_days = window_days or settings.FORECAST_WINDOW_DAYS
        self.policy = policy or RunwayPolicy.from_settings()

    async def revenue_volatility(self, ctx: TenantContext, window: Optional[HistoryWindow]) -> Optional[float]:
        """Coefficient of variation of 30-day revenue totals, or None if there are fewer than three."""
        window = window or HistoryWindow.trailing(self.clock.now().date(), self.window_days)
        history = ensure_tenant(ctx, await self.data_provider.get_history(ctx.tenant_id, window))
        buckets = monthly_totals(((r.date, r.amount) for r in history.revenue), window)
        if len(buckets) < 3 or not any(buckets):
            return None
        return coefficient_of_variation(buckets)

    async def resolve_baseline(
        self,
        ctx: TenantContext,
        forecast_id: Optional[str] = None,
        current_cash=None,
        monthly_burn_rate=None,
        monthly_inflow=None,
    ) -> FinancialForecast:
        """
        Load a stored baseline, or build one in memory from stated figures.

        A stated baseline is only stored by simulate_scenario, once the
        scenario it backs has passed the plan check and parameter validation.
        """
        if forecast_id:
            forecast = await self.repository.get_forecast(ctx.tenant_id, forecast_id)
            if forecast is None:
                raise NotFoundError(f"Forecast {forecast_id} not found.")
            return await ensure_tenant_audited(ctx, forecast, self.audit)
        if current_cash is None or monthly_burn_rate is None:
            raise ValidationError(
                "Give either baseline_forecast_id or both current_cash and monthly_burn_rate."
            )
        return build_cash_runway_forecast(
            ctx.tenant_id, current_cash, monthly_burn_rate, self.clock.now(),
            monthly_inflow=monthly_inflow, horizon_months=self.horizon_months,
        )

    async def simulate_scenario(
        self,
        ctx: TenantContext,
        scenario_type: ScenarioType,
        params: Dict[str, Any],
        baseline_forecast: FinancialForecast,
        name: Optional[str] = None,
    ) -> Scenario:
        await ensure_tenant_audited(ctx, baseline_forecast, self.audit)

        scenario_type = get_handler(scenario_type).scenario_type
        try:
            await self.plan_guard.check_scenario_creation(ctx, custom=scenario_type == ScenarioType.CUSTOM)
        except PlanLimitExceeded as e:
            await self.audit.log_plan_denial(ctx, e.feature, e.explanation)
            raise

        revenue_cv = await self.revenue_volatility(ctx, baseline_forecast.source_window)
        scenario = build_scenario(
            ctx.tenant_id, scenario_type, params, baseline_forecast, self.clock.now(),
            revenue_cv=revenue_cv, horizon_months=self.horizon_months, name=name, policy=self.policy,
        )
        if await self.repository.get_forecast(ctx.tenant_id, baseline_forecast.id) is None:
            await self.repository.save_forecast(baseline_forecast)
            await self.audit.log_forecast_generated(baseline_forecast)
        await self.repository.save_scenario(scenario)
        await self.audit.log_scenario_created(scenario)
        logger.info(
            f"Created {scenario.scenario_type.value} scenario {scenario.id} for tenant {ctx.tenant_id}: "
            f"runway change {scenario.runway_change_days} days, risk {scenario.risk_score} "
            f"({scenario.risk_level.value})"
        )
        return scenario

    async def get_scenario(self, ctx: TenantContext, scenario_id: str) -> Scenario:
        scenario = await self.repository.get_scenario(ctx.tenant_id, scenario_id)
        if scenario is None:
            raise NotFoundError(f"Scenario {scenario_id} not found.")
        return await ensure_tenant_audited(ctx, scenario, self.audit)

    async def list_scenarios(self, ctx: TenantContext) -> List[Scenario]:
        return [ensure_tenant(ctx, s) for s in await self.repository.list_scenarios(ctx.tenant_id)]

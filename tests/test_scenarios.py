"""Tests for scenario simulation, risk scoring and the scenario engine."""

import pytest
from decimal import Decimal

from accubooks.config import settings
from accubooks.errors import NotFoundError, PlanLimitExceeded, TenantIsolationViolation, ValidationError
from accubooks.forecast import build_cash_runway_forecast
from accubooks.scenarios import (
    CashDelta,
    OneTimeFlow,
    RecommendationType,
    RecurringFlow,
    RiskLevel,
    RunwayPolicy,
    ScenarioType,
    build_scenario,
    risk_level,
    success_probability,
    walk,
)
from accubooks.scenarios.handlers import get_handler
from accubooks.tenancy import PlanTier
from accubooks.tenancy.plans import SCENARIOS_COUNTER

from conftest import OTHER_TENANT, START, TENANT


def baseline(cash=50000, burn=10000, tenant_id=TENANT):
    return build_cash_runway_forecast(tenant_id, cash, burn, START)


def scenario(scenario_type, params, base=None):
    return build_scenario(TENANT, scenario_type, params, base or baseline(), START)


# =============================================================================
# Timeline
# =============================================================================

class TestWalk:

    def test_constant_burn_matches_cash_over_burn(self):
        timeline = walk(Decimal("50000"), Decimal("10000"))
        assert timeline.runway_days == 150.0
        assert timeline.crossing_month == 5
        assert timeline.balances[:3] == [Decimal("40000.00"), Decimal("30000.00"), Decimal("20000.00")]
        assert len(timeline.balances) == 12

    def test_partial_month(self):
        delta = CashDelta(recurring=(RecurringFlow(amount=Decimal("-12000")),))
        timeline = walk(Decimal("50000"), Decimal("10000"), delta)
        assert timeline.runway_days == 68.18
        assert timeline.calculation == "runway_days = 30 * (3 - 1) + 30 * 6000.00 / 22000.00 = 68.18"

    def test_one_time_outflow_can_exhaust_cash_immediately(self):
        delta = CashDelta(one_time=(OneTimeFlow(month=1, amount=Decimal("-20000")),))
        assert walk(Decimal("10000"), Decimal("1000"), delta).runway_days == 0.0

    def test_no_burn_is_capped(self):
        timeline = walk(Decimal("1000"), Decimal("0"))
        assert timeline.runway_days == 999.0
        assert timeline.crossing_month is None

    def test_cap_follows_the_policy(self):
        timeline = walk(Decimal("1000"), Decimal("0"), policy=RunwayPolicy(cap_days=365))
        assert timeline.runway_days == 365.0
        assert timeline.calculation == "runway_days = 365 (cash lasts beyond the cap)"

    def test_cap_defaults_to_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "RUNWAY_CAP_DAYS", 365)
        assert walk(Decimal("1000"), Decimal("0")).runway_days == 365.0

    def test_recurring_flow_window(self):
        flow = RecurringFlow(amount=Decimal("-100"), start_month=2, end_month=3)
        assert [flow.applies(m) for m in range(1, 5)] == [False, True, True, False]


# =============================================================================
# Risk scoring
# =============================================================================

class TestRiskScoring:

    @pytest.mark.parametrize("score,level", [
        (0, RiskLevel.LOW),
        (25, RiskLevel.LOW),
        (26, RiskLevel.MEDIUM),
        (50, RiskLevel.MEDIUM),
        (51, RiskLevel.HIGH),
        (75, RiskLevel.HIGH),
        (76, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
    ])
    def test_level_boundaries(self, score, level):
        assert risk_level(score) == level

    def test_success_probability_falls_as_risk_rises(self):
        values = [success_probability(score) for score in range(0, 101, 5)]
        assert values == sorted(values, reverse=True)
        assert values[0] == 95.0
        assert values[-1] == 10.0
        assert success_probability(50) == 60.0


# =============================================================================
# Scenario types
# =============================================================================

class TestHiringScenario:

    def test_hire_against_stated_baseline(self):
        result = scenario(ScenarioType.HIRING, {"role": "engineer", "monthly_cost": 12000})

        assert result.baseline_runway_days == 150.0
        assert result.projected_runway_days == 68.18
        assert result.runway_change_days == -81.82
        assert result.runway_change_days == round(result.projected_runway_days - result.baseline_runway_days, 2)

        breakdown = result.risk_breakdown
        assert breakdown.runway_impact == 62.12
        assert breakdown.assumption_risk == 94.0
        assert breakdown.market_volatility == 30.0
        assert breakdown.execution_complexity == 40.0
        assert result.risk_score == 63.05
        assert result.risk_level == RiskLevel.HIGH
        assert result.success_probability == 46.95
        assert result.name == "Hire engineer"

    def test_shorter_safe_buffer_lowers_runway_impact(self):
        result = build_scenario(TENANT, ScenarioType.HIRING, {"monthly_cost": 12000}, baseline(), START,
                                policy=RunwayPolicy(safe_days=90))
        # Relative reduction 81.82 / 150 now outweighs the 90-day shortfall
        assert result.risk_breakdown.runway_impact == 54.55
        [runway] = [d for d in result.top_risk_drivers if d.factor == "Runway reduction"]
        assert "90-day buffer" in runway.description

    def test_drivers_are_top_three_contributions(self):
        result = scenario(ScenarioType.HIRING, {"monthly_cost": 12000})
        factors = [d.factor for d in result.top_risk_drivers]
        assert factors == ["Assumption uncertainty", "Runway reduction", "Revenue volatility"]
        assert all(d.mitigation for d in result.top_risk_drivers)

    def test_recommendations_improve_on_the_scenario(self):
        result = scenario(ScenarioType.HIRING, {"monthly_cost": 12000})

        types = {r.type for r in result.recommendations}
        assert {RecommendationType.DELAY, RecommendationType.REDUCE, RecommendationType.INCREASE_BUFFER} <= types
        for rec in result.recommendations:
            assert rec.expected_benefit > 0 or rec.risk_reduction > 0
        delay = next(r for r in result.recommendations if r.type == RecommendationType.DELAY)
        assert delay.proposed_params["start_month"] == 3
        assert delay.expected_benefit == 32.73

    def test_annual_salary_is_converted(self):
        result = scenario(ScenarioType.HIRING, {"annual_salary": 108000, "annual_benefits": 12000})
        assert result.input_params["monthly_cost"] == Decimal("10000.00")

    def test_projected_forecast_shows_the_walk(self):
        result = scenario(ScenarioType.HIRING, {"monthly_cost": 12000})
        forecast = result.projected_forecast
        assert forecast.projected_value == Decimal("2.27")
        assert forecast.calculation.endswith("= 68.18")
        assert len(forecast.projections) == 12
        assert forecast.assumptions


class TestOtherScenarioTypes:

    def test_large_purchase(self):
        result = scenario(ScenarioType.LARGE_PURCHASE, {"amount": 30000, "description": "servers"})
        assert result.projected_runway_days == 60.0
        assert result.runway_change_days == -90.0

    def test_payment_delay_moves_cash_but_not_runway(self):
        result = scenario(ScenarioType.PAYMENT_DELAY, {"amount": 20000, "delay_days": 45})
        months = result.cash_flow_impact.monthly

        assert result.runway_change_days == 0.0
        assert months[0].delta == Decimal("-20000.00")
        assert [m.cumulative_delta for m in months[:3]] == [
            Decimal("-20000.00"), Decimal("-20000.00"), Decimal("0.00"),
        ]

    def test_revenue_gain_extends_runway(self):
        result = scenario(ScenarioType.REVENUE_CHANGE, {"amount": 5000, "change_type": "gain"})
        assert result.projected_runway_days == 300.0
        assert result.runway_change_days == 150.0

    def test_revenue_percentage_needs_inflow(self):
        with pytest.raises(ValidationError):
            scenario(ScenarioType.REVENUE_CHANGE, {"change_pct": -20})

    def test_automation_savings(self):
        result = scenario(ScenarioType.AUTOMATION_CHANGE, {"monthly_impact": 2000, "setup_cost": 1000})
        assert result.projected_runway_days > result.baseline_runway_days

    def test_custom_components(self):
        result = scenario(ScenarioType.CUSTOM, {
            "one_time": [{"month": 2, "amount": -5000}],
            "recurring": [{"amount": 1000, "start_month": 1, "end_month": 6}],
        })
        assert result.input_params["one_time"] == [{"month": 2, "amount": Decimal("-5000.00")}]
        assert result.cash_flow_impact.monthly[1].delta == Decimal("-4000.00")


class TestScenarioValidation:

    @pytest.mark.parametrize("scenario_type,params", [
        (ScenarioType.HIRING, {}),
        (ScenarioType.HIRING, {"monthly_cost": 5000, "headcount": 0}),
        (ScenarioType.HIRING, {"monthly_cost": "lots"}),
        (ScenarioType.LARGE_PURCHASE, {"amount": 0}),
        (ScenarioType.LARGE_PURCHASE, {"amount": 100, "frequency": "weekly"}),
        (ScenarioType.PAYMENT_DELAY, {"amount": 1000}),
        (ScenarioType.PAYMENT_DELAY, {"amount": 1000, "delay_days": 400}),
        (ScenarioType.AUTOMATION_CHANGE, {"monthly_impact": 0}),
        (ScenarioType.CUSTOM, {"one_time": [{"month": 1, "amount": -1}] * 25}),
        (ScenarioType.CUSTOM, {"recurring": ["rent"]}),
    ])
    def test_rejected(self, scenario_type, params):
        with pytest.raises(ValidationError):
            scenario(scenario_type, params)

    def test_missing_parameters_are_named(self):
        with pytest.raises(ValidationError) as exc:
            scenario(ScenarioType.PAYMENT_DELAY, {"amount": 1000})
        assert exc.value.details["missing"] == ["delay_days"]

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            get_handler("merger")

    def test_undefined_baseline_is_rejected(self):
        with pytest.raises(ValidationError):
            scenario(ScenarioType.HIRING, {"monthly_cost": 1000}, base=baseline(burn=0))


# =============================================================================
# Engine
# =============================================================================

class TestScenarioEngine:

    @pytest.mark.asyncio
    async def test_simulate_from_stated_figures(self, services, ctx, audit_events):
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)
        result = await services.scenarios.simulate_scenario(
            ctx, ScenarioType.HIRING, {"monthly_cost": 12000}, base, name="Backend engineer",
        )

        assert result.name == "Backend engineer"
        assert result.baseline_forecast_id == base.id
        assert result.risk_score == 63.05
        assert await services.scenarios.get_scenario(ctx, result.id) == result
        assert [s.id for s in await services.scenarios.list_scenarios(ctx)] == [result.id]
        assert audit_events.of_type("scenario_created")[0].entity_id == result.id
        assert audit_events.of_type("forecast_generated")[0].entity_id == base.id

    @pytest.mark.asyncio
    async def test_stored_baseline_by_id(self, services, ctx):
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)
        # Stated figures are only stored once a scenario built on them is accepted
        with pytest.raises(NotFoundError):
            await services.scenarios.resolve_baseline(ctx, forecast_id=base.id)

        await services.scenarios.simulate_scenario(ctx, ScenarioType.HIRING, {"monthly_cost": 1000}, base)
        assert await services.scenarios.resolve_baseline(ctx, forecast_id=base.id) == base
        with pytest.raises(NotFoundError):
            await services.scenarios.resolve_baseline(ctx, forecast_id="fcst-missing")
        with pytest.raises(ValidationError):
            await services.scenarios.resolve_baseline(ctx, current_cash=50000)

    @pytest.mark.asyncio
    async def test_custom_needs_professional(self, services, plan_service, ctx, audit_events):
        plan_service.tiers[TENANT] = PlanTier.STARTER
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)

        with pytest.raises(PlanLimitExceeded) as exc:
            await services.scenarios.simulate_scenario(
                ctx, ScenarioType.CUSTOM, {"one_time": [{"month": 1, "amount": -100}]}, base,
            )
        assert exc.value.suggested_plan == "PROFESSIONAL"
        assert audit_events.of_type("plan_denied")[0].entity_type == "custom_scenarios"
        assert await services.repository.list_forecasts(TENANT) == []

        # Built-in types are still allowed on STARTER
        await services.scenarios.simulate_scenario(ctx, ScenarioType.LARGE_PURCHASE, {"amount": 100}, base)

    @pytest.mark.asyncio
    async def test_monthly_scenario_limit(self, services, plan_service, ctx, audit_events):
        plan_service.tiers[TENANT] = PlanTier.STARTER
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)

        with pytest.raises(PlanLimitExceeded) as exc:
            await services.scenarios.simulate_scenario(
                ctx.with_usage(**{SCENARIOS_COUNTER: 3}), ScenarioType.LARGE_PURCHASE, {"amount": 100}, base,
            )
        assert exc.value.limit == 3
        assert await services.scenarios.list_scenarios(ctx) == []
        assert await services.repository.list_forecasts(TENANT) == []
        assert not audit_events.of_type("forecast_generated")

    @pytest.mark.asyncio
    async def test_invalid_params_store_nothing(self, services, ctx):
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)
        with pytest.raises(ValidationError):
            await services.scenarios.simulate_scenario(ctx, ScenarioType.LARGE_PURCHASE, {"amount": "a lot"}, base)
        assert await services.repository.list_forecasts(TENANT) == []

    @pytest.mark.asyncio
    async def test_foreign_baseline_is_a_security_event(self, services, ctx, audit_events):
        foreign = baseline(tenant_id=OTHER_TENANT)
        with pytest.raises(TenantIsolationViolation):
            await services.scenarios.simulate_scenario(ctx, ScenarioType.HIRING, {"monthly_cost": 1000}, foreign)

        [event] = audit_events.of_type("security_violation")
        assert event.tenant_id == TENANT
        assert await services.scenarios.list_scenarios(ctx) == []

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, services, ctx, other_ctx):
        base = await services.scenarios.resolve_baseline(ctx, current_cash=50000, monthly_burn_rate=10000)
        result = await services.scenarios.simulate_scenario(ctx, ScenarioType.HIRING, {"monthly_cost": 1000}, base)

        with pytest.raises(NotFoundError):
            await services.scenarios.get_scenario(other_ctx, result.id)
        assert await services.scenarios.list_scenarios(other_ctx) == []

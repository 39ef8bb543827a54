"""Tests for the forecasting engine and forecast confidence scoring."""

import pytest
from datetime import timedelta
from decimal import Decimal

from accubooks.data import FinancialHistory, HistoryWindow, InMemoryHistoricalDataProvider
from accubooks.errors import NotFoundError, PlanLimitExceeded, TenantIsolationViolation
from accubooks.forecast import build_cash_runway_forecast, compute_forecast
from accubooks.forecast.confidence import UNDEFINED_CAP, confidence_level, score_confidence
from accubooks.forecast.types import ConfidenceLevel, ForecastType
from accubooks.tenancy import PlanTier

from conftest import START, TENANT

END = START.date()
WINDOW = HistoryWindow.trailing(END, 180)


async def history_for(provider: InMemoryHistoricalDataProvider, window: HistoryWindow = WINDOW) -> FinancialHistory:
    return await provider.get_history(TENANT, window)


def seed_runway(provider, cash=100000, monthly_burn=20000):
    provider.add_cash_balance(TENANT, END - timedelta(days=100), cash + 60000)
    provider.add_cash_balance(TENANT, END, cash)
    # Three months of expenses in the last 90 days
    for i in range(3):
        provider.add_expense(TENANT, END - timedelta(days=10 + 30 * i), monthly_burn, category="payroll")


# =============================================================================
# Cash runway
# =============================================================================

class TestCashRunway:

    @pytest.mark.asyncio
    async def test_runway_is_cash_over_burn(self, provider):
        seed_runway(provider)
        forecast = compute_forecast(TENANT, ForecastType.CASH_RUNWAY, await history_for(provider), START)

        assert forecast.is_defined
        assert forecast.projected_value == Decimal("5.00")
        assert forecast.unit == "months"
        assert forecast.formula == "cash_runway_months = current_cash / monthly_burn_rate"
        assert forecast.calculation == "cash_runway_months = 100000.00 / 20000.00 = 5.00"
        assert forecast.inputs_snapshot["current_cash"] == Decimal("100000.00")
        assert {a.key for a in forecast.assumptions} >= {"current_cash", "monthly_burn_rate", "revenue_constant"}

    def test_stated_baseline(self):
        forecast = build_cash_runway_forecast(TENANT, 100000, 20000, START)
        assert forecast.projected_value == Decimal("5.00")
        assert forecast.inputs_snapshot["runway_days"] == Decimal("150.00")
        assert [p.value for p in forecast.projections][:2] == [Decimal("80000.00"), Decimal("60000.00")]

    def test_zero_burn_is_undefined_with_low_confidence(self):
        forecast = build_cash_runway_forecast(TENANT, 100000, 0, START, observed_days=365, sample_size=100)

        assert not forecast.is_defined
        assert forecast.projected_value is None
        assert forecast.confidence_score <= UNDEFINED_CAP
        assert forecast.confidence_level == ConfidenceLevel.LOW
        assert forecast.assumptions[0].key == "undefined_reason"
        assert forecast.calculation.startswith("undefined:")

    @pytest.mark.asyncio
    async def test_missing_cash_is_undefined(self, provider):
        provider.add_expense(TENANT, END, 1000)
        forecast = compute_forecast(TENANT, ForecastType.CASH_RUNWAY, await history_for(provider), START)
        assert not forecast.is_defined
        assert "No cash balance" in forecast.assumptions[0].description

    @pytest.mark.asyncio
    async def test_negative_cash_means_zero_runway(self, provider):
        seed_runway(provider, cash=-5000)
        forecast = compute_forecast(TENANT, ForecastType.CASH_RUNWAY, await history_for(provider), START)
        assert forecast.projected_value == Decimal("0.00")


# =============================================================================
# Other forecasts
# =============================================================================

class TestOtherForecasts:

    @pytest.mark.asyncio
    async def test_burn_rate(self, provider):
        for i in range(6):
            provider.add_expense(TENANT, END - timedelta(days=15 * i), 5000)
        forecast = compute_forecast(TENANT, ForecastType.BURN_RATE, await history_for(provider), START)
        assert forecast.projected_value == Decimal("10000.00")
        assert forecast.inputs_snapshot["expense_count"] == 6

    @pytest.mark.asyncio
    async def test_revenue_growth(self, provider):
        provider.add_revenue(TENANT, END - timedelta(days=40), 10000)
        provider.add_revenue(TENANT, END - timedelta(days=5), 12000)
        forecast = compute_forecast(TENANT, ForecastType.REVENUE_GROWTH, await history_for(provider), START)
        assert forecast.projected_value == Decimal("20.00")
        assert forecast.unit == "percent"

    @pytest.mark.asyncio
    async def test_revenue_growth_from_zero_is_undefined(self, provider):
        provider.add_revenue(TENANT, END - timedelta(days=5), 12000)
        forecast = compute_forecast(TENANT, ForecastType.REVENUE_GROWTH, await history_for(provider), START)
        assert not forecast.is_defined
        assert forecast.inputs_snapshot["previous_month_revenue"] == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_expense_trajectory_flat(self, provider):
        for i in range(6):
            provider.add_expense(TENANT, END - timedelta(days=5 + 30 * i), 3000)
        forecast = compute_forecast(TENANT, ForecastType.EXPENSE_TRAJECTORY, await history_for(provider), START)
        assert forecast.projected_value == Decimal("3000.00")

    @pytest.mark.asyncio
    async def test_payment_inflow(self, provider):
        provider.add_payment(TENANT, "i1", "Acme", 1000, END - timedelta(days=20), END - timedelta(days=21))
        provider.add_payment(TENANT, "i2", "Acme", 3000, END - timedelta(days=10), END - timedelta(days=2))
        forecast = compute_forecast(TENANT, ForecastType.PAYMENT_INFLOW, await history_for(provider), START)
        # (1 / 2) * 2000
        assert forecast.projected_value == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_identical_inputs_give_identical_forecasts(self, provider):
        seed_runway(provider)
        history = await history_for(provider)
        first = compute_forecast(TENANT, ForecastType.CASH_RUNWAY, history, START)
        second = compute_forecast(TENANT, ForecastType.CASH_RUNWAY, history, START)
        assert first.model_dump(exclude={"id"}) == second.model_dump(exclude={"id"})


# =============================================================================
# Confidence
# =============================================================================

class TestConfidence:

    def test_full_history_and_steady_series_scores_high(self):
        breakdown = score_confidence(180, series=[100, 100, 100], sample_size=30)
        assert breakdown.total == 100
        assert confidence_level(breakdown.total) == ConfidenceLevel.HIGH

    def test_thin_history_scores_low(self):
        breakdown = score_confidence(0)
        assert breakdown.data_availability == 0
        assert breakdown.total == 20
        assert confidence_level(breakdown.total) == ConfidenceLevel.LOW

    @pytest.mark.parametrize("score,level", [
        (75, ConfidenceLevel.HIGH),
        (74.99, ConfidenceLevel.MEDIUM),
        (50, ConfidenceLevel.MEDIUM),
        (49.99, ConfidenceLevel.LOW),
    ])
    def test_level_boundaries(self, score, level):
        assert confidence_level(score) == level


# =============================================================================
# Engine
# =============================================================================

class TestForecastingEngine:

    @pytest.mark.asyncio
    async def test_generate_persists_and_audits(self, services, provider, ctx, audit_events):
        seed_runway(provider)
        forecast = await services.forecasting.generate_forecast(ctx, ForecastType.CASH_RUNWAY)

        assert forecast.projected_value == Decimal("5.00")
        assert await services.forecasting.get_forecast(ctx, forecast.id) == forecast
        assert audit_events.of_type("forecast_generated")[0].entity_id == forecast.id

    @pytest.mark.asyncio
    async def test_starter_plan_cannot_generate(self, services, plan_service, ctx, audit_events):
        plan_service.tiers[ctx.tenant_id] = PlanTier.STARTER
        with pytest.raises(PlanLimitExceeded) as exc:
            await services.forecasting.generate_forecast(ctx, ForecastType.BURN_RATE)
        assert exc.value.suggested_plan == "PROFESSIONAL"
        assert await services.forecasting.list_forecasts(ctx) == []
        assert len(audit_events.of_type("plan_denied")) == 1

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_read(self, services, provider, ctx, other_ctx):
        seed_runway(provider)
        forecast = await services.forecasting.generate_forecast(ctx, ForecastType.CASH_RUNWAY)
        with pytest.raises(NotFoundError):
            await services.forecasting.get_forecast(other_ctx, forecast.id)

    @pytest.mark.asyncio
    async def test_foreign_history_is_rejected(self, services, ctx):
        class LeakyProvider(InMemoryHistoricalDataProvider):
            async def get_history(self, tenant_id, window):
                return await super().get_history("someone-else", window)

        services.forecasting.data_provider = LeakyProvider()
        with pytest.raises(TenantIsolationViolation):
            await services.forecasting.generate_forecast(ctx, ForecastType.BURN_RATE)

"""Tests for the statistical insight detectors and the insight generator."""

import pytest
from datetime import timedelta
from decimal import Decimal

from accubooks.data import HistoryWindow
from accubooks.errors import InsufficientDataError, NotFoundError
from accubooks.insights import DetectorConfig, InsightSeverity, InsightType
from accubooks.insights.engine import (
    confidence,
    detect_budget_alerts,
    detect_cash_flow_trend,
    detect_expense_anomalies,
    detect_payment_patterns,
    detect_revenue_trend,
)

from conftest import START, TENANT

END = START.date()
WINDOW = HistoryWindow.trailing(END, 180)
CONFIG = DetectorConfig()


def seed_software_spend(provider, outlier_days_ago=3, outlier=1000):
    for i in range(6):
        provider.add_expense(TENANT, END - timedelta(days=60 + 10 * i), 100, category="software",
                             expense_id=f"exp-{i}")
    provider.add_expense(TENANT, END - timedelta(days=outlier_days_ago), outlier, category="software",
                         expense_id="exp-outlier")


# =============================================================================
# Detectors
# =============================================================================

class TestExpenseAnomalies:

    @pytest.mark.asyncio
    async def test_recent_outlier_is_critical(self, provider):
        seed_software_spend(provider)
        findings = detect_expense_anomalies(await provider.get_history(TENANT, WINDOW), CONFIG)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.severity == InsightSeverity.CRITICAL
        assert finding.subject == "software"
        assert finding.impact_amount == Decimal("900.00")
        assert "10.0x your software average" in finding.description
        assert abs(sum(f.weight for f in finding.factors) - 1) < 0.001

    @pytest.mark.asyncio
    async def test_old_outliers_are_not_flagged(self, provider):
        seed_software_spend(provider, outlier_days_ago=45)
        assert detect_expense_anomalies(await provider.get_history(TENANT, WINDOW), CONFIG) == []

    @pytest.mark.asyncio
    async def test_moderate_outlier_is_a_warning(self, provider):
        seed_software_spend(provider, outlier=300)
        findings = detect_expense_anomalies(await provider.get_history(TENANT, WINDOW), CONFIG)
        assert [f.severity for f in findings] == [InsightSeverity.WARNING]

    @pytest.mark.asyncio
    async def test_small_categories_are_insufficient(self, provider):
        for i in range(5):
            provider.add_expense(TENANT, END - timedelta(days=i), 100, category="travel")
        with pytest.raises(InsufficientDataError):
            detect_expense_anomalies(await provider.get_history(TENANT, WINDOW), CONFIG)


class TestCashFlowTrend:

    @pytest.mark.asyncio
    async def test_steady_decline_is_a_warning(self, provider):
        for i, balance in enumerate([100000, 85000, 70000, 55000, 40000]):
            provider.add_cash_balance(TENANT, END - timedelta(days=120 - 30 * i), balance)

        [finding] = detect_cash_flow_trend(await provider.get_history(TENANT, WINDOW), CONFIG)
        assert finding.severity == InsightSeverity.WARNING
        assert finding.title == "Cash balance is trending down"
        assert finding.impact_amount == Decimal("-15000.00")

    @pytest.mark.asyncio
    async def test_flat_balance_raises_nothing(self, provider):
        for i in range(5):
            provider.add_cash_balance(TENANT, END - timedelta(days=30 * i), 50000)
        assert detect_cash_flow_trend(await provider.get_history(TENANT, WINDOW), CONFIG) == []

    @pytest.mark.asyncio
    async def test_too_few_points(self, provider):
        provider.add_cash_balance(TENANT, END, 50000)
        with pytest.raises(InsufficientDataError):
            detect_cash_flow_trend(await provider.get_history(TENANT, WINDOW), CONFIG)


class TestPaymentPatterns:

    @pytest.mark.asyncio
    async def test_chronic_late_payer(self, provider):
        provider.add_payment(TENANT, "A-1", "Acme", 800, END - timedelta(days=90), END - timedelta(days=95))
        for i, days_ago in enumerate([80, 60, 40]):
            due = END - timedelta(days=days_ago)
            provider.add_payment(TENANT, f"S-{i}", "Slowpay", 500, due, due + timedelta(days=10))
        # Unpaid and overdue counts as late
        provider.add_payment(TENANT, "S-3", "Slowpay", 500, END - timedelta(days=20))

        findings = detect_payment_patterns(await provider.get_history(TENANT, WINDOW), CONFIG)
        [customer] = [f for f in findings if f.subject == "Slowpay"]
        assert customer.severity == InsightSeverity.WARNING
        assert customer.description == "100% of invoices paid late (4/4)."
        assert customer.impact_amount == Decimal("500.00")
        assert not [f for f in findings if f.subject == "Acme"]

        [trend] = [f for f in findings if f.dedup_key == "payment_pattern:trend"]
        assert trend.title == "On-time payments are declining"

    @pytest.mark.asyncio
    async def test_needs_minimum_invoices(self, provider):
        provider.add_payment(TENANT, "A-1", "Acme", 800, END - timedelta(days=9))
        with pytest.raises(InsufficientDataError):
            detect_payment_patterns(await provider.get_history(TENANT, WINDOW), CONFIG)


class TestRevenueTrend:

    @pytest.mark.asyncio
    async def test_declining_revenue(self, provider):
        for i in range(6):
            provider.add_revenue(TENANT, END - timedelta(days=5 + 30 * i), 5000 + 1000 * i)

        [finding] = detect_revenue_trend(await provider.get_history(TENANT, WINDOW), CONFIG)
        assert finding.title == "Revenue is decreasing"
        assert finding.severity == InsightSeverity.WARNING
        assert finding.dedup_key == "revenue_trend:decreasing"


class TestBudgetAlerts:

    def seed(self, provider, spent_each):
        provider.add_budget(TENANT, "marketing", 1000, END - timedelta(days=19), END + timedelta(days=10))
        provider.add_expense(TENANT, END - timedelta(days=15), spent_each, category="marketing")
        provider.add_expense(TENANT, END - timedelta(days=5), spent_each, category="marketing")

    @pytest.mark.asyncio
    async def test_projected_overrun_warns(self, provider):
        self.seed(provider, 450)
        [finding] = detect_budget_alerts(await provider.get_history(TENANT, WINDOW), CONFIG)

        assert finding.severity == InsightSeverity.WARNING
        assert finding.description == "90% of budget used with 10 days remaining."
        # 45 per day over 30 days
        assert finding.impact_amount == Decimal("350.00")

    @pytest.mark.asyncio
    async def test_nearly_spent_budget_is_critical(self, provider):
        self.seed(provider, 480)
        [finding] = detect_budget_alerts(await provider.get_history(TENANT, WINDOW), CONFIG)
        assert finding.severity == InsightSeverity.CRITICAL

    @pytest.mark.asyncio
    async def test_under_threshold_is_quiet(self, provider):
        self.seed(provider, 200)
        assert detect_budget_alerts(await provider.get_history(TENANT, WINDOW), CONFIG) == []


class TestConfidenceFormula:

    def test_sample_bonus_is_capped(self):
        parts = confidence(50, 80, 30, 10)
        assert parts == {"base": 50, "sample_bonus": 30, "variance_penalty": 10, "score": 70}

    def test_score_is_clipped(self):
        assert confidence(10, 0, 30, 40)["score"] == 0


# =============================================================================
# Generator
# =============================================================================

class TestInsightGenerator:

    @pytest.mark.asyncio
    async def test_generates_and_audits(self, services, provider, ctx, audit_events):
        seed_software_spend(provider)
        insights = await services.insights.generate_insights(ctx)

        assert [i.insight_type for i in insights] == [InsightType.EXPENSE_ANOMALY]
        insight = insights[0]
        assert insight.tenant_id == TENANT
        assert insight.expires_at == START + timedelta(days=7)
        assert insight.explanation.confidence_components["score"] == insight.confidence_score
        assert audit_events.of_type("insight_generated")[0].entity_id == insight.id

        skipped = {e.details["detector"] for e in audit_events.of_type("insight_detector_skipped")}
        assert skipped == {"cash_flow_trend", "payment_pattern", "revenue_trend", "budget_alert"}

    @pytest.mark.asyncio
    async def test_repeat_within_a_day_is_suppressed(self, services, provider, clock, ctx):
        seed_software_spend(provider)
        assert len(await services.insights.generate_insights(ctx)) == 1

        clock.advance(timedelta(hours=23))
        assert await services.insights.generate_insights(ctx) == []

        clock.advance(timedelta(hours=2))
        assert len(await services.insights.generate_insights(ctx)) == 1

    @pytest.mark.asyncio
    async def test_list_active_filters_and_expires(self, services, provider, clock, ctx):
        seed_software_spend(provider)
        provider.add_budget(TENANT, "marketing", 1000, END - timedelta(days=19), END + timedelta(days=10))
        provider.add_expense(TENANT, END - timedelta(days=2), 960, category="marketing")
        await services.insights.generate_insights(ctx)

        active = await services.insights.list_active(ctx)
        assert {i.insight_type for i in active} == {InsightType.EXPENSE_ANOMALY, InsightType.BUDGET_ALERT}
        budget_only = await services.insights.list_active(ctx, insight_type=InsightType.BUDGET_ALERT)
        assert [i.subject for i in budget_only] == ["marketing"]
        assert await services.insights.list_active(ctx, severity=InsightSeverity.INFO) == []

        clock.advance(timedelta(days=8))
        assert await services.insights.list_active(ctx) == []

    @pytest.mark.asyncio
    async def test_dismiss(self, services, provider, ctx, audit_events):
        seed_software_spend(provider)
        [insight] = await services.insights.generate_insights(ctx)

        dismissed = await services.insights.dismiss(ctx, insight.id, "Annual licence renewal")
        assert dismissed.dismissed
        assert dismissed.dismissed_reason == "Annual licence renewal"
        assert await services.insights.list_active(ctx) == []
        assert audit_events.of_type("insight_dismissed")[0].explanation == "Annual licence renewal"

        # Dismissing twice is a no-op
        assert (await services.insights.dismiss(ctx, insight.id)).dismissed_at == dismissed.dismissed_at
        assert len(audit_events.of_type("insight_dismissed")) == 1

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_insights(self, services, provider, ctx, other_ctx):
        seed_software_spend(provider)
        [insight] = await services.insights.generate_insights(ctx)

        assert await services.insights.list_active(other_ctx) == []
        with pytest.raises(NotFoundError):
            await services.insights.get_insight(other_ctx, insight.id)
        with pytest.raises(NotFoundError):
            await services.insights.dismiss(other_ctx, insight.id)

"""
Insight Generator - explainable statistics over a rolling history window.

Five detectors, each a pure function of one FinancialHistory snapshot:

- expense_anomaly: per-category z-score and IQR fence on recent expenses
- cash_flow_trend: least-squares slope of cash balances over time
- payment_pattern: per-customer late rate and on-time ratio between window halves
- revenue_trend:   regression over 30-day revenue totals
- budget_alert:    spend against budget with a straight-line projected overrun

Confidence for every insight is

    clip(base + min(sample_bonus, cap) - variance_penalty, 0, 100)

with the three components reported on the insight. A detector that lacks
data raises InsufficientDataError internally; the generator skips it and
audits the reason. Nothing here is a trained model.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from accubooks.analytics import (
    clip,
    coefficient_of_variation,
    iqr_fence,
    linear_slope,
    mean,
    money,
    monthly_totals,
    relative_slope,
    zscore,
)
from accubooks.config import settings
from accubooks.data import FinancialHistory, HistoryWindow
from accubooks.errors import InsufficientDataError, NotFoundError
from accubooks.tenancy import TenantContext, ensure_tenant
from .types import (
    ContributingFactor,
    InsightExplanation,
    InsightSeverity,
    InsightType,
    SmartInsight,
    SuggestedAction,
)

logger = logging.getLogger(__name__)

SEVERITY_RANK = {InsightSeverity.CRITICAL: 2, InsightSeverity.WARNING: 1, InsightSeverity.INFO: 0}

RECENT_DAYS = 30


@dataclass(frozen=True)
class DetectorConfig:
    zscore_threshold: float = 3.0
    min_samples: int = 5
    budget_threshold_pct: float = 85.0

    @classmethod
    def from_settings(cls) -> "DetectorConfig":
        return cls(
            zscore_threshold=settings.INSIGHT_ZSCORE_THRESHOLD,
            min_samples=settings.INSIGHT_MIN_SAMPLES,
            budget_threshold_pct=settings.BUDGET_ALERT_THRESHOLD_PCT,
        )


@dataclass
class Finding:
    """A detector result before it becomes a persisted SmartInsight."""
    insight_type: InsightType
    severity: InsightSeverity
    title: str
    description: str
    method: str
    summary: str
    factors: List[ContributingFactor]
    confidence: Dict[str, float]
    dedup_key: str
    suggested_actions: List[SuggestedAction] = field(default_factory=list)
    impact_amount: Optional[Decimal] = None
    subject: Optional[str] = None

    @property
    def confidence_score(self) -> float:
        return self.confidence["score"]


# =============================================================================
# Helpers
# =============================================================================

def confidence(base: float, sample_bonus: float, cap: float, variance_penalty: float) -> Dict[str, float]:
    """clip(base + min(sample_bonus, cap) - variance_penalty, 0, 100), with its parts."""
    bonus = min(sample_bonus, cap)
    return {
        "base": round(base, 2),
        "sample_bonus": round(bonus, 2),
        "variance_penalty": round(variance_penalty, 2),
        "score": round(clip(base + bonus - variance_penalty), 2),
    }


def weighted_factors(*entries: Tuple[str, object, float, str]) -> List[ContributingFactor]:
    """Factors with raw weights normalized to sum to 1, ranked by weight."""
    total = sum(raw for _, _, raw, _ in entries) or 1.0
    factors = [
        ContributingFactor(factor=name, value=value, weight=round(raw / total, 4), description=description)
        for name, value, raw, description in entries
    ]
    return sorted(factors, key=lambda f: f.weight, reverse=True)


def _recent(day, window: HistoryWindow) -> bool:
    return day >= window.end - timedelta(days=RECENT_DAYS - 1)


# =============================================================================
# Detectors
# =============================================================================

def detect_expense_anomalies(history: FinancialHistory, config: DetectorConfig) -> List[Finding]:
    by_category: Dict[str, list] = defaultdict(list)
    for expense in history.expenses:
        by_category[expense.category].append(expense)

    eligible = {c: items for c, items in by_category.items() if len(items) > config.min_samples}
    if not eligible:
        raise InsufficientDataError(
            f"No expense category has more than {config.min_samples} transactions in the window."
        )

    findings = []
    for category, items in sorted(eligible.items()):
        for index, expense in enumerate(items):
            if not _recent(expense.date, history.window):
                continue
            population = [e.amount for i, e in enumerate(items) if i != index]
            z = zscore(expense.amount, population)
            fence = iqr_fence(population)
            above_fence = fence is not None and float(expense.amount) > fence[2]
            if not ((z is not None and z >= config.zscore_threshold) or above_fence):
                continue

            average = Decimal(str(mean(population)))
            multiple = float(expense.amount / average) if average else None
            severity = InsightSeverity.CRITICAL if multiple and multiple >= 5 else InsightSeverity.WARNING
            cv = coefficient_of_variation(population) or 0.0
            score = confidence(50, 2 * len(population), 30, 20 * min(1.0, cv))

            entries = []
            if z is not None:
                entries.append(("z_score", round(z, 2), max(z, 0.0),
                                f"{z:.1f} standard deviations above the {category} mean"))
            if fence is not None:
                excess = float(expense.amount) - fence[2]
                entries.append(("iqr_fence_excess", round(excess, 2), 1.5 if above_fence else 0.5,
                                f"{'Above' if above_fence else 'Within'} the IQR fence of {fence[2]:.2f}"))
            if multiple is not None:
                entries.append(("multiple_of_average", round(multiple, 2), 1.0,
                                f"{multiple:.1f}x the category average of {money(average)}"))

            findings.append(Finding(
                insight_type=InsightType.EXPENSE_ANOMALY,
                severity=severity,
                title=f"Unusual {category} expense detected",
                description=(
                    f"An expense of {money(expense.amount)} on {expense.date.isoformat()} is "
                    f"{multiple:.1f}x your {category} average." if multiple else
                    f"An expense of {money(expense.amount)} on {expense.date.isoformat()} is unusual for {category}."
                ),
                method="z-score and IQR fence against the category's other expenses",
                summary=(
                    f"Compared with {len(population)} other {category} expenses averaging "
                    f"{money(average)}, this one stands out."
                ),
                factors=weighted_factors(*entries),
                confidence=score,
                dedup_key=f"expense_anomaly:{category}:{expense.id or expense.date.isoformat()}:{expense.amount}",
                suggested_actions=[
                    SuggestedAction(action="review_transaction",
                                    description="Verify this expense is legitimate and properly categorized"),
                    SuggestedAction(action="create_alert_rule",
                                    description=f"Get notified when {category} expenses exceed {money(average * 2)}"),
                ],
                impact_amount=money(expense.amount - average),
                subject=category,
            ))
    return findings


def detect_cash_flow_trend(history: FinancialHistory, config: DetectorConfig) -> List[Finding]:
    points = list(history.cash_balances)
    if len(points) < config.min_samples:
        raise InsufficientDataError(
            f"Cash flow trend needs at least {config.min_samples} balance points, found {len(points)}."
        )

    origin = points[0].date
    per_day = linear_slope([p.balance for p in points], xs=[(p.date - origin).days for p in points])
    if per_day is None:
        raise InsufficientDataError("All balance points fall on the same day.")

    average = mean([p.balance for p in points]) or 0.0
    monthly_change = per_day * 30
    relative = monthly_change / abs(average) if average else 0.0
    current = points[-1].balance

    if monthly_change < 0 and relative <= -0.05:
        runway = float(current) / -monthly_change if current > 0 else 0.0
        if runway < 2:
            severity = InsightSeverity.CRITICAL
        elif runway < 6:
            severity = InsightSeverity.WARNING
        else:
            severity = InsightSeverity.INFO
        title = "Cash balance is trending down"
        description = (
            f"Cash is falling by about {money(-monthly_change)} per month; at this pace the current "
            f"balance of {money(current)} lasts {runway:.1f} months."
        )
        actions = [
            SuggestedAction(action="review_cash_flow", description="Review recent expenses and revenue trends"),
            SuggestedAction(action="create_alert_rule",
                            description="Get notified when cash balance drops below two months of burn"),
        ]
    elif relative >= 0.10:
        runway = None
        severity = InsightSeverity.INFO
        title = "Cash balance is trending up"
        description = f"Cash is growing by about {money(monthly_change)} per month."
        actions = [SuggestedAction(action="review_reserves", description="Consider where surplus cash should sit")]
    else:
        return []

    cv = coefficient_of_variation([p.balance for p in points]) or 0.0
    entries = [
        ("monthly_change", round(monthly_change, 2), 0.6, "Least-squares slope of balances, per 30 days"),
        ("current_balance", str(money(current)), 0.25, "Latest recorded balance"),
        ("relative_change", round(relative, 4), 0.15, "Monthly change as a share of the average balance"),
    ]
    if runway is not None:
        entries.append(("months_of_cash_at_trend", round(runway, 2), 0.3, "Current balance / monthly decline"))

    return [Finding(
        insight_type=InsightType.CASH_FLOW_TREND,
        severity=severity,
        title=title,
        description=description,
        method="least-squares regression of balance against day",
        summary=f"Fitted over {len(points)} balance points from {origin.isoformat()} to {points[-1].date.isoformat()}.",
        factors=weighted_factors(*entries),
        confidence=confidence(55, 1.5 * len(points), 30, 15 * min(1.0, cv)),
        dedup_key=f"cash_flow_trend:{'down' if monthly_change < 0 else 'up'}:{severity.value}",
        suggested_actions=actions,
        impact_amount=money(monthly_change),
    )]


def detect_payment_patterns(history: FinancialHistory, config: DetectorConfig) -> List[Finding]:
    due = [p for p in history.payments if p.due_date <= history.window.end]
    if len(due) < config.min_samples:
        raise InsufficientDataError(
            f"Payment patterns need at least {config.min_samples} invoices due in the window, found {len(due)}."
        )

    findings = []
    by_customer: Dict[str, list] = defaultdict(list)
    for payment in due:
        by_customer[payment.customer].append(payment)

    for customer, invoices in sorted(by_customer.items()):
        if len(invoices) < 3:
            continue
        late = [p for p in invoices if not p.on_time]
        late_rate = len(late) / len(invoices) * 100
        if late_rate < 50:
            continue
        paid_late = [p.days_late for p in late if p.is_paid]
        avg_days_late = mean(paid_late) or 0.0
        outstanding = sum((p.amount for p in late if not p.is_paid), Decimal("0"))
        findings.append(Finding(
            insight_type=InsightType.PAYMENT_PATTERN,
            severity=InsightSeverity.WARNING if late_rate >= 90 else InsightSeverity.INFO,
            title=f"{customer} consistently pays late",
            description=f"{late_rate:.0f}% of invoices paid late ({len(late)}/{len(invoices)}).",
            method="late-payment rate per customer",
            summary=(
                f"{customer} paid {len(late)} of {len(invoices)} invoices after the due date, "
                f"{avg_days_late:.0f} days late on average."
            ),
            factors=weighted_factors(
                ("late_rate_pct", round(late_rate, 1), 0.6, "Share of invoices not paid by the due date"),
                ("average_days_late", round(avg_days_late, 1), 0.3, "Mean days late among paid invoices"),
                ("invoice_count", len(invoices), 0.1, "Invoices due in the window"),
            ),
            confidence=confidence(40, 5 * len(invoices), 40, 0),
            dedup_key=f"payment_pattern:customer:{customer}",
            suggested_actions=[
                SuggestedAction(action="automate_reminders",
                                description=f"Send payment reminders before invoices to {customer} fall due"),
                SuggestedAction(action="adjust_payment_terms",
                                description="Consider shorter terms or a deposit for this customer"),
            ],
            impact_amount=money(outstanding) if outstanding else None,
            subject=customer,
        ))

    ordered = sorted(due, key=lambda p: p.due_date)
    half = len(ordered) // 2
    earlier, later = ordered[:half], ordered[half:]
    if earlier and later:
        before = sum(1 for p in earlier if p.on_time) / len(earlier) * 100
        after = sum(1 for p in later if p.on_time) / len(later) * 100
        drop = before - after
        if drop >= 10:
            findings.append(Finding(
                insight_type=InsightType.PAYMENT_PATTERN,
                severity=InsightSeverity.WARNING if drop >= 25 else InsightSeverity.INFO,
                title="On-time payments are declining",
                description=f"The on-time payment ratio fell from {before:.0f}% to {after:.0f}%.",
                method="on-time ratio compared between the two halves of the window",
                summary=(
                    f"{len(earlier)} earlier invoices were {before:.0f}% on time; "
                    f"the {len(later)} most recent were {after:.0f}% on time."
                ),
                factors=weighted_factors(
                    ("ratio_drop_pts", round(drop, 1), 0.6, "Percentage-point drop in on-time ratio"),
                    ("recent_on_time_pct", round(after, 1), 0.25, "On-time ratio, later half"),
                    ("earlier_on_time_pct", round(before, 1), 0.15, "On-time ratio, earlier half"),
                ),
                confidence=confidence(45, 2 * len(ordered), 35, 0),
                dedup_key="payment_pattern:trend",
                suggested_actions=[
                    SuggestedAction(action="automate_reminders",
                                    description="Add an automation that reminds customers before due dates"),
                ],
            ))
    return findings


def detect_revenue_trend(history: FinancialHistory, config: DetectorConfig) -> List[Finding]:
    buckets = monthly_totals(((r.date, r.amount) for r in history.revenue), history.window)
    if len(buckets) < 3 or len(history.revenue) < config.min_samples:
        raise InsufficientDataError(
            "Revenue trend needs at least three 30-day periods and "
            f"{config.min_samples} revenue records in the window."
        )

    slope = relative_slope(buckets)
    if slope is None:
        raise InsufficientDataError("No revenue was recorded in the window.")
    if abs(slope) < 0.10:
        return []

    previous, current = buckets[-2], buckets[-1]
    mom = float((current - previous) / previous * 100) if previous else None
    if slope <= -0.30:
        severity = InsightSeverity.CRITICAL
    elif slope < 0:
        severity = InsightSeverity.WARNING
    else:
        severity = InsightSeverity.INFO
    direction = "decreasing" if slope < 0 else "increasing"

    entries = [
        ("relative_monthly_slope", round(slope, 4), 0.6, "Fitted change per 30 days as a share of mean revenue"),
        ("current_month_revenue", str(money(current)), 0.2, "Revenue in the latest 30-day period"),
    ]
    if mom is not None:
        entries.append(("month_over_month_pct", round(mom, 1), 0.2, "Latest period against the one before"))

    cv = coefficient_of_variation(buckets) or 0.0
    return [Finding(
        insight_type=InsightType.REVENUE_TREND,
        severity=severity,
        title=f"Revenue is {direction}",
        description=f"Revenue is {direction} by about {abs(slope):.0%} of its average per month.",
        method="least-squares regression over 30-day revenue totals",
        summary=f"Fitted over {len(buckets)} periods: {', '.join(str(money(b)) for b in buckets)}.",
        factors=weighted_factors(*entries),
        confidence=confidence(50, 5 * len(buckets), 30, 20 * min(1.0, cv)),
        dedup_key=f"revenue_trend:{direction}",
        suggested_actions=[
            SuggestedAction(action="review_customers",
                            description="Review customer retention and new customer acquisition"),
            SuggestedAction(action="create_alert_rule", description="Get notified when monthly revenue drops"),
        ],
        impact_amount=money(Decimal(str(slope * (mean(buckets) or 0.0)))),
    )]


def detect_budget_alerts(history: FinancialHistory, config: DetectorConfig) -> List[Finding]:
    today = history.window.end
    active = [b for b in history.budgets if b.period_start <= today <= b.period_end]
    if not active:
        raise InsufficientDataError("No budget period is active at the end of the window.")

    findings = []
    for budget in active:
        if budget.amount <= 0:
            continue
        spent_items = [
            e for e in history.expenses
            if e.category == budget.category and budget.period_start <= e.date <= today
        ]
        spent = sum((e.amount for e in spent_items), Decimal("0"))
        used_pct = float(spent / budget.amount * 100)
        elapsed = (today - budget.period_start).days + 1
        period_days = (budget.period_end - budget.period_start).days + 1
        daily = spent / elapsed
        projected = daily * period_days
        overrun = projected - budget.amount
        if used_pct < config.budget_threshold_pct or overrun <= 0:
            continue

        remaining = period_days - elapsed
        cv = coefficient_of_variation([e.amount for e in spent_items]) or 0.0
        findings.append(Finding(
            insight_type=InsightType.BUDGET_ALERT,
            severity=InsightSeverity.CRITICAL if used_pct >= 95 else InsightSeverity.WARNING,
            title=f"{budget.category} budget at risk",
            description=f"{used_pct:.0f}% of budget used with {remaining} days remaining.",
            method="spend against budget with straight-line projection to period end",
            summary=(
                f"Spent {money(spent)} of {money(budget.amount)}. At {money(daily)} per day the period "
                f"ends near {money(projected)}, {money(overrun)} over budget."
            ),
            factors=weighted_factors(
                ("budget_used_pct", round(used_pct, 1), 0.5, "Spend so far as a share of the budget"),
                ("projected_overrun", str(money(overrun)), 0.35, "Projected spend minus budget"),
                ("days_remaining", remaining, 0.15, "Days left in the budget period"),
            ),
            confidence=confidence(60, 30 * elapsed / period_days, 30, 10 * min(1.0, cv)),
            dedup_key=f"budget_alert:{budget.category}:{budget.period_start.isoformat()}",
            suggested_actions=[
                SuggestedAction(action="review_spending",
                                description=f"Analyze {budget.category} expenses and identify areas to reduce"),
                SuggestedAction(action="lock_budget",
                                description=f"Pause new {budget.category} spending until the next period"),
            ],
            impact_amount=money(overrun),
            subject=budget.category,
        ))
    return findings


DETECTORS: Dict[InsightType, Callable[[FinancialHistory, DetectorConfig], List[Finding]]] = {
    InsightType.EXPENSE_ANOMALY: detect_expense_anomalies,
    InsightType.CASH_FLOW_TREND: detect_cash_flow_trend,
    InsightType.PAYMENT_PATTERN: detect_payment_patterns,
    InsightType.REVENUE_TREND: detect_revenue_trend,
    InsightType.BUDGET_ALERT: detect_budget_alerts,
}


# =============================================================================
# Generator
# =============================================================================

class InsightGenerator:
    """
    Runs every detector over one history snapshot and stores new insights.

    An insight whose dedup key was already raised in the last 24 hours is not
    raised again. Insights expire after 7 days.
    """

    def __init__(self, repository, data_provider, audit, clock,
                 config: Optional[DetectorConfig] = None,
                 window_days: Optional[int] = None,
                 dedup_hours: Optional[int] = None,
                 expiry_days: Optional[int] = None):
        self.repository = repository
        self.data_provider = data_provider
        self.audit = audit
        self.clock = clock
        self.config = config or DetectorConfig.from_settings()
        self.window_days = window_days or settings.FORECAST_WINDOW_DAYS
        self.dedup_window = timedelta(hours=dedup_hours or settings.INSIGHT_DEDUP_HOURS)
        self.expiry = timedelta(days=expiry_days or settings.INSIGHT_EXPIRY_DAYS)

    async def generate_insights(self, ctx: TenantContext,
                                window: Optional[HistoryWindow] = None) -> List[SmartInsight]:
        window = window or HistoryWindow.trailing(self.clock.now().date(), self.window_days)
        history = ensure_tenant(ctx, await self.data_provider.get_history(ctx.tenant_id, window))
        now = self.clock.now()

        recent = await self.repository.list_insights(ctx.tenant_id, since=now - self.dedup_window)
        seen = {i.dedup_key for i in recent}

        created = []
        for insight_type, detector in DETECTORS.items():
            try:
                findings = detector(history, self.config)
            except InsufficientDataError as e:
                logger.info(f"Skipped {insight_type.value} for tenant {ctx.tenant_id}: {e.explanation}")
                await self.audit.log_detector_skipped(ctx.tenant_id, insight_type.value, e.explanation)
                continue

            for finding in findings:
                if finding.dedup_key in seen:
                    logger.debug(f"Suppressed duplicate insight {finding.dedup_key} for tenant {ctx.tenant_id}")
                    continue
                seen.add(finding.dedup_key)
                insight = self._to_insight(ctx.tenant_id, finding, window, now)
                await self.repository.save_insight(insight)
                await self.audit.log_insight_generated(insight)
                created.append(insight)

        logger.info(f"Generated {len(created)} insights for tenant {ctx.tenant_id}")
        return sorted(created, key=lambda i: (-SEVERITY_RANK[i.severity], -i.confidence_score, i.dedup_key))

    def _to_insight(self, tenant_id: str, finding: Finding, window: HistoryWindow, now) -> SmartInsight:
        return SmartInsight(
            tenant_id=tenant_id,
            insight_type=finding.insight_type,
            severity=finding.severity,
            title=finding.title,
            description=finding.description,
            confidence_score=finding.confidence_score,
            explanation=InsightExplanation(
                method=finding.method,
                summary=finding.summary,
                factors=tuple(finding.factors),
                confidence_components=finding.confidence,
            ),
            suggested_actions=tuple(finding.suggested_actions),
            impact_amount=finding.impact_amount,
            subject=finding.subject,
            dedup_key=finding.dedup_key,
            source_window=window,
            generated_at=now,
            expires_at=now + self.expiry,
        )

    async def list_active(self, ctx: TenantContext, insight_type: Optional[InsightType] = None,
                          severity: Optional[InsightSeverity] = None) -> List[SmartInsight]:
        now = self.clock.now()
        insights = [
            ensure_tenant(ctx, i) for i in await self.repository.list_insights(ctx.tenant_id, insight_type)
        ]
        active = [i for i in insights if i.is_active(now) and (severity is None or i.severity == severity)]
        return sorted(active, key=lambda i: (-SEVERITY_RANK[i.severity], -i.generated_at.timestamp()))

    async def get_insight(self, ctx: TenantContext, insight_id: str) -> SmartInsight:
        insight = await self.repository.get_insight(ctx.tenant_id, insight_id)
        if insight is None:
            raise NotFoundError(f"Insight {insight_id} not found.")
        return ensure_tenant(ctx, insight)

    async def dismiss(self, ctx: TenantContext, insight_id: str, reason: Optional[str] = None) -> SmartInsight:
        insight = await self.get_insight(ctx, insight_id)
        if insight.dismissed:
            return insight
        dismissed = insight.model_copy(update={
            "dismissed": True,
            "dismissed_reason": reason,
            "dismissed_at": self.clock.now(),
        })
        await self.repository.save_insight(dismissed)
        await self.audit.log(
            tenant_id=ctx.tenant_id,
            event_type="insight_dismissed",
            entity_type="smart_insight",
            entity_id=insight_id,
            explanation=reason or "Dismissed by user",
            request_id=ctx.request_id,
        )
        return dismissed

"""
Plan tiers and plan-limit enforcement.

Limits per tier mirror the commercial plans. ``-1`` means unlimited.
PlanLimitGuard is consulted before any rule, execution, scenario or forecast
is created. If the plan service cannot answer, the guard denies.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from accubooks.errors import PlanLimitExceeded
from .context import TenantContext

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Usage counter names shared by plan services and TenantContext.usage_counters
RULES_COUNTER = "automation_rules"
EXECUTIONS_COUNTER = "automation_executions_month"
SCENARIOS_COUNTER = "scenarios_month"


class PlanTier(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"


TIER_ORDER = [PlanTier.FREE, PlanTier.STARTER, PlanTier.PROFESSIONAL, PlanTier.ENTERPRISE]


@dataclass(frozen=True)
class PlanLimits:
    tier: PlanTier
    max_automation_rules: int
    max_automation_executions_per_month: int
    max_scenarios_per_month: int
    automation_enabled: bool
    can_generate_forecasts: bool
    can_create_scenarios: bool
    custom_scenarios: bool
    forecast_history_days: int


PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        tier=PlanTier.FREE,
        max_automation_rules=0,
        max_automation_executions_per_month=0,
        max_scenarios_per_month=0,
        automation_enabled=False,
        can_generate_forecasts=False,
        can_create_scenarios=False,
        custom_scenarios=False,
        forecast_history_days=30,
    ),
    PlanTier.STARTER: PlanLimits(
        tier=PlanTier.STARTER,
        max_automation_rules=10,
        max_automation_executions_per_month=500,
        max_scenarios_per_month=3,
        automation_enabled=True,
        can_generate_forecasts=False,
        can_create_scenarios=True,
        custom_scenarios=False,
        forecast_history_days=90,
    ),
    PlanTier.PROFESSIONAL: PlanLimits(
        tier=PlanTier.PROFESSIONAL,
        max_automation_rules=50,
        max_automation_executions_per_month=5000,
        max_scenarios_per_month=20,
        automation_enabled=True,
        can_generate_forecasts=True,
        can_create_scenarios=True,
        custom_scenarios=True,
        forecast_history_days=365,
    ),
    PlanTier.ENTERPRISE: PlanLimits(
        tier=PlanTier.ENTERPRISE,
        max_automation_rules=UNLIMITED,
        max_automation_executions_per_month=UNLIMITED,
        max_scenarios_per_month=UNLIMITED,
        automation_enabled=True,
        can_generate_forecasts=True,
        can_create_scenarios=True,
        custom_scenarios=True,
        forecast_history_days=UNLIMITED,
    ),
}


def limits_for(tier: Any) -> PlanLimits:
    return PLAN_LIMITS[PlanTier(str(getattr(tier, "value", tier)).upper())]


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


# =============================================================================
# Plan services
# =============================================================================

class PlanService(Protocol):
    """External plan/tenant service."""

    async def get_plan_limits(self, tenant_id: str) -> PlanLimits:
        ...

    async def get_usage(self, tenant_id: str) -> Dict[str, int]:
        ...


class StaticPlanService:
    """Plan service backed by fixed tables. Useful for tests and local runs."""

    def __init__(
        self,
        tiers: Optional[Dict[str, PlanTier]] = None,
        usage: Optional[Dict[str, Dict[str, int]]] = None,
    ):
        self.tiers = dict(tiers or {})
        self.usage = {k: dict(v) for k, v in (usage or {}).items()}

    async def get_plan_limits(self, tenant_id: str) -> PlanLimits:
        if tenant_id not in self.tiers:
            raise LookupError(f"Unknown tenant {tenant_id}")
        return limits_for(self.tiers[tenant_id])

    async def get_usage(self, tenant_id: str) -> Dict[str, int]:
        return dict(self.usage.get(tenant_id, {}))


class RepositoryPlanService:
    """
    Plan service deriving usage from the persistence repository.

    Tiers are assigned by whoever provisions the tenant (the HTTP layer
    assigns the tier asserted by the upstream auth service).
    """

    def __init__(self, repository: Any, clock: Any, default_tier: Optional[PlanTier] = None):
        self.repository = repository
        self.clock = clock
        self.default_tier = default_tier
        self._tiers: Dict[str, PlanTier] = {}

    def assign_tier(self, tenant_id: str, tier: Any) -> None:
        self._tiers[tenant_id] = limits_for(tier).tier

    async def get_plan_limits(self, tenant_id: str) -> PlanLimits:
        tier = self._tiers.get(tenant_id, self.default_tier)
        if tier is None:
            raise LookupError(f"No plan assigned to tenant {tenant_id}")
        return limits_for(tier)

    async def get_usage(self, tenant_id: str) -> Dict[str, int]:
        since = month_start(self.clock.now())
        return {
            RULES_COUNTER: await self.repository.count_rules(tenant_id),
            EXECUTIONS_COUNTER: await self.repository.count_executions_since(tenant_id, since),
            SCENARIOS_COUNTER: await self.repository.count_scenarios_since(tenant_id, since),
        }


# =============================================================================
# Guard
# =============================================================================

class PlanLimitGuard:
    """
    Enforces plan limits before creation and execution.

    Every check raises PlanLimitExceeded with an upgrade payload on denial.
    """

    def __init__(self, plan_service: PlanService):
        self.plan_service = plan_service

    async def _load(self, ctx: TenantContext, feature: str):
        try:
            limits = await self.plan_service.get_plan_limits(ctx.tenant_id)
            usage = await self.plan_service.get_usage(ctx.tenant_id)
        except Exception as e:
            logger.error(f"Plan service unavailable for tenant {ctx.tenant_id}, denying {feature}: {e}")
            raise PlanLimitExceeded(
                "Plan limits could not be verified, so the request was denied. Please try again shortly.",
                feature=feature,
                current_plan=str(ctx.plan_tier),
            ) from e

        merged = dict(usage or {})
        for counter, value in ctx.usage_counters.items():
            merged[counter] = max(int(merged.get(counter, 0)), int(value))
        return limits, merged

    @staticmethod
    def _suggest(current: PlanTier, allows) -> Optional[str]:
        for tier in TIER_ORDER[TIER_ORDER.index(current) + 1:]:
            if allows(PLAN_LIMITS[tier]):
                return tier.value
        return None

    @staticmethod
    def _within(limit: int, used: int) -> bool:
        return limit == UNLIMITED or used < limit

    def _deny(self, limits: PlanLimits, feature: str, explanation: str, allows, limit=None, usage=None):
        suggested = self._suggest(limits.tier, allows)
        if suggested:
            explanation = f"{explanation} Upgrade to {suggested} to continue."
        logger.info(f"Plan limit denied {feature} on {limits.tier.value}: {explanation}")
        raise PlanLimitExceeded(
            explanation,
            feature=feature,
            current_plan=limits.tier.value,
            suggested_plan=suggested,
            limit=limit,
            usage=usage,
        )

    async def check_rule_creation(self, ctx: TenantContext) -> PlanLimits:
        limits, usage = await self._load(ctx, "automation_rules")
        used = usage.get(RULES_COUNTER, 0)
        if not limits.automation_enabled:
            self._deny(limits, "automation_rules", "Automation is not enabled on your plan.",
                       lambda p: p.automation_enabled)
        if not self._within(limits.max_automation_rules, used):
            self._deny(
                limits, "automation_rules",
                f"Automation rule limit reached ({used}/{limits.max_automation_rules}).",
                lambda p: p.max_automation_rules == UNLIMITED or p.max_automation_rules > used,
                limit=limits.max_automation_rules, usage=used,
            )
        return limits

    async def check_execution(self, ctx: TenantContext) -> PlanLimits:
        limits, usage = await self._load(ctx, "automation_executions")
        used = usage.get(EXECUTIONS_COUNTER, 0)
        if not limits.automation_enabled:
            self._deny(limits, "automation_executions", "Automation is not enabled on your plan.",
                       lambda p: p.automation_enabled)
        if not self._within(limits.max_automation_executions_per_month, used):
            self._deny(
                limits, "automation_executions",
                f"Monthly automation execution limit reached "
                f"({used}/{limits.max_automation_executions_per_month}).",
                lambda p: (p.max_automation_executions_per_month == UNLIMITED
                           or p.max_automation_executions_per_month > used),
                limit=limits.max_automation_executions_per_month, usage=used,
            )
        return limits

    async def check_scenario_creation(self, ctx: TenantContext, custom: bool = False) -> PlanLimits:
        limits, usage = await self._load(ctx, "scenarios")
        used = usage.get(SCENARIOS_COUNTER, 0)
        if not limits.can_create_scenarios:
            self._deny(limits, "scenarios", "Scenario planning is not available on your plan.",
                       lambda p: p.can_create_scenarios)
        if custom and not limits.custom_scenarios:
            self._deny(limits, "custom_scenarios", "Custom scenarios are not available on your plan.",
                       lambda p: p.custom_scenarios)
        if not self._within(limits.max_scenarios_per_month, used):
            self._deny(
                limits, "scenarios",
                f"Monthly scenario limit reached ({used}/{limits.max_scenarios_per_month}).",
                lambda p: p.max_scenarios_per_month == UNLIMITED or p.max_scenarios_per_month > used,
                limit=limits.max_scenarios_per_month, usage=used,
            )
        return limits

    async def check_forecast_generation(self, ctx: TenantContext) -> PlanLimits:
        limits, _ = await self._load(ctx, "forecasting")
        if not limits.can_generate_forecasts:
            self._deny(limits, "forecasting", "Forecast generation is not available on your plan.",
                       lambda p: p.can_generate_forecasts)
        return limits

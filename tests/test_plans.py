"""Tests for plan limits, the plan-limit guard and tenant isolation."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from accubooks.clock import ManualClock
from accubooks.errors import PlanLimitExceeded, TenantIsolationViolation
from accubooks.storage import InMemoryRepository
from accubooks.tenancy import (
    PLAN_LIMITS,
    PlanLimitGuard,
    PlanTier,
    RepositoryPlanService,
    StaticPlanService,
    TenantContext,
    ensure_tenant,
    ensure_tenant_audited,
)
from accubooks.tenancy.plans import (
    EXECUTIONS_COUNTER,
    RULES_COUNTER,
    SCENARIOS_COUNTER,
    UNLIMITED,
    limits_for,
)

from conftest import OTHER_TENANT, START, TENANT, make_draft


def guard_for(tier, usage=None) -> PlanLimitGuard:
    return PlanLimitGuard(StaticPlanService(
        tiers={TENANT: tier},
        usage={TENANT: usage or {}},
    ))


def tenant_ctx(tier="STARTER", **usage) -> TenantContext:
    return TenantContext(tenant_id=TENANT, plan_tier=tier).with_usage(**usage)


class TestPlanTable:

    def test_enterprise_is_unlimited(self):
        limits = PLAN_LIMITS[PlanTier.ENTERPRISE]
        assert limits.max_automation_rules == UNLIMITED
        assert limits.max_automation_executions_per_month == UNLIMITED
        assert limits.max_scenarios_per_month == UNLIMITED

    def test_free_has_no_automation(self):
        limits = PLAN_LIMITS[PlanTier.FREE]
        assert not limits.automation_enabled
        assert not limits.can_generate_forecasts
        assert not limits.can_create_scenarios

    @pytest.mark.parametrize("raw", ["starter", "STARTER", PlanTier.STARTER])
    def test_limits_for_accepts_names_and_enums(self, raw):
        assert limits_for(raw).tier == PlanTier.STARTER

    def test_limits_for_rejects_unknown_tier(self):
        with pytest.raises(ValueError):
            limits_for("platinum")


# =============================================================================
# Guard
# =============================================================================

class TestPlanLimitGuard:

    @pytest.mark.asyncio
    async def test_rule_creation_within_limit(self):
        limits = await guard_for(PlanTier.STARTER, {RULES_COUNTER: 9}).check_rule_creation(tenant_ctx())
        assert limits.tier == PlanTier.STARTER

    @pytest.mark.asyncio
    async def test_rule_limit_suggests_next_tier(self):
        with pytest.raises(PlanLimitExceeded) as exc:
            await guard_for(PlanTier.STARTER, {RULES_COUNTER: 10}).check_rule_creation(tenant_ctx())

        error = exc.value
        assert error.feature == "automation_rules"
        assert error.current_plan == "STARTER"
        assert error.suggested_plan == "PROFESSIONAL"
        assert error.limit == 10
        assert error.usage == 10
        assert "Upgrade to PROFESSIONAL" in error.explanation
        assert error.to_dict()["upgrade"]["suggested_plan"] == "PROFESSIONAL"

    @pytest.mark.asyncio
    async def test_context_counters_override_stale_service_usage(self):
        guard = guard_for(PlanTier.STARTER, {EXECUTIONS_COUNTER: 3})
        with pytest.raises(PlanLimitExceeded) as exc:
            await guard.check_execution(tenant_ctx(**{EXECUTIONS_COUNTER: 500}))
        assert exc.value.usage == 500

    @pytest.mark.asyncio
    async def test_free_plan_is_pointed_at_starter(self):
        with pytest.raises(PlanLimitExceeded) as exc:
            await guard_for(PlanTier.FREE).check_execution(tenant_ctx("FREE"))
        assert exc.value.suggested_plan == "STARTER"

    @pytest.mark.asyncio
    async def test_enterprise_never_hits_a_count_limit(self):
        guard = guard_for(PlanTier.ENTERPRISE, {
            RULES_COUNTER: 10_000, EXECUTIONS_COUNTER: 1_000_000, SCENARIOS_COUNTER: 10_000,
        })
        ctx = tenant_ctx("ENTERPRISE")
        await guard.check_rule_creation(ctx)
        await guard.check_execution(ctx)
        await guard.check_scenario_creation(ctx, custom=True)
        await guard.check_forecast_generation(ctx)

    @pytest.mark.asyncio
    async def test_custom_scenarios_need_professional(self):
        guard = guard_for(PlanTier.STARTER)
        await guard.check_scenario_creation(tenant_ctx())
        with pytest.raises(PlanLimitExceeded) as exc:
            await guard.check_scenario_creation(tenant_ctx(), custom=True)
        assert exc.value.feature == "custom_scenarios"
        assert exc.value.suggested_plan == "PROFESSIONAL"

    @pytest.mark.asyncio
    async def test_professional_scenario_limit_suggests_enterprise(self):
        guard = guard_for(PlanTier.PROFESSIONAL, {SCENARIOS_COUNTER: 20})
        with pytest.raises(PlanLimitExceeded) as exc:
            await guard.check_scenario_creation(tenant_ctx("PROFESSIONAL"))
        assert exc.value.suggested_plan == "ENTERPRISE"

    @pytest.mark.asyncio
    async def test_unreachable_plan_service_denies(self):
        plan_service = MagicMock()
        plan_service.get_plan_limits = AsyncMock(side_effect=ConnectionError("plan service down"))
        plan_service.get_usage = AsyncMock(return_value={})

        with pytest.raises(PlanLimitExceeded) as exc:
            await PlanLimitGuard(plan_service).check_forecast_generation(tenant_ctx("ENTERPRISE"))
        assert "could not be verified" in exc.value.explanation
        assert exc.value.suggested_plan is None

    @pytest.mark.asyncio
    async def test_unknown_tenant_denies(self):
        guard = PlanLimitGuard(StaticPlanService())
        with pytest.raises(PlanLimitExceeded):
            await guard.check_rule_creation(tenant_ctx())


# =============================================================================
# Repository-backed plan service
# =============================================================================

class TestRepositoryPlanService:

    @pytest.mark.asyncio
    async def test_no_assigned_tier_fails_closed(self):
        service = RepositoryPlanService(InMemoryRepository(), ManualClock(START))
        with pytest.raises(LookupError):
            await service.get_plan_limits(TENANT)

    @pytest.mark.asyncio
    async def test_usage_counts_come_from_the_repository(self, services, ctx):
        plan_service = RepositoryPlanService(services.repository, services.clock)
        plan_service.assign_tier(TENANT, "starter")

        await services.orchestrator.create_rule(ctx, make_draft("first"))
        await services.orchestrator.create_rule(ctx, make_draft("second"))

        assert (await plan_service.get_plan_limits(TENANT)).tier == PlanTier.STARTER
        usage = await plan_service.get_usage(TENANT)
        assert usage[RULES_COUNTER] == 2
        assert usage[EXECUTIONS_COUNTER] == 0
        assert usage[SCENARIOS_COUNTER] == 0
        assert (await plan_service.get_usage(OTHER_TENANT))[RULES_COUNTER] == 0


# =============================================================================
# Tenant isolation
# =============================================================================

class TestTenantIsolation:

    def test_matching_tenant_passes_through(self):
        record = {"tenant_id": TENANT, "value": 1}
        assert ensure_tenant(tenant_ctx(), record) is record

    def test_foreign_record_is_rejected_without_leaking_it(self):
        record = {"tenant_id": OTHER_TENANT, "secret": "payroll"}
        with pytest.raises(TenantIsolationViolation) as exc:
            ensure_tenant(tenant_ctx(), record)
        assert "payroll" not in str(exc.value.to_dict())
        assert exc.value.to_dict() == {"error": "tenant_isolation_violation", "explanation": "Access denied."}

    @pytest.mark.asyncio
    async def test_audited_variant_writes_security_event(self, services, audit_events):
        with pytest.raises(TenantIsolationViolation):
            await ensure_tenant_audited(tenant_ctx(), {"tenant_id": OTHER_TENANT}, services.audit)

        events = audit_events.of_type("security_violation")
        assert len(events) == 1
        assert events[0].tenant_id == TENANT
        assert events[0].entity_type == "dict"

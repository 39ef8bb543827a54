"""
Tenancy module.

Every core call receives an explicit TenantContext instead of reading
ambient request state. Plan limits are enforced by PlanLimitGuard, which
fails closed when the plan service cannot be reached.
"""
from .context import TenantContext, ensure_tenant, ensure_tenant_audited
from .plans import (
    PlanTier,
    PlanLimits,
    PLAN_LIMITS,
    PlanService,
    StaticPlanService,
    RepositoryPlanService,
    PlanLimitGuard,
)

__all__ = [
    "TenantContext",
    "ensure_tenant",
    "ensure_tenant_audited",
    "PlanTier",
    "PlanLimits",
    "PLAN_LIMITS",
    "PlanService",
    "StaticPlanService",
    "RepositoryPlanService",
    "PlanLimitGuard",
]

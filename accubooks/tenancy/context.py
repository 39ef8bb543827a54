"""Explicit tenant context and the isolation guard."""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from accubooks.base import generate_id
from accubooks.errors import TenantIsolationViolation

security_logger = logging.getLogger("accubooks.security")


@dataclass(frozen=True)
class TenantContext:
    """Identity and plan of the caller, passed to every core operation."""
    tenant_id: str
    plan_tier: str = "STARTER"
    usage_counters: Dict[str, int] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: generate_id("req"))

    def usage(self, counter: str) -> int:
        return int(self.usage_counters.get(counter, 0))

    def with_usage(self, **counters: int) -> "TenantContext":
        merged = dict(self.usage_counters)
        merged.update(counters)
        return replace(self, usage_counters=merged)


def _owner_of(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        return obj.get("tenant_id")
    return getattr(obj, "tenant_id", None)


def ensure_tenant(ctx: TenantContext, obj: Any) -> Any:
    """
    Return obj if it belongs to the caller's tenant.

    A mismatch is a hard failure: it is logged as a security event and no
    part of obj is returned or included in the error.
    """
    if _owner_of(obj) != ctx.tenant_id:
        entity = type(obj).__name__
        security_logger.error(
            f"Tenant isolation violation: tenant {ctx.tenant_id} "
            f"(request {ctx.request_id}) accessed {entity} owned by another tenant"
        )
        raise TenantIsolationViolation(f"{entity} is not accessible from this tenant.")
    return obj


async def ensure_tenant_audited(ctx: TenantContext, obj: Any, audit: Any) -> Any:
    """ensure_tenant, also writing the violation to the audit sink."""
    try:
        return ensure_tenant(ctx, obj)
    except TenantIsolationViolation:
        await audit.log_security_event(
            tenant_id=ctx.tenant_id,
            entity_type=type(obj).__name__,
            request_id=ctx.request_id,
        )
        raise

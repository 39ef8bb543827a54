"""FastAPI dependencies for the service container and tenant context."""
from dataclasses import replace
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from accubooks.services import CoreServices
from accubooks.tenancy import TenantContext
from accubooks.tenancy.plans import limits_for

TENANT_HEADER = "X-Tenant-Id"


def get_services(request: Request) -> CoreServices:
    """Dependency returning the container built at startup."""
    return request.app.state.services


async def get_tenant_context(
    request: Request,
    x_tenant_id: Optional[str] = Header(None),
    x_plan_tier: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
) -> TenantContext:
    """
    Dependency building the explicit TenantContext for a request.

    Authentication happens upstream; the gateway asserts the tenant and
    its plan tier in headers. Raises 401 without a tenant and 400 for an
    unknown tier.
    """
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {TENANT_HEADER} header",
        )

    ctx = TenantContext(tenant_id=x_tenant_id)
    if x_plan_tier:
        try:
            tier = limits_for(x_plan_tier).tier
        except (KeyError, ValueError):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown plan tier: {x_plan_tier}",
            )

        plan_service = get_services(request).plan_service
        if hasattr(plan_service, "assign_tier"):
            plan_service.assign_tier(x_tenant_id, tier)
        ctx = replace(ctx, plan_tier=tier.value)

    if x_request_id:
        ctx = replace(ctx, request_id=x_request_id)
    return ctx

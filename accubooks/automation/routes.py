"""Automation API routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from accubooks.dependencies import get_services, get_tenant_context
from accubooks.errors import NotFoundError
from accubooks.tenancy import TenantContext
from . import schemas
from .catalog import ACTION_CATALOG, TRIGGER_CATALOG
from .types import (
    AutomationExecution,
    AutomationRule,
    DryRunPreview,
    RuleDraft,
    RuleStatus,
    TriggerOutcome,
)

router = APIRouter()


# ============================================================================
# CATALOG
# ============================================================================

@router.get("/catalog", response_model=schemas.CatalogResponse)
async def get_catalog(services=Depends(get_services)):
    """List every trigger and action type with its config keys and required params."""
    return schemas.CatalogResponse(
        triggers=[
            schemas.CatalogEntry(
                type=t.value,
                name=info["name"],
                description=info["description"],
                category=info["category"].value,
                config_keys=info["config_keys"],
            )
            for t, info in TRIGGER_CATALOG.items()
        ],
        actions=[
            schemas.CatalogEntry(
                type=a.value,
                name=info["name"],
                description=info["description"],
                required_params=info["required_params"],
            )
            for a, info in ACTION_CATALOG.items()
        ],
        registered_actions=[a.value for a in services.executor.registry.registered_types],
    )


# ============================================================================
# RULE ROUTES
# ============================================================================

@router.post("/rules", response_model=AutomationRule, status_code=201)
async def create_rule(
    data: RuleDraft,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """Create an automation rule. Validated and plan-checked before it is saved."""
    return await services.orchestrator.create_rule(ctx, data)


@router.get("/rules", response_model=List[AutomationRule])
async def list_rules(
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.orchestrator.list_rules(ctx)


@router.post("/rules/preview", response_model=DryRunPreview)
async def preview_rule(
    data: schemas.RulePreviewRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Dry-run an unsaved rule against a sample event.

    Returns the condition trace and the actions the rule would run, with
    their parameters rendered from the event. Nothing is persisted.
    """
    return await services.orchestrator.preview_rule(ctx, data.rule, data.event.to_event(ctx.tenant_id))


@router.get("/rules/{rule_id}", response_model=AutomationRule)
async def get_rule(
    rule_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.orchestrator.get_rule(ctx, rule_id)


@router.get("/rules/{rule_id}/versions", response_model=List[AutomationRule])
async def get_rule_versions(
    rule_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """Every stored version of a rule, oldest first."""
    versions = await services.repository.get_rule_versions(ctx.tenant_id, rule_id)
    if not versions:
        raise NotFoundError(f"Rule {rule_id} not found.")
    return versions


@router.put("/rules/{rule_id}/status", response_model=AutomationRule)
async def update_rule_status(
    rule_id: str,
    data: schemas.RuleStatusUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """Enable, disable or park a rule. Creates a new rule version."""
    return await services.orchestrator.set_rule_status(ctx, rule_id, RuleStatus(data.status), data.reason)


@router.post("/rules/{rule_id}/execute", response_model=schemas.ExecutionResponse)
async def execute_rule(
    rule_id: str,
    data: schemas.ExecuteRuleRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Run a rule's actions for an explicit context.

    Returns once the first attempt is done. Replaying an idempotency key
    returns the original execution with ``replayed`` set.
    """
    rule = await services.orchestrator.get_rule(ctx, rule_id)
    handle = await services.orchestrator.execute_automation(ctx, rule, data.context, data.idempotency_key)
    execution = await handle.wait_idle()
    return schemas.ExecutionResponse(execution=execution, replayed=handle.replayed)


# ============================================================================
# TRIGGER ROUTES
# ============================================================================

@router.post("/triggers", response_model=TriggerOutcome)
async def handle_trigger(
    data: schemas.HandleTriggerRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Deliver an event to the tenant's rules.

    With ``dry_run`` the response carries a preview per candidate rule and
    nothing is executed or persisted.
    """
    return await services.orchestrator.handle_trigger(ctx, data.to_event(ctx.tenant_id), dry_run=data.dry_run)


# ============================================================================
# EXECUTION ROUTES
# ============================================================================

@router.get("/executions", response_model=List[AutomationExecution])
async def list_executions(
    rule_id: Optional[str] = Query(None),
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.orchestrator.list_executions(ctx, rule_id)


@router.get("/executions/{execution_id}", response_model=AutomationExecution)
async def get_execution(
    execution_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.orchestrator.get_execution(ctx, execution_id)


@router.post("/executions/{execution_id}/cancel", response_model=AutomationExecution)
async def cancel_execution(
    execution_id: str,
    data: schemas.CancelExecutionRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """Cooperative cancel: a running action finishes, later actions do not start."""
    return await services.orchestrator.cancel_execution(ctx, execution_id, data.reason)

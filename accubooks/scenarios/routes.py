"""Scenario Analysis API routes."""
from typing import List

from fastapi import APIRouter, Depends

from accubooks.dependencies import get_services, get_tenant_context
from accubooks.tenancy import TenantContext
from .schemas import SimulateScenarioRequest
from .types import Scenario

router = APIRouter()


@router.post("", response_model=Scenario, status_code=201)
async def simulate_scenario(
    data: SimulateScenarioRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Simulate a scenario against a baseline cash-runway forecast.

    Recommendations in the response are advisory. Acting on one means
    submitting a new scenario with its ``proposed_params``.
    """
    engine = services.scenarios
    baseline = await engine.resolve_baseline(
        ctx,
        forecast_id=data.baseline_forecast_id,
        current_cash=data.current_cash,
        monthly_burn_rate=data.monthly_burn_rate,
        monthly_inflow=data.monthly_inflow,
    )
    return await engine.simulate_scenario(ctx, data.scenario_type, data.params, baseline, name=data.name)


@router.get("", response_model=List[Scenario])
async def list_scenarios(
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.scenarios.list_scenarios(ctx)


@router.get("/{scenario_id}", response_model=Scenario)
async def get_scenario(
    scenario_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.scenarios.get_scenario(ctx, scenario_id)

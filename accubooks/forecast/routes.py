"""Forecast API routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from accubooks.dependencies import get_services, get_tenant_context
from accubooks.tenancy import TenantContext
from .schemas import GenerateForecastRequest
from .types import FinancialForecast, ForecastType

router = APIRouter()


@router.post("", response_model=FinancialForecast, status_code=201)
async def generate_forecast(
    data: GenerateForecastRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Generate and store a forecast.

    The response shows the formula, the calculation with numbers filled in,
    the inputs and the assumptions. If the data cannot support a number the
    forecast is returned with ``is_defined`` false and the reason listed
    under assumptions.
    """
    return await services.forecasting.generate_forecast(ctx, data.forecast_type, data.window())


@router.get("", response_model=List[FinancialForecast])
async def list_forecasts(
    forecast_type: Optional[ForecastType] = Query(None),
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.forecasting.list_forecasts(ctx, forecast_type)


@router.get("/{forecast_id}", response_model=FinancialForecast)
async def get_forecast(
    forecast_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.forecasting.get_forecast(ctx, forecast_id)

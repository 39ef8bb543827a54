"""Smart insight API routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from accubooks.dependencies import get_services, get_tenant_context
from accubooks.tenancy import TenantContext
from .schemas import DismissInsightRequest, GenerateInsightsRequest
from .types import InsightSeverity, InsightType, SmartInsight

router = APIRouter()


@router.post("/generate", response_model=List[SmartInsight])
async def generate_insights(
    data: GenerateInsightsRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    """
    Run every detector over the window and return the new insights.

    Detectors without enough data are skipped and recorded in the audit
    log. Insights already raised in the last 24 hours are not repeated.
    """
    return await services.insights.generate_insights(ctx, data.window())


@router.get("", response_model=List[SmartInsight])
async def list_active_insights(
    insight_type: Optional[InsightType] = Query(None),
    severity: Optional[InsightSeverity] = Query(None),
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.insights.list_active(ctx, insight_type, severity)


@router.get("/{insight_id}", response_model=SmartInsight)
async def get_insight(
    insight_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.insights.get_insight(ctx, insight_id)


@router.post("/{insight_id}/dismiss", response_model=SmartInsight)
async def dismiss_insight(
    insight_id: str,
    data: DismissInsightRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services=Depends(get_services),
):
    return await services.insights.dismiss(ctx, insight_id, data.reason)

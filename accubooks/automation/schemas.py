"""Pydantic schemas for the automation API."""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .types import AutomationExecution, RuleDraft, TriggerEvent, TriggerType


# =============================================================================
# Rules
# =============================================================================

class RuleStatusUpdate(BaseModel):
    """Users may enable, disable or park a rule as draft. Auto-pause is system-only."""
    status: Literal["enabled", "disabled", "draft"]
    reason: Optional[str] = None


class TriggerEventRequest(BaseModel):
    trigger_type: TriggerType
    payload: Dict[str, Any] = Field(default_factory=dict)
    event_id: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def to_event(self, tenant_id: str) -> TriggerEvent:
        data = {
            "tenant_id": tenant_id,
            "trigger_type": self.trigger_type,
            "payload": self.payload,
            "occurred_at": self.occurred_at,
        }
        if self.event_id:
            data["event_id"] = self.event_id
        return TriggerEvent(**data)


class RulePreviewRequest(BaseModel):
    """Dry-run an unsaved rule against a sample event."""
    rule: RuleDraft
    event: TriggerEventRequest


# =============================================================================
# Triggers & executions
# =============================================================================

class HandleTriggerRequest(TriggerEventRequest):
    dry_run: bool = False


class ExecuteRuleRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None


class CancelExecutionRequest(BaseModel):
    reason: str = "Cancelled by user"


class ExecutionResponse(BaseModel):
    execution: AutomationExecution
    replayed: bool = False


# =============================================================================
# Catalog
# =============================================================================

class CatalogEntry(BaseModel):
    type: str
    name: str
    description: str
    category: Optional[str] = None
    config_keys: List[str] = Field(default_factory=list)
    required_params: List[str] = Field(default_factory=list)


class CatalogResponse(BaseModel):
    triggers: List[CatalogEntry]
    actions: List[CatalogEntry]
    registered_actions: List[str]

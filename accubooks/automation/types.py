"""
Automation Types - Core Data Structures.

- AutomationRule: immutable, versioned rule (trigger + condition tree + ordered actions)
- AutomationExecution: one run of a rule's actions, driven through a state machine
- MatchResult / DryRunPreview: explainable evaluation outputs
- TriggerEvent: an incoming event or schedule tick
"""

from enum import Enum
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from accubooks.base import generate_id
from .conditions import ConditionNode, TraceEntry


# =============================================================================
# ENUMS
# =============================================================================

class TriggerCategory(str, Enum):
    EVENT = "event"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class TriggerType(str, Enum):
    """All supported trigger types."""
    # Event-based
    INVOICE_CREATED = "invoice_created"
    INVOICE_OVERDUE = "invoice_overdue"
    INVOICE_PAID = "invoice_paid"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    EXPENSE_CREATED = "expense_created"
    EXPENSE_THRESHOLD_EXCEEDED = "expense_threshold_exceeded"
    BANK_TRANSACTION_IMPORTED = "bank_transaction_imported"
    CASH_BALANCE_LOW = "cash_balance_low"
    BUDGET_THRESHOLD_REACHED = "budget_threshold_reached"
    CUSTOMER_CREATED = "customer_created"
    INSIGHT_GENERATED = "insight_generated"
    FORECAST_UPDATED = "forecast_updated"

    # Scheduled
    SCHEDULE_DAILY = "schedule_daily"
    SCHEDULE_WEEKLY = "schedule_weekly"
    SCHEDULE_MONTHLY = "schedule_monthly"
    SCHEDULE_INTERVAL = "schedule_interval"

    # Manual
    MANUAL = "manual"


class ActionType(str, Enum):
    """All supported action types."""
    SEND_EMAIL = "send_email"
    SEND_NOTIFICATION = "send_notification"
    CALL_WEBHOOK = "call_webhook"
    GENERATE_REPORT = "generate_report"
    LOCK_ACCOUNT = "lock_account"
    CREATE_TASK = "create_task"
    FLAG_TRANSACTION = "flag_transaction"
    SEND_PAYMENT_REMINDER = "send_payment_reminder"
    CATEGORIZE_TRANSACTION = "categorize_transaction"
    ESCALATE_FOR_REVIEW = "escalate_for_review"


class RuleStatus(str, Enum):
    DRAFT = "draft"
    ENABLED = "enabled"
    DISABLED = "disabled"
    AUTO_PAUSED = "auto_paused"  # Disabled by the system after repeated failures


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYING = "retrying"
    SKIPPED = "skipped"      # Denied by plan limits
    CANCELLED = "cancelled"  # Cooperative cancellation between actions


ALLOWED_TRANSITIONS: Dict[ExecutionStatus, Tuple[ExecutionStatus, ...]] = {
    ExecutionStatus.PENDING: (ExecutionStatus.RUNNING, ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED),
    ExecutionStatus.RUNNING: (
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.RETRYING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    ),
    ExecutionStatus.RETRYING: (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED),
    ExecutionStatus.SUCCEEDED: (),
    ExecutionStatus.FAILED: (),
    ExecutionStatus.SKIPPED: (),
    ExecutionStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


class ActionResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# =============================================================================
# RULES
# =============================================================================

class RuleAction(BaseModel):
    """One step of a rule's ordered action list."""
    model_config = ConfigDict(frozen=True)

    action_type: ActionType
    params: Dict[str, Any] = Field(default_factory=dict)


class AutomationRule(BaseModel):
    """
    A persisted automation rule.

    Rules are immutable. Status changes produce a new version via
    ``next_version``; the condition tree is never touched.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("rule"))
    tenant_id: str
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    condition_tree: Optional[ConditionNode] = None
    actions: Tuple[RuleAction, ...]
    status: RuleStatus = RuleStatus.DRAFT
    version: int = 1
    status_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.status == RuleStatus.ENABLED

    def next_version(self, status: RuleStatus, reason: Optional[str], at: datetime) -> "AutomationRule":
        return self.model_copy(update={
            "status": status,
            "status_reason": reason,
            "version": self.version + 1,
            "updated_at": at,
        })


class RuleDraft(BaseModel):
    """Unvalidated rule input, as submitted by a rule author."""
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    condition_tree: Optional[Dict[str, Any]] = None
    actions: List[RuleAction]
    enabled: bool = True


# =============================================================================
# EVENTS & MATCHING
# =============================================================================

class TriggerEvent(BaseModel):
    """An incoming event or schedule tick."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: generate_id("evt"))
    tenant_id: str
    trigger_type: TriggerType
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class MatchResult(BaseModel):
    """Result of evaluating one rule against one fact context."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_version: int
    matched: bool
    trace: Tuple[TraceEntry, ...]
    warnings: Tuple[str, ...] = ()
    explanation: str


class IntendedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    action_type: ActionType
    params: Dict[str, Any]
    sink_registered: bool


class DryRunPreview(BaseModel):
    """What a rule would do for an event, without doing it."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_name: str
    matched: bool
    trace: Tuple[TraceEntry, ...]
    warnings: Tuple[str, ...] = ()
    intended_actions: Tuple[IntendedAction, ...] = ()
    plan_allowed: bool
    explanation: str


# =============================================================================
# EXECUTIONS
# =============================================================================

class ActionResult(BaseModel):
    """Result returned by an action sink."""
    model_config = ConfigDict(frozen=True)

    status: ActionResultStatus
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, **output) -> "ActionResult":
        return cls(status=ActionResultStatus.SUCCEEDED, output=output)

    @classmethod
    def failure(cls, error: str, **output) -> "ActionResult":
        return cls(status=ActionResultStatus.FAILED, output=output, error=error)

    @property
    def ok(self) -> bool:
        return self.status == ActionResultStatus.SUCCEEDED


class ActionOutcome(BaseModel):
    """Per-action record kept on an execution."""
    action_index: int
    action_type: ActionType
    status: ActionResultStatus
    attempts: int
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    replayed: bool = False
    finished_at: datetime


class AutomationExecution(BaseModel):
    """One run of a rule. Mutated only by the orchestrator's state machine."""
    id: str = Field(default_factory=lambda: generate_id("exec"))
    rule_id: str
    rule_version: int
    tenant_id: str
    triggered_at: datetime
    trigger_event_id: Optional[str] = None
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    condition_trace: List[TraceEntry] = Field(default_factory=list)
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt_count: int = 0
    next_retry_at: Optional[datetime] = None
    current_action_index: int = 0
    per_action_results: List[ActionOutcome] = Field(default_factory=list)
    idempotency_key: str
    fingerprint: str
    explanation: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TriggerOutcome(BaseModel):
    """Summary of handling one trigger event."""
    event_id: str
    tenant_id: str
    trigger_type: TriggerType
    candidates: int = 0
    matched_rule_ids: List[str] = Field(default_factory=list)
    execution_ids: List[str] = Field(default_factory=list)
    previews: List[DryRunPreview] = Field(default_factory=list)
    dry_run: bool = False
    denied: bool = False
    explanation: Optional[str] = None

"""
Automation - event- and schedule-driven rules with explainable execution.

Rules pair a trigger with a condition tree and an ordered list of actions.
The orchestrator evaluates, executes, retries and audits them.
"""

from .types import (
    TriggerType,
    ActionType,
    RuleStatus,
    ExecutionStatus,
    RuleAction,
    RuleDraft,
    AutomationRule,
    AutomationExecution,
    TriggerEvent,
    MatchResult,
    DryRunPreview,
    TriggerOutcome,
    ActionResult,
)
from .conditions import ConditionOperator, evaluate, parse_condition_tree
from .executor import ActionExecutor, RetryPolicy
from .orchestrator import AutomationOrchestrator, ExecutionHandle
from .scheduler import AutomationScheduler, setup_apscheduler
from .triggers import TriggerDispatcher

__all__ = [
    # Types
    "TriggerType",
    "ActionType",
    "RuleStatus",
    "ExecutionStatus",
    "RuleAction",
    "RuleDraft",
    "AutomationRule",
    "AutomationExecution",
    "TriggerEvent",
    "MatchResult",
    "DryRunPreview",
    "TriggerOutcome",
    "ActionResult",
    # Conditions
    "ConditionOperator",
    "evaluate",
    "parse_condition_tree",
    # Engine
    "ActionExecutor",
    "RetryPolicy",
    "AutomationOrchestrator",
    "ExecutionHandle",
    "TriggerDispatcher",
    "AutomationScheduler",
    "setup_apscheduler",
]

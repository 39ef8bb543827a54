"""
Rule authoring and evaluation.

build_rule() validates a RuleDraft before anything is persisted.
evaluate_rule() is the pure matcher used by the dispatcher, the orchestrator
and dry runs.
"""
import re
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from accubooks.errors import ValidationError
from .catalog import ACTION_CATALOG, is_scheduled
from .conditions import MISSING, evaluate, parse_condition_tree, resolve_field
from .facts import thaw
from .types import AutomationRule, MatchResult, RuleDraft, RuleStatus, TriggerType

TEMPLATE_PATTERN = re.compile(r"\$\{([A-Za-z0-9_.]+)\}")


def _check_int(config: Dict[str, Any], key: str, low: int, high: int, required: bool = False) -> None:
    if key not in config:
        if required:
            raise ValidationError(f"Trigger config needs '{key}'.")
        return
    value = config[key]
    if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ValidationError(f"Trigger config '{key}' must be an integer between {low} and {high}.")


def validate_trigger_config(trigger_type: TriggerType, config: Dict[str, Any]) -> None:
    if is_scheduled(trigger_type):
        _check_int(config, "hour", 0, 23)
        if trigger_type == TriggerType.SCHEDULE_WEEKLY:
            _check_int(config, "weekday", 0, 6, required=True)
        elif trigger_type == TriggerType.SCHEDULE_MONTHLY:
            _check_int(config, "day_of_month", 1, 31, required=True)
        elif trigger_type == TriggerType.SCHEDULE_INTERVAL:
            _check_int(config, "every_minutes", 1, 60 * 24 * 31, required=True)
        return

    filters = config.get("filters", {})
    if not isinstance(filters, dict):
        raise ValidationError("Trigger config 'filters' must map payload fields to expected values.")


def build_rule(
    tenant_id: str,
    draft: RuleDraft,
    created_at: datetime,
    max_depth: Optional[int] = None,
    max_nodes: Optional[int] = None,
) -> AutomationRule:
    """Validate a draft and return the immutable rule. Raises ValidationError."""
    if not draft.name or not draft.name.strip():
        raise ValidationError("Rule name is required.")
    if not draft.actions:
        raise ValidationError("A rule needs at least one action.")

    validate_trigger_config(draft.trigger_type, draft.trigger_config)

    for index, action in enumerate(draft.actions):
        required = ACTION_CATALOG[action.action_type]["required_params"]
        missing = [p for p in required if action.params.get(p) in (None, "")]
        if missing:
            raise ValidationError(
                f"Action {index + 1} ({action.action_type.value}) is missing required params: "
                f"{', '.join(missing)}."
            )

    tree = parse_condition_tree(draft.condition_tree, max_depth=max_depth, max_nodes=max_nodes)

    return AutomationRule(
        tenant_id=tenant_id,
        name=draft.name.strip(),
        description=draft.description,
        trigger_type=draft.trigger_type,
        trigger_config=draft.trigger_config,
        condition_tree=tree,
        actions=tuple(draft.actions),
        status=RuleStatus.ENABLED if draft.enabled else RuleStatus.DRAFT,
        created_at=created_at,
    )


def evaluate_rule(rule: AutomationRule, context: Mapping[str, Any]) -> MatchResult:
    """Evaluate a rule's condition tree. Deterministic for identical inputs."""
    result = evaluate(rule.condition_tree, context)
    return MatchResult(
        rule_id=rule.id,
        rule_version=rule.version,
        matched=result.matched,
        trace=result.trace,
        warnings=result.warnings,
        explanation=result.explain(),
    )


def render_params(params: Any, context: Mapping[str, Any]) -> Any:
    """
    Substitute ``${path}`` references with values from the fact context.

    A string that is exactly one reference keeps the referenced value's type.
    Unknown references are left as written.
    """
    if isinstance(params, dict):
        return {k: render_params(v, context) for k, v in params.items()}
    if isinstance(params, (list, tuple)):
        return [render_params(v, context) for v in params]
    if not isinstance(params, str):
        return params

    whole = TEMPLATE_PATTERN.fullmatch(params)
    if whole:
        value = resolve_field(context, whole.group(1))
        return params if value is MISSING else thaw(value)

    def _sub(match):
        value = resolve_field(context, match.group(1))
        return match.group(0) if value is MISSING else str(value)

    return TEMPLATE_PATTERN.sub(_sub, params)

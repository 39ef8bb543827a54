"""
Trigger Dispatcher.

Turns an event or schedule tick into evaluated rule candidates:
1. Load the tenant's enabled rules for the event's trigger type
2. Keep those whose trigger config matches (event filters, schedule slot)
3. Build a read-only fact context: payload + tenant state snapshot
4. Evaluate each candidate's condition tree
"""
import logging
from calendar import monthrange
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping

from accubooks.tenancy import TenantContext, ensure_tenant
from .catalog import is_scheduled
from .conditions import MISSING, resolve_field, values_equal
from .facts import freeze
from .rules import evaluate_rule
from .types import AutomationRule, MatchResult, RuleStatus, TriggerEvent, TriggerType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleCandidate:
    rule: AutomationRule
    context: Mapping[str, Any]
    match: MatchResult


def schedule_matches(rule: AutomationRule, tick: datetime) -> bool:
    """Does a schedule tick (minute resolution) fall in the rule's slot?"""
    config = rule.trigger_config
    if rule.trigger_type == TriggerType.SCHEDULE_INTERVAL:
        every = int(config.get("every_minutes", 60))
        minute_index = int(tick.timestamp() // 60)
        return minute_index % every == 0

    if tick.minute != 0 or tick.hour != int(config.get("hour", 0)):
        return False
    if rule.trigger_type == TriggerType.SCHEDULE_DAILY:
        return True
    if rule.trigger_type == TriggerType.SCHEDULE_WEEKLY:
        return tick.weekday() == int(config.get("weekday", 0))
    if rule.trigger_type == TriggerType.SCHEDULE_MONTHLY:
        # Day 31 on a 30-day month runs on the 30th
        wanted = min(int(config.get("day_of_month", 1)), monthrange(tick.year, tick.month)[1])
        return tick.day == wanted
    return False


def filters_match(rule: AutomationRule, payload: Mapping[str, Any]) -> bool:
    for path, expected in rule.trigger_config.get("filters", {}).items():
        actual = resolve_field(payload, path)
        if actual is MISSING:
            return False
        if isinstance(expected, list):
            if not any(values_equal(actual, item) for item in expected):
                return False
        elif not values_equal(actual, expected):
            return False
    return True


class TriggerDispatcher:

    def __init__(self, repository, data_provider, clock):
        self.repository = repository
        self.data_provider = data_provider
        self.clock = clock

    def trigger_matches(self, rule: AutomationRule, event: TriggerEvent) -> bool:
        if rule.trigger_type != event.trigger_type:
            return False
        if is_scheduled(rule.trigger_type):
            return schedule_matches(rule, event.occurred_at or self.clock.now())
        return filters_match(rule, event.payload)

    async def candidate_rules(self, ctx: TenantContext, event: TriggerEvent) -> List[AutomationRule]:
        rules = await self.repository.list_rules(
            ctx.tenant_id, trigger_type=event.trigger_type, status=RuleStatus.ENABLED,
        )
        candidates = []
        for rule in rules:
            ensure_tenant(ctx, rule)
            if rule.is_enabled and self.trigger_matches(rule, event):
                candidates.append(rule)
        return sorted(candidates, key=lambda r: (r.created_at, r.id))

    async def build_context(self, ctx: TenantContext, event: TriggerEvent) -> Mapping[str, Any]:
        """
        Event payload merged with the tenant state snapshot.

        ``tenant`` and ``event`` are reserved top-level keys filled in by the
        dispatcher; payload keys with those names are ignored.
        """
        state = await self.data_provider.get_tenant_state(ctx.tenant_id)
        facts: Dict[str, Any] = {k: v for k, v in event.payload.items() if k not in ("tenant", "event")}
        facts["tenant"] = dict(state or {})
        facts["event"] = {
            "id": event.event_id,
            "tenant_id": event.tenant_id,
            "type": event.trigger_type.value,
            "occurred_at": (event.occurred_at or self.clock.now()).isoformat(),
        }
        return freeze(facts)

    async def dispatch(self, ctx: TenantContext, event: TriggerEvent) -> List[RuleCandidate]:
        ensure_tenant(ctx, event)
        rules = await self.candidate_rules(ctx, event)
        if not rules:
            logger.debug(f"No rules for {event.trigger_type.value} on tenant {ctx.tenant_id}")
            return []

        context = await self.build_context(ctx, event)

        matches = [evaluate_rule(rule, context) for rule in rules]
        logger.info(
            f"Event {event.event_id} ({event.trigger_type.value}) for tenant {ctx.tenant_id}: "
            f"{sum(1 for m in matches if m.matched)}/{len(rules)} rules matched"
        )
        return [RuleCandidate(rule=r, context=context, match=m) for r, m in zip(rules, matches)]

"""
Action sinks - side effects performed when a rule matches.

Each sink implements:
- execute(params, context): perform the action and return an ActionResult

Sinks are registered per ActionType in an ActionRegistry. New action kinds
are added by registering a sink, never by subclassing the executor.
"""

from typing import Dict, List, Optional, Protocol, Any, Mapping

from accubooks.automation.types import ActionType, ActionResult


class ActionSink(Protocol):
    async def execute(self, params: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        ...


class ActionRegistry:
    """Maps each ActionType to exactly one sink."""

    def __init__(self, sinks: Optional[Dict[ActionType, ActionSink]] = None):
        self._sinks: Dict[ActionType, ActionSink] = {}
        for action_type, sink in (sinks or {}).items():
            self.register(action_type, sink)

    def register(self, action_type: ActionType, sink: ActionSink) -> None:
        self._sinks[ActionType(action_type)] = sink

    def get(self, action_type: ActionType) -> Optional[ActionSink]:
        return self._sinks.get(ActionType(action_type))

    def has(self, action_type: ActionType) -> bool:
        return ActionType(action_type) in self._sinks

    @property
    def registered_types(self) -> List[ActionType]:
        return sorted(self._sinks, key=lambda t: t.value)


def default_registry(outbox: Optional["OutboxActionSink"] = None, http_client=None) -> ActionRegistry:
    """
    Registry used by the application.

    Webhooks are called directly; every other action is written to the
    outbox for the owning service (mailer, ledger, task tracker) to deliver.
    """
    from accubooks.automation.actions.sinks import OutboxActionSink, WebhookActionSink

    outbox = outbox or OutboxActionSink()
    registry = ActionRegistry()
    for action_type in ActionType:
        if action_type == ActionType.CALL_WEBHOOK:
            registry.register(action_type, WebhookActionSink(client=http_client))
        else:
            registry.register(action_type, outbox.for_type(action_type))
    return registry

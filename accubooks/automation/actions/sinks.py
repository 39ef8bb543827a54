"""Built-in action sinks."""
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from accubooks.automation.facts import thaw
from accubooks.automation.types import ActionResult, ActionType
from accubooks.base import generate_id
from accubooks.errors import ActionExecutionError

logger = logging.getLogger(__name__)


class WebhookActionSink:
    """
    POSTs the rendered params and fact context to ``params["url"]``.

    5xx responses and network errors are transient; 4xx responses are
    permanent, since retrying the same request cannot succeed.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0):
        self._client = client
        self.timeout = timeout

    async def execute(self, params: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        url = params["url"]
        body = {
            "payload": params.get("body", {}),
            "context": thaw(context),
        }
        headers = dict(params.get("headers", {}))
        if params.get("idempotency_key"):
            headers["Idempotency-Key"] = params["idempotency_key"]

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise ActionExecutionError(f"Webhook request to {url} failed: {e}", transient=True) from e

        if response.status_code >= 500:
            raise ActionExecutionError(
                f"Webhook {url} returned {response.status_code}", transient=True,
            )
        if response.status_code >= 400:
            raise ActionExecutionError(
                f"Webhook {url} rejected the request with {response.status_code}", transient=False,
            )
        return ActionResult.success(status_code=response.status_code)


class OutboxActionSink:
    """
    Records action instructions for downstream delivery.

    The core never moves money or sends mail itself: it hands a fully
    rendered instruction to the service that owns the side effect.
    """

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    def for_type(self, action_type: ActionType) -> "_OutboxTypedSink":
        return _OutboxTypedSink(self, action_type)

    def append(self, action_type: ActionType, params: Dict[str, Any], context: Mapping[str, Any]) -> str:
        message_id = generate_id("outbox")
        event = context.get("event") or {}
        self.messages.append({
            "id": message_id,
            "action_type": action_type.value,
            "params": dict(params),
            "tenant_id": event.get("tenant_id") if isinstance(event, Mapping) else None,
            "queued_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"Queued {action_type.value} instruction {message_id}")
        return message_id


class _OutboxTypedSink:
    def __init__(self, outbox: OutboxActionSink, action_type: ActionType):
        self.outbox = outbox
        self.action_type = action_type

    async def execute(self, params: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        message_id = self.outbox.append(self.action_type, params, context)
        return ActionResult.success(outbox_id=message_id)


class FunctionActionSink:
    """Adapts a plain async callable into a sink."""

    def __init__(self, fn: Callable[[Dict[str, Any], Mapping[str, Any]], Awaitable[ActionResult]]):
        self.fn = fn

    async def execute(self, params: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        return await self.fn(params, context)

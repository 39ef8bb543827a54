"""Tests for the built-in action sinks."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from accubooks.automation.actions import default_registry
from accubooks.automation.actions.sinks import FunctionActionSink, OutboxActionSink, WebhookActionSink
from accubooks.automation.facts import freeze
from accubooks.automation.types import ActionResult, ActionResultStatus, ActionType
from accubooks.errors import ActionExecutionError

from conftest import TENANT

CONTEXT = freeze({"event": {"tenant_id": TENANT}, "invoice": {"id": "INV-1", "amount": 1500}})


def webhook(handler) -> WebhookActionSink:
    return WebhookActionSink(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestWebhookActionSink:

    @pytest.mark.asyncio
    async def test_posts_body_context_and_idempotency_key(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        result = await webhook(handler).execute(
            {"url": "https://hooks.example.com/overdue", "body": {"note": "chase"}, "idempotency_key": "k-1"},
            CONTEXT,
        )

        assert result.status == ActionResultStatus.SUCCEEDED
        assert result.output == {"status_code": 202}
        request = seen[0]
        assert request.headers["Idempotency-Key"] == "k-1"
        body = json.loads(request.content)
        assert body["payload"] == {"note": "chase"}
        assert body["context"]["invoice"] == {"id": "INV-1", "amount": 1500}

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        with pytest.raises(ActionExecutionError) as exc:
            await webhook(lambda request: httpx.Response(503)).execute({"url": "https://hooks.example.com"}, CONTEXT)
        assert exc.value.transient

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        with pytest.raises(ActionExecutionError) as exc:
            await webhook(lambda request: httpx.Response(404)).execute({"url": "https://hooks.example.com"}, CONTEXT)
        assert not exc.value.transient

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ActionExecutionError) as exc:
            await webhook(handler).execute({"url": "https://hooks.example.com"}, CONTEXT)
        assert exc.value.transient


class TestOutbox:

    @pytest.mark.asyncio
    async def test_default_registry_routes_to_outbox(self):
        outbox = OutboxActionSink()
        registry = default_registry(outbox=outbox)

        assert set(registry.registered_types) == set(ActionType)
        assert isinstance(registry.get(ActionType.CALL_WEBHOOK), WebhookActionSink)

        result = await registry.get(ActionType.SEND_NOTIFICATION).execute({"message": "Overdue"}, CONTEXT)
        [message] = outbox.messages
        assert result.output["outbox_id"] == message["id"]
        assert message["action_type"] == "send_notification"
        assert message["tenant_id"] == TENANT
        assert message["params"] == {"message": "Overdue"}

    @pytest.mark.asyncio
    async def test_function_sink_passes_params_and_context(self):
        fn = AsyncMock(return_value=ActionResult.success(done=True))
        result = await FunctionActionSink(fn).execute({"a": 1}, CONTEXT)

        fn.assert_awaited_once_with({"a": 1}, CONTEXT)
        assert result.output == {"done": True}

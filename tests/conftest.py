"""Shared test fixtures for the AccuBooks core tests."""
from datetime import datetime, timezone

import pytest

from accubooks.automation.actions import ActionRegistry
from accubooks.automation.actions.sinks import FunctionActionSink
from accubooks.automation.executor import RetryPolicy
from accubooks.automation.types import ActionResult, ActionType, RuleAction, RuleDraft, TriggerType
from accubooks.automation.worker_pool import WorkerPool
from accubooks.clock import ManualClock
from accubooks.data import InMemoryHistoricalDataProvider
from accubooks.services import build_services
from accubooks.tenancy import PlanTier, StaticPlanService, TenantContext

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
START = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)


class RecordingSink:
    """Action sink that records every call and answers from a script of results."""

    def __init__(self, results=None):
        self.calls = []
        self.results = list(results or [])

    async def execute(self, params, context):
        self.calls.append(dict(params))
        if self.results:
            outcome = self.results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ActionResult.success(call=len(self.calls))


def make_draft(name="Overdue reminder", trigger_type=TriggerType.INVOICE_OVERDUE, condition_tree=None,
               actions=None, trigger_config=None, enabled=True) -> RuleDraft:
    return RuleDraft(
        name=name,
        trigger_type=trigger_type,
        trigger_config=trigger_config or {},
        condition_tree=condition_tree,
        actions=actions or [RuleAction(action_type=ActionType.SEND_NOTIFICATION,
                                       params={"message": "Invoice ${invoice.id} is overdue"})],
        enabled=enabled,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def provider():
    return InMemoryHistoricalDataProvider()


@pytest.fixture
def plan_service():
    return StaticPlanService(tiers={
        TENANT: PlanTier.PROFESSIONAL,
        OTHER_TENANT: PlanTier.PROFESSIONAL,
    })


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def registry(sink):
    registry = ActionRegistry()
    for action_type in ActionType:
        registry.register(action_type, sink)
    return registry


@pytest.fixture
def services(clock, provider, plan_service, registry):
    return build_services(
        "memory",
        clock=clock,
        data_provider=provider,
        plan_service=plan_service,
        registry=registry,
        retry_policy=RetryPolicy(base_delay_minutes=5, factor=2, max_attempts=4),
        pool=WorkerPool(size=4, per_tenant=2, tenant_rate_limit="1000/minute"),
    )


@pytest.fixture
def ctx():
    return TenantContext(tenant_id=TENANT, plan_tier="PROFESSIONAL")


@pytest.fixture
def other_ctx():
    return TenantContext(tenant_id=OTHER_TENANT, plan_tier="PROFESSIONAL")


@pytest.fixture
def audit_events(services):
    return services.audit.sink


def function_sink(fn) -> FunctionActionSink:
    return FunctionActionSink(fn)

"""
Tests for the automation orchestrator, executor, dispatcher and scheduler.

Retries are driven by advancing a ManualClock and running the delayed task
queue, so nothing here sleeps.
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from accubooks.automation.actions import ActionRegistry
from accubooks.automation.executor import ActionExecutor, IdempotencyStore, RetryPolicy
from accubooks.automation.triggers import schedule_matches
from accubooks.automation.types import (
    ActionResult,
    ActionType,
    ExecutionStatus,
    RuleAction,
    RuleStatus,
    TriggerEvent,
    TriggerType,
)
from accubooks.automation.worker_pool import WorkerPool
from accubooks.errors import (
    ActionExecutionError,
    IdempotencyConflict,
    PlanLimitExceeded,
    TenantIsolationViolation,
    ValidationError,
)
from accubooks.tenancy import PlanTier
from accubooks.tenancy.plans import EXECUTIONS_COUNTER

from conftest import OTHER_TENANT, TENANT, RecordingSink, function_sink, make_draft


def overdue_event(amount=1500, event_id=None, tenant_id=TENANT):
    data = {
        "tenant_id": tenant_id,
        "trigger_type": TriggerType.INVOICE_OVERDUE,
        "payload": {"invoice": {"id": "INV-1", "amount": amount, "customer": "Acme"}},
    }
    if event_id:
        data["event_id"] = event_id
    return TriggerEvent(**data)


AMOUNT_OVER_1000 = {"kind": "atomic", "field": "invoice.amount", "operator": "gt", "value": 1000}


# =============================================================================
# Retry policy
# =============================================================================

class TestRetryPolicy:

    def test_default_schedule_is_5_10_20_minutes(self):
        policy = RetryPolicy()
        assert policy.schedule == [timedelta(minutes=5), timedelta(minutes=10), timedelta(minutes=20)]

    def test_should_retry(self):
        policy = RetryPolicy()
        assert policy.should_retry(1, transient=True)
        assert policy.should_retry(3, transient=True)
        assert not policy.should_retry(4, transient=True)
        assert not policy.should_retry(1, transient=False)


# =============================================================================
# Executor
# =============================================================================

class TestActionExecutor:

    @pytest.fixture
    def executor(self, sink):
        registry = ActionRegistry({ActionType.SEND_NOTIFICATION: sink})
        return ActionExecutor(registry, pool=WorkerPool(size=2, per_tenant=1, tenant_rate_limit="1000/minute"))

    @pytest.mark.asyncio
    async def test_replay_returns_cached_result(self, executor, sink):
        params = {"message": "hi"}
        first = await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, params, {}, "key-1")
        second = await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, params, {}, "key-1")

        assert first.ok and second.ok
        assert second.replayed
        assert second.result == first.result
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_replay_with_other_payload_conflicts(self, executor):
        await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, {"message": "a"}, {}, "key-1")
        with pytest.raises(IdempotencyConflict):
            await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, {"message": "b"}, {}, "key-1")

    def test_store_evicts_least_recently_used(self):
        store = IdempotencyStore(max_entries=2)
        store.put("a", "fp-a", ActionResult.success())
        store.put("b", "fp-b", ActionResult.success())
        store.get("a")
        store.put("c", "fp-c", ActionResult.success())

        assert len(store) == 2
        assert store.get("b") is None
        assert store.get("a")[0] == "fp-a"

    @pytest.mark.asyncio
    async def test_evicted_key_runs_again(self, sink):
        executor = ActionExecutor(
            ActionRegistry({ActionType.SEND_NOTIFICATION: sink}),
            pool=WorkerPool(size=2, per_tenant=1, tenant_rate_limit="1000/minute"),
            store=IdempotencyStore(max_entries=1),
        )
        params = {"message": "hi"}
        await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, params, {}, "key-1")
        await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, params, {}, "key-2")
        again = await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, params, {}, "key-1")

        assert not again.replayed
        assert len(sink.calls) == 3

    @pytest.mark.asyncio
    async def test_missing_sink_is_permanent(self, executor):
        outcome = await executor.attempt(TENANT, ActionType.LOCK_ACCOUNT, {"account_id": "1"}, {}, "key-2")
        assert not outcome.ok
        assert not outcome.transient

    @pytest.mark.asyncio
    async def test_permanent_sink_error(self, executor, sink):
        sink.results = [ActionExecutionError("bad address", transient=False)]
        outcome = await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, {"message": "a"}, {}, "key-3")
        assert outcome.result.error == "bad address"
        assert not outcome.transient

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        async def slow(params, context):
            await asyncio.sleep(1)
            return ActionResult.success()

        executor = ActionExecutor(
            ActionRegistry({ActionType.SEND_NOTIFICATION: function_sink(slow)}),
            pool=WorkerPool(size=1, per_tenant=1, tenant_rate_limit="1000/minute"),
            timeout_seconds=0.01,
        )
        outcome = await executor.attempt(TENANT, ActionType.SEND_NOTIFICATION, {"message": "a"}, {}, "key-4")
        assert not outcome.ok
        assert outcome.transient
        assert "timed out" in outcome.result.error


# =============================================================================
# Rules and plan limits
# =============================================================================

class TestRules:

    @pytest.mark.asyncio
    async def test_create_rule_is_audited(self, services, ctx, audit_events):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        assert rule.tenant_id == TENANT
        assert [e.entity_id for e in audit_events.of_type("rule_created")] == [rule.id]

    @pytest.mark.asyncio
    async def test_invalid_rule_is_not_persisted(self, services, ctx):
        draft = make_draft(condition_tree={"kind": "atomic", "field": "a", "operator": "nope", "value": 1})
        with pytest.raises(ValidationError):
            await services.orchestrator.create_rule(ctx, draft)
        assert await services.repository.count_rules(TENANT) == 0

    @pytest.mark.asyncio
    async def test_eleventh_rule_on_starter_is_denied(self, services, plan_service, ctx, audit_events):
        plan_service.tiers[TENANT] = PlanTier.STARTER
        for i in range(10):
            await services.orchestrator.create_rule(ctx, make_draft(name=f"Rule {i}"))

        with pytest.raises(PlanLimitExceeded) as exc:
            await services.orchestrator.create_rule(ctx, make_draft(name="Rule 11"))

        assert exc.value.suggested_plan == "PROFESSIONAL"
        assert exc.value.limit == 10
        assert await services.repository.count_rules(TENANT) == 10
        assert len(audit_events.of_type("plan_denied")) == 1

    @pytest.mark.asyncio
    async def test_unreachable_plan_service_denies(self, services, plan_service, ctx):
        del plan_service.tiers[TENANT]
        with pytest.raises(PlanLimitExceeded, match="could not be verified"):
            await services.orchestrator.create_rule(ctx, make_draft())
        assert await services.repository.count_rules(TENANT) == 0

    @pytest.mark.asyncio
    async def test_status_change_creates_new_version(self, services, ctx):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        disabled = await services.orchestrator.set_rule_status(ctx, rule.id, RuleStatus.DISABLED)

        versions = await services.repository.get_rule_versions(TENANT, rule.id)
        assert disabled.version == 2
        assert [v.status for v in versions] == [RuleStatus.ENABLED, RuleStatus.DISABLED]

    @pytest.mark.asyncio
    async def test_users_cannot_auto_pause(self, services, ctx):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        with pytest.raises(ValidationError):
            await services.orchestrator.set_rule_status(ctx, rule.id, RuleStatus.AUTO_PAUSED)

    @pytest.mark.asyncio
    async def test_rules_are_tenant_scoped(self, services, ctx, other_ctx):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        assert await services.orchestrator.list_rules(other_ctx) == []
        with pytest.raises(TenantIsolationViolation):
            await services.orchestrator.execute_automation(other_ctx, rule, {})


# =============================================================================
# Triggers
# =============================================================================

class TestHandleTrigger:

    @pytest.mark.asyncio
    async def test_matching_rule_runs_its_actions(self, services, ctx, sink, audit_events):
        rule = await services.orchestrator.create_rule(ctx, make_draft(condition_tree=AMOUNT_OVER_1000))

        outcome = await services.orchestrator.handle_trigger(ctx, overdue_event(1500))
        handle = await services.orchestrator.get_handle(ctx, outcome.execution_ids[0])
        execution = await handle.wait(timeout=5)

        assert outcome.matched_rule_ids == [rule.id]
        assert execution.status == ExecutionStatus.SUCCEEDED
        assert sink.calls[0]["message"] == "Invoice INV-1 is overdue"
        assert sink.calls[0]["idempotency_key"].endswith(":0")
        transitions = [e.to_status for e in audit_events.for_entity(execution.id)]
        assert transitions == ["pending", "running", "succeeded"]

    @pytest.mark.asyncio
    async def test_non_matching_rule_creates_no_execution(self, services, ctx, sink, audit_events):
        await services.orchestrator.create_rule(ctx, make_draft(condition_tree=AMOUNT_OVER_1000))
        outcome = await services.orchestrator.handle_trigger(ctx, overdue_event(500))

        assert outcome.candidates == 1
        assert outcome.execution_ids == []
        assert sink.calls == []
        assert len(audit_events.of_type("rule_no_match")) == 1

    @pytest.mark.asyncio
    async def test_trigger_filters(self, services, ctx):
        await services.orchestrator.create_rule(
            ctx, make_draft(trigger_config={"filters": {"invoice.customer": ["Globex"]}}),
        )
        outcome = await services.orchestrator.handle_trigger(ctx, overdue_event())
        assert outcome.candidates == 0

    @pytest.mark.asyncio
    async def test_dry_run_has_no_side_effects(self, services, ctx, sink):
        await services.orchestrator.create_rule(ctx, make_draft(condition_tree=AMOUNT_OVER_1000))
        outcome = await services.orchestrator.handle_trigger(ctx, overdue_event(1500), dry_run=True)

        preview = outcome.previews[0]
        assert preview.matched
        assert preview.plan_allowed
        assert preview.intended_actions[0].params["message"] == "Invoice INV-1 is overdue"
        assert outcome.execution_ids == []
        assert sink.calls == []
        assert await services.repository.list_executions(TENANT) == []

    @pytest.mark.asyncio
    async def test_preview_of_unsaved_rule(self, services, ctx):
        preview = await services.orchestrator.preview_rule(
            ctx, make_draft(condition_tree=AMOUNT_OVER_1000), overdue_event(200),
        )
        assert not preview.matched
        assert preview.intended_actions == ()
        assert await services.repository.count_rules(TENANT) == 0

    @pytest.mark.asyncio
    async def test_execution_limit_skips_matches(self, services, ctx, sink, audit_events):
        await services.orchestrator.create_rule(ctx, make_draft())
        limited = ctx.with_usage(**{EXECUTIONS_COUNTER: 5000})

        outcome = await services.orchestrator.handle_trigger(limited, overdue_event())
        execution = await services.orchestrator.get_execution(ctx, outcome.execution_ids[0])

        assert outcome.denied
        assert execution.status == ExecutionStatus.SKIPPED
        assert "plan limits" in execution.explanation
        assert sink.calls == []
        assert len(audit_events.of_type("plan_denied")) == 1

    @pytest.mark.asyncio
    async def test_cross_tenant_event_rejected(self, services, ctx, audit_events):
        with pytest.raises(TenantIsolationViolation):
            await services.orchestrator.handle_trigger(ctx, overdue_event(tenant_id=OTHER_TENANT))
        assert len(audit_events.of_type("security_violation")) == 1

    @pytest.mark.asyncio
    async def test_same_event_twice_runs_once(self, services, ctx, sink):
        await services.orchestrator.create_rule(ctx, make_draft())
        event = overdue_event(event_id="evt-fixed")

        first = await services.orchestrator.handle_trigger(ctx, event)
        handle = await services.orchestrator.get_handle(ctx, first.execution_ids[0])
        await handle.wait(timeout=5)
        second = await services.orchestrator.handle_trigger(ctx, event)

        assert second.execution_ids == first.execution_ids
        assert len(sink.calls) == 1


# =============================================================================
# Executions
# =============================================================================

class TestExecuteAutomation:

    @pytest.mark.asyncio
    async def test_idempotency_key_replay_single_side_effect(self, services, ctx, sink):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        context = {"invoice": {"id": "INV-9"}}

        first = await services.orchestrator.execute_automation(ctx, rule, context, idempotency_key="pay-9")
        await first.wait(timeout=5)
        second = await services.orchestrator.execute_automation(ctx, rule, context, idempotency_key="pay-9")

        assert second.replayed
        assert second.id == first.id
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_default_key_is_context_fingerprint(self, services, ctx, sink):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        first = await services.orchestrator.execute_automation(ctx, rule, {"invoice": {"id": "A"}})
        await first.wait(timeout=5)
        second = await services.orchestrator.execute_automation(ctx, rule, {"invoice": {"id": "A"}})
        third = await services.orchestrator.execute_automation(ctx, rule, {"invoice": {"id": "B"}})
        await third.wait(timeout=5)

        assert first.execution.idempotency_key.startswith("auto:")
        assert second.id == first.id
        assert third.id != first.id
        assert len(sink.calls) == 2

    @pytest.mark.asyncio
    async def test_finished_execution_is_released(self, services, ctx, sink):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {"invoice": {"id": "R"}})
        execution = await handle.wait_idle()

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert services.orchestrator._handles == {}
        stored = await services.orchestrator.get_handle(ctx, handle.id)
        assert stored.done
        assert (await stored.wait(timeout=1)).status == ExecutionStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_handle_kept_while_retry_is_queued(self, services, ctx, sink, clock):
        sink.results = [ActionResult.failure("smtp down")]
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        await handle.wait_idle()

        assert list(services.orchestrator._handles) == [handle.id]
        clock.advance(timedelta(minutes=5))
        await services.queue.run_due()

        assert handle.status == ExecutionStatus.SUCCEEDED
        assert services.orchestrator._handles == {}

    @pytest.mark.asyncio
    async def test_key_reused_with_other_context_conflicts(self, services, ctx):
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {"a": 1}, idempotency_key="k")
        await handle.wait(timeout=5)
        with pytest.raises(IdempotencyConflict):
            await services.orchestrator.execute_automation(ctx, rule, {"a": 2}, idempotency_key="k")

    @pytest.mark.asyncio
    async def test_disabled_rule_cannot_execute(self, services, ctx):
        rule = await services.orchestrator.create_rule(ctx, make_draft(enabled=False))
        with pytest.raises(ValidationError, match="enable it"):
            await services.orchestrator.execute_automation(ctx, rule, {})

    @pytest.mark.asyncio
    async def test_transient_failures_retry_on_backoff_then_fail(self, services, ctx, sink, clock):
        sink.results = [ActionResult.failure("smtp down")] * 4
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {"invoice": {"id": "X"}})
        execution = await handle.wait_idle()

        assert execution.status == ExecutionStatus.RETRYING
        assert execution.next_retry_at == clock.now() + timedelta(minutes=5)

        for minutes in (5, 10, 20):
            # Not due yet
            clock.advance(timedelta(minutes=minutes) - timedelta(seconds=1))
            assert await services.queue.run_due() == 0
            clock.advance(timedelta(seconds=1))
            assert await services.queue.run_due() == 1

        execution = handle.execution
        assert execution.status == ExecutionStatus.FAILED
        assert execution.attempt_count == 4
        assert "exhausted" in execution.explanation
        assert len(sink.calls) == 4
        assert services.queue.pending == 0

    @pytest.mark.asyncio
    async def test_retry_succeeds_and_resumes_at_failed_action(self, services, ctx, sink, clock):
        sink.results = [ActionResult.success(step=1), ActionResult.failure("timeout upstream")]
        draft = make_draft(actions=[
            RuleAction(action_type=ActionType.SEND_NOTIFICATION, params={"message": "one"}),
            RuleAction(action_type=ActionType.CREATE_TASK, params={"title": "two"}),
        ])
        rule = await services.orchestrator.create_rule(ctx, draft)
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        await handle.wait_idle()

        clock.advance(timedelta(minutes=5))
        await services.queue.run_due()
        execution = handle.execution

        assert execution.status == ExecutionStatus.SUCCEEDED
        assert [c.get("message") or c.get("title") for c in sink.calls] == ["one", "two", "two"]
        assert [r.action_index for r in execution.per_action_results] == [0, 1]

    @pytest.mark.asyncio
    async def test_permanent_failure_does_not_retry(self, services, ctx, sink):
        sink.results = [ActionExecutionError("webhook rejected", transient=False)]
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        execution = await handle.wait(timeout=5)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.attempt_count == 1
        assert "permanent error" in execution.explanation

    @pytest.mark.asyncio
    async def test_rule_auto_paused_after_three_failures(self, services, ctx, sink, audit_events):
        sink.results = [ActionExecutionError("bad", transient=False)] * 3
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        for i in range(3):
            handle = await services.orchestrator.execute_automation(ctx, rule, {"run": i})
            await handle.wait(timeout=5)
            await handle.wait_idle()

        current = await services.orchestrator.get_rule(ctx, rule.id)
        assert current.status == RuleStatus.AUTO_PAUSED
        assert "3 consecutive" in current.status_reason
        assert audit_events.of_type("rule_paused")[-1].to_status == "auto_paused"

    @pytest.mark.asyncio
    async def test_retry_cancelled_when_rule_disabled(self, services, ctx, sink, clock):
        sink.results = [ActionResult.failure("flaky")]
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        await handle.wait_idle()

        await services.orchestrator.set_rule_status(ctx, rule.id, RuleStatus.DISABLED)
        clock.advance(timedelta(minutes=5))
        await services.queue.run_due()

        assert handle.status == ExecutionStatus.CANCELLED
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_action(self, services, ctx, registry):
        started, release = asyncio.Event(), asyncio.Event()
        second = RecordingSink()

        async def blocking(params, context):
            started.set()
            await release.wait()
            return ActionResult.success()

        registry.register(ActionType.SEND_NOTIFICATION, function_sink(blocking))
        registry.register(ActionType.CREATE_TASK, second)
        draft = make_draft(actions=[
            RuleAction(action_type=ActionType.SEND_NOTIFICATION, params={"message": "one"}),
            RuleAction(action_type=ActionType.CREATE_TASK, params={"title": "two"}),
        ])
        rule = await services.orchestrator.create_rule(ctx, draft)
        handle = await services.orchestrator.execute_automation(ctx, rule, {})

        await asyncio.wait_for(started.wait(), timeout=5)
        await handle.cancel("User stopped it")
        release.set()
        execution = await handle.wait(timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert len(execution.per_action_results) == 1
        assert second.calls == []

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_to_retry(self, services, ctx, sink):
        sink.results = [ActionResult.failure("flaky")]
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        await handle.wait_idle()

        execution = await services.orchestrator.cancel_execution(ctx, handle.id)

        assert execution.status == ExecutionStatus.CANCELLED
        assert services.queue.pending == 0
        assert services.orchestrator._handles == {}


# =============================================================================
# Scheduling
# =============================================================================

class TestScheduling:

    def _rule(self, trigger_type, **config):
        from accubooks.automation.rules import build_rule
        draft = make_draft(trigger_type=trigger_type, trigger_config=config)
        return build_rule(TENANT, draft, datetime(2025, 1, 1, tzinfo=timezone.utc))

    def test_daily_slot(self):
        rule = self._rule(TriggerType.SCHEDULE_DAILY, hour=9)
        assert schedule_matches(rule, datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))
        assert not schedule_matches(rule, datetime(2025, 3, 3, 9, 1, tzinfo=timezone.utc))

    def test_weekly_slot(self):
        rule = self._rule(TriggerType.SCHEDULE_WEEKLY, hour=0, weekday=0)
        assert schedule_matches(rule, datetime(2025, 3, 3, 0, 0, tzinfo=timezone.utc))  # Monday
        assert not schedule_matches(rule, datetime(2025, 3, 4, 0, 0, tzinfo=timezone.utc))

    def test_monthly_day_31_runs_on_last_day(self):
        rule = self._rule(TriggerType.SCHEDULE_MONTHLY, hour=0, day_of_month=31)
        assert schedule_matches(rule, datetime(2025, 4, 30, 0, 0, tzinfo=timezone.utc))
        assert not schedule_matches(rule, datetime(2025, 4, 29, 0, 0, tzinfo=timezone.utc))

    @pytest.mark.asyncio
    async def test_schedule_tick_fires_once_per_slot(self, services, ctx, sink):
        await services.orchestrator.create_rule(
            ctx, make_draft(trigger_type=TriggerType.SCHEDULE_DAILY, trigger_config={"hour": 9}),
        )
        tick = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

        summary = await services.scheduler.run_schedule_tick(tick)
        await services.scheduler.run_schedule_tick(tick)
        for execution in await services.repository.list_executions(TENANT):
            handle = await services.orchestrator.get_handle(ctx, execution.id)
            await handle.wait(timeout=5)

        assert summary["tenants_checked"] == 1
        assert summary["executions_created"] == 1
        assert len(await services.repository.list_executions(TENANT)) == 1
        assert len(sink.calls) == 1

    @pytest.mark.asyncio
    async def test_run_minute_runs_due_retries(self, services, ctx, sink, clock):
        sink.results = [ActionResult.failure("flaky")]
        rule = await services.orchestrator.create_rule(ctx, make_draft())
        handle = await services.orchestrator.execute_automation(ctx, rule, {})
        await handle.wait_idle()

        clock.advance(timedelta(minutes=5))
        summary = await services.scheduler.run_minute()

        assert summary["retries_run"] == 1
        assert handle.status == ExecutionStatus.SUCCEEDED
        assert services.scheduler.get_status()["pending_retries"] == 0

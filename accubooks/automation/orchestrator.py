"""
Automation Orchestrator.

Coordinates, per trigger:
1. Plan-limit check (deny-and-report: matches become SKIPPED executions)
2. Dispatch to candidate rules
3. Condition evaluation
4. Execution of matched rules through the ActionExecutor
5. Audit events at every state transition

Execution state machine:
    PENDING -> RUNNING -> SUCCEEDED | RETRYING | FAILED
    RETRYING -> RUNNING (after the backoff delay, via the DelayedTaskQueue)
    PENDING -> SKIPPED (plan limit), any non-terminal -> CANCELLED

Execution errors never propagate out of the orchestrator; they end up on
the execution record with an explanation.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from accubooks.config import settings
from accubooks.errors import (
    IdempotencyConflict,
    InvalidStateTransition,
    NotFoundError,
    PlanLimitExceeded,
    ValidationError,
)
from accubooks.tenancy import TenantContext, ensure_tenant, ensure_tenant_audited
from .executor import ActionExecutor, KeyedLock, RetryPolicy, fingerprint
from .facts import freeze, thaw
from .rules import build_rule, evaluate_rule, render_params
from .scheduling import DelayedTaskQueue
from .triggers import RuleCandidate, TriggerDispatcher
from .types import (
    ALLOWED_TRANSITIONS,
    ActionOutcome,
    ActionResultStatus,
    AutomationExecution,
    AutomationRule,
    DryRunPreview,
    ExecutionStatus,
    IntendedAction,
    MatchResult,
    RuleDraft,
    RuleStatus,
    TriggerEvent,
    TriggerOutcome,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Execution handle
# =============================================================================

@dataclass
class _ExecutionState:
    ctx: TenantContext
    execution: AutomationExecution
    terminal: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None


class ExecutionHandle:
    """
    Live view of one execution.

    ``cancel()`` is cooperative: a running action always completes, and the
    execution stops before the next one.
    """

    def __init__(self, orchestrator: "AutomationOrchestrator", state: _ExecutionState, replayed: bool = False):
        self._orchestrator = orchestrator
        self._state = state
        self.replayed = replayed

    @property
    def id(self) -> str:
        return self._state.execution.id

    @property
    def execution(self) -> AutomationExecution:
        return self._state.execution.model_copy(deep=True)

    @property
    def status(self) -> ExecutionStatus:
        return self._state.execution.status

    @property
    def done(self) -> bool:
        return self._state.execution.is_terminal

    async def cancel(self, reason: str = "Cancelled by user") -> AutomationExecution:
        return await self._orchestrator.cancel_execution(self._state.ctx, self.id, reason)

    async def wait_idle(self) -> AutomationExecution:
        """Wait for the in-flight attempt (not for retries still queued)."""
        if self._state.task is not None:
            await asyncio.shield(self._state.task)
        return self.execution

    async def wait(self, timeout: Optional[float] = None) -> AutomationExecution:
        """Wait for a terminal state."""
        await asyncio.wait_for(self._state.terminal.wait(), timeout=timeout)
        return self.execution

    def as_replay(self) -> "ExecutionHandle":
        return ExecutionHandle(self._orchestrator, self._state, replayed=True)


# =============================================================================
# Orchestrator
# =============================================================================

class AutomationOrchestrator:

    def __init__(
        self,
        repository,
        dispatcher: TriggerDispatcher,
        executor: ActionExecutor,
        queue: DelayedTaskQueue,
        audit,
        plan_guard,
        clock,
        retry_policy: Optional[RetryPolicy] = None,
        failure_threshold: Optional[int] = None,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.executor = executor
        self.queue = queue
        self.audit = audit
        self.plan_guard = plan_guard
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.failure_threshold = failure_threshold or settings.AUTO_PAUSE_FAILURE_THRESHOLD
        self._handles: Dict[str, ExecutionHandle] = {}
        self._locks = KeyedLock()

    # ==========================================================================
    # Rules
    # ==========================================================================

    async def create_rule(self, ctx: TenantContext, draft: RuleDraft) -> AutomationRule:
        """Plan check, validation, persistence, audit. Nothing is saved on denial."""
        async with self._locks.hold(f"rules:{ctx.tenant_id}"):
            try:
                await self.plan_guard.check_rule_creation(ctx)
            except PlanLimitExceeded as e:
                await self.audit.log_plan_denial(ctx, "automation_rules", e.explanation)
                raise

            rule = build_rule(ctx.tenant_id, draft, self.clock.now())
            await self.repository.save_rule(rule)

        await self.audit.log_rule_created(rule, request_id=ctx.request_id)
        logger.info(f"Created rule {rule.id} ({rule.trigger_type.value}) for tenant {ctx.tenant_id}")
        return rule

    async def get_rule(self, ctx: TenantContext, rule_id: str) -> AutomationRule:
        rule = await self.repository.get_rule(ctx.tenant_id, rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found.")
        return ensure_tenant(ctx, rule)

    async def list_rules(self, ctx: TenantContext) -> List[AutomationRule]:
        return [ensure_tenant(ctx, r) for r in await self.repository.list_rules(ctx.tenant_id)]

    async def set_rule_status(self, ctx: TenantContext, rule_id: str, status: RuleStatus,
                              reason: Optional[str] = None) -> AutomationRule:
        if status == RuleStatus.AUTO_PAUSED:
            raise ValidationError("Rules are only auto-paused by the system.")
        async with self._locks.hold(f"rule:{rule_id}"):
            rule = await self.get_rule(ctx, rule_id)
            if rule.status == status:
                return rule
            default_reason = "Enabled by user" if status == RuleStatus.ENABLED else f"Set to {status.value} by user"
            return await self._change_status(rule, status, reason or default_reason)

    async def _change_status(self, rule: AutomationRule, status: RuleStatus, reason: str) -> AutomationRule:
        updated = rule.next_version(status, reason, self.clock.now())
        await self.repository.save_rule(updated)
        await self.audit.log_rule_status_change(updated, rule.status.value, reason)
        return updated

    # ==========================================================================
    # Evaluation
    # ==========================================================================

    def evaluate_rule(self, rule: AutomationRule, context: Mapping[str, Any]) -> MatchResult:
        return evaluate_rule(rule, context)

    def _preview(self, candidate: RuleCandidate, denial: Optional[PlanLimitExceeded]) -> DryRunPreview:
        rule, match = candidate.rule, candidate.match
        intended = ()
        if match.matched:
            intended = tuple(
                IntendedAction(
                    action_type=action.action_type,
                    params=thaw(render_params(action.params, candidate.context)),
                    sink_registered=self.executor.registry.has(action.action_type),
                )
                for action in rule.actions
            )

        if not match.matched:
            explanation = match.explanation
        elif denial is not None:
            explanation = f"Would be skipped: {denial.explanation}"
        else:
            explanation = f"Would run {len(intended)} action(s). {match.explanation}"

        return DryRunPreview(
            rule_id=rule.id,
            rule_name=rule.name,
            matched=match.matched,
            trace=match.trace,
            warnings=match.warnings,
            intended_actions=intended,
            plan_allowed=denial is None,
            explanation=explanation,
        )

    async def _plan_decision(self, ctx: TenantContext) -> Optional[PlanLimitExceeded]:
        try:
            await self.plan_guard.check_execution(ctx)
        except PlanLimitExceeded as e:
            return e
        return None

    async def preview_rule(self, ctx: TenantContext, draft: RuleDraft, event: TriggerEvent) -> DryRunPreview:
        """Dry-run an unsaved rule against an event. Validates the draft; persists nothing."""
        ensure_tenant(ctx, event)
        rule = build_rule(ctx.tenant_id, draft.model_copy(update={"enabled": True}), self.clock.now())
        context = await self.dispatcher.build_context(ctx, event)
        if self.dispatcher.trigger_matches(rule, event):
            match = evaluate_rule(rule, context)
        else:
            match = MatchResult(
                rule_id=rule.id,
                rule_version=rule.version,
                matched=False,
                trace=(),
                explanation=f"Trigger {event.trigger_type.value} does not fire this rule's trigger config.",
            )
        denial = await self._plan_decision(ctx)
        return self._preview(RuleCandidate(rule=rule, context=context, match=match), denial)

    # ==========================================================================
    # Triggers
    # ==========================================================================

    async def handle_trigger(self, ctx: TenantContext, event: TriggerEvent, dry_run: bool = False) -> TriggerOutcome:
        await ensure_tenant_audited(ctx, event, self.audit)

        denial = await self._plan_decision(ctx)

        candidates = await self.dispatcher.dispatch(ctx, event)
        outcome = TriggerOutcome(
            event_id=event.event_id,
            tenant_id=ctx.tenant_id,
            trigger_type=event.trigger_type,
            candidates=len(candidates),
            matched_rule_ids=[c.rule.id for c in candidates if c.match.matched],
            dry_run=dry_run,
            denied=denial is not None,
            explanation=denial.explanation if denial else None,
        )

        if dry_run:
            outcome.previews = [self._preview(c, denial) for c in candidates]
            return outcome

        for candidate in candidates:
            await self.audit.log_rule_match(candidate.rule, candidate.match, event.event_id)
        if denial is not None and outcome.matched_rule_ids:
            await self.audit.log_plan_denial(ctx, "automation_executions", denial.explanation)

        handles = await asyncio.gather(*(
            self._start(
                ctx,
                c.rule,
                c.context,
                idempotency_key=f"{event.event_id}:{c.rule.id}",
                match=c.match,
                event_id=event.event_id,
                denial=denial,
            )
            for c in candidates if c.match.matched
        ))
        outcome.execution_ids = [h.id for h in handles]
        return outcome

    # ==========================================================================
    # Executions
    # ==========================================================================

    async def execute_automation(
        self,
        ctx: TenantContext,
        rule: AutomationRule,
        context: Mapping[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> ExecutionHandle:
        """
        Run a rule's actions for an explicit fact context.

        The condition trace is recorded but does not gate execution. Replaying
        an idempotency key returns the original execution's handle.
        """
        await ensure_tenant_audited(ctx, rule, self.audit)
        current = await self.get_rule(ctx, rule.id)
        if not current.is_enabled:
            raise ValidationError(f"Rule {current.name} is {current.status.value}; enable it before executing.")

        frozen = freeze(context)
        key = idempotency_key or f"auto:{fingerprint(current.id, current.version, frozen)}"
        return await self._start(ctx, current, frozen, key, evaluate_rule(current, frozen))

    async def get_execution(self, ctx: TenantContext, execution_id: str) -> AutomationExecution:
        handle = self._handles.get(execution_id)
        if handle is not None and handle._state.execution.tenant_id == ctx.tenant_id:
            return handle.execution
        execution = await self.repository.get_execution(ctx.tenant_id, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found.")
        return ensure_tenant(ctx, execution)

    async def list_executions(self, ctx: TenantContext, rule_id: Optional[str] = None) -> List[AutomationExecution]:
        return [ensure_tenant(ctx, e) for e in await self.repository.list_executions(ctx.tenant_id, rule_id=rule_id)]

    async def get_handle(self, ctx: TenantContext, execution_id: str) -> ExecutionHandle:
        """
        The live handle while the execution is in flight in this worker.

        Finished executions are released from memory; for those a handle is
        rebuilt from the stored record.
        """
        handle = self._handles.get(execution_id)
        if handle is not None:
            ensure_tenant(ctx, handle._state.execution)
            return handle
        return self._detached_handle(ctx, await self.get_execution(ctx, execution_id))

    def _detached_handle(self, ctx: TenantContext, execution: AutomationExecution,
                         replayed: bool = False) -> ExecutionHandle:
        state = _ExecutionState(ctx=ctx, execution=execution)
        if execution.is_terminal:
            state.terminal.set()
        return ExecutionHandle(self, state, replayed=replayed)

    def _release(self, handle: ExecutionHandle) -> None:
        if handle.done:
            self._handles.pop(handle.id, None)

    async def _start(
        self,
        ctx: TenantContext,
        rule: AutomationRule,
        context: Mapping[str, Any],
        idempotency_key: str,
        match: MatchResult,
        event_id: Optional[str] = None,
        denial: Optional[PlanLimitExceeded] = None,
    ) -> ExecutionHandle:
        payload = fingerprint(rule.id, context)

        async with self._locks.hold(f"idem:{ctx.tenant_id}:{idempotency_key}"):
            existing = await self.repository.get_execution_by_key(ctx.tenant_id, idempotency_key)
            if existing is not None:
                if existing.fingerprint != payload:
                    raise IdempotencyConflict(
                        f"Idempotency key {idempotency_key} was already used with a different rule or context.",
                        idempotency_key=idempotency_key,
                        original_result=existing,
                    )
                logger.info(f"Idempotency key {idempotency_key} replayed; returning execution {existing.id}")
                handle = self._handles.get(existing.id)
                if handle is not None:
                    return handle.as_replay()
                return self._detached_handle(ctx, existing, replayed=True)

            now = self.clock.now()
            execution = AutomationExecution(
                rule_id=rule.id,
                rule_version=rule.version,
                tenant_id=ctx.tenant_id,
                triggered_at=now,
                trigger_event_id=event_id,
                context_snapshot=thaw(context),
                condition_trace=list(match.trace),
                idempotency_key=idempotency_key,
                fingerprint=payload,
            )

            async with self._locks.hold(f"quota:{ctx.tenant_id}"):
                if denial is None:
                    denial = await self._plan_decision(ctx)
                if denial is not None:
                    execution.status = ExecutionStatus.SKIPPED
                    execution.explanation = f"Skipped by plan limits: {denial.explanation}"
                    execution.completed_at = now
                await self.repository.save_execution(execution)

            state = _ExecutionState(ctx=ctx, execution=execution)
            handle = ExecutionHandle(self, state)
            if execution.status != ExecutionStatus.SKIPPED:
                self._handles[execution.id] = handle

        if execution.status == ExecutionStatus.SKIPPED:
            state.terminal.set()
            await self.audit.log_execution_transition(
                execution, None, ExecutionStatus.SKIPPED.value, execution.explanation,
                details=denial.upgrade_prompt,
            )
            logger.info(f"Execution {execution.id} for rule {rule.id} skipped by plan limits")
            return handle

        await self.audit.log_execution_transition(
            execution, None, ExecutionStatus.PENDING.value, f"Rule '{rule.name}' matched; execution created.",
        )
        state.task = asyncio.create_task(self._drive(handle, rule, context))
        return handle

    async def _transition(self, handle: ExecutionHandle, to: ExecutionStatus, explanation: str,
                          details: Optional[Dict[str, Any]] = None) -> None:
        execution = handle._state.execution
        current = execution.status
        if to not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(f"Execution {execution.id} cannot move from {current.value} to {to.value}.")

        execution.status = to
        execution.explanation = explanation
        if to in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
            execution.completed_at = self.clock.now()
            execution.next_retry_at = None
        await self.repository.save_execution(execution)
        await self.audit.log_execution_transition(execution, current.value, to.value, explanation, details)
        if execution.is_terminal:
            handle._state.terminal.set()

    async def _drive(self, handle: ExecutionHandle, rule: AutomationRule, context: Mapping[str, Any]) -> None:
        try:
            await self._run_attempt(handle, rule, context)
        except Exception as e:
            logger.error(f"Execution {handle.id} crashed: {e}")
            if handle.done:
                return
            explanation = f"Internal error while executing: {e}"
            if ExecutionStatus.FAILED in ALLOWED_TRANSITIONS[handle.status]:
                await self._transition(handle, ExecutionStatus.FAILED, explanation)
            else:
                await self._transition(handle, ExecutionStatus.CANCELLED, explanation)
        finally:
            self._release(handle)

    async def _run_attempt(self, handle: ExecutionHandle, rule: AutomationRule, context: Mapping[str, Any]) -> None:
        state = handle._state
        execution = state.execution

        if state.cancel_requested:
            await self._transition(handle, ExecutionStatus.CANCELLED, state.cancel_reason or "Cancelled")
            return

        if execution.attempt_count > 0:
            latest = await self.repository.get_rule(execution.tenant_id, rule.id)
            if latest is None or not latest.is_enabled:
                status = latest.status.value if latest else "deleted"
                await self._transition(
                    handle, ExecutionStatus.CANCELLED, f"Retry abandoned: rule is now {status}.",
                )
                return

        execution.attempt_count += 1
        execution.next_retry_at = None
        attempt = execution.attempt_count
        await self._transition(
            handle, ExecutionStatus.RUNNING,
            f"Attempt {attempt} of {self.retry_policy.max_attempts} started at action "
            f"{execution.current_action_index + 1} of {len(rule.actions)}.",
        )

        for index in range(execution.current_action_index, len(rule.actions)):
            if state.cancel_requested:
                await self._transition(
                    handle, ExecutionStatus.CANCELLED,
                    f"Cancelled before action {index + 1}: {state.cancel_reason or 'no reason given'}.",
                )
                return

            action = rule.actions[index]
            action_key = f"{execution.idempotency_key}:{index}"
            params = render_params(action.params, context)
            params["idempotency_key"] = action_key

            try:
                outcome = await self.executor.attempt(
                    execution.tenant_id, action.action_type, params, context, action_key,
                )
                error, transient = outcome.result.error, outcome.transient
            except IdempotencyConflict as e:
                outcome, error, transient = None, e.explanation, False

            if outcome is not None and outcome.ok:
                execution.per_action_results.append(ActionOutcome(
                    action_index=index,
                    action_type=action.action_type,
                    status=ActionResultStatus.SUCCEEDED,
                    attempts=attempt,
                    output=thaw(outcome.result.output),
                    replayed=outcome.replayed,
                    finished_at=self.clock.now(),
                ))
                execution.current_action_index = index + 1
                await self.repository.save_execution(execution)
                continue

            label = f"action {index + 1} ({action.action_type.value})"
            if self.retry_policy.should_retry(attempt, transient):
                delay = self.retry_policy.delay_for(attempt)
                execution.next_retry_at = self.clock.now() + delay
                minutes = int(delay.total_seconds() // 60)
                await self._transition(
                    handle, ExecutionStatus.RETRYING,
                    f"{label.capitalize()} failed: {error}. Retrying in {minutes} minutes "
                    f"(attempt {attempt} of {self.retry_policy.max_attempts}).",
                    details={"error": error, "delay_minutes": minutes,
                             "next_retry_at": execution.next_retry_at.isoformat()},
                )
                self.queue.schedule(
                    execution.next_retry_at,
                    lambda: self._drive(handle, rule, context),
                    label=f"retry:{execution.id}",
                )
                return

            execution.per_action_results.append(ActionOutcome(
                action_index=index,
                action_type=action.action_type,
                status=ActionResultStatus.FAILED,
                attempts=attempt,
                error=error,
                finished_at=self.clock.now(),
            ))
            why = "permanent error" if not transient else f"retry budget of {self.retry_policy.max_attempts} attempts exhausted"
            await self._transition(
                handle, ExecutionStatus.FAILED,
                f"{label.capitalize()} failed after {attempt} attempt(s): {error} ({why}).",
                details={"error": error, "transient": transient},
            )
            await self._check_auto_pause(execution.tenant_id, rule.id, error)
            return

        await self._transition(
            handle, ExecutionStatus.SUCCEEDED,
            f"All {len(rule.actions)} action(s) completed after {attempt} attempt(s).",
        )

    async def cancel_execution(self, ctx: TenantContext, execution_id: str,
                               reason: str = "Cancelled by user") -> AutomationExecution:
        handle = self._handles.get(execution_id)
        if handle is None:
            execution = await self.get_execution(ctx, execution_id)
            if execution.is_terminal:
                return execution
            raise ValidationError(f"Execution {execution_id} is not active in this worker and cannot be cancelled here.")

        ensure_tenant(ctx, handle._state.execution)
        if handle.done:
            return handle.execution

        state = handle._state
        state.cancel_requested = True
        state.cancel_reason = reason
        if state.execution.status == ExecutionStatus.RETRYING:
            self.queue.cancel_label(f"retry:{execution_id}")
            await self._transition(handle, ExecutionStatus.CANCELLED, f"Cancelled while waiting to retry: {reason}.")
            self._release(handle)
        logger.info(f"Cancellation requested for execution {execution_id}: {reason}")
        return handle.execution

    async def _check_auto_pause(self, tenant_id: str, rule_id: str, last_error: Optional[str]) -> None:
        """Pause a rule whose last N finished executions all failed."""
        async with self._locks.hold(f"rule:{rule_id}"):
            executions = await self.repository.list_executions(
                tenant_id, rule_id=rule_id, limit=max(50, self.failure_threshold * 5),
            )
            finished = sorted(
                (e for e in executions
                 if e.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED) and e.completed_at),
                key=lambda e: e.completed_at,
                reverse=True,
            )
            streak = 0
            for execution in finished:
                if execution.status != ExecutionStatus.FAILED:
                    break
                streak += 1

            if streak < self.failure_threshold:
                return

            rule = await self.repository.get_rule(tenant_id, rule_id)
            if rule is None or rule.status != RuleStatus.ENABLED:
                return

            reason = (
                f"Auto-paused after {streak} consecutive failed executions. "
                f"Last error: {last_error or 'unknown'}"
            )
            await self._change_status(rule, RuleStatus.AUTO_PAUSED, reason)
            logger.warning(f"Rule {rule_id} for tenant {tenant_id} auto-paused: {reason}")

"""
Automation Scheduler.

Background job that drives scheduled rules and deferred retries:
- Every minute: emit a schedule tick per scheduled trigger type for each
  tenant that has scheduled rules
- Every minute: run retries whose backoff delay has elapsed

Tick event ids are deterministic (trigger type + minute), so a tick that is
handled twice produces the same idempotency keys and does not double-fire.
"""

import logging
from datetime import datetime
from typing import Optional

from accubooks.tenancy import TenantContext
from .catalog import SCHEDULED_TRIGGERS
from .types import TriggerEvent

logger = logging.getLogger(__name__)


class AutomationScheduler:

    def __init__(self, orchestrator, repository, plan_service, queue, clock):
        self.orchestrator = orchestrator
        self.repository = repository
        self.plan_service = plan_service
        self.queue = queue
        self.clock = clock
        self._last_tick: Optional[datetime] = None
        self._last_retry_run: Optional[datetime] = None

    async def _context_for(self, tenant_id: str) -> TenantContext:
        try:
            limits = await self.plan_service.get_plan_limits(tenant_id)
            return TenantContext(tenant_id=tenant_id, plan_tier=limits.tier.value)
        except Exception as e:
            # The plan guard will deny on its own; keep the tick going
            logger.warning(f"Could not load plan for tenant {tenant_id}: {e}")
            return TenantContext(tenant_id=tenant_id)

    async def run_schedule_tick(self, tick: Optional[datetime] = None) -> dict:
        """Dispatch one minute's schedule tick to every tenant with scheduled rules."""
        tick = (tick or self.clock.now()).replace(second=0, microsecond=0)
        summary = {
            "run_type": "schedule_tick",
            "tick": tick.isoformat(),
            "tenants_checked": 0,
            "executions_created": 0,
            "errors": [],
        }

        tenants = await self.repository.list_tenants_with_rules(SCHEDULED_TRIGGERS)
        for tenant_id in tenants:
            summary["tenants_checked"] += 1
            ctx = await self._context_for(tenant_id)
            for trigger_type in SCHEDULED_TRIGGERS:
                event = TriggerEvent(
                    event_id=f"tick:{trigger_type.value}:{tick.strftime('%Y%m%dT%H%M')}",
                    tenant_id=tenant_id,
                    trigger_type=trigger_type,
                    payload={"tick": tick.isoformat()},
                    occurred_at=tick,
                )
                try:
                    outcome = await self.orchestrator.handle_trigger(ctx, event)
                    summary["executions_created"] += len(outcome.execution_ids)
                except Exception as e:
                    logger.error(f"Schedule tick {trigger_type.value} failed for tenant {tenant_id}: {e}")
                    summary["errors"].append({
                        "tenant_id": tenant_id,
                        "trigger_type": trigger_type.value,
                        "error": str(e),
                    })

        self._last_tick = tick
        if summary["executions_created"]:
            logger.info(
                f"Schedule tick {tick.isoformat()}: {summary['executions_created']} executions "
                f"across {summary['tenants_checked']} tenants"
            )
        return summary

    async def run_due_retries(self) -> int:
        ran = await self.queue.run_due()
        self._last_retry_run = self.clock.now()
        if ran:
            logger.info(f"Ran {ran} deferred retries")
        return ran

    async def run_minute(self) -> dict:
        summary = await self.run_schedule_tick()
        summary["retries_run"] = await self.run_due_retries()
        return summary

    def get_status(self) -> dict:
        return {
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "last_retry_run": self._last_retry_run.isoformat() if self._last_retry_run else None,
            "pending_retries": self.queue.pending,
            "next_retry_at": self.queue.next_due().isoformat() if self.queue.next_due() else None,
        }


def setup_apscheduler(scheduler, automation_scheduler: AutomationScheduler):
    """
    Configure APScheduler with the automation job.

    Usage:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        scheduler = AsyncIOScheduler()
        setup_apscheduler(scheduler, services.scheduler)
        scheduler.start()

    Args:
        scheduler: APScheduler instance (AsyncIOScheduler)
        automation_scheduler: the AutomationScheduler to drive
    """
    scheduler.add_job(
        automation_scheduler.run_minute,
        'cron',
        minute='*',
        id='automation_minute',
        name='Automation Schedule Tick',
        replace_existing=True,
    )

    logger.info("Automation scheduler jobs configured")

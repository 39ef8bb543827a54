"""
Service container.

Builds the engines once per process and wires them to one repository, one
audit service, one plan guard and one clock. The HTTP layer reaches them
through ``app.state.services``; tests build their own with in-memory parts
and a ManualClock.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from accubooks.audit import AuditService, InMemoryAuditSink, SqlAlchemyAuditSink
from accubooks.automation.actions import ActionRegistry, default_registry
from accubooks.automation.executor import ActionExecutor, RetryPolicy
from accubooks.automation.orchestrator import AutomationOrchestrator
from accubooks.automation.scheduler import AutomationScheduler
from accubooks.automation.scheduling import DelayedTaskQueue
from accubooks.automation.triggers import TriggerDispatcher
from accubooks.automation.worker_pool import WorkerPool
from accubooks.clock import Clock, SystemClock
from accubooks.config import settings
from accubooks.data import InMemoryHistoricalDataProvider
from accubooks.forecast import ForecastingEngine
from accubooks.insights import InsightGenerator
from accubooks.scenarios import ScenarioEngine
from accubooks.storage import InMemoryRepository, SqlAlchemyRepository
from accubooks.tenancy import PlanLimitGuard, RepositoryPlanService

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    clock: Clock
    repository: Any
    data_provider: Any
    audit: AuditService
    plan_service: Any
    plan_guard: PlanLimitGuard
    queue: DelayedTaskQueue
    executor: ActionExecutor
    dispatcher: TriggerDispatcher
    orchestrator: AutomationOrchestrator
    scheduler: AutomationScheduler
    forecasting: ForecastingEngine
    insights: InsightGenerator
    scenarios: ScenarioEngine


def build_services(
    backend: Optional[str] = None,
    clock: Optional[Clock] = None,
    data_provider: Any = None,
    plan_service: Any = None,
    registry: Optional[ActionRegistry] = None,
    retry_policy: Optional[RetryPolicy] = None,
    pool: Optional[WorkerPool] = None,
    audit_sink: Any = None,
) -> CoreServices:
    """
    Wire the core for the configured storage backend.

    ``backend`` is "memory" or "sql" (defaults to settings.STORAGE_BACKEND).
    """
    backend = backend or settings.STORAGE_BACKEND
    clock = clock or SystemClock()

    if backend == "sql":
        from accubooks.database import get_session_maker

        session_maker = get_session_maker()
        repository = SqlAlchemyRepository(session_maker)
        audit_sink = audit_sink or SqlAlchemyAuditSink(session_maker)
    elif backend == "memory":
        repository = InMemoryRepository()
        audit_sink = audit_sink or InMemoryAuditSink()
    else:
        raise ValueError(f"Unknown storage backend: {backend}")

    data_provider = data_provider or InMemoryHistoricalDataProvider()
    audit = AuditService(audit_sink, clock=clock)
    plan_service = plan_service or RepositoryPlanService(repository, clock)
    plan_guard = PlanLimitGuard(plan_service)
    queue = DelayedTaskQueue(clock)
    executor = ActionExecutor(registry or default_registry(), pool=pool)
    dispatcher = TriggerDispatcher(repository, data_provider, clock)
    orchestrator = AutomationOrchestrator(
        repository, dispatcher, executor, queue, audit, plan_guard, clock, retry_policy=retry_policy,
    )

    logger.info(f"Core services built with {backend} storage")
    return CoreServices(
        clock=clock,
        repository=repository,
        data_provider=data_provider,
        audit=audit,
        plan_service=plan_service,
        plan_guard=plan_guard,
        queue=queue,
        executor=executor,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        scheduler=AutomationScheduler(orchestrator, repository, plan_service, queue, clock),
        forecasting=ForecastingEngine(repository, data_provider, audit, plan_guard, clock),
        insights=InsightGenerator(repository, data_provider, audit, clock),
        scenarios=ScenarioEngine(repository, data_provider, audit, plan_guard, clock),
    )

"""
Tenant-scoped persistence.

Every read takes the caller's tenant id and can only ever return rows of
that tenant: a correct id under the wrong tenant behaves exactly like an
unknown id. Two implementations share the Repository interface:
InMemoryRepository (default, tests) and SqlAlchemyRepository.
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from sqlalchemy import select, func, and_, desc

from accubooks.automation.models import AutomationRuleVersion, AutomationExecutionRecord
from accubooks.automation.types import (
    AutomationRule,
    AutomationExecution,
    ExecutionStatus,
    RuleStatus,
    TriggerType,
)
from accubooks.forecast.models import FinancialForecastRecord
from accubooks.forecast.types import FinancialForecast, ForecastType
from accubooks.insights.models import SmartInsightRecord
from accubooks.insights.types import SmartInsight, InsightType
from accubooks.scenarios.models import ScenarioRecord
from accubooks.scenarios.types import Scenario


class Repository(Protocol):
    # Rules
    async def save_rule(self, rule: AutomationRule) -> AutomationRule: ...
    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AutomationRule]: ...
    async def list_rules(self, tenant_id: str, trigger_type: Optional[TriggerType] = None,
                         status: Optional[RuleStatus] = None) -> List[AutomationRule]: ...
    async def count_rules(self, tenant_id: str) -> int: ...
    async def list_tenants_with_rules(self, trigger_types: List[TriggerType]) -> List[str]: ...

    # Executions
    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution: ...
    async def get_execution(self, tenant_id: str, execution_id: str) -> Optional[AutomationExecution]: ...
    async def get_execution_by_key(self, tenant_id: str, idempotency_key: str) -> Optional[AutomationExecution]: ...
    async def list_executions(self, tenant_id: str, rule_id: Optional[str] = None,
                              limit: int = 100) -> List[AutomationExecution]: ...
    async def count_executions_since(self, tenant_id: str, since: datetime) -> int: ...

    # Insights
    async def save_insight(self, insight: SmartInsight) -> SmartInsight: ...
    async def get_insight(self, tenant_id: str, insight_id: str) -> Optional[SmartInsight]: ...
    async def list_insights(self, tenant_id: str, insight_type: Optional[InsightType] = None,
                            since: Optional[datetime] = None) -> List[SmartInsight]: ...

    # Forecasts
    async def save_forecast(self, forecast: FinancialForecast) -> FinancialForecast: ...
    async def get_forecast(self, tenant_id: str, forecast_id: str) -> Optional[FinancialForecast]: ...
    async def list_forecasts(self, tenant_id: str,
                             forecast_type: Optional[ForecastType] = None) -> List[FinancialForecast]: ...

    # Scenarios
    async def save_scenario(self, scenario: Scenario) -> Scenario: ...
    async def get_scenario(self, tenant_id: str, scenario_id: str) -> Optional[Scenario]: ...
    async def list_scenarios(self, tenant_id: str) -> List[Scenario]: ...
    async def count_scenarios_since(self, tenant_id: str, since: datetime) -> int: ...


# =============================================================================
# In-memory
# =============================================================================

class InMemoryRepository:
    """
    Dict-backed repository keyed by (tenant_id, id).

    Executions are mutable, so they are copied on the way in and out.
    """

    def __init__(self):
        self._rule_versions: Dict[Tuple[str, str], List[AutomationRule]] = defaultdict(list)
        self._executions: Dict[Tuple[str, str], AutomationExecution] = {}
        self._execution_keys: Dict[Tuple[str, str], str] = {}
        self._insights: Dict[Tuple[str, str], SmartInsight] = {}
        self._forecasts: Dict[Tuple[str, str], FinancialForecast] = {}
        self._scenarios: Dict[Tuple[str, str], Scenario] = {}

    # ----- Rules -------------------------------------------------------------

    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        versions = self._rule_versions[(rule.tenant_id, rule.id)]
        if versions and versions[-1].version >= rule.version:
            raise ValueError(f"Rule {rule.id} version {rule.version} is not newer than the stored version")
        versions.append(rule)
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AutomationRule]:
        versions = self._rule_versions.get((tenant_id, rule_id))
        return versions[-1] if versions else None

    async def get_rule_versions(self, tenant_id: str, rule_id: str) -> List[AutomationRule]:
        return list(self._rule_versions.get((tenant_id, rule_id), []))

    async def list_rules(self, tenant_id: str, trigger_type: Optional[TriggerType] = None,
                         status: Optional[RuleStatus] = None) -> List[AutomationRule]:
        rules = [
            versions[-1]
            for (owner, _), versions in self._rule_versions.items()
            if owner == tenant_id and versions
        ]
        if trigger_type is not None:
            rules = [r for r in rules if r.trigger_type == trigger_type]
        if status is not None:
            rules = [r for r in rules if r.status == status]
        return sorted(rules, key=lambda r: (r.created_at, r.id))

    async def count_rules(self, tenant_id: str) -> int:
        return sum(1 for (owner, _), versions in self._rule_versions.items() if owner == tenant_id and versions)

    async def list_tenants_with_rules(self, trigger_types: List[TriggerType]) -> List[str]:
        wanted = set(trigger_types)
        tenants = {
            owner
            for (owner, _), versions in self._rule_versions.items()
            if versions and versions[-1].status == RuleStatus.ENABLED and versions[-1].trigger_type in wanted
        }
        return sorted(tenants)

    # ----- Executions --------------------------------------------------------

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        key = (execution.tenant_id, execution.idempotency_key)
        existing = self._execution_keys.get(key)
        if existing is not None and existing != execution.id:
            raise ValueError(f"Idempotency key {execution.idempotency_key} already belongs to {existing}")
        self._execution_keys[key] = execution.id
        self._executions[(execution.tenant_id, execution.id)] = execution.model_copy(deep=True)
        return execution

    async def get_execution(self, tenant_id: str, execution_id: str) -> Optional[AutomationExecution]:
        found = self._executions.get((tenant_id, execution_id))
        return found.model_copy(deep=True) if found else None

    async def get_execution_by_key(self, tenant_id: str, idempotency_key: str) -> Optional[AutomationExecution]:
        execution_id = self._execution_keys.get((tenant_id, idempotency_key))
        return await self.get_execution(tenant_id, execution_id) if execution_id else None

    async def list_executions(self, tenant_id: str, rule_id: Optional[str] = None,
                              limit: int = 100) -> List[AutomationExecution]:
        found = [
            e for (owner, _), e in self._executions.items()
            if owner == tenant_id and (rule_id is None or e.rule_id == rule_id)
        ]
        found.sort(key=lambda e: (e.triggered_at, e.id), reverse=True)
        return [e.model_copy(deep=True) for e in found[:limit]]

    async def count_executions_since(self, tenant_id: str, since: datetime) -> int:
        return sum(
            1 for (owner, _), e in self._executions.items()
            if owner == tenant_id and e.triggered_at >= since and e.status != ExecutionStatus.SKIPPED
        )

    # ----- Insights ----------------------------------------------------------

    async def save_insight(self, insight: SmartInsight) -> SmartInsight:
        self._insights[(insight.tenant_id, insight.id)] = insight
        return insight

    async def get_insight(self, tenant_id: str, insight_id: str) -> Optional[SmartInsight]:
        return self._insights.get((tenant_id, insight_id))

    async def list_insights(self, tenant_id: str, insight_type: Optional[InsightType] = None,
                            since: Optional[datetime] = None) -> List[SmartInsight]:
        found = [
            i for (owner, _), i in self._insights.items()
            if owner == tenant_id
            and (insight_type is None or i.insight_type == insight_type)
            and (since is None or i.generated_at >= since)
        ]
        return sorted(found, key=lambda i: (i.generated_at, i.id), reverse=True)

    # ----- Forecasts ---------------------------------------------------------

    async def save_forecast(self, forecast: FinancialForecast) -> FinancialForecast:
        key = (forecast.tenant_id, forecast.id)
        if key in self._forecasts:
            raise ValueError(f"Forecast {forecast.id} already exists and is immutable")
        self._forecasts[key] = forecast
        return forecast

    async def get_forecast(self, tenant_id: str, forecast_id: str) -> Optional[FinancialForecast]:
        return self._forecasts.get((tenant_id, forecast_id))

    async def list_forecasts(self, tenant_id: str,
                             forecast_type: Optional[ForecastType] = None) -> List[FinancialForecast]:
        found = [
            f for (owner, _), f in self._forecasts.items()
            if owner == tenant_id and (forecast_type is None or f.forecast_type == forecast_type)
        ]
        return sorted(found, key=lambda f: (f.generated_at, f.id), reverse=True)

    # ----- Scenarios ---------------------------------------------------------

    async def save_scenario(self, scenario: Scenario) -> Scenario:
        key = (scenario.tenant_id, scenario.id)
        if key in self._scenarios:
            raise ValueError(f"Scenario {scenario.id} already exists and is immutable")
        self._scenarios[key] = scenario
        return scenario

    async def get_scenario(self, tenant_id: str, scenario_id: str) -> Optional[Scenario]:
        return self._scenarios.get((tenant_id, scenario_id))

    async def list_scenarios(self, tenant_id: str) -> List[Scenario]:
        found = [s for (owner, _), s in self._scenarios.items() if owner == tenant_id]
        return sorted(found, key=lambda s: (s.created_at, s.id), reverse=True)

    async def count_scenarios_since(self, tenant_id: str, since: datetime) -> int:
        return sum(1 for (owner, _), s in self._scenarios.items() if owner == tenant_id and s.created_at >= since)


# =============================================================================
# SQLAlchemy
# =============================================================================

class SqlAlchemyRepository:
    """
    Repository over the async SQLAlchemy session maker.

    Each operation opens its own short session. Domain objects are stored
    whole in the JSON ``payload`` column and revalidated on the way out.
    """

    def __init__(self, session_maker):
        self.session_maker = session_maker

    # ----- Rules -------------------------------------------------------------

    async def save_rule(self, rule: AutomationRule) -> AutomationRule:
        async with self.session_maker() as db:
            db.add(AutomationRuleVersion(
                id=rule.id,
                version=rule.version,
                tenant_id=rule.tenant_id,
                name=rule.name,
                trigger_type=rule.trigger_type.value,
                status=rule.status.value,
                payload=rule.model_dump(mode="json"),
                created_at=rule.updated_at or rule.created_at,
            ))
            await db.commit()
        return rule

    def _latest_versions(self, tenant_id: str):
        latest = (
            select(AutomationRuleVersion.id, func.max(AutomationRuleVersion.version).label("version"))
            .where(AutomationRuleVersion.tenant_id == tenant_id)
            .group_by(AutomationRuleVersion.id)
            .subquery()
        )
        return select(AutomationRuleVersion).join(
            latest,
            and_(AutomationRuleVersion.id == latest.c.id, AutomationRuleVersion.version == latest.c.version),
        ).where(AutomationRuleVersion.tenant_id == tenant_id)

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AutomationRule]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AutomationRuleVersion)
                .where(AutomationRuleVersion.tenant_id == tenant_id)
                .where(AutomationRuleVersion.id == rule_id)
                .order_by(desc(AutomationRuleVersion.version))
                .limit(1)
            )
            row = result.scalar_one_or_none()
        return AutomationRule.model_validate(row.payload) if row else None

    async def get_rule_versions(self, tenant_id: str, rule_id: str) -> List[AutomationRule]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AutomationRuleVersion)
                .where(AutomationRuleVersion.tenant_id == tenant_id)
                .where(AutomationRuleVersion.id == rule_id)
                .order_by(AutomationRuleVersion.version)
            )
            rows = result.scalars().all()
        return [AutomationRule.model_validate(row.payload) for row in rows]

    async def list_rules(self, tenant_id: str, trigger_type: Optional[TriggerType] = None,
                         status: Optional[RuleStatus] = None) -> List[AutomationRule]:
        query = self._latest_versions(tenant_id)
        if trigger_type is not None:
            query = query.where(AutomationRuleVersion.trigger_type == trigger_type.value)
        if status is not None:
            query = query.where(AutomationRuleVersion.status == status.value)
        async with self.session_maker() as db:
            result = await db.execute(query)
            rows = result.scalars().all()
        rules = [AutomationRule.model_validate(row.payload) for row in rows]
        return sorted(rules, key=lambda r: (r.created_at, r.id))

    async def count_rules(self, tenant_id: str) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(func.distinct(AutomationRuleVersion.id)))
                .where(AutomationRuleVersion.tenant_id == tenant_id)
            )
            return int(result.scalar() or 0)

    async def list_tenants_with_rules(self, trigger_types: List[TriggerType]) -> List[str]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.distinct(AutomationRuleVersion.tenant_id))
                .where(AutomationRuleVersion.trigger_type.in_([t.value for t in trigger_types]))
            )
            candidates = sorted(result.scalars().all())
        tenants = []
        for tenant_id in candidates:
            rules = await self.list_rules(tenant_id, status=RuleStatus.ENABLED)
            if any(r.trigger_type in trigger_types for r in rules):
                tenants.append(tenant_id)
        return tenants

    # ----- Executions --------------------------------------------------------

    async def save_execution(self, execution: AutomationExecution) -> AutomationExecution:
        async with self.session_maker() as db:
            row = await db.get(AutomationExecutionRecord, execution.id)
            if row is not None and row.tenant_id != execution.tenant_id:
                raise ValueError(f"Execution {execution.id} belongs to another tenant")
            if row is None:
                row = AutomationExecutionRecord(id=execution.id, tenant_id=execution.tenant_id)
                db.add(row)
            row.rule_id = execution.rule_id
            row.status = execution.status.value
            row.idempotency_key = execution.idempotency_key
            row.triggered_at = execution.triggered_at
            row.completed_at = execution.completed_at
            row.payload = execution.model_dump(mode="json")
            await db.commit()
        return execution

    async def get_execution(self, tenant_id: str, execution_id: str) -> Optional[AutomationExecution]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AutomationExecutionRecord)
                .where(AutomationExecutionRecord.tenant_id == tenant_id)
                .where(AutomationExecutionRecord.id == execution_id)
            )
            row = result.scalar_one_or_none()
        return AutomationExecution.model_validate(row.payload) if row else None

    async def get_execution_by_key(self, tenant_id: str, idempotency_key: str) -> Optional[AutomationExecution]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AutomationExecutionRecord)
                .where(AutomationExecutionRecord.tenant_id == tenant_id)
                .where(AutomationExecutionRecord.idempotency_key == idempotency_key)
            )
            row = result.scalar_one_or_none()
        return AutomationExecution.model_validate(row.payload) if row else None

    async def list_executions(self, tenant_id: str, rule_id: Optional[str] = None,
                              limit: int = 100) -> List[AutomationExecution]:
        query = select(AutomationExecutionRecord).where(AutomationExecutionRecord.tenant_id == tenant_id)
        if rule_id is not None:
            query = query.where(AutomationExecutionRecord.rule_id == rule_id)
        query = query.order_by(desc(AutomationExecutionRecord.triggered_at), desc(AutomationExecutionRecord.id))
        async with self.session_maker() as db:
            result = await db.execute(query.limit(limit))
            rows = result.scalars().all()
        return [AutomationExecution.model_validate(row.payload) for row in rows]

    async def count_executions_since(self, tenant_id: str, since: datetime) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(AutomationExecutionRecord.id))
                .where(AutomationExecutionRecord.tenant_id == tenant_id)
                .where(AutomationExecutionRecord.triggered_at >= since)
                .where(AutomationExecutionRecord.status != ExecutionStatus.SKIPPED.value)
            )
            return int(result.scalar() or 0)

    # ----- Insights ----------------------------------------------------------

    async def save_insight(self, insight: SmartInsight) -> SmartInsight:
        async with self.session_maker() as db:
            row = await db.get(SmartInsightRecord, insight.id)
            if row is not None and row.tenant_id != insight.tenant_id:
                raise ValueError(f"Insight {insight.id} belongs to another tenant")
            if row is None:
                row = SmartInsightRecord(id=insight.id, tenant_id=insight.tenant_id)
                db.add(row)
            row.insight_type = insight.insight_type.value
            row.dedup_key = insight.dedup_key
            row.dismissed = insight.dismissed
            row.generated_at = insight.generated_at
            row.expires_at = insight.expires_at
            row.payload = insight.model_dump(mode="json")
            await db.commit()
        return insight

    async def get_insight(self, tenant_id: str, insight_id: str) -> Optional[SmartInsight]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(SmartInsightRecord)
                .where(SmartInsightRecord.tenant_id == tenant_id)
                .where(SmartInsightRecord.id == insight_id)
            )
            row = result.scalar_one_or_none()
        return SmartInsight.model_validate(row.payload) if row else None

    async def list_insights(self, tenant_id: str, insight_type: Optional[InsightType] = None,
                            since: Optional[datetime] = None) -> List[SmartInsight]:
        query = select(SmartInsightRecord).where(SmartInsightRecord.tenant_id == tenant_id)
        if insight_type is not None:
            query = query.where(SmartInsightRecord.insight_type == insight_type.value)
        if since is not None:
            query = query.where(SmartInsightRecord.generated_at >= since)
        async with self.session_maker() as db:
            result = await db.execute(query.order_by(desc(SmartInsightRecord.generated_at)))
            rows = result.scalars().all()
        return [SmartInsight.model_validate(row.payload) for row in rows]

    # ----- Forecasts ---------------------------------------------------------

    async def save_forecast(self, forecast: FinancialForecast) -> FinancialForecast:
        async with self.session_maker() as db:
            db.add(FinancialForecastRecord(
                id=forecast.id,
                tenant_id=forecast.tenant_id,
                forecast_type=forecast.forecast_type.value,
                generated_at=forecast.generated_at,
                payload=forecast.model_dump(mode="json"),
            ))
            await db.commit()
        return forecast

    async def get_forecast(self, tenant_id: str, forecast_id: str) -> Optional[FinancialForecast]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(FinancialForecastRecord)
                .where(FinancialForecastRecord.tenant_id == tenant_id)
                .where(FinancialForecastRecord.id == forecast_id)
            )
            row = result.scalar_one_or_none()
        return FinancialForecast.model_validate(row.payload) if row else None

    async def list_forecasts(self, tenant_id: str,
                             forecast_type: Optional[ForecastType] = None) -> List[FinancialForecast]:
        query = select(FinancialForecastRecord).where(FinancialForecastRecord.tenant_id == tenant_id)
        if forecast_type is not None:
            query = query.where(FinancialForecastRecord.forecast_type == forecast_type.value)
        async with self.session_maker() as db:
            result = await db.execute(query.order_by(desc(FinancialForecastRecord.generated_at)))
            rows = result.scalars().all()
        return [FinancialForecast.model_validate(row.payload) for row in rows]

    # ----- Scenarios ---------------------------------------------------------

    async def save_scenario(self, scenario: Scenario) -> Scenario:
        async with self.session_maker() as db:
            db.add(ScenarioRecord(
                id=scenario.id,
                tenant_id=scenario.tenant_id,
                scenario_type=scenario.scenario_type.value,
                risk_score=scenario.risk_score,
                risk_level=scenario.risk_level.value,
                created_at=scenario.created_at,
                payload=scenario.model_dump(mode="json"),
            ))
            await db.commit()
        return scenario

    async def get_scenario(self, tenant_id: str, scenario_id: str) -> Optional[Scenario]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ScenarioRecord)
                .where(ScenarioRecord.tenant_id == tenant_id)
                .where(ScenarioRecord.id == scenario_id)
            )
            row = result.scalar_one_or_none()
        return Scenario.model_validate(row.payload) if row else None

    async def list_scenarios(self, tenant_id: str) -> List[Scenario]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ScenarioRecord)
                .where(ScenarioRecord.tenant_id == tenant_id)
                .order_by(desc(ScenarioRecord.created_at))
            )
            rows = result.scalars().all()
        return [Scenario.model_validate(row.payload) for row in rows]

    async def count_scenarios_since(self, tenant_id: str, since: datetime) -> int:
        async with self.session_maker() as db:
            result = await db.execute(
                select(func.count(ScenarioRecord.id))
                .where(ScenarioRecord.tenant_id == tenant_id)
                .where(ScenarioRecord.created_at >= since)
            )
            return int(result.scalar() or 0)

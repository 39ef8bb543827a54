"""
Audit Service for the automation and intelligence core.

Wraps an AuditSink with one convenience method per kind of event so that
callers never build AuditEvent objects by hand.

Usage:
    audit = AuditService(sink, clock)
    await audit.log_rule_match(ctx, rule, match)
    await audit.log_execution_transition(execution, "pending", "running", "Started")
"""
import logging
from typing import Any, Dict, Literal, Optional

from accubooks.audit.sinks import AuditEvent, AuditSink
from accubooks.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SourceType = Literal["api", "scheduler", "system"]


class AuditService:

    def __init__(self, sink: AuditSink, clock: Optional[Clock] = None, source: SourceType = "system"):
        self.sink = sink
        self.clock = clock or SystemClock()
        self.source = source

    # ==========================================================================
    # Core Logging Method
    # ==========================================================================

    async def log(
        self,
        tenant_id: str,
        event_type: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        explanation: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AuditEvent:
        """
        Emit an audit event.

        Audit failures are logged and re-raised; callers decide whether an
        audit outage should abort their operation.
        """
        event = AuditEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            from_status=from_status,
            to_status=to_status,
            source=self.source,
            request_id=request_id,
            details=details or {},
            explanation=explanation,
            created_at=self.clock.now(),
        )
        try:
            await self.sink.emit(event)
        except Exception as e:
            logger.error(f"Failed to write audit event {event_type} for {entity_type}/{entity_id}: {e}")
            raise
        return event

    # ==========================================================================
    # Automation
    # ==========================================================================

    async def log_rule_created(self, rule, request_id: Optional[str] = None) -> AuditEvent:
        return await self.log(
            tenant_id=rule.tenant_id,
            event_type="rule_created",
            entity_type="automation_rule",
            entity_id=rule.id,
            to_status=rule.status.value,
            details={"name": rule.name, "trigger_type": rule.trigger_type.value, "version": rule.version},
            request_id=request_id,
        )

    async def log_rule_match(self, rule, match, event_id: Optional[str] = None) -> AuditEvent:
        return await self.log(
            tenant_id=rule.tenant_id,
            event_type="rule_match" if match.matched else "rule_no_match",
            entity_type="automation_rule",
            entity_id=rule.id,
            details={
                "event_id": event_id,
                "matched": match.matched,
                "trace": [entry.model_dump(mode="json") for entry in match.trace],
                "warnings": list(match.warnings),
            },
            explanation=match.explanation,
        )

    async def log_execution_transition(
        self,
        execution,
        from_status: Optional[str],
        to_status: str,
        explanation: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        return await self.log(
            tenant_id=execution.tenant_id,
            event_type="execution_transition",
            entity_type="automation_execution",
            entity_id=execution.id,
            from_status=from_status,
            to_status=to_status,
            details={"rule_id": execution.rule_id, "attempt": execution.attempt_count, **(details or {})},
            explanation=explanation,
        )

    async def log_rule_status_change(self, rule, from_status: str, reason: str) -> AuditEvent:
        event_type = "rule_paused" if rule.status.value == "auto_paused" else "rule_status_changed"
        return await self.log(
            tenant_id=rule.tenant_id,
            event_type=event_type,
            entity_type="automation_rule",
            entity_id=rule.id,
            from_status=from_status,
            to_status=rule.status.value,
            details={"version": rule.version},
            explanation=reason,
        )

    async def log_plan_denial(self, ctx, feature: str, explanation: str,
                              entity_id: Optional[str] = None) -> AuditEvent:
        return await self.log(
            tenant_id=ctx.tenant_id,
            event_type="plan_denied",
            entity_type=feature,
            entity_id=entity_id,
            details={"plan_tier": str(ctx.plan_tier)},
            explanation=explanation,
            request_id=ctx.request_id,
        )

    # ==========================================================================
    # Intelligence
    # ==========================================================================

    async def log_insight_generated(self, insight) -> AuditEvent:
        return await self.log(
            tenant_id=insight.tenant_id,
            event_type="insight_generated",
            entity_type="smart_insight",
            entity_id=insight.id,
            details={
                "insight_type": insight.insight_type.value,
                "severity": insight.severity.value,
                "confidence_score": insight.confidence_score,
            },
            explanation=insight.title,
        )

    async def log_detector_skipped(self, tenant_id: str, detector: str, reason: str) -> AuditEvent:
        return await self.log(
            tenant_id=tenant_id,
            event_type="insight_detector_skipped",
            entity_type="smart_insight",
            details={"detector": detector},
            explanation=reason,
        )

    async def log_forecast_generated(self, forecast) -> AuditEvent:
        return await self.log(
            tenant_id=forecast.tenant_id,
            event_type="forecast_generated",
            entity_type="financial_forecast",
            entity_id=forecast.id,
            details={
                "forecast_type": forecast.forecast_type.value,
                "is_defined": forecast.is_defined,
                "confidence_score": forecast.confidence_score,
            },
            explanation=forecast.calculation,
        )

    async def log_scenario_created(self, scenario) -> AuditEvent:
        return await self.log(
            tenant_id=scenario.tenant_id,
            event_type="scenario_created",
            entity_type="scenario",
            entity_id=scenario.id,
            details={
                "scenario_type": scenario.scenario_type.value,
                "risk_score": scenario.risk_score,
                "risk_level": scenario.risk_level.value,
            },
            explanation=scenario.summary,
        )

    # ==========================================================================
    # Security
    # ==========================================================================

    async def log_security_event(self, tenant_id: str, entity_type: str,
                                 request_id: Optional[str] = None) -> AuditEvent:
        return await self.log(
            tenant_id=tenant_id,
            event_type="security_violation",
            entity_type=entity_type,
            explanation="Cross-tenant access attempt blocked.",
            request_id=request_id,
        )

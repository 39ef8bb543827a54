"""
Audit Log model for the automation and intelligence core.

Every rule match, execution transition, generated insight, forecast and
scenario, plan denial and isolation violation lands here.
"""
from sqlalchemy import Column, String, DateTime, Text, Index, JSON
from sqlalchemy.sql import func

from accubooks.database import Base
from accubooks.base import generate_id


class AuditLog(Base):
    """Audit Log - one row per structured audit event."""

    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=lambda: generate_id("audit"))
    tenant_id = Column(String, nullable=False, index=True)

    # What happened?
    event_type = Column(String, nullable=False, index=True)
    # Options: "rule_match", "execution_transition", "rule_paused", "insight_generated",
    # "forecast_generated", "scenario_created", "plan_denied", "security_violation", ...

    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)

    # State machine transitions
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=True)

    source = Column(String, nullable=False, default="system")
    request_id = Column(String, nullable=True)

    details = Column(JSON, nullable=True)
    explanation = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_log_tenant_time", "tenant_id", "created_at"),
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.event_type} on {self.entity_type}/{self.entity_id}>"

"""
Automation Models - persisted rule versions and executions.

Domain objects are pydantic models; rows keep the indexed columns needed for
tenant-scoped lookups and store the full object in ``payload``.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON, Index, UniqueConstraint

from accubooks.database import Base


class AutomationRuleVersion(Base):
    """
    One immutable version of an automation rule.

    Status changes append a new version; the latest version is the live rule.
    """
    __tablename__ = "automation_rule_versions"

    id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)

    name = Column(String, nullable=False)
    trigger_type = Column(String, nullable=False)
    status = Column(String, nullable=False)

    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_rule_versions_tenant_trigger", "tenant_id", "trigger_type"),
    )


class AutomationExecutionRecord(Base):
    """Latest state of one automation execution."""
    __tablename__ = "automation_executions"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    rule_id = Column(String, nullable=False, index=True)

    status = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)

    triggered_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    payload = Column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_execution_tenant_key"),
        Index("ix_executions_tenant_triggered", "tenant_id", "triggered_at"),
    )

"""Scenario rows. Scenarios are immutable; recomputation writes a new row."""
from sqlalchemy import Column, String, DateTime, Float, JSON, Index

from accubooks.database import Base


class ScenarioRecord(Base):
    __tablename__ = "scenarios"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    scenario_type = Column(String, nullable=False)
    risk_score = Column(Float, nullable=False)
    risk_level = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_scenarios_tenant_created", "tenant_id", "created_at"),
    )

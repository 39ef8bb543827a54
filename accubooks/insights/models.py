"""Smart insight rows."""
from sqlalchemy import Column, String, Boolean, DateTime, JSON, Index

from accubooks.database import Base


class SmartInsightRecord(Base):
    __tablename__ = "smart_insights"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    insight_type = Column(String, nullable=False)
    dedup_key = Column(String, nullable=False)
    dismissed = Column(Boolean, nullable=False, default=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_insights_tenant_generated", "tenant_id", "generated_at"),
        Index("ix_insights_tenant_dedup", "tenant_id", "dedup_key"),
    )

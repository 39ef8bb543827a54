"""Financial forecast rows. Forecasts are immutable once written."""
from sqlalchemy import Column, String, DateTime, JSON, Index

from accubooks.database import Base


class FinancialForecastRecord(Base):
    __tablename__ = "financial_forecasts"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False, index=True)
    forecast_type = Column(String, nullable=False)
    generated_at = Column(DateTime(timezone=True), nullable=False)
    payload = Column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_forecasts_tenant_type", "tenant_id", "forecast_type"),
    )

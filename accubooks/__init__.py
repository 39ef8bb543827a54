"""AccuBooks core: deterministic automation, forecasting, insights and scenario simulation."""

__version__ = "0.1.0"

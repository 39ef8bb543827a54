"""Explainable statistical insights over tenant financial history."""
from .types import (
    InsightType,
    InsightSeverity,
    ContributingFactor,
    InsightExplanation,
    SuggestedAction,
    SmartInsight,
)
from .engine import DETECTORS, DetectorConfig, InsightGenerator

__all__ = [
    "InsightType",
    "InsightSeverity",
    "ContributingFactor",
    "InsightExplanation",
    "SuggestedAction",
    "SmartInsight",
    "DETECTORS",
    "DetectorConfig",
    "InsightGenerator",
]

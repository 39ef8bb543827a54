"""Pydantic schemas for the insights API."""
from datetime import date
from typing import Optional

from pydantic import BaseModel, model_validator

from accubooks.data import HistoryWindow


class GenerateInsightsRequest(BaseModel):
    window_start: Optional[date] = None
    window_end: Optional[date] = None

    @model_validator(mode="after")
    def _both_or_neither(self):
        if (self.window_start is None) != (self.window_end is None):
            raise ValueError("window_start and window_end must be given together")
        return self

    def window(self) -> Optional[HistoryWindow]:
        if self.window_start is None:
            return None
        return HistoryWindow(start=self.window_start, end=self.window_end)


class DismissInsightRequest(BaseModel):
    reason: Optional[str] = None

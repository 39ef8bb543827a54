"""
Monthly cash timeline.

Each month m (1-based) has two flows relative to the baseline:

- a one-time flow applied at the start of the month
- a recurring flow that changes the month's net outflow

Walking month by month:

    balance += one_time(m)
    if balance <= 0:             runway = 30 * (m - 1)
    outflow = burn - recurring(m)
    if balance - outflow <= 0:   runway = 30 * (m - 1) + 30 * balance / outflow
    balance -= outflow

With no flows and a constant burn this reduces to ``cash / burn * 30``.
Runway is capped at RunwayPolicy.cap_days (RUNWAY_CAP_DAYS in settings).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from accubooks.analytics import money
from accubooks.config import settings

DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class RunwayPolicy:
    """Runway thresholds: the safe buffer risk is measured against, and the reporting cap."""
    safe_days: float = 180.0
    cap_days: float = 999.0

    @classmethod
    def from_settings(cls) -> "RunwayPolicy":
        return cls(safe_days=float(settings.SAFE_RUNWAY_DAYS), cap_days=float(settings.RUNWAY_CAP_DAYS))

    @property
    def walk_months(self) -> int:
        """First month whose end passes the cap."""
        return int(self.cap_days // DAYS_PER_MONTH) + 1


@dataclass(frozen=True)
class OneTimeFlow:
    month: int
    amount: Decimal  # signed; negative is cash leaving


@dataclass(frozen=True)
class RecurringFlow:
    amount: Decimal  # signed change to monthly net cash flow; negative is extra outflow
    start_month: int = 1
    end_month: Optional[int] = None  # inclusive, None runs indefinitely

    def applies(self, month: int) -> bool:
        return month >= self.start_month and (self.end_month is None or month <= self.end_month)


@dataclass(frozen=True)
class CashDelta:
    """Everything a scenario changes about the baseline cash flows."""
    one_time: Tuple[OneTimeFlow, ...] = ()
    recurring: Tuple[RecurringFlow, ...] = ()

    def one_time_in(self, month: int) -> Decimal:
        return sum((f.amount for f in self.one_time if f.month == month), Decimal("0"))

    def recurring_in(self, month: int) -> Decimal:
        return sum((f.amount for f in self.recurring if f.applies(month)), Decimal("0"))

    def in_month(self, month: int) -> Decimal:
        return self.one_time_in(month) + self.recurring_in(month)

    @property
    def component_count(self) -> int:
        return len(self.one_time) + len(self.recurring)

    def merged(self, other: "CashDelta") -> "CashDelta":
        return CashDelta(one_time=self.one_time + other.one_time, recurring=self.recurring + other.recurring)


@dataclass
class Timeline:
    runway_days: float
    balances: List[Decimal] = field(default_factory=list)  # end-of-month balances, months 1..horizon
    crossing_month: Optional[int] = None
    calculation: str = ""


def walk(current_cash: Decimal, monthly_burn: Decimal, delta: Optional[CashDelta] = None,
         horizon_months: int = 12, policy: Optional[RunwayPolicy] = None) -> Timeline:
    """Project end-of-month balances and the runway in days."""
    delta = delta or CashDelta()
    policy = policy or RunwayPolicy.from_settings()
    balance = Decimal(current_cash)
    runway: Optional[float] = None
    crossing: Optional[int] = None
    calculation = ""
    balances: List[Decimal] = []

    for month in range(1, max(horizon_months, policy.walk_months) + 1):
        balance += delta.one_time_in(month)
        outflow = monthly_burn - delta.recurring_in(month)

        if runway is None:
            if balance <= 0:
                runway, crossing = float(DAYS_PER_MONTH * (month - 1)), month
                calculation = f"runway_days = 30 * ({month} - 1) = {runway:.2f}"
            elif outflow > 0 and balance - outflow <= 0:
                runway = DAYS_PER_MONTH * (month - 1) + DAYS_PER_MONTH * float(balance / outflow)
                crossing = month
                calculation = (
                    f"runway_days = 30 * ({month} - 1) + 30 * {money(balance)} / {money(outflow)} = {runway:.2f}"
                )

        balance -= outflow
        if month <= horizon_months:
            balances.append(money(balance))
        if runway is not None and month >= horizon_months:
            break

    if runway is None or runway > policy.cap_days:
        runway = policy.cap_days
        calculation = f"runway_days = {policy.cap_days:.0f} (cash lasts beyond the cap)"
    return Timeline(runway_days=round(runway, 2), balances=balances, crossing_month=crossing,
                    calculation=calculation)

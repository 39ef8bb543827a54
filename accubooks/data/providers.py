"""
Historical data provider interface and snapshot types.

Engines only ever see an immutable FinancialHistory snapshot for one tenant
and one window, so forecasts, insights and scenarios can run in parallel
without locking.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HistoryWindow(BaseModel):
    """Inclusive date window."""
    model_config = ConfigDict(frozen=True)

    start: date
    end: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.start > self.end:
            raise ValueError("window start must not be after window end")
        return self

    @classmethod
    def trailing(cls, end: date, days: int) -> "HistoryWindow":
        return cls(start=end - timedelta(days=days - 1), end=end)

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class CashBalancePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    balance: Decimal


class ExpenseRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    amount: Decimal
    category: str = "uncategorized"
    vendor: Optional[str] = None
    id: Optional[str] = None


class RevenueRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    amount: Decimal
    customer: Optional[str] = None


class PaymentRecord(BaseModel):
    """An invoice and, once settled, when it was paid."""
    model_config = ConfigDict(frozen=True)

    invoice_id: str
    customer: str
    amount: Decimal
    due_date: date
    paid_date: Optional[date] = None

    @property
    def is_paid(self) -> bool:
        return self.paid_date is not None

    @property
    def on_time(self) -> bool:
        return self.paid_date is not None and self.paid_date <= self.due_date

    @property
    def days_late(self) -> int:
        if self.paid_date is None:
            return 0
        return max(0, (self.paid_date - self.due_date).days)


class BudgetRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    amount: Decimal
    period_start: date
    period_end: date


class FinancialHistory(BaseModel):
    """Immutable snapshot of one tenant's history over one window."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    window: HistoryWindow
    cash_balances: Tuple[CashBalancePoint, ...] = ()
    expenses: Tuple[ExpenseRecord, ...] = ()
    revenue: Tuple[RevenueRecord, ...] = ()
    payments: Tuple[PaymentRecord, ...] = ()
    budgets: Tuple[BudgetRecord, ...] = ()

    @property
    def current_cash(self) -> Optional[Decimal]:
        if not self.cash_balances:
            return None
        return max(self.cash_balances, key=lambda p: p.date).balance

    @property
    def observed_days(self) -> int:
        """Days between the earliest and latest dated record, inclusive."""
        dates = [p.date for p in self.cash_balances]
        dates += [e.date for e in self.expenses]
        dates += [r.date for r in self.revenue]
        dates += [p.due_date for p in self.payments]
        if not dates:
            return 0
        return (max(dates) - min(dates)).days + 1

    def sources(self) -> List[str]:
        found = []
        for name in ("cash_balances", "expenses", "revenue", "payments", "budgets"):
            if getattr(self, name):
                found.append(name)
        return found


class HistoricalDataProvider(Protocol):
    """External source of tenant financial history."""

    async def get_history(self, tenant_id: str, window: HistoryWindow) -> FinancialHistory:
        ...

    async def get_tenant_state(self, tenant_id: str) -> Dict[str, Any]:
        ...


class InMemoryHistoricalDataProvider:
    """Provider over in-process datasets, for tests and local runs."""

    def __init__(self):
        self._data: Dict[str, Dict[str, list]] = {}
        self._state: Dict[str, Dict[str, Any]] = {}

    def _dataset(self, tenant_id: str) -> Dict[str, list]:
        return self._data.setdefault(tenant_id, {
            "cash_balances": [], "expenses": [], "revenue": [], "payments": [], "budgets": [],
        })

    def add_cash_balance(self, tenant_id: str, day: date, balance) -> None:
        self._dataset(tenant_id)["cash_balances"].append(CashBalancePoint(date=day, balance=Decimal(str(balance))))

    def add_expense(self, tenant_id: str, day: date, amount, category: str = "uncategorized",
                    vendor: Optional[str] = None, expense_id: Optional[str] = None) -> None:
        self._dataset(tenant_id)["expenses"].append(ExpenseRecord(
            date=day, amount=Decimal(str(amount)), category=category, vendor=vendor, id=expense_id,
        ))

    def add_revenue(self, tenant_id: str, day: date, amount, customer: Optional[str] = None) -> None:
        self._dataset(tenant_id)["revenue"].append(RevenueRecord(date=day, amount=Decimal(str(amount)), customer=customer))

    def add_payment(self, tenant_id: str, invoice_id: str, customer: str, amount, due_date: date,
                    paid_date: Optional[date] = None) -> None:
        self._dataset(tenant_id)["payments"].append(PaymentRecord(
            invoice_id=invoice_id, customer=customer, amount=Decimal(str(amount)),
            due_date=due_date, paid_date=paid_date,
        ))

    def add_budget(self, tenant_id: str, category: str, amount, period_start: date, period_end: date) -> None:
        self._dataset(tenant_id)["budgets"].append(BudgetRecord(
            category=category, amount=Decimal(str(amount)), period_start=period_start, period_end=period_end,
        ))

    def set_state(self, tenant_id: str, **state: Any) -> None:
        self._state.setdefault(tenant_id, {}).update(state)

    async def get_history(self, tenant_id: str, window: HistoryWindow) -> FinancialHistory:
        data = self._dataset(tenant_id)
        return FinancialHistory(
            tenant_id=tenant_id,
            window=window,
            cash_balances=tuple(sorted(
                (p for p in data["cash_balances"] if window.contains(p.date)), key=lambda p: p.date)),
            expenses=tuple(sorted(
                (e for e in data["expenses"] if window.contains(e.date)), key=lambda e: e.date)),
            revenue=tuple(sorted(
                (r for r in data["revenue"] if window.contains(r.date)), key=lambda r: r.date)),
            payments=tuple(sorted(
                (p for p in data["payments"] if window.contains(p.due_date)), key=lambda p: p.due_date)),
            budgets=tuple(
                b for b in data["budgets"] if b.period_end >= window.start and b.period_start <= window.end),
        )

    async def get_tenant_state(self, tenant_id: str) -> Dict[str, Any]:
        state: Dict[str, Any] = {"tenant_id": tenant_id}
        balances = self._dataset(tenant_id)["cash_balances"]
        if balances:
            state["cash_balance"] = max(balances, key=lambda p: p.date).balance
        state.update(self._state.get(tenant_id, {}))
        return state

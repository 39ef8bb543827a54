"""Historical financial data supplied by the ledger."""
from .providers import (
    HistoryWindow,
    CashBalancePoint,
    ExpenseRecord,
    RevenueRecord,
    PaymentRecord,
    BudgetRecord,
    FinancialHistory,
    HistoricalDataProvider,
    InMemoryHistoricalDataProvider,
)

__all__ = [
    "HistoryWindow",
    "CashBalancePoint",
    "ExpenseRecord",
    "RevenueRecord",
    "PaymentRecord",
    "BudgetRecord",
    "FinancialHistory",
    "HistoricalDataProvider",
    "InMemoryHistoricalDataProvider",
]

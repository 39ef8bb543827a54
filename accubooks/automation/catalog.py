"""
Trigger and action catalogs.

Describes every trigger and action type: what it means, which config keys or
params it understands, and which params are required. Rule validation reads
the required params from here.
"""

from .types import TriggerType, TriggerCategory, ActionType


TRIGGER_CATALOG = {
    # ----- Event-based -------------------------------------------------------
    TriggerType.INVOICE_CREATED: {
        "name": "Invoice Created",
        "description": "A new invoice was issued",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.INVOICE_OVERDUE: {
        "name": "Invoice Overdue",
        "description": "An invoice passed its due date unpaid",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.INVOICE_PAID: {
        "name": "Invoice Paid",
        "description": "An invoice was settled in full",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.PAYMENT_RECEIVED: {
        "name": "Payment Received",
        "description": "A customer payment was received",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.PAYMENT_FAILED: {
        "name": "Payment Failed",
        "description": "An outgoing or incoming payment failed",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.EXPENSE_CREATED: {
        "name": "Expense Created",
        "description": "A new expense was recorded",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.EXPENSE_THRESHOLD_EXCEEDED: {
        "name": "Expense Threshold Exceeded",
        "description": "Spending in a category crossed a configured threshold",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.BANK_TRANSACTION_IMPORTED: {
        "name": "Bank Transaction Imported",
        "description": "A transaction arrived from a bank feed",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.CASH_BALANCE_LOW: {
        "name": "Cash Balance Low",
        "description": "Cash balance fell below the tenant's buffer",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.BUDGET_THRESHOLD_REACHED: {
        "name": "Budget Threshold Reached",
        "description": "A budget reached its alert percentage",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.CUSTOMER_CREATED: {
        "name": "Customer Created",
        "description": "A new customer record was added",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.INSIGHT_GENERATED: {
        "name": "Insight Generated",
        "description": "The insight generator produced a new insight",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },
    TriggerType.FORECAST_UPDATED: {
        "name": "Forecast Updated",
        "description": "A financial forecast was regenerated",
        "category": TriggerCategory.EVENT,
        "config_keys": ["filters"],
    },

    # ----- Scheduled ---------------------------------------------------------
    TriggerType.SCHEDULE_DAILY: {
        "name": "Daily Schedule",
        "description": "Runs once a day at the configured hour (UTC)",
        "category": TriggerCategory.SCHEDULED,
        "config_keys": ["hour"],
    },
    TriggerType.SCHEDULE_WEEKLY: {
        "name": "Weekly Schedule",
        "description": "Runs once a week on the configured weekday (0 = Monday) and hour",
        "category": TriggerCategory.SCHEDULED,
        "config_keys": ["weekday", "hour"],
    },
    TriggerType.SCHEDULE_MONTHLY: {
        "name": "Monthly Schedule",
        "description": "Runs once a month on the configured day and hour",
        "category": TriggerCategory.SCHEDULED,
        "config_keys": ["day_of_month", "hour"],
    },
    TriggerType.SCHEDULE_INTERVAL: {
        "name": "Interval Schedule",
        "description": "Runs every N minutes",
        "category": TriggerCategory.SCHEDULED,
        "config_keys": ["every_minutes"],
    },

    # ----- Manual ------------------------------------------------------------
    TriggerType.MANUAL: {
        "name": "Manual Run",
        "description": "Started explicitly by a user",
        "category": TriggerCategory.MANUAL,
        "config_keys": [],
    },
}


ACTION_CATALOG = {
    ActionType.SEND_EMAIL: {
        "name": "Send Email",
        "description": "Send an email from a template",
        "required_params": ["to", "subject"],
    },
    ActionType.SEND_NOTIFICATION: {
        "name": "Send Notification",
        "description": "Post an in-app notification",
        "required_params": ["message"],
    },
    ActionType.CALL_WEBHOOK: {
        "name": "Call Webhook",
        "description": "POST the fact context to an external URL",
        "required_params": ["url"],
    },
    ActionType.GENERATE_REPORT: {
        "name": "Generate Report",
        "description": "Produce a financial report",
        "required_params": ["report_type"],
    },
    ActionType.LOCK_ACCOUNT: {
        "name": "Lock Account",
        "description": "Lock a ledger account against further posting",
        "required_params": ["account_id"],
    },
    ActionType.CREATE_TASK: {
        "name": "Create Task",
        "description": "Create a follow-up task for a team member",
        "required_params": ["title"],
    },
    ActionType.FLAG_TRANSACTION: {
        "name": "Flag Transaction",
        "description": "Flag a transaction for review",
        "required_params": ["transaction_id"],
    },
    ActionType.SEND_PAYMENT_REMINDER: {
        "name": "Send Payment Reminder",
        "description": "Remind a customer about an outstanding invoice",
        "required_params": ["invoice_id"],
    },
    ActionType.CATEGORIZE_TRANSACTION: {
        "name": "Categorize Transaction",
        "description": "Assign a category to a transaction",
        "required_params": ["transaction_id", "category"],
    },
    ActionType.ESCALATE_FOR_REVIEW: {
        "name": "Escalate for Review",
        "description": "Escalate an item to an approver",
        "required_params": ["reason"],
    },
}


def is_scheduled(trigger_type: TriggerType) -> bool:
    return TRIGGER_CATALOG[trigger_type]["category"] == TriggerCategory.SCHEDULED


SCHEDULED_TRIGGERS = [t for t in TriggerType if is_scheduled(t)]

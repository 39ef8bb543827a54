"""
Error taxonomy for the automation and intelligence core.

Every error carries a human-readable ``explanation`` so that any non-success
outcome can be surfaced to a user without leaking internals. ``to_dict()`` is
the user-safe shape returned by the HTTP layer.
"""
from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base class for all core errors."""

    code = "core_error"

    def __init__(self, explanation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(explanation)
        self.explanation = explanation
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "explanation": self.explanation}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CoreError):
    """Malformed rule, condition or action. Rejected before persistence."""

    code = "validation_error"


class InsufficientDataError(CoreError):
    """Not enough history to compute a result.

    Engines catch this internally and return a low-confidence partial result.
    """

    code = "insufficient_data"


class PlanLimitExceeded(CoreError):
    """The tenant's plan does not allow the requested operation."""

    code = "plan_limit_exceeded"

    def __init__(
        self,
        explanation: str,
        feature: str,
        current_plan: str,
        suggested_plan: Optional[str] = None,
        limit: Optional[int] = None,
        usage: Optional[int] = None,
    ):
        super().__init__(explanation)
        self.feature = feature
        self.current_plan = current_plan
        self.suggested_plan = suggested_plan
        self.limit = limit
        self.usage = usage

    @property
    def upgrade_prompt(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "current_plan": self.current_plan,
            "suggested_plan": self.suggested_plan,
            "limit": self.limit,
            "usage": self.usage,
            "message": self.explanation,
        }

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["upgrade"] = self.upgrade_prompt
        return payload


class ActionExecutionError(CoreError):
    """An action sink failed. Transient errors are retried, permanent ones are not."""

    code = "action_execution_error"

    def __init__(self, explanation: str, transient: bool = True, details: Optional[Dict[str, Any]] = None):
        super().__init__(explanation, details)
        self.transient = transient


class TenantIsolationViolation(CoreError):
    """A result's tenant does not match the caller's tenant. Always fatal."""

    code = "tenant_isolation_violation"

    def to_dict(self) -> Dict[str, Any]:
        # Never echo entity data back to the caller
        return {"error": self.code, "explanation": "Access denied."}


class IdempotencyConflict(CoreError):
    """An idempotency key was replayed with a different payload."""

    code = "idempotency_conflict"

    def __init__(self, explanation: str, idempotency_key: str, original_result: Any = None):
        super().__init__(explanation, {"idempotency_key": idempotency_key})
        self.idempotency_key = idempotency_key
        self.original_result = original_result


class NotFoundError(CoreError):
    """Entity does not exist within the caller's tenant."""

    code = "not_found"


class InvalidStateTransition(CoreError):
    """An execution was asked to move to a state its current state does not allow."""

    code = "invalid_state_transition"

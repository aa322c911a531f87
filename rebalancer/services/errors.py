"""
Domain errors raised by the allocation engine.

Each error carries a stable ``code`` that API callers can branch on.
"""
from typing import Optional


class RebalancerError(Exception):
    """Base class for engine errors."""
    code = "RebalancerError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class AlreadyRunning(RebalancerError):
    """Raised when a tenant already has a run in flight."""
    code = "AlreadyRunning"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"An allocation run is already in progress for tenant '{tenant_id}'")


class NoEligibleCandidates(RebalancerError):
    """Raised when the planners produce no transfer at all."""
    code = "NoEligibleCandidates"

    def __init__(self, tenant_id: str, run_type: str, run_id: Optional[int] = None):
        self.tenant_id = tenant_id
        self.run_type = run_type
        self.run_id = run_id
        super().__init__(f"No eligible {run_type} transfers for tenant '{tenant_id}'")


class PersistenceFailure(RebalancerError):
    """Raised when the final atomic commit of a run fails."""
    code = "PersistenceFailure"

    def __init__(self, tenant_id: str, detail: str, run_id: Optional[int] = None):
        self.tenant_id = tenant_id
        self.run_id = run_id
        super().__init__(f"Could not persist allocation run for tenant '{tenant_id}': {detail}")


class PlannerFailure(RebalancerError):
    """Raised when a planner fails in a way that invalidates the whole run."""
    code = "PlannerFailure"

    def __init__(self, tenant_id: str, detail: str, run_id: Optional[int] = None):
        self.tenant_id = tenant_id
        self.run_id = run_id
        super().__init__(f"Allocation run failed for tenant '{tenant_id}': {detail}")


class RunAborted(RebalancerError):
    """Raised when a run is abandoned before persistence. Nothing is written."""
    code = "RunAborted"


class SuggestionNotFound(RebalancerError):
    """Raised when a suggestion id does not exist (or belongs to another tenant)."""
    code = "NotFound"

    def __init__(self, suggestion_id: int):
        self.suggestion_id = suggestion_id
        super().__init__(f"Suggestion {suggestion_id} not found")


class InvalidTransition(RebalancerError):
    """Raised when a workflow action is not allowed from the current status."""
    code = "InvalidTransition"

    def __init__(self, suggestion_id: int, current_status: str, target_status: str, reason: Optional[str] = None):
        self.suggestion_id = suggestion_id
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason or f"already {current_status}"
        super().__init__(
            f"Cannot move suggestion {suggestion_id} from '{current_status}' to '{target_status}': {self.reason}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "suggestion_id": self.suggestion_id,
            "current_status": self.current_status,
            "target_status": self.target_status,
            "reason": self.reason,
        })
        return data


class StaleTransition(InvalidTransition):
    """Raised when the compare-and-set lost a race with another transition. Safe to retry."""
    code = "StaleTransition"

    def __init__(self, suggestion_id: int, expected_status: str, target_status: str):
        super().__init__(
            suggestion_id,
            expected_status,
            target_status,
            reason="status changed concurrently, reload and retry",
        )

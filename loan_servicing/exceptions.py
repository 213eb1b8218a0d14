"""
Error Taxonomy Module

Every rejected schedule operation raises a ScheduleEngineError subclass that
names the field and rule that failed, so callers can present an actionable
message. None of these are retried by the engine.
"""

from datetime import date
from typing import Any, Dict, Optional


class ScheduleEngineError(Exception):
    """Base exception for all loan schedule engine errors"""

    code = "schedule_engine_error"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        rule: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.field = field
        self.rule = rule
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.field:
            return f"{self.message} (field: {self.field})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error payload for callers"""
        payload = {
            "error": self.code,
            "message": self.message,
            "field": self.field,
            "rule": self.rule,
        }
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return payload


class InvalidScheduleParameters(ScheduleEngineError):
    """Principal, rate, payment count, frequency or override is invalid"""

    code = "invalid_schedule_parameters"


class InvalidStartDate(ScheduleEngineError):
    """Raised when a schedule would start on or before today"""

    code = "invalid_start_date"

    def __init__(self, start_date: date, today: date):
        super().__init__(
            f"Start date {start_date.isoformat()} must be after {today.isoformat()}",
            field="start_date",
            rule="must be strictly after today",
            details={"start_date": start_date.isoformat(), "today": today.isoformat()}
        )


class ContractAlreadyFinalized(ScheduleEngineError):
    """Raised when regenerating a schedule whose contract is signed"""

    code = "contract_already_finalized"


class LoanAlreadySettled(ScheduleEngineError):
    """Raised for any lifecycle operation on a completed or cancelled loan"""

    code = "loan_already_settled"


class ReconciliationConflict(ScheduleEngineError):
    """Persisted payment rows are inconsistent with settled-row assumptions"""

    code = "reconciliation_conflict"


class LifecycleTransitionError(ScheduleEngineError):
    """Operation is not allowed from the loan's current scheduling state"""

    code = "lifecycle_transition_not_allowed"


class ConcurrentModificationError(ScheduleEngineError):
    """Raised when a loan changed between read and write"""

    code = "concurrent_modification"

    def __init__(self, loan_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Loan {loan_id} was modified concurrently",
            field="version",
            rule="must match the version that was read",
            details={"expected_version": expected_version, "actual_version": actual_version}
        )


class NotFoundError(ScheduleEngineError):
    """Base for missing entities"""

    code = "not_found"


class LoanNotFound(NotFoundError):
    code = "loan_not_found"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", field="loan_id")


class PaymentNotFound(NotFoundError):
    code = "payment_not_found"

    def __init__(self, message: str):
        super().__init__(message, field="payment")


class UnrecognizedSettlementStatus(ScheduleEngineError):
    """Payment rail reported a status that has no mapping"""

    code = "unrecognized_settlement_status"

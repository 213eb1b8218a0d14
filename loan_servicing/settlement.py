"""
Payment Settlement Module

Folds payment-rail (Accept Pay EFT) transaction reports into payment rows
and loan balances. Raw provider payloads are validated with pydantic and
converted at the boundary into one of three typed events; nothing loosely
typed reaches the balance math.

The settlement path is the only writer besides the lifecycle manager and is
restricted to a row's status, error code and settlement timestamp.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional, Union

from pydantic import BaseModel, field_validator

from .audit import AuditEventType, AuditTrail
from .currency import Money
from .exceptions import UnrecognizedSettlementStatus
from .loans import LoanStatus
from .payments import PaymentStatus, SETTLED_STATUSES
from .store import LoanStore

logger = logging.getLogger("loan_servicing.settlement")


# Rail return codes. 9XX are processor rejections, RXX are bank returns.
ERROR_CODE_DESCRIPTIONS: Dict[str, str] = {
    "900": "Invalid account number",
    "901": "Invalid transit number",
    "902": "Invalid institution number",
    "903": "Account closed",
    "904": "Insufficient funds",
    "905": "Payment stopped",
    "906": "Invalid account type",
    "907": "Account frozen",
    "908": "Invalid amount",
    "909": "Not authorized",
    "910": "Account does not exist",
    "R01": "Insufficient funds",
    "R02": "Account closed",
    "R03": "No account / unable to locate account",
    "R04": "Invalid account number",
    "R05": "Unauthorized debit",
    "R06": "Returned per originator request",
    "R07": "Authorization revoked",
    "R08": "Payment stopped",
    "R09": "Uncollected funds",
}

RETRYABLE_ERROR_CODES = frozenset({"904", "R01", "R09"})

_FAILURE_STATUS = re.compile(r"^(9\d\d|R\d\d)$")


@dataclass(frozen=True)
class PaymentSubmitted:
    """Rail accepted the debit; funds not yet collected"""
    payment_id: str
    status: PaymentStatus
    occurred_at: datetime


@dataclass(frozen=True)
class PaymentSettled:
    """Funds confirmed by the rail"""
    payment_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class PaymentRejected:
    """Debit rejected by the processor or returned by the bank"""
    payment_id: str
    error_code: str
    reason: str
    retryable: bool
    occurred_at: datetime


SettlementEvent = Union[PaymentSubmitted, PaymentSettled, PaymentRejected]


class AcceptPayTransactionUpdate(BaseModel):
    """Raw transaction status report from the payment rail"""
    payment_id: str
    status: str
    error_code: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @field_validator("status", "error_code")
    @classmethod
    def _normalize_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().upper()
        return value or None

    def to_event(self) -> SettlementEvent:
        """
        Map the provider status onto a typed settlement event.

        Raises:
            UnrecognizedSettlementStatus: If the status code has no mapping
        """
        occurred_at = self.occurred_at or datetime.now(timezone.utc)
        status = self.status

        if status == "101":
            return PaymentSubmitted(self.payment_id, PaymentStatus.SCHEDULED, occurred_at)
        if status in ("102", "PD"):
            return PaymentSubmitted(self.payment_id, PaymentStatus.AUTHORIZED, occurred_at)
        if status == "AA":
            return PaymentSettled(self.payment_id, occurred_at)
        if _FAILURE_STATUS.match(status):
            code = self.error_code or status
            return PaymentRejected(
                payment_id=self.payment_id,
                error_code=code,
                reason=ERROR_CODE_DESCRIPTIONS.get(code, f"Unknown error code: {code}"),
                retryable=code in RETRYABLE_ERROR_CODES,
                occurred_at=occurred_at,
            )

        raise UnrecognizedSettlementStatus(
            f"Unrecognized payment rail status: {status}",
            field="status", rule="must be a known payment rail status",
            details={"payment_id": self.payment_id, "status": status}
        )


def parse_settlement_event(payload: dict) -> SettlementEvent:
    """Validate a raw provider payload and convert it to a settlement event"""
    return AcceptPayTransactionUpdate.model_validate(payload).to_event()


@dataclass
class SettlementResult:
    """Outcome of applying one settlement event"""
    payment_id: str
    loan_id: str
    previous_status: PaymentStatus
    status: PaymentStatus
    remaining_balance: Money
    loan_completed: bool = False


class SettlementProcessor:
    """Applies settlement events to payment rows and loan balances"""

    def __init__(self, store: LoanStore, audit_trail: AuditTrail,
                 clock: Optional[Callable[[], date]] = None):
        self.store = store
        self.audit_trail = audit_trail
        self.clock = clock or date.today

    def apply(self, event: SettlementEvent) -> SettlementResult:
        """
        Apply a settlement event.

        A newly confirmed payment reduces the loan remaining balance by its
        principal portion. When the balance reaches zero and no open rows
        remain, the loan is completed.

        Args:
            event: Typed settlement event

        Returns:
            SettlementResult
        """
        today = self.clock()
        with self.store.atomic():
            payment = self.store.get_payment_by_id(event.payment_id)
            loan = self.store.require_loan(payment.loan_id)
            previous_status = payment.status

            if isinstance(event, PaymentSettled):
                status, error_code, settled_at = PaymentStatus.CONFIRMED, None, event.occurred_at
            elif isinstance(event, PaymentRejected):
                status, error_code, settled_at = PaymentStatus.FAILED, event.error_code, None
            else:
                status, error_code, settled_at = event.status, None, None

            self.store.update_payment_settlement(payment.id, status, error_code, settled_at)

            completed = False
            newly_settled = status in SETTLED_STATUSES and previous_status not in SETTLED_STATUSES
            if newly_settled:
                expected_version = loan.version
                remaining = loan.remaining_balance - payment.principal
                if remaining.is_negative():
                    remaining = Money.zero(loan.currency)
                loan.remaining_balance = remaining
                if loan.status == LoanStatus.PENDING_DISBURSEMENT:
                    loan.status = LoanStatus.ACTIVE

                open_rows = [
                    p for p in self.store.list_payments(loan.id)
                    if p.id != payment.id and p.is_open(today)
                ]
                if remaining.is_zero() and not open_rows:
                    loan.status = LoanStatus.COMPLETED
                    completed = True
                self.store.update_loan(loan, expected_version)

            self.audit_trail.log_event(
                AuditEventType.SETTLEMENT_APPLIED,
                entity_type="payment",
                entity_id=payment.id,
                metadata={
                    "loan_id": loan.id,
                    "sequence_number": payment.sequence_number,
                    "previous_status": previous_status,
                    "status": status,
                    "error_code": error_code,
                    "remaining_balance": loan.remaining_balance,
                }
            )
            if completed:
                self.audit_trail.log_event(
                    AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"final_payment": payment.sequence_number}
                )

        if status == PaymentStatus.FAILED:
            logger.warning(
                "Payment %s of loan %s failed with %s", payment.sequence_number, loan.id, error_code
            )
        else:
            logger.info(
                "Payment %s of loan %s is now %s", payment.sequence_number, loan.id, status.value
            )

        return SettlementResult(
            payment_id=payment.id,
            loan_id=loan.id,
            previous_status=previous_status,
            status=status,
            remaining_balance=loan.remaining_balance,
            loan_completed=completed,
        )

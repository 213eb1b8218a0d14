"""
Scheduled Payment Module

Persisted payment rows. The engine creates rows and only rewrites them while
their status is pending or scheduled; once the payment rail has touched a
row, only its status, error code and settlement timestamp change.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .amortization import ScheduleLine
from .currency import Currency, Money
from .storage import StorageRecord


class PaymentStatus(Enum):
    """Payment row lifecycle states"""
    PENDING = "pending"        # Created by the engine, not yet sent
    SCHEDULED = "scheduled"    # Queued with the payment rail
    AUTHORIZED = "authorized"  # Accepted by the rail, awaiting bank
    COLLECTED = "collected"    # Funds collected, not yet confirmed
    MISSED = "missed"          # Due date passed without collection
    FAILED = "failed"          # Returned or rejected by the bank
    DEFERRED = "deferred"      # Moved to the end of the schedule
    CANCELLED = "cancelled"    # Stopped, will not be collected
    CONFIRMED = "confirmed"    # Funds confirmed by the rail
    PAID = "paid"              # Marked paid by servicing staff
    MANUAL = "manual"          # Paid outside the rail
    REBATE = "rebate"          # Rebate applied against the balance


SETTLED_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.PAID,
    PaymentStatus.MANUAL,
    PaymentStatus.REBATE,
})

ENGINE_WRITABLE_STATUSES = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.SCHEDULED,
})

IN_FLIGHT_STATUSES = frozenset({
    PaymentStatus.AUTHORIZED,
    PaymentStatus.COLLECTED,
    PaymentStatus.MISSED,
})


@dataclass
class ScheduledPayment(StorageRecord):
    """A persisted schedule row"""
    loan_id: str
    sequence_number: int
    due_date: date
    amount: Money
    principal: Money
    interest: Money
    remaining_balance: Money
    status: PaymentStatus = PaymentStatus.PENDING
    fee_amount: Optional[Money] = None
    error_code: Optional[str] = None
    settled_at: Optional[datetime] = None
    notes: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.fee_amount is None:
            self.fee_amount = Money.zero(self.amount.currency)

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    @property
    def is_engine_writable(self) -> bool:
        return self.status in ENGINE_WRITABLE_STATUSES

    def is_open(self, today: date) -> bool:
        """Open rows may still be rewritten by rescheduling"""
        if self.status in ENGINE_WRITABLE_STATUSES:
            return True
        return self.status == PaymentStatus.FAILED and self.due_date >= today

    def is_past_failure(self, today: date) -> bool:
        return self.status == PaymentStatus.FAILED and self.due_date < today

    def carries_history(self, today: date) -> bool:
        """Money moved, or is moving, through the rail for this row"""
        return (self.is_settled or self.status in IN_FLIGHT_STATUSES
                or self.is_past_failure(today))

    @classmethod
    def from_line(cls, loan_id: str, line: ScheduleLine,
                  sequence_number: Optional[int] = None) -> 'ScheduledPayment':
        """New pending row from a computed schedule line"""
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            sequence_number=sequence_number or line.sequence_number,
            due_date=line.due_date,
            amount=line.amount,
            principal=line.principal,
            interest=line.interest,
            remaining_balance=line.remaining_balance,
        )

    def rescheduled(self, line: ScheduleLine, sequence_number: int) -> 'ScheduledPayment':
        """Same row identity carrying a new schedule line, reset to pending"""
        return replace(
            self,
            sequence_number=sequence_number,
            due_date=line.due_date,
            amount=line.amount,
            principal=line.principal,
            interest=line.interest,
            remaining_balance=line.remaining_balance,
            status=PaymentStatus.PENDING,
            fee_amount=Money.zero(line.amount.currency),
            error_code=None,
            notes=list(self.notes),
            updated_at=datetime.now(timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence_number': self.sequence_number,
            'due_date': self.due_date.isoformat(),
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'fee_amount': str(self.fee_amount.amount),
            'status': self.status.value,
            'error_code': self.error_code,
            'settled_at': self.settled_at.isoformat() if self.settled_at else None,
            'notes': list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledPayment':
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence_number=data['sequence_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount=get_money('amount'),
            principal=get_money('principal'),
            interest=get_money('interest'),
            remaining_balance=get_money('remaining_balance'),
            fee_amount=get_money('fee_amount'),
            status=PaymentStatus(data['status']),
            error_code=data.get('error_code'),
            settled_at=datetime.fromisoformat(data['settled_at']) if data.get('settled_at') else None,
            notes=list(data.get('notes') or []),
        )

"""
Loan and Contract Module

Loan records as seen by the schedule engine, and the loan contract whose
terms carry the fee structure and the schedule the borrower signs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .amortization import ScheduleLine
from .calendars import PaymentFrequency
from .currency import Currency, Money
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_DISBURSEMENT = "pending_disbursement"  # Approved, funds not yet sent
    ACTIVE = "active"                              # Repaying on schedule
    COMPLETED = "completed"                        # Balance fully repaid
    DEFAULTED = "defaulted"                        # In default, still serviced
    CANCELLED = "cancelled"                        # Closed without repayment


CLOSED_LOAN_STATUSES = frozenset({LoanStatus.COMPLETED, LoanStatus.CANCELLED})


class ApplicationStatus(Enum):
    """Underwriting state of the application behind a loan"""
    PRE_APPROVED = "pre_approved"
    CONTRACT_PENDING = "contract_pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ContractStatus(Enum):
    """Loan contract states"""
    GENERATED = "generated"
    SENT = "sent"
    SIGNED = "signed"
    CANCELLED = "cancelled"


@dataclass
class Loan(StorageRecord):
    """Loan with the balances the schedule engine maintains"""
    principal_amount: Money              # Financed total including brokerage fee
    annual_interest_rate: Decimal        # Percent, 29 means 29%
    term_months: int
    frequency: PaymentFrequency
    remaining_balance: Money
    status: LoanStatus = LoanStatus.PENDING_DISBURSEMENT
    application_status: ApplicationStatus = ApplicationStatus.PRE_APPROVED
    version: int = 0                     # Optimistic lock, bumped on every write
    rebilled_failed_sequences: List[int] = field(default_factory=list)
    anchor_day: Optional[int] = None     # Day of month monthly due dates step from

    def __post_init__(self):
        if not isinstance(self.annual_interest_rate, Decimal):
            self.annual_interest_rate = Decimal(str(self.annual_interest_rate))
        self.frequency = PaymentFrequency.parse(self.frequency)
        if self.remaining_balance.currency != self.principal_amount.currency:
            raise ValueError("Remaining balance currency must match principal currency")

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def is_closed(self) -> bool:
        return self.status in CLOSED_LOAN_STATUSES

    @classmethod
    def new(
        cls,
        principal_amount: Money,
        annual_interest_rate: Decimal,
        term_months: int,
        frequency,
        loan_id: Optional[str] = None,
        application_status: ApplicationStatus = ApplicationStatus.PRE_APPROVED
    ) -> 'Loan':
        now = datetime.now(timezone.utc)
        return cls(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            principal_amount=principal_amount,
            annual_interest_rate=annual_interest_rate,
            term_months=term_months,
            frequency=frequency,
            remaining_balance=principal_amount,
            application_status=application_status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'currency': self.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'annual_interest_rate': str(self.annual_interest_rate),
            'term_months': self.term_months,
            'frequency': self.frequency.value,
            'status': self.status.value,
            'application_status': self.application_status.value,
            'version': self.version,
            'rebilled_failed_sequences': list(self.rebilled_failed_sequences),
            'anchor_day': self.anchor_day,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            principal_amount=Money(Decimal(data['principal_amount']), currency),
            remaining_balance=Money(Decimal(data['remaining_balance']), currency),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            frequency=PaymentFrequency(data['frequency']),
            status=LoanStatus(data['status']),
            application_status=ApplicationStatus(data['application_status']),
            version=data.get('version', 0),
            rebilled_failed_sequences=list(data.get('rebilled_failed_sequences') or []),
            anchor_day=data.get('anchor_day'),
        )


@dataclass
class ContractTerms:
    """Commercial terms and schedule presented to the borrower"""
    loan_amount: Money
    brokerage_fee: Money
    origination_fee: Money
    deferral_fee: Money
    financed_amount: Money
    annual_interest_rate: Decimal
    frequency: PaymentFrequency
    number_of_payments: int
    first_payment_date: date
    periodic_payment: Money
    schedule: List[ScheduleLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currency': self.loan_amount.currency.code,
            'loan_amount': str(self.loan_amount.amount),
            'brokerage_fee': str(self.brokerage_fee.amount),
            'origination_fee': str(self.origination_fee.amount),
            'deferral_fee': str(self.deferral_fee.amount),
            'financed_amount': str(self.financed_amount.amount),
            'annual_interest_rate': str(self.annual_interest_rate),
            'frequency': self.frequency.value,
            'number_of_payments': self.number_of_payments,
            'first_payment_date': self.first_payment_date.isoformat(),
            'periodic_payment': str(self.periodic_payment.amount),
            'schedule': [line.to_dict() for line in self.schedule],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContractTerms':
        currency = Currency[data['currency']]

        def get_money(value: str) -> Money:
            return Money(Decimal(value), currency)

        schedule = [
            ScheduleLine(
                sequence_number=row['sequence_number'],
                due_date=date.fromisoformat(row['due_date']),
                amount=get_money(row['amount']),
                principal=get_money(row['principal']),
                interest=get_money(row['interest']),
                remaining_balance=get_money(row['remaining_balance']),
            )
            for row in data.get('schedule', [])
        ]
        return cls(
            loan_amount=get_money(data['loan_amount']),
            brokerage_fee=get_money(data['brokerage_fee']),
            origination_fee=get_money(data['origination_fee']),
            deferral_fee=get_money(data['deferral_fee']),
            financed_amount=get_money(data['financed_amount']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            frequency=PaymentFrequency(data['frequency']),
            number_of_payments=data['number_of_payments'],
            first_payment_date=date.fromisoformat(data['first_payment_date']),
            periodic_payment=get_money(data['periodic_payment']),
            schedule=schedule,
        )


@dataclass
class Contract(StorageRecord):
    """Versioned loan contract, one per loan"""
    loan_id: str
    version: int
    status: ContractStatus
    terms: ContractTerms
    expires_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    @property
    def is_signed(self) -> bool:
        return self.status == ContractStatus.SIGNED

    @classmethod
    def generated(cls, loan_id: str, terms: ContractTerms, expiry_days: int = 30) -> 'Contract':
        """Version 1 contract for a freshly generated schedule"""
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            version=1,
            status=ContractStatus.GENERATED,
            terms=terms,
            expires_at=now + timedelta(days=expiry_days),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'version': self.version,
            'status': self.status.value,
            'terms': self.terms.to_dict(),
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'signed_at': self.signed_at.isoformat() if self.signed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contract':
        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return datetime.fromisoformat(data[key])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            version=data['version'],
            status=ContractStatus(data['status']),
            terms=ContractTerms.from_dict(data['terms']),
            expires_at=get_datetime('expires_at'),
            signed_at=get_datetime('signed_at'),
        )

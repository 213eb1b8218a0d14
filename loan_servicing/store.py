"""
Loan Store Module

Persistence boundary of the schedule engine: loans, payment rows and
contracts over any StorageInterface backend. Bulk payment writes are meant
to run inside ``atomic()`` so a schedule is replaced all-or-nothing.
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .exceptions import ConcurrentModificationError, LoanNotFound, PaymentNotFound
from .loans import Contract, Loan
from .payments import PaymentStatus, ScheduledPayment
from .storage import StorageInterface


class LoanStore:
    """Loan, payment and contract persistence"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.contracts_table = "loan_contracts"

    def atomic(self):
        """All-or-nothing unit spanning every table"""
        return self.storage.atomic()

    # Loans

    def create_loan(self, loan: Loan) -> Loan:
        if self.storage.exists(self.loans_table, loan.id):
            raise ValueError(f"Loan {loan.id} already exists")
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def update_loan(self, loan: Loan, expected_version: int) -> Loan:
        """
        Persist loan changes if nobody else wrote the loan in between.

        Args:
            loan: Loan with its new field values
            expected_version: Version the caller read before computing

        Returns:
            The loan with its version bumped

        Raises:
            LoanNotFound: If the loan does not exist
            ConcurrentModificationError: If the stored version moved on
        """
        with self.atomic():
            current = self.require_loan(loan.id)
            if current.version != expected_version:
                raise ConcurrentModificationError(loan.id, expected_version, current.version)
            loan.version = expected_version + 1
            loan.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    # Payments

    def list_payments(self, loan_id: str) -> List[ScheduledPayment]:
        """All payment rows of a loan ordered by sequence number"""
        rows = self.storage.find(self.payments_table, {'loan_id': loan_id})
        payments = [ScheduledPayment.from_dict(row) for row in rows]
        payments.sort(key=lambda p: p.sequence_number)
        return payments

    def get_payment(self, loan_id: str, sequence_number: int) -> ScheduledPayment:
        rows = self.storage.find(
            self.payments_table, {'loan_id': loan_id, 'sequence_number': sequence_number}
        )
        if not rows:
            raise PaymentNotFound(f"Payment {sequence_number} of loan {loan_id} not found")
        return ScheduledPayment.from_dict(rows[0])

    def get_payment_by_id(self, payment_id: str) -> ScheduledPayment:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return ScheduledPayment.from_dict(data)

    def _save_payment(self, payment: ScheduledPayment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def bulk_replace_payments(self, loan_id: str, payments: Iterable[ScheduledPayment]) -> int:
        """Delete every row of the loan and insert ``payments``"""
        with self.atomic():
            for existing in self.storage.find(self.payments_table, {'loan_id': loan_id}):
                self.storage.delete(self.payments_table, existing['id'])
            count = 0
            for payment in payments:
                self._check_owner(loan_id, payment)
                self._save_payment(payment)
                count += 1
        return count

    def bulk_upsert_payments(
        self,
        loan_id: str,
        to_create: Iterable[ScheduledPayment],
        to_update: Iterable[ScheduledPayment],
        to_delete_ids: Iterable[str]
    ) -> None:
        """Apply a reconciliation plan as one unit"""
        with self.atomic():
            for payment_id in to_delete_ids:
                if not self.storage.delete(self.payments_table, payment_id):
                    raise PaymentNotFound(f"Payment {payment_id} not found")
            for payment in to_update:
                self._check_owner(loan_id, payment)
                if not self.storage.exists(self.payments_table, payment.id):
                    raise PaymentNotFound(f"Payment {payment.id} not found")
                self._save_payment(payment)
            for payment in to_create:
                self._check_owner(loan_id, payment)
                self._save_payment(payment)

    def update_payment_settlement(
        self,
        payment_id: str,
        status: PaymentStatus,
        error_code: Optional[str] = None,
        settled_at: Optional[datetime] = None
    ) -> ScheduledPayment:
        """
        Settlement write path: only status, error code and timestamps change.
        Sequence numbers and amounts are never touched here.
        """
        with self.atomic():
            payment = self.get_payment_by_id(payment_id)
            payment.status = status
            payment.error_code = error_code
            payment.settled_at = settled_at
            payment.updated_at = datetime.now(timezone.utc)
            self._save_payment(payment)
        return payment

    @staticmethod
    def _check_owner(loan_id: str, payment: ScheduledPayment) -> None:
        if payment.loan_id != loan_id:
            raise ValueError(f"Payment {payment.id} belongs to loan {payment.loan_id}, not {loan_id}")

    # Contracts

    def get_contract(self, loan_id: str) -> Optional[Contract]:
        rows = self.storage.find(self.contracts_table, {'loan_id': loan_id})
        if not rows:
            return None
        return Contract.from_dict(rows[0])

    def save_contract(self, contract: Contract) -> Contract:
        self.storage.save(self.contracts_table, contract.id, contract.to_dict())
        return contract

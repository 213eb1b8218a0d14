"""
Schedule Reconciler Module

Diffs a freshly computed schedule against the payment rows already persisted
for a loan and classifies each position as update, create or delete.

Existing rows fall into three groups:

- history: settled rows (confirmed, paid, manual, rebate), past failures and
  rows in flight with the payment rail (authorized, collected, missed).
- open: pending or scheduled (any date), or failed with a due date today or
  later.
- superseded: deferred and cancelled rows, which will not be collected.

The new schedule resumes after the highest history sequence number (the
anchor). Open rows, and superseded rows above the anchor, are rewritten or
removed; everything at or below the anchor is retained and never touched.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from .amortization import ScheduleLine
from .currency import Currency, Money, sum_money
from .exceptions import ReconciliationConflict
from .payments import ScheduledPayment


@dataclass
class SchedulePreview:
    """Counts and resulting balance shown before a change is committed"""
    to_create_count: int
    to_update_count: int
    to_delete_count: int
    new_remaining_balance: Money
    periodic_payment: Optional[Money] = None
    payments: List[ScheduledPayment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'to_create_count': self.to_create_count,
            'to_update_count': self.to_update_count,
            'to_delete_count': self.to_delete_count,
            'new_remaining_balance': str(self.new_remaining_balance.amount),
            'currency': self.new_remaining_balance.currency.code,
            'schedule': [
                {
                    'sequence_number': p.sequence_number,
                    'due_date': p.due_date.isoformat(),
                    'amount': str(p.amount.amount),
                    'principal': str(p.principal.amount),
                    'interest': str(p.interest.amount),
                    'remaining_balance': str(p.remaining_balance.amount),
                }
                for p in self.payments
            ],
        }
        if self.periodic_payment is not None:
            result['periodic_payment'] = str(self.periodic_payment.amount)
        return result


@dataclass
class ReconciliationPlan:
    """Row-level changes that move persisted rows onto a new schedule"""
    loan_id: str
    anchor_sequence_number: int
    updated_remaining_balance: Money
    to_update: List[ScheduledPayment] = field(default_factory=list)
    to_create: List[ScheduledPayment] = field(default_factory=list)
    to_delete: List[ScheduledPayment] = field(default_factory=list)
    retained: List[ScheduledPayment] = field(default_factory=list)

    @property
    def to_delete_ids(self) -> List[str]:
        return [payment.id for payment in self.to_delete]

    @property
    def new_payments(self) -> List[ScheduledPayment]:
        """Rows carrying the new schedule, in sequence order"""
        return sorted(self.to_update + self.to_create, key=lambda p: p.sequence_number)

    def preview(self, periodic_payment: Optional[Money] = None) -> SchedulePreview:
        return SchedulePreview(
            to_create_count=len(self.to_create),
            to_update_count=len(self.to_update),
            to_delete_count=len(self.to_delete),
            new_remaining_balance=self.updated_remaining_balance,
            periodic_payment=periodic_payment,
            payments=self.new_payments,
        )


class ScheduleReconciler:
    """Computes reconciliation plans; performs no writes"""

    def __init__(self, today: Optional[date] = None):
        self.today = today or date.today()

    def partition(self, existing_payments: Sequence[ScheduledPayment]):
        """Split rows into (open, retained) after checking sequence numbers"""
        duplicates = sorted(
            seq for seq, count in Counter(p.sequence_number for p in existing_payments).items()
            if count > 1
        )
        if duplicates:
            raise ReconciliationConflict(
                f"Duplicate payment sequence numbers: {duplicates}",
                field="sequence_number", rule="must be unique per loan",
                details={"sequence_numbers": duplicates}
            )

        open_rows = [p for p in existing_payments if p.is_open(self.today)]
        retained = [p for p in existing_payments if not p.is_open(self.today)]
        return open_rows, retained

    def reconcile(
        self,
        loan_id: str,
        new_schedule: Sequence[ScheduleLine],
        existing_payments: Sequence[ScheduledPayment]
    ) -> ReconciliationPlan:
        """
        Plan the create/update/delete set for a new schedule.

        Args:
            loan_id: Loan the rows belong to
            new_schedule: Computed schedule lines, numbered from 1
            existing_payments: All persisted rows of the loan

        Returns:
            ReconciliationPlan

        Raises:
            ReconciliationConflict: If the persisted sequence numbers are
                inconsistent (duplicates, gaps below the anchor,
                or open rows sitting below the anchor)
        """
        open_rows, retained = self.partition(existing_payments)
        anchor = max(
            (p.sequence_number for p in retained if p.carries_history(self.today)), default=0
        )

        # Deferred and cancelled rows past the last history row are rewritten
        superseded = [p for p in retained if p.sequence_number > anchor]
        retained = [p for p in retained if p.sequence_number <= anchor]
        replaceable = open_rows + superseded

        stranded = sorted(p.sequence_number for p in open_rows if p.sequence_number < anchor)
        if stranded:
            raise ReconciliationConflict(
                f"Open payments {stranded} precede retained payment {anchor}",
                field="sequence_number",
                rule="open payments must follow all retained payments",
                details={"sequence_numbers": stranded, "anchor": anchor}
            )

        missing = sorted(set(range(1, anchor + 1)) - {p.sequence_number for p in retained})
        if missing:
            raise ReconciliationConflict(
                f"Retained payment history has gaps at {missing}",
                field="sequence_number", rule="must be contiguous from 1",
                details={"sequence_numbers": missing, "anchor": anchor}
            )

        open_by_sequence = {p.sequence_number: p for p in replaceable}
        currency = _schedule_currency(new_schedule, existing_payments)
        plan = ReconciliationPlan(
            loan_id=loan_id,
            anchor_sequence_number=anchor,
            updated_remaining_balance=sum_money((line.principal for line in new_schedule), currency),
            retained=sorted(retained, key=lambda p: p.sequence_number),
        )

        for index, line in enumerate(new_schedule):
            sequence_number = anchor + index + 1
            existing = open_by_sequence.pop(sequence_number, None)
            if existing is not None:
                plan.to_update.append(existing.rescheduled(line, sequence_number))
            else:
                plan.to_create.append(ScheduledPayment.from_line(loan_id, line, sequence_number))

        plan.to_delete = sorted(open_by_sequence.values(), key=lambda p: p.sequence_number)
        return plan


def _schedule_currency(new_schedule: Sequence[ScheduleLine],
                       existing_payments: Sequence[ScheduledPayment]) -> Currency:
    if new_schedule:
        return new_schedule[0].amount.currency
    if existing_payments:
        return existing_payments[0].amount.currency
    return Currency.CAD


def reconcile(
    loan_id: str,
    new_schedule: Sequence[ScheduleLine],
    existing_payments: Sequence[ScheduledPayment],
    today: Optional[date] = None
) -> ReconciliationPlan:
    """Module-level shortcut for ScheduleReconciler(today).reconcile(...)"""
    return ScheduleReconciler(today).reconcile(loan_id, new_schedule, existing_payments)

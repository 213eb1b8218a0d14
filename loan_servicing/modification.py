"""
Modification Balance Calculator Module

Outstanding balance to re-amortize when a loan is modified mid-term: the
current remaining balance plus everything re-billed for past failed
payments. The brokerage fee is not added again because the remaining
balance already carries it from origination.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List, Optional

from .currency import Money
from .exceptions import InvalidScheduleParameters
from .fees import FailedPaymentFees, resolve_failed_payment_fees
from .payments import ScheduledPayment


@dataclass
class ModificationBalance:
    """Balance to re-amortize and how it was built"""
    current_remaining_balance: Money
    failed_payment_fees: FailedPaymentFees
    outstanding_balance: Money
    rebilled_sequence_numbers: List[int] = field(default_factory=list)


def calculate_modification_balance(
    current_remaining_balance: Money,
    failed_payments: Iterable[ScheduledPayment],
    origination_fee: Money,
    today: Optional[date] = None,
    already_rebilled: Iterable[int] = ()
) -> ModificationBalance:
    """
    Build the modification balance with its breakdown.

    Args:
        current_remaining_balance: Loan remaining balance before modification
        failed_payments: Payment rows of the loan (non-failed rows are ignored)
        origination_fee: Penalty per failed payment
        today: Reference date, defaults to date.today()
        already_rebilled: Sequence numbers charged by an earlier modification

    Returns:
        ModificationBalance
    """
    if current_remaining_balance.is_negative():
        raise InvalidScheduleParameters(
            "Remaining balance cannot be negative",
            field="remaining_balance", rule="must be 0 or greater"
        )
    fees = resolve_failed_payment_fees(
        failed_payments, origination_fee, today=today,
        exclude_sequence_numbers=already_rebilled
    )
    return ModificationBalance(
        current_remaining_balance=current_remaining_balance,
        failed_payment_fees=fees,
        outstanding_balance=current_remaining_balance + fees.total_fee_amount,
        rebilled_sequence_numbers=fees.sequence_numbers,
    )


def compute_modification_balance(
    current_remaining_balance: Money,
    failed_payments: Iterable[ScheduledPayment],
    origination_fee: Money,
    today: Optional[date] = None,
    already_rebilled: Iterable[int] = ()
) -> Money:
    """Outstanding balance that becomes the principal of the new schedule"""
    return calculate_modification_balance(
        current_remaining_balance, failed_payments, origination_fee,
        today=today, already_rebilled=already_rebilled
    ).outstanding_balance

"""
Fee Integrator Module

Folds the three loan fees into schedule amounts without double-counting:

- brokerage fee: added once to the financed principal at origination
- origination fee: a penalty charged once per failed payment, only when the
  schedule is re-amortized; never charged up front
- deferral fee: attached to the single payment moved to the end of the
  schedule, or to the balance only
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional

from .currency import Money, sum_money
from .exceptions import InvalidScheduleParameters
from .payments import ScheduledPayment


@dataclass(frozen=True)
class FeeSet:
    """Fees attached to a loan contract"""
    brokerage_fee: Money
    origination_fee: Money
    deferral_fee: Money

    def __post_init__(self):
        currency = self.brokerage_fee.currency
        for name in ('brokerage_fee', 'origination_fee', 'deferral_fee'):
            fee = getattr(self, name)
            if fee.currency != currency:
                raise InvalidScheduleParameters(
                    f"{name} currency {fee.currency.code} does not match {currency.code}",
                    field=name, rule="all fees must share one currency"
                )
            if fee.is_negative():
                raise InvalidScheduleParameters(
                    f"{name.replace('_', ' ').capitalize()} cannot be negative",
                    field=name, rule="must be 0 or greater"
                )


def resolve_financed_amount(loan_amount: Money, brokerage_fee: Money) -> Money:
    """
    Total amount financed at origination.

    The origination fee is deliberately not part of this amount.

    Raises:
        InvalidScheduleParameters: loan amount <= 0 or negative brokerage fee
    """
    if not loan_amount.is_positive():
        raise InvalidScheduleParameters(
            "Loan amount must be greater than 0",
            field="loan_amount", rule="must be greater than 0"
        )
    if brokerage_fee.is_negative():
        raise InvalidScheduleParameters(
            "Brokerage fee cannot be negative",
            field="brokerage_fee", rule="must be 0 or greater"
        )
    if brokerage_fee.currency != loan_amount.currency:
        raise InvalidScheduleParameters(
            "Brokerage fee currency must match loan currency",
            field="brokerage_fee", rule="currency must match loan amount"
        )
    return loan_amount + brokerage_fee


@dataclass(frozen=True)
class FailedPaymentCharge:
    """Amount re-billed for one failed payment"""
    payment_id: str
    sequence_number: int
    due_date: date
    unpaid_amount: Money
    penalty: Money

    @property
    def total(self) -> Money:
        return self.unpaid_amount + self.penalty


@dataclass
class FailedPaymentFees:
    """Breakdown of everything re-billed for failed payments"""
    total_fee_amount: Money
    total_penalties: Money
    total_unpaid: Money
    charges: List[FailedPaymentCharge] = field(default_factory=list)

    @property
    def failed_payment_count(self) -> int:
        return len(self.charges)

    @property
    def sequence_numbers(self) -> List[int]:
        return [charge.sequence_number for charge in self.charges]


def resolve_failed_payment_fees(
    failed_payments: Iterable[ScheduledPayment],
    origination_fee: Money,
    today: Optional[date] = None,
    exclude_sequence_numbers: Iterable[int] = ()
) -> FailedPaymentFees:
    """
    Charges for payments that failed in the past.

    Each row with status failed and a due date before today contributes its
    unpaid amount plus one origination fee. Rows whose sequence number was
    already re-billed by an earlier modification are skipped.

    Args:
        failed_payments: Candidate rows, other statuses are ignored
        origination_fee: Penalty per failed payment
        today: Reference date, defaults to date.today()
        exclude_sequence_numbers: Sequence numbers already re-billed

    Returns:
        FailedPaymentFees with per-payment breakdown
    """
    if origination_fee.is_negative():
        raise InvalidScheduleParameters(
            "Origination fee cannot be negative",
            field="origination_fee", rule="must be 0 or greater"
        )
    today = today or date.today()
    excluded = set(exclude_sequence_numbers)
    currency = origination_fee.currency

    charges = [
        FailedPaymentCharge(
            payment_id=payment.id,
            sequence_number=payment.sequence_number,
            due_date=payment.due_date,
            # Whole row amount, principal included, although that principal
            # is still part of the loan's remaining balance
            unpaid_amount=payment.amount,
            penalty=origination_fee,
        )
        for payment in sorted(failed_payments, key=lambda p: p.sequence_number)
        if payment.is_past_failure(today)
        and payment.sequence_number not in excluded
    ]

    total_penalties = sum_money((c.penalty for c in charges), currency)
    total_unpaid = sum_money((c.unpaid_amount for c in charges), currency)
    return FailedPaymentFees(
        total_fee_amount=total_penalties + total_unpaid,
        total_penalties=total_penalties,
        total_unpaid=total_unpaid,
        charges=charges,
    )


class DeferralFeeMode(Enum):
    """Where a deferral fee is charged"""
    NONE = "none"        # No fee
    END = "end"          # Added to the payment appended at the end
    BALANCE = "balance"  # Added to the loan balance only


@dataclass(frozen=True)
class DeferralCharge:
    """Resolved effect of deferring one payment"""
    payment_amount: Money    # Amount of the appended payment
    fee_amount: Money        # Fee charged
    balance_increase: Money  # Increase of the loan remaining balance


def resolve_deferral_fee(original_amount: Money, fee_amount: Optional[Money],
                         mode: DeferralFeeMode) -> DeferralCharge:
    """
    Apply a deferral fee to the payment being moved.

    Raises:
        InvalidScheduleParameters: negative fee or currency mismatch
    """
    mode = DeferralFeeMode(mode)
    currency = original_amount.currency
    fee = fee_amount if fee_amount is not None else Money.zero(currency)
    if fee.currency != currency:
        raise InvalidScheduleParameters(
            "Deferral fee currency must match payment currency",
            field="deferral_fee", rule="currency must match payment"
        )
    if fee.is_negative():
        raise InvalidScheduleParameters(
            "Deferral fee cannot be negative",
            field="deferral_fee", rule="must be 0 or greater"
        )

    if mode == DeferralFeeMode.NONE:
        fee = Money.zero(currency)
        return DeferralCharge(original_amount, fee, fee)
    if mode == DeferralFeeMode.END:
        return DeferralCharge(original_amount + fee, fee, fee)
    return DeferralCharge(original_amount, fee, fee)

"""
Amortization Calculator Module

Level-payment amortization for short-term loans. Computes the periodic
payment and the period-by-period interest/principal/remaining-balance
breakdown. All math is Decimal; every amount is rounded half-up to cents.
The final period absorbs the rounding remainder so that the principal
portions sum exactly to the financed amount and the last remaining balance
is zero.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .calendars import HolidayCalendar, PaymentFrequency, resolve_due_dates
from .currency import Money, sum_money
from .exceptions import InvalidScheduleParameters


@dataclass(frozen=True)
class ScheduleOverride:
    """Explicit amount (and optionally date) for one period"""
    amount: Money
    due_date: Optional[date] = None


@dataclass
class ScheduleParams:
    """Inputs to a schedule computation"""
    principal: Money
    annual_rate_percent: Decimal
    frequency: PaymentFrequency
    num_payments: int
    overrides: Optional[List[ScheduleOverride]] = None

    def __post_init__(self):
        if not isinstance(self.annual_rate_percent, Decimal):
            self.annual_rate_percent = Decimal(str(self.annual_rate_percent))
        self.frequency = PaymentFrequency.parse(self.frequency)


@dataclass(frozen=True)
class ScheduleLine:
    """Single row of a computed payment schedule"""
    sequence_number: int
    due_date: date
    amount: Money
    principal: Money
    interest: Money
    remaining_balance: Money

    def __post_init__(self):
        # Payment must equal principal + interest exactly
        if self.principal + self.interest != self.amount:
            raise ValueError(f"Payment amount {self.amount.to_string()} does not equal "
                             f"principal {self.principal.to_string()} + "
                             f"interest {self.interest.to_string()}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_number': self.sequence_number,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'currency': self.amount.currency.code,
        }


@dataclass
class AmortizationSchedule:
    """Computed schedule with its summary figures"""
    financed_amount: Money
    periodic_payment: Money
    lines: List[ScheduleLine] = field(default_factory=list)

    @property
    def total_interest(self) -> Money:
        return sum_money((line.interest for line in self.lines), self.financed_amount.currency)

    @property
    def total_principal(self) -> Money:
        return sum_money((line.principal for line in self.lines), self.financed_amount.currency)

    @property
    def total_repayment(self) -> Money:
        return sum_money((line.amount for line in self.lines), self.financed_amount.currency)

    @property
    def first_payment_date(self) -> Optional[date]:
        return self.lines[0].due_date if self.lines else None


def _invalid(message: str, field_name: str, rule: str) -> InvalidScheduleParameters:
    return InvalidScheduleParameters(message, field=field_name, rule=rule)


def validate_loan_params(principal: Money, annual_rate_percent: Decimal, num_payments: int) -> None:
    """
    Reject inputs that cannot produce a schedule.

    Raises:
        InvalidScheduleParameters: principal <= 0, rate < 0 or num_payments <= 0
    """
    if not isinstance(principal, Money) or not principal.is_positive():
        raise _invalid("Principal amount must be greater than 0", "principal", "must be greater than 0")
    if annual_rate_percent is None or Decimal(str(annual_rate_percent)) < Decimal('0'):
        raise _invalid("Interest rate cannot be negative", "annual_rate_percent", "must be 0 or greater")
    if isinstance(num_payments, bool) or not isinstance(num_payments, int) or num_payments <= 0:
        raise _invalid("Number of payments must be greater than 0", "num_payments", "must be greater than 0")


def periodic_rate(annual_rate_percent: Decimal, frequency) -> Decimal:
    """Annual percent rate converted to the per-period decimal rate"""
    frequency = PaymentFrequency.parse(frequency)
    rate = Decimal(str(annual_rate_percent))
    return rate / Decimal('100') / Decimal(frequency.periods_per_year)


def compute_payment(principal: Money, annual_rate_percent: Decimal, frequency,
                    num_payments: int) -> Money:
    """
    Level periodic payment for a fully amortizing loan.

    payment = P * r / (1 - (1 + r)^-n) when r > 0, P / n when r == 0.

    Args:
        principal: Financed amount
        annual_rate_percent: Annual rate in percent (29 means 29%)
        frequency: PaymentFrequency or alias string
        num_payments: Number of periods

    Returns:
        Payment rounded half-up to cents

    Raises:
        InvalidScheduleParameters: If any input is invalid
    """
    frequency = PaymentFrequency.parse(frequency)
    validate_loan_params(principal, annual_rate_percent, num_payments)

    rate = periodic_rate(annual_rate_percent, frequency)
    if rate == Decimal('0'):
        payment = Money(principal.amount / Decimal(num_payments), principal.currency)
    else:
        factor = Decimal('1') - (Decimal('1') + rate) ** -num_payments
        payment = Money(principal.amount * rate / factor, principal.currency)

    if not payment.is_positive():
        raise _invalid("Principal is too small for the number of payments",
                       "principal", "must yield a payment of at least one cent")
    return payment


def _resolve_schedule_dates(
    params: ScheduleParams,
    start_date: date,
    holidays: Optional[HolidayCalendar],
    preferred_pay_dates: Optional[Iterable[date]],
    today: date
) -> List[date]:
    dates = resolve_due_dates(
        params.frequency, start_date, params.num_payments,
        holidays=holidays, preferred_pay_dates=preferred_pay_dates, today=today
    )
    if not params.overrides:
        return dates

    # Explicit override dates replace the resolved ones
    dates = [o.due_date or resolved for o, resolved in zip(params.overrides, dates)]
    previous = today
    for number, due in enumerate(dates, start=1):
        if due <= previous:
            raise _invalid(
                f"Due date for payment {number} must be after {previous.isoformat()}",
                "schedule_override", "due dates must be strictly increasing and after today"
            )
        previous = due
    return dates


def _validate_overrides(params: ScheduleParams) -> None:
    overrides = params.overrides
    if overrides is None:
        return
    if len(overrides) != params.num_payments:
        raise _invalid(
            f"Schedule override has {len(overrides)} payments, expected {params.num_payments}",
            "schedule_override", "must contain one entry per payment"
        )
    for number, override in enumerate(overrides, start=1):
        if override.amount.currency != params.principal.currency:
            raise _invalid(f"Payment {number} currency does not match principal",
                           "schedule_override", "currency must match principal")
        if not override.amount.is_positive():
            raise _invalid(f"Payment {number} amount must be greater than 0",
                           "schedule_override", "amounts must be greater than 0")


def compute_breakdown(
    params: ScheduleParams,
    start_date: date,
    holidays: Optional[HolidayCalendar] = None,
    preferred_pay_dates: Optional[Iterable[date]] = None,
    today: Optional[date] = None
) -> List[ScheduleLine]:
    """
    Full period-by-period schedule.

    Args:
        params: Principal, rate, frequency, count and optional overrides
        start_date: First due date before business-day adjustment
        holidays: Business-day calendar
        preferred_pay_dates: Optional payroll dates to align to
        today: Reference date, defaults to date.today()

    Returns:
        Schedule lines numbered from 1

    Raises:
        InvalidScheduleParameters: If inputs or overrides are invalid
        InvalidStartDate: If start_date is not after today
    """
    return build_schedule(params, start_date, holidays, preferred_pay_dates, today).lines


def build_schedule(
    params: ScheduleParams,
    start_date: date,
    holidays: Optional[HolidayCalendar] = None,
    preferred_pay_dates: Optional[Iterable[date]] = None,
    today: Optional[date] = None
) -> AmortizationSchedule:
    """Like compute_breakdown, with the schedule summary attached"""
    today = today or date.today()
    payment = compute_payment(params.principal, params.annual_rate_percent,
                              params.frequency, params.num_payments)
    _validate_overrides(params)
    due_dates = _resolve_schedule_dates(params, start_date, holidays, preferred_pay_dates, today)

    rate = periodic_rate(params.annual_rate_percent, params.frequency)
    currency = params.principal.currency
    remaining = params.principal
    lines: List[ScheduleLine] = []

    for index, due_date in enumerate(due_dates):
        number = index + 1
        interest = Money(remaining.amount * rate, currency)
        amount = params.overrides[index].amount if params.overrides else payment

        if number == params.num_payments:
            # Final period takes whatever balance is left
            principal_part = remaining
            amount = principal_part + interest
            remaining = Money.zero(currency)
        else:
            principal_part = amount - interest
            if not principal_part.is_positive():
                raise _invalid(
                    f"Payment {number} of {amount.to_string()} does not cover "
                    f"interest of {interest.to_string()}",
                    "schedule_override", "each payment must exceed the interest due"
                )
            if principal_part >= remaining:
                raise _invalid(
                    f"Payment {number} pays off the loan before the final period",
                    "schedule_override", "only the final payment may clear the balance"
                )
            remaining = remaining - principal_part

        lines.append(ScheduleLine(
            sequence_number=number,
            due_date=due_date,
            amount=amount,
            principal=principal_part,
            interest=interest,
            remaining_balance=remaining
        ))

    return AmortizationSchedule(
        financed_amount=params.principal,
        periodic_payment=payment,
        lines=lines
    )

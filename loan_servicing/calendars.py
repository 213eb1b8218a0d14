"""
Calendar Resolver Module

Turns a payment frequency and anchor date into the ordered sequence of due
dates for a schedule. Dates that land on weekends or statutory holidays are
moved to a business day, and an optional list of preferred pay dates
(payroll dates) can replace the naive interval dates.

Business-day rule: a non-business due date moves forward to the next
business day. If the forward date reaches or passes the next scheduled
date, it moves backward to the previous business day instead, as long as
that stays after the previous resolved date and after today. Resolution is
a pure function of its inputs.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .exceptions import InvalidScheduleParameters, InvalidStartDate


class PaymentFrequency(Enum):
    """Payment frequency options"""
    WEEKLY = "weekly"                # 52 payments per year
    BI_WEEKLY = "bi-weekly"          # 26 payments per year
    TWICE_MONTHLY = "twice-monthly"  # 24 payments per year, 15th and last day
    MONTHLY = "monthly"              # 12 payments per year

    @property
    def periods_per_year(self) -> int:
        return _PERIODS_PER_YEAR[self]

    @classmethod
    def parse(cls, value) -> 'PaymentFrequency':
        """
        Resolve a frequency from an enum member or any known alias.

        Raises:
            InvalidScheduleParameters: If the value names no known frequency
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            canonical = "-".join(value.strip().lower().replace("_", " ").split())
            resolved = _FREQUENCY_ALIASES.get(canonical)
            if resolved is not None:
                return resolved
        raise InvalidScheduleParameters(
            f"Invalid payment frequency: {value!r}",
            field="frequency",
            rule="must be weekly, bi-weekly, twice-monthly or monthly"
        )


_PERIODS_PER_YEAR = {
    PaymentFrequency.WEEKLY: 52,
    PaymentFrequency.BI_WEEKLY: 26,
    PaymentFrequency.TWICE_MONTHLY: 24,
    PaymentFrequency.MONTHLY: 12,
}

_FREQUENCY_ALIASES: Dict[str, PaymentFrequency] = {
    "weekly": PaymentFrequency.WEEKLY,
    "week": PaymentFrequency.WEEKLY,
    "every-week": PaymentFrequency.WEEKLY,
    "hebdomadaire": PaymentFrequency.WEEKLY,
    "bi-weekly": PaymentFrequency.BI_WEEKLY,
    "biweekly": PaymentFrequency.BI_WEEKLY,
    "fortnightly": PaymentFrequency.BI_WEEKLY,
    "every-2-weeks": PaymentFrequency.BI_WEEKLY,
    "every-two-weeks": PaymentFrequency.BI_WEEKLY,
    "aux-deux-semaines": PaymentFrequency.BI_WEEKLY,
    "twice-monthly": PaymentFrequency.TWICE_MONTHLY,
    "twice-a-month": PaymentFrequency.TWICE_MONTHLY,
    "semi-monthly": PaymentFrequency.TWICE_MONTHLY,
    "semimonthly": PaymentFrequency.TWICE_MONTHLY,
    "bimonthly": PaymentFrequency.TWICE_MONTHLY,
    "bi-monthly": PaymentFrequency.TWICE_MONTHLY,
    "2x-per-month": PaymentFrequency.TWICE_MONTHLY,
    "bimensuel": PaymentFrequency.TWICE_MONTHLY,
    "monthly": PaymentFrequency.MONTHLY,
    "month": PaymentFrequency.MONTHLY,
    "every-month": PaymentFrequency.MONTHLY,
    "mensuel": PaymentFrequency.MONTHLY,
}


@dataclass(frozen=True)
class Holiday:
    """A named non-business day"""
    day: date
    name: str


def easter_sunday(year: int) -> date:
    """Gregorian Easter Sunday (anonymous Gregorian computus)"""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def canadian_holidays(year: int) -> List[Holiday]:
    """Federal statutory holidays observed by Canadian payment rails"""
    easter = easter_sunday(year)
    may_24 = date(year, 5, 24)
    victoria_day = may_24 - timedelta(days=may_24.weekday())  # Monday on or before May 24
    return [
        Holiday(date(year, 1, 1), "New Year's Day"),
        Holiday(easter - timedelta(days=2), "Good Friday"),
        Holiday(easter + timedelta(days=1), "Easter Monday"),
        Holiday(victoria_day, "Victoria Day"),
        Holiday(date(year, 7, 1), "Canada Day"),
        Holiday(_nth_weekday(year, 9, calendar.MONDAY, 1), "Labour Day"),
        Holiday(_nth_weekday(year, 10, calendar.MONDAY, 2), "Thanksgiving"),
        Holiday(date(year, 11, 11), "Remembrance Day"),
        Holiday(date(year, 12, 25), "Christmas Day"),
        Holiday(date(year, 12, 26), "Boxing Day"),
    ]


_REGION_RULES = {
    "CA": canadian_holidays,
}


class HolidayCalendar:
    """
    Business-day calendar: weekends plus explicit and regional holidays.

    Regional holidays are computed per year on first use and cached on the
    instance.
    """

    def __init__(self, holidays: Iterable[date] = (), region: Optional[str] = None):
        self._explicit: Set[date] = set(holidays)
        self.region = region.upper() if region else None
        if self.region and self.region not in _REGION_RULES:
            raise ValueError(f"No holiday rules for region: {region}")
        self._years: Dict[int, Set[date]] = {}

    @classmethod
    def canadian(cls, extra_holidays: Iterable[date] = ()) -> 'HolidayCalendar':
        return cls(extra_holidays, region="CA")

    @classmethod
    def for_region(cls, region: Optional[str]) -> 'HolidayCalendar':
        """Calendar for a configured region; "none" or empty means weekends only"""
        if not region or region.lower() == "none":
            return cls()
        return cls(region=region)

    def _regional(self, year: int) -> Set[date]:
        if not self.region:
            return set()
        if year not in self._years:
            self._years[year] = {h.day for h in _REGION_RULES[self.region](year)}
        return self._years[year]

    def is_holiday(self, day: date) -> bool:
        return day in self._explicit or day in self._regional(day.year)

    def is_business_day(self, day: date) -> bool:
        return day.weekday() < 5 and not self.is_holiday(day)

    def next_business_day(self, day: date) -> date:
        """First business day strictly after ``day``"""
        candidate = day + timedelta(days=1)
        while not self.is_business_day(candidate):
            candidate += timedelta(days=1)
        return candidate

    def previous_business_day(self, day: date) -> date:
        """Last business day strictly before ``day``"""
        candidate = day - timedelta(days=1)
        while not self.is_business_day(candidate):
            candidate -= timedelta(days=1)
        return candidate

    def shift(self, day: date, lower: date, upper: Optional[date] = None) -> date:
        """
        Move a due date onto a business day.

        Args:
            day: Naive due date
            lower: Resolved dates must be strictly after this date
            upper: Next naive due date in the schedule, if any

        Returns:
            Business day strictly after ``lower``
        """
        if self.is_business_day(day) and day > lower:
            return day

        forward = self.next_business_day(day)
        if upper is not None and forward >= upper:
            backward = self.previous_business_day(day)
            if backward > lower:
                return backward

        if forward <= lower:
            forward = self.next_business_day(lower)
        return forward


def add_months(start_date: date, months: int, day: Optional[int] = None) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(day or start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _twice_monthly_anchors(start_date: date):
    """15th and last day of each month, from the start month onward"""
    year, month = start_date.year, start_date.month
    while True:
        last_day = calendar.monthrange(year, month)[1]
        for day in (15, last_day):
            anchor = date(year, month, day)
            if anchor >= start_date:
                yield anchor
        month += 1
        if month > 12:
            year, month = year + 1, 1


def interval_dates(frequency: PaymentFrequency, start_date: date, count: int) -> List[date]:
    """Naive due dates before any business-day or preferred-date adjustment"""
    if frequency == PaymentFrequency.WEEKLY:
        return [start_date + timedelta(days=7 * i) for i in range(count)]
    elif frequency == PaymentFrequency.BI_WEEKLY:
        return [start_date + timedelta(days=14 * i) for i in range(count)]
    elif frequency == PaymentFrequency.MONTHLY:
        return [add_months(start_date, i, day=start_date.day) for i in range(count)]
    elif frequency == PaymentFrequency.TWICE_MONTHLY:
        anchors = _twice_monthly_anchors(start_date)
        return [next(anchors) for _ in range(count)]
    raise InvalidScheduleParameters(f"Unsupported payment frequency: {frequency}", field="frequency")


def _align_to_preferred(naive: List[date], preferred_pay_dates: Iterable[date]) -> List[date]:
    preferred = sorted(set(preferred_pay_dates))
    aligned: List[date] = []
    for due in naive:
        previous = aligned[-1] if aligned else None
        match = next(
            (p for p in preferred if p >= due and (previous is None or p > previous)),
            None
        )
        if match is None:
            if previous is not None and due <= previous:
                raise InvalidScheduleParameters(
                    "Preferred pay dates do not leave room for the remaining payments",
                    field="preferred_pay_dates",
                    rule="must cover the schedule in order"
                )
            match = due
        aligned.append(match)
    return aligned


def resolve_due_dates(
    frequency,
    start_date: date,
    count: int,
    holidays: Optional[HolidayCalendar] = None,
    preferred_pay_dates: Optional[Iterable[date]] = None,
    today: Optional[date] = None
) -> List[date]:
    """
    Resolve the ordered due dates of a schedule.

    Args:
        frequency: PaymentFrequency or alias string
        start_date: First naive due date, must be after today
        count: Number of due dates to produce
        holidays: Business-day calendar (weekends only when omitted)
        preferred_pay_dates: Optional payroll dates to align to
        today: Reference date, defaults to date.today()

    Returns:
        Strictly increasing list of ``count`` business days

    Raises:
        InvalidScheduleParameters: count <= 0 or unknown frequency
        InvalidStartDate: start_date is not after today
    """
    frequency = PaymentFrequency.parse(frequency)
    if not isinstance(count, int) or count <= 0:
        raise InvalidScheduleParameters(
            "Number of payments must be greater than 0",
            field="num_payments",
            rule="must be greater than 0"
        )
    today = today or date.today()
    if start_date <= today:
        raise InvalidStartDate(start_date, today)

    holidays = holidays or HolidayCalendar()
    naive = interval_dates(frequency, start_date, count)
    if preferred_pay_dates:
        naive = _align_to_preferred(naive, preferred_pay_dates)

    resolved: List[date] = []
    for index, due in enumerate(naive):
        lower = resolved[-1] if resolved else today
        upper = naive[index + 1] if index + 1 < len(naive) else None
        resolved.append(holidays.shift(due, lower=lower, upper=upper))
    return resolved


def next_due_date(
    frequency,
    after: date,
    holidays: Optional[HolidayCalendar] = None,
    today: Optional[date] = None,
    anchor_day: Optional[int] = None
) -> date:
    """
    Next interval date after an existing due date, on a business day.

    Used when a payment is appended to the end of a live schedule. The
    result is never on or before today.

    ``after`` is usually a business-day shifted date. For monthly schedules
    pass ``anchor_day``, the day of month the schedule started on, so the
    result steps from the unshifted date and a schedule on the 31st stays
    on the last day of each month.
    """
    frequency = PaymentFrequency.parse(frequency)
    today = today or date.today()
    holidays = holidays or HolidayCalendar()

    if frequency == PaymentFrequency.TWICE_MONTHLY:
        naive = next(_twice_monthly_anchors(after + timedelta(days=1)))
    elif frequency == PaymentFrequency.MONTHLY and anchor_day:
        # Shifts move a date by days, so its unshifted date is the nearest anchor
        unshifted = min(
            (add_months(after, offset, day=anchor_day) for offset in (-1, 0, 1)),
            key=lambda candidate: abs((candidate - after).days)
        )
        naive = add_months(unshifted, 1, day=anchor_day)
    else:
        naive = interval_dates(frequency, after, 2)[1]

    lower = max(after, today)
    if naive <= lower:
        naive = lower + timedelta(days=1)
    return holidays.shift(naive, lower=lower)


def default_payment_count(frequency, term_months: int,
                          payments_per_month: Dict[str, int]) -> int:
    """Payment count for a term in months, e.g. 3 months weekly gives 12"""
    frequency = PaymentFrequency.parse(frequency)
    if term_months <= 0:
        raise InvalidScheduleParameters(
            "Term must be at least one month",
            field="term_months",
            rule="must be greater than 0"
        )
    return term_months * payments_per_month[frequency.value]

"""
Amortization Calculator

EMI and repayment-schedule arithmetic shared by the public calculator, loan
creation and loan updates. Two interest methods are supported:

* ``compound``: reducing balance, interest charged on the outstanding
  principal each month;
* ``simple``: flat rate, interest charged on the original principal every
  month.

All functions are pure. Every derived amount is rounded to 2 decimal places
(ROUND_HALF_UP) at the step that produces it, so a schedule computed here is
reproducible to the cent wherever it is recomputed.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple, Union

from .exceptions import InvalidInputError
from .money import Numeric, ZERO, round_money, to_decimal


MIN_PRINCIPAL = Decimal('1')
MAX_MONTHLY_RATE = Decimal('100')
MIN_TENURE_MONTHS = 1
MAX_TENURE_MONTHS = 360
DAYS_PER_MONTH = Decimal('30')


class InterestType(Enum):
    """Interest calculation method"""
    SIMPLE = "simple"      # Flat rate on original principal
    COMPOUND = "compound"  # Reducing balance


@dataclass(frozen=True)
class ScheduleEntry:
    """One month of an amortization schedule"""
    month: int
    emi: Decimal
    principal: Decimal
    interest: Decimal
    balance: Decimal
    due_date: date

    def to_dict(self) -> dict:
        return {
            'month': self.month,
            'emi': str(self.emi),
            'principal': str(self.principal),
            'interest': str(self.interest),
            'balance': str(self.balance),
            'due_date': self.due_date.isoformat()
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ScheduleEntry':
        return cls(
            month=int(data['month']),
            emi=Decimal(data['emi']),
            principal=Decimal(data['principal']),
            interest=Decimal(data['interest']),
            balance=Decimal(data['balance']),
            due_date=date.fromisoformat(data['due_date'])
        )


@dataclass
class LoanEstimate:
    """Complete result of a loan calculation"""
    principal: Decimal
    monthly_interest_rate: Decimal
    loan_duration_months: int
    interest_type: InterestType
    monthly_emi: Decimal
    total_amount_payable: Decimal
    total_interest_amount: Decimal
    start_date: date
    end_date: date
    manual_emi: Optional[Decimal] = None
    amortization_schedule: List[ScheduleEntry] = field(default_factory=list)


DateLike = Union[date, datetime, str]


def _as_date(value: Optional[DateLike]) -> date:
    if value is None:
        return datetime.now(timezone.utc).date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidInputError(f"Invalid date: {value!r}")


def _rate_fraction(monthly_rate_percent: Numeric) -> Decimal:
    return to_decimal(monthly_rate_percent) / Decimal('100')


def _require_tenure(tenure_months: int) -> None:
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months <= 0:
        raise InvalidInputError("Loan duration must be a positive whole number of months")


def add_months(start_date: date, months: int) -> date:
    """Add calendar months to a date, clamping the day to the end of the month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_interest_type(value: Union[str, InterestType, None]) -> InterestType:
    """Coerce a string to InterestType (``None`` means the flat-rate default)"""
    if value is None:
        return InterestType.SIMPLE
    if isinstance(value, InterestType):
        return value
    try:
        return InterestType(str(value).lower())
    except ValueError:
        raise InvalidInputError(f"Unknown interest type: {value}")


def calculate_monthly_emi(principal: Numeric, monthly_rate_percent: Numeric,
                          tenure_months: int) -> Decimal:
    """
    Reducing-balance EMI

    EMI = P x r x (1+r)^n / ((1+r)^n - 1), where r is the monthly rate as a
    fraction. A zero rate gives principal / tenure.

    Raises:
        InvalidInputError: If tenure is not a positive whole number
    """
    _require_tenure(tenure_months)
    principal = to_decimal(principal)
    r = _rate_fraction(monthly_rate_percent)

    if r == 0:
        return round_money(principal / Decimal(tenure_months))

    factor = (Decimal('1') + r) ** tenure_months
    return round_money(principal * r * factor / (factor - Decimal('1')))


def calculate_flat_rate_emi(principal: Numeric, monthly_rate_percent: Numeric,
                            tenure_months: int) -> Decimal:
    """Flat-rate EMI: (P + P x r x n) / n"""
    _require_tenure(tenure_months)
    principal = to_decimal(principal)
    r = _rate_fraction(monthly_rate_percent)
    total = principal + principal * r * Decimal(tenure_months)
    return round_money(total / Decimal(tenure_months))


def _build_schedule(principal: Decimal, tenure_months: int, emi: Decimal,
                    start: date, interest_for) -> List[ScheduleEntry]:
    balance = round_money(principal)
    schedule = []

    for month in range(1, tenure_months + 1):
        interest = interest_for(balance)
        principal_part = round_money(emi - interest)

        if month == tenure_months:
            principal_part = balance
        principal_part = max(ZERO, min(principal_part, balance))

        balance = max(ZERO, round_money(balance - principal_part))

        schedule.append(ScheduleEntry(
            month=month,
            emi=emi,
            principal=principal_part,
            interest=interest,
            balance=balance,
            due_date=add_months(start, month)
        ))

        if balance <= 0 and month != tenure_months:
            break

    return schedule


def generate_amortization_schedule(principal: Numeric, monthly_rate_percent: Numeric,
                                   tenure_months: int, emi: Numeric,
                                   start_date: Optional[DateLike] = None) -> List[ScheduleEntry]:
    """
    Reducing-balance schedule

    Each month charges interest on the outstanding balance; the rest of the
    EMI retires principal. The final month retires whatever balance remains,
    so the schedule always ends at zero while the EMI column stays constant.
    The schedule stops early if the balance is exhausted before the last month.
    """
    _require_tenure(tenure_months)
    r = _rate_fraction(monthly_rate_percent)
    return _build_schedule(
        to_decimal(principal), tenure_months, round_money(emi), _as_date(start_date),
        lambda balance: round_money(balance * r)
    )


def generate_flat_rate_schedule(principal: Numeric, monthly_rate_percent: Numeric,
                                tenure_months: int, emi: Numeric,
                                start_date: Optional[DateLike] = None) -> List[ScheduleEntry]:
    """Flat-rate schedule: constant monthly interest on the original principal"""
    _require_tenure(tenure_months)
    monthly_interest = round_money(to_decimal(principal) * _rate_fraction(monthly_rate_percent))
    return _build_schedule(
        to_decimal(principal), tenure_months, round_money(emi), _as_date(start_date),
        lambda balance: monthly_interest
    )


def calculate_total_payable(emi: Numeric, tenure_months: int) -> Decimal:
    return round_money(to_decimal(emi) * Decimal(tenure_months))


def calculate_total_interest(emi: Numeric, tenure_months: int, principal: Numeric) -> Decimal:
    return round_money(to_decimal(emi) * Decimal(tenure_months) - to_decimal(principal))


def calculate_remaining_balance(schedule: List[ScheduleEntry], payments_received: int) -> Decimal:
    """Scheduled principal outstanding after ``payments_received`` instalments"""
    if not schedule:
        return ZERO
    if payments_received <= 0:
        return schedule[0].balance + schedule[0].principal
    if payments_received >= len(schedule):
        return ZERO
    return schedule[payments_received - 1].balance


def calculate_interest_for_period(balance: Numeric, monthly_rate_percent: Numeric, days: int) -> Decimal:
    """Interest accrued over ``days`` using a 30-day month"""
    daily_rate = _rate_fraction(monthly_rate_percent) / DAYS_PER_MONTH
    return round_money(to_decimal(balance) * daily_rate * Decimal(days))


def calculate_prepayment_amount(balance: Numeric, monthly_rate_percent: Numeric, days: int = 30) -> Decimal:
    """Amount needed to close a loan today: balance plus interest accrued since the last instalment"""
    interest_due = calculate_interest_for_period(balance, monthly_rate_percent, days)
    return round_money(to_decimal(balance) + interest_due)


def validate_loan_parameters(
    principal: Numeric,
    monthly_interest_rate: Numeric,
    loan_duration_months: int,
    interest_type: Union[str, InterestType, None] = InterestType.SIMPLE,
    manual_emi: Optional[Numeric] = None
) -> Tuple[Decimal, Decimal, int, InterestType, Optional[Decimal]]:
    """
    Validate and normalize loan parameters

    Returns:
        (principal, monthly_interest_rate, loan_duration_months, interest_type, manual_emi)

    Raises:
        InvalidInputError: On the first invalid parameter
    """
    try:
        principal = to_decimal(principal)
        rate = to_decimal(monthly_interest_rate)
        emi = to_decimal(manual_emi) if manual_emi is not None else None
    except ValueError as e:
        raise InvalidInputError(str(e))

    if principal < MIN_PRINCIPAL:
        raise InvalidInputError(f"Principal must be at least {MIN_PRINCIPAL}")
    if rate < 0 or rate > MAX_MONTHLY_RATE:
        raise InvalidInputError("Monthly interest rate must be between 0 and 100")
    if (isinstance(loan_duration_months, bool) or not isinstance(loan_duration_months, int)
            or not MIN_TENURE_MONTHS <= loan_duration_months <= MAX_TENURE_MONTHS):
        raise InvalidInputError(
            f"Loan duration must be between {MIN_TENURE_MONTHS} and {MAX_TENURE_MONTHS} months"
        )
    interest_type = parse_interest_type(interest_type)

    if emi is not None:
        emi = round_money(emi)
        if emi <= 0:
            raise InvalidInputError("Manual EMI must be positive")
        # Both methods charge round(P x r) in month one; an EMI at or below
        # that never retires principal
        first_interest = round_money(principal * rate / Decimal('100'))
        if emi <= first_interest:
            raise InvalidInputError(
                f"Manual EMI {emi} does not cover first month interest {first_interest}"
            )

    return principal, rate, loan_duration_months, interest_type, emi


def calculate_loan_estimate(
    principal: Numeric,
    monthly_interest_rate: Numeric,
    loan_duration_months: int,
    interest_type: Union[str, InterestType, None] = InterestType.SIMPLE,
    start_date: Optional[DateLike] = None,
    manual_emi: Optional[Numeric] = None
) -> LoanEstimate:
    """
    Full loan calculation: EMI, schedule, totals and end date

    Loan creation and loan updates go through this same function, so a
    quoted estimate and the loan created from identical inputs agree to the
    cent.
    """
    principal, rate, tenure, interest_type, manual = validate_loan_parameters(
        principal, monthly_interest_rate, loan_duration_months, interest_type, manual_emi
    )
    start = _as_date(start_date)

    if interest_type == InterestType.COMPOUND:
        emi = manual if manual is not None else calculate_monthly_emi(principal, rate, tenure)
        schedule = generate_amortization_schedule(principal, rate, tenure, emi, start)
    else:
        emi = manual if manual is not None else calculate_flat_rate_emi(principal, rate, tenure)
        schedule = generate_flat_rate_schedule(principal, rate, tenure, emi, start)

    return LoanEstimate(
        principal=principal,
        monthly_interest_rate=rate,
        loan_duration_months=tenure,
        interest_type=interest_type,
        monthly_emi=emi,
        total_amount_payable=calculate_total_payable(emi, tenure),
        total_interest_amount=calculate_total_interest(emi, tenure, principal),
        start_date=start,
        end_date=add_months(start, tenure),
        manual_emi=manual,
        amortization_schedule=schedule
    )

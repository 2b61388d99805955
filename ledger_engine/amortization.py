"""
Loan Amortization Module

EMI calculation, per-payment principal/interest split, the sequential
outstanding-principal walk over a loan's payments, projected schedules and
accrued interest over a floating rate history. Every function here is pure.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
import calendar
import uuid

from .currency import ZERO, CENT, round_money, to_decimal
from .exceptions import ValidationError, InconsistentScheduleError
from .rate_history import InterestRateEntry, effective_rate, opening_rate, rate_segments
from .storage import StorageRecord

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


def add_months(start_date: date, months: int, day: Optional[int] = None) -> date:
    """Add months to a date, clamping to the last day of short months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    target_day = day if day is not None else start_date.day
    return date(year, month, min(target_day, calendar.monthrange(year, month)[1]))


def monthly_rate(annual_rate_pct: Decimal) -> Decimal:
    return to_decimal(annual_rate_pct) / MONTHS_PER_YEAR / HUNDRED


@dataclass(frozen=True)
class EMIBreakdown:
    """Split of one payment into principal and interest"""
    principal: Decimal
    interest: Decimal
    new_outstanding: Decimal


@dataclass(frozen=True)
class ScheduledPayment:
    """A payment made (or planned) against a loan"""
    payment_date: date
    amount: Decimal


@dataclass
class LoanEMIPayment(StorageRecord):
    """
    One row of a loan's payment history. Immutable once computed; rows are
    regenerated wholesale when the loan or its payments change.
    """
    account_id: str
    payment_number: int
    payment_date: date
    emi_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    outstanding_principal: Decimal
    interest_rate: Decimal
    transaction_id: Optional[str] = None
    # What was actually paid; anything beyond emi_amount cleared no principal
    amount_paid: Optional[Decimal] = None
    excess_amount: Decimal = ZERO

    def __post_init__(self):
        if self.amount_paid is None:
            self.amount_paid = self.emi_amount
        for name in ('emi_amount', 'principal_component', 'interest_component',
                     'outstanding_principal', 'interest_rate', 'amount_paid', 'excess_amount'):
            setattr(self, name, to_decimal(getattr(self, name)))

        if self.payment_number < 1:
            raise ValidationError("Payment numbers start at 1", field="payment_number")

        # Validate that payment equals principal + interest
        calculated = self.principal_component + self.interest_component
        if abs(calculated - self.emi_amount) > CENT:
            raise ValidationError(
                f"EMI {self.emi_amount} does not equal principal {self.principal_component} "
                f"+ interest {self.interest_component}",
                field="emi_amount"
            )

        if self.outstanding_principal < ZERO:
            raise ValidationError("Outstanding principal cannot be negative", field="outstanding_principal")
        if abs(self.amount_paid - self.emi_amount - self.excess_amount) > CENT:
            raise ValidationError(
                f"Paid {self.amount_paid} does not equal EMI {self.emi_amount} + excess {self.excess_amount}",
                field="amount_paid"
            )


def calculate_emi(principal: Decimal, annual_rate_pct: Decimal, months: int) -> Decimal:
    """
    Reducing-balance EMI: P * r * (1+r)^n / ((1+r)^n - 1) with r the monthly
    rate, or P / n when the rate is zero. Rounded to 2 decimal places.

    Raises:
        ValidationError: If months <= 0 or principal/rate are negative
    """
    principal = to_decimal(principal)
    annual_rate_pct = to_decimal(annual_rate_pct)

    if months <= 0:
        raise ValidationError("EMI duration must be at least one month", field="months")
    if principal < ZERO:
        raise ValidationError("Principal cannot be negative", field="principal")
    if annual_rate_pct < ZERO:
        raise ValidationError("Interest rate cannot be negative", field="annual_rate_pct")
    if principal == ZERO:
        return round_money(ZERO)

    r = monthly_rate(annual_rate_pct)
    n = Decimal(months)
    if r == ZERO:
        return round_money(principal / n)

    factor = (Decimal('1') + r) ** months
    return round_money(principal * (r * factor) / (factor - Decimal('1')))


def calculate_breakdown(outstanding_principal: Decimal, payment_amount: Decimal,
                        annual_rate_pct: Decimal) -> EMIBreakdown:
    """
    Split a payment against the outstanding principal at a monthly rate.

    interest = outstanding * rate / 12 / 100 (rounded), principal = payment -
    interest, new outstanding = max(0, outstanding - principal).

    Raises:
        InconsistentScheduleError: If the payment does not cover the interest
    """
    outstanding = to_decimal(outstanding_principal)
    payment = to_decimal(payment_amount)

    if payment <= ZERO:
        raise ValidationError("Payment amount must be positive", field="payment_amount")
    if outstanding <= ZERO:
        return EMIBreakdown(principal=ZERO, interest=ZERO, new_outstanding=ZERO)

    interest = round_money(outstanding * monthly_rate(annual_rate_pct))
    return _split(outstanding, payment, interest)


def _split(outstanding: Decimal, payment: Decimal, interest: Decimal) -> EMIBreakdown:
    principal = round_money(payment - interest)
    if principal < ZERO:
        raise InconsistentScheduleError(
            f"Payment {payment} is smaller than the interest due {interest}",
            payment_amount=payment, interest=interest
        )
    # the last payment may overshoot; only what is outstanding counts as principal
    principal = min(principal, outstanding)
    new_outstanding = round_money(outstanding - principal)
    return EMIBreakdown(principal=principal, interest=interest, new_outstanding=new_outstanding)


def interest_for_period(start: date, end: date, principal: Decimal,
                        rate_history: Iterable[InterestRateEntry],
                        fallback_rate: Optional[Decimal] = None,
                        days_in_year: int = 365) -> Decimal:
    """
    Day-count interest on a constant principal over [start, end), switching
    rate at every history entry inside the range. Not rounded.
    """
    principal = to_decimal(principal)
    history = list(rate_history)
    total = ZERO
    for segment_start, segment_end, rate in rate_segments(history, start, end, fallback_rate):
        days = Decimal((segment_end - segment_start).days)
        total += principal * rate * days / (Decimal(days_in_year) * HUNDRED)
    return total


def due_date_after(reference: date, due_day: int) -> date:
    """First due day strictly after reference, clamped to short months"""
    due = add_months(reference, 0, due_day)
    if due <= reference:
        due = add_months(reference, 1, due_day)
    return due


def schedule_breakdown(start_date: date, opening_principal: Decimal,
                       payments: Sequence[ScheduledPayment],
                       rate_history: Iterable[InterestRateEntry],
                       due_day: Optional[int] = None,
                       fallback_rate: Optional[Decimal] = None,
                       account_id: str = "",
                       days_in_year: int = 365) -> List[LoanEMIPayment]:
    """
    Walk a loan's payments in date order, carrying the outstanding principal
    forward and numbering the rows from 1.

    Each payment uses the rate in force on its own date. Without due_day the
    interest is one month at that rate. With due_day, interest is counted by
    day from the previous payment (or start_date) across any rate changes in
    between. A payment made before the next due date also carries interest
    from its date to that due date on the principal it leaves outstanding.

    Each row records the amount actually paid; whatever exceeds principal
    plus interest (a final overshoot, or a payment on a cleared loan) is
    kept as excess_amount.

    Raises:
        InconsistentScheduleError: If any payment does not cover its interest
    """
    history = list(rate_history)
    outstanding = round_money(opening_principal)
    ordered = sorted(payments, key=lambda p: p.payment_date)
    now = datetime.now(timezone.utc)

    rows = []
    previous_date = start_date
    for number, payment in enumerate(ordered, start=1):
        amount = round_money(payment.amount)
        rate = effective_rate(history, payment.payment_date, fallback_rate)

        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", field="amount")

        if outstanding <= ZERO:
            breakdown = EMIBreakdown(principal=ZERO, interest=ZERO, new_outstanding=ZERO)
        elif due_day is None:
            breakdown = calculate_breakdown(outstanding, amount, rate)
        else:
            interest = interest_for_period(
                previous_date, payment.payment_date, outstanding, history, fallback_rate, days_in_year
            )
            due = due_date_after(previous_date, due_day)
            if payment.payment_date < due:
                # Paid ahead of the due date: the rest of the cycle accrues on the reduced principal
                reduced = max(outstanding - (amount - interest), ZERO)
                interest += interest_for_period(
                    payment.payment_date, due, reduced, history, fallback_rate, days_in_year
                )
            breakdown = _split(outstanding, amount, round_money(interest))

        rows.append(LoanEMIPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            payment_number=number,
            payment_date=payment.payment_date,
            emi_amount=breakdown.principal + breakdown.interest,
            principal_component=breakdown.principal,
            interest_component=breakdown.interest,
            outstanding_principal=breakdown.new_outstanding,
            interest_rate=rate,
            amount_paid=amount,
            excess_amount=amount - breakdown.principal - breakdown.interest
        ))
        outstanding = breakdown.new_outstanding
        previous_date = payment.payment_date

    return rows


def projected_schedule(principal: Decimal, tenure_months: int, start_date: date,
                       rate_history: Iterable[InterestRateEntry],
                       current_rate: Optional[Decimal] = None,
                       due_day: Optional[int] = None,
                       account_id: str = "") -> List[LoanEMIPayment]:
    """
    Projected repayment schedule for a loan.

    The EMI is fixed at the opening rate. Payment i falls i months after
    start_date, on due_day when given (clamped to short months). Each
    installment's interest uses the rate in force on its payment date, and
    the last installment clears whatever principal remains.
    """
    history = list(rate_history)
    emi = calculate_emi(principal, opening_rate(history, current_rate), tenure_months)
    outstanding = round_money(principal)
    now = datetime.now(timezone.utc)

    rows = []
    for number in range(1, tenure_months + 1):
        if outstanding <= ZERO:
            break
        payment_date = add_months(start_date, number, due_day)
        rate = effective_rate(history, payment_date, current_rate)
        interest = round_money(outstanding * monthly_rate(rate))

        if number == tenure_months or emi - interest >= outstanding:
            # Final installment pays off exactly what is left
            principal_component = outstanding
        else:
            principal_component = round_money(emi - interest)
            if principal_component < ZERO:
                raise InconsistentScheduleError(
                    f"EMI {emi} no longer covers interest {interest} at {rate}%",
                    payment_amount=emi, interest=interest
                )

        outstanding = round_money(outstanding - principal_component)
        rows.append(LoanEMIPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            payment_number=number,
            payment_date=payment_date,
            emi_amount=principal_component + interest,
            principal_component=principal_component,
            interest_component=interest,
            outstanding_principal=outstanding,
            interest_rate=rate
        ))

    return rows


def accrued_interest(loan_start_date: date, current_balance: Decimal,
                     rate_history: Iterable[InterestRateEntry],
                     fallback_rate: Optional[Decimal] = None,
                     as_of: Optional[date] = None,
                     last_payment_date: Optional[date] = None,
                     days_in_year: int = 365) -> Decimal:
    """
    Interest accrued on current_balance since the last recorded payment (or
    the loan start) up to as_of, summed per rate segment by elapsed days.
    Zero for a non-positive balance or a loan that has not started.
    """
    as_of = as_of or date.today()
    balance = to_decimal(current_balance)
    since = last_payment_date or loan_start_date

    if balance <= ZERO or loan_start_date > as_of or since >= as_of:
        return round_money(ZERO)

    return round_money(interest_for_period(since, as_of, balance, rate_history, fallback_rate, days_in_year))


def total_interest(principal: Decimal, emi: Decimal, months: int) -> Decimal:
    """Total interest payable over the tenure at a fixed EMI"""
    return round_money(to_decimal(emi) * Decimal(months) - to_decimal(principal))


def remaining_tenure(principal: Decimal, current_balance: Decimal, tenure_months: int) -> int:
    """Months left, estimated from the share of principal already repaid"""
    principal = to_decimal(principal)
    balance = to_decimal(current_balance)
    if principal <= ZERO or balance <= ZERO:
        return 0
    paid_share = (principal - balance) / principal
    months_paid = int(Decimal(tenure_months) * paid_share)
    return max(0, tenure_months - months_paid)


def monthly_interest(balance: Decimal, annual_rate_pct: Decimal) -> Decimal:
    """One month of interest at the given annual rate"""
    return round_money(to_decimal(balance) * monthly_rate(annual_rate_pct))

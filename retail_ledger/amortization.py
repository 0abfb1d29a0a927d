"""
Loan Amortization Module

Pure equal-installment (French method) schedule generation and the calendar
helpers shared by the loan and savings engines. No I/O.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import List, Union
import calendar

from .errors import ValidationError
from .money import ZERO, AmountLike, round_money, to_decimal


DateLike = Union[date, datetime]


@dataclass(frozen=True)
class AmortizationInstallment:
    """Single entry in an amortization schedule"""
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    total_amount: Decimal


def add_months(start: DateLike, months: int) -> DateLike:
    """Add months to a date or datetime, clamping to the last day of the month"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def first_day_of_next_month(moment: DateLike) -> date:
    """Calendar date of the 1st of the month after moment"""
    if isinstance(moment, datetime):
        moment = moment.date()
    return add_months(moment.replace(day=1), 1)


def monthly_payment(principal: Decimal, annual_rate_percent: Decimal, term_months: int) -> Decimal:
    """
    Unrounded level payment M = P * i * (1 + i)^n / ((1 + i)^n - 1)
    with i = r / 12 / 100. Zero-rate loans pay P / n.
    """
    monthly_rate = annual_rate_percent / Decimal('12') / Decimal('100')
    if monthly_rate == ZERO:
        return principal / Decimal(term_months)
    growth = (Decimal('1') + monthly_rate) ** term_months
    return principal * monthly_rate * growth / (growth - Decimal('1'))


def build_amortization_schedule(
    principal: AmountLike,
    annual_rate_percent: AmountLike,
    term_months: int,
    first_due_date: date
) -> List[AmortizationInstallment]:
    """
    Generate an equal-installment repayment schedule.
    
    Args:
        principal: Loan principal, > 0
        annual_rate_percent: Annual interest rate in percent, >= 0
        term_months: Number of monthly installments, >= 1
        first_due_date: Schedule anchor; installment k falls due k months
            after it
            
    Returns:
        Installments ordered by number. Principals always sum to the
        original principal exactly; the last installment absorbs rounding.
        
    Raises:
        ValidationError: On out-of-range inputs
    """
    principal = round_money(principal)
    annual_rate = to_decimal(annual_rate_percent)
    if principal <= ZERO:
        raise ValidationError("Principal must be positive")
    if annual_rate < ZERO:
        raise ValidationError("Interest rate cannot be negative")
    if not isinstance(term_months, int) or term_months < 1:
        raise ValidationError("Term must be at least one month")
    
    monthly_rate = annual_rate / Decimal('12') / Decimal('100')
    payment = monthly_payment(principal, annual_rate, term_months)
    
    schedule = []
    remaining = principal
    for number in range(1, term_months + 1):
        if monthly_rate == ZERO:
            interest = ZERO
            principal_part = round_money(payment)
        else:
            interest = round_money(remaining * monthly_rate)
            principal_part = round_money(payment - interest)
        
        if number == term_months:
            principal_part = remaining
        # Never amortize past zero on short schedules with large rounding
        principal_part = min(principal_part, remaining)
        remaining = remaining - principal_part
        
        schedule.append(AmortizationInstallment(
            installment_number=number,
            due_date=add_months(first_due_date, number),
            principal_amount=principal_part,
            interest_amount=interest,
            total_amount=round_money(principal_part + interest)
        ))
    
    return schedule

"""
Amortization Module

Pure calculation of equal-installment (annuity) loan schedules. No storage,
no side effects. Values are carried at full Decimal precision; rounding to
the currency minor unit is left to whoever persists the rows so rounding
error does not accumulate across installments.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import List, Union

from .currency import to_decimal
from .exceptions import ValidationError


Number = Union[Decimal, int, float, str]

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')

# Above this many periods the growth factor is computed via ln/exp
DIRECT_POWER_MAX_TERM = 600


@dataclass(frozen=True)
class Installment:
    """One row of an amortization table"""
    index: int
    principal_portion: Decimal
    interest_portion: Decimal
    remaining_balance: Decimal

    @property
    def payment(self) -> Decimal:
        return self.principal_portion + self.interest_portion


@dataclass(frozen=True)
class AmortizationResult:
    """Monthly payment plus the full month-by-month table"""
    principal: Decimal
    annual_rate_percent: Decimal
    term_months: int
    monthly_rate: Decimal
    monthly_payment: Decimal
    installments: List[Installment] = field(default_factory=list)

    @property
    def total_interest(self) -> Decimal:
        return sum((i.interest_portion for i in self.installments), ZERO)

    @property
    def total_payment(self) -> Decimal:
        return self.principal + self.total_interest


def validate_terms(principal: Number, annual_rate_percent: Number, term_months: int):
    """
    Check and normalise loan terms

    Returns:
        (principal, annual_rate_percent, term_months) as (Decimal, Decimal, int)

    Raises:
        ValidationError: principal <= 0, rate < 0, or term < 1
    """
    principal = to_decimal(principal)
    rate = to_decimal(annual_rate_percent)

    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise ValidationError(f"Term must be a whole number of months, got {term_months!r}")
    if principal <= ZERO:
        raise ValidationError(f"Principal must be positive, got {principal}")
    if rate < ZERO:
        raise ValidationError(f"Annual interest rate cannot be negative, got {rate}")
    if term_months < 1:
        raise ValidationError(f"Term must be at least 1 month, got {term_months}")

    return principal, rate, term_months


def monthly_rate_for(annual_rate_percent: Decimal) -> Decimal:
    """Convert an annual percentage (e.g. 18.50) to a monthly fraction"""
    return annual_rate_percent / HUNDRED / MONTHS_PER_YEAR


def _growth_factor(monthly_rate: Decimal, term_months: int) -> Decimal:
    """(1 + r) ** n"""
    base = ONE + monthly_rate
    if term_months <= DIRECT_POWER_MAX_TERM:
        return base ** term_months
    return (base.ln() * term_months).exp()


def monthly_payment(principal: Number, annual_rate_percent: Number, term_months: int) -> Decimal:
    """
    Fixed monthly payment for an amortizing loan

    Standard formula: P * [r(1+r)^n] / [(1+r)^n - 1], falling back to
    straight-line P / n when the rate is zero.
    """
    principal, rate, term_months = validate_terms(principal, annual_rate_percent, term_months)
    return _payment(principal, monthly_rate_for(rate), term_months)


def _payment(principal: Decimal, monthly_rate: Decimal, term_months: int) -> Decimal:
    if monthly_rate == ZERO:
        return principal / Decimal(term_months)
    factor = _growth_factor(monthly_rate, term_months)
    return principal * (monthly_rate * factor) / (factor - ONE)


def compute_schedule(principal: Number, annual_rate_percent: Number, term_months: int) -> AmortizationResult:
    """
    Compute the month-by-month amortization table

    Args:
        principal: Amount lent, must be positive
        annual_rate_percent: Annual rate as a percentage, e.g. 18.50
        term_months: Number of monthly installments, at least 1

    Returns:
        AmortizationResult with one Installment per month

    Raises:
        ValidationError: On invalid terms
    """
    principal, rate, term_months = validate_terms(principal, annual_rate_percent, term_months)
    monthly_rate = monthly_rate_for(rate)
    payment = _payment(principal, monthly_rate, term_months)

    installments = []
    remaining = principal
    for index in range(1, term_months + 1):
        interest = remaining * monthly_rate
        principal_portion = payment - interest
        remaining = remaining - principal_portion
        # Absorb residual drift on the final installment
        if remaining < ZERO:
            remaining = ZERO
        installments.append(Installment(
            index=index,
            principal_portion=principal_portion,
            interest_portion=interest,
            remaining_balance=remaining
        ))

    return AmortizationResult(
        principal=principal,
        annual_rate_percent=rate,
        term_months=term_months,
        monthly_rate=monthly_rate,
        monthly_payment=payment,
        installments=installments
    )


def total_interest(principal: Number, annual_rate_percent: Number, term_months: int) -> Decimal:
    """Total interest paid over the life of the loan"""
    return compute_schedule(principal, annual_rate_percent, term_months).total_interest

"""
Schedule Builder Module

Builds the immutable repayment schedule at loan creation:
- Cash: monthly reducing-balance amortization (equal installments)
- Bike: flat weekly hire-purchase with zero interest

All stored amounts are whole shillings. The final installment absorbs the
rounding residue so that the principal column always sums exactly to the
financed amount.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .currency import MAX_AMOUNT, ceil_div, is_whole_amount, round_ugx, to_decimal
from .errors import InvalidTerms
from .models import Installment, InstallmentStatus, LoanProduct

MAX_TERM_MONTHS = 600
MAX_BIKE_WEEKS = 1040


@dataclass
class BuiltSchedule:
    """A freshly built schedule plus its summary figures"""
    product: LoanProduct
    principal: int                  # Financed amount
    periodic_installment: int
    installments: List[Installment]
    annual_interest_rate_pct: Optional[Decimal] = None
    weekly_installment: Optional[int] = None
    weeks_to_pay: Optional[int] = None
    admin_summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_interest(self) -> int:
        return sum(i.interest_amount for i in self.installments)

    @property
    def total_payable(self) -> int:
        return sum(i.total_amount for i in self.installments)

    @property
    def end_date(self) -> date:
        return self.installments[-1].due_date

    def summary(self) -> Dict[str, Any]:
        result = {
            'product': self.product.value,
            'principal': self.principal,
            'periodic_installment': self.periodic_installment,
            'installment_count': len(self.installments),
            'total_interest': self.total_interest,
            'total_payable': self.total_payable,
            'end_date': self.end_date.isoformat(),
        }
        if self.admin_summary:
            result['admin'] = dict(self.admin_summary)
        return result


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _require_amount(name: str, value, minimum: int = 1) -> int:
    if not is_whole_amount(value) or value < minimum:
        raise InvalidTerms(f"{name} must be a whole UGX amount of at least {minimum}")
    return value


def _require_count(name: str, value, maximum: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 1 or value > maximum:
        raise InvalidTerms(f"{name} must be an integer between 1 and {maximum}")
    return value


def _parse_rate(value) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidTerms("annual_interest_rate_pct is required for cash loans")
    try:
        # Floats arrive from JSON clients; go through str() so no binary fraction leaks in
        rate = Decimal(str(value)) if isinstance(value, float) else to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidTerms(f"annual_interest_rate_pct '{value}' is not a number")
    if not rate.is_finite() or rate < 0 or rate > 1000:
        raise InvalidTerms("annual_interest_rate_pct must be between 0 and 1000")
    return rate


def emi(principal: int, annual_rate_pct: Decimal, term_months: int) -> Decimal:
    """
    Raw equal monthly installment, unrounded

    A = P * i * (1 + i)^n / ((1 + i)^n - 1) with i = r / 100 / 12,
    degenerating to P / n when the rate is zero.
    """
    principal_amount = Decimal(principal)
    monthly_rate = annual_rate_pct / Decimal('100') / Decimal('12')
    if monthly_rate == 0:
        return principal_amount / Decimal(term_months)
    growth = (Decimal('1') + monthly_rate) ** term_months
    return principal_amount * monthly_rate * growth / (growth - Decimal('1'))


def build_cash_schedule(
    principal: int,
    annual_interest_rate_pct,
    term_months: int,
    start_date: date
) -> BuiltSchedule:
    """
    Build a monthly reducing-balance schedule

    Args:
        principal: Amount lent in UGX
        annual_interest_rate_pct: Nominal annual rate in percent (12 means 12%)
        term_months: Number of monthly installments
        start_date: Disbursement reference date; installment k falls due k months later

    Returns:
        BuiltSchedule with term_months installments

    Raises:
        InvalidTerms: If any input is out of range
    """
    principal = _require_amount("principal", principal)
    rate = _parse_rate(annual_interest_rate_pct)
    term_months = _require_count("term_months", term_months, MAX_TERM_MONTHS)
    if not isinstance(start_date, date):
        raise InvalidTerms("start_date must be a calendar date")

    monthly_rate = rate / Decimal('100') / Decimal('12')
    payment_amount = round_ugx(emi(principal, rate, term_months))

    installments = []
    remaining_balance = principal
    for payment_num in range(1, term_months + 1):
        interest_amount = round_ugx(Decimal(remaining_balance) * monthly_rate)

        if payment_num == term_months:
            # Final installment pays off exactly what is left
            principal_amount = remaining_balance
        else:
            principal_amount = min(max(payment_amount - interest_amount, 0), remaining_balance)

        remaining_balance -= principal_amount
        installment = Installment(
            sequence=payment_num,
            due_date=add_months(start_date, payment_num),
            principal_amount=principal_amount,
            interest_amount=interest_amount,
            total_amount=principal_amount + interest_amount,
            balance_after=remaining_balance,
        )
        installments.append(installment)

    schedule = BuiltSchedule(
        product=LoanProduct.CASH,
        principal=principal,
        periodic_installment=payment_amount,
        installments=installments,
        annual_interest_rate_pct=rate,
    )
    _mark_zero_installments(schedule)
    if schedule.total_payable > MAX_AMOUNT:
        raise InvalidTerms("Total payable exceeds the supported amount range")
    return schedule


def build_bike_schedule(
    sale_price: int,
    deposit: int,
    start_date: date,
    weekly_installment: Optional[int] = None,
    target_weeks: Optional[int] = None,
    cost_price: Optional[int] = None,
    default_weeks: int = 52
) -> BuiltSchedule:
    """
    Build a flat weekly hire-purchase schedule

    The weekly installment is taken as given, or derived from the target
    number of weeks (default_weeks when neither is supplied). When both are
    supplied the weekly installment wins.

    Raises:
        InvalidTerms: If any input is out of range
    """
    sale_price = _require_amount("sale_price", sale_price)
    deposit = _require_amount("deposit", deposit, minimum=0)
    if deposit >= sale_price:
        raise InvalidTerms("deposit must be less than sale_price")
    if not isinstance(start_date, date):
        raise InvalidTerms("start_date must be a calendar date")

    financed = sale_price - deposit
    if weekly_installment is not None:
        weekly = _require_amount("weekly_installment", weekly_installment)
    elif target_weeks is not None:
        weekly = ceil_div(financed, _require_count("target_weeks", target_weeks, MAX_BIKE_WEEKS))
    else:
        weekly = ceil_div(financed, default_weeks)

    weeks_to_pay = ceil_div(financed, weekly)
    if weeks_to_pay > MAX_BIKE_WEEKS:
        raise InvalidTerms(f"weekly_installment is too small: {weeks_to_pay} weeks exceeds {MAX_BIKE_WEEKS}")

    installments = []
    remaining_balance = financed
    for week in range(1, weeks_to_pay + 1):
        principal_amount = weekly if week < weeks_to_pay else financed - weekly * (weeks_to_pay - 1)
        remaining_balance -= principal_amount
        installments.append(Installment(
            sequence=week,
            due_date=start_date + timedelta(days=7 * week),
            principal_amount=principal_amount,
            interest_amount=0,
            total_amount=principal_amount,
            balance_after=remaining_balance,
        ))

    schedule = BuiltSchedule(
        product=LoanProduct.BIKE,
        principal=financed,
        periodic_installment=weekly,
        installments=installments,
        weekly_installment=weekly,
        weeks_to_pay=weeks_to_pay,
    )
    if cost_price is not None:
        schedule.admin_summary = bike_admin_summary(
            sale_price, deposit, _require_amount("cost_price", cost_price), weeks_to_pay
        )
    return schedule


def bike_admin_summary(sale_price: int, deposit: int, cost_price: int, weeks_to_pay: int) -> Dict[str, Any]:
    """
    Profit figures shown to administrators only

    The implied rate treats the administrator's outlay (cost less deposit)
    as a loan repaid by the remaining sale price over the term.
    """
    total_profit = sale_price - cost_price
    summary: Dict[str, Any] = {
        'cost_price': cost_price,
        'total_profit': total_profit,
        'profit_pct': str((Decimal(total_profit) * 100 / Decimal(cost_price)).quantize(Decimal('0.01'))),
        'admin_outlay': cost_price - deposit,
    }

    admin_outlay = cost_price - deposit
    if admin_outlay > 0:
        weekly_rate = (Decimal(sale_price - deposit) / Decimal(admin_outlay) - 1) / Decimal(weeks_to_pay)
        summary['implied_weekly_rate_pct'] = str((weekly_rate * 100).quantize(Decimal('0.01')))
        summary['implied_annual_rate_pct'] = str((weekly_rate * 52 * 100).quantize(Decimal('0.01')))
    return summary


def _mark_zero_installments(schedule: BuiltSchedule) -> None:
    for installment in schedule.installments:
        if installment.total_amount == 0:
            installment.status = InstallmentStatus.PAID


def build_schedule(product: LoanProduct, terms: Dict[str, Any], start_date: date,
                   default_bike_weeks: int = 52) -> BuiltSchedule:
    """Dispatch on product; terms carries the product-specific fields"""
    if product == LoanProduct.CASH:
        return build_cash_schedule(
            terms.get('principal'),
            terms.get('annual_interest_rate_pct'),
            terms.get('term_months'),
            start_date,
        )
    if product == LoanProduct.BIKE:
        return build_bike_schedule(
            terms.get('sale_price'),
            terms.get('deposit', 0),
            start_date,
            weekly_installment=terms.get('weekly_installment'),
            target_weeks=terms.get('target_weeks'),
            cost_price=terms.get('cost_price'),
            default_weeks=default_bike_weeks,
        )
    raise InvalidTerms(f"Unknown product: {product}")

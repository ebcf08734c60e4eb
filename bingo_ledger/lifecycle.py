"""
Lifecycle & Penalty Evaluator Module

Derives arrears, installment statuses, the PAR bucket and the lifecycle
status of a loan as of a calendar date, accruing at most one flat late fee
per overdue episode. Also holds the table of administrative transitions.

The resolved status is a function of the last administratively set status
and the ledger alone, never of the order in which evaluations ran, so a
loan rebuilt from its records always ends in the status it was stored with.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from .config import BingoConfig
from .currency import round_ugx
from .errors import IllegalTransition
from .models import Installment, InstallmentStatus, Loan, LoanProduct, LoanStatus, ParBucket

logger = logging.getLogger(__name__)


# Statuses before money goes out, or after the loan was called off
PRE_SERVICE_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.DRAFT, LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.CANCELLED,
})

# Statuses the evaluator may move a loan between
ENGINE_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.ACTIVE, LoanStatus.DELINQUENT, LoanStatus.COMPLETED,
})

# Statuses in which a repayment may be posted
REPAYABLE_STATUSES: FrozenSet[LoanStatus] = frozenset({
    LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DELINQUENT, LoanStatus.DEFAULTED,
})

# Administrative transitions: target -> statuses it may be reached from
TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.PENDING: frozenset({LoanStatus.DRAFT}),
    LoanStatus.APPROVED: frozenset({LoanStatus.PENDING}),
    LoanStatus.DISBURSED: frozenset({LoanStatus.APPROVED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.DISBURSED}),
    LoanStatus.CANCELLED: frozenset({LoanStatus.DRAFT, LoanStatus.PENDING, LoanStatus.APPROVED}),
    LoanStatus.DEFAULTED: frozenset({LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DELINQUENT}),
}


@dataclass(frozen=True)
class EvaluationPolicy:
    """Business constants for arrears and late fees"""
    grace_period_days: int = 7
    penalty_rate: Decimal = Decimal('0.02')
    weeks_per_month: Decimal = Decimal('4.33')

    @classmethod
    def from_config(cls, config: BingoConfig) -> 'EvaluationPolicy':
        return cls(
            grace_period_days=config.grace_period_days,
            penalty_rate=Decimal(config.penalty_rate),
            weeks_per_month=Decimal(config.weeks_per_month),
        )


@dataclass
class Evaluation:
    """Outcome of one evaluation"""
    evaluated_on: date
    status_before: LoanStatus
    status_after: LoanStatus
    days_in_arrears: int
    penalty_accrued: int = 0
    penalty_sequence: Optional[int] = None

    @property
    def status_changed(self) -> bool:
        return self.status_before != self.status_after


def check_transition(current: LoanStatus, target: LoanStatus) -> None:
    """
    Raises:
        IllegalTransition: If target is not reachable from current by hand
    """
    sources = TRANSITIONS.get(target)
    if sources is None:
        raise IllegalTransition(f"'{target.value}' is set by the ledger, not by hand")
    if current not in sources:
        raise IllegalTransition(f"Cannot move a loan from '{current.value}' to '{target.value}'")


def earliest_unpaid(loan: Loan) -> Optional[Installment]:
    """First installment (by sequence) still owing anything, penalty included"""
    for installment in loan.installments:
        if installment.paid_amount + installment.penalty_paid < installment.total_amount + installment.accrued_penalty:
            return installment
    return None


def penalty_amount(loan: Loan, policy: EvaluationPolicy) -> int:
    """Flat late fee: a share of the weekly installment, or its monthly equivalent for cash"""
    if loan.product == LoanProduct.BIKE:
        return round_ugx(policy.penalty_rate * Decimal(loan.periodic_installment))
    return round_ugx(policy.penalty_rate * Decimal(loan.periodic_installment) / policy.weeks_per_month)


def par_bucket(days_in_arrears: int) -> ParBucket:
    if days_in_arrears >= 90:
        return ParBucket.PAR_90
    if days_in_arrears >= 30:
        return ParBucket.PAR_30
    if days_in_arrears >= 1:
        return ParBucket.PAR_1
    return ParBucket.CURRENT


def resolve_status(loan: Loan, days_in_arrears: int, policy: EvaluationPolicy) -> LoanStatus:
    """Lifecycle status implied by the administrative status and the ledger"""
    base = loan.base_status
    if base in PRE_SERVICE_STATUSES:
        return base
    if loan.total_outstanding == 0:
        return LoanStatus.COMPLETED
    if base == LoanStatus.DEFAULTED:
        return LoanStatus.DEFAULTED
    if days_in_arrears > policy.grace_period_days:
        return LoanStatus.DELINQUENT
    if base == LoanStatus.DISBURSED and not loan.has_repayments:
        return LoanStatus.DISBURSED
    return LoanStatus.ACTIVE


def refresh_installment_statuses(loan: Loan, at: Optional[date]) -> None:
    serviced = loan.base_status not in PRE_SERVICE_STATUSES
    for installment in loan.installments:
        if installment.is_satisfied:
            installment.status = InstallmentStatus.PAID
        elif serviced and at is not None and installment.due_date < at:
            installment.status = InstallmentStatus.OVERDUE
        elif installment.paid_amount + installment.penalty_paid > 0:
            installment.status = InstallmentStatus.PARTIAL
        else:
            installment.status = InstallmentStatus.PENDING


def evaluate(loan: Loan, at: Optional[date], policy: EvaluationPolicy, accrue: bool = True) -> Evaluation:
    """
    Evaluate a loan as of a date, mutating its derived fields

    Args:
        loan: Loan to evaluate (modified in place)
        at: Evaluation date; None means the loan was never evaluated
        policy: Grace period and late-fee constants
        accrue: Whether a late fee may be accrued; refreshes after a payment pass False

    Returns:
        Evaluation describing what changed
    """
    status_before = loan.lifecycle_status
    result = Evaluation(evaluated_on=at, status_before=status_before,
                        status_after=status_before, days_in_arrears=0)

    target = earliest_unpaid(loan)
    days = 0
    if loan.base_status not in PRE_SERVICE_STATUSES and target is not None and at is not None:
        days = max(0, (at - target.due_date).days)

        # One fee per episode: an installment already carrying a fee is never charged again
        if days > policy.grace_period_days and accrue and target.accrued_penalty == 0:
            fee = penalty_amount(loan, policy)
            if fee > 0:
                target.accrued_penalty = fee
                target.penalty_assessed_on = at
                result.penalty_accrued = fee
                result.penalty_sequence = target.sequence
                logger.debug(f"Accrued late fee {fee} on {loan.id} installment {target.sequence}")

    loan.refresh_totals()
    refresh_installment_statuses(loan, at)
    loan.days_in_arrears = days
    loan.par_bucket = par_bucket(days)
    loan.lifecycle_status = resolve_status(loan, days, policy)

    result.days_in_arrears = days
    result.status_after = loan.lifecycle_status
    return result

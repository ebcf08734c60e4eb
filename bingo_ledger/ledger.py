"""
Ledger Engine Module

Applies payments to a loan's installments oldest-first, penalty before
interest before principal, and rebuilds a loan's ledger from its records.
All arithmetic is on whole shillings.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .lifecycle import EvaluationPolicy, evaluate, resolve_status
from .models import (
    InstallmentStatus, Loan, ParBucket, PaymentKind, PaymentRecord, PenaltyAssessment,
)

logger = logging.getLogger(__name__)


@dataclass
class InstallmentAllocation:
    """Share of one payment that landed on one installment"""
    sequence: int
    penalty: int = 0
    interest: int = 0
    principal: int = 0

    @property
    def total(self) -> int:
        return self.penalty + self.interest + self.principal

    def to_dict(self) -> Dict[str, int]:
        return {'sequence': self.sequence, 'penalty': self.penalty,
                'interest': self.interest, 'principal': self.principal}


@dataclass
class ApplicationResult:
    """Outcome of applying one payment"""
    payment_id: str
    amount: int
    outstanding_before: int
    allocations: List[InstallmentAllocation] = field(default_factory=list)
    deposit: int = 0
    overpayment: int = 0
    penalty_accrued: int = 0

    @property
    def applied(self) -> int:
        return sum(a.total for a in self.allocations)

    def to_dict(self) -> Dict:
        return {
            'payment_id': self.payment_id,
            'amount': self.amount,
            'outstanding_before': self.outstanding_before,
            'allocations': [a.to_dict() for a in self.allocations],
            'deposit': self.deposit,
            'overpayment': self.overpayment,
        }


def apply_payment(loan: Loan, payment: PaymentRecord, policy: EvaluationPolicy) -> ApplicationResult:
    """
    Apply one payment to the loan in place

    The loan is first evaluated at the payment date (which may accrue a late
    fee), then the amount is spread over installments in sequence order.
    Anything left after the last installment becomes credit_balance.
    """
    if payment.kind != PaymentKind.PAYMENT:
        raise ValueError(f"Cannot apply a {payment.kind.value} row as money received")

    if payment.is_deposit:
        # The deposit reduces the financed amount at build time; it is recorded, not allocated
        loan.deposit_paid += payment.amount
        loan.last_payment_date = _later(loan.last_payment_date, payment.payment_date)
        loan.refresh_totals()
        return ApplicationResult(payment_id=payment.id, amount=payment.amount,
                                 outstanding_before=loan.total_outstanding, deposit=payment.amount)

    evaluation = evaluate(loan, payment.payment_date, policy, accrue=True)
    result = ApplicationResult(
        payment_id=payment.id,
        amount=payment.amount,
        outstanding_before=loan.total_outstanding,
        penalty_accrued=evaluation.penalty_accrued,
    )

    remaining = payment.amount
    for installment in loan.installments:
        if remaining == 0:
            break
        if installment.is_satisfied:
            continue

        allocation = InstallmentAllocation(sequence=installment.sequence)

        # Penalty first
        allocation.penalty = min(remaining, installment.penalty_due)
        installment.penalty_paid += allocation.penalty
        remaining -= allocation.penalty

        # Then interest, then principal
        interest_due = installment.interest_amount - installment.interest_paid
        allocation.interest = min(remaining, interest_due)
        remaining -= allocation.interest
        allocation.principal = min(remaining, installment.principal_amount - installment.principal_paid)
        remaining -= allocation.principal
        installment.paid_amount += allocation.interest + allocation.principal

        if installment.is_satisfied:
            installment.status = InstallmentStatus.PAID
        elif allocation.total > 0:
            installment.status = InstallmentStatus.PARTIAL

        if allocation.total > 0:
            result.allocations.append(allocation)

    if remaining > 0:
        loan.credit_balance += remaining
        result.overpayment = remaining
        logger.debug(f"Payment {payment.id} left {remaining} as credit on loan {loan.id}")

    loan.last_payment_date = _later(loan.last_payment_date, payment.payment_date)
    loan.refresh_totals()
    loan.lifecycle_status = resolve_status(loan, loan.days_in_arrears, policy)
    return result


def reset_ledger(loan: Loan) -> None:
    """Return the loan to its freshly built state, keeping terms and administrative status"""
    for installment in loan.installments:
        installment.reset()
    loan.deposit_paid = 0
    loan.credit_balance = 0
    loan.last_payment_date = None
    loan.days_in_arrears = 0
    loan.par_bucket = ParBucket.CURRENT
    loan.refresh_totals()
    loan.lifecycle_status = loan.base_status


Event = Union[PaymentRecord, PenaltyAssessment]


def effective_payments(payments: Iterable[PaymentRecord]) -> List[PaymentRecord]:
    """Money-received rows that have not been reversed"""
    payments = list(payments)
    reversed_ids = {p.reverses for p in payments if p.kind == PaymentKind.REVERSAL}
    return [p for p in payments if p.kind == PaymentKind.PAYMENT and p.id not in reversed_ids]


def event_order(
    payments: Iterable[PaymentRecord],
    assessments: Iterable[PenaltyAssessment] = ()
) -> List[Event]:
    """Effective payments and penalty assessments in canonical order"""
    events: List[Event] = list(effective_payments(payments)) + list(assessments)
    events.sort(key=lambda e: e.sort_key)
    return events


def replay(
    loan: Loan,
    payments: Iterable[PaymentRecord],
    assessments: Iterable[PenaltyAssessment],
    policy: EvaluationPolicy,
    as_of: Optional[date] = None
) -> Tuple[Dict[str, ApplicationResult], Dict[str, int]]:
    """
    Rebuild the loan's ledger from scratch

    Args:
        loan: Loan whose schedule and administrative status are kept (modified in place)
        payments: Every payment row of the loan, reversals included
        assessments: Penalty assessments recorded by earlier evaluations
        policy: Grace period and late-fee constants
        as_of: Date of the final refresh (defaults to loan.evaluated_on)

    Returns:
        Tuple of (application result per payment id, fee accrued per assessment id)
    """
    reset_ledger(loan)

    applications: Dict[str, ApplicationResult] = {}
    accruals: Dict[str, int] = {}
    for event in event_order(payments, assessments):
        if isinstance(event, PaymentRecord):
            applications[event.id] = apply_payment(loan, event, policy)
        else:
            accruals[event.id] = evaluate(loan, event.assessed_on, policy, accrue=True).penalty_accrued

    evaluate(loan, as_of if as_of is not None else loan.evaluated_on, policy, accrue=False)
    return applications, accruals


def _later(current: Optional[date], candidate: date) -> date:
    if current is None or candidate > current:
        return candidate
    return current

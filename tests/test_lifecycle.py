"""
Test suite for the lifecycle and penalty evaluator

Covers the grace period, the single late fee per overdue episode, PAR
buckets and the administrative transition table.
"""

import pytest
from datetime import date

from bingo_ledger.audit import AuditAction
from bingo_ledger.errors import IllegalTransition, InvalidPayment
from bingo_ledger.governance import Actor, Role
from bingo_ledger.lifecycle import (
    EvaluationPolicy, check_transition, par_bucket, penalty_amount, resolve_status
)
from bingo_ledger.models import InstallmentStatus, LoanStatus, ParBucket

ADMIN = Actor(id="admin-1", role=Role.ADMIN)
MANAGER = Actor(id="manager-1", role=Role.MANAGER)
STAFF = Actor(id="staff-1", role=Role.STAFF)


class TestGraceAndPenalty:
    """Test late-fee accrual on the 40 x 50,000 bike schedule"""

    def test_within_grace_period(self, service, bike_loan):
        """Seven days late is still within grace"""
        loan = bike_loan()
        loan = service.evaluate_loan(loan.id, date(2026, 2, 15))

        assert loan.lifecycle_status == LoanStatus.ACTIVE
        assert loan.outstanding_penalty == 0
        assert loan.days_in_arrears == 7

    def test_due_date_is_not_late(self, service, bike_loan):
        loan = bike_loan()
        loan = service.evaluate_loan(loan.id, date(2026, 2, 8))

        assert loan.lifecycle_status == LoanStatus.ACTIVE
        assert loan.days_in_arrears == 0
        assert all(i.accrued_penalty == 0 for i in loan.installments)

    def test_penalty_after_grace(self, service, bike_loan):
        """Day eight past due accrues 2% of the weekly installment and marks the loan delinquent"""
        loan = bike_loan()
        loan = service.evaluate_loan(loan.id, date(2026, 2, 16))

        assert loan.installments[0].accrued_penalty == 1_000
        assert loan.installments[0].penalty_assessed_on == date(2026, 2, 16)
        assert loan.installments[0].status == InstallmentStatus.OVERDUE
        assert loan.outstanding_penalty == 1_000
        assert loan.lifecycle_status == LoanStatus.DELINQUENT
        assert loan.par_bucket == ParBucket.PAR_1

        actions = [e.action for e in service.list_audit(loan.id)]
        assert actions[-1] == AuditAction.PENALTY_ACCRUED

    def test_penalty_does_not_compound(self, service, bike_loan):
        """Later evaluations in the same episode charge nothing more"""
        loan = bike_loan()
        service.evaluate_loan(loan.id, date(2026, 2, 16))
        service.evaluate_loan(loan.id, date(2026, 2, 20))
        loan = service.evaluate_loan(loan.id, date(2026, 3, 20))

        assert sum(i.accrued_penalty for i in loan.installments) == 1_000
        assert loan.days_in_arrears == 40
        assert loan.par_bucket == ParBucket.PAR_30

    def test_evaluation_is_idempotent(self, service, bike_loan):
        """Re-evaluating at the same date changes nothing and writes no audit entry"""
        loan = bike_loan()
        first = service.evaluate_loan(loan.id, date(2026, 2, 16))
        entries = len(service.list_audit(loan.id))

        second = service.evaluate_loan(loan.id, date(2026, 2, 16))

        assert second.ledger_state() == first.ledger_state()
        assert second.version == first.version
        assert len(service.list_audit(loan.id)) == entries

    def test_new_episode_after_cure(self, service, bike_loan):
        """Once the overdue installment is paid, the next late installment may be charged"""
        loan = bike_loan()
        service.evaluate_loan(loan.id, date(2026, 2, 16))
        service.post_payment(STAFF, loan.id, 51_000, "cash", date(2026, 3, 10), "arrears payment")

        loan = service.evaluate_loan(loan.id, date(2026, 3, 11))

        assert loan.installments[0].status == InstallmentStatus.PAID
        assert loan.installments[1].accrued_penalty == 1_000
        assert loan.outstanding_penalty == 1_000

    def test_delinquency_cures_after_payment(self, service, bike_loan):
        loan = bike_loan()
        service.evaluate_loan(loan.id, date(2026, 2, 16))
        loan = service.post_payment(STAFF, loan.id, 101_000, "cash", date(2026, 2, 17), "arrears payment").loan

        assert loan.lifecycle_status == LoanStatus.ACTIVE
        assert loan.days_in_arrears == 0
        assert loan.par_bucket == ParBucket.CURRENT

    def test_cash_penalty_uses_monthly_equivalent(self, service, cash_loan):
        """Cash fee is 2% of the EMI divided by 4.33 weeks"""
        loan = cash_loan()
        assert penalty_amount(loan, EvaluationPolicy()) == 410

        loan = service.evaluate_loan(loan.id, date(2026, 2, 23))
        assert loan.installments[0].accrued_penalty == 410

    def test_pre_service_loans_are_not_evaluated(self, service, bike_loan):
        loan = bike_loan(status="approved")
        loan = service.evaluate_loan(loan.id, date(2026, 6, 1))

        assert loan.lifecycle_status == LoanStatus.APPROVED
        assert loan.outstanding_penalty == 0
        assert loan.days_in_arrears == 0


class TestStatusResolution:
    """Test how the resolved status follows the ledger"""

    def test_disbursed_until_first_repayment(self, service, bike_loan):
        """The deposit alone does not make a loan active"""
        loan = bike_loan(status="disbursed")
        assert loan.lifecycle_status == LoanStatus.DISBURSED

        loan = service.post_payment(STAFF, loan.id, 50_000, "cash", date(2026, 2, 8), "first installment").loan
        assert loan.lifecycle_status == LoanStatus.ACTIVE

    def test_completed_on_zero_outstanding(self, service, bike_loan):
        loan = bike_loan(sale_price=300_000, deposit=100_000, weekly_installment=100_000)
        loan = service.post_payment(STAFF, loan.id, 200_000, "cash", date(2026, 2, 8), "paid in full").loan

        assert loan.lifecycle_status == LoanStatus.COMPLETED
        with pytest.raises(InvalidPayment):
            service.post_payment(STAFF, loan.id, 1_000, "cash", date(2026, 2, 9), "extra payment")

    def test_defaulted_loan_accepts_payments_and_completes(self, service, bike_loan):
        """A defaulted loan stays defaulted until the late fee and both weeks are paid"""
        loan = bike_loan(sale_price=300_000, deposit=100_000, weekly_installment=100_000)
        loan = service.transition_loan(ADMIN, loan.id, "defaulted", "borrower absconded")
        assert loan.lifecycle_status == LoanStatus.DEFAULTED

        loan = service.post_payment(STAFF, loan.id, 50_000, "cash", date(2026, 3, 1), "partial recovery").loan
        assert loan.lifecycle_status == LoanStatus.DEFAULTED

        loan = service.post_payment(STAFF, loan.id, 152_000, "cash", date(2026, 3, 2), "full recovery").loan
        assert loan.lifecycle_status == LoanStatus.COMPLETED

    def test_resolution_ignores_evaluation_order(self, service, bike_loan):
        """Evaluating at several dates in any order ends in the same state"""
        forward = bike_loan()
        backward = bike_loan()
        dates = [date(2026, 2, 10), date(2026, 2, 16), date(2026, 3, 5)]

        for at in dates:
            service.evaluate_loan(forward.id, at)
        for at in reversed(dates):
            service.evaluate_loan(backward.id, at)

        forward = service.get_loan(forward.id)
        backward = service.get_loan(backward.id)
        assert forward.lifecycle_status == backward.lifecycle_status == LoanStatus.DELINQUENT
        assert forward.days_in_arrears == backward.days_in_arrears == 25
        assert forward.outstanding_penalty == backward.outstanding_penalty == 1_000

    def test_resolve_status_pre_service(self, service, bike_loan):
        loan = bike_loan(status="pending")
        assert resolve_status(loan, 30, EvaluationPolicy()) == LoanStatus.PENDING


class TestTransitions:
    """Test the administrative transition table"""

    def test_origination_path(self, service, bike_loan):
        loan = bike_loan(status="draft")
        assert loan.lifecycle_status == LoanStatus.DRAFT

        for status in ("pending", "approved", "disbursed", "active"):
            loan = service.transition_loan(MANAGER, loan.id, status, f"moving loan to {status}")
            assert loan.lifecycle_status == LoanStatus(status)

        actions = [e.action for e in service.list_audit(loan.id)]
        assert actions == [AuditAction.LOAN_CREATED] + [AuditAction.STATUS_CHANGED] * 4

    def test_skipping_steps_is_illegal(self, service, bike_loan):
        loan = bike_loan(status="draft")
        with pytest.raises(IllegalTransition):
            service.transition_loan(ADMIN, loan.id, "approved", "skip the review")

    @pytest.mark.parametrize("target", ["completed", "delinquent", "draft", "written_off"])
    def test_engine_statuses_cannot_be_set(self, service, bike_loan, target):
        loan = bike_loan()
        with pytest.raises(IllegalTransition):
            service.transition_loan(ADMIN, loan.id, target, "manual override")

    def test_cancel_before_disbursement(self, service, bike_loan):
        loan = bike_loan(status="approved")
        loan = service.transition_loan(ADMIN, loan.id, "cancelled", "client withdrew")
        assert loan.lifecycle_status == LoanStatus.CANCELLED

        with pytest.raises(IllegalTransition):
            service.transition_loan(ADMIN, loan.id, "pending", "reopen the request")

    def test_cannot_cancel_after_disbursement(self, service, bike_loan):
        loan = bike_loan(status="disbursed")
        with pytest.raises(IllegalTransition):
            service.transition_loan(ADMIN, loan.id, "cancelled", "client withdrew")

    def test_check_transition_table(self):
        check_transition(LoanStatus.DELINQUENT, LoanStatus.DEFAULTED)
        with pytest.raises(IllegalTransition):
            check_transition(LoanStatus.COMPLETED, LoanStatus.DEFAULTED)

    def test_payments_refused_before_disbursement(self, service, bike_loan):
        loan = bike_loan(status="approved")
        with pytest.raises(InvalidPayment):
            service.post_payment(STAFF, loan.id, 50_000, "cash", date(2026, 2, 8), "early payment")


class TestParBuckets:
    """Test portfolio-at-risk bucketing"""

    @pytest.mark.parametrize("days,bucket", [
        (0, ParBucket.CURRENT),
        (1, ParBucket.PAR_1),
        (29, ParBucket.PAR_1),
        (30, ParBucket.PAR_30),
        (89, ParBucket.PAR_30),
        (90, ParBucket.PAR_90),
        (400, ParBucket.PAR_90),
    ])
    def test_buckets(self, days, bucket):
        assert par_bucket(days) == bucket

"""
Loan Service Module

The operation boundary of the ledger: creates loans from a draft, moves them
through their lifecycle, posts, reverses and edits payments, and evaluates
arrears. Every mutation passes the governance gate, runs under the loan's
lock inside one storage transaction, and appends exactly one audit entry
together with the state change.

The stored derived fields of a loan always equal a replay of its schedule
over its unreversed payments and recorded penalty assessments.
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .audit import AuditAction, AuditEntry, AuditTrail, changed_fields
from .clients import ClientRegistry, KYCStatus
from .config import BingoConfig, get_config
from .currency import format_ugx, is_whole_amount
from .errors import (
    Conflict, IllegalTransition, InternalFailure, InvalidPayment, InvalidTerms, LedgerError, NotFound,
)
from .governance import (
    SYSTEM_ACTOR, SYSTEM_JUSTIFICATION, TRANSITION_OPERATIONS, Actor, GovernanceGate, Operation, Role,
)
from .ledger import ApplicationResult, apply_payment, effective_payments, replay
from .lifecycle import (
    PRE_SERVICE_STATUSES, REPAYABLE_STATUSES, Evaluation, EvaluationPolicy, check_transition, evaluate,
)
from .locks import LoanLockRegistry
from .logging_config import log_action
from .models import (
    Installment, Loan, LoanProduct, LoanStatus, PaymentKind, PaymentMethod, PaymentRecord,
    PenaltyAssessment,
)
from .schedule import BuiltSchedule, add_months, bike_admin_summary, build_schedule
from .storage import DuplicateKeyError, StorageInterface

logger = logging.getLogger(__name__)

DEPOSIT_JUSTIFICATION = "initial deposit"

CASH_TERMS = ('principal', 'annual_interest_rate_pct', 'term_months')
BIKE_TERMS = ('sale_price', 'deposit', 'weekly_installment', 'target_weeks', 'cost_price')
EDITABLE_FIELDS = frozenset(CASH_TERMS + BIKE_TERMS + ('start_date', 'notes'))


@dataclass
class LoanDraft:
    """Inputs for a new loan; product-specific fields are ignored for the other product"""
    client_id: str
    product: LoanProduct
    start_date: date
    principal: Optional[int] = None
    annual_interest_rate_pct: Any = None
    term_months: Optional[int] = None
    sale_price: Optional[int] = None
    deposit: int = 0
    weekly_installment: Optional[int] = None
    target_weeks: Optional[int] = None
    cost_price: Optional[int] = None
    notes: str = ""

    def terms(self) -> Dict[str, Any]:
        names = CASH_TERMS if self.product in (LoanProduct.CASH, LoanProduct.CASH.value) else BIKE_TERMS
        return {name: getattr(self, name) for name in names}


@dataclass
class PostingResult:
    """Outcome of post_payment / edit_payment"""
    loan: Loan
    payment: PaymentRecord
    overpayment: int = 0
    duplicate: bool = False
    application: Optional[ApplicationResult] = None


@dataclass
class PortfolioReport:
    """Counts produced by evaluate_portfolio"""
    evaluated_on: date
    evaluated: int = 0
    penalties_accrued: int = 0
    status_changes: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_par_bucket: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)


def _as_date(value, error_cls, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            pass
    raise error_cls(f"{name} must be an ISO-8601 calendar date")


class LoanService:
    """
    Loan lifecycle and ledger operations
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit: Optional[AuditTrail] = None,
        config: Optional[BingoConfig] = None,
        clients: Optional[ClientRegistry] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.audit = audit or AuditTrail(storage)
        self.gate = GovernanceGate(self.audit, self.config.justification_min_length)
        self.clients = clients or ClientRegistry(storage, self.audit, self.gate)
        self.policy = EvaluationPolicy.from_config(self.config)
        self.locks = LoanLockRegistry(self.config.lock_timeout_seconds)
        self.zone = ZoneInfo(self.config.timezone)

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.payments_table = "payments"
        self.assessments_table = "penalty_assessments"
        self.loan_numbers_table = "loan_numbers"
        self.loan_sequences_table = "loan_number_sequences"
        self.receipts_table = "receipt_numbers"

    def today(self) -> date:
        """Current calendar date in the ledger's timezone"""
        return datetime.now(self.zone).date()

    # ------------------------------------------------------------------
    # Loan origination and lifecycle
    # ------------------------------------------------------------------

    def create_loan(self, actor: Actor, draft: LoanDraft, justification: str) -> Loan:
        """
        Create a loan in draft with its schedule built

        Args:
            actor: Verified caller
            draft: Product, terms and borrower of the new loan
            justification: Written reason

        Returns:
            The stored Loan

        Raises:
            AccessDenied: Role may not create loans, or not above the large-loan threshold
            MissingJustification: Justification too short
            InvalidTerms: Terms violate their constraints, or the client failed KYC
            NotFound: Unknown client
        """
        self.gate.admit(actor, Operation.CREATE_LOAN, justification, "loan_request", draft.client_id)

        product = self._parse_product(draft.product)
        start_date = _as_date(draft.start_date, InvalidTerms, "start_date")
        schedule = build_schedule(product, draft.terms(), start_date, self.config.default_bike_weeks)

        if schedule.principal > self.config.large_loan_threshold:
            self.gate.admit(actor, Operation.CREATE_LARGE_LOAN, justification, "loan_request", draft.client_id)
        reason = self.gate.check_justification(justification)

        client = self.clients.get_client(draft.client_id)
        if client.kyc_status == KYCStatus.REJECTED:
            raise InvalidTerms(f"Client {client.id} failed KYC and cannot take a loan")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_number="",
            client_id=draft.client_id,
            created_by=actor.id,
            product=product,
            principal=schedule.principal,
            start_date=start_date,
            periodic_installment=schedule.periodic_installment,
            notes=(draft.notes or "").strip(),
        )
        self._apply_schedule(loan, schedule, draft.terms())

        with self._transaction():
            loan.loan_number = self._allocate_loan_number(loan.id)
            payments = []
            deposit = self._deposit_record(loan, actor, now)
            if deposit:
                apply_payment(loan, deposit, self.policy)
                payments.append(deposit)
            loan.refresh_totals()

            self._save_loan(loan, new=True)
            for payment in payments:
                self.storage.insert(self.payments_table, payment.id, payment.to_dict())

            self.audit.append(
                action=AuditAction.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                after={
                    'loan_number': loan.loan_number,
                    'client_id': loan.client_id,
                    'product': loan.product.value,
                    'principal': loan.principal,
                    **loan.snapshot(),
                },
                metadata=schedule.summary(),
            )

        log_action(logger, "INFO", f"Created {product.value} loan {loan.loan_number}", user_id=actor.id,
                   action=AuditAction.LOAN_CREATED.value, resource=f"loan:{loan.id}")
        return loan

    def transition_loan(self, actor: Actor, loan_id: str, target_status, justification: str) -> Loan:
        """
        Move a loan to an administrative status

        Raises:
            IllegalTransition: Target is an engine status or unreachable from the current one
            AccessDenied: Role may not perform this transition
            MissingJustification: Justification too short
            NotFound: Unknown loan
        """
        try:
            target = LoanStatus(target_status)
        except ValueError:
            raise IllegalTransition(f"Unknown lifecycle status '{target_status}'")
        operation = TRANSITION_OPERATIONS.get(target)
        if operation is None:
            raise IllegalTransition(f"'{target.value}' is set by the ledger, not by hand")

        reason = self.gate.authorize(actor, operation, justification, "loan", loan_id)

        with self.locks.hold(loan_id), self._transaction():
            loan = self._load_loan(loan_id)
            check_transition(loan.lifecycle_status, target)
            before = loan.snapshot()
            status_before = loan.lifecycle_status

            loan.base_status = target
            evaluate(loan, loan.evaluated_on, self.policy, accrue=False)
            self._save_loan(loan)

            before, after = changed_fields(before, loan.snapshot())
            self.audit.append(
                action=AuditAction.STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
                metadata={'from': status_before.value, 'to': target.value},
            )

        log_action(logger, "INFO", f"Loan {loan.loan_number} moved to {loan.lifecycle_status.value}",
                   user_id=actor.id, action=AuditAction.STATUS_CHANGED.value, resource=f"loan:{loan_id}")
        return loan

    def edit_loan(self, actor: Actor, loan_id: str, changes: Dict[str, Any], justification: str) -> Loan:
        """
        Edit terms or notes of a loan

        Terms may change only while the loan is in draft or pending, and the
        schedule is rebuilt; afterwards only notes are editable. The borrower
        never changes.

        Raises:
            InvalidTerms: Unknown field, borrower change, or invalid new terms
            IllegalTransition: Terms edited after approval
            AccessDenied: Role may not edit loans
            MissingJustification: Justification too short
            NotFound: Unknown loan
        """
        reason = self.gate.authorize(actor, Operation.EDIT_LOAN, justification, "loan", loan_id)

        if not changes:
            raise InvalidTerms("Nothing to edit")
        if 'client_id' in changes:
            raise InvalidTerms("The borrower of a loan cannot be changed")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvalidTerms(f"Fields not editable: {', '.join(sorted(unknown))}")

        with self.locks.hold(loan_id):
            loan = self._load_loan(loan_id)
            term_changes = {k: v for k, v in changes.items() if k != 'notes'}

            schedule = None
            if term_changes:
                if loan.lifecycle_status not in (LoanStatus.DRAFT, LoanStatus.PENDING):
                    raise IllegalTransition(
                        f"Terms are locked once a loan is {loan.lifecycle_status.value}; only notes may change"
                    )
                terms = self._merged_terms(loan, term_changes)
                start_date = _as_date(term_changes.get('start_date', loan.start_date), InvalidTerms, "start_date")
                schedule = build_schedule(loan.product, terms, start_date, self.config.default_bike_weeks)
                if schedule.principal > self.config.large_loan_threshold:
                    self.gate.admit(actor, Operation.CREATE_LARGE_LOAN, justification, "loan", loan_id)

            with self._transaction():
                before = self._editable_view(loan)
                if 'notes' in changes:
                    loan.notes = (changes['notes'] or "").strip()

                if schedule is not None:
                    old_count = len(loan.installments)
                    loan.start_date = start_date
                    self._apply_schedule(loan, schedule, terms)
                    for sequence in range(len(loan.installments) + 1, old_count + 1):
                        self.storage.delete(self.installments_table, f"{loan.id}:{sequence}")
                    self._replace_deposit(loan, actor, reason)

                before, after = changed_fields(before, self._editable_view(loan))
                if not after:
                    raise InvalidTerms("The edit changes nothing")
                self._save_loan(loan)
                self.audit.append(
                    action=AuditAction.LOAN_EDITED,
                    entity_type="loan",
                    entity_id=loan.id,
                    actor_id=actor.id,
                    actor_role=actor.role.value,
                    justification=reason,
                    before=before,
                    after=after,
                )

        log_action(logger, "INFO", f"Edited loan {loan.loan_number}", user_id=actor.id,
                   action=AuditAction.LOAN_EDITED.value, resource=f"loan:{loan_id}")
        return loan

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def post_payment(
        self,
        actor: Actor,
        loan_id: str,
        amount: int,
        method,
        payment_date,
        justification: str,
        receipt_number: Optional[str] = None
    ) -> PostingResult:
        """
        Record money received and apply it to the loan

        Re-submitting the same receipt number with the same body returns the
        original payment with duplicate=True and changes nothing.

        Raises:
            InvalidPayment: Bad amount, method or date, or loan not repayable
            Conflict: Receipt number already used with a different body
            AccessDenied: Role may not post payments
            MissingJustification: Justification too short
            NotFound: Unknown loan
        """
        reason = self.gate.authorize(actor, Operation.POST_PAYMENT, justification, "loan", loan_id)
        amount, method, payment_date = self._validate_payment(amount, method, payment_date)
        receipt_number = (receipt_number or "").strip() or None

        with self.locks.hold(loan_id), self._transaction():
            loan = self._load_loan(loan_id)

            if receipt_number:
                original = self._payment_for_receipt(receipt_number)
                if original is not None:
                    body = {'loan_id': loan_id, 'amount': amount, 'method': method.value,
                            'payment_date': payment_date.isoformat()}
                    if original.body() != body:
                        raise Conflict(f"Receipt {receipt_number} was already used for a different payment")
                    return PostingResult(loan=loan, payment=original, duplicate=True)

            self._check_repayable(loan, payment_date)

            now = datetime.now(timezone.utc)
            payment = PaymentRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=amount,
                method=method,
                payment_date=payment_date,
                recorded_by=actor.id,
                justification=reason,
                receipt_number=receipt_number,
            )
            before = loan.snapshot()
            application = self._fold_payment(loan, payment)

            self._save_loan(loan)
            self._insert_payment(payment)

            before, after = changed_fields(before, loan.snapshot())
            self.audit.append(
                action=AuditAction.PAYMENT_POSTED,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
                metadata={
                    'payment_id': payment.id,
                    'amount': amount,
                    'method': method.value,
                    'payment_date': payment_date,
                    'receipt_number': receipt_number,
                    'allocations': [a.to_dict() for a in application.allocations],
                    'overpayment': application.overpayment,
                },
            )

        log_action(logger, "INFO", f"Posted payment {payment.id} of {format_ugx(amount)} on {loan.loan_number}",
                   user_id=actor.id, action=AuditAction.PAYMENT_POSTED.value, resource=f"loan:{loan_id}",
                   extra={'overpayment': application.overpayment})
        return PostingResult(loan=loan, payment=payment, overpayment=application.overpayment,
                             application=application)

    def reverse_payment(self, actor: Actor, payment_id: str, justification: str) -> Loan:
        """
        Reverse a posted payment with a compensating row and rebuild the ledger

        Raises:
            AccessDenied: Only administrators may reverse payments
            MissingJustification: Justification too short
            NotFound: Unknown payment
            InvalidPayment: Deposit or reversal rows cannot be reversed
            Conflict: Payment already reversed
        """
        original = self._find_payment(payment_id)
        entity_type, entity_id = ("loan", original.loan_id) if original else ("payment", payment_id)
        reason = self.gate.authorize(actor, Operation.REVERSE_PAYMENT, justification, entity_type, entity_id)
        if original is None:
            raise NotFound(f"Payment {payment_id} not found")

        with self.locks.hold(original.loan_id), self._transaction():
            loan = self._load_loan(original.loan_id)
            payments = self._load_payments(loan.id)
            original = self._reversible(payment_id, payments)

            before = loan.snapshot()
            reversal = self._reversal_record(original, actor, reason)
            self._insert_payment(reversal)
            self._rebuild(loan, payments + [reversal])
            self._save_loan(loan)

            before, after = changed_fields(before, loan.snapshot())
            self.audit.append(
                action=AuditAction.PAYMENT_REVERSED,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
                metadata={'payment_id': original.id, 'reversal_id': reversal.id, 'amount': original.amount},
            )

        log_action(logger, "INFO", f"Reversed payment {payment_id} on {loan.loan_number}", user_id=actor.id,
                   action=AuditAction.PAYMENT_REVERSED.value, resource=f"loan:{loan.id}")
        return loan

    def edit_payment(
        self,
        actor: Actor,
        payment_id: str,
        justification: str,
        amount: Optional[int] = None,
        method=None,
        payment_date=None,
        receipt_number: Optional[str] = None
    ) -> PostingResult:
        """
        Correct a posted payment: the original is reversed and a corrected
        payment takes its place. Unspecified fields keep their old values;
        the old receipt number stays with the reversed row.

        Raises:
            Same as reverse_payment, plus InvalidPayment for bad new values
        """
        original = self._find_payment(payment_id)
        entity_type, entity_id = ("loan", original.loan_id) if original else ("payment", payment_id)
        reason = self.gate.authorize(actor, Operation.EDIT_PAYMENT, justification, entity_type, entity_id)
        if original is None:
            raise NotFound(f"Payment {payment_id} not found")

        amount, method, payment_date = self._validate_payment(
            original.amount if amount is None else amount,
            original.method if method is None else method,
            original.payment_date if payment_date is None else payment_date,
        )
        receipt_number = (receipt_number or "").strip() or None

        with self.locks.hold(original.loan_id), self._transaction():
            loan = self._load_loan(original.loan_id)
            payments = self._load_payments(loan.id)
            original = self._reversible(payment_id, payments)
            self._check_repayable(loan, payment_date, allow_completed=True)
            if receipt_number and self._payment_for_receipt(receipt_number) is not None:
                raise Conflict(f"Receipt {receipt_number} is already in use")

            now = datetime.now(timezone.utc)
            before = loan.snapshot()
            reversal = self._reversal_record(original, actor, reason)
            replacement = PaymentRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                amount=amount,
                method=method,
                payment_date=payment_date,
                recorded_by=actor.id,
                justification=reason,
                receipt_number=receipt_number,
            )
            self._insert_payment(reversal)
            self._insert_payment(replacement)
            applications = self._rebuild(loan, payments + [reversal, replacement])
            self._save_loan(loan)

            application = applications[replacement.id]
            before, after = changed_fields(before, loan.snapshot())
            self.audit.append(
                action=AuditAction.PAYMENT_EDITED,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
                metadata={
                    'payment_id': original.id,
                    'reversal_id': reversal.id,
                    'replacement_id': replacement.id,
                    'old': original.body(),
                    'new': replacement.body(),
                },
            )

        log_action(logger, "INFO", f"Edited payment {payment_id} on {loan.loan_number}", user_id=actor.id,
                   action=AuditAction.PAYMENT_EDITED.value, resource=f"loan:{loan.id}")
        return PostingResult(loan=loan, payment=replacement, overpayment=application.overpayment,
                             application=application)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_loan(
        self,
        loan_id: str,
        at_date=None,
        actor: Optional[Actor] = None,
        justification: Optional[str] = None
    ) -> Loan:
        """
        Evaluate arrears as of a date (today by default)

        Idempotent: a second evaluation at the same date changes nothing.
        Without an actor the internal system actor is used. Nothing is
        persisted or audited when the evaluation changes nothing.
        """
        return self._evaluate(loan_id, at_date, actor, justification)[0]

    def evaluate_portfolio(self, at_date=None, actor: Optional[Actor] = None,
                           justification: Optional[str] = None) -> PortfolioReport:
        """Evaluate every serviced loan; the system actor is used when no caller is given"""
        at = _as_date(at_date, InvalidTerms, "at_date") if at_date is not None else self.today()
        if actor is not None:
            self.gate.authorize(actor, Operation.EVALUATE_LOAN, justification, "portfolio", at.isoformat())
        report = PortfolioReport(evaluated_on=at)

        for row in self.storage.load_all(self.loans_table):
            if LoanStatus(row['base_status']) in PRE_SERVICE_STATUSES:
                continue
            if LoanStatus(row['lifecycle_status']) == LoanStatus.COMPLETED:
                continue
            try:
                loan, evaluation = self._evaluate(row['id'], at, actor, justification)
            except LedgerError as e:
                report.failures[row['id']] = e.code
                logger.warning(f"Evaluation of loan {row['id']} failed: {e.message}")
                continue

            report.evaluated += 1
            if evaluation is not None:
                report.penalties_accrued += 1 if evaluation.penalty_accrued else 0
                report.status_changes += 1 if evaluation.status_changed else 0
            status = loan.lifecycle_status.value
            bucket = loan.par_bucket.value
            report.by_status[status] = report.by_status.get(status, 0) + 1
            report.by_par_bucket[bucket] = report.by_par_bucket.get(bucket, 0) + 1

        logger.info(f"Portfolio evaluation at {at}: {report.evaluated} loans, "
                    f"{report.penalties_accrued} penalties, {report.status_changes} status changes")
        return report

    def _evaluate(self, loan_id: str, at_date, actor: Optional[Actor],
                  justification: Optional[str]) -> Tuple[Loan, Optional[Evaluation]]:
        if actor is None:
            actor, justification = SYSTEM_ACTOR, SYSTEM_JUSTIFICATION
        reason = self.gate.authorize(actor, Operation.EVALUATE_LOAN, justification, "loan", loan_id)
        at = _as_date(at_date, InvalidTerms, "at_date") if at_date is not None else self.today()

        with self.locks.hold(loan_id), self._transaction():
            loan = self._load_loan(loan_id)
            if loan.base_status in PRE_SERVICE_STATUSES:
                return loan, None

            before_state = loan.ledger_state()
            before = loan.snapshot()
            status_before = loan.lifecycle_status
            as_of = max(loan.evaluated_on, at) if loan.evaluated_on else at

            now = datetime.now(timezone.utc)
            assessment = PenaltyAssessment(id=str(uuid.uuid4()), created_at=now, updated_at=now,
                                           loan_id=loan.id, assessed_on=at, recorded_by=actor.id)
            payments = self._load_payments(loan.id)
            assessments = self._load_assessments(loan.id)

            if self._is_tail(assessment.sort_key, payments, assessments):
                evaluation = evaluate(loan, at, self.policy, accrue=True)
                accrued = evaluation.penalty_accrued
                loan.evaluated_on = as_of
                if as_of != at:
                    evaluate(loan, as_of, self.policy, accrue=False)
            else:
                loan.evaluated_on = as_of
                _, accruals = replay(loan, payments, assessments + [assessment], self.policy, as_of)
                accrued = accruals[assessment.id]
                evaluation = Evaluation(evaluated_on=at, status_before=status_before, status_after=status_before,
                                        days_in_arrears=loan.days_in_arrears, penalty_accrued=accrued)

            evaluation.status_before = status_before
            evaluation.status_after = loan.lifecycle_status

            after_state = loan.ledger_state()
            before_state.pop('evaluated_on')
            after_state.pop('evaluated_on')
            if after_state == before_state:
                return self._load_loan(loan_id), evaluation

            if accrued:
                self.storage.insert(self.assessments_table, assessment.id, assessment.to_dict())
                action = AuditAction.PENALTY_ACCRUED
            elif evaluation.status_changed:
                action = AuditAction.STATUS_CHANGED
            else:
                action = AuditAction.LOAN_EVALUATED

            self._save_loan(loan)
            before, after = changed_fields(before, loan.snapshot())
            self.audit.append(
                action=action,
                entity_type="loan",
                entity_id=loan.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
                metadata={'evaluated_on': at, 'penalty': accrued, 'assessment_id': assessment.id if accrued else None},
            )

        log_action(logger, "INFO", f"Evaluated loan {loan.loan_number} at {at}: {loan.lifecycle_status.value}",
                   user_id=actor.id, action=action.value, resource=f"loan:{loan_id}")
        return loan, evaluation

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFound: Unknown loan
        """
        return self._load_loan(loan_id)

    def list_loans(self, client_id: Optional[str] = None, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {}
        if client_id:
            filters['client_id'] = client_id
        if status:
            try:
                filters['lifecycle_status'] = LoanStatus(status).value
            except ValueError:
                raise InvalidTerms(f"Unknown lifecycle status '{status}'")
        rows = self.storage.find(self.loans_table, filters) if filters else self.storage.load_all(self.loans_table)
        loans = [self._hydrate(row) for row in rows]
        loans.sort(key=lambda l: l.loan_number)
        return loans

    def get_schedule(self, loan_id: str) -> List[Installment]:
        return self._load_loan(loan_id).installments

    def get_schedule_summary(self, loan_id: str, actor: Optional[Actor] = None) -> Dict[str, Any]:
        """Schedule figures; profit data is included for administrators only"""
        loan = self._load_loan(loan_id)
        summary = BuiltSchedule(
            product=loan.product,
            principal=loan.principal,
            periodic_installment=loan.periodic_installment,
            installments=loan.installments,
            weekly_installment=loan.weekly_installment,
            weeks_to_pay=loan.weeks_to_pay,
        ).summary()
        if actor is not None and actor.role == Role.ADMIN and loan.cost_price is not None:
            summary['admin'] = bike_admin_summary(loan.sale_price, loan.deposit, loan.cost_price, loan.weeks_to_pay)
        return summary

    def list_payments(self, loan_id: str) -> List[PaymentRecord]:
        """All payment rows of a loan in canonical order, reversal rows included"""
        self._load_loan(loan_id)
        return self._load_payments(loan_id)

    def list_audit(self, loan_id: str) -> List[AuditEntry]:
        """Audit entries of a loan ordered by (timestamp, sequence)"""
        self._load_loan(loan_id)
        return self.audit.entries_for("loan", loan_id)

    def verify_integrity(self) -> Dict[str, Any]:
        return self.audit.verify_integrity()

    def rebuild_loan(self, loan_id: str) -> Loan:
        """Replay a loan from its records without storing the result"""
        loan = self._load_loan(loan_id)
        replay(loan, self._load_payments(loan_id), self._load_assessments(loan_id), self.policy)
        return loan

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self):
        """Storage transaction; unexpected failures surface as InternalFailure after rollback"""
        try:
            with self.storage.atomic():
                yield
        except LedgerError:
            raise
        except DuplicateKeyError as e:
            raise Conflict(f"Concurrent write detected: {e}") from e
        except Exception as e:
            logger.error(f"Transaction rolled back: {e}", exc_info=True)
            raise InternalFailure(f"Operation failed and was rolled back: {e}") from e

    def _parse_product(self, product) -> LoanProduct:
        try:
            return LoanProduct(product)
        except ValueError:
            raise InvalidTerms(f"Unknown loan product '{product}'")

    def _validate_payment(self, amount, method, payment_date) -> Tuple[int, PaymentMethod, date]:
        if not is_whole_amount(amount) or amount < 1:
            raise InvalidPayment("Amount must be a positive whole UGX amount")
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise InvalidPayment(f"Unknown payment method '{method}'")
        if method == PaymentMethod.DEPOSIT:
            raise InvalidPayment("The deposit method is reserved for the initial bike deposit")
        return amount, method, _as_date(payment_date, InvalidPayment, "payment_date")

    def _check_repayable(self, loan: Loan, payment_date: date, allow_completed: bool = False) -> None:
        allowed = REPAYABLE_STATUSES | ({LoanStatus.COMPLETED} if allow_completed else set())
        if loan.lifecycle_status not in allowed:
            raise InvalidPayment(f"Payments are not accepted on a {loan.lifecycle_status.value} loan")
        if payment_date < loan.start_date:
            raise InvalidPayment(f"Payment date {payment_date} is before the loan start {loan.start_date}")
        horizon = add_months(loan.end_date, 12 * self.config.payment_horizon_years)
        if payment_date > horizon:
            raise InvalidPayment(f"Payment date {payment_date} is after {horizon}")

    def _fold_payment(self, loan: Loan, payment: PaymentRecord) -> ApplicationResult:
        """Apply a new payment, replaying from scratch unless it sorts after every recorded event"""
        payments = self._load_payments(loan.id)
        assessments = self._load_assessments(loan.id)
        as_of = max(loan.evaluated_on, payment.payment_date) if loan.evaluated_on else payment.payment_date
        loan.evaluated_on = as_of

        if self._is_tail(payment.sort_key, payments, assessments):
            application = apply_payment(loan, payment, self.policy)
            evaluate(loan, as_of, self.policy, accrue=False)
            return application

        applications, _ = replay(loan, payments + [payment], assessments, self.policy, as_of)
        return applications[payment.id]

    def _rebuild(self, loan: Loan, payments: List[PaymentRecord]) -> Dict[str, ApplicationResult]:
        applications, _ = replay(loan, payments, self._load_assessments(loan.id), self.policy, loan.evaluated_on)
        return applications

    @staticmethod
    def _is_tail(key, payments: List[PaymentRecord], assessments: List[PenaltyAssessment]) -> bool:
        events = [p.sort_key for p in effective_payments(payments)] + [a.sort_key for a in assessments]
        return all(existing < key for existing in events)

    def _reversible(self, payment_id: str, payments: List[PaymentRecord]) -> PaymentRecord:
        original = next((p for p in payments if p.id == payment_id), None)
        if original is None:
            raise NotFound(f"Payment {payment_id} not found")
        if original.kind == PaymentKind.REVERSAL:
            raise InvalidPayment("A reversal cannot itself be reversed")
        if original.is_deposit:
            raise InvalidPayment("The initial deposit cannot be reversed; edit the loan terms instead")
        if any(p.reverses == payment_id for p in payments):
            raise Conflict(f"Payment {payment_id} has already been reversed")
        return original

    def _reversal_record(self, original: PaymentRecord, actor: Actor, reason: str) -> PaymentRecord:
        now = datetime.now(timezone.utc)
        return PaymentRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=original.loan_id,
            amount=original.amount,
            method=original.method,
            payment_date=self.today(),
            recorded_by=actor.id,
            justification=reason,
            kind=PaymentKind.REVERSAL,
            reverses=original.id,
        )

    def _deposit_record(self, loan: Loan, actor: Actor, now: datetime) -> Optional[PaymentRecord]:
        if loan.product != LoanProduct.BIKE or not loan.deposit:
            return None
        return PaymentRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=loan.deposit,
            method=PaymentMethod.DEPOSIT,
            payment_date=loan.start_date,
            recorded_by=actor.id,
            justification=DEPOSIT_JUSTIFICATION,
        )

    def _replace_deposit(self, loan: Loan, actor: Actor, reason: str) -> None:
        """After a terms edit, swap the synthetic deposit row if it no longer matches"""
        payments = self._load_payments(loan.id)
        current = [p for p in effective_payments(payments) if p.is_deposit]
        expected = loan.deposit if loan.product == LoanProduct.BIKE else 0

        if expected:
            unchanged = (len(current) == 1 and current[0].amount == expected
                         and current[0].payment_date == loan.start_date)
        else:
            unchanged = not current

        if not unchanged:
            for deposit in current:
                reversal = self._reversal_record(deposit, actor, reason)
                self._insert_payment(reversal)
                payments.append(reversal)
            replacement = self._deposit_record(loan, actor, datetime.now(timezone.utc))
            if replacement:
                self._insert_payment(replacement)
                payments.append(replacement)
        self._rebuild(loan, payments)

    def _apply_schedule(self, loan: Loan, schedule: BuiltSchedule, terms: Dict[str, Any]) -> None:
        for installment in schedule.installments:
            installment.loan_id = loan.id
        loan.installments = schedule.installments
        loan.principal = schedule.principal
        loan.periodic_installment = schedule.periodic_installment
        if loan.product == LoanProduct.CASH:
            loan.annual_interest_rate_pct = schedule.annual_interest_rate_pct
            loan.term_months = len(schedule.installments)
        else:
            loan.sale_price = terms['sale_price']
            loan.deposit = terms.get('deposit') or 0
            loan.weekly_installment = schedule.weekly_installment
            loan.weeks_to_pay = schedule.weeks_to_pay
            loan.cost_price = terms.get('cost_price')
        loan.refresh_totals()

    def _merged_terms(self, loan: Loan, changes: Dict[str, Any]) -> Dict[str, Any]:
        if loan.product == LoanProduct.CASH:
            if set(changes) & set(BIKE_TERMS):
                raise InvalidTerms("Bike terms do not apply to a cash loan")
            terms = {'principal': loan.principal, 'annual_interest_rate_pct': loan.annual_interest_rate_pct,
                     'term_months': loan.term_months}
        else:
            if 'principal' in changes:
                raise InvalidTerms("The financed amount of a bike loan follows from sale price and deposit")
            terms = {'sale_price': loan.sale_price, 'deposit': loan.deposit,
                     'weekly_installment': loan.weekly_installment, 'cost_price': loan.cost_price}
            if 'target_weeks' in changes and 'weekly_installment' not in changes:
                terms.pop('weekly_installment')
        terms.update({k: v for k, v in changes.items() if k != 'start_date'})
        return terms

    @staticmethod
    def _editable_view(loan: Loan) -> Dict[str, Any]:
        return {
            'notes': loan.notes,
            'start_date': loan.start_date.isoformat(),
            'principal': loan.principal,
            'annual_interest_rate_pct': (str(loan.annual_interest_rate_pct)
                                         if loan.annual_interest_rate_pct is not None else None),
            'term_months': loan.term_months,
            'sale_price': loan.sale_price,
            'deposit': loan.deposit,
            'weekly_installment': loan.weekly_installment,
            'weeks_to_pay': loan.weeks_to_pay,
            'cost_price': loan.cost_price,
            'periodic_installment': loan.periodic_installment,
        }

    def _allocate_loan_number(self, loan_id: str) -> str:
        year = str(self.today().year)
        row = self.storage.load(self.loan_sequences_table, year)
        sequence = (row['last'] if row else 0) + 1
        self.storage.save(self.loan_sequences_table, year, {'id': year, 'last': sequence})

        loan_number = f"LN-{year}-{sequence:05d}"
        self.storage.insert(self.loan_numbers_table, loan_number, {'id': loan_number, 'loan_id': loan_id})
        return loan_number

    def _check_invariants(self, loan: Loan) -> None:
        expected = loan.sale_price - loan.deposit if loan.product == LoanProduct.BIKE else loan.principal
        if sum(i.principal_amount for i in loan.installments) != expected:
            raise InternalFailure(f"Schedule of loan {loan.id} does not sum to its financed amount")
        for previous, current in zip(loan.installments, loan.installments[1:]):
            if current.sequence != previous.sequence + 1 or current.due_date < previous.due_date:
                raise InternalFailure(f"Schedule of loan {loan.id} is out of order")
        owed = loan.scheduled_total - (loan.total_paid - loan.deposit_paid) + sum(
            i.accrued_penalty for i in loan.installments) - loan.penalty_paid
        if owed != loan.total_outstanding:
            raise InternalFailure(f"Outstanding balance of loan {loan.id} does not reconcile")
        if (loan.lifecycle_status == LoanStatus.COMPLETED) != (loan.total_outstanding == 0):
            raise InternalFailure(f"Loan {loan.id} status {loan.lifecycle_status.value} contradicts its balance")

    def _save_loan(self, loan: Loan, new: bool = False) -> None:
        """Persist the loan row and its installments with an optimistic version check"""
        self._check_invariants(loan)
        stored = self.storage.load(self.loans_table, loan.id)
        if new:
            if stored is not None:
                raise Conflict(f"Loan {loan.id} already exists")
            loan.version = 1
        else:
            if stored is None or stored['version'] != loan.version:
                raise Conflict(f"Loan {loan.id} was modified concurrently; reload and retry")
            loan.version += 1
            loan.updated_at = datetime.now(timezone.utc)

        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        for installment in loan.installments:
            self.storage.save(self.installments_table, installment.record_id, installment.to_dict())

    def _hydrate(self, row: Dict[str, Any]) -> Loan:
        installments = [Installment.from_dict(data)
                        for data in self.storage.find(self.installments_table, {'loan_id': row['id']})]
        return Loan.from_dict(row, installments)

    def _load_loan(self, loan_id: str) -> Loan:
        row = self.storage.load(self.loans_table, loan_id)
        if not row:
            raise NotFound(f"Loan {loan_id} not found")
        return self._hydrate(row)

    def _find_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        row = self.storage.load(self.payments_table, payment_id)
        return PaymentRecord.from_dict(row) if row else None

    def _load_payments(self, loan_id: str) -> List[PaymentRecord]:
        payments = [PaymentRecord.from_dict(row)
                    for row in self.storage.find(self.payments_table, {'loan_id': loan_id})]
        payments.sort(key=lambda p: p.sort_key)
        return payments

    def _load_assessments(self, loan_id: str) -> List[PenaltyAssessment]:
        assessments = [PenaltyAssessment.from_dict(row)
                       for row in self.storage.find(self.assessments_table, {'loan_id': loan_id})]
        assessments.sort(key=lambda a: a.sort_key)
        return assessments

    def _payment_for_receipt(self, receipt_number: str) -> Optional[PaymentRecord]:
        row = self.storage.load(self.receipts_table, receipt_number)
        return self._find_payment(row['payment_id']) if row else None

    def _insert_payment(self, payment: PaymentRecord) -> None:
        self.storage.insert(self.payments_table, payment.id, payment.to_dict())
        if payment.receipt_number:
            self.storage.insert(self.receipts_table, payment.receipt_number, {
                'id': payment.receipt_number,
                'payment_id': payment.id,
                'loan_id': payment.loan_id,
            })


"""
Loan Aggregate Module

Data model for the loan aggregate root and its children: schedule
installments, append-only payment records and penalty assessments. Every
amount is a whole number of Ugandan Shillings.
"""

from dataclasses import dataclass, field
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .storage import StorageRecord


class LoanProduct(Enum):
    """Loan products with distinct mathematics"""
    CASH = "cash"   # Monthly reducing-balance amortization
    BIKE = "bike"   # Weekly flat hire-purchase


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    DELINQUENT = "delinquent"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


class InstallmentStatus(Enum):
    """Installment repayment states"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class PaymentMethod(Enum):
    """Payment channels (wire-exact)"""
    CASH = "cash"
    MTN_MOMO = "mtn_momo"
    AIRTEL_MONEY = "airtel_money"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    DEPOSIT = "deposit"   # Reserved for the synthetic bike deposit


class PaymentKind(Enum):
    """Payment rows are either money received or a compensating reversal"""
    PAYMENT = "payment"
    REVERSAL = "reversal"


class ParBucket(Enum):
    """Portfolio-at-risk reporting buckets"""
    CURRENT = "current"
    PAR_1 = "1-29"
    PAR_30 = "30+"
    PAR_90 = "90+"


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Installment:
    """Single scheduled payment slot"""
    sequence: int
    due_date: date
    principal_amount: int
    interest_amount: int
    total_amount: int
    balance_after: int                  # Scheduled principal balance after this slot
    loan_id: str = ""
    paid_amount: int = 0                # Principal + interest received
    accrued_penalty: int = 0
    penalty_paid: int = 0
    penalty_assessed_on: Optional[date] = None
    status: InstallmentStatus = InstallmentStatus.PENDING

    def __post_init__(self):
        if self.total_amount != self.principal_amount + self.interest_amount:
            raise ValueError(f"Installment {self.sequence}: total {self.total_amount} does not equal "
                             f"principal {self.principal_amount} + interest {self.interest_amount}")

    @property
    def record_id(self) -> str:
        return f"{self.loan_id}:{self.sequence}"

    @property
    def penalty_due(self) -> int:
        return self.accrued_penalty - self.penalty_paid

    @property
    def base_due(self) -> int:
        return self.total_amount - self.paid_amount

    @property
    def amount_due(self) -> int:
        """Everything still owed on this slot, penalty included"""
        return self.base_due + self.penalty_due

    @property
    def is_satisfied(self) -> bool:
        return self.amount_due == 0

    @property
    def interest_paid(self) -> int:
        # Interest is settled before principal inside a slot
        return min(self.paid_amount, self.interest_amount)

    @property
    def principal_paid(self) -> int:
        return self.paid_amount - self.interest_paid

    def reset(self) -> None:
        """Drop all repayment state, keeping the scheduled amounts"""
        self.paid_amount = 0
        self.accrued_penalty = 0
        self.penalty_paid = 0
        self.penalty_assessed_on = None
        self.status = InstallmentStatus.PAID if self.total_amount == 0 else InstallmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.record_id,
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'principal_amount': self.principal_amount,
            'interest_amount': self.interest_amount,
            'total_amount': self.total_amount,
            'balance_after': self.balance_after,
            'paid_amount': self.paid_amount,
            'accrued_penalty': self.accrued_penalty,
            'penalty_paid': self.penalty_paid,
            'penalty_assessed_on': self.penalty_assessed_on.isoformat() if self.penalty_assessed_on else None,
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=data['principal_amount'],
            interest_amount=data['interest_amount'],
            total_amount=data['total_amount'],
            balance_after=data['balance_after'],
            paid_amount=data['paid_amount'],
            accrued_penalty=data['accrued_penalty'],
            penalty_paid=data['penalty_paid'],
            penalty_assessed_on=_date_or_none(data.get('penalty_assessed_on')),
            status=InstallmentStatus(data['status']),
        )


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root with terms, schedule and derived ledger fields"""
    loan_number: str
    client_id: str
    created_by: str
    product: LoanProduct
    principal: int                      # Financed amount (sale price less deposit for bikes)
    start_date: date
    periodic_installment: int           # Rounded EMI (cash) or weekly installment (bike)

    # Cash terms
    annual_interest_rate_pct: Optional[Decimal] = None
    term_months: Optional[int] = None

    # Bike terms
    sale_price: Optional[int] = None
    deposit: Optional[int] = None
    weekly_installment: Optional[int] = None
    weeks_to_pay: Optional[int] = None
    cost_price: Optional[int] = None

    # Lifecycle
    base_status: LoanStatus = LoanStatus.DRAFT       # Last administratively set status
    lifecycle_status: LoanStatus = LoanStatus.DRAFT  # Resolved status
    installments: List[Installment] = field(default_factory=list)

    # Derived ledger fields
    last_payment_date: Optional[date] = None
    outstanding_principal: int = 0
    outstanding_interest: int = 0
    outstanding_penalty: int = 0
    total_outstanding: int = 0
    total_paid: int = 0                 # Deposit plus principal and interest received
    deposit_paid: int = 0
    penalty_paid: int = 0
    credit_balance: int = 0
    days_in_arrears: int = 0
    par_bucket: ParBucket = ParBucket.CURRENT
    evaluated_on: Optional[date] = None  # As-of date of the derived fields; never moves back

    version: int = 0
    notes: str = ""

    @property
    def end_date(self) -> date:
        return self.installments[-1].due_date

    @property
    def scheduled_total(self) -> int:
        return sum(i.total_amount for i in self.installments)

    @property
    def has_repayments(self) -> bool:
        """True once any money beyond the deposit reached the ledger"""
        return (self.total_paid - self.deposit_paid) + self.penalty_paid + self.credit_balance > 0

    def refresh_totals(self) -> None:
        """Recompute the denormalised totals from the installments"""
        self.outstanding_principal = sum(i.principal_amount - i.principal_paid for i in self.installments)
        self.outstanding_interest = sum(i.interest_amount - i.interest_paid for i in self.installments)
        self.outstanding_penalty = sum(i.penalty_due for i in self.installments)
        self.total_outstanding = self.outstanding_principal + self.outstanding_interest + self.outstanding_penalty
        self.penalty_paid = sum(i.penalty_paid for i in self.installments)
        self.total_paid = self.deposit_paid + sum(i.paid_amount for i in self.installments)

    def snapshot(self) -> Dict[str, Any]:
        """Fields recorded in audit before/after snapshots"""
        return {
            'lifecycle_status': self.lifecycle_status.value,
            'total_paid': self.total_paid,
            'total_outstanding': self.total_outstanding,
            'outstanding_principal': self.outstanding_principal,
            'outstanding_interest': self.outstanding_interest,
            'outstanding_penalty': self.outstanding_penalty,
            'penalty_paid': self.penalty_paid,
            'credit_balance': self.credit_balance,
            'days_in_arrears': self.days_in_arrears,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
        }

    def ledger_state(self) -> Dict[str, Any]:
        """Everything the ledger derives, used to compare a loan with its replay"""
        state = self.snapshot()
        state.update({
            'deposit_paid': self.deposit_paid,
            'par_bucket': self.par_bucket.value,
            'evaluated_on': self.evaluated_on.isoformat() if self.evaluated_on else None,
            'installments': [i.to_dict() for i in self.installments],
        })
        return state

    def to_dict(self) -> Dict[str, Any]:
        """Loan row; installments are stored in their own table"""
        result = super().to_dict()
        del result['installments']
        result['product'] = self.product.value
        result['base_status'] = self.base_status.value
        result['lifecycle_status'] = self.lifecycle_status.value
        result['par_bucket'] = self.par_bucket.value
        result['start_date'] = self.start_date.isoformat()
        result['annual_interest_rate_pct'] = (
            str(self.annual_interest_rate_pct) if self.annual_interest_rate_pct is not None else None
        )
        for name in ('last_payment_date', 'evaluated_on'):
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], installments: List[Installment]) -> 'Loan':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['product'] = LoanProduct(data['product'])
        data['base_status'] = LoanStatus(data['base_status'])
        data['lifecycle_status'] = LoanStatus(data['lifecycle_status'])
        data['par_bucket'] = ParBucket(data['par_bucket'])
        data['start_date'] = date.fromisoformat(data['start_date'])
        if data.get('annual_interest_rate_pct') is not None:
            data['annual_interest_rate_pct'] = Decimal(data['annual_interest_rate_pct'])
        data['last_payment_date'] = _date_or_none(data.get('last_payment_date'))
        data['evaluated_on'] = _date_or_none(data.get('evaluated_on'))
        data['installments'] = sorted(installments, key=lambda i: i.sequence)
        return cls(**data)


@dataclass
class PaymentRecord(StorageRecord):
    """
    Append-only record of money received, or of a reversal of such a record.
    A reversal row references the original through `reverses`; the original
    row is never touched.
    """
    loan_id: str
    amount: int
    method: PaymentMethod
    payment_date: date
    recorded_by: str
    justification: str
    receipt_number: Optional[str] = None
    kind: PaymentKind = PaymentKind.PAYMENT
    reverses: Optional[str] = None

    @property
    def is_deposit(self) -> bool:
        return self.method == PaymentMethod.DEPOSIT

    @property
    def sort_key(self) -> Tuple[date, datetime, str]:
        """Canonical replay order"""
        return (self.payment_date, self.created_at, self.id)

    def body(self) -> Dict[str, Any]:
        """Fields compared when a receipt number is re-submitted"""
        return {
            'loan_id': self.loan_id,
            'amount': self.amount,
            'method': self.method.value,
            'payment_date': self.payment_date.isoformat(),
        }

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['method'] = self.method.value
        result['kind'] = self.kind.value
        result['payment_date'] = self.payment_date.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['method'] = PaymentMethod(data['method'])
        data['kind'] = PaymentKind(data['kind'])
        data['payment_date'] = date.fromisoformat(data['payment_date'])
        return cls(**data)


@dataclass
class PenaltyAssessment(StorageRecord):
    """An evaluation that accrued a late fee, kept so replay reproduces it"""
    loan_id: str
    assessed_on: date
    recorded_by: str

    @property
    def sort_key(self) -> Tuple[date, datetime, str]:
        return (self.assessed_on, self.created_at, self.id)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['assessed_on'] = self.assessed_on.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PenaltyAssessment':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['assessed_on'] = date.fromisoformat(data['assessed_on'])
        return cls(**data)

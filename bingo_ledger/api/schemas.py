"""
Pydantic request schemas and response shaping for the REST adapter

Amounts are whole UGX integers on the wire. Range checks belong to the
ledger so that they surface with their error kinds.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..audit import AuditEntry
from ..loans import LoanDraft, PostingResult
from ..models import Loan, PaymentRecord


# Client schemas
class RegisterClientRequest(BaseModel):
    first_name: str
    last_name: str
    phone: str
    id_number: str = Field(..., description="National identification number")
    email: Optional[str] = None
    justification: str


class UpdateKYCRequest(BaseModel):
    status: str = Field(..., description="KYC status (pending, verified, rejected)")
    notes: Optional[str] = None
    justification: str


# Loan schemas
class CreateLoanRequest(BaseModel):
    client_id: str
    product: str = Field(..., description="Loan product (cash, bike)")
    start_date: date
    principal: Optional[int] = None
    annual_interest_rate_pct: Optional[Decimal] = None
    term_months: Optional[int] = None
    sale_price: Optional[int] = None
    deposit: int = 0
    weekly_installment: Optional[int] = None
    target_weeks: Optional[int] = None
    cost_price: Optional[int] = None
    notes: str = ""
    justification: str

    def to_draft(self) -> LoanDraft:
        return LoanDraft(
            client_id=self.client_id,
            product=self.product,
            start_date=self.start_date,
            principal=self.principal,
            annual_interest_rate_pct=self.annual_interest_rate_pct,
            term_months=self.term_months,
            sale_price=self.sale_price,
            deposit=self.deposit,
            weekly_installment=self.weekly_installment,
            target_weeks=self.target_weeks,
            cost_price=self.cost_price,
            notes=self.notes,
        )


class EditLoanRequest(BaseModel):
    changes: Dict[str, Any]
    justification: str


class TransitionRequest(BaseModel):
    target_status: str = Field(..., description="pending, approved, disbursed, active, cancelled or defaulted")
    justification: str


class EvaluateRequest(BaseModel):
    at_date: Optional[date] = None
    justification: str


# Payment schemas
class PostPaymentRequest(BaseModel):
    amount: int
    method: str = Field(..., description="cash, mtn_momo, airtel_money, bank_transfer or cheque")
    payment_date: date
    receipt_number: Optional[str] = None
    justification: str


class EditPaymentRequest(BaseModel):
    amount: Optional[int] = None
    method: Optional[str] = None
    payment_date: Optional[date] = None
    receipt_number: Optional[str] = None
    justification: str


class ReversePaymentRequest(BaseModel):
    justification: str


# Responses
def loan_response(loan: Loan, include_schedule: bool = True) -> Dict[str, Any]:
    data = loan.to_dict()
    data['end_date'] = loan.end_date.isoformat()
    data['scheduled_total'] = loan.scheduled_total
    if include_schedule:
        data['schedule'] = [installment.to_dict() for installment in loan.installments]
    return data


def payment_response(payment: PaymentRecord) -> Dict[str, Any]:
    return payment.to_dict()


def posting_response(result: PostingResult) -> Dict[str, Any]:
    return {
        'loan': loan_response(result.loan),
        'payment': payment_response(result.payment),
        'overpayment': result.overpayment,
        'duplicate': result.duplicate,
        'allocation': result.application.to_dict() if result.application else None,
    }


def audit_response(entries: List[AuditEntry]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in entries]

"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..governance import Actor
from .dependencies import LedgerSystem, get_actor, get_ledger_system
from .schemas import (
    CreateLoanRequest, EditLoanRequest, EvaluateRequest, PostPaymentRequest, TransitionRequest,
    audit_response, loan_response, payment_response, posting_response,
)


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a loan in draft with its schedule"""
    loan = system.loans.create_loan(actor, request.to_draft(), request.justification)
    return loan_response(loan)


@router.get("")
def list_loans(
    client_id: Optional[str] = None,
    status: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List loans, optionally by client or lifecycle status"""
    loans = system.loans.list_loans(client_id=client_id, status=status)
    return {"loans": [loan_response(loan, include_schedule=False) for loan in loans]}


@router.get("/{loan_id}")
def get_loan(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return loan_response(system.loans.get_loan(loan_id))


@router.patch("/{loan_id}")
def edit_loan(
    loan_id: str,
    request: EditLoanRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Edit loan terms (draft/pending only) or notes"""
    loan = system.loans.edit_loan(actor, loan_id, request.changes, request.justification)
    return loan_response(loan)


@router.post("/{loan_id}/transitions")
def transition_loan(
    loan_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Move a loan to an administrative status"""
    loan = system.loans.transition_loan(actor, loan_id, request.target_status, request.justification)
    return loan_response(loan)


@router.post("/{loan_id}/evaluate")
def evaluate_loan(
    loan_id: str,
    request: EvaluateRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Evaluate arrears and penalties as of a date (today by default)"""
    loan = system.loans.evaluate_loan(loan_id, request.at_date, actor, request.justification)
    return loan_response(loan)


@router.get("/{loan_id}/schedule")
def get_schedule(
    loan_id: str,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Schedule verbatim plus summary figures"""
    return {
        "summary": system.loans.get_schedule_summary(loan_id, actor),
        "installments": [i.to_dict() for i in system.loans.get_schedule(loan_id)],
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def post_payment(
    loan_id: str,
    request: PostPaymentRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a payment; re-submitting a receipt number returns the original"""
    result = system.loans.post_payment(
        actor,
        loan_id,
        amount=request.amount,
        method=request.method,
        payment_date=request.payment_date,
        justification=request.justification,
        receipt_number=request.receipt_number,
    )
    if result.duplicate:
        return JSONResponse(status_code=status.HTTP_200_OK, content=jsonable_encoder(posting_response(result)))
    return posting_response(result)


@router.get("/{loan_id}/payments")
def list_payments(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return {"payments": [payment_response(p) for p in system.loans.list_payments(loan_id)]}


@router.get("/{loan_id}/audit")
def list_audit(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Audit entries ordered by (timestamp, sequence)"""
    return {"entries": audit_response(system.loans.list_audit(loan_id))}

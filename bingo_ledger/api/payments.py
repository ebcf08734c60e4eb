"""
Payment endpoints (admin corrections)
"""

from fastapi import APIRouter, Depends

from ..governance import Actor
from .dependencies import LedgerSystem, get_actor, get_ledger_system
from .schemas import EditPaymentRequest, ReversePaymentRequest, loan_response, posting_response


router = APIRouter()


@router.post("/{payment_id}/reversal")
def reverse_payment(
    payment_id: str,
    request: ReversePaymentRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Reverse a posted payment with a compensating record"""
    loan = system.loans.reverse_payment(actor, payment_id, request.justification)
    return loan_response(loan)


@router.put("/{payment_id}")
def edit_payment(
    payment_id: str,
    request: EditPaymentRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Correct a posted payment (reversal plus corrected repost)"""
    result = system.loans.edit_payment(
        actor,
        payment_id,
        request.justification,
        amount=request.amount,
        method=request.method,
        payment_date=request.payment_date,
        receipt_number=request.receipt_number,
    )
    return posting_response(result)

"""
Client endpoints
"""

from fastapi import APIRouter, Depends, status

from ..clients import KYCStatus
from ..errors import InvalidTerms
from ..governance import Actor
from .dependencies import LedgerSystem, get_actor, get_ledger_system
from .schemas import RegisterClientRequest, UpdateKYCRequest


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_client(
    request: RegisterClientRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Register a new client with KYC pending"""
    client = system.clients.register_client(
        actor,
        first_name=request.first_name,
        last_name=request.last_name,
        phone=request.phone,
        id_number=request.id_number,
        justification=request.justification,
        email=request.email,
    )
    return client.to_dict()


@router.get("/{client_id}")
def get_client(client_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.clients.get_client(client_id).to_dict()


@router.put("/{client_id}/kyc")
def update_kyc(
    client_id: str,
    request: UpdateKYCRequest,
    actor: Actor = Depends(get_actor),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Change the client's KYC status (admin and manager only)"""
    try:
        new_status = KYCStatus(request.status)
    except ValueError:
        raise InvalidTerms(f"Unknown KYC status '{request.status}'")
    client = system.clients.update_kyc(actor, client_id, new_status, request.justification, request.notes)
    return client.to_dict()

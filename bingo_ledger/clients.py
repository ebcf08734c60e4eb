"""
Client Register Module

Borrower profiles and their KYC status. Loans reference a client by id;
editing KYC is restricted to administrators and managers.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditAction, AuditTrail, changed_fields
from .errors import InvalidTerms, NotFound
from .governance import Actor, GovernanceGate, Operation
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^\+?\d{9,13}$')


class KYCStatus(Enum):
    """KYC verification status"""
    PENDING = "pending"     # Submitted, under review
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass
class Client(StorageRecord):
    """Borrower profile"""
    first_name: str
    last_name: str
    phone: str
    id_number: str          # National identification number
    created_by: str
    email: Optional[str] = None
    kyc_status: KYCStatus = KYCStatus.PENDING
    kyc_notes: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kyc_status'] = self.kyc_status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Client':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['kyc_status'] = KYCStatus(data['kyc_status'])
        return cls(**data)


class ClientRegistry:
    """
    Registers clients and manages their KYC status
    """

    def __init__(self, storage: StorageInterface, audit: AuditTrail, gate: GovernanceGate):
        self.storage = storage
        self.audit = audit
        self.gate = gate
        self.table_name = "clients"

    def register_client(
        self,
        actor: Actor,
        first_name: str,
        last_name: str,
        phone: str,
        id_number: str,
        justification: str,
        email: Optional[str] = None
    ) -> Client:
        """
        Register a new client with KYC pending

        Raises:
            AccessDenied: Role may not register clients
            MissingJustification: Justification too short
            InvalidTerms: Required profile fields missing or malformed
        """
        reason = self.gate.authorize(actor, Operation.REGISTER_CLIENT, justification, "client", "new")

        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        id_number = (id_number or "").strip().upper()
        phone = re.sub(r'[\s-]', '', phone or "")
        if not first_name or not last_name:
            raise InvalidTerms("Client first and last name are required")
        if not PHONE_PATTERN.match(phone):
            raise InvalidTerms(f"Invalid phone number: '{phone}'")
        if not id_number:
            raise InvalidTerms("Client id_number is required")

        now = datetime.now(timezone.utc)
        client = Client(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            id_number=id_number,
            created_by=actor.id,
            email=email,
        )

        with self.storage.atomic():
            if self.storage.find(self.table_name, {'id_number': id_number}):
                raise InvalidTerms(f"A client with id_number {id_number} already exists")
            self.storage.insert(self.table_name, client.id, client.to_dict())
            self.audit.append(
                action=AuditAction.CLIENT_REGISTERED,
                entity_type="client",
                entity_id=client.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                after={'full_name': client.full_name, 'kyc_status': client.kyc_status.value},
            )

        log_action(logger, "INFO", f"Registered client {client.id}", user_id=actor.id,
                   action=AuditAction.CLIENT_REGISTERED.value, resource=f"client:{client.id}")
        return client

    def get_client(self, client_id: str) -> Client:
        """
        Raises:
            NotFound: Unknown client id
        """
        data = self.storage.load(self.table_name, client_id)
        if not data:
            raise NotFound(f"Client {client_id} not found")
        return Client.from_dict(data)

    def list_clients(self, kyc_status: Optional[KYCStatus] = None) -> List[Client]:
        if kyc_status is not None:
            rows = self.storage.find(self.table_name, {'kyc_status': kyc_status.value})
        else:
            rows = self.storage.load_all(self.table_name)
        clients = [Client.from_dict(row) for row in rows]
        clients.sort(key=lambda c: c.created_at)
        return clients

    def update_kyc(
        self,
        actor: Actor,
        client_id: str,
        new_status: KYCStatus,
        justification: str,
        notes: Optional[str] = None
    ) -> Client:
        """
        Change a client's KYC status

        Raises:
            AccessDenied: Only administrators and managers may edit KYC
            MissingJustification: Justification too short
            NotFound: Unknown client id
        """
        reason = self.gate.authorize(actor, Operation.EDIT_CLIENT_KYC, justification, "client", client_id)

        with self.storage.atomic():
            client = self.get_client(client_id)
            before = {'kyc_status': client.kyc_status.value, 'kyc_notes': client.kyc_notes}

            client.kyc_status = new_status
            if notes is not None:
                client.kyc_notes = notes.strip()
            client.updated_at = datetime.now(timezone.utc)

            before, after = changed_fields(before, {'kyc_status': client.kyc_status.value,
                                                    'kyc_notes': client.kyc_notes})
            self.storage.save(self.table_name, client.id, client.to_dict())
            self.audit.append(
                action=AuditAction.CLIENT_KYC_UPDATED,
                entity_type="client",
                entity_id=client.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
                justification=reason,
                before=before,
                after=after,
            )

        log_action(logger, "INFO", f"KYC of client {client_id} set to {new_status.value}", user_id=actor.id,
                   action=AuditAction.CLIENT_KYC_UPDATED.value, resource=f"client:{client_id}")
        return client

"""
Request dependencies: the wired ledger system and the verified caller
"""

from typing import Optional

from fastapi import Header

from ..audit import AuditTrail
from ..clients import ClientRegistry
from ..config import BingoConfig, get_config
from ..governance import Actor, GovernanceGate
from ..loans import LoanService
from ..storage import StorageInterface, create_storage


class LedgerSystem:
    """Storage, audit trail and services wired together"""

    def __init__(self, storage: Optional[StorageInterface] = None, config: Optional[BingoConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config)
        self.audit_trail = AuditTrail(self.storage)
        gate = GovernanceGate(self.audit_trail, self.config.justification_min_length)
        self.clients = ClientRegistry(self.storage, self.audit_trail, gate)
        self.loans = LoanService(self.storage, self.audit_trail, self.config, self.clients)


# Global ledger system instance, created on first request
ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global ledger_system
    if ledger_system is None:
        ledger_system = LedgerSystem()
    return ledger_system


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
) -> Actor:
    """
    Caller identity and role as verified by the gateway in front of the API

    Raises:
        AccessDenied: Identity missing or role unknown
    """
    return Actor.of(x_actor_id or "", x_actor_role or "")

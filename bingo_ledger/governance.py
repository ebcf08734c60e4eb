"""
Governance Gate Module

Admission control for every state-changing operation: the role matrix and
the written-justification rule. The gate does not authenticate; the actor's
identity and role arrive already verified by the transport layer.

Denials are audited as GOVERNANCE_DENIED and committed on their own, so they
survive the rollback of the operation that was refused.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .audit import AuditAction, AuditTrail
from .errors import AccessDenied, MissingJustification
from .logging_config import log_action
from .models import LoanStatus

logger = logging.getLogger(__name__)


class Role(Enum):
    """Caller roles"""
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    GUEST = "guest"
    SYSTEM = "system"   # Scheduled jobs; evaluation only


class Operation(Enum):
    """Gated operations"""
    # Loan operations
    CREATE_LOAN = "create_loan"
    CREATE_LARGE_LOAN = "create_large_loan"
    EDIT_LOAN = "edit_loan"
    SUBMIT_LOAN = "submit_loan"
    APPROVE_LOAN = "approve_loan"
    DISBURSE_LOAN = "disburse_loan"
    ACTIVATE_LOAN = "activate_loan"
    CANCEL_LOAN = "cancel_loan"
    DEFAULT_LOAN = "default_loan"
    EVALUATE_LOAN = "evaluate_loan"

    # Payment operations
    POST_PAYMENT = "post_payment"
    EDIT_PAYMENT = "edit_payment"
    REVERSE_PAYMENT = "reverse_payment"

    # Client operations
    REGISTER_CLIENT = "register_client"
    EDIT_CLIENT_KYC = "edit_client_kyc"


_STAFF_OPERATIONS = frozenset({
    Operation.CREATE_LOAN,
    Operation.SUBMIT_LOAN,
    Operation.ACTIVATE_LOAN,
    Operation.EVALUATE_LOAN,
    Operation.POST_PAYMENT,
    Operation.REGISTER_CLIENT,
})

_MANAGER_OPERATIONS = _STAFF_OPERATIONS | frozenset({
    Operation.EDIT_LOAN,
    Operation.APPROVE_LOAN,
    Operation.DISBURSE_LOAN,
    Operation.EDIT_CLIENT_KYC,
})

ADMISSION_MATRIX: Dict[Role, FrozenSet[Operation]] = {
    Role.ADMIN: frozenset(Operation),
    Role.MANAGER: _MANAGER_OPERATIONS,
    Role.STAFF: _STAFF_OPERATIONS,
    Role.GUEST: frozenset(),
    Role.SYSTEM: frozenset({Operation.EVALUATE_LOAN}),
}

# Operation gating each administrative transition target
TRANSITION_OPERATIONS: Dict[LoanStatus, Operation] = {
    LoanStatus.PENDING: Operation.SUBMIT_LOAN,
    LoanStatus.APPROVED: Operation.APPROVE_LOAN,
    LoanStatus.DISBURSED: Operation.DISBURSE_LOAN,
    LoanStatus.ACTIVE: Operation.ACTIVATE_LOAN,
    LoanStatus.CANCELLED: Operation.CANCEL_LOAN,
    LoanStatus.DEFAULTED: Operation.DEFAULT_LOAN,
}


@dataclass(frozen=True)
class Actor:
    """Verified caller"""
    id: str
    role: Role

    @classmethod
    def of(cls, actor_id: str, role: str) -> 'Actor':
        """
        Build an actor from transport values

        Raises:
            AccessDenied: If the identity is missing or the role is unknown
        """
        if not actor_id or not str(actor_id).strip():
            raise AccessDenied("Caller identity is missing")
        try:
            parsed = Role((role or "").strip().lower())
        except ValueError:
            raise AccessDenied(f"Unknown role '{role}'")
        if parsed == Role.SYSTEM:
            raise AccessDenied("The system role is internal")
        return cls(id=str(actor_id).strip(), role=parsed)


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)
SYSTEM_JUSTIFICATION = "scheduled delinquency evaluation"


def is_permitted(role: Role, operation: Operation) -> bool:
    return operation in ADMISSION_MATRIX.get(role, frozenset())


class GovernanceGate:
    """
    Enforces the admission matrix and the justification rule
    """

    def __init__(self, audit: AuditTrail, justification_min_length: int = 5):
        self.audit = audit
        self.justification_min_length = justification_min_length

    def authorize(
        self,
        actor: Optional[Actor],
        operation: Operation,
        justification: Optional[str],
        entity_type: str,
        entity_id: str
    ) -> str:
        """
        Admit an operation or refuse it

        The role check runs first so that a refused caller is always audited,
        whatever they wrote as a reason.

        Args:
            actor: Verified caller
            operation: What the caller wants to do
            justification: Reason supplied by the caller
            entity_type: Kind of entity targeted ("loan", "payment", "client")
            entity_id: ID of the targeted entity

        Returns:
            The trimmed justification

        Raises:
            AccessDenied: Role not permitted (a GOVERNANCE_DENIED entry is committed)
            MissingJustification: Justification absent or too short
        """
        self.admit(actor, operation, justification, entity_type, entity_id)
        return self.check_justification(justification)

    def admit(
        self,
        actor: Optional[Actor],
        operation: Operation,
        justification: Optional[str],
        entity_type: str,
        entity_id: str
    ) -> None:
        """
        Role check only

        Raises:
            AccessDenied: Role not permitted (a GOVERNANCE_DENIED entry is committed)
        """
        if actor is None or not is_permitted(actor.role, operation):
            self._deny(actor, operation, justification, entity_type, entity_id)
            role = actor.role.value if actor else "anonymous"
            raise AccessDenied(f"Role '{role}' may not {operation.value.replace('_', ' ')}")

    def check_justification(self, justification: Optional[str]) -> str:
        """
        Raises:
            MissingJustification: If the trimmed text is shorter than the minimum
        """
        if not isinstance(justification, str):
            raise MissingJustification("A written justification is required")
        text = justification.strip()
        if len(text) < self.justification_min_length:
            raise MissingJustification(
                f"Justification must be at least {self.justification_min_length} characters"
            )
        return text

    def _deny(self, actor: Optional[Actor], operation: Operation, justification: Optional[str],
              entity_type: str, entity_id: str) -> None:
        actor_id = actor.id if actor else ""
        actor_role = actor.role.value if actor else ""
        self.audit.append(
            action=AuditAction.GOVERNANCE_DENIED,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            actor_role=actor_role,
            justification=justification if isinstance(justification, str) else "",
            metadata={'operation': operation.value},
        )
        log_action(
            logger, "WARNING", f"Denied {operation.value} on {entity_type} {entity_id}",
            user_id=actor_id, action=AuditAction.GOVERNANCE_DENIED.value,
            resource=f"{entity_type}:{entity_id}",
        )

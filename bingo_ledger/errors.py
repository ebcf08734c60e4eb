"""
Error Kinds

Every failure surfaced by the ledger carries a stable error-kind code and a
human message. Only Conflict and InternalFailure are worth retrying.
"""

from typing import Any, Dict


class LedgerError(Exception):
    """Base class for all typed ledger errors"""

    code = "LEDGER_ERROR"
    retriable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidTerms(LedgerError):
    """Schedule inputs violate their constraints"""
    code = "INVALID_TERMS"


class InvalidPayment(LedgerError):
    """Amount, date or method of a payment is not acceptable"""
    code = "INVALID_PAYMENT"


class MissingJustification(LedgerError):
    """Justification absent or shorter than the minimum"""
    code = "MISSING_JUSTIFICATION"


class AccessDenied(LedgerError):
    """The role matrix rejected the operation"""
    code = "ACCESS_DENIED"


class IllegalTransition(LedgerError):
    """Target lifecycle status is unreachable from the current one"""
    code = "ILLEGAL_TRANSITION"


class Conflict(LedgerError):
    """Idempotency key reused with a different body, or a concurrent write"""
    code = "CONFLICT"
    retriable = True


class NotFound(LedgerError):
    """Loan, payment or client id unknown"""
    code = "NOT_FOUND"


class InternalFailure(LedgerError):
    """Persistence or invariant check failed; the transaction was rolled back"""
    code = "INTERNAL_FAILURE"
    retriable = True

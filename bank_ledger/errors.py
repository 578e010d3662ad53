"""
Ledger error taxonomy.

Every failure inside a unit of work is raised as one of these; the unit
rolls back and the error reaches the caller unchanged. ``kind`` is stable
and meant for the calling layer, ``detail`` is the human-readable message.
"""

from typing import Any, Dict, Optional


class BankingError(Exception):
    """Base exception for ledger operations"""

    kind = "banking_error"
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.detail, "retryable": self.retryable}


class NotFound(BankingError):
    """Account, customer, loan or EMI does not exist"""
    kind = "not_found"


class AccountInactive(BankingError):
    """Account status is not Active"""
    kind = "account_inactive"


class InsufficientFunds(BankingError):
    """Locked balance is lower than the requested amount"""
    kind = "insufficient_funds"


class InvalidOperation(BankingError):
    """Request is malformed for the operation, e.g. a self-transfer"""
    kind = "invalid_operation"


class InvalidState(BankingError):
    """Lifecycle transition not allowed from the current status"""
    kind = "invalid_state"

    def __init__(self, detail: str, current_status: Optional[str] = None):
        super().__init__(detail)
        self.current_status = current_status


class CalculationError(BankingError):
    """EMI formula is degenerate for the given inputs"""
    kind = "calculation_error"


class AlreadyPaid(BankingError):
    """Installment is already settled"""
    kind = "already_paid"


class AmountMismatch(BankingError):
    """Payment does not cover the amount due"""
    kind = "amount_mismatch"


class Unauthorized(BankingError):
    """Principal lacks the capability or does not own the account"""
    kind = "unauthorized"


class Forbidden(BankingError):
    """Resource belongs to a different customer"""
    kind = "forbidden"


class LockTimeout(BankingError):
    """Row lock could not be acquired in time"""
    kind = "lock_timeout"
    retryable = True


class ConcurrencyConflict(BankingError):
    """Store aborted the unit of work, e.g. on deadlock"""
    kind = "concurrency_conflict"
    retryable = True

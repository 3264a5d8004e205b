from typing import Any, Dict


class LedgerError(Exception):
    """Base class for every failure the ledger surfaces to its callers.

    ``code`` is stable and meant for transport layers mapping errors to
    responses; ``details`` carries the values that caused the failure.
    """

    code = "ledger_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(LedgerError):
    code = "validation_error"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class ImmutableTransfer(ValidationError):
    code = "immutable_transfer"


class NotFound(LedgerError):
    code = "not_found"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"


class AlreadyReconciled(LedgerError):
    code = "already_reconciled"


class ExceedsBalance(LedgerError):
    code = "exceeds_balance"


class RateNotFound(LedgerError):
    code = "rate_not_found"


class AccountMismatch(LedgerError):
    code = "account_mismatch"


class AccountInUse(LedgerError):
    code = "account_in_use"


class UnknownProvider(LedgerError):
    code = "unknown_provider"

"""
Error Taxonomy Module

Defines the error kinds of the ledger, the exceptions raised for caller-input
and persistence failures, and the typed outcomes returned for expected
business refusals (insufficient funds, unknown recipient, etc.).
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Every way a ledger operation can fail"""
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_OPERATION = "invalid_operation"
    CREDENTIAL_MISMATCH = "credential_mismatch"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    PERSISTENCE_ERROR = "persistence_error"
    TRANSFER_FAILED = "transfer_failed"              # compensated, books consistent
    TRANSFER_UNRECONCILED = "transfer_unreconciled"  # operator must reconcile


_MESSAGES = {
    ErrorKind.INVALID_AMOUNT: "Enter a positive amount with no fractions of the smallest currency unit.",
    ErrorKind.INSUFFICIENT_FUNDS: "Insufficient funds. Enter a smaller amount.",
    ErrorKind.RECIPIENT_NOT_FOUND: "Recipient account not found. Check the account number and try again.",
    ErrorKind.ACCOUNT_NOT_FOUND: "Account not found. Please sign in again.",
    ErrorKind.INVALID_OPERATION: "That operation is not allowed. Check your input and try again.",
    ErrorKind.CREDENTIAL_MISMATCH: "Incorrect PIN. Please try again.",
    ErrorKind.CONCURRENT_MODIFICATION: "Your account changed while this request was running. Refresh and try again.",
    ErrorKind.PERSISTENCE_ERROR: "The ledger is temporarily unavailable. No retry was attempted; check your balance before trying again.",
    ErrorKind.TRANSFER_FAILED: "Transfer failed and your funds were returned. You may try again.",
    ErrorKind.TRANSFER_UNRECONCILED: (
        "TRANSFER FAILED - FUNDS IN AN INDETERMINATE STATE. Do not retry. "
        "Contact support quoting the transfer reference."
    ),
}


def describe(kind: ErrorKind) -> str:
    """Actionable user-facing message for an error kind"""
    return _MESSAGES[kind]


class LedgerError(Exception):
    """Base class for all ledger exceptions"""

    kind = ErrorKind.PERSISTENCE_ERROR

    @property
    def user_message(self) -> str:
        return describe(self.kind)


class InvalidAmount(LedgerError, ValueError):
    """Non-positive, non-finite, over-precision or over-limit amount"""
    kind = ErrorKind.INVALID_AMOUNT


class InvalidOperation(LedgerError, ValueError):
    """Self-transfer, credential policy violation and similar input errors"""
    kind = ErrorKind.INVALID_OPERATION


class AccountNotFound(LedgerError, LookupError):
    """Bound account does not exist (anymore)"""
    kind = ErrorKind.ACCOUNT_NOT_FOUND

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class PersistenceError(LedgerError):
    """Underlying store failure, including timeouts"""
    kind = ErrorKind.PERSISTENCE_ERROR


class RollbackError(PersistenceError):
    """A store transaction could not be rolled back"""


class TransferFailed(LedgerError):
    """
    Transfer failed after the sender was debited.

    ``reconciled`` is True when the debit was undone and the books are
    consistent. False means funds are in an indeterminate state and the
    transfer record needs operator reconciliation.
    """

    def __init__(self, transfer_id: str, reconciled: bool, message: str):
        super().__init__(message)
        self.transfer_id = transfer_id
        self.reconciled = reconciled

    @property
    def kind(self) -> ErrorKind:
        if self.reconciled:
            return ErrorKind.TRANSFER_FAILED
        return ErrorKind.TRANSFER_UNRECONCILED


class Outcome(Enum):
    """Result of an operation that completed without raising"""
    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    CREDENTIAL_MISMATCH = "credential_mismatch"
    CONCURRENT_MODIFICATION = "concurrent_modification"

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        if self is Outcome.SUCCESS:
            return None
        return ErrorKind(self.value)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an engine operation plus the engine balance afterwards"""
    outcome: Outcome
    balance: Decimal
    transfer_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def message(self) -> Optional[str]:
        kind = self.outcome.error_kind
        return describe(kind) if kind else None

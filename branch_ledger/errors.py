"""
Ledger Error Taxonomy

Typed exceptions for every failure the ledger engine and approval resolver
can surface. Callers catch by type and read ``code`` and the structured
attributes instead of parsing messages.

    LedgerError
    +-- ValidationError
    +-- PermissionDenied
    +-- NotFound
    |   +-- AccountNotFound
    |   +-- TransactionNotFound
    +-- InsufficientFunds
    |   +-- InsufficientFundsAtApproval
    +-- RuleViolation
    +-- AlreadyProcessed
    +-- Conflict
    +-- PersistenceFailure
    |   +-- DuplicateReference
    +-- ConsistencyFailure

Only ``PersistenceFailure`` is safe to retry automatically. A
``ConsistencyFailure`` means a ledger record and the balances it justifies
may have diverged; it is escalated at CRITICAL severity by the component
that raises it.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""
    code: str = "LEDGER_ERROR"
    retryable: bool = False
    critical: bool = False


class ValidationError(LedgerError):
    """Malformed or out-of-range input; correct the request and retry"""
    code = "VALIDATION_ERROR"


class PermissionDenied(LedgerError):
    """The principal lacks the capability required for the operation"""
    code = "PERMISSION_DENIED"

    def __init__(self, message: str, principal_id: Optional[str] = None,
                 capability: Optional[str] = None):
        self.principal_id = principal_id
        self.capability = capability
        super().__init__(message)


class NotFound(LedgerError):
    """A referenced account or transaction does not exist"""
    code = "NOT_FOUND"


class AccountNotFound(NotFound):
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str, role: str = "Account"):
        self.account_id = account_id
        super().__init__(f"{role} {account_id} not found")


class TransactionNotFound(NotFound):
    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class InsufficientFunds(LedgerError):
    """Available balance does not cover the requested debit"""
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, available: Decimal, requested: Decimal,
                 message: Optional[str] = None):
        self.account_id = account_id
        self.available = available
        self.requested = requested
        super().__init__(
            message or
            f"Insufficient funds in account {account_id}: "
            f"available {available}, requested {requested}"
        )


class InsufficientFundsAtApproval(InsufficientFunds):
    """Source account can no longer cover a pending debit when it is approved"""
    code = "INSUFFICIENT_FUNDS_AT_APPROVAL"

    def __init__(self, transaction_id: str, account_id: str,
                 available: Decimal, requested: Decimal):
        self.transaction_id = transaction_id
        super().__init__(
            account_id, available, requested,
            f"Transaction {transaction_id} cannot be approved: account "
            f"{account_id} has available {available}, requires {requested}"
        )


class RuleViolation(LedgerError):
    """A business rule forbids the operation (e.g. external transfer from Savings)"""
    code = "RULE_VIOLATION"


class AlreadyProcessed(LedgerError):
    """The transaction has already been approved or rejected"""
    code = "ALREADY_PROCESSED"

    def __init__(self, transaction_id: str, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction {transaction_id} is already {status}")


class Conflict(LedgerError):
    """Another resolver transitioned the transaction first"""
    code = "CONFLICT"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} was resolved concurrently by another principal"
        )


class PersistenceFailure(LedgerError):
    """A store call errored or timed out"""
    code = "PERSISTENCE_FAILURE"
    retryable = True


class DuplicateReference(PersistenceFailure):
    """The store rejected a transaction reference that already exists"""
    code = "DUPLICATE_REFERENCE"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Reference {reference} already exists")


class ConsistencyFailure(LedgerError):
    """
    A multi-step balance change failed part-way.

    The enclosing unit of work is rolled back before this is raised, but the
    failure still indicates a violated ledger invariant and must reach an
    operator.
    """
    code = "CONSISTENCY_FAILURE"
    critical = True

    def __init__(self, message: str, transaction_id: Optional[str] = None,
                 account_ids: tuple = ()):
        self.transaction_id = transaction_id
        self.account_ids = tuple(account_ids)
        super().__init__(message)

"""
Transaction Records Module

Transaction records that justify every balance change, the approval status
state machine, and the transaction store. References are unique by store
constraint, and status resolution is a compare-and-swap so a record is
resolved at most once.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional
from enum import Enum

from .storage import StorageInterface, StorageRecord, DuplicateKeyError, persistence_guard
from .errors import (
    DuplicateReference, PersistenceFailure, TransactionNotFound, ValidationError
)


class TransactionKind(Enum):
    """Kinds of ledger transactions"""
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER = "Transfer"


class ApprovalStatus(Enum):
    """
    Approval state machine: PENDING -> APPROVED | REJECTED.
    Both outcomes are terminal.
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: 'ApprovalStatus') -> bool:
        """Check if ``target`` is a legal next state"""
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[ApprovalStatus, FrozenSet[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({ApprovalStatus.APPROVED, ApprovalStatus.REJECTED}),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
}


@dataclass
class TransactionRecord(StorageRecord):
    """
    Auditable record of one deposit, withdrawal or transfer.

    Leg invariants:
      Deposit     destination account only
      Withdrawal  source account only
      Transfer    source account plus exactly one of destination account
                  or destination routing code
    """
    kind: TransactionKind
    amount: Decimal
    description: str
    reference: str
    requires_approval: bool
    approval_status: ApprovalStatus
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    destination_routing_code: Optional[str] = None
    created_by: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValidationError("Transaction amount must be positive")

        if self.kind == TransactionKind.DEPOSIT:
            if self.source_account_id or not self.destination_account_id or self.destination_routing_code:
                raise ValidationError("Deposit must credit exactly one destination account")
        elif self.kind == TransactionKind.WITHDRAWAL:
            if not self.source_account_id or self.destination_account_id or self.destination_routing_code:
                raise ValidationError("Withdrawal must debit exactly one source account")
        elif self.kind == TransactionKind.TRANSFER:
            if not self.source_account_id:
                raise ValidationError("Transfer requires a source account")
            if bool(self.destination_account_id) == bool(self.destination_routing_code):
                raise ValidationError(
                    "Transfer requires exactly one of destination account or routing code"
                )

    @property
    def is_pending(self) -> bool:
        return self.approval_status == ApprovalStatus.PENDING

    @property
    def is_external_transfer(self) -> bool:
        """Money leaves the ledger; no local account is credited"""
        return self.kind == TransactionKind.TRANSFER and not self.destination_account_id

    @property
    def display_kind(self) -> str:
        if self.kind == TransactionKind.TRANSFER:
            return "Transfer (External)" if self.is_external_transfer else "Transfer (Internal)"
        return self.kind.value

    @property
    def display_destination(self) -> str:
        if self.destination_account_id:
            return self.destination_account_id
        if self.destination_routing_code:
            return f"Ext ({self.destination_routing_code})"
        return "N/A"

    def involves(self, account_id: str) -> bool:
        return account_id in (self.source_account_id, self.destination_account_id)


class TransactionStore:
    """
    Durable storage of transaction records.

    Records are immutable once created apart from the single
    PENDING -> terminal status transition made by ``set_status``.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"

    def create(self, record: TransactionRecord) -> str:
        """
        Persist a new record

        Returns:
            The record id

        Raises:
            DuplicateReference: If the reference is already taken
            ValidationError: If the initial status does not match ``requires_approval``
            PersistenceFailure: If the store call fails
        """
        expected = ApprovalStatus.PENDING if record.requires_approval else ApprovalStatus.APPROVED
        if record.approval_status != expected:
            raise ValidationError(
                f"New record must start {expected.value} when requires_approval={record.requires_approval}"
            )

        with persistence_guard("create transaction"):
            try:
                self.storage.insert(
                    self.table_name, record.id, self._transaction_to_dict(record),
                    unique_fields=("reference",)
                )
            except DuplicateKeyError as e:
                if e.field == "reference":
                    raise DuplicateReference(record.reference) from e
                raise PersistenceFailure(f"Transaction id {record.id} already exists") from e
        return record.id

    def get(self, transaction_id: str) -> TransactionRecord:
        """
        Get a record by id

        Raises:
            TransactionNotFound: If no such record exists
        """
        with persistence_guard("load transaction"):
            data = self.storage.load(self.table_name, str(transaction_id))
        if not data:
            raise TransactionNotFound(str(transaction_id))
        return self._transaction_from_dict(data)

    def get_by_reference(self, reference: str) -> Optional[TransactionRecord]:
        """Get a record by its reference, or None"""
        with persistence_guard("find transaction"):
            rows = self.storage.find(self.table_name, {"reference": reference})
        return self._transaction_from_dict(rows[0]) if rows else None

    def list_by_account(self, account_id: str) -> List[TransactionRecord]:
        """Records where the account is source or destination, most recent first"""
        records = [r for r in self._load_all() if r.involves(str(account_id))]
        records.reverse()
        return records

    def list_pending(self) -> List[TransactionRecord]:
        """Records awaiting resolution, oldest first"""
        with persistence_guard("list pending transactions"):
            rows = self.storage.find(
                self.table_name, {"approval_status": ApprovalStatus.PENDING.value}
            )
        records = [self._transaction_from_dict(data) for data in rows]
        records.sort(key=lambda r: r.created_at)
        return records

    def set_status(self, transaction_id: str, new_status: ApprovalStatus,
                   resolving_principal_id: str) -> bool:
        """
        Resolve a pending record as a compare-and-swap on its status.

        Returns:
            True if applied, False if the record was no longer pending
        """
        if not ApprovalStatus.PENDING.can_transition_to(new_status):
            raise ValidationError(f"Cannot resolve a transaction to {new_status.value}")

        with persistence_guard("update transaction status"):
            return self.storage.update_if(
                self.table_name,
                str(transaction_id),
                expected={"approval_status": ApprovalStatus.PENDING.value},
                changes={
                    "approval_status": new_status.value,
                    "resolved_by": resolving_principal_id,
                    "resolved_at": datetime.now(timezone.utc).isoformat()
                }
            )

    def _load_all(self) -> List[TransactionRecord]:
        with persistence_guard("load transactions"):
            rows = self.storage.load_all(self.table_name)
        records = [self._transaction_from_dict(data) for data in rows]
        records.sort(key=lambda r: r.created_at)
        return records

    def _transaction_to_dict(self, record: TransactionRecord) -> Dict:
        """Convert TransactionRecord to dictionary for storage"""
        result = record.to_dict()
        result['kind'] = record.kind.value
        result['approval_status'] = record.approval_status.value
        if record.resolved_at:
            result['resolved_at'] = record.resolved_at.isoformat()
        return result

    def _transaction_from_dict(self, data: Dict) -> TransactionRecord:
        """Convert dictionary to TransactionRecord"""
        resolved_at = None
        if data.get('resolved_at'):
            resolved_at = datetime.fromisoformat(data['resolved_at'])

        return TransactionRecord(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            kind=TransactionKind(data['kind']),
            amount=Decimal(data['amount']),
            description=data.get('description') or "",
            reference=data['reference'],
            requires_approval=data['requires_approval'],
            approval_status=ApprovalStatus(data['approval_status']),
            source_account_id=data.get('source_account_id'),
            destination_account_id=data.get('destination_account_id'),
            destination_routing_code=data.get('destination_routing_code'),
            created_by=data.get('created_by'),
            resolved_by=data.get('resolved_by'),
            resolved_at=resolved_at
        )

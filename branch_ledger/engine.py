"""
Ledger Engine Module

Funds movement for staff sessions: deposits, withdrawals and transfers.
Each operation authorizes the principal, validates the request, decides
whether dual control applies, writes the transaction record and, when no
approval is needed, applies the balance change. Record creation, the funds
check and every balance leg run in one storage unit of work, so concurrent
callers cannot interleave between check and apply and a failed leg leaves
nothing behind.

A Teller's action at or above the approval threshold is held as a pending
record with no balance effect until a Manager or Admin resolves it (see
``approvals.ApprovalResolver``). Funds are not checked for held actions;
the check happens again at approval time.
"""

from contextlib import contextmanager
from decimal import Decimal
from datetime import datetime, timezone
from typing import List, Optional
import uuid

from .accounts import Account, AccountKind, AccountStore, validate_routing_code
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .errors import (
    AccountNotFound, ConsistencyFailure, DuplicateReference, InsufficientFunds, PermissionDenied,
    PersistenceFailure, RuleViolation, ValidationError
)
from .logging_config import get_logger, log_action
from .money import AmountLike, ZERO, to_amount
from .posting import BalancePoster
from .rbac import AuthorizationGuard, Capability, Principal, Role
from .references import ReferenceAllocator
from .storage import persistence_guard
from .transactions import (
    ApprovalStatus, TransactionKind, TransactionRecord, TransactionStore
)


class LedgerEngine:
    """
    Validates and records funds movements, applying them immediately or
    holding them for approval.

    Stateless between calls: all state lives in the account and transaction
    stores, so any number of engines may share one storage backend.
    """

    def __init__(
        self,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        audit_trail: AuditTrail,
        guard: Optional[AuthorizationGuard] = None,
        reference_allocator: Optional[ReferenceAllocator] = None,
        config: Optional[LedgerConfig] = None,
        poster: Optional[BalancePoster] = None
    ):
        if account_store.storage is not transaction_store.storage:
            raise ValueError("Account and transaction stores must share one storage backend")

        config = config or get_config()
        self.accounts = account_store
        self.transactions = transaction_store
        self.audit_trail = audit_trail
        self.storage = account_store.storage
        self.guard = guard or AuthorizationGuard()
        self.references = reference_allocator or ReferenceAllocator(config.reference_length)
        self.reference_max_attempts = config.reference_max_attempts
        self.approval_threshold = to_amount(config.approval_threshold, "approval_threshold")
        self.poster = poster or BalancePoster(account_store, audit_trail)
        self.logger = get_logger("branch_ledger.engine")

    # Policy

    def requires_approval(self, principal: Principal, amount: Decimal) -> bool:
        """Tellers need sign-off at or above the threshold; Managers and Admins never do"""
        return principal.role == Role.TELLER and amount >= self.approval_threshold

    # Funds movement

    def deposit(self, account_id: str, amount: AmountLike, description: str,
                principal: Principal) -> TransactionRecord:
        """
        Credit an account

        Returns:
            The created record, APPROVED and applied or PENDING and held

        Raises:
            PermissionDenied, ValidationError, AccountNotFound,
            PersistenceFailure, ConsistencyFailure
        """
        principal = self._authorize(principal, Capability.LEDGER_WRITE, "deposit")
        amount = self._validate_amount(amount)
        held = self.requires_approval(principal, amount)

        with self._unit_of_work("deposit", principal):
            account = self.accounts.get(account_id)
            record = self._create_record(
                principal, TransactionKind.DEPOSIT, amount, description, held,
                destination_account_id=account.id
            )
            if not held:
                self.poster.post(record, principal.id)

        self._log_movement("deposit", record, principal)
        return record

    def withdraw(self, account_id: str, amount: AmountLike, description: str,
                 principal: Principal) -> TransactionRecord:
        """
        Debit an account

        Raises:
            InsufficientFunds: If applied immediately and available balance is short;
                no record is created
        """
        principal = self._authorize(principal, Capability.LEDGER_WRITE, "withdraw")
        amount = self._validate_amount(amount)
        held = self.requires_approval(principal, amount)

        with self._unit_of_work("withdraw", principal):
            account = self.accounts.get(account_id)
            if not held:
                self._check_funds(account, amount)
            record = self._create_record(
                principal, TransactionKind.WITHDRAWAL, amount, description, held,
                source_account_id=account.id
            )
            if not held:
                self.poster.post(record, principal.id)

        self._log_movement("withdraw", record, principal)
        return record

    def transfer(
        self,
        source_account_id: str,
        destination_account_id: Optional[str],
        destination_routing_code: Optional[str],
        amount: AmountLike,
        description: str,
        principal: Principal
    ) -> TransactionRecord:
        """
        Move funds to another ledger account (internal) or out of the ledger
        to another bank's routing code (external).

        Exactly one of ``destination_account_id`` and
        ``destination_routing_code`` must be given.

        Raises:
            ValidationError: Both or neither destination given, or source equals destination
            AccountNotFound: Source or internal destination missing
            RuleViolation: External transfer from a Savings account
            InsufficientFunds: If applied immediately and the source is short
        """
        principal = self._authorize(principal, Capability.LEDGER_WRITE, "transfer")
        amount = self._validate_amount(amount)

        if bool(destination_account_id) == bool(destination_routing_code):
            raise ValidationError(
                "Provide exactly one of destination account or destination routing code"
            )
        if destination_account_id and str(destination_account_id) == str(source_account_id):
            raise ValidationError("Cannot transfer funds to the same account")
        if destination_routing_code:
            destination_routing_code = validate_routing_code(destination_routing_code)

        held = self.requires_approval(principal, amount)

        with self._unit_of_work("transfer", principal):
            source = self.accounts.get(source_account_id)
            destination: Optional[Account] = None

            if destination_account_id:
                destination = self.accounts.find(destination_account_id)
                if destination is None:
                    raise AccountNotFound(str(destination_account_id), role="Destination account")
                suffix = f" to Acc {destination.id}"
            else:
                if source.kind == AccountKind.SAVINGS:
                    raise RuleViolation("Savings accounts can only transfer funds internally")
                suffix = f" to Routing {destination_routing_code}"

            if not held:
                self._check_funds(source, amount)

            record = self._create_record(
                principal, TransactionKind.TRANSFER, amount,
                (description or "").strip() + suffix, held,
                source_account_id=source.id,
                destination_account_id=destination.id if destination else None,
                destination_routing_code=None if destination else destination_routing_code,
                audit_extra={
                    "destination_routing_code":
                        destination.routing_code if destination else destination_routing_code
                }
            )
            if not held:
                self.poster.post(record, principal.id)

        self._log_movement("transfer", record, principal)
        return record

    # Queries

    def get_account_transactions(self, account_id: str,
                                 principal: Principal) -> List[TransactionRecord]:
        """Transaction history for an account, most recent first"""
        self._authorize(principal, Capability.LEDGER_WRITE, "view_transactions")
        account = self.accounts.get(account_id)
        return self.transactions.list_by_account(account.id)

    def get_pending_transactions(self, principal: Principal) -> List[TransactionRecord]:
        """Approval queue, oldest first"""
        self._authorize(principal, Capability.APPROVAL_RESOLVE, "view_pending")
        return self.transactions.list_pending()

    def get_account(self, account_id: str, principal: Principal) -> Account:
        self._authorize(principal, Capability.LEDGER_WRITE, "view_account")
        return self.accounts.get(account_id)

    def get_all_accounts(self, principal: Principal) -> List[Account]:
        self._authorize(principal, Capability.LEDGER_WRITE, "view_accounts")
        return self.accounts.get_all()

    def open_account(self, holder_name: str, kind: AccountKind, principal: Principal,
                     initial_balance: AmountLike = ZERO, overdraft_limit: AmountLike = ZERO,
                     routing_code: Optional[str] = None) -> Account:
        """Open an account on behalf of a staff member"""
        principal = self._authorize(principal, Capability.LEDGER_WRITE, "open_account")
        account = self.accounts.open_account(
            holder_name, kind,
            initial_balance=initial_balance,
            overdraft_limit=overdraft_limit,
            routing_code=routing_code,
            principal_id=principal.id
        )
        log_action(
            self.logger, "info", f"Account opened: {account.id}",
            principal_id=principal.id, action="open_account",
            resource=f"account:{account.id}",
            extra={"kind": kind.value, "opening_balance": str(account.balance)}
        )
        return account

    # Internals

    def _authorize(self, principal: Optional[Principal], capability: Capability,
                   action: str) -> Principal:
        try:
            return self.guard.authorize(principal, capability)
        except PermissionDenied as e:
            log_action(
                self.logger, "warning", f"Permission denied: {e}",
                principal_id=e.principal_id, action=action,
                extra={"capability": capability.value}
            )
            raise

    def _validate_amount(self, amount: AmountLike) -> Decimal:
        amount = to_amount(amount)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        return amount

    def _check_funds(self, account: Account, amount: Decimal) -> None:
        if not account.can_cover(amount):
            raise InsufficientFunds(account.id, account.available_balance, amount)

    @contextmanager
    def _unit_of_work(self, action: str, principal: Principal):
        """
        One storage transaction around a ledger operation. Store failures
        surface as PersistenceFailure; a ConsistencyFailure is escalated
        once the rollback has completed.
        """
        try:
            with persistence_guard(action), self.storage.atomic():
                yield
        except ConsistencyFailure as failure:
            self.poster.escalate(failure, principal.id, action)
            raise

    def _create_record(self, principal: Principal, kind: TransactionKind, amount: Decimal,
                       description: Optional[str], held: bool,
                       source_account_id: Optional[str] = None,
                       destination_account_id: Optional[str] = None,
                       destination_routing_code: Optional[str] = None,
                       audit_extra: Optional[dict] = None) -> TransactionRecord:
        """Create the record, regenerating the reference if the store rejects it"""
        for attempt in range(1, self.reference_max_attempts + 1):
            now = datetime.now(timezone.utc)
            record = TransactionRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                kind=kind,
                amount=amount,
                description=(description or "").strip(),
                reference=self.references.new_reference(),
                requires_approval=held,
                approval_status=ApprovalStatus.PENDING if held else ApprovalStatus.APPROVED,
                source_account_id=source_account_id,
                destination_account_id=destination_account_id,
                destination_routing_code=destination_routing_code,
                created_by=principal.id,
                resolved_by=None if held else principal.id,
                resolved_at=None if held else now
            )
            try:
                self.transactions.create(record)
            except DuplicateReference as e:
                log_action(
                    self.logger, "warning", f"Reference collision, regenerating: {e.reference}",
                    principal_id=principal.id, action="allocate_reference",
                    extra={"attempt": attempt}
                )
                continue

            metadata = {
                "kind": kind.value,
                "amount": amount,
                "reference": record.reference,
                "requires_approval": held,
                "status": record.approval_status.value,
                "source_account_id": source_account_id,
                "destination_account_id": destination_account_id,
            }
            metadata.update(audit_extra or {})
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CREATED,
                entity_type="transaction",
                entity_id=record.id,
                metadata=metadata,
                principal_id=principal.id
            )
            return record

        raise PersistenceFailure(
            f"Could not allocate a unique reference after {self.reference_max_attempts} attempts"
        )

    def _log_movement(self, action: str, record: TransactionRecord, principal: Principal) -> None:
        log_action(
            self.logger, "info",
            f"{record.kind.value} {record.approval_status.value}: {record.reference}",
            principal_id=principal.id,
            action=action,
            resource=f"transaction:{record.id}",
            extra={
                "transaction_id": record.id,
                "reference": record.reference,
                "amount": str(record.amount),
                "source_account_id": record.source_account_id,
                "destination_account_id": record.destination_account_id,
                "destination_routing_code": record.destination_routing_code,
                "requires_approval": record.requires_approval,
            }
        )



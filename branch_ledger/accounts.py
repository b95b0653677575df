"""
Account Management Module

Customer accounts, the overdraft floor rules, and the account store that
owns every balance mutation. Accounts are opened, have their overdraft
limit adjusted, and change balance only through ``apply_delta``; they are
never deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import re

from .money import ZERO, AmountLike, to_amount
from .storage import StorageInterface, StorageRecord, DuplicateKeyError, persistence_guard
from .audit import AuditTrail, AuditEventType
from .errors import AccountNotFound, InsufficientFunds, ValidationError


ROUTING_CODE_PATTERN = re.compile(r"^\d{6}$")


def validate_routing_code(routing_code) -> str:
    """Normalize a six-digit routing (sort) code"""
    code = str(routing_code or "").replace("-", "").strip()
    if not ROUTING_CODE_PATTERN.match(code):
        raise ValidationError(f"Routing code must be six digits: {routing_code!r}")
    return code


class AccountKind(Enum):
    """Account products"""
    CURRENT = "Current"  # May overdraw down to its overdraft limit
    SAVINGS = "Savings"  # Never below zero, internal transfers only


@dataclass
class Account(StorageRecord):
    """
    Ledger account. ``id`` is the account number.
    """
    holder_name: str
    kind: AccountKind
    routing_code: str
    balance: Decimal
    overdraft_limit: Decimal = ZERO

    def __post_init__(self):
        if self.overdraft_limit < 0:
            raise ValidationError("Overdraft limit cannot be negative")
        # Savings accounts never carry an overdraft
        if self.kind == AccountKind.SAVINGS:
            self.overdraft_limit = ZERO

    @property
    def available_balance(self) -> Decimal:
        """Balance plus overdraft headroom (Current accounts only)"""
        if self.kind == AccountKind.CURRENT:
            return self.balance + self.overdraft_limit
        return self.balance

    @property
    def balance_floor(self) -> Decimal:
        """Lowest balance a debit may leave behind"""
        if self.kind == AccountKind.CURRENT:
            return -self.overdraft_limit
        return ZERO

    @property
    def is_savings(self) -> bool:
        return self.kind == AccountKind.SAVINGS

    def can_cover(self, amount: Decimal) -> bool:
        """Check if available balance covers a debit of ``amount``"""
        return self.available_balance >= amount

    @property
    def display_info(self) -> str:
        return f"{self.id} - {self.holder_name} ({self.kind.value})"


class AccountStore:
    """
    Durable keyed storage of accounts.

    ``apply_delta`` is the only balance mutation and runs as one atomic
    conditional update: the delta is rejected if a debit would leave the
    balance under the account's floor.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_routing_code: str = "101010"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_routing_code = default_routing_code
        self.table_name = "accounts"

    def open_account(
        self,
        holder_name: str,
        kind: AccountKind,
        initial_balance: AmountLike = ZERO,
        overdraft_limit: AmountLike = ZERO,
        routing_code: Optional[str] = None,
        principal_id: Optional[str] = None
    ) -> Account:
        """
        Open a new account

        Args:
            holder_name: Account holder's full name
            kind: Current or Savings
            initial_balance: Opening balance, must not be negative
            overdraft_limit: Overdraft for Current accounts; forced to zero for Savings
            routing_code: Bank routing code, defaults to the configured branch code
            principal_id: Staff member opening the account, for the audit trail

        Returns:
            Created Account
        """
        if not holder_name or not holder_name.strip():
            raise ValidationError("Holder name is required")
        if not isinstance(kind, AccountKind):
            raise ValidationError(f"Invalid account kind: {kind!r}")

        balance = to_amount(initial_balance, "initial_balance")
        if balance < 0:
            raise ValidationError("Initial balance cannot be negative")
        overdraft = to_amount(overdraft_limit, "overdraft_limit")
        if kind == AccountKind.SAVINGS:
            overdraft = ZERO
        if overdraft < 0:
            raise ValidationError("Overdraft limit cannot be negative")

        routing_code = validate_routing_code(routing_code or self.default_routing_code)

        with persistence_guard("open account"), self.storage.atomic():
            now = datetime.now(timezone.utc)
            account = Account(
                id=self._next_account_number(),
                created_at=now,
                updated_at=now,
                holder_name=holder_name.strip(),
                kind=kind,
                routing_code=routing_code,
                balance=balance,
                overdraft_limit=overdraft
            )
            try:
                self.storage.insert(self.table_name, account.id, self._account_to_dict(account))
            except DuplicateKeyError:
                raise ValidationError(f"Account number {account.id} already allocated")

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "holder_name": account.holder_name,
                    "kind": kind.value,
                    "routing_code": routing_code,
                    "opening_balance": balance,
                    "overdraft_limit": account.overdraft_limit
                },
                principal_id=principal_id
            )

        return account

    def get(self, account_id: str) -> Account:
        """
        Get account by number

        Raises:
            AccountNotFound: If no such account exists
        """
        with persistence_guard("load account"):
            data = self.storage.load(self.table_name, str(account_id))
        if not data:
            raise AccountNotFound(str(account_id))
        return self._account_from_dict(data)

    def find(self, account_id: str) -> Optional[Account]:
        """Get account by number, or None"""
        try:
            return self.get(account_id)
        except AccountNotFound:
            return None

    def get_all(self) -> List[Account]:
        """All accounts in account number order"""
        with persistence_guard("load accounts"):
            rows = self.storage.load_all(self.table_name)
        accounts = [self._account_from_dict(data) for data in rows]
        accounts.sort(key=lambda a: a.id)
        return accounts

    def apply_delta(self, account_id: str, delta: Decimal) -> Account:
        """
        Atomically add a signed amount to an account's balance.

        Credits always apply. A debit applies only if the resulting balance
        stays at or above the account's floor (minus the overdraft limit for
        Current, zero for Savings).

        Returns:
            The updated Account

        Raises:
            AccountNotFound: If the account is missing
            InsufficientFunds: If a debit would breach the floor
            PersistenceFailure: If the store call fails
        """
        with persistence_guard("apply balance delta"), self.storage.atomic():
            account = self.get(account_id)
            new_balance = account.balance + delta
            if delta < 0 and new_balance < account.balance_floor:
                raise InsufficientFunds(account.id, account.available_balance, -delta)

            account.balance = new_balance
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
        return account

    def update_overdraft_limit(self, account_id: str, overdraft_limit: AmountLike,
                               principal_id: Optional[str] = None) -> Account:
        """
        Change an account's overdraft limit. Savings accounts stay at zero.
        """
        new_limit = to_amount(overdraft_limit, "overdraft_limit")
        if new_limit < 0:
            raise ValidationError("Overdraft limit cannot be negative")

        with persistence_guard("update account"), self.storage.atomic():
            account = self.get(account_id)
            old_limit = account.overdraft_limit
            account.overdraft_limit = ZERO if account.is_savings else new_limit
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_UPDATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "old_overdraft_limit": old_limit,
                    "new_overdraft_limit": account.overdraft_limit
                },
                principal_id=principal_id
            )
        return account

    def _next_account_number(self) -> str:
        """Sequential zero-padded account number; caller holds the unit of work"""
        return f"{self.storage.count(self.table_name) + 1:08d}"

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.table_name, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['kind'] = account.kind.value
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            holder_name=data['holder_name'],
            kind=AccountKind(data['kind']),
            routing_code=data['routing_code'],
            balance=Decimal(data['balance']),
            overdraft_limit=Decimal(data.get('overdraft_limit', '0.00'))
        )

"""
Test suite for the ledger engine

Deposits, withdrawals and transfers: approval threshold, funds checks,
transfer routing rules, reference allocation and concurrent callers.
"""

import pytest
import itertools
import logging
import os
import tempfile
import threading
from decimal import Decimal

from branch_ledger.accounts import AccountKind
from branch_ledger.audit import AuditEventType
from branch_ledger.config import LedgerConfig
from branch_ledger.errors import (
    AccountNotFound, AlreadyProcessed, InsufficientFunds, PermissionDenied, PersistenceFailure,
    RuleViolation, ValidationError
)
from branch_ledger.rbac import Principal, Role
from branch_ledger.references import ReferenceAllocator
from branch_ledger.storage import InMemoryStorage, SQLiteStorage
from branch_ledger.system import LedgerSystem
from branch_ledger.transactions import ApprovalStatus, TransactionKind


TELLER = Principal("teller-1", Role.TELLER, name="Tina Teller")
MANAGER = Principal("mgr-1", Role.MANAGER, name="Max Manager")
ADMIN = Principal("admin-1", Role.ADMIN, name="Ada Admin")


class TestLedgerEngine:
    """Test ledger engine against the in-memory backend"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = LedgerSystem(
            config=LedgerConfig(database_url="memory://"),
            storage=self.make_storage(),
            configure_logging=False
        )
        self.engine = self.system.engine
        self.accounts = self.system.account_store

        # Current account A: balance 500, overdraft 200, available 700
        self.current = self.engine.open_account(
            "Alice Current", AccountKind.CURRENT, ADMIN,
            initial_balance="500.00", overdraft_limit="200.00"
        )
        self.savings = self.engine.open_account(
            "Bob Savings", AccountKind.SAVINGS, ADMIN, initial_balance="1000.00"
        )
        self.other = self.engine.open_account(
            "Carol Current", AccountKind.CURRENT, ADMIN, initial_balance="0.00"
        )

    def teardown_method(self):
        self.system.close()

    def make_storage(self):
        return InMemoryStorage()

    def balance(self, account):
        return self.accounts.get(account.id).balance

    # Deposits

    def test_deposit_applies_immediately(self):
        record = self.engine.deposit(self.other.id, "250.00", "cash", TELLER)

        assert record.kind == TransactionKind.DEPOSIT
        assert record.approval_status == ApprovalStatus.APPROVED
        assert record.requires_approval is False
        assert record.destination_account_id == self.other.id
        assert record.source_account_id is None
        assert record.resolved_by == TELLER.id
        assert self.balance(self.other) == Decimal("250.00")

        stored = self.system.transaction_store.get(record.id)
        assert stored.reference == record.reference

    def test_teller_large_deposit_held_until_approved(self):
        record = self.engine.deposit(self.other.id, "15000.00", "cheque", TELLER)

        assert record.approval_status == ApprovalStatus.PENDING
        assert record.requires_approval is True
        assert record.resolved_by is None
        assert self.balance(self.other) == Decimal("0.00")
        assert [r.id for r in self.engine.get_pending_transactions(MANAGER)] == [record.id]

        assert self.system.resolver.approve(record.id, MANAGER) is True
        assert self.balance(self.other) == Decimal("15000.00")

        with pytest.raises(AlreadyProcessed):
            self.system.resolver.approve(record.id, MANAGER)
        assert self.balance(self.other) == Decimal("15000.00")

    def test_deposit_to_missing_account(self):
        with pytest.raises(AccountNotFound):
            self.engine.deposit("99999999", "10.00", "cash", TELLER)
        assert self.system.storage.count("transactions") == 0

    # Approval threshold

    def test_threshold_amount_requires_approval_for_teller(self):
        record = self.engine.deposit(self.other.id, "10000.00", "at threshold", TELLER)
        assert record.approval_status == ApprovalStatus.PENDING

    def test_just_below_threshold_applies(self):
        record = self.engine.deposit(self.other.id, "9999.99", "below threshold", TELLER)
        assert record.approval_status == ApprovalStatus.APPROVED
        assert self.balance(self.other) == Decimal("9999.99")

    @pytest.mark.parametrize("principal", [MANAGER, ADMIN])
    def test_managers_and_admins_never_need_approval(self, principal):
        record = self.engine.deposit(self.other.id, "10000.00", "large", principal)
        assert record.approval_status == ApprovalStatus.APPROVED

        record = self.engine.deposit(self.other.id, "250000.00", "very large", principal)
        assert record.approval_status == ApprovalStatus.APPROVED
        assert self.balance(self.other) == Decimal("260000.00")

    def test_requires_approval_policy(self):
        assert self.engine.requires_approval(TELLER, Decimal("10000.00"))
        assert not self.engine.requires_approval(TELLER, Decimal("9999.99"))
        assert not self.engine.requires_approval(MANAGER, Decimal("10000.00"))

    # Withdrawals

    def test_withdraw_into_overdraft(self):
        record = self.engine.withdraw(self.current.id, "650.00", "rent", TELLER)

        assert record.approval_status == ApprovalStatus.APPROVED
        assert record.source_account_id == self.current.id
        account = self.accounts.get(self.current.id)
        assert account.balance == Decimal("-150.00")
        assert account.available_balance == Decimal("50.00")

    def test_withdraw_beyond_overdraft_creates_nothing(self):
        with pytest.raises(InsufficientFunds) as exc_info:
            self.engine.withdraw(self.current.id, "750.00", "rent", TELLER)

        assert exc_info.value.available == Decimal("700.00")
        assert self.balance(self.current) == Decimal("500.00")
        assert self.engine.get_account_transactions(self.current.id, TELLER) == []

    def test_savings_cannot_go_negative(self):
        with pytest.raises(InsufficientFunds):
            self.engine.withdraw(self.savings.id, "1000.01", "too much", TELLER)

        self.engine.withdraw(self.savings.id, "1000.00", "everything", TELLER)
        assert self.balance(self.savings) == Decimal("0.00")

    def test_held_withdrawal_skips_funds_check(self):
        record = self.engine.withdraw(self.other.id, "20000.00", "large", TELLER)

        assert record.approval_status == ApprovalStatus.PENDING
        assert self.balance(self.other) == Decimal("0.00")

    # Transfers

    def test_internal_transfer_moves_both_legs(self):
        record = self.engine.transfer(
            self.savings.id, self.current.id, None, "300.00", "top up", TELLER
        )

        assert record.kind == TransactionKind.TRANSFER
        assert record.destination_account_id == self.current.id
        assert record.destination_routing_code is None
        assert record.description == f"top up to Acc {self.current.id}"
        assert record.display_kind == "Transfer (Internal)"
        assert self.balance(self.savings) == Decimal("700.00")
        assert self.balance(self.current) == Decimal("800.00")

        created = self.system.audit_trail.get_events_for_entity("transaction", record.id)[0]
        assert created.event_type == AuditEventType.TRANSACTION_CREATED
        assert created.metadata["destination_routing_code"] == "101010"

    def test_transfer_total_balance_conserved(self):
        before = sum(a.balance for a in self.accounts.get_all())

        self.engine.transfer(self.current.id, self.other.id, None, "600.00", "move", MANAGER)
        self.engine.transfer(self.savings.id, self.other.id, None, "999.99", "move", MANAGER)

        assert sum(a.balance for a in self.accounts.get_all()) == before

    def test_external_transfer_from_current(self):
        record = self.engine.transfer(
            self.current.id, None, "20-20-20", "100.00", "supplier", TELLER
        )

        assert record.is_external_transfer
        assert record.destination_routing_code == "202020"
        assert record.description == "supplier to Routing 202020"
        assert record.display_destination == "Ext (202020)"
        assert self.balance(self.current) == Decimal("400.00")

    def test_external_transfer_from_savings_is_rule_violation(self):
        with pytest.raises(RuleViolation):
            self.engine.transfer(self.savings.id, None, "202020", "100.00", "out", TELLER)

        assert self.balance(self.savings) == Decimal("1000.00")
        assert self.system.storage.count("transactions") == 0

    @pytest.mark.parametrize("principal", [TELLER, MANAGER])
    def test_self_transfer_rejected_before_any_record(self, principal):
        with pytest.raises(ValidationError):
            self.engine.transfer(self.current.id, self.current.id, None, "10.00", "self", principal)

        assert self.system.storage.count("transactions") == 0

    def test_transfer_needs_exactly_one_destination(self):
        with pytest.raises(ValidationError):
            self.engine.transfer(self.current.id, None, None, "10.00", "nowhere", TELLER)
        with pytest.raises(ValidationError):
            self.engine.transfer(self.current.id, self.other.id, "202020", "10.00", "both", TELLER)

    def test_transfer_to_missing_destination(self):
        with pytest.raises(AccountNotFound) as exc_info:
            self.engine.transfer(self.current.id, "99999999", None, "10.00", "ghost", TELLER)

        assert "Destination account" in str(exc_info.value)
        assert self.balance(self.current) == Decimal("500.00")

    def test_transfer_invalid_routing_code(self):
        with pytest.raises(ValidationError):
            self.engine.transfer(self.current.id, None, "12AB", "10.00", "bad code", TELLER)

    def test_transfer_insufficient_funds(self):
        with pytest.raises(InsufficientFunds):
            self.engine.transfer(self.current.id, self.other.id, None, "700.01", "short", TELLER)

        assert self.balance(self.current) == Decimal("500.00")
        assert self.balance(self.other) == Decimal("0.00")
        assert self.system.storage.count("transactions") == 0

    def test_held_transfer_has_no_balance_effect(self):
        record = self.engine.transfer(
            self.current.id, self.other.id, None, "12000.00", "big move", TELLER
        )

        assert record.approval_status == ApprovalStatus.PENDING
        assert self.balance(self.current) == Decimal("500.00")
        assert self.balance(self.other) == Decimal("0.00")

    # Validation and authorization

    @pytest.mark.parametrize("amount", [0, "0.00", "-1.00", 10.5, "1.234", "abc", True, "1e27", 10 ** 27])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError):
            self.engine.deposit(self.other.id, amount, "bad", TELLER)

    def test_suspended_principal_denied(self):
        suspended = Principal("teller-9", Role.TELLER, is_suspended=True)

        with pytest.raises(PermissionDenied):
            self.engine.deposit(self.other.id, "10.00", "cash", suspended)
        with pytest.raises(PermissionDenied):
            self.engine.withdraw(self.current.id, "10.00", "cash", None)

        assert self.system.storage.count("transactions") == 0

    def test_permission_denied_logged_as_warning(self, caplog):
        suspended = Principal("teller-9", Role.TELLER, is_suspended=True)

        with caplog.at_level(logging.WARNING, logger="branch_ledger"):
            with pytest.raises(PermissionDenied):
                self.engine.transfer(self.current.id, self.other.id, None, "1.00", "x", suspended)

        denied = [r for r in caplog.records if getattr(r, "action", None) == "transfer"]
        assert denied and denied[0].levelno == logging.WARNING
        assert denied[0].principal_id == "teller-9"

    def test_successful_operation_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="branch_ledger"):
            record = self.engine.deposit(self.other.id, "5.00", "cash", TELLER)

        logged = [r for r in caplog.records if getattr(r, "action", None) == "deposit"]
        assert len(logged) == 1
        assert logged[0].extra["reference"] == record.reference

    def test_teller_cannot_list_pending(self):
        with pytest.raises(PermissionDenied):
            self.engine.get_pending_transactions(TELLER)

    # Queries

    def test_account_history_most_recent_first(self):
        first = self.engine.deposit(self.other.id, "1.00", "first", TELLER)
        second = self.engine.transfer(self.current.id, self.other.id, None, "2.00", "second", TELLER)
        third = self.engine.withdraw(self.other.id, "3.00", "third", TELLER)

        history = self.engine.get_account_transactions(self.other.id, TELLER)
        assert [r.id for r in history] == [third.id, second.id, first.id]

        with pytest.raises(AccountNotFound):
            self.engine.get_account_transactions("99999999", TELLER)

    def test_account_lookups(self):
        assert self.engine.get_account(self.current.id, TELLER).holder_name == "Alice Current"
        assert len(self.engine.get_all_accounts(TELLER)) == 3
        with pytest.raises(PermissionDenied):
            self.engine.get_all_accounts(None)

    # References

    def test_reference_collision_is_regenerated(self):
        tokens = itertools.chain(["A" * 16, "A" * 16], itertools.repeat("B" * 16))
        self.engine.references = ReferenceAllocator(generator=lambda: next(tokens))

        first = self.engine.deposit(self.other.id, "1.00", "first", TELLER)
        second = self.engine.deposit(self.other.id, "1.00", "second", TELLER)

        assert first.reference == "A" * 16
        assert second.reference == "B" * 16
        assert self.balance(self.other) == Decimal("2.00")

    def test_reference_allocation_gives_up(self):
        self.engine.deposit(self.other.id, "1.00", "first", TELLER)
        taken = self.system.transaction_store.list_by_account(self.other.id)[0].reference
        self.engine.references = ReferenceAllocator(generator=lambda: taken)

        with pytest.raises(PersistenceFailure):
            self.engine.deposit(self.other.id, "1.00", "second", TELLER)

        assert self.balance(self.other) == Decimal("1.00")
        assert self.system.storage.count("transactions") == 1

    # Concurrency

    def test_concurrent_withdrawals_never_breach_floor(self):
        # Available 700: at most seven withdrawals of 100 can succeed
        results = []
        lock = threading.Lock()

        def withdraw():
            try:
                self.engine.withdraw(self.current.id, "100.00", "atm", TELLER)
                outcome = "ok"
            except InsufficientFunds:
                outcome = "short"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=withdraw) for _ in range(12)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 7
        assert results.count("short") == 5
        assert self.balance(self.current) == Decimal("-200.00")
        assert len(self.engine.get_account_transactions(self.current.id, TELLER)) == 7

    def test_concurrent_transfers_conserve_total(self):
        before = sum(a.balance for a in self.accounts.get_all())

        def shuffle(source, destination):
            for _ in range(10):
                try:
                    self.engine.transfer(source.id, destination.id, None, "50.00", "shuffle", MANAGER)
                except InsufficientFunds:
                    pass

        threads = [
            threading.Thread(target=shuffle, args=(self.current, self.savings)),
            threading.Thread(target=shuffle, args=(self.savings, self.current)),
            threading.Thread(target=shuffle, args=(self.savings, self.other)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(a.balance for a in self.accounts.get_all()) == before
        assert self.balance(self.savings) >= Decimal("0.00")
        assert self.balance(self.current) >= Decimal("-200.00")


class TestLedgerEngineSQLite(TestLedgerEngine):
    """Same behaviour against a file-backed SQLite store"""

    def make_storage(self):
        self.temp_dir = tempfile.mkdtemp()
        return SQLiteStorage(os.path.join(self.temp_dir, "ledger.db"))


class TestStoreWaitBounded:
    """An operation blocked behind another session fails instead of hanging"""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_deposit_times_out_behind_held_unit_of_work(self, backend):
        if backend == "memory":
            storage = InMemoryStorage(timeout=0.3)
        else:
            storage = SQLiteStorage(os.path.join(tempfile.mkdtemp(), "ledger.db"), timeout=0.3)
        system = LedgerSystem(
            config=LedgerConfig(database_url="memory://", store_timeout_seconds=0.3),
            storage=storage,
            configure_logging=False
        )
        account = system.engine.open_account("Dana", AccountKind.CURRENT, ADMIN)

        entered = threading.Event()
        release = threading.Event()

        def hold():
            with storage.atomic():
                entered.set()
                release.wait(10)

        holder = threading.Thread(target=hold)
        holder.start()
        assert entered.wait(5)

        outcome = {}

        def deposit():
            try:
                system.engine.deposit(account.id, "1.00", "cash", MANAGER)
                outcome["result"] = "ok"
            except PersistenceFailure as e:
                outcome["result"] = e

        try:
            depositor = threading.Thread(target=deposit)
            depositor.start()
            depositor.join(3)
            assert not depositor.is_alive()
            assert isinstance(outcome["result"], PersistenceFailure)
            assert outcome["result"].retryable is True
        finally:
            release.set()
            holder.join()

        assert system.account_store.get(account.id).balance == Decimal("0.00")
        assert storage.count("transactions") == 0

        # Retrying after the holder finishes succeeds
        system.engine.deposit(account.id, "1.00", "cash", MANAGER)
        assert system.account_store.get(account.id).balance == Decimal("1.00")
        system.close()

"""
Approval Resolution Module

Dual control for held transactions. A Manager or Admin resolves a pending
record exactly once: approving it applies the deferred balance change,
rejecting it only records the decision.

Funds are re-checked against the live source account at approval time.
What happens when they no longer cover the debit is a configuration choice
(``approval_funds_policy``):

    fail    raise InsufficientFundsAtApproval and leave the record pending
    reject  resolve the record as rejected and report False
"""

from enum import Enum
from typing import Optional

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .config import LedgerConfig, get_config
from .errors import (
    AccountNotFound, AlreadyProcessed, Conflict, ConsistencyFailure,
    InsufficientFundsAtApproval, PermissionDenied, ValidationError
)
from .logging_config import get_logger, log_action
from .posting import BalancePoster
from .rbac import AuthorizationGuard, Capability, Principal
from .storage import persistence_guard
from .transactions import ApprovalStatus, TransactionRecord, TransactionStore


class Decision(Enum):
    """Resolver decisions"""
    APPROVE = "approve"
    REJECT = "reject"

    @property
    def target_status(self) -> ApprovalStatus:
        if self == Decision.APPROVE:
            return ApprovalStatus.APPROVED
        return ApprovalStatus.REJECTED


class ApprovalResolver:
    """Transitions pending transactions to a terminal status"""

    def __init__(
        self,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        audit_trail: AuditTrail,
        guard: Optional[AuthorizationGuard] = None,
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
        self.funds_policy = config.approval_funds_policy
        self.poster = poster or BalancePoster(account_store, audit_trail)
        self.logger = get_logger("branch_ledger.approvals")

    def resolve(self, transaction_id: str, decision: Decision, principal: Principal) -> bool:
        """
        Resolve a pending transaction

        The status check, funds re-check, status update and balance legs run
        in one unit of work.

        Returns:
            True if the decision was applied. False if an approval was turned
            into a rejection because funds no longer cover it (``reject`` policy).

        Raises:
            PermissionDenied: Principal lacks ApprovalResolve
            TransactionNotFound: No such transaction
            AlreadyProcessed: Transaction is not pending
            Conflict: Another resolver changed the status first
            InsufficientFundsAtApproval: Funds short under the ``fail`` policy
            ConsistencyFailure: Balance legs could not be applied; nothing was committed
        """
        try:
            principal = self.guard.authorize(principal, Capability.APPROVAL_RESOLVE)
        except PermissionDenied as e:
            log_action(
                self.logger, "warning", f"Permission denied: {e}",
                principal_id=e.principal_id, action="resolve_transaction",
                resource=f"transaction:{transaction_id}"
            )
            raise

        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Invalid decision: {decision!r}")

        try:
            with persistence_guard("resolve transaction"), self.storage.atomic():
                record = self.transactions.get(transaction_id)
                if not record.is_pending:
                    raise AlreadyProcessed(record.id, record.approval_status.value)

                target = decision.target_status
                shortfall: Optional[InsufficientFundsAtApproval] = None
                if decision == Decision.APPROVE:
                    shortfall = self._check_approval_funds(record)
                    if shortfall is not None:
                        if self.funds_policy == "fail":
                            raise shortfall
                        target = ApprovalStatus.REJECTED
                    if record.destination_account_id and self.accounts.find(
                            record.destination_account_id) is None:
                        raise AccountNotFound(record.destination_account_id,
                                              role="Destination account")

                if not self.transactions.set_status(record.id, target, principal.id):
                    raise Conflict(record.id)

                if target == ApprovalStatus.APPROVED:
                    self.poster.post(record, principal.id)

                self._audit_resolution(record, target, principal, shortfall)
        except ConsistencyFailure as failure:
            self.poster.escalate(failure, principal.id, "resolve_transaction")
            raise
        except InsufficientFundsAtApproval as e:
            log_action(
                self.logger, "warning", str(e),
                principal_id=principal.id, action="resolve_transaction",
                resource=f"transaction:{transaction_id}",
                extra={"policy": self.funds_policy, "available": str(e.available)}
            )
            raise

        if shortfall is not None:
            log_action(
                self.logger, "warning",
                f"Approval of {record.reference} rejected for insufficient funds",
                principal_id=principal.id, action="resolve_transaction",
                resource=f"transaction:{record.id}",
                extra={"policy": self.funds_policy, "available": str(shortfall.available),
                       "requested": str(shortfall.requested)}
            )
            return False

        log_action(
            self.logger, "info",
            f"Transaction {record.reference} {target.value}",
            principal_id=principal.id, action="resolve_transaction",
            resource=f"transaction:{record.id}",
            extra={"decision": decision.value, "amount": str(record.amount),
                   "created_by": record.created_by}
        )
        return True

    def approve(self, transaction_id: str, principal: Principal) -> bool:
        return self.resolve(transaction_id, Decision.APPROVE, principal)

    def reject(self, transaction_id: str, principal: Principal) -> bool:
        return self.resolve(transaction_id, Decision.REJECT, principal)

    def _check_approval_funds(self, record: TransactionRecord) -> Optional[InsufficientFundsAtApproval]:
        """Re-read the live source account; None if it covers the debit"""
        if not record.source_account_id:
            return None
        source = self.accounts.get(record.source_account_id)
        if source.can_cover(record.amount):
            return None
        return InsufficientFundsAtApproval(
            record.id, source.id, source.available_balance, record.amount
        )

    def _audit_resolution(self, record: TransactionRecord, status: ApprovalStatus,
                          principal: Principal,
                          shortfall: Optional[InsufficientFundsAtApproval]) -> None:
        metadata = {
            "reference": record.reference,
            "amount": record.amount,
            "created_by": record.created_by,
        }
        if shortfall is not None:
            metadata["reason"] = "insufficient_funds"
            metadata["available"] = shortfall.available

        self.audit_trail.log_event(
            event_type=(AuditEventType.TRANSACTION_APPROVED if status == ApprovalStatus.APPROVED
                        else AuditEventType.TRANSACTION_REJECTED),
            entity_type="transaction",
            entity_id=record.id,
            metadata=metadata,
            principal_id=principal.id
        )

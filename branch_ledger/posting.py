"""
Balance posting for transaction records.

A record's legs are derived from its accounts: the source account is
debited, the destination account (if local) is credited. Posting runs inside
the caller's unit of work; any leg failure after the record exists is a
ConsistencyFailure, which the caller's unit rolls back and then escalates
through ``escalate``.
"""

from typing import List, Optional

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .errors import ConsistencyFailure
from .logging_config import get_logger, log_action
from .transactions import TransactionRecord


class BalancePoster:
    """Applies a record's balance legs and escalates partial failures"""

    def __init__(self, account_store: AccountStore, audit_trail: AuditTrail):
        self.accounts = account_store
        self.audit_trail = audit_trail
        self.logger = get_logger("branch_ledger.posting")

    def post(self, record: TransactionRecord, principal_id: Optional[str] = None) -> None:
        """
        Debit the source and credit the destination of ``record``.

        Must be called inside a storage unit of work so that a failure on
        any leg undoes the others together with the record itself.

        Raises:
            ConsistencyFailure: If any leg cannot be applied
        """
        applied: List[str] = []
        try:
            if record.source_account_id:
                self.accounts.apply_delta(record.source_account_id, -record.amount)
                applied.append(record.source_account_id)
            if record.destination_account_id:
                self.accounts.apply_delta(record.destination_account_id, record.amount)
                applied.append(record.destination_account_id)
        except Exception as e:
            raise ConsistencyFailure(
                f"Transaction {record.id} ({record.reference}) could not apply its balance "
                f"change after {len(applied)} leg(s): {e}",
                transaction_id=record.id,
                account_ids=tuple(
                    a for a in (record.source_account_id, record.destination_account_id) if a
                )
            ) from e

        self.audit_trail.log_event(
            event_type=AuditEventType.BALANCE_APPLIED,
            entity_type="transaction",
            entity_id=record.id,
            metadata={
                "reference": record.reference,
                "amount": record.amount,
                "debited": record.source_account_id,
                "credited": record.destination_account_id
            },
            principal_id=principal_id
        )

    def escalate(self, failure: ConsistencyFailure, principal_id: Optional[str],
                 action: str) -> None:
        """
        Raise the operator alert for a consistency failure.

        Called after the failed unit of work has been rolled back so the
        audit entry outlives the rollback.
        """
        log_action(
            self.logger, "critical", str(failure),
            principal_id=principal_id,
            action=action,
            resource=f"transaction:{failure.transaction_id}",
            extra={
                "alert": True,
                "code": failure.code,
                "transaction_id": failure.transaction_id,
                "account_ids": list(failure.account_ids)
            },
            exc_info=failure
        )
        try:
            self.audit_trail.log_event(
                event_type=AuditEventType.CONSISTENCY_FAILURE,
                entity_type="transaction",
                entity_id=failure.transaction_id or "unknown",
                metadata={
                    "action": action,
                    "account_ids": list(failure.account_ids),
                    "error": str(failure)
                },
                principal_id=principal_id
            )
        except Exception:
            self.logger.exception(
                "Could not write consistency failure for transaction %s to the audit trail",
                failure.transaction_id
            )

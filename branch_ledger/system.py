"""
Composition root wiring storage, stores, engine and resolver together.
"""

from typing import Optional

from .accounts import AccountStore
from .approvals import ApprovalResolver
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .engine import LedgerEngine
from .logging_config import setup_logging
from .posting import BalancePoster
from .rbac import AuthorizationGuard
from .references import ReferenceAllocator
from .storage import StorageInterface, create_storage
from .transactions import TransactionStore


class LedgerSystem:
    """Branch ledger with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 configure_logging: bool = True):
        self.config = config or get_config()

        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format)

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.store_timeout_seconds
        )

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.account_store = AccountStore(
            self.storage, self.audit_trail, default_routing_code=self.config.default_routing_code
        )
        self.transaction_store = TransactionStore(self.storage)
        self.guard = AuthorizationGuard()
        self.poster = BalancePoster(self.account_store, self.audit_trail)

        self.engine = LedgerEngine(
            self.account_store, self.transaction_store, self.audit_trail,
            guard=self.guard,
            reference_allocator=ReferenceAllocator(self.config.reference_length),
            config=self.config,
            poster=self.poster
        )
        self.resolver = ApprovalResolver(
            self.account_store, self.transaction_store, self.audit_trail,
            guard=self.guard,
            config=self.config,
            poster=self.poster
        )

    def close(self) -> None:
        self.storage.close()

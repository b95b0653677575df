"""
Role-Based Access Control Module

Staff roles, capabilities and the authorization guard consulted by every
ledger operation. Role-to-capability mapping lives in one lookup table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import PermissionDenied


class Role(Enum):
    """Staff roles"""
    TELLER = "Teller"
    MANAGER = "Manager"
    ADMIN = "Admin"


class Capability(Enum):
    """Capabilities required by ledger operations"""
    LEDGER_WRITE = "ledger_write"          # Deposit, withdraw, transfer, view history
    APPROVAL_RESOLVE = "approval_resolve"  # Approve/reject pending transactions


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.TELLER: frozenset({Capability.LEDGER_WRITE}),
    Role.MANAGER: frozenset({Capability.LEDGER_WRITE, Capability.APPROVAL_RESOLVE}),
    Role.ADMIN: frozenset({Capability.LEDGER_WRITE, Capability.APPROVAL_RESOLVE}),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated staff member acting on the ledger"""
    id: str
    role: Role
    is_suspended: bool = False
    name: str = ""

    def has_capability(self, capability: Capability) -> bool:
        """Check if this principal's role grants a capability"""
        if self.is_suspended:
            return False
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())


class AuthorizationGuard:
    """
    Maps a principal's role to the capabilities an operation requires.

    Pure: no I/O and no side effects beyond raising.
    """

    def authorize(self, principal: Optional[Principal], capability: Capability) -> Principal:
        """
        Ensure the principal holds ``capability``.

        Returns:
            The principal, for call-site convenience

        Raises:
            PermissionDenied: If the principal is missing, suspended, or its
                role lacks the capability
        """
        if principal is None:
            raise PermissionDenied(
                f"No principal supplied for {capability.value}",
                capability=capability.value
            )
        if principal.is_suspended:
            raise PermissionDenied(
                f"Principal {principal.id} is suspended",
                principal_id=principal.id,
                capability=capability.value
            )
        if not principal.has_capability(capability):
            raise PermissionDenied(
                f"Role {principal.role.value} lacks {capability.value}",
                principal_id=principal.id,
                capability=capability.value
            )
        return principal

    def is_authorized(self, principal: Optional[Principal], capability: Capability) -> bool:
        """Boolean form of ``authorize``"""
        return principal is not None and principal.has_capability(capability)

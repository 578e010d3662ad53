"""
Access Control Module

Static role to capability mapping for back-office operations. Users, roles
and sessions live in the authentication layer; this module only answers
"may this principal do that" and raises Unauthorized when it may not.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from .errors import Unauthorized
from .logging_config import get_logger, log_action


logger = get_logger("bank_ledger.access")


class Role(Enum):
    """Back-office roles"""
    ADMIN = "admin"
    CASHIER = "cashier"
    LOAN_OFFICER = "loan_officer"
    CUSTOMER = "customer"


class Capability(Enum):
    """Operations a role may perform"""
    # Customers and accounts
    MANAGE_CUSTOMERS = "manage_customers"
    MANAGE_ACCOUNTS = "manage_accounts"
    VIEW_ACCOUNTS = "view_accounts"
    LOOKUP_ACCOUNT = "lookup_account"

    # Cash and transfers
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    TRANSFER = "transfer"                      # Between any two accounts
    TRANSFER_OWN_FUNDS = "transfer_own_funds"  # From the principal's own account

    # Loans and EMIs
    APPLY_FOR_LOAN = "apply_for_loan"
    REVIEW_LOANS = "review_loans"
    VIEW_LOANS = "view_loans"
    RECORD_EMI_PAYMENT = "record_emi_payment"
    PAY_OWN_EMI = "pay_own_emi"


_TELLER = frozenset({
    Capability.MANAGE_CUSTOMERS,
    Capability.MANAGE_ACCOUNTS,
    Capability.VIEW_ACCOUNTS,
    Capability.LOOKUP_ACCOUNT,
    Capability.DEPOSIT,
    Capability.WITHDRAW,
    Capability.TRANSFER,
})

_LENDING = frozenset({
    Capability.REVIEW_LOANS,
    Capability.VIEW_LOANS,
    Capability.RECORD_EMI_PAYMENT,
})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: _TELLER | _LENDING,
    Role.CASHIER: _TELLER,
    Role.LOAN_OFFICER: _LENDING | {Capability.LOOKUP_ACCOUNT},
    Role.CUSTOMER: frozenset({
        Capability.LOOKUP_ACCOUNT,
        Capability.TRANSFER_OWN_FUNDS,
        Capability.APPLY_FOR_LOAN,
        Capability.PAY_OWN_EMI,
    }),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as supplied by the authentication layer"""
    user_id: int
    roles: FrozenSet[Role]
    customer_id: Optional[int] = None   # Linked customer profile, if any

    @classmethod
    def of(cls, user_id: int, *roles: Role, customer_id: Optional[int] = None) -> 'Principal':
        return cls(user_id=user_id, roles=frozenset(roles), customer_id=customer_id)

    @property
    def capabilities(self) -> Set[Capability]:
        granted = set()
        for role in self.roles:
            granted |= ROLE_CAPABILITIES.get(role, frozenset())
        return granted

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def has_role(self, role: Role) -> bool:
        return role in self.roles


def require(principal: Principal, capability: Capability) -> None:
    """Raise Unauthorized unless one of the principal's roles grants capability"""
    if not principal.can(capability):
        log_action(
            logger, "warning",
            f"User #{principal.user_id} denied {capability.value}",
            action="access_denied", resource=f"user:{principal.user_id}",
            extra={"roles": sorted(role.value for role in principal.roles)}
        )
        raise Unauthorized("You are not authorized to perform this action.")


def require_customer_profile(principal: Principal) -> int:
    """Customer id linked to the principal, or Unauthorized"""
    if principal.customer_id is None:
        raise Unauthorized("Customer profile not linked.")
    return principal.customer_id

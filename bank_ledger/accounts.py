"""
Account Management Module

The ledger store for customer accounts. Balances are only ever changed on an
account whose row lock is held by the current unit of work, and validation
always runs against the freshly locked balance, never a cached copy.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from enum import Enum

from .storage import StorageInterface, StorageRecord
from .money import ZERO, AmountLike, to_amount, format_amount
from .errors import NotFound, AccountInactive, InsufficientFunds, InvalidOperation, InvalidState
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "Savings"
    CURRENT = "Current"
    FIXED_DEPOSIT = "Fixed Deposit"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "Active"          # Normal operation
    SUSPENDED = "Suspended"    # Temporarily blocked
    CLOSED = "Closed"          # Permanently closed, never deleted


@dataclass
class Account(StorageRecord):
    """Customer account holding a 2 dp balance"""
    customer_id: int
    account_type: AccountType
    balance: Decimal = ZERO
    opening_balance: Decimal = ZERO   # Balance at creation, not in the transaction log
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        """Check if account can process transactions"""
        return self.status == AccountStatus.ACTIVE


class AccountManager:
    """
    Ledger store: account creation, locking, validation and balance mutation
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "accounts"
        self.customers_table = "customers"
        self.logger = get_logger("bank_ledger.accounts")

    def open_account(
        self,
        customer_id: int,
        account_type: AccountType,
        initial_balance: AmountLike = ZERO
    ) -> Account:
        """
        Open a new Active account for an existing customer

        Args:
            customer_id: Owner of the account
            account_type: Savings, Current or Fixed Deposit
            initial_balance: Opening balance, must not be negative

        Returns:
            Created Account object
        """
        initial_balance = to_amount(initial_balance)
        if initial_balance < ZERO:
            raise InvalidOperation("Initial balance cannot be negative")

        with self.storage.atomic():
            if not self.storage.exists(self.customers_table, customer_id):
                raise NotFound(f"Customer #{customer_id} not found")
            account = self.create_account(customer_id, account_type, initial_balance)

        log_action(
            self.logger, "info", f"Account opened: #{account.id}",
            action="open_account", resource=f"account:{account.id}",
            extra={
                "customer_id": customer_id,
                "account_type": account_type.value,
                "initial_balance": str(initial_balance)
            }
        )
        return account

    def create_account(
        self,
        customer_id: int,
        account_type: AccountType,
        initial_balance: Decimal = ZERO
    ) -> Account:
        """Insert an account row; callers validate and wrap in a unit of work"""
        now = datetime.now(timezone.utc)
        account = Account(
            id=self.storage.next_id(self.accounts_table),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            account_type=account_type,
            balance=initial_balance,
            opening_balance=initial_balance
        )
        self._save_account(account)
        return account

    def get_account(self, account_id: int) -> Optional[Account]:
        """Get account by ID (unlocked snapshot)"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def require_account(self, account_id: int) -> Account:
        """Get account by ID or raise NotFound"""
        account = self.get_account(account_id)
        if account is None:
            raise NotFound(f"Account #{account_id} not found")
        return account

    def get_customer_accounts(self, customer_id: int, active_only: bool = False) -> List[Account]:
        """Get a customer's accounts ordered by id"""
        filters = {"customer_id": customer_id}
        if active_only:
            filters["status"] = AccountStatus.ACTIVE.value
        return [Account.from_dict(data) for data in self.storage.find(self.accounts_table, filters)]

    def list_accounts(self) -> List[Account]:
        """All accounts, newest first"""
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.id, reverse=True)
        return accounts

    def lock_account(self, account_id: int) -> Account:
        """
        Lock an account row for the enclosing unit of work

        Raises:
            NotFound: If the account does not exist
        """
        data = self.storage.lock_record(self.accounts_table, account_id)
        if data is None:
            raise NotFound(f"Account #{account_id} not found")
        return Account.from_dict(data)

    def lock_accounts(self, account_ids: Iterable[int]) -> Dict[int, Account]:
        """
        Lock several accounts in ascending id order

        The order is fixed regardless of the caller's order so that two
        transfers over the same pair in opposite directions cannot deadlock.
        """
        locked = {}
        for account_id in sorted(set(account_ids)):
            locked[account_id] = self.lock_account(account_id)
        return locked

    def ensure_active(self, account: Account, action: str = "process transactions") -> None:
        """Raise AccountInactive unless the account is Active"""
        if not account.is_active:
            raise AccountInactive(
                f"Account #{account.id} is {account.status.value} and cannot {action}."
            )

    def ensure_sufficient_funds(self, account: Account, amount: Decimal) -> None:
        """Raise InsufficientFunds if the locked balance is below amount"""
        if account.balance < amount:
            raise InsufficientFunds(
                f"Insufficient funds in Account #{account.id}: balance "
                f"{format_amount(account.balance)}, required {format_amount(amount)}."
            )

    def credit(self, account: Account, amount: Decimal) -> Account:
        """Increase the balance of a locked account"""
        return self._apply_balance_change(account, amount)

    def debit(self, account: Account, amount: Decimal) -> Account:
        """Decrease the balance of a locked account; never below zero"""
        self.ensure_sufficient_funds(account, amount)
        return self._apply_balance_change(account, -amount)

    def get_or_create_account(self, customer_id: int, account_type: AccountType) -> Tuple[Account, bool]:
        """
        Find the customer's Active account of a type, or create one

        Runs inside the caller's unit of work. The customer row is locked first
        so concurrent callers for the same customer cannot both create.

        Returns:
            (locked account, True if it was created)
        """
        with self.storage.atomic():
            self.storage.lock_record(self.customers_table, customer_id)
            for candidate in self.get_customer_accounts(customer_id, active_only=True):
                if candidate.account_type == account_type:
                    return self.lock_account(candidate.id), False

            account = self.create_account(customer_id, account_type)
            account = self.lock_account(account.id)

        log_action(
            self.logger, "info", f"Account auto-created: #{account.id}",
            action="create_account", resource=f"account:{account.id}",
            extra={"customer_id": customer_id, "account_type": account_type.value}
        )
        return account, True

    def suspend_account(self, account_id: int) -> Account:
        """Temporarily block an Active account"""
        return self._transition(account_id, AccountStatus.SUSPENDED, {AccountStatus.ACTIVE})

    def reactivate_account(self, account_id: int) -> Account:
        """Return a Suspended account to Active"""
        return self._transition(account_id, AccountStatus.ACTIVE, {AccountStatus.SUSPENDED})

    def close_account(self, account_id: int) -> Account:
        """Close an account; requires a zero balance"""
        with self.storage.atomic():
            account = self.lock_account(account_id)
            if account.balance != ZERO:
                raise InvalidOperation(
                    f"Account #{account_id} has balance {format_amount(account.balance)} and cannot be closed."
                )
            return self._transition(
                account_id, AccountStatus.CLOSED, {AccountStatus.ACTIVE, AccountStatus.SUSPENDED}
            )

    def _transition(self, account_id: int, new_status: AccountStatus,
                    allowed_from: set) -> Account:
        with self.storage.atomic():
            account = self.lock_account(account_id)
            if account.status not in allowed_from:
                raise InvalidState(
                    f"Account #{account_id} is {account.status.value}; cannot move to {new_status.value}.",
                    current_status=account.status.value
                )
            previous = account.status
            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

        log_action(
            self.logger, "info", f"Account #{account_id} {previous.value} -> {new_status.value}",
            action="account_status", resource=f"account:{account_id}"
        )
        return account

    def _apply_balance_change(self, account: Account, delta: Decimal) -> Account:
        if not self.storage.holds_lock(self.accounts_table, account.id):
            raise RuntimeError(f"Account #{account.id} must be locked before its balance changes")
        account.balance = account.balance + delta
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)
        return account

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

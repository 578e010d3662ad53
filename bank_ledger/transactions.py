"""
Transaction Processing Module

Deposits, withdrawals and transfers as atomic balance mutations plus an
append-only transaction log. Each operation follows the same path:
lock account(s), validate against the locked state, mutate, log, commit.
A failure at any step rolls back every balance change and log row.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum

from .storage import StorageInterface, StorageRecord
from .accounts import AccountManager
from .money import AmountLike, require_positive, format_amount
from .errors import BankingError, InvalidOperation
from .config import LedgerConfig, get_config
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Types of transaction log entries"""
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER_IN = "Transfer (In)"
    TRANSFER_OUT = "Transfer (Out)"
    LOAN_DISBURSEMENT = "Loan Disbursement"
    EMI_PAYMENT = "EMI Payment"


@dataclass
class Transaction(StorageRecord):
    """
    Immutable transaction log entry

    Positive amounts are inflows and negative amounts outflows, except
    Withdrawal which records the positive magnitude of an outflow.
    """
    account_id: int
    transaction_type: TransactionType
    amount: Decimal
    description: str

    @property
    def signed_amount(self) -> Decimal:
        """Amount with outflows negative for every type"""
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return -self.amount
        return self.amount

    @property
    def timestamp(self) -> datetime:
        return self.created_at


@dataclass
class TransferResult:
    """Outcome of a transfer: both balances and both log legs"""
    source_balance: Decimal
    target_balance: Decimal
    outgoing: Transaction
    incoming: Transaction


@dataclass
class BalanceReconciliation:
    """Comparison of the stored balance with the transaction log"""
    account_id: int
    opening_balance: Decimal
    logged_total: Decimal
    balance: Decimal

    @property
    def expected_balance(self) -> Decimal:
        return self.opening_balance + self.logged_total

    @property
    def is_consistent(self) -> bool:
        return self.expected_balance == self.balance


class TransactionProcessor:
    """
    Executes money movements against locked accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.config = config
        self.table_name = "transactions"
        self.logger = get_logger("bank_ledger.transactions")

    @property
    def settings(self) -> LedgerConfig:
        """Configuration given at construction, else the global one"""
        return self.config or get_config()

    def deposit(self, account_id: int, amount: AmountLike, description: Optional[str] = None) -> Decimal:
        """
        Deposit into an Active account

        Returns:
            Updated balance
        """
        amount = require_positive(amount)
        description = description or self.settings.deposit_description

        try:
            with self.storage.atomic():
                account = self.account_manager.lock_account(account_id)
                self.account_manager.ensure_active(account, "accept deposits")
                self.account_manager.credit(account, amount)
                self.record(account.id, TransactionType.DEPOSIT, amount, description)
        except BankingError as e:
            self._log_failure("deposit", e, account_id=account_id, amount=amount)
            raise

        log_action(
            self.logger, "info",
            f"Deposit of {format_amount(amount)} successful into Account #{account_id}.",
            action="deposit", resource=f"account:{account_id}",
            extra={"amount": str(amount), "balance": str(account.balance)}
        )
        return account.balance

    def withdraw(self, account_id: int, amount: AmountLike, description: Optional[str] = None) -> Decimal:
        """
        Withdraw from an Active account with sufficient funds

        Returns:
            Updated balance
        """
        amount = require_positive(amount)
        description = description or self.settings.withdrawal_description

        try:
            with self.storage.atomic():
                account = self.account_manager.lock_account(account_id)
                self.account_manager.ensure_active(account, "process withdrawals")
                self.account_manager.debit(account, amount)
                self.record(account.id, TransactionType.WITHDRAWAL, amount, description)
        except BankingError as e:
            self._log_failure("withdraw", e, account_id=account_id, amount=amount)
            raise

        log_action(
            self.logger, "info",
            f"Withdrawal of {format_amount(amount)} successful from Account #{account_id}.",
            action="withdraw", resource=f"account:{account_id}",
            extra={"amount": str(amount), "balance": str(account.balance)}
        )
        return account.balance

    def transfer(
        self,
        source_id: int,
        target_id: int,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Move funds between two accounts

        Both accounts are locked in ascending id order. Both legs of the log
        are written or neither is.
        """
        if source_id == target_id:
            raise InvalidOperation("Cannot transfer funds to the same account.")
        amount = require_positive(amount)
        description = description or self.settings.transfer_description

        try:
            with self.storage.atomic():
                accounts = self.account_manager.lock_accounts([source_id, target_id])
                source = accounts[source_id]
                target = accounts[target_id]

                self.account_manager.ensure_active(source, "send transfers")
                self.account_manager.ensure_active(target, "receive transfers")

                self.account_manager.debit(source, amount)
                self.account_manager.credit(target, amount)

                outgoing = self.record(
                    source.id, TransactionType.TRANSFER_OUT, -amount,
                    f"{description} [To: #{target.id}]"
                )
                incoming = self.record(
                    target.id, TransactionType.TRANSFER_IN, amount,
                    f"{description} [From: #{source.id}]"
                )
        except BankingError as e:
            self._log_failure("transfer", e, source_id=source_id, target_id=target_id, amount=amount)
            raise

        log_action(
            self.logger, "info",
            f"Transfer of {format_amount(amount)} successful from #{source_id} to #{target_id}.",
            action="transfer", resource=f"account:{source_id}",
            extra={"target_account": target_id, "amount": str(amount)}
        )
        return TransferResult(
            source_balance=source.balance,
            target_balance=target.balance,
            outgoing=outgoing,
            incoming=incoming
        )

    def record(
        self,
        account_id: int,
        transaction_type: TransactionType,
        amount: Decimal,
        description: str
    ) -> Transaction:
        """Append a log entry; called inside the unit that changed the balance"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=self.storage.next_id(self.table_name),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            description=description
        )
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def get_account_transactions(self, account_id: int, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions for an account, most recent first"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]
        transactions.sort(key=lambda t: t.id, reverse=True)
        if limit:
            transactions = transactions[:limit]
        return transactions

    def reconcile_balance(self, account_id: int) -> BalanceReconciliation:
        """Check balance == opening balance + sum of signed log amounts"""
        account = self.account_manager.require_account(account_id)
        logged_total = sum(
            (t.signed_amount for t in self.get_account_transactions(account_id)),
            Decimal('0.00')
        )
        return BalanceReconciliation(
            account_id=account.id,
            opening_balance=account.opening_balance,
            logged_total=logged_total,
            balance=account.balance
        )

    def _log_failure(self, action: str, error: BankingError, **details) -> None:
        level = "error" if error.retryable else "warning"
        log_action(
            self.logger, level, f"{action} failed: {error.detail}",
            action=action,
            extra={"error": error.kind, **{k: str(v) for k, v in details.items()}}
        )

"""
Back-Office Service Module

Wires every ledger component to one storage backend and exposes the
operations the web layer calls. Each operation checks the caller's
capability once, then delegates.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from .config import LedgerConfig, get_config
from .logging_config import setup_logging
from .storage import StorageInterface, create_storage
from .accounts import AccountManager, Account, AccountType, AccountStatus
from .customers import CustomerManager, Customer
from .transactions import TransactionProcessor, Transaction, TransferResult
from .loans import LoanManager, Loan, LoanStatus, LoanApproval, Emi, EmiStatus
from .emis import EmiPaymentProcessor, EmiPaymentResult
from .reporting import ReportingEngine, CustomerBalance, DashboardMetrics
from .access import Capability, Principal, require, require_customer_profile
from .money import AmountLike, ZERO
from .errors import Unauthorized, Forbidden


@dataclass
class AccountSummary:
    """Account details shown when looking up a transfer target"""
    account_id: int
    account_type: AccountType
    balance: Decimal
    status: AccountStatus
    customer_name: str


class BackOffice:
    """Back-office system with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, lock_timeout=self.config.lock_timeout_seconds
        )

        self.account_manager = AccountManager(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.account_manager)
        self.transaction_processor = TransactionProcessor(
            self.storage, self.account_manager, config=self.config
        )
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.transaction_processor, config=self.config
        )
        self.emi_processor = EmiPaymentProcessor(
            self.storage, self.account_manager, self.transaction_processor, self.loan_manager
        )
        self.reporting = ReportingEngine(
            self.storage, self.account_manager, self.customer_manager,
            self.transaction_processor, self.loan_manager
        )

    def close(self) -> None:
        self.storage.close()

    # Customers and accounts

    def register_customer(
        self,
        principal: Principal,
        name: str,
        email: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        account_type: AccountType = AccountType.SAVINGS,
        initial_balance: AmountLike = ZERO
    ) -> Tuple[Customer, Optional[Account]]:
        require(principal, Capability.MANAGE_CUSTOMERS)
        return self.customer_manager.register_customer(
            name, email, phone=phone, address=address,
            account_type=account_type, initial_balance=initial_balance
        )

    def open_account(
        self,
        principal: Principal,
        customer_id: int,
        account_type: AccountType,
        initial_balance: AmountLike = ZERO
    ) -> Account:
        require(principal, Capability.MANAGE_ACCOUNTS)
        return self.account_manager.open_account(customer_id, account_type, initial_balance)

    def suspend_account(self, principal: Principal, account_id: int) -> Account:
        require(principal, Capability.MANAGE_ACCOUNTS)
        return self.account_manager.suspend_account(account_id)

    def reactivate_account(self, principal: Principal, account_id: int) -> Account:
        require(principal, Capability.MANAGE_ACCOUNTS)
        return self.account_manager.reactivate_account(account_id)

    def close_account(self, principal: Principal, account_id: int) -> Account:
        require(principal, Capability.MANAGE_ACCOUNTS)
        return self.account_manager.close_account(account_id)

    def lookup_account(self, principal: Principal, account_id: int) -> AccountSummary:
        """Account id, type, balance, status and holder name"""
        require(principal, Capability.LOOKUP_ACCOUNT)
        account = self.account_manager.require_account(account_id)
        customer = self.customer_manager.require_customer(account.customer_id)
        return AccountSummary(
            account_id=account.id,
            account_type=account.account_type,
            balance=account.balance,
            status=account.status,
            customer_name=customer.name
        )

    def customer_accounts(self, principal: Principal, customer_id: Optional[int] = None) -> List[Account]:
        customer_id = self._resolve_customer(principal, customer_id, Capability.VIEW_ACCOUNTS)
        return self.account_manager.get_customer_accounts(customer_id)

    def account_history(
        self,
        principal: Principal,
        account_id: int,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """Transactions of an account, most recent first"""
        account = self.account_manager.require_account(account_id)
        self._resolve_customer(principal, account.customer_id, Capability.VIEW_ACCOUNTS)
        return self.transaction_processor.get_account_transactions(account_id, limit=limit)

    # Cash and transfers

    def deposit(
        self,
        principal: Principal,
        account_id: int,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Decimal:
        require(principal, Capability.DEPOSIT)
        return self.transaction_processor.deposit(account_id, amount, description)

    def withdraw(
        self,
        principal: Principal,
        account_id: int,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> Decimal:
        require(principal, Capability.WITHDRAW)
        return self.transaction_processor.withdraw(account_id, amount, description)

    def transfer(
        self,
        principal: Principal,
        source_id: int,
        target_id: int,
        amount: AmountLike,
        description: Optional[str] = None
    ) -> TransferResult:
        """
        Transfer between accounts

        Staff may move funds between any accounts; customers only out of
        accounts they own.
        """
        if not principal.can(Capability.TRANSFER):
            require(principal, Capability.TRANSFER_OWN_FUNDS)
            customer_id = require_customer_profile(principal)
            if source_id != target_id:
                source = self.account_manager.require_account(source_id)
                if source.customer_id != customer_id:
                    raise Unauthorized("Unauthorized: You do not own the source account.")
        return self.transaction_processor.transfer(source_id, target_id, amount, description)

    # Loans and EMIs

    def apply_for_loan(
        self,
        principal: Principal,
        amount: AmountLike,
        interest_rate: AmountLike,
        term_months: int
    ) -> Loan:
        require(principal, Capability.APPLY_FOR_LOAN)
        customer_id = require_customer_profile(principal)
        return self.loan_manager.apply_for_loan(customer_id, amount, interest_rate, term_months)

    def review_loan(self, principal: Principal, loan_id: int, action: str) -> Union[LoanApproval, Loan]:
        """Approve or reject a Pending loan"""
        require(principal, Capability.REVIEW_LOANS)
        return self.loan_manager.decide(loan_id, action)

    def list_loans(self, principal: Principal, status: Optional[LoanStatus] = None) -> List[Loan]:
        require(principal, Capability.VIEW_LOANS)
        return self.loan_manager.list_loans(status)

    def customer_loans(self, principal: Principal, customer_id: Optional[int] = None) -> List[Loan]:
        customer_id = self._resolve_customer(principal, customer_id, Capability.VIEW_LOANS)
        return self.loan_manager.get_customer_loans(customer_id)

    def list_emis(
        self,
        principal: Principal,
        status: Optional[EmiStatus] = None,
        as_of: Optional[date] = None
    ) -> List[Emi]:
        require(principal, Capability.VIEW_LOANS)
        return self.emi_processor.list_emis(status, as_of)

    def record_emi_payment(self, principal: Principal, emi_id: int) -> EmiPaymentResult:
        require(principal, Capability.RECORD_EMI_PAYMENT)
        return self.emi_processor.record_payment(emi_id)

    def pay_emi(
        self,
        principal: Principal,
        emi_id: int,
        account_id: int,
        amount: AmountLike
    ) -> EmiPaymentResult:
        require(principal, Capability.PAY_OWN_EMI)
        customer_id = require_customer_profile(principal)
        return self.emi_processor.pay_from_account(emi_id, account_id, customer_id, amount)

    def customer_due_emis(
        self,
        principal: Principal,
        customer_id: Optional[int] = None,
        as_of: Optional[date] = None
    ) -> List[Emi]:
        customer_id = self._resolve_customer(principal, customer_id, Capability.VIEW_LOANS)
        return self.emi_processor.get_customer_due_emis(customer_id, as_of)

    # Reports

    def dashboard_metrics(self, principal: Principal, today: Optional[date] = None) -> DashboardMetrics:
        """Metrics for the caller's back-office role; customers get none"""
        return self.reporting.dashboard(principal, today)

    def list_customers(self, principal: Principal) -> List[CustomerBalance]:
        """Customers with their total balances, newest first"""
        require(principal, Capability.MANAGE_CUSTOMERS)
        return self.reporting.customer_balances()

    def customer_total_balance(self, principal: Principal, customer_id: Optional[int] = None) -> Decimal:
        customer_id = self._resolve_customer(principal, customer_id, Capability.VIEW_ACCOUNTS)
        return self.reporting.customer_total_balance(customer_id)

    def _resolve_customer(
        self,
        principal: Principal,
        customer_id: Optional[int],
        staff_capability: Capability
    ) -> int:
        """Staff may name any customer; customers only see their own records"""
        if customer_id is not None and principal.can(staff_capability):
            return customer_id
        own_id = require_customer_profile(principal)
        if customer_id is not None and customer_id != own_id:
            raise Forbidden("You can only view your own records.")
        return own_id


def create_back_office(config: Optional[LedgerConfig] = None) -> BackOffice:
    """Build a BackOffice from configuration and set up logging for it"""
    config = config or get_config()
    setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    return BackOffice(config=config)

"""
Reporting Module

Ledger metrics for the back-office dashboard and customer balance totals.
Every figure is computed from stored records; money totals are Decimal sums.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .storage import StorageInterface
from .accounts import AccountManager, Account, AccountStatus
from .customers import CustomerManager, Customer, KYCStatus
from .transactions import TransactionProcessor, Transaction, TransactionType
from .loans import LoanManager, Loan, LoanStatus, Emi, EmiStatus
from .access import Principal, Role
from .money import ZERO


TRANSFER_TYPES = (TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT)


@dataclass
class CustomerBalance:
    """Customer with the total balance across all of their accounts"""
    customer: Customer
    total_balance: Decimal
    account_count: int


@dataclass
class DashboardMetrics:
    """Metrics shown on a role's dashboard"""
    role_type: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReportingEngine:
    """
    Read-only queries over customers, accounts, the transaction log and loans

    Reports read committed rows without locks, so figures taken while money
    is moving reflect the state at the moment each table is read.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        customer_manager: CustomerManager,
        transaction_processor: TransactionProcessor,
        loan_manager: LoanManager
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.customer_manager = customer_manager
        self.transaction_processor = transaction_processor
        self.loan_manager = loan_manager

    def customer_total_balance(self, customer_id: int) -> Decimal:
        """Sum of balances over every account the customer holds"""
        self.customer_manager.require_customer(customer_id)
        return _sum_balances(self.account_manager.get_customer_accounts(customer_id))

    def customer_balances(self) -> List[CustomerBalance]:
        """Every customer with their total balance, newest customer first"""
        by_customer: Dict[int, List[Account]] = {}
        for account in self.account_manager.list_accounts():
            by_customer.setdefault(account.customer_id, []).append(account)

        return [
            CustomerBalance(
                customer=customer,
                total_balance=_sum_balances(by_customer.get(customer.id, [])),
                account_count=len(by_customer.get(customer.id, []))
            )
            for customer in self.customer_manager.list_customers()
        ]

    def admin_metrics(self) -> Dict[str, Any]:
        customers = self.customer_manager.list_customers()
        loans = self._loans()
        return {
            "total_customers": len(customers),
            "pending_kyc": _count_pending_kyc(customers),
            "total_loans": len(loans),
            "pending_loans": sum(1 for loan in loans if loan.status == LoanStatus.PENDING),
            "total_deposits": _sum_amounts(self._transactions(TransactionType.DEPOSIT)),
            "total_assets": _sum_balances(self.account_manager.list_accounts()),
        }

    def cashier_metrics(self, day: Optional[date] = None) -> Dict[str, Any]:
        """Cash handled on one day (UTC, default today) plus desk counters"""
        day = day or datetime.now(timezone.utc).date()
        deposits = [t for t in self._transactions(TransactionType.DEPOSIT) if _on_day(t, day)]
        withdrawals = [t for t in self._transactions(TransactionType.WITHDRAWAL) if _on_day(t, day)]
        return {
            "daily_deposits": _sum_amounts(deposits),
            "daily_withdrawals": _sum_amounts(withdrawals),
            "pending_kyc": _count_pending_kyc(self.customer_manager.list_customers()),
            "active_accounts": sum(
                1 for account in self.account_manager.list_accounts()
                if account.status == AccountStatus.ACTIVE
            ),
            # Each transfer logs two legs; both are counted
            "total_transfers": len(self._transactions(*TRANSFER_TYPES)),
        }

    def loan_officer_metrics(self, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Lending pipeline; EMIs count as due when unpaid and due on or before as_of"""
        as_of = as_of or datetime.now(timezone.utc).date()
        loans = self._loans()
        return {
            "pending_applications": sum(1 for loan in loans if loan.status == LoanStatus.PENDING),
            "approved_loans_value": sum(
                (loan.amount for loan in loans if loan.status == LoanStatus.APPROVED), ZERO
            ),
            "total_emis_due": sum(
                1 for emi in self._emis()
                if emi.status == EmiStatus.PENDING and emi.due_date <= as_of
            ),
            "total_loan_customers": len({loan.customer_id for loan in loans}),
        }

    def dashboard(self, principal: Principal, today: Optional[date] = None) -> DashboardMetrics:
        """
        Metrics for the principal's highest back-office role

        Admin takes precedence over cashier, cashier over loan officer.
        Anyone else gets the general dashboard with no metrics.
        """
        if principal.has_role(Role.ADMIN):
            return DashboardMetrics("admin", self.admin_metrics())
        if principal.has_role(Role.CASHIER):
            return DashboardMetrics("cashier", self.cashier_metrics(today))
        if principal.has_role(Role.LOAN_OFFICER):
            return DashboardMetrics("loan_officer", self.loan_officer_metrics(today))
        return DashboardMetrics("general")

    def _transactions(self, *types: TransactionType) -> List[Transaction]:
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.load_all(self.transaction_processor.table_name)
        ]
        return [t for t in transactions if t.transaction_type in types]

    def _loans(self) -> List[Loan]:
        return self.loan_manager.list_loans()

    def _emis(self) -> List[Emi]:
        return [Emi.from_dict(data) for data in self.storage.load_all(self.loan_manager.emis_table)]


def _sum_balances(accounts: List[Account]) -> Decimal:
    return sum((account.balance for account in accounts), ZERO)


def _sum_amounts(transactions: List[Transaction]) -> Decimal:
    return sum((t.amount for t in transactions), ZERO)


def _count_pending_kyc(customers: List[Customer]) -> int:
    return sum(1 for customer in customers if customer.kyc_status == KYCStatus.PENDING)


def _on_day(transaction: Transaction, day: date) -> bool:
    return transaction.created_at.astimezone(timezone.utc).date() == day

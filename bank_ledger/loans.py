"""
Loan Module

Handles loan applications, the EMI amortization formula, approval with
schedule generation and disbursement, and rejection.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional, Union
from enum import Enum
import calendar

from .storage import StorageInterface, StorageRecord
from .accounts import AccountManager, Account, AccountType
from .transactions import TransactionProcessor, TransactionType, Transaction
from .money import AmountLike, to_decimal, round_amount, require_positive, format_amount
from .errors import NotFound, InvalidOperation, InvalidState, CalculationError
from .config import LedgerConfig, get_config
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"      # Submitted, awaiting a decision
    APPROVED = "Approved"    # Disbursed, EMIs outstanding
    REJECTED = "Rejected"
    PAID = "Paid"            # Every EMI settled


class EmiStatus(Enum):
    """Installment states"""
    PENDING = "Pending"
    PAID = "Paid"
    LATE = "Late"            # Reported on read, never stored


@dataclass
class Loan(StorageRecord):
    """Loan application and, once approved, its repayment terms"""
    customer_id: int
    amount: Decimal                     # Principal
    interest_rate: Decimal              # Annual rate in percent, e.g. 12 for 12%
    term_months: int
    status: LoanStatus = LoanStatus.PENDING
    approved_at: Optional[datetime] = None
    emi_amount: Optional[Decimal] = None
    disbursement_account_id: Optional[int] = None


@dataclass
class Emi(StorageRecord):
    """One scheduled monthly installment of a loan"""
    loan_id: int
    installment_number: int
    due_date: date
    amount_due: Decimal
    status: EmiStatus = EmiStatus.PENDING
    payment_date: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == EmiStatus.PAID

    def effective_status(self, as_of: Optional[date] = None) -> EmiStatus:
        """Status as of a date: an unpaid installment past its due date is Late"""
        if self.is_paid:
            return EmiStatus.PAID
        as_of = as_of or datetime.now(timezone.utc).date()
        if self.due_date < as_of:
            return EmiStatus.LATE
        return self.status


@dataclass
class LoanApproval:
    """Everything written by one approval"""
    loan: Loan
    emis: List[Emi]
    account: Account
    account_created: bool
    transaction: Transaction


def calculate_emi(principal: AmountLike, annual_rate: AmountLike, term_months: int) -> Decimal:
    """
    Equated monthly installment for an amortizing loan

    EMI = P * i * (1 + i)^N / ((1 + i)^N - 1) with i = annual_rate / 100 / 12,
    or P / N when the rate is zero. Rounded to 2 dp, half up.

    Raises:
        CalculationError: If the term is not positive or the formula degenerates
    """
    if term_months <= 0:
        raise CalculationError(f"Loan term must be a positive number of months, got {term_months}")

    principal = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate) / Decimal('100') / Decimal('12')

    if monthly_rate == 0:
        return round_amount(principal / Decimal(term_months))

    factor = (Decimal('1') + monthly_rate) ** term_months
    if factor == Decimal('1'):
        raise CalculationError(
            f"EMI is undefined for rate {annual_rate}% over {term_months} months"
        )
    return round_amount(principal * monthly_rate * factor / (factor - Decimal('1')))


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_due_dates(term_months: int, approved_at: Union[datetime, date]) -> List[date]:
    """First day of each month, starting the month after approval"""
    start = date(approved_at.year, approved_at.month, 1)
    return [add_months(start, n) for n in range(1, term_months + 1)]


class LoanManager:
    """
    Loan lifecycle: apply, approve (with EMIs and disbursement), reject
    """

    ACTIONS = ("approve", "reject")

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.config = config
        self.loans_table = "loans"
        self.emis_table = "emis"
        self.logger = get_logger("bank_ledger.loans")

    @property
    def settings(self) -> LedgerConfig:
        return self.config or get_config()

    def apply_for_loan(
        self,
        customer_id: int,
        amount: AmountLike,
        interest_rate: AmountLike,
        term_months: int
    ) -> Loan:
        """
        Submit a loan application in Pending state

        Args:
            customer_id: Borrower
            amount: Principal, must be positive
            interest_rate: Annual rate in percent, must not be negative
            term_months: Number of monthly installments, must be positive
        """
        amount = require_positive(amount, "Loan amount")
        interest_rate = to_decimal(interest_rate)
        if interest_rate < 0:
            raise InvalidOperation(f"Interest rate cannot be negative, got {interest_rate}")
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
            raise InvalidOperation(f"Loan term must be a positive number of months, got {term_months!r}")

        with self.storage.atomic():
            if not self.storage.exists(self.account_manager.customers_table, customer_id):
                raise NotFound(f"Customer #{customer_id} not found")

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=self.storage.next_id(self.loans_table),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                amount=amount,
                interest_rate=interest_rate,
                term_months=term_months
            )
            self._save_loan(loan)

        log_action(
            self.logger, "info", f"Loan application submitted: #{loan.id}",
            action="apply_for_loan", resource=f"loan:{loan.id}",
            extra={
                "customer_id": customer_id,
                "amount": str(amount),
                "interest_rate": str(interest_rate),
                "term_months": term_months
            }
        )
        return loan

    def approve_loan(self, loan_id: int, approved_at: Optional[datetime] = None) -> LoanApproval:
        """
        Approve a Pending loan

        In one unit of work: mark the loan Approved, write term_months Pending
        EMIs, and credit the principal to the customer's disbursement account
        (created if the customer has none).

        Raises:
            NotFound: If the loan does not exist
            InvalidState: If the loan is not Pending
            CalculationError: If the EMI cannot be computed
        """
        approved_at = approved_at or datetime.now(timezone.utc)
        account_type = AccountType(self.settings.disbursement_account_type)

        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            self._ensure_pending(loan)

            emi_amount = calculate_emi(loan.amount, loan.interest_rate, loan.term_months)

            account, created = self.account_manager.get_or_create_account(loan.customer_id, account_type)

            loan.status = LoanStatus.APPROVED
            loan.approved_at = approved_at
            loan.emi_amount = emi_amount
            loan.disbursement_account_id = account.id
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            emis = [
                self._create_emi(loan.id, number, due_date, emi_amount)
                for number, due_date in enumerate(generate_due_dates(loan.term_months, approved_at), start=1)
            ]

            self.account_manager.credit(account, loan.amount)
            transaction = self.transaction_processor.record(
                account.id, TransactionType.LOAN_DISBURSEMENT, loan.amount,
                f"Loan #{loan.id} disbursement"
            )

        log_action(
            self.logger, "info",
            f"Loan #{loan.id} approved; {format_amount(loan.amount)} disbursed to Account #{account.id}.",
            action="approve_loan", resource=f"loan:{loan.id}",
            extra={
                "emi_amount": str(emi_amount),
                "installments": len(emis),
                "account_id": account.id,
                "account_created": created
            }
        )
        return LoanApproval(
            loan=loan,
            emis=emis,
            account=account,
            account_created=created,
            transaction=transaction
        )

    def reject_loan(self, loan_id: int) -> Loan:
        """Reject a Pending loan; no EMIs, no disbursement"""
        with self.storage.atomic():
            loan = self._lock_loan(loan_id)
            self._ensure_pending(loan)
            loan.status = LoanStatus.REJECTED
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

        log_action(
            self.logger, "info", f"Loan #{loan.id} rejected.",
            action="reject_loan", resource=f"loan:{loan.id}"
        )
        return loan

    def decide(self, loan_id: int, action: str) -> Union[LoanApproval, Loan]:
        """Apply a review decision: "approve" or "reject" """
        if action == "approve":
            return self.approve_loan(loan_id)
        if action == "reject":
            return self.reject_loan(loan_id)
        raise InvalidOperation(f"Unknown loan action {action!r}; expected one of {', '.join(self.ACTIONS)}")

    def get_loan(self, loan_id: int) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def get_customer_loans(self, customer_id: int) -> List[Loan]:
        """Get all loans for a customer, newest first"""
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, {"customer_id": customer_id})]
        loans.sort(key=lambda loan: loan.id, reverse=True)
        return loans

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status, newest first"""
        filters = {"status": status.value} if status else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.id, reverse=True)
        return loans

    def get_loan_emis(self, loan_id: int) -> List[Emi]:
        """Installments of a loan in schedule order"""
        emis = [Emi.from_dict(data) for data in self.storage.find(self.emis_table, {"loan_id": loan_id})]
        emis.sort(key=lambda emi: emi.installment_number)
        return emis

    def _ensure_pending(self, loan: Loan) -> None:
        if loan.status != LoanStatus.PENDING:
            raise InvalidState(
                f"Loan is already {loan.status.value}.",
                current_status=loan.status.value
            )

    def _lock_loan(self, loan_id: int) -> Loan:
        data = self.storage.lock_record(self.loans_table, loan_id)
        if data is None:
            raise NotFound(f"Loan #{loan_id} not found")
        return Loan.from_dict(data)

    def _create_emi(self, loan_id: int, number: int, due_date: date, amount_due: Decimal) -> Emi:
        now = datetime.now(timezone.utc)
        emi = Emi(
            id=self.storage.next_id(self.emis_table),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=number,
            due_date=due_date,
            amount_due=amount_due
        )
        self.storage.save(self.emis_table, emi.id, emi.to_dict())
        return emi

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

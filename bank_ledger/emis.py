"""
EMI Payment Module

Settles single installments and closes a loan once nothing is left unpaid.

Both payment paths lock the parent loan row before the installment row, so
two payments against the same loan run one after the other and the second
one always sees the first one's installment as Paid.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .storage import StorageInterface
from .accounts import AccountManager
from .transactions import TransactionProcessor, TransactionType, Transaction
from .loans import LoanManager, Loan, LoanStatus, Emi, EmiStatus
from .money import AmountLike, require_positive, format_amount
from .errors import (
    BankingError, NotFound, Unauthorized, Forbidden, AlreadyPaid, AmountMismatch
)
from .logging_config import get_logger, log_action


@dataclass
class EmiPaymentResult:
    """Outcome of settling an installment"""
    emi: Emi
    loan: Loan
    loan_closed: bool
    transaction: Optional[Transaction] = None   # Only for account-funded payments
    account_balance: Optional[Decimal] = None


class EmiPaymentProcessor:
    """
    Staff-recorded and customer self-service EMI payments
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        transaction_processor: TransactionProcessor,
        loan_manager: LoanManager
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.transaction_processor = transaction_processor
        self.loan_manager = loan_manager
        self.emis_table = loan_manager.emis_table
        self.loans_table = loan_manager.loans_table
        self.logger = get_logger("bank_ledger.emis")

    def record_payment(self, emi_id: int, paid_at: Optional[datetime] = None) -> EmiPaymentResult:
        """
        Mark an installment Paid without moving funds (payment taken by staff)

        Raises:
            NotFound: If the EMI does not exist
            AlreadyPaid: If the EMI is already Paid
        """
        paid_at = paid_at or datetime.now(timezone.utc)

        try:
            with self.storage.atomic():
                emi, loan = self._lock_emi(emi_id)
                if emi.is_paid:
                    raise AlreadyPaid("This EMI has already been paid.")
                self._mark_paid(emi, paid_at)
                loan_closed = self._close_if_settled(loan)
        except BankingError as e:
            self._log_failure("record_emi_payment", e, emi_id=emi_id)
            raise

        log_action(
            self.logger, "info", f"EMI #{emi.id} marked as paid.",
            action="record_emi_payment", resource=f"emi:{emi.id}",
            extra={"loan_id": loan.id, "loan_closed": loan_closed}
        )
        return EmiPaymentResult(emi=emi, loan=loan, loan_closed=loan_closed)

    def pay_from_account(
        self,
        emi_id: int,
        account_id: int,
        customer_id: int,
        amount: AmountLike,
        paid_at: Optional[datetime] = None
    ) -> EmiPaymentResult:
        """
        Pay an installment from the customer's own account

        The account is debited by the amount due, even when a larger amount
        is offered; partial payments are rejected.

        Raises:
            NotFound: If the EMI or the account does not exist
            Unauthorized: If the account belongs to another customer
            Forbidden: If the loan belongs to another customer
            AlreadyPaid: If the EMI is already Paid
            AccountInactive: If the account is not Active
            InsufficientFunds: If the balance is below the offered amount
            AmountMismatch: If the offered amount is below the amount due
        """
        amount = require_positive(amount, "Payment amount")
        paid_at = paid_at or datetime.now(timezone.utc)

        try:
            with self.storage.atomic():
                emi, loan = self._lock_emi(emi_id)
                account = self.account_manager.lock_account(account_id)

                if account.customer_id != customer_id:
                    raise Unauthorized(f"Account #{account.id} does not belong to you.")
                if loan.customer_id != customer_id:
                    raise Forbidden(f"Loan #{loan.id} does not belong to you.")
                if emi.is_paid:
                    raise AlreadyPaid("This EMI has already been paid.")
                self.account_manager.ensure_active(account, "pay EMIs")
                self.account_manager.ensure_sufficient_funds(account, amount)
                if amount < emi.amount_due:
                    raise AmountMismatch(
                        f"Payment of {format_amount(amount)} is less than the amount due "
                        f"{format_amount(emi.amount_due)}."
                    )

                self.account_manager.debit(account, emi.amount_due)
                transaction = self.transaction_processor.record(
                    account.id, TransactionType.EMI_PAYMENT, -emi.amount_due,
                    f"EMI #{emi.id} for Loan #{loan.id}"
                )
                self._mark_paid(emi, paid_at)
                loan_closed = self._close_if_settled(loan)
        except BankingError as e:
            self._log_failure("pay_emi", e, emi_id=emi_id, account_id=account_id, amount=amount)
            raise

        log_action(
            self.logger, "info",
            f"EMI #{emi.id} paid from Account #{account.id}: {format_amount(emi.amount_due)}.",
            action="pay_emi", resource=f"emi:{emi.id}",
            extra={
                "loan_id": loan.id,
                "account_id": account.id,
                "balance": str(account.balance),
                "loan_closed": loan_closed
            }
        )
        return EmiPaymentResult(
            emi=emi,
            loan=loan,
            loan_closed=loan_closed,
            transaction=transaction,
            account_balance=account.balance
        )

    def get_emi(self, emi_id: int) -> Optional[Emi]:
        """Get EMI by ID"""
        data = self.storage.load(self.emis_table, emi_id)
        if data:
            return Emi.from_dict(data)
        return None

    def list_emis(self, status: Optional[EmiStatus] = None, as_of: Optional[date] = None) -> List[Emi]:
        """
        All installments by due date

        The status filter matches the effective status as of ``as_of``, so
        filtering by Late returns unpaid installments already past due.
        """
        emis = [Emi.from_dict(data) for data in self.storage.load_all(self.emis_table)]
        if status is not None:
            emis = [emi for emi in emis if emi.effective_status(as_of) == status]
        emis.sort(key=lambda emi: (emi.due_date, emi.id))
        return emis

    def get_customer_due_emis(self, customer_id: int, as_of: Optional[date] = None) -> List[Emi]:
        """
        Unpaid installments of the customer's Approved loans by due date

        With ``as_of``, only installments due on or before that date.
        """
        due = []
        for loan in self.loan_manager.get_customer_loans(customer_id):
            if loan.status != LoanStatus.APPROVED:
                continue
            for emi in self.loan_manager.get_loan_emis(loan.id):
                if emi.is_paid:
                    continue
                if as_of is not None and emi.due_date > as_of:
                    continue
                due.append(emi)
        due.sort(key=lambda emi: (emi.due_date, emi.id))
        return due

    def _lock_emi(self, emi_id: int) -> Tuple[Emi, Loan]:
        """Lock the parent loan, then the installment"""
        snapshot = self.storage.load(self.emis_table, emi_id)
        if snapshot is None:
            raise NotFound(f"EMI #{emi_id} not found")

        loan_data = self.storage.lock_record(self.loans_table, snapshot["loan_id"])
        if loan_data is None:
            raise NotFound(f"Loan #{snapshot['loan_id']} not found")

        emi_data = self.storage.lock_record(self.emis_table, emi_id)
        return Emi.from_dict(emi_data), Loan.from_dict(loan_data)

    def _mark_paid(self, emi: Emi, paid_at: datetime) -> None:
        emi.status = EmiStatus.PAID
        emi.payment_date = paid_at
        emi.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.emis_table, emi.id, emi.to_dict())

    def _close_if_settled(self, loan: Loan) -> bool:
        """Mark the loan Paid when none of its installments is unpaid"""
        unpaid = [
            data for data in self.storage.find(self.emis_table, {"loan_id": loan.id})
            if data["status"] != EmiStatus.PAID.value
        ]
        if unpaid or loan.status != LoanStatus.APPROVED:
            return False

        loan.status = LoanStatus.PAID
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

        log_action(
            self.logger, "info", f"Loan #{loan.id} fully repaid and closed.",
            action="close_loan", resource=f"loan:{loan.id}"
        )
        return True

    def _log_failure(self, action: str, error: BankingError, **details) -> None:
        level = "error" if error.retryable else "warning"
        log_action(
            self.logger, level, f"{action} failed: {error.detail}",
            action=action,
            extra={"error": error.kind, **{k: str(v) for k, v in details.items()}}
        )

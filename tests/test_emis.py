"""
Test suite for EMI payments

Tests staff-recorded and self-service payments, their validation order,
loan closure, and the closure check under concurrent payments.
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, date

from bank_ledger.storage import InMemoryStorage
from bank_ledger.accounts import AccountManager, AccountType
from bank_ledger.customers import CustomerManager
from bank_ledger.transactions import TransactionProcessor, TransactionType
from bank_ledger.loans import LoanManager, LoanStatus, EmiStatus
from bank_ledger.emis import EmiPaymentProcessor
from bank_ledger.errors import (
    NotFound, AccountInactive, InsufficientFunds, InvalidOperation,
    AlreadyPaid, AmountMismatch, Unauthorized, Forbidden
)


class RecordingStorage(InMemoryStorage):
    """In-memory storage that records every row lock request"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock_log = []

    def _lock_row(self, unit, table, record_id):
        self.lock_log.append((table, int(record_id)))
        return super()._lock_row(unit, table, record_id)


class EmiTestBase:

    def setup_method(self):
        self.storage = RecordingStorage(lock_timeout=5.0)
        self.account_manager = AccountManager(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.account_manager)
        self.transaction_processor = TransactionProcessor(self.storage, self.account_manager)
        self.loan_manager = LoanManager(self.storage, self.account_manager, self.transaction_processor)
        self.emi_processor = EmiPaymentProcessor(
            self.storage, self.account_manager, self.transaction_processor, self.loan_manager
        )

        self.customer, self.savings = self.customer_manager.register_customer(
            name="Jane Doe", email="jane@example.com",
            account_type=AccountType.SAVINGS, initial_balance="5000.00"
        )
        self.other_customer, self.other_account = self.customer_manager.register_customer(
            name="John Roe", email="john@example.com",
            account_type=AccountType.SAVINGS, initial_balance="5000.00"
        )

        # 1200 at 0% over 6 months: 200.00 per installment
        loan = self.loan_manager.apply_for_loan(self.customer.id, "1200", "0", 6)
        self.approval = self.loan_manager.approve_loan(
            loan.id, approved_at=datetime(2024, 1, 10, tzinfo=timezone.utc)
        )
        self.loan = self.approval.loan
        self.emis = self.approval.emis

    def balance(self, account_id):
        return self.account_manager.get_account(account_id).balance


class TestRecordPayment(EmiTestBase):
    """Test staff-recorded payments"""

    def test_record_payment(self):
        paid_at = datetime(2024, 2, 1, 9, 0, tzinfo=timezone.utc)
        result = self.emi_processor.record_payment(self.emis[0].id, paid_at=paid_at)

        assert result.emi.status == EmiStatus.PAID
        assert result.emi.payment_date == paid_at
        assert not result.loan_closed
        assert result.transaction is None
        assert self.emi_processor.get_emi(self.emis[0].id).status == EmiStatus.PAID
        # No funds move on the staff path
        assert self.balance(self.approval.account.id) == Decimal("1200.00")

    def test_record_payment_twice(self):
        self.emi_processor.record_payment(self.emis[0].id)

        with pytest.raises(AlreadyPaid):
            self.emi_processor.record_payment(self.emis[0].id)

    def test_record_payment_missing_emi(self):
        with pytest.raises(NotFound):
            self.emi_processor.record_payment(9999)

    def test_last_payment_closes_loan(self):
        for emi in self.emis[:-1]:
            assert not self.emi_processor.record_payment(emi.id).loan_closed
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.APPROVED

        result = self.emi_processor.record_payment(self.emis[-1].id)

        assert result.loan_closed
        assert result.loan.status == LoanStatus.PAID
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.PAID

    def test_payments_out_of_order_close_loan(self):
        for emi in reversed(self.emis):
            result = self.emi_processor.record_payment(emi.id)
        assert result.loan_closed

    def test_locks_loan_before_emi(self):
        self.storage.lock_log.clear()

        self.emi_processor.record_payment(self.emis[0].id)

        assert self.storage.lock_log == [("loans", self.loan.id), ("emis", self.emis[0].id)]


class TestPayFromAccount(EmiTestBase):
    """Test customer self-service payments"""

    def test_pay_from_account(self):
        emi = self.emis[0]
        result = self.emi_processor.pay_from_account(emi.id, self.savings.id, self.customer.id, "200.00")

        assert result.emi.status == EmiStatus.PAID
        assert result.emi.payment_date is not None
        assert result.account_balance == Decimal("4800.00")
        assert self.balance(self.savings.id) == Decimal("4800.00")

        assert result.transaction.transaction_type == TransactionType.EMI_PAYMENT
        assert result.transaction.amount == Decimal("-200.00")
        assert result.transaction.description == f"EMI #{emi.id} for Loan #{self.loan.id}"
        assert self.transaction_processor.reconcile_balance(self.savings.id).is_consistent

    def test_overpayment_debits_amount_due(self):
        result = self.emi_processor.pay_from_account(
            self.emis[0].id, self.savings.id, self.customer.id, "250.00"
        )

        assert result.account_balance == Decimal("4800.00")
        assert result.transaction.amount == Decimal("-200.00")

    def test_partial_payment_rejected(self):
        with pytest.raises(AmountMismatch):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "199.99")

        assert self.balance(self.savings.id) == Decimal("5000.00")
        assert self.emi_processor.get_emi(self.emis[0].id).status == EmiStatus.PENDING

    def test_non_positive_amount_rejected(self):
        with pytest.raises(InvalidOperation):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "0")

    def test_insufficient_funds(self):
        self.transaction_processor.withdraw(self.savings.id, "4900.00")

        with pytest.raises(InsufficientFunds):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "200.00")

        assert self.balance(self.savings.id) == Decimal("100.00")

    def test_insufficient_funds_checked_against_offered_amount(self):
        self.transaction_processor.withdraw(self.savings.id, "4750.00")

        # Balance 250.00 covers the 200.00 due but not the 300.00 offered
        with pytest.raises(InsufficientFunds):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "300.00")

    def test_missing_account(self):
        with pytest.raises(NotFound):
            self.emi_processor.pay_from_account(self.emis[0].id, 9999, self.customer.id, "200.00")

    def test_account_owned_by_someone_else(self):
        with pytest.raises(Unauthorized):
            self.emi_processor.pay_from_account(
                self.emis[0].id, self.other_account.id, self.customer.id, "200.00"
            )

        assert self.balance(self.other_account.id) == Decimal("5000.00")

    def test_loan_owned_by_someone_else(self):
        with pytest.raises(Forbidden):
            self.emi_processor.pay_from_account(
                self.emis[0].id, self.other_account.id, self.other_customer.id, "200.00"
            )

        assert self.balance(self.other_account.id) == Decimal("5000.00")

    def test_already_paid(self):
        self.emi_processor.record_payment(self.emis[0].id)

        with pytest.raises(AlreadyPaid):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "200.00")

        assert self.balance(self.savings.id) == Decimal("5000.00")

    def test_already_paid_checked_before_funds(self):
        self.emi_processor.record_payment(self.emis[0].id)
        self.transaction_processor.withdraw(self.savings.id, "5000.00")

        with pytest.raises(AlreadyPaid):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "200.00")

    def test_inactive_account(self):
        self.account_manager.suspend_account(self.savings.id)

        with pytest.raises(AccountInactive):
            self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "200.00")

    def test_paying_every_installment_closes_loan(self):
        for emi in self.emis:
            result = self.emi_processor.pay_from_account(emi.id, self.savings.id, self.customer.id, "200.00")

        assert result.loan_closed
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.PAID
        assert self.balance(self.savings.id) == Decimal("3800.00")

    def test_lock_order_loan_emi_account(self):
        self.storage.lock_log.clear()

        self.emi_processor.pay_from_account(self.emis[0].id, self.savings.id, self.customer.id, "200.00")

        assert self.storage.lock_log == [
            ("loans", self.loan.id), ("emis", self.emis[0].id), ("accounts", self.savings.id)
        ]


class TestEmiQueries(EmiTestBase):
    """Test EMI listings and Late status"""

    def test_list_emis_by_due_date(self):
        emis = self.emi_processor.list_emis()
        assert [e.id for e in emis] == [e.id for e in self.emis]

    def test_list_late_emis(self):
        self.emi_processor.record_payment(self.emis[0].id)

        # Installments due 2024-02-01 .. 2024-07-01
        late = self.emi_processor.list_emis(EmiStatus.LATE, as_of=date(2024, 4, 15))
        assert [e.installment_number for e in late] == [2, 3]

        paid = self.emi_processor.list_emis(EmiStatus.PAID, as_of=date(2024, 4, 15))
        assert [e.installment_number for e in paid] == [1]

        # Late is never written back
        assert self.emi_processor.get_emi(self.emis[1].id).status == EmiStatus.PENDING

    def test_customer_due_emis(self):
        self.emi_processor.record_payment(self.emis[0].id)

        due = self.emi_processor.get_customer_due_emis(self.customer.id)
        assert [e.installment_number for e in due] == [2, 3, 4, 5, 6]

        due_by_april = self.emi_processor.get_customer_due_emis(self.customer.id, as_of=date(2024, 4, 1))
        assert [e.installment_number for e in due_by_april] == [2, 3]

        assert self.emi_processor.get_customer_due_emis(self.other_customer.id) == []

    def test_closed_loan_has_no_due_emis(self):
        for emi in self.emis:
            self.emi_processor.record_payment(emi.id)

        assert self.emi_processor.get_customer_due_emis(self.customer.id) == []


class TestConcurrentEmiPayments(EmiTestBase):
    """Test the closure check when the last installments are paid at once"""

    def test_concurrent_final_payments_close_loan(self):
        for emi in self.emis[:-2]:
            self.emi_processor.record_payment(emi.id)

        barrier = threading.Barrier(2)
        results = []
        errors = []

        def pay(emi_id, use_account):
            try:
                barrier.wait()
                if use_account:
                    results.append(self.emi_processor.pay_from_account(
                        emi_id, self.savings.id, self.customer.id, "200.00"
                    ))
                else:
                    results.append(self.emi_processor.record_payment(emi_id))
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=pay, args=(self.emis[-2].id, True)),
            threading.Thread(target=pay, args=(self.emis[-1].id, False)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for r in results if r.loan_closed) == 1
        assert self.loan_manager.get_loan(self.loan.id).status == LoanStatus.PAID

    def test_concurrent_payments_of_same_emi(self):
        barrier = threading.Barrier(2)
        outcomes = []

        def pay():
            barrier.wait()
            try:
                outcomes.append(self.emi_processor.pay_from_account(
                    self.emis[0].id, self.savings.id, self.customer.id, "200.00"
                ))
            except AlreadyPaid as e:
                outcomes.append(e)

        threads = [threading.Thread(target=pay) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for o in outcomes if isinstance(o, AlreadyPaid)) == 1
        assert self.balance(self.savings.id) == Decimal("4800.00")

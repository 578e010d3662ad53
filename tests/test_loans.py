"""
Test suite for loan module

Tests the EMI formula, due date generation, and the loan lifecycle with
approval side effects (installments and disbursement).
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from bank_ledger.storage import InMemoryStorage
from bank_ledger.accounts import AccountManager, AccountType
from bank_ledger.customers import CustomerManager
from bank_ledger.transactions import TransactionProcessor, TransactionType
from bank_ledger.loans import (
    LoanManager, LoanStatus, EmiStatus, Emi, calculate_emi, generate_due_dates
)
from bank_ledger.errors import NotFound, InvalidOperation, InvalidState, CalculationError


class TestCalculateEmi:
    """Test the amortization formula"""

    def test_zero_rate_is_flat_division(self):
        assert calculate_emi(Decimal("12000"), Decimal("0"), 12) == Decimal("1000.00")

    def test_standard_amortization(self):
        assert calculate_emi(Decimal("10000"), Decimal("12"), 12) == Decimal("888.49")

    def test_thirty_six_month_loan(self):
        emi = calculate_emi(Decimal("36000"), Decimal("6"), 36)
        assert Decimal("1095.00") < emi < Decimal("1095.50")

    def test_result_has_two_places(self):
        assert calculate_emi("1000", "0", 3) == Decimal("333.33")
        assert calculate_emi("1000", "0", 3).as_tuple().exponent == -2

    def test_deterministic(self):
        assert calculate_emi("25000", "7.5", 60) == calculate_emi("25000", "7.5", 60)

    def test_payments_cover_principal_and_interest(self):
        emi = calculate_emi("10000", "12", 12)
        total = emi * 12
        assert Decimal("10000") < total < Decimal("10000") * Decimal("1.12")

    @pytest.mark.parametrize("term", [0, -3])
    def test_non_positive_term(self, term):
        with pytest.raises(CalculationError):
            calculate_emi("1000", "5", term)

    def test_degenerate_rate(self):
        # (1 + i) rounds to exactly 1 at working precision
        with pytest.raises(CalculationError):
            calculate_emi(Decimal("1000"), Decimal("1E-28"), 12)


class TestDueDates:
    """Test installment due date generation"""

    def test_starts_first_of_next_month(self):
        dates = generate_due_dates(3, datetime(2024, 1, 31, 15, 30, tzinfo=timezone.utc))
        assert dates == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]

    def test_rolls_over_year_end(self):
        dates = generate_due_dates(2, date(2024, 12, 10))
        assert dates == [date(2025, 1, 1), date(2025, 2, 1)]

    def test_exact_count_strictly_increasing(self):
        dates = generate_due_dates(36, date(2024, 5, 17))
        assert len(dates) == 36
        assert all(a < b for a, b in zip(dates, dates[1:]))
        assert all(d.day == 1 for d in dates)


class TestEmiStatus:
    """Test Late status computed on read"""

    def make_emi(self, status=EmiStatus.PENDING):
        now = datetime.now(timezone.utc)
        return Emi(
            id=1, created_at=now, updated_at=now, loan_id=1, installment_number=1,
            due_date=date(2024, 3, 1), amount_due=Decimal("100.00"), status=status
        )

    def test_unpaid_past_due_is_late(self):
        emi = self.make_emi()
        assert emi.effective_status(date(2024, 3, 2)) == EmiStatus.LATE
        # Never persisted
        assert emi.status == EmiStatus.PENDING

    def test_due_today_is_pending(self):
        assert self.make_emi().effective_status(date(2024, 3, 1)) == EmiStatus.PENDING

    def test_paid_is_never_late(self):
        assert self.make_emi(EmiStatus.PAID).effective_status(date(2030, 1, 1)) == EmiStatus.PAID


class TestLoanManager:
    """Test loan lifecycle"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.account_manager = AccountManager(self.storage)
        self.customer_manager = CustomerManager(self.storage, self.account_manager)
        self.transaction_processor = TransactionProcessor(self.storage, self.account_manager)
        self.loan_manager = LoanManager(self.storage, self.account_manager, self.transaction_processor)

        self.customer, self.savings = self.customer_manager.register_customer(
            name="Jane Doe", email="jane@example.com",
            account_type=AccountType.SAVINGS, initial_balance="100.00"
        )

    def test_apply_for_loan(self):
        loan = self.loan_manager.apply_for_loan(self.customer.id, "36000", "6", 36)

        assert loan.status == LoanStatus.PENDING
        assert loan.amount == Decimal("36000.00")
        assert loan.interest_rate == Decimal("6")
        assert loan.approved_at is None
        assert self.loan_manager.get_loan(loan.id) == loan

    @pytest.mark.parametrize("amount,rate,term", [
        ("0", "5", 12),
        ("-100", "5", 12),
        ("1000", "-1", 12),
        ("1000", "5", 0),
        ("1000", "5", "12"),
    ])
    def test_apply_rejects_invalid_terms(self, amount, rate, term):
        with pytest.raises(InvalidOperation):
            self.loan_manager.apply_for_loan(self.customer.id, amount, rate, term)

    def test_apply_unknown_customer(self):
        with pytest.raises(NotFound):
            self.loan_manager.apply_for_loan(999, "1000", "5", 12)

    def test_approve_creates_schedule_and_disburses(self):
        loan = self.loan_manager.apply_for_loan(self.customer.id, "36000", "6", 36)
        approved_at = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)

        approval = self.loan_manager.approve_loan(loan.id, approved_at=approved_at)

        assert approval.loan.status == LoanStatus.APPROVED
        assert approval.loan.approved_at == approved_at
        assert Decimal("1095.00") < approval.loan.emi_amount < Decimal("1095.50")

        emis = self.loan_manager.get_loan_emis(loan.id)
        assert len(emis) == 36
        assert [e.installment_number for e in emis] == list(range(1, 37))
        assert emis[0].due_date == date(2024, 2, 1)
        assert emis[-1].due_date == date(2027, 1, 1)
        assert all(e.status == EmiStatus.PENDING for e in emis)
        assert all(e.amount_due == approval.loan.emi_amount for e in emis)

        # Customer had only a Savings account, so a Current one is created
        assert approval.account_created
        assert approval.account.account_type == AccountType.CURRENT
        assert approval.account.balance == Decimal("36000.00")
        assert approval.loan.disbursement_account_id == approval.account.id
        assert approval.transaction.transaction_type == TransactionType.LOAN_DISBURSEMENT
        assert approval.transaction.amount == Decimal("36000.00")
        assert self.account_manager.get_account(self.savings.id).balance == Decimal("100.00")

    def test_approve_uses_existing_current_account(self):
        current = self.account_manager.open_account(self.customer.id, AccountType.CURRENT, "5.00")
        loan = self.loan_manager.apply_for_loan(self.customer.id, "12000", "0", 12)

        approval = self.loan_manager.approve_loan(loan.id)

        assert not approval.account_created
        assert approval.account.id == current.id
        assert self.account_manager.get_account(current.id).balance == Decimal("12005.00")
        assert self.transaction_processor.reconcile_balance(current.id).is_consistent

    def test_approve_twice(self):
        loan = self.loan_manager.apply_for_loan(self.customer.id, "1000", "5", 6)
        self.loan_manager.approve_loan(loan.id)

        with pytest.raises(InvalidState) as exc_info:
            self.loan_manager.approve_loan(loan.id)

        assert exc_info.value.detail == "Loan is already Approved."
        assert exc_info.value.current_status == "Approved"
        assert len(self.loan_manager.get_loan_emis(loan.id)) == 6
        assert len(self.account_manager.get_customer_accounts(self.customer.id)) == 2

    def test_approve_failure_leaves_no_trace(self):
        loan = self.loan_manager.apply_for_loan(self.customer.id, "1000", "5", 6)

        def failing_record(*args, **kwargs):
            raise RuntimeError("log store unavailable")

        self.transaction_processor.record = failing_record

        with pytest.raises(RuntimeError):
            self.loan_manager.approve_loan(loan.id)

        assert self.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING
        assert self.loan_manager.get_loan_emis(loan.id) == []
        assert self.account_manager.get_customer_accounts(self.customer.id) == [
            self.account_manager.get_account(self.savings.id)
        ]

    def test_reject_loan(self):
        loan = self.loan_manager.apply_for_loan(self.customer.id, "1000", "5", 6)

        rejected = self.loan_manager.reject_loan(loan.id)

        assert rejected.status == LoanStatus.REJECTED
        assert self.loan_manager.get_loan_emis(loan.id) == []
        assert len(self.account_manager.get_customer_accounts(self.customer.id)) == 1

        with pytest.raises(InvalidState) as exc_info:
            self.loan_manager.approve_loan(loan.id)
        assert exc_info.value.detail == "Loan is already Rejected."

    def test_decide(self):
        first = self.loan_manager.apply_for_loan(self.customer.id, "1000", "5", 6)
        second = self.loan_manager.apply_for_loan(self.customer.id, "2000", "5", 6)

        assert self.loan_manager.decide(first.id, "approve").loan.status == LoanStatus.APPROVED
        assert self.loan_manager.decide(second.id, "reject").status == LoanStatus.REJECTED

        with pytest.raises(InvalidOperation):
            self.loan_manager.decide(second.id, "defer")

    def test_missing_loan(self):
        with pytest.raises(NotFound):
            self.loan_manager.approve_loan(404)
        with pytest.raises(NotFound):
            self.loan_manager.reject_loan(404)

    def test_listing(self):
        first = self.loan_manager.apply_for_loan(self.customer.id, "1000", "5", 6)
        second = self.loan_manager.apply_for_loan(self.customer.id, "2000", "5", 6)
        self.loan_manager.reject_loan(first.id)

        assert [l.id for l in self.loan_manager.list_loans()] == [second.id, first.id]
        assert [l.id for l in self.loan_manager.list_loans(LoanStatus.PENDING)] == [second.id]
        assert [l.id for l in self.loan_manager.get_customer_loans(self.customer.id)] == [second.id, first.id]

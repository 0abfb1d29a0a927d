"""
Test suite for loan module

Tests application, approval, rejection, overdue penalties and repayments.
"""

import logging
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date

from retail_ledger.accounts import AccountManager, AccountType
from retail_ledger.errors import (
    AccountStateError, InsufficientFundsError, NotFoundError,
    StateConflictError, ValidationError
)
from retail_ledger.ledger import TransactionLedger, TransactionType
from retail_ledger.loans import (
    LoanApplicationStatus, LoanManager, LoanRepayment, LoanType, RepaymentStatus
)
from retail_ledger.money import Currency
from retail_ledger.storage import InMemoryStorage


APPROVED_AT = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class TestLoanApplications:
    """Test application lifecycle"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(self.storage, self.ledger)
        self.loan_manager = LoanManager(self.storage, self.account_manager, self.ledger)
    
    def test_apply_loan(self):
        application = self.loan_manager.apply_loan(
            "USER001", LoanType.PERSONAL, "12000", 12, purpose="  Car repair  "
        )
        assert application.status == LoanApplicationStatus.PENDING
        assert application.interest_rate == Decimal('0')
        assert application.penalty_rate_percent_per_month == Decimal('1')
        assert application.currency == Currency.USD
        assert application.purpose == "Car repair"
        assert application.account_id is None
        
        loaded = self.loan_manager.get_application(application.id)
        assert loaded.amount == Decimal('12000.00')
        assert loaded.loan_type == LoanType.PERSONAL
    
    def test_apply_validation(self):
        with pytest.raises(ValidationError):
            self.loan_manager.apply_loan("USER001", LoanType.HOME, "0", 12)
        with pytest.raises(ValidationError, match="between 1 and 360"):
            self.loan_manager.apply_loan("USER001", LoanType.HOME, "1000", 0)
        with pytest.raises(ValidationError, match="between 1 and 360"):
            self.loan_manager.apply_loan("USER001", LoanType.HOME, "1000", 361)
        assert self.loan_manager.apply_loan("USER001", "AUTO", "1000", 360, purpose="  ").purpose is None
        with pytest.raises(ValidationError, match="Unknown loan type"):
            self.loan_manager.apply_loan("USER001", "YACHT", "1000", 12)
        assert self.loan_manager.list_applications("USER001")["total"] == 1
    
    def test_approve_loan(self):
        application = self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, "12000", 12)
        approved = self.loan_manager.approve_loan(application.id, "OFFICER1", "6", now=APPROVED_AT)
        
        assert approved.status == LoanApplicationStatus.APPROVED
        assert approved.interest_rate == Decimal('6')
        assert approved.decided_by_user_id == "OFFICER1"
        assert approved.decided_at == APPROVED_AT
        
        account = self.account_manager.get_account(approved.account_id)
        assert account.account_type == AccountType.LOAN
        assert account.balance == Decimal('0.00')
        assert account.loan_amount == Decimal('12000.00')
        assert account.monthly_payment == Decimal('1032.80')
        assert account.loan_start_date == date(2024, 1, 15)
        assert account.loan_end_date == date(2025, 1, 15)
        assert account.user_id == "USER001"
        
        schedule = self.loan_manager.get_repayment_schedule(application.id, now=APPROVED_AT)
        assert len(schedule) == 12
        assert schedule[0].due_date == date(2024, 3, 1)
        assert schedule[-1].due_date == date(2025, 2, 1)
        assert all(r.status == RepaymentStatus.PENDING for r in schedule)
        assert sum(r.principal_amount for r in schedule) == Decimal('12000.00')
    
    def test_approval_logs_once_after_commit(self, caplog):
        application = self.loan_manager.apply_loan("USER001", LoanType.AUTO, "2400", 24)
        logging.getLogger("retail_ledger").propagate = True
        with caplog.at_level(logging.INFO, logger="retail_ledger"):
            approved = self.loan_manager.approve_loan(application.id, "OFFICER1", "0", now=APPROVED_AT)
        
        messages = [record.getMessage() for record in caplog.records]
        assert "Account created" not in messages
        assert messages.count("Loan approved") == 1
        
        account = self.account_manager.get_account(approved.account_id)
        assert account.loan_term_months == 24
        assert account.monthly_payment == Decimal('100.00')
        assert account.loan_end_date == date(2026, 1, 15)
    
    def test_approve_only_pending(self):
        application = self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, "1000", 6)
        self.loan_manager.reject_loan(application.id, "OFFICER1", "Too risky")
        with pytest.raises(StateConflictError, match="rejected"):
            self.loan_manager.approve_loan(application.id, "OFFICER1", "5")
        assert self.account_manager.list_accounts("USER001") == []
    
    def test_approve_rate_range(self):
        application = self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, "1000", 6)
        with pytest.raises(ValidationError):
            self.loan_manager.approve_loan(application.id, "OFFICER1", "100.01")
        with pytest.raises(ValidationError):
            self.loan_manager.approve_loan(application.id, "OFFICER1", "-1")
    
    def test_reject_loan(self):
        application = self.loan_manager.apply_loan("USER001", LoanType.BUSINESS, "5000", 24)
        rejected = self.loan_manager.reject_loan(application.id, "OFFICER1", "  Insufficient income ")
        assert rejected.status == LoanApplicationStatus.REJECTED
        assert rejected.rejection_reason == "Insufficient income"
        assert rejected.account_id is None
        
        with pytest.raises(StateConflictError):
            self.loan_manager.reject_loan(application.id, "OFFICER1")
        with pytest.raises(NotFoundError):
            self.loan_manager.get_repayment_schedule(application.id)
    
    def test_unknown_application(self):
        with pytest.raises(NotFoundError):
            self.loan_manager.approve_loan("missing", "OFFICER1", "5")
        with pytest.raises(NotFoundError):
            self.loan_manager.get_application("missing")
    
    def test_owner_scoping(self):
        application = self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, "1000", 6)
        with pytest.raises(NotFoundError):
            self.loan_manager.get_application(application.id, user_id="USER002")
        self.loan_manager.approve_loan(application.id, "OFFICER1", "5")
        with pytest.raises(NotFoundError):
            self.loan_manager.get_repayment_schedule(application.id, user_id="USER002")
    
    def test_list_applications(self):
        for amount in ("1000", "2000", "3000"):
            self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, amount, 6)
        other = self.loan_manager.apply_loan("USER002", LoanType.PERSONAL, "500", 6)
        self.loan_manager.reject_loan(other.id, "OFFICER1")
        
        page = self.loan_manager.list_applications(user_id="USER001", limit=2)
        assert page["total"] == 3
        assert len(page["applications"]) == 2
        
        rejected = self.loan_manager.list_applications(status=LoanApplicationStatus.REJECTED)
        assert [a.id for a in rejected["applications"]] == [other.id]
        
        with pytest.raises(ValidationError):
            self.loan_manager.list_applications(limit=101)


class TestRepayments:
    """Test penalties and repayment processing"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(self.storage, self.ledger)
        self.loan_manager = LoanManager(self.storage, self.account_manager, self.ledger)
        
        application = self.loan_manager.apply_loan("USER001", LoanType.PERSONAL, "12000", 12)
        self.application = self.loan_manager.approve_loan(application.id, "OFFICER1", "6", now=APPROVED_AT)
        self.checking = self.account_manager.create_account("USER001", AccountType.CHECKING, Currency.USD)
        self.account_manager.deposit(self.checking.id, "5000.00")
        self.schedule = self.loan_manager.get_repayment_schedule(self.application.id, now=APPROVED_AT)
    
    def test_penalty_applied_when_overdue(self):
        # First installment due 2024-03-01; 10 days late is one started period
        now = datetime(2024, 3, 11, tzinfo=timezone.utc)
        schedule = self.loan_manager.get_repayment_schedule(self.application.id, now=now)
        first = schedule[0]
        assert first.status == RepaymentStatus.OVERDUE
        assert first.penalty_amount == Decimal('9.73')
        assert first.total_amount == Decimal('1042.53')
        assert schedule[1].status == RepaymentStatus.PENDING
        assert schedule[1].penalty_amount == Decimal('0')
        
        stored = self.loan_manager.get_repayment(first.id)
        assert stored.status == RepaymentStatus.OVERDUE
        assert stored.penalty_amount == Decimal('9.73')
    
    def test_penalty_counts_started_periods_on_first_read(self):
        # 45 days late -> two started 30-day periods
        now = datetime(2024, 3, 1, tzinfo=timezone.utc) + timedelta(days=45)
        first = self.loan_manager.get_repayment_schedule(self.application.id, now=now)[0]
        assert first.status == RepaymentStatus.OVERDUE
        assert first.penalty_amount == Decimal('19.46')
    
    def test_penalty_fixed_once_overdue(self):
        due = datetime(2024, 3, 1, tzinfo=timezone.utc)
        first = self.loan_manager.get_repayment_schedule(
            self.application.id, now=due + timedelta(days=10)
        )[0]
        assert first.penalty_amount == Decimal('9.73')
        
        later = self.loan_manager.get_repayment_schedule(
            self.application.id, now=due + timedelta(days=45)
        )
        assert later[0].status == RepaymentStatus.OVERDUE
        assert later[0].penalty_amount == Decimal('9.73')
        assert later[0].total_amount == Decimal('1042.53')
        # The second installment (due 2024-04-01) went overdue on this read
        assert later[1].status == RepaymentStatus.OVERDUE
        assert later[1].penalty_amount > Decimal('0')
        assert self.loan_manager.get_repayment(first.id).penalty_amount == Decimal('9.73')
    
    def test_penalty_idempotent_at_fixed_time(self):
        now = datetime(2024, 4, 5, tzinfo=timezone.utc)
        first_pass = self.loan_manager.get_repayment_schedule(self.application.id, now=now)
        second_pass = self.loan_manager.get_repayment_schedule(self.application.id, now=now)
        assert [(r.penalty_amount, r.total_amount, r.status) for r in first_pass] == \
            [(r.penalty_amount, r.total_amount, r.status) for r in second_pass]
    
    def test_penalty_entity(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        repayment = LoanRepayment(
            id="R1", created_at=now, updated_at=now, loan_application_id="L1",
            installment_number=1, due_date=date(2024, 1, 1),
            principal_amount=Decimal('100.00'), interest_amount=Decimal('5.00'),
            total_amount=Decimal('105.00')
        )
        assert not repayment.apply_penalty(Decimal('2'), now)
        assert repayment.apply_penalty(Decimal('2'), now + timedelta(seconds=1))
        assert repayment.penalty_amount == Decimal('2.00')
        assert repayment.total_amount == Decimal('107.00')
        assert repayment.status == RepaymentStatus.OVERDUE
        assert not repayment.apply_penalty(Decimal('2'), now + timedelta(days=90))
        assert repayment.penalty_amount == Decimal('2.00')
    
    def test_pay_repayment(self):
        first = self.schedule[0]
        now = datetime(2024, 1, 20, tzinfo=timezone.utc)
        paid = self.loan_manager.pay_repayment(first.id, self.checking.id, "USER001", now=now)
        
        assert isinstance(paid, LoanRepayment)
        assert paid.id == first.id
        assert paid.installment_number == 1
        assert paid.status == RepaymentStatus.PAID
        assert paid.total_amount == Decimal('1032.80')
        assert self.account_manager.get_account(self.checking.id).balance == Decimal('3967.20')
        
        stored = self.loan_manager.get_repayment(first.id)
        assert stored.status == RepaymentStatus.PAID
        assert stored.paid_at == now
        
        debit = self.ledger.get_account_transactions(self.checking.id, TransactionType.WITHDRAWAL)[0]
        assert debit.amount == Decimal('1032.80')
        assert debit.transaction_type == TransactionType.WITHDRAWAL
        assert debit.account_id == self.checking.id
        assert debit.description == "Loan repayment #1"
        
        memo = self.ledger.find_by_reference(debit.reference_number + "-IN")[0]
        assert memo.transaction_type == TransactionType.LOAN_REPAYMENT
        assert memo.account_id == self.application.account_id
        assert memo.amount == Decimal('1032.80')
        assert memo.balance_after == Decimal('0.00')
        assert memo.description == "Repayment installment #1"
        assert self.account_manager.get_account(self.application.account_id).balance == Decimal('0.00')
    
    def test_pay_overdue_installment_includes_penalty(self):
        first = self.schedule[0]
        self.loan_manager.get_repayment_schedule(
            self.application.id, now=datetime(2024, 3, 11, tzinfo=timezone.utc)
        )
        # Paying weeks later still debits the penalty fixed at the overdue read
        now = datetime(2024, 4, 20, tzinfo=timezone.utc)
        paid = self.loan_manager.pay_repayment(first.id, self.checking.id, "USER001", now=now)
        assert paid.total_amount == Decimal('1042.53')
        assert paid.penalty_amount == Decimal('9.73')
        assert self.account_manager.get_account(self.checking.id).balance == Decimal('3957.47')
        
        # Paid installments are never re-penalized
        later = self.loan_manager.get_repayment_schedule(
            self.application.id, now=datetime(2024, 6, 1, tzinfo=timezone.utc)
        )[0]
        assert later.status == RepaymentStatus.PAID
        assert later.total_amount == Decimal('1042.53')
    
    def test_cannot_pay_twice(self):
        first = self.schedule[0]
        self.loan_manager.pay_repayment(first.id, self.checking.id, "USER001")
        with pytest.raises(StateConflictError, match="already paid"):
            self.loan_manager.pay_repayment(first.id, self.checking.id, "USER001")
    
    def test_insufficient_funds_changes_nothing(self):
        poor = self.account_manager.create_account("USER001", AccountType.CHECKING, Currency.USD)
        self.account_manager.deposit(poor.id, "100.00")
        first = self.schedule[0]
        with pytest.raises(InsufficientFundsError):
            self.loan_manager.pay_repayment(first.id, poor.id, "USER001")
        
        assert self.loan_manager.get_repayment(first.id).status == RepaymentStatus.PENDING
        assert self.account_manager.get_account(poor.id).balance == Decimal('100.00')
    
    def test_cannot_pay_from_loan_account(self):
        with pytest.raises(AccountStateError):
            self.loan_manager.pay_repayment(
                self.schedule[0].id, self.application.account_id, "USER001"
            )
    
    def test_ownership_checks(self):
        stranger = self.account_manager.create_account("USER002", AccountType.CHECKING, Currency.USD)
        self.account_manager.deposit(stranger.id, "5000.00")
        with pytest.raises(NotFoundError):
            self.loan_manager.pay_repayment(self.schedule[0].id, stranger.id, "USER002")
        with pytest.raises(NotFoundError):
            self.loan_manager.pay_repayment(self.schedule[0].id, stranger.id, "USER001")
        with pytest.raises(NotFoundError):
            self.loan_manager.pay_repayment("missing", self.checking.id, "USER001")

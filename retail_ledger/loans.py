"""
Loan Module

Handles loan applications, approval (loan account opening and schedule
persistence), rejection, overdue penalty recomputation and repayment
processing.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date, time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import math
import uuid

from .accounts import AccountManager, AccountType
from .amortization import build_amortization_schedule, first_day_of_next_month
from .errors import (
    AccountStateError, InsufficientFundsError, NotFoundError, StateConflictError, ValidationError
)
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .money import Currency, ZERO, AmountLike, positive_amount, round_money, to_decimal
from .storage import (
    StorageInterface, StorageRecord, UnitOfWork,
    parse_date, parse_datetime, parse_decimal
)


logger = get_logger("loans")

PENALTY_PERIOD = timedelta(days=30)


class LoanType(Enum):
    """Loan products"""
    PERSONAL = "PERSONAL"
    HOME = "HOME"
    AUTO = "AUTO"
    EDUCATION = "EDUCATION"
    BUSINESS = "BUSINESS"
    
    @classmethod
    def from_name(cls, value: Union[str, 'LoanType']) -> 'LoanType':
        if isinstance(value, LoanType):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unknown loan type: {value}")


class LoanApplicationStatus(Enum):
    """Application lifecycle; APPROVED and REJECTED are terminal"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RepaymentStatus(Enum):
    """Installment lifecycle; PAID is terminal"""
    PENDING = "PENDING"
    OVERDUE = "OVERDUE"
    PAID = "PAID"


@dataclass
class LoanApplication(StorageRecord):
    """Loan request and its decision"""
    user_id: str
    loan_type: LoanType
    amount: Decimal
    term_months: int
    currency: Currency
    interest_rate: Decimal = ZERO
    purpose: Optional[str] = None
    status: LoanApplicationStatus = LoanApplicationStatus.PENDING
    penalty_rate_percent_per_month: Decimal = Decimal('1')
    account_id: Optional[str] = None
    applied_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by_user_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    
    @property
    def is_pending(self) -> bool:
        return self.status == LoanApplicationStatus.PENDING


@dataclass
class LoanRepayment(StorageRecord):
    """One scheduled installment of an approved loan"""
    loan_application_id: str
    installment_number: int
    due_date: date
    principal_amount: Decimal
    interest_amount: Decimal
    penalty_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    status: RepaymentStatus = RepaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    
    @property
    def due_at(self) -> datetime:
        """Start of the due date in UTC"""
        return datetime.combine(self.due_date, time.min, tzinfo=timezone.utc)
    
    def apply_penalty(self, penalty_rate_percent: Decimal, now: datetime) -> bool:
        """
        Mark a past-due PENDING installment OVERDUE and fix its penalty.
        
        Each started 30-day period past the due date (at least one) as of now
        charges penalty_rate_percent of the principal. OVERDUE and PAID
        installments keep their figures. Returns True when the installment
        changed.
        """
        if self.status != RepaymentStatus.PENDING or self.due_at >= now:
            return False
        overdue_seconds = (now - self.due_at).total_seconds()
        months_overdue = max(1, math.ceil(overdue_seconds / PENALTY_PERIOD.total_seconds()))
        penalty = round_money(
            self.principal_amount * penalty_rate_percent / Decimal('100') * months_overdue
        )
        total = round_money(self.principal_amount + self.interest_amount + penalty)
        self.status = RepaymentStatus.OVERDUE
        self.penalty_amount = penalty
        self.total_amount = total
        self.updated_at = now
        return True


class LoanManager:
    """
    Manages loan applications and the repayment lifecycle
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: TransactionLedger,
        default_penalty_rate_percent: AmountLike = Decimal('1'),
        max_term_months: int = 360,
        max_interest_rate: AmountLike = Decimal('100'),
        default_currency: Currency = Currency.USD
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.applications_table = "loan_applications"
        self.repayments_table = "loan_repayments"
        self.default_penalty_rate_percent = to_decimal(default_penalty_rate_percent)
        self.max_term_months = max_term_months
        self.max_interest_rate = to_decimal(max_interest_rate)
        self.default_currency = Currency.from_code(default_currency)
    
    def apply_loan(
        self,
        user_id: str,
        loan_type: LoanType,
        amount: AmountLike,
        term_months: int,
        purpose: Optional[str] = None,
        currency: Optional[Currency] = None,
        penalty_rate_percent_per_month: Optional[AmountLike] = None,
        now: Optional[datetime] = None
    ) -> LoanApplication:
        """
        Submit a loan application
        
        Args:
            user_id: Applicant
            loan_type: Loan product
            amount: Requested principal, > 0
            term_months: 1 to the configured maximum
            purpose: Free-text purpose (trimmed; blank becomes None)
            currency: Loan currency (defaults to the configured currency)
            penalty_rate_percent_per_month: Overdue penalty rate
            now: Application timestamp
            
        Returns:
            PENDING LoanApplication with zero interest rate
        """
        if not user_id:
            raise ValidationError("User id is required")
        loan_type = LoanType.from_name(loan_type)
        amount = positive_amount(amount, "loan amount")
        if not isinstance(term_months, int) or term_months < 1 or term_months > self.max_term_months:
            raise ValidationError(f"Term must be between 1 and {self.max_term_months} months")
        
        penalty_rate = self.default_penalty_rate_percent
        if penalty_rate_percent_per_month is not None:
            penalty_rate = to_decimal(penalty_rate_percent_per_month)
            if penalty_rate < ZERO:
                raise ValidationError("Penalty rate cannot be negative")
        
        now = now or datetime.now(timezone.utc)
        application = LoanApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            loan_type=loan_type,
            amount=amount,
            term_months=term_months,
            currency=Currency.from_code(currency) if currency else self.default_currency,
            purpose=(purpose or "").strip() or None,
            penalty_rate_percent_per_month=penalty_rate,
            applied_at=now
        )
        
        with self.storage.atomic() as uow:
            uow.insert(self.applications_table, application.id, self._application_to_dict(application))
        
        log_action(logger, "info", "Loan application submitted", user_id=user_id,
                   action="loan.apply", resource=application.id,
                   extra={"amount": str(amount), "term_months": term_months,
                          "loan_type": loan_type.name})
        return application
    
    def approve_loan(
        self,
        application_id: str,
        decided_by_user_id: str,
        interest_rate: AmountLike,
        now: Optional[datetime] = None
    ) -> LoanApplication:
        """
        Approve a pending application.
        
        Opens the LOAN account, persists the amortization schedule (anchored on the
        1st of next month, installment k due k months later) and marks the application
        APPROVED, all in one unit of work.
        """
        rate = to_decimal(interest_rate)
        if rate < ZERO or rate > self.max_interest_rate:
            raise ValidationError(f"Interest rate must be between 0 and {self.max_interest_rate}")
        now = now or datetime.now(timezone.utc)
        
        with self.storage.atomic() as uow:
            application = self._load_application(uow, application_id)
            if not application.is_pending:
                raise StateConflictError(
                    f"Loan application is already {application.status.name.lower()}"
                )
            
            schedule = build_amortization_schedule(
                application.amount, rate, application.term_months, first_day_of_next_month(now)
            )
            account = self.account_manager.open_account(
                uow,
                application.user_id,
                AccountType.LOAN,
                application.currency,
                interest_rate=rate,
                loan_amount=application.amount,
                loan_term_months=application.term_months,
                monthly_payment=schedule[0].total_amount,
                now=now
            )
            
            for installment in schedule:
                repayment = LoanRepayment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_application_id=application.id,
                    installment_number=installment.installment_number,
                    due_date=installment.due_date,
                    principal_amount=installment.principal_amount,
                    interest_amount=installment.interest_amount,
                    total_amount=installment.total_amount
                )
                uow.insert(self.repayments_table, repayment.id, self._repayment_to_dict(repayment))
            
            application.status = LoanApplicationStatus.APPROVED
            application.interest_rate = rate
            application.account_id = account.id
            application.decided_at = now
            application.decided_by_user_id = decided_by_user_id
            application.updated_at = now
            uow.save(self.applications_table, application.id, self._application_to_dict(application))
        
        log_action(logger, "info", "Loan approved", user_id=decided_by_user_id,
                   action="loan.approve", resource=application.id,
                   extra={"account_id": account.id, "account_number": account.account_number,
                          "interest_rate": str(rate),
                          "monthly_payment": str(account.monthly_payment)})
        return application
    
    def reject_loan(
        self,
        application_id: str,
        decided_by_user_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> LoanApplication:
        """Reject a pending application"""
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            application = self._load_application(uow, application_id)
            if not application.is_pending:
                raise StateConflictError(
                    f"Loan application is already {application.status.name.lower()}"
                )
            application.status = LoanApplicationStatus.REJECTED
            application.rejection_reason = (reason or "").strip() or None
            application.decided_at = now
            application.decided_by_user_id = decided_by_user_id
            application.updated_at = now
            uow.save(self.applications_table, application.id, self._application_to_dict(application))
        
        log_action(logger, "info", "Loan rejected", user_id=decided_by_user_id,
                   action="loan.reject", resource=application.id,
                   extra={"reason": application.rejection_reason})
        return application
    
    def get_application(self, application_id: str, user_id: Optional[str] = None) -> LoanApplication:
        """Get an application, optionally scoped to its owner"""
        data = self.storage.load(self.applications_table, application_id)
        if not data or (user_id and data['user_id'] != user_id):
            raise NotFoundError("Loan application", application_id)
        return self._application_from_dict(data)
    
    def list_applications(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanApplicationStatus] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Page through applications, newest first"""
        if limit < 1 or limit > 100:
            raise ValidationError("Limit must be between 1 and 100")
        if offset < 0:
            raise ValidationError("Offset cannot be negative")
        filters = {}
        if user_id:
            filters["user_id"] = user_id
        if status:
            filters["status"] = status.name
        applications = [
            self._application_from_dict(data)
            for data in self.storage.find(self.applications_table, filters)
        ]
        applications.sort(key=lambda a: a.created_at, reverse=True)
        return {
            "applications": applications[offset:offset + limit],
            "total": len(applications),
            "limit": limit,
            "offset": offset
        }
    
    def get_repayment(self, repayment_id: str) -> LoanRepayment:
        """Get a single installment"""
        data = self.storage.load(self.repayments_table, repayment_id)
        if not data:
            raise NotFoundError("Repayment", repayment_id)
        return self._repayment_from_dict(data)
    
    def get_repayment_schedule(
        self,
        application_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[LoanRepayment]:
        """
        Get the installments of an approved loan with penalties refreshed.
        
        Every PENDING installment whose due date has passed is marked OVERDUE
        with its penalty computed as of now; changes are persisted before the
        schedule is returned. Once OVERDUE, an installment keeps its penalty.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            application = self._load_application(uow, application_id)
            if user_id and application.user_id != user_id:
                raise NotFoundError("Loan application", application_id)
            if application.status != LoanApplicationStatus.APPROVED:
                raise NotFoundError("Repayment schedule", application_id)
            
            repayments = self._load_repayments(uow, application.id)
            for repayment in repayments:
                if repayment.apply_penalty(application.penalty_rate_percent_per_month, now):
                    uow.save(self.repayments_table, repayment.id, self._repayment_to_dict(repayment))
        
        return repayments
    
    def pay_repayment(
        self,
        repayment_id: str,
        from_account_id: str,
        user_id: str,
        now: Optional[datetime] = None
    ) -> LoanRepayment:
        """
        Pay one installment from one of the borrower's accounts.
        
        Debits the source with a WITHDRAWAL, appends a LOAN_REPAYMENT memo
        entry on the loan account (no balance change) and marks the
        installment PAID, in one unit of work. The stored total, including
        any penalty fixed when it went overdue, is what gets debited.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            data = uow.load(self.repayments_table, repayment_id)
            if not data:
                raise NotFoundError("Repayment", repayment_id)
            repayment = self._repayment_from_dict(data)
            application = self._load_application(uow, repayment.loan_application_id)
            if application.user_id != user_id:
                raise NotFoundError("Repayment", repayment_id)
            if repayment.status == RepaymentStatus.PAID:
                raise StateConflictError(
                    f"Installment #{repayment.installment_number} is already paid"
                )
            
            source = self.account_manager.load_for_update(uow, from_account_id)
            if source.user_id != user_id:
                raise NotFoundError("Account", from_account_id)
            if source.is_loan_account or source.id == application.account_id:
                raise AccountStateError("Repayments cannot be made from a loan account")
            
            total = repayment.total_amount
            if source.available_balance < total:
                raise InsufficientFundsError(source.available_balance, total)
            
            reference = self.ledger.generate_reference_number(now)
            balance_after = source.withdraw(total, now)
            self.account_manager.save(uow, source)
            self.ledger.record(
                uow, source.id, TransactionType.WITHDRAWAL, total, balance_after,
                description=f"Loan repayment #{repayment.installment_number}",
                reference_number=reference,
                related_account_id=application.account_id,
                created_at=now
            )
            
            repayment.status = RepaymentStatus.PAID
            repayment.paid_at = now
            repayment.updated_at = now
            uow.save(self.repayments_table, repayment.id, self._repayment_to_dict(repayment))
            
            loan_account = self.account_manager.load_for_update(uow, application.account_id)
            self.ledger.record(
                uow, loan_account.id, TransactionType.LOAN_REPAYMENT, total, loan_account.balance,
                description=f"Repayment installment #{repayment.installment_number}",
                reference_number=f"{reference}-IN",
                related_account_id=source.id,
                created_at=now
            )
        
        log_action(logger, "info", "Loan installment paid", user_id=user_id,
                   action="loan.repay", resource=repayment.id,
                   extra={"installment": repayment.installment_number,
                          "amount": str(total), "reference": reference})
        return repayment
    
    def _load_application(self, uow: UnitOfWork, application_id: str) -> LoanApplication:
        data = uow.load(self.applications_table, application_id)
        if not data:
            raise NotFoundError("Loan application", application_id)
        return self._application_from_dict(data)
    
    def _load_repayments(self, uow: UnitOfWork, application_id: str) -> List[LoanRepayment]:
        repayments = [
            self._repayment_from_dict(data)
            for data in uow.find(self.repayments_table, {"loan_application_id": application_id})
        ]
        repayments.sort(key=lambda r: r.installment_number)
        return repayments
    
    def _application_to_dict(self, application: LoanApplication) -> Dict:
        """Convert LoanApplication to dictionary for storage"""
        return application.to_dict()
    
    def _application_from_dict(self, data: Dict) -> LoanApplication:
        """Convert dictionary to LoanApplication"""
        return LoanApplication(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            loan_type=LoanType[data['loan_type']],
            amount=parse_decimal(data['amount']),
            term_months=data['term_months'],
            currency=Currency[data['currency']],
            interest_rate=parse_decimal(data['interest_rate']),
            purpose=data.get('purpose'),
            status=LoanApplicationStatus[data['status']],
            penalty_rate_percent_per_month=parse_decimal(data['penalty_rate_percent_per_month']),
            account_id=data.get('account_id'),
            applied_at=parse_datetime(data.get('applied_at')),
            decided_at=parse_datetime(data.get('decided_at')),
            decided_by_user_id=data.get('decided_by_user_id'),
            rejection_reason=data.get('rejection_reason')
        )
    
    def _repayment_to_dict(self, repayment: LoanRepayment) -> Dict:
        """Convert LoanRepayment to dictionary for storage"""
        return repayment.to_dict()
    
    def _repayment_from_dict(self, data: Dict) -> LoanRepayment:
        """Convert dictionary to LoanRepayment"""
        return LoanRepayment(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_application_id=data['loan_application_id'],
            installment_number=data['installment_number'],
            due_date=parse_date(data['due_date']),
            principal_amount=parse_decimal(data['principal_amount']),
            interest_amount=parse_decimal(data['interest_amount']),
            penalty_amount=parse_decimal(data['penalty_amount']),
            total_amount=parse_decimal(data['total_amount']),
            status=RepaymentStatus[data['status']],
            paid_at=parse_datetime(data.get('paid_at'))
        )

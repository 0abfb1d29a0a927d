"""
Savings Plan Module

Fixed-deposit and recurring-deposit plans funded from a customer's account.
Interest accrual and maturity payouts are run by the monthly interest job.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager
from .amortization import add_months
from .errors import AccountStateError, InsufficientFundsError, NotFoundError, ValidationError
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .money import Currency, ZERO, AmountLike, positive_amount, round_money, to_decimal
from .storage import StorageInterface, StorageRecord, UnitOfWork, parse_datetime, parse_decimal


logger = get_logger("savings")


class SavingsPlanType(Enum):
    FIXED_DEPOSIT = "FIXED_DEPOSIT"
    RECURRING_DEPOSIT = "RECURRING_DEPOSIT"


class SavingsPlanStatus(Enum):
    """Plan lifecycle; MATURED and CLOSED are terminal"""
    ACTIVE = "ACTIVE"
    MATURED = "MATURED"
    CLOSED = "CLOSED"


@dataclass
class SavingsPlan(StorageRecord):
    """Time-deposit plan linked to a source account"""
    user_id: str
    source_account_id: str
    plan_type: SavingsPlanType
    currency: Currency
    interest_rate: Decimal
    term_months: int
    start_date: datetime
    end_date: datetime
    principal: Optional[Decimal] = None        # FIXED_DEPOSIT only
    monthly_amount: Optional[Decimal] = None   # RECURRING_DEPOSIT only
    status: SavingsPlanStatus = SavingsPlanStatus.ACTIVE
    interest_credited_total: Decimal = ZERO
    total_deposited: Decimal = ZERO
    next_due_date: Optional[datetime] = None
    last_interest_credited_at: Optional[datetime] = None
    
    @property
    def is_fixed_deposit(self) -> bool:
        return self.plan_type == SavingsPlanType.FIXED_DEPOSIT
    
    @property
    def is_active(self) -> bool:
        return self.status == SavingsPlanStatus.ACTIVE
    
    @property
    def interest_base(self) -> Decimal:
        """Amount interest accrues on: principal for FD, deposits so far for RD"""
        if self.is_fixed_deposit:
            return self.principal or ZERO
        return self.total_deposited
    
    @property
    def current_value(self) -> Decimal:
        return round_money(self.interest_base + self.interest_credited_total)


class SavingsPlanManager:
    """
    Opens and queries savings plans
    """
    
    def __init__(self, storage: StorageInterface, account_manager: AccountManager,
                 ledger: TransactionLedger):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.plans_table = "savings_plans"
    
    def create_fixed_deposit(
        self,
        user_id: str,
        source_account_id: str,
        principal: AmountLike,
        term_months: int,
        interest_rate: AmountLike,
        now: Optional[datetime] = None
    ) -> SavingsPlan:
        """
        Open a fixed deposit, moving principal out of the source account
        
        The source must belong to the user, must not be a loan account and
        must cover the principal. The debit, its WITHDRAWAL entry and the plan
        are written in one unit of work.
        """
        principal = positive_amount(principal, "principal")
        rate = self._validate_terms(term_months, interest_rate)
        now = now or datetime.now(timezone.utc)
        
        with self.storage.atomic() as uow:
            source = self._load_source(uow, user_id, source_account_id)
            if source.available_balance < principal:
                raise InsufficientFundsError(source.available_balance, principal)
            
            plan = SavingsPlan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                source_account_id=source.id,
                plan_type=SavingsPlanType.FIXED_DEPOSIT,
                currency=source.currency,
                interest_rate=rate,
                term_months=term_months,
                start_date=now,
                end_date=add_months(now, term_months),
                principal=principal
            )
            balance_after = source.withdraw(principal, now)
            self.account_manager.save(uow, source)
            uow.insert(self.plans_table, plan.id, self._plan_to_dict(plan))
            self.ledger.record(
                uow, source.id, TransactionType.WITHDRAWAL, principal, balance_after,
                description=f"Fixed deposit - Plan #{plan.id}",
                created_at=now
            )
        
        log_action(logger, "info", "Fixed deposit opened", user_id=user_id,
                   action="savings.fixed_deposit", resource=plan.id,
                   extra={"principal": str(principal), "term_months": term_months})
        return plan
    
    def create_recurring_deposit(
        self,
        user_id: str,
        source_account_id: str,
        monthly_amount: AmountLike,
        term_months: int,
        interest_rate: AmountLike,
        now: Optional[datetime] = None
    ) -> SavingsPlan:
        """Open a recurring deposit; the first installment is due a month from now"""
        monthly_amount = positive_amount(monthly_amount, "monthly amount")
        rate = self._validate_terms(term_months, interest_rate)
        now = now or datetime.now(timezone.utc)
        
        with self.storage.atomic() as uow:
            source = self._load_source(uow, user_id, source_account_id)
            plan = SavingsPlan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                source_account_id=source.id,
                plan_type=SavingsPlanType.RECURRING_DEPOSIT,
                currency=source.currency,
                interest_rate=rate,
                term_months=term_months,
                start_date=now,
                end_date=add_months(now, term_months),
                monthly_amount=monthly_amount,
                next_due_date=add_months(now, 1)
            )
            uow.insert(self.plans_table, plan.id, self._plan_to_dict(plan))
        
        log_action(logger, "info", "Recurring deposit opened", user_id=user_id,
                   action="savings.recurring_deposit", resource=plan.id,
                   extra={"monthly_amount": str(monthly_amount), "term_months": term_months})
        return plan
    
    def get_plan(self, plan_id: str, user_id: Optional[str] = None) -> SavingsPlan:
        """Get a plan, optionally scoped to its owner"""
        data = self.storage.load(self.plans_table, plan_id)
        if not data or (user_id and data['user_id'] != user_id):
            raise NotFoundError("Savings plan", plan_id)
        return self._plan_from_dict(data)
    
    def list_plans(
        self,
        user_id: Optional[str] = None,
        status: Optional[SavingsPlanStatus] = None,
        plan_type: Optional[SavingsPlanType] = None
    ) -> List[SavingsPlan]:
        """List plans, oldest first"""
        filters = {}
        if user_id:
            filters["user_id"] = user_id
        if status:
            filters["status"] = status.name
        if plan_type:
            filters["plan_type"] = plan_type.name
        plans = [self._plan_from_dict(data) for data in self.storage.find(self.plans_table, filters)]
        plans.sort(key=lambda p: p.created_at)
        return plans
    
    def load_for_update(self, uow: UnitOfWork, plan_id: str) -> SavingsPlan:
        data = uow.load(self.plans_table, plan_id)
        if not data:
            raise NotFoundError("Savings plan", plan_id)
        return self._plan_from_dict(data)
    
    def save(self, uow: UnitOfWork, plan: SavingsPlan) -> None:
        uow.save(self.plans_table, plan.id, self._plan_to_dict(plan))
    
    def _validate_terms(self, term_months: int, interest_rate: AmountLike) -> Decimal:
        if not isinstance(term_months, int) or term_months < 1:
            raise ValidationError("Term must be at least one month")
        rate = to_decimal(interest_rate)
        if rate < ZERO:
            raise ValidationError("Interest rate cannot be negative")
        return rate
    
    def _load_source(self, uow: UnitOfWork, user_id: str, account_id: str):
        source = self.account_manager.load_for_update(uow, account_id)
        if source.user_id != user_id:
            raise NotFoundError("Account", account_id)
        if source.is_loan_account:
            raise AccountStateError("Savings plans cannot be funded from a loan account")
        return source
    
    def _plan_to_dict(self, plan: SavingsPlan) -> Dict:
        """Convert SavingsPlan to dictionary for storage"""
        return plan.to_dict()
    
    def _plan_from_dict(self, data: Dict) -> SavingsPlan:
        """Convert dictionary to SavingsPlan"""
        return SavingsPlan(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            source_account_id=data['source_account_id'],
            plan_type=SavingsPlanType[data['plan_type']],
            currency=Currency[data['currency']],
            interest_rate=parse_decimal(data['interest_rate']),
            term_months=data['term_months'],
            start_date=parse_datetime(data['start_date']),
            end_date=parse_datetime(data['end_date']),
            principal=parse_decimal(data.get('principal')),
            monthly_amount=parse_decimal(data.get('monthly_amount')),
            status=SavingsPlanStatus[data['status']],
            interest_credited_total=parse_decimal(data['interest_credited_total']),
            total_deposited=parse_decimal(data['total_deposited']),
            next_due_date=parse_datetime(data.get('next_due_date')),
            last_interest_credited_at=parse_datetime(data.get('last_interest_credited_at'))
        )

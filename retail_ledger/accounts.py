"""
Account Management Module

Account entity with its balance invariants and lifecycle transitions, and
the AccountManager that persists accounts and runs single-account commands
(deposit, withdraw, freeze, close, history) inside units of work.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import random
import re
import uuid

from .amortization import add_months
from .errors import (
    AccountStateError, DailyLimitExceededError, InsufficientFundsError,
    NotFoundError, StateConflictError, ValidationError
)
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .money import Currency, Money, ZERO, AmountLike, positive_amount, round_money, to_decimal
from .storage import (
    StorageInterface, StorageRecord, UnitOfWork,
    parse_date, parse_datetime, parse_decimal
)


logger = get_logger("accounts")

ACCOUNT_NUMBER_PATTERN = re.compile(r"^[A-Z0-9]{8,20}$")


class AccountType(Enum):
    """Retail account products"""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"
    LOAN = "LOAN"
    
    @classmethod
    def from_name(cls, value: Union[str, 'AccountType']) -> 'AccountType':
        if isinstance(value, AccountType):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unknown account type: {value}")


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"      # Normal operation
    INACTIVE = "INACTIVE"  # Dormant
    FROZEN = "FROZEN"      # Temporarily suspended
    CLOSED = "CLOSED"      # Permanently closed
    
    @classmethod
    def from_name(cls, value: Union[str, 'AccountStatus']) -> 'AccountStatus':
        if isinstance(value, AccountStatus):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValidationError(f"Unknown account status: {value}")


def normalize_account_number(value: str) -> str:
    """Trim and upper-case an account number, validating its shape"""
    if value is None:
        raise ValidationError("Account number is required")
    normalized = str(value).strip().upper()
    if not ACCOUNT_NUMBER_PATTERN.match(normalized):
        raise ValidationError(
            "Account number must be 8-20 characters of uppercase letters and digits"
        )
    return normalized


@dataclass
class Account(StorageRecord):
    """
    Retail bank account. Balance changes go through deposit/withdraw so the
    balance invariants hold; persistence is the caller's job.
    """
    account_number: str
    user_id: str
    account_type: AccountType
    currency: Currency
    balance: Decimal = ZERO
    available_balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    interest_rate: Optional[Decimal] = None   # Annual percent
    minimum_balance: Optional[Decimal] = None
    loan_amount: Optional[Decimal] = None
    loan_term_months: Optional[int] = None
    loan_start_date: Optional[date] = None
    loan_end_date: Optional[date] = None
    monthly_payment: Optional[Decimal] = None
    daily_withdrawal_limit: Optional[Decimal] = None
    transfer_fee_percent: Optional[Decimal] = None
    transfer_fee_fixed: Optional[Decimal] = None
    last_interest_credited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    
    def __post_init__(self):
        self.account_number = normalize_account_number(self.account_number)
        if self.balance < ZERO:
            raise ValidationError("Account balance cannot be negative")
    
    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
    
    @property
    def is_loan_account(self) -> bool:
        return self.account_type == AccountType.LOAN
    
    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
    
    @property
    def money_balance(self) -> Money:
        return Money(self.balance, self.currency)
    
    def can_withdraw(self, amount: Decimal) -> bool:
        """Check if a debit of amount would be accepted"""
        return (
            self.is_active
            and not self.is_loan_account
            and self.available_balance >= amount
        )
    
    def _touch(self, now: Optional[datetime]) -> None:
        self.updated_at = now or datetime.now(timezone.utc)
    
    def deposit(self, amount: AmountLike, now: Optional[datetime] = None) -> Decimal:
        """Credit the account; returns the new balance"""
        amount = positive_amount(amount, "deposit amount")
        if self.status == AccountStatus.CLOSED:
            raise AccountStateError(f"Account {self.account_number} is closed")
        self.balance = round_money(self.balance + amount)
        self.available_balance = self.balance
        self._touch(now)
        return self.balance
    
    def withdraw(self, amount: AmountLike, now: Optional[datetime] = None) -> Decimal:
        """Debit the account; returns the new balance"""
        amount = positive_amount(amount, "withdrawal amount")
        if self.is_loan_account:
            raise AccountStateError("Loan accounts cannot be debited")
        if not self.is_active:
            raise AccountStateError(
                f"Account {self.account_number} is {self.status.value.lower()}"
            )
        if self.available_balance < amount:
            raise InsufficientFundsError(self.available_balance, amount)
        self.balance = round_money(self.balance - amount)
        self.available_balance = self.balance
        self._touch(now)
        return self.balance
    
    def freeze(self, now: Optional[datetime] = None) -> None:
        if self.status != AccountStatus.ACTIVE:
            raise AccountStateError("Only active accounts can be frozen")
        self.status = AccountStatus.FROZEN
        self._touch(now)
    
    def unfreeze(self, now: Optional[datetime] = None) -> None:
        if self.status != AccountStatus.FROZEN:
            raise AccountStateError("Only frozen accounts can be unfrozen")
        self.status = AccountStatus.ACTIVE
        self._touch(now)
    
    def close(self, now: Optional[datetime] = None) -> None:
        if self.status == AccountStatus.CLOSED:
            raise AccountStateError(f"Account {self.account_number} is already closed")
        if self.balance != ZERO:
            raise AccountStateError(
                f"Cannot close account with non-zero balance ({self.money_balance})"
            )
        self.status = AccountStatus.CLOSED
        self._touch(now)


class AccountManager:
    """
    Manages account lifecycle, persistence and single-account money movement
    """
    
    def __init__(
        self,
        storage: StorageInterface,
        ledger: TransactionLedger,
        number_max_attempts: int = 10,
        history_default_limit: int = 50,
        history_max_limit: int = 100
    ):
        self.storage = storage
        self.ledger = ledger
        self.accounts_table = "accounts"
        self.number_max_attempts = number_max_attempts
        self.history_default_limit = history_default_limit
        self.history_max_limit = history_max_limit
    
    def create_account(
        self,
        user_id: str,
        account_type: AccountType,
        currency: Currency = Currency.USD,
        interest_rate: Optional[AmountLike] = None,
        minimum_balance: Optional[AmountLike] = None,
        loan_amount: Optional[AmountLike] = None,
        loan_term_months: Optional[int] = None,
        monthly_payment: Optional[AmountLike] = None,
        daily_withdrawal_limit: Optional[AmountLike] = None,
        transfer_fee_percent: Optional[AmountLike] = None,
        transfer_fee_fixed: Optional[AmountLike] = None,
        now: Optional[datetime] = None
    ) -> Account:
        """
        Open a new account with zero balance
        
        Args:
            user_id: Owner of the account
            account_type: CHECKING, SAVINGS or LOAN
            currency: Account currency
            interest_rate: Annual interest rate in percent
            minimum_balance: Informational minimum balance
            loan_amount: Principal for LOAN accounts
            loan_term_months: Term for LOAN accounts
            monthly_payment: Installment for LOAN accounts (defaults to
                loan_amount / loan_term_months)
            daily_withdrawal_limit: Cap on WITHDRAWAL + TRANSFER_OUT per UTC day
            transfer_fee_percent: Percent fee on outgoing transfers
            transfer_fee_fixed: Fixed fee on outgoing transfers
            now: Creation timestamp (defaults to now)
            
        Returns:
            Created Account object
        """
        with self.storage.atomic() as unit:
            account = self.open_account(
                unit, user_id, account_type, currency,
                interest_rate=interest_rate,
                minimum_balance=minimum_balance,
                loan_amount=loan_amount,
                loan_term_months=loan_term_months,
                monthly_payment=monthly_payment,
                daily_withdrawal_limit=daily_withdrawal_limit,
                transfer_fee_percent=transfer_fee_percent,
                transfer_fee_fixed=transfer_fee_fixed,
                now=now
            )
        
        log_action(logger, "info", "Account created", user_id=user_id,
                   action="account.create", resource=account.id,
                   extra={"account_number": account.account_number,
                          "account_type": account.account_type.name,
                          "currency": account.currency.code})
        return account
    
    def open_account(
        self,
        uow: UnitOfWork,
        user_id: str,
        account_type: AccountType,
        currency: Currency = Currency.USD,
        interest_rate: Optional[AmountLike] = None,
        minimum_balance: Optional[AmountLike] = None,
        loan_amount: Optional[AmountLike] = None,
        loan_term_months: Optional[int] = None,
        monthly_payment: Optional[AmountLike] = None,
        daily_withdrawal_limit: Optional[AmountLike] = None,
        transfer_fee_percent: Optional[AmountLike] = None,
        transfer_fee_fixed: Optional[AmountLike] = None,
        now: Optional[datetime] = None
    ) -> Account:
        """Insert a new account inside the caller's unit of work"""
        if not user_id:
            raise ValidationError("User id is required")
        account_type = AccountType.from_name(account_type)
        currency = Currency.from_code(currency)
        now = now or datetime.now(timezone.utc)
        
        loan_start_date = loan_end_date = None
        if loan_amount is not None:
            loan_amount = positive_amount(loan_amount, "loan amount")
        if loan_term_months is not None and (not isinstance(loan_term_months, int) or loan_term_months < 1):
            raise ValidationError("Loan term must be at least one month")
        if monthly_payment is not None:
            monthly_payment = positive_amount(monthly_payment, "monthly payment")
        if account_type == AccountType.LOAN and loan_amount is not None and loan_term_months:
            loan_start_date = now.date()
            loan_end_date = add_months(loan_start_date, loan_term_months)
            if monthly_payment is None:
                monthly_payment = round_money(loan_amount / loan_term_months)
        
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=self._generate_account_number(uow, now),
            user_id=user_id,
            account_type=account_type,
            currency=currency,
            interest_rate=_optional_rate(interest_rate, "interest rate"),
            minimum_balance=_optional_money(minimum_balance, "minimum balance"),
            loan_amount=loan_amount,
            loan_term_months=loan_term_months,
            loan_start_date=loan_start_date,
            loan_end_date=loan_end_date,
            monthly_payment=monthly_payment,
            daily_withdrawal_limit=_optional_money(daily_withdrawal_limit, "daily withdrawal limit"),
            transfer_fee_percent=_optional_rate(transfer_fee_percent, "transfer fee percent"),
            transfer_fee_fixed=_optional_money(transfer_fee_fixed, "transfer fee")
        )
        uow.insert(self.accounts_table, account.id, self._account_to_dict(account))
        return account
    
    def get_account(self, account_id: str, include_deleted: bool = False) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            account = self._account_from_dict(data)
            if include_deleted or not account.is_deleted:
                return account
        return None
    
    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        found = self.storage.find(self.accounts_table, {"account_number": account_number.strip().upper()})
        for data in found:
            account = self._account_from_dict(data)
            if not account.is_deleted:
                return account
        return None
    
    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise NotFoundError"""
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError("Account", account_id)
        return account
    
    def list_accounts(
        self,
        user_id: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        status: Optional[AccountStatus] = None,
        include_deleted: bool = False
    ) -> List[Account]:
        """List accounts, oldest first, with optional filters"""
        filters = {}
        if user_id:
            filters["user_id"] = user_id
        if account_type:
            filters["account_type"] = AccountType.from_name(account_type).name
        if status:
            filters["status"] = AccountStatus.from_name(status).name
        accounts = [self._account_from_dict(data) for data in self.storage.find(self.accounts_table, filters)]
        if not include_deleted:
            accounts = [a for a in accounts if not a.is_deleted]
        accounts.sort(key=lambda a: a.created_at)
        return accounts
    
    def load_for_update(self, uow: UnitOfWork, account_id: str) -> Account:
        """Load a live account inside a unit of work"""
        data = uow.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError("Account", account_id)
        account = self._account_from_dict(data)
        if account.is_deleted:
            raise NotFoundError("Account", account_id)
        return account
    
    def load_by_number_for_update(self, uow: UnitOfWork, account_number: str) -> Account:
        """Resolve an account number and load the account inside a unit of work"""
        number = (account_number or "").strip().upper()
        if not number:
            raise ValidationError("Destination account number is required")
        for data in uow.find(self.accounts_table, {"account_number": number}):
            if not data.get("deleted_at"):
                return self.load_for_update(uow, data["id"])
        raise NotFoundError("Account", number)
    
    def save(self, uow: UnitOfWork, account: Account) -> None:
        """Persist an account inside a unit of work"""
        uow.save(self.accounts_table, account.id, self._account_to_dict(account))
    
    def check_daily_limit(self, uow: UnitOfWork, account: Account, amount: Decimal,
                          now: datetime) -> None:
        """Reject a debit that would exceed the account's daily limit"""
        limit = account.daily_withdrawal_limit
        if limit is None:
            return
        used = self.ledger.debited_today(uow, account.id, now)
        if used + amount > limit:
            raise DailyLimitExceededError(limit, used, amount)
    
    def deposit(
        self,
        account_id: str,
        amount: AmountLike,
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Credit an account and record a DEPOSIT entry"""
        amount = positive_amount(amount, "deposit amount")
        now = now or datetime.now(timezone.utc)
        
        with self.storage.atomic() as uow:
            account = self.load_for_update(uow, account_id)
            balance_after = account.deposit(amount, now)
            self.save(uow, account)
            transaction = self.ledger.record(
                uow, account.id, TransactionType.DEPOSIT, amount, balance_after,
                description=description or "Deposit", created_at=now
            )
        
        log_action(logger, "info", "Deposit posted", user_id=account.user_id,
                   action="account.deposit", resource=account.id,
                   extra={"amount": str(amount), "reference": transaction.reference_number})
        return {
            "account_id": account.id,
            "transaction_id": transaction.id,
            "reference_number": transaction.reference_number,
            "balance_after": balance_after
        }
    
    def withdraw(
        self,
        account_id: str,
        amount: AmountLike,
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Debit an account within its daily limit and record a WITHDRAWAL entry"""
        amount = positive_amount(amount, "withdrawal amount")
        now = now or datetime.now(timezone.utc)
        
        with self.storage.atomic() as uow:
            account = self.load_for_update(uow, account_id)
            self.check_daily_limit(uow, account, amount, now)
            balance_after = account.withdraw(amount, now)
            self.save(uow, account)
            transaction = self.ledger.record(
                uow, account.id, TransactionType.WITHDRAWAL, amount, balance_after,
                description=description or "Withdrawal", created_at=now
            )
        
        log_action(logger, "info", "Withdrawal posted", user_id=account.user_id,
                   action="account.withdraw", resource=account.id,
                   extra={"amount": str(amount), "reference": transaction.reference_number})
        return {
            "account_id": account.id,
            "transaction_id": transaction.id,
            "reference_number": transaction.reference_number,
            "balance_after": balance_after
        }
    
    def update_account(
        self,
        account_id: str,
        status: Optional[AccountStatus] = None,
        interest_rate: Optional[AmountLike] = None,
        minimum_balance: Optional[AmountLike] = None,
        daily_withdrawal_limit: Optional[AmountLike] = None,
        transfer_fee_percent: Optional[AmountLike] = None,
        transfer_fee_fixed: Optional[AmountLike] = None,
        now: Optional[datetime] = None
    ) -> Account:
        """
        Update account settings and, optionally, its status.
        
        Status changes follow the entity transitions: FROZEN only from ACTIVE,
        ACTIVE only from FROZEN, CLOSED only at zero balance.
        """
        if status is not None:
            status = AccountStatus.from_name(status)
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            account = self.load_for_update(uow, account_id)
            old_status = account.status
            
            if status is not None:
                if status == AccountStatus.FROZEN:
                    account.freeze(now)
                elif status == AccountStatus.ACTIVE:
                    account.unfreeze(now)
                elif status == AccountStatus.CLOSED:
                    account.close(now)
                else:
                    raise StateConflictError(f"Cannot move account to {status.name}")
            
            if interest_rate is not None:
                account.interest_rate = _optional_rate(interest_rate, "interest rate")
            if minimum_balance is not None:
                account.minimum_balance = _optional_money(minimum_balance, "minimum balance")
            if daily_withdrawal_limit is not None:
                account.daily_withdrawal_limit = _optional_money(daily_withdrawal_limit, "daily withdrawal limit")
            if transfer_fee_percent is not None:
                account.transfer_fee_percent = _optional_rate(transfer_fee_percent, "transfer fee percent")
            if transfer_fee_fixed is not None:
                account.transfer_fee_fixed = _optional_money(transfer_fee_fixed, "transfer fee")
            account.updated_at = now
            self.save(uow, account)
        
        log_action(logger, "info", "Account updated", user_id=account.user_id,
                   action="account.update", resource=account.id,
                   extra={"old_status": old_status.name, "new_status": account.status.name})
        return account
    
    def freeze_account(self, account_id: str, now: Optional[datetime] = None) -> Account:
        """Freeze an active account"""
        return self.update_account(account_id, status=AccountStatus.FROZEN, now=now)
    
    def unfreeze_account(self, account_id: str, now: Optional[datetime] = None) -> Account:
        """Reactivate a frozen account"""
        return self.update_account(account_id, status=AccountStatus.ACTIVE, now=now)
    
    def close_account(self, account_id: str, now: Optional[datetime] = None) -> Account:
        """Close an account with zero balance"""
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            account = self.load_for_update(uow, account_id)
            account.close(now)
            self.save(uow, account)
        
        log_action(logger, "info", "Account closed", user_id=account.user_id,
                   action="account.close", resource=account.id)
        return account
    
    def delete_account(self, account_id: str, now: Optional[datetime] = None) -> Account:
        """Soft-delete an account with zero balance"""
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic() as uow:
            data = uow.load(self.accounts_table, account_id)
            if not data:
                raise NotFoundError("Account", account_id)
            account = self._account_from_dict(data)
            if account.is_deleted:
                raise StateConflictError(f"Account {account.account_number} is already deleted")
            if account.balance != ZERO:
                raise AccountStateError(
                    f"Cannot delete account with non-zero balance ({account.money_balance})"
                )
            account.deleted_at = now
            account.updated_at = now
            self.save(uow, account)
        
        log_action(logger, "info", "Account deleted", user_id=account.user_id,
                   action="account.delete", resource=account.id)
        return account
    
    def get_account_history(
        self,
        account_id: str,
        transaction_type: Optional[TransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Page through an account's transactions, newest first"""
        self.require_account(account_id)
        limit = self.history_default_limit if limit is None else limit
        if limit < 1 or limit > self.history_max_limit:
            raise ValidationError(f"Limit must be between 1 and {self.history_max_limit}")
        if offset < 0:
            raise ValidationError("Offset cannot be negative")
        
        transactions = self.ledger.get_account_transactions(account_id, transaction_type, start, end)
        return {
            "transactions": transactions[offset:offset + limit],
            "total": len(transactions),
            "limit": limit,
            "offset": offset
        }
    
    def _generate_account_number(self, uow: UnitOfWork, now: datetime) -> str:
        """Generate a unique ACCT<8 timestamp digits><4 random digits> number"""
        for _ in range(self.number_max_attempts):
            stamp = str(int(now.timestamp() * 1000))[-8:]
            candidate = f"ACCT{stamp}{random.randint(0, 9999):04d}"
            if not uow.find(self.accounts_table, {"account_number": candidate}):
                return candidate
        raise StateConflictError("Could not generate a unique account number")
    
    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return account.to_dict()
    
    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_number=data['account_number'],
            user_id=data['user_id'],
            account_type=AccountType[data['account_type']],
            currency=Currency[data['currency']],
            balance=parse_decimal(data['balance']),
            available_balance=parse_decimal(data['available_balance']),
            status=AccountStatus[data['status']],
            interest_rate=parse_decimal(data.get('interest_rate')),
            minimum_balance=parse_decimal(data.get('minimum_balance')),
            loan_amount=parse_decimal(data.get('loan_amount')),
            loan_term_months=data.get('loan_term_months'),
            loan_start_date=parse_date(data.get('loan_start_date')),
            loan_end_date=parse_date(data.get('loan_end_date')),
            monthly_payment=parse_decimal(data.get('monthly_payment')),
            daily_withdrawal_limit=parse_decimal(data.get('daily_withdrawal_limit')),
            transfer_fee_percent=parse_decimal(data.get('transfer_fee_percent')),
            transfer_fee_fixed=parse_decimal(data.get('transfer_fee_fixed')),
            last_interest_credited_at=parse_datetime(data.get('last_interest_credited_at')),
            deleted_at=parse_datetime(data.get('deleted_at'))
        )


def _optional_money(value: Optional[AmountLike], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    amount = round_money(value)
    if amount < ZERO:
        raise ValidationError(f"{field_name.capitalize()} cannot be negative")
    return amount


def _optional_rate(value: Optional[AmountLike], field_name: str) -> Optional[Decimal]:
    if value is None:
        return None
    rate = to_decimal(value)
    if rate < ZERO or rate > Decimal('100'):
        raise ValidationError(f"{field_name.capitalize()} must be between 0 and 100")
    return rate

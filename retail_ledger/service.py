"""
Banking Service Module

Wires every ledger component over one storage backend and exposes the
command entry points an outer HTTP or job layer calls. Authentication and
request validation belong to that outer layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountManager, AccountType
from .config import LedgerConfig, get_config
from .interest import MonthlyInterestJob, next_run_after
from .ledger import TransactionLedger, TransactionType
from .loans import LoanApplication, LoanApplicationStatus, LoanManager, LoanRepayment, LoanType
from .logging_config import get_logger
from .money import AmountLike, Currency
from .savings import SavingsPlan, SavingsPlanManager, SavingsPlanStatus
from .storage import StorageInterface, create_storage
from .transfers import TransferOrchestrator


logger = get_logger("service")


class BankingService:
    """Retail ledger core with all components initialized"""
    
    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage
        
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(
            self.storage, self.ledger,
            number_max_attempts=self.config.account_number_max_attempts,
            history_default_limit=self.config.history_default_limit,
            history_max_limit=self.config.history_max_limit
        )
        self.transfer_orchestrator = TransferOrchestrator(self.storage, self.account_manager, self.ledger)
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.ledger,
            default_penalty_rate_percent=self.config.default_penalty_rate_percent,
            max_term_months=self.config.max_loan_term_months,
            max_interest_rate=self.config.max_loan_interest_rate,
            default_currency=Currency.from_code(self.config.default_currency)
        )
        self.savings_manager = SavingsPlanManager(self.storage, self.account_manager, self.ledger)
        self.interest_job = MonthlyInterestJob(
            self.storage, self.account_manager, self.savings_manager, self.ledger
        )
    
    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'BankingService':
        """Build a service whose storage comes from config.database_url"""
        config = config or get_config()
        logger.info("Opening ledger storage", extra={"resource": config.database_url.split("@")[-1]})
        return cls(create_storage(config.database_url), config)
    
    def close(self) -> None:
        self.storage.close()
    
    # Accounts
    
    def create_account(self, user_id: str, account_type: AccountType,
                       currency: Optional[Currency] = None, **settings) -> Account:
        return self.account_manager.create_account(
            user_id, account_type, currency or Currency.from_code(self.config.default_currency),
            **settings
        )
    
    def get_account(self, account_id: str) -> Account:
        return self.account_manager.require_account(account_id)
    
    def list_accounts(self, user_id: Optional[str] = None, **filters) -> List[Account]:
        return self.account_manager.list_accounts(user_id, **filters)
    
    def update_account(self, account_id: str, **changes) -> Account:
        return self.account_manager.update_account(account_id, **changes)
    
    def close_account(self, account_id: str) -> Account:
        return self.account_manager.close_account(account_id)
    
    def delete_account(self, account_id: str) -> Account:
        return self.account_manager.delete_account(account_id)
    
    def deposit(self, account_id: str, amount: AmountLike,
                description: Optional[str] = None) -> Dict[str, Any]:
        return self.account_manager.deposit(account_id, amount, description)
    
    def withdraw(self, account_id: str, amount: AmountLike,
                 description: Optional[str] = None) -> Dict[str, Any]:
        return self.account_manager.withdraw(account_id, amount, description)
    
    def transfer(self, from_account_id: str, to_account_number: str, amount: AmountLike,
                 description: Optional[str] = None) -> Dict[str, Any]:
        return self.transfer_orchestrator.transfer(from_account_id, to_account_number, amount, description)
    
    def get_account_history(self, account_id: str,
                            transaction_type: Optional[TransactionType] = None,
                            **paging) -> Dict[str, Any]:
        return self.account_manager.get_account_history(account_id, transaction_type, **paging)
    
    # Loans
    
    def apply_loan(self, user_id: str, loan_type: LoanType, amount: AmountLike, term_months: int,
                   purpose: Optional[str] = None, currency: Optional[Currency] = None,
                   penalty_rate_percent_per_month: Optional[AmountLike] = None) -> LoanApplication:
        return self.loan_manager.apply_loan(
            user_id, loan_type, amount, term_months, purpose, currency,
            penalty_rate_percent_per_month
        )
    
    def approve_loan(self, application_id: str, decided_by_user_id: str,
                     interest_rate: AmountLike) -> LoanApplication:
        return self.loan_manager.approve_loan(application_id, decided_by_user_id, interest_rate)
    
    def reject_loan(self, application_id: str, decided_by_user_id: str,
                    reason: Optional[str] = None) -> LoanApplication:
        return self.loan_manager.reject_loan(application_id, decided_by_user_id, reason)
    
    def get_loan_application(self, application_id: str, user_id: Optional[str] = None) -> LoanApplication:
        return self.loan_manager.get_application(application_id, user_id)
    
    def list_loan_applications(self, user_id: Optional[str] = None,
                               status: Optional[LoanApplicationStatus] = None,
                               limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        return self.loan_manager.list_applications(user_id, status, limit, offset)
    
    def get_repayment_schedule(self, application_id: str,
                               user_id: Optional[str] = None) -> List[LoanRepayment]:
        return self.loan_manager.get_repayment_schedule(application_id, user_id)
    
    def pay_repayment(self, repayment_id: str, from_account_id: str, user_id: str) -> LoanRepayment:
        return self.loan_manager.pay_repayment(repayment_id, from_account_id, user_id)
    
    # Savings plans
    
    def create_fixed_deposit(self, user_id: str, source_account_id: str, principal: AmountLike,
                             term_months: int, interest_rate: AmountLike) -> SavingsPlan:
        return self.savings_manager.create_fixed_deposit(
            user_id, source_account_id, principal, term_months, interest_rate
        )
    
    def create_recurring_deposit(self, user_id: str, source_account_id: str, monthly_amount: AmountLike,
                                 term_months: int, interest_rate: AmountLike) -> SavingsPlan:
        return self.savings_manager.create_recurring_deposit(
            user_id, source_account_id, monthly_amount, term_months, interest_rate
        )
    
    def get_savings_plan(self, plan_id: str, user_id: Optional[str] = None) -> SavingsPlan:
        return self.savings_manager.get_plan(plan_id, user_id)
    
    def list_savings_plans(self, user_id: Optional[str] = None,
                           status: Optional[SavingsPlanStatus] = None) -> List[SavingsPlan]:
        return self.savings_manager.list_plans(user_id, status)
    
    # Batch
    
    def run_monthly_interest_job(self, as_of: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        return self.interest_job.run(as_of)
    
    def next_interest_job_run(self, after: datetime) -> datetime:
        return next_run_after(after, self.config.interest_job_day, self.config.interest_job_hour)

"""
Interest & Maturity Accrual Module

The monthly batch job: matures savings plans, credits interest on savings
accounts and fixed deposits, and collects recurring-deposit installments.
Each item runs in its own unit of work; a failing item is logged and the
batch moves on. Re-running within the same month does not credit twice.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .accounts import AccountManager, AccountStatus, AccountType
from .amortization import add_months
from .ledger import TransactionLedger, TransactionType, utc_day_bounds
from .logging_config import get_logger, log_action
from .money import ZERO, round_money
from .savings import SavingsPlan, SavingsPlanManager, SavingsPlanStatus, SavingsPlanType


logger = get_logger("interest")

PHASES = ("maturities", "savings_accounts", "fixed_deposits", "recurring_deposits")


def monthly_interest(base: Decimal, annual_rate_percent: Optional[Decimal]) -> Decimal:
    """One month of simple interest: round2(base * rate / 12 / 100)"""
    if not annual_rate_percent or base <= ZERO:
        return ZERO
    return round_money(base * annual_rate_percent / Decimal('12') / Decimal('100'))


def start_of_month(moment: datetime) -> datetime:
    """00:00 UTC on the 1st of moment's month"""
    moment = moment.astimezone(timezone.utc)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def credited_this_period(last_credited_at: Optional[datetime], now: datetime) -> bool:
    """True when interest was already credited in now's calendar month"""
    return last_credited_at is not None and last_credited_at >= start_of_month(now)


def next_run_after(moment: datetime, day: int = 1, hour: int = 0) -> datetime:
    """Next scheduled job time strictly after moment (UTC)"""
    moment = moment.astimezone(timezone.utc)
    candidate = moment.replace(day=day, hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= moment:
        candidate = add_months(candidate, 1)
    return candidate


class MonthlyInterestJob:
    """
    Batch job conventionally run on the first day of each month at 00:00 UTC
    """
    
    def __init__(
        self,
        storage,
        account_manager: AccountManager,
        savings_manager: SavingsPlanManager,
        ledger: TransactionLedger
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.savings_manager = savings_manager
        self.ledger = ledger
    
    def run(self, as_of: Optional[datetime] = None) -> Dict[str, Dict[str, int]]:
        """
        Run all phases in order
        
        Args:
            as_of: Run timestamp (defaults to now)
            
        Returns:
            Per-phase counts of processed, skipped and failed items
        """
        now = as_of or datetime.now(timezone.utc)
        results = {phase: {"processed": 0, "skipped": 0, "failed": 0} for phase in PHASES}
        
        log_action(logger, "info", "Monthly interest job started",
                   action="interest.job.start", extra={"as_of": now.isoformat()})
        
        day_end = utc_day_bounds(now)[1]
        for plan in self.savings_manager.list_plans(status=SavingsPlanStatus.ACTIVE):
            if plan.end_date < day_end:
                self._run_item(results["maturities"], "maturity", plan.id,
                               lambda p=plan: self._mature_plan(p.id, now))
        
        for account in self.account_manager.list_accounts(
            account_type=AccountType.SAVINGS, status=AccountStatus.ACTIVE
        ):
            if not account.interest_rate or account.interest_rate <= ZERO:
                continue
            if credited_this_period(account.last_interest_credited_at, now):
                continue
            self._run_item(results["savings_accounts"], "savings_interest", account.id,
                           lambda a=account: self._credit_account_interest(a.id, now))
        
        for plan in self.savings_manager.list_plans(
            status=SavingsPlanStatus.ACTIVE, plan_type=SavingsPlanType.FIXED_DEPOSIT
        ):
            self._run_item(results["fixed_deposits"], "fixed_deposit_interest", plan.id,
                           lambda p=plan: self._accrue_plan_interest(p.id, now))
        
        for plan in self.savings_manager.list_plans(
            status=SavingsPlanStatus.ACTIVE, plan_type=SavingsPlanType.RECURRING_DEPOSIT
        ):
            self._run_item(results["recurring_deposits"], "recurring_deposit", plan.id,
                           lambda p=plan: self._process_recurring_deposit(p.id, now))
        
        log_action(logger, "info", "Monthly interest job finished",
                   action="interest.job.finish", extra=results)
        return results
    
    def _run_item(self, counts: Dict[str, int], action: str, item_id: str,
                  step: Callable[[], bool]) -> None:
        """Run one item, isolating its failure from the rest of the batch"""
        try:
            if step():
                counts["processed"] += 1
            else:
                counts["skipped"] += 1
        except Exception as e:
            counts["failed"] += 1
            log_action(logger, "error", f"Monthly interest job item failed: {e}",
                       action=f"interest.{action}", resource=item_id, exc_info=True)
    
    def _mature_plan(self, plan_id: str, now: datetime) -> bool:
        """Pay out a plan's current value to its source account and mark it MATURED"""
        with self.storage.atomic() as uow:
            plan = self.savings_manager.load_for_update(uow, plan_id)
            if not plan.is_active:
                return False
            source_data = uow.load(self.account_manager.accounts_table, plan.source_account_id)
            source = self.account_manager._account_from_dict(source_data) if source_data else None
            if source is None or source.is_deleted or not source.is_active:
                log_action(logger, "warning", "Maturity skipped: source account unavailable",
                           action="interest.maturity", resource=plan.id)
                return False
            
            payout = plan.current_value
            if payout > ZERO:
                balance_after = source.deposit(payout, now)
                self.account_manager.save(uow, source)
                self.ledger.record(
                    uow, source.id, TransactionType.DEPOSIT, payout, balance_after,
                    description=f"Savings plan matured - Plan #{plan.id} ({plan.plan_type.name})",
                    metadata={"savings_plan_id": plan.id},
                    created_at=now
                )
            plan.status = SavingsPlanStatus.MATURED
            plan.updated_at = now
            self.savings_manager.save(uow, plan)
        
        log_action(logger, "info", "Savings plan matured", user_id=plan.user_id,
                   action="interest.maturity", resource=plan.id,
                   extra={"payout": str(payout)})
        return True
    
    def _credit_account_interest(self, account_id: str, now: datetime) -> bool:
        """Credit one month of interest to a savings account"""
        with self.storage.atomic() as uow:
            account = self.account_manager.load_for_update(uow, account_id)
            if not account.is_active or credited_this_period(account.last_interest_credited_at, now):
                return False
            interest = monthly_interest(account.balance, account.interest_rate)
            if interest <= ZERO:
                return False
            balance_after = account.deposit(interest, now)
            account.last_interest_credited_at = now
            self.account_manager.save(uow, account)
            self.ledger.record(
                uow, account.id, TransactionType.INTEREST_CREDIT, interest, balance_after,
                description="Monthly interest",
                created_at=now
            )
        
        log_action(logger, "info", "Interest credited", user_id=account.user_id,
                   action="interest.savings_interest", resource=account.id,
                   extra={"interest": str(interest)})
        return True
    
    def _accrue_plan_interest(self, plan_id: str, now: datetime) -> bool:
        """Add one month of interest to a fixed deposit's credited total"""
        with self.storage.atomic() as uow:
            plan = self.savings_manager.load_for_update(uow, plan_id)
            if not plan.is_active:
                return False
            return self._accrue_interest(uow, plan, now)
    
    def _accrue_interest(self, uow, plan: SavingsPlan, now: datetime) -> bool:
        if credited_this_period(plan.last_interest_credited_at, now):
            return False
        interest = monthly_interest(plan.interest_base, plan.interest_rate)
        if interest <= ZERO:
            return False
        plan.interest_credited_total = round_money(plan.interest_credited_total + interest)
        plan.last_interest_credited_at = now
        plan.updated_at = now
        self.savings_manager.save(uow, plan)
        log_action(logger, "info", "Plan interest accrued", user_id=plan.user_id,
                   action="interest.plan_interest", resource=plan.id,
                   extra={"interest": str(interest)})
        return True
    
    def _process_recurring_deposit(self, plan_id: str, now: datetime) -> bool:
        """Collect a due installment, then accrue interest on deposits so far"""
        collected = False
        with self.storage.atomic() as uow:
            plan = self.savings_manager.load_for_update(uow, plan_id)
            if not plan.is_active:
                return False
            
            if plan.next_due_date and plan.next_due_date <= now:
                collected = self._collect_installment(uow, plan, now)
            
            accrued = self._accrue_interest(uow, plan, now)
        return collected or accrued
    
    def _collect_installment(self, uow, plan: SavingsPlan, now: datetime) -> bool:
        source_data = uow.load(self.account_manager.accounts_table, plan.source_account_id)
        source = self.account_manager._account_from_dict(source_data) if source_data else None
        amount = plan.monthly_amount
        if source is None or source.is_deleted or not source.can_withdraw(amount):
            log_action(logger, "info", "Recurring deposit installment skipped",
                       user_id=plan.user_id, action="interest.recurring_deposit",
                       resource=plan.id)
            return False
        
        balance_after = source.withdraw(amount, now)
        self.account_manager.save(uow, source)
        self.ledger.record(
            uow, source.id, TransactionType.WITHDRAWAL, amount, balance_after,
            description=f"Recurring deposit - Plan #{plan.id}",
            metadata={"savings_plan_id": plan.id},
            created_at=now
        )
        plan.total_deposited = round_money(plan.total_deposited + amount)
        plan.next_due_date = add_months(plan.next_due_date, 1)
        plan.updated_at = now
        self.savings_manager.save(uow, plan)
        return True

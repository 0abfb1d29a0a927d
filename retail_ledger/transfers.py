"""
Transfer Module

Two-account transfers with fees. The debit, the credit and both ledger legs
are written in a single unit of work.
"""

from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .accounts import Account, AccountManager
from .errors import StateConflictError, ValidationError
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, AmountLike, positive_amount, round_money


logger = get_logger("transfers")


def calculate_transfer_fee(account: Account, amount: Decimal) -> Decimal:
    """Percent part (rounded) plus fixed part, each only when configured and positive"""
    fee = ZERO
    if account.transfer_fee_percent and account.transfer_fee_percent > ZERO:
        fee += round_money(amount * account.transfer_fee_percent / Decimal('100'))
    if account.transfer_fee_fixed and account.transfer_fee_fixed > ZERO:
        fee += account.transfer_fee_fixed
    return round_money(fee)


class TransferOrchestrator:
    """
    Moves money between two accounts of the same currency
    """
    
    def __init__(self, storage, account_manager: AccountManager, ledger: TransactionLedger):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
    
    def transfer(
        self,
        from_account_id: str,
        to_account_number: str,
        amount: AmountLike,
        description: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Transfer amount from an account to the account with the given number
        
        The source is debited amount + fee (checked against its daily limit)
        and the destination credited exactly amount. A TRANSFER_OUT entry on
        the source (reference ``ref``, fee in metadata) and a TRANSFER_IN
        entry on the destination (reference ``ref-IN``) link the two legs.
        
        Returns:
            Dict with from_account_id, to_account_id, reference_number, fee
        """
        amount = positive_amount(amount, "transfer amount")
        if not to_account_number or not str(to_account_number).strip():
            raise ValidationError("Destination account number is required")
        now = now or datetime.now(timezone.utc)
        note = (description or "").strip()
        
        with self.storage.atomic() as uow:
            source = self.account_manager.load_for_update(uow, from_account_id)
            destination = self.account_manager.load_by_number_for_update(uow, to_account_number)
            if source.id == destination.id:
                raise ValidationError("Cannot transfer to the same account")
            if source.currency != destination.currency:
                raise StateConflictError(
                    f"Currency mismatch: {source.currency.code} to {destination.currency.code}"
                )
            
            fee = calculate_transfer_fee(source, amount)
            total_debit = round_money(amount + fee)
            self.account_manager.check_daily_limit(uow, source, total_debit, now)
            
            source_balance = source.withdraw(total_debit, now)
            destination_balance = destination.deposit(amount, now)
            self.account_manager.save(uow, source)
            self.account_manager.save(uow, destination)
            
            reference = self.ledger.generate_reference_number(now)
            outgoing = self.ledger.record(
                uow, source.id, TransactionType.TRANSFER_OUT, total_debit, source_balance,
                description=f"Transfer to {destination.account_number}" + (f". {note}" if note else ""),
                reference_number=reference,
                related_account_id=destination.id,
                metadata={"fee": str(fee)} if fee > ZERO else None,
                created_at=now
            )
            self.ledger.record(
                uow, destination.id, TransactionType.TRANSFER_IN, amount, destination_balance,
                description=f"Transfer from {source.account_number}" + (f". {note}" if note else ""),
                reference_number=f"{reference}-IN",
                related_account_id=source.id,
                related_transaction_id=outgoing.id,
                created_at=now
            )
        
        log_action(logger, "info", "Transfer completed", user_id=source.user_id,
                   action="transfer.create", resource=reference,
                   extra={"from_account_id": source.id, "to_account_id": destination.id,
                          "amount": str(amount), "fee": str(fee)})
        return {
            "from_account_id": source.id,
            "to_account_id": destination.id,
            "reference_number": reference,
            "fee": fee
        }

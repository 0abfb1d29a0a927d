"""
Transaction Ledger Module

Append-only transaction history. Every balance mutation appends exactly one
Transaction inside the same unit of work as the Account update; entries are
never updated or deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import random
import uuid

from .errors import ValidationError
from .money import ZERO, round_money
from .storage import (
    StorageInterface, StorageRecord, UnitOfWork, parse_datetime, parse_decimal
)


class TransactionType(Enum):
    """Kinds of ledger entries"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    INTEREST_CREDIT = "INTEREST_CREDIT"
    FEE = "FEE"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"


# Entry types that count against an account's daily withdrawal limit
DAILY_LIMIT_TYPES = (TransactionType.WITHDRAWAL, TransactionType.TRANSFER_OUT)


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry"""
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    reference_number: Optional[str] = None
    related_account_id: Optional[str] = None
    related_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    
    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError("Transaction amount must be positive")


def utc_day_bounds(moment: datetime):
    """Return [start, end) of the UTC calendar day containing moment"""
    moment = moment.astimezone(timezone.utc)
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class TransactionLedger:
    """
    Append-only store of Transaction entries and the queries the engines
    run against it (history, daily debit totals, reference lookups).
    """
    
    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.transactions_table = "transactions"
    
    def record(
        self,
        uow: UnitOfWork,
        account_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        balance_after: Decimal,
        description: Optional[str] = None,
        reference_number: Optional[str] = None,
        related_account_id: Optional[str] = None,
        related_transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None
    ) -> Transaction:
        """
        Append a transaction inside the caller's unit of work
        
        Args:
            uow: Active unit of work that also persists the balance change
            account_id: Account the entry belongs to
            transaction_type: Kind of entry
            amount: Positive entry amount
            balance_after: Account balance once the mutation is applied
            description: Human-readable description
            reference_number: Shared reference (paired legs use ``ref``/``ref-IN``)
            related_account_id: Counterparty account, if any
            related_transaction_id: Paired entry, if any
            metadata: Extra structured data (e.g. fee)
            created_at: Entry timestamp (defaults to now)
            
        Returns:
            The appended Transaction
        """
        now = created_at or datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=round_money(amount),
            balance_after=round_money(balance_after),
            description=description,
            reference_number=reference_number or self.generate_reference_number(now),
            related_account_id=related_account_id,
            related_transaction_id=related_transaction_id,
            metadata=metadata or {}
        )
        uow.insert(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))
        return transaction
    
    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None
    
    def find_by_reference(self, reference_number: str) -> List[Transaction]:
        """Get all entries sharing a reference number"""
        found = self.storage.find(self.transactions_table, {"reference_number": reference_number})
        return [self._transaction_from_dict(data) for data in found]
    
    def get_account_transactions(
        self,
        account_id: str,
        transaction_type: Optional[TransactionType] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """Get an account's entries, newest first, optionally filtered"""
        filters = {"account_id": account_id}
        if transaction_type:
            filters["transaction_type"] = transaction_type.name
        found = self.storage.find(self.transactions_table, filters)
        
        transactions = [self._transaction_from_dict(data) for data in found]
        if start:
            transactions = [t for t in transactions if t.created_at >= start]
        if end:
            transactions = [t for t in transactions if t.created_at <= end]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions
    
    def debited_today(self, uow: UnitOfWork, account_id: str, moment: datetime) -> Decimal:
        """Sum of WITHDRAWAL and TRANSFER_OUT amounts in moment's UTC day"""
        start, end = utc_day_bounds(moment)
        total = ZERO
        for data in uow.find(self.transactions_table, {"account_id": account_id}):
            if data["transaction_type"] not in [t.name for t in DAILY_LIMIT_TYPES]:
                continue
            created_at = parse_datetime(data["created_at"])
            if start <= created_at < end:
                total += Decimal(data["amount"])
        return round_money(total)
    
    def generate_reference_number(self, now: Optional[datetime] = None) -> str:
        """Generate a reference like TXN<epoch-millis><4 random digits>"""
        now = now or datetime.now(timezone.utc)
        millis = int(now.timestamp() * 1000)
        return f"TXN{millis}{random.randint(0, 9999):04d}"
    
    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        return transaction.to_dict()
    
    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType[data['transaction_type']],
            amount=parse_decimal(data['amount']),
            balance_after=parse_decimal(data['balance_after']),
            description=data.get('description'),
            reference_number=data.get('reference_number'),
            related_account_id=data.get('related_account_id'),
            related_transaction_id=data.get('related_transaction_id'),
            metadata=data.get('metadata') or {}
        )

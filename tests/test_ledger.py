"""
Tests for the append-only transaction ledger
"""

import pytest
import re
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from retail_ledger.errors import StateConflictError, ValidationError
from retail_ledger.ledger import (
    Transaction, TransactionLedger, TransactionType, utc_day_bounds
)
from retail_ledger.storage import InMemoryStorage


class TestTransactionLedger:
    """Test TransactionLedger recording and queries"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)
        self.now = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
    
    def record(self, transaction_type, amount, created_at=None, account_id="ACC001", **kwargs):
        with self.storage.atomic() as uow:
            return self.ledger.record(
                uow, account_id, transaction_type, Decimal(amount), Decimal('0'),
                created_at=created_at or self.now, **kwargs
            )
    
    def test_record_and_load(self):
        transaction = self.record(
            TransactionType.TRANSFER_OUT, "202.50",
            reference_number="TXN1", related_account_id="ACC002", metadata={"fee": "2.50"}
        )
        loaded = self.ledger.get_transaction(transaction.id)
        assert loaded.transaction_type == TransactionType.TRANSFER_OUT
        assert loaded.amount == Decimal('202.50')
        assert loaded.related_account_id == "ACC002"
        assert loaded.metadata == {"fee": "2.50"}
        assert loaded.created_at == self.now
    
    def test_amount_must_be_positive(self):
        with pytest.raises(ValidationError):
            self.record(TransactionType.DEPOSIT, "0")
        assert self.storage.count("transactions") == 0
    
    def test_transaction_entity_validates(self):
        with pytest.raises(ValidationError):
            Transaction(
                id="T1", created_at=self.now, updated_at=self.now, account_id="ACC001",
                transaction_type=TransactionType.FEE, amount=Decimal('-1'),
                balance_after=Decimal('0')
            )
    
    def test_entries_cannot_be_overwritten(self):
        transaction = self.record(TransactionType.DEPOSIT, "10")
        with pytest.raises(StateConflictError):
            with self.storage.atomic() as uow:
                uow.insert("transactions", transaction.id, {"id": transaction.id})
    
    def test_find_by_reference(self):
        self.record(TransactionType.TRANSFER_OUT, "10", reference_number="TXN42")
        self.record(TransactionType.TRANSFER_IN, "10", account_id="ACC002", reference_number="TXN42-IN")
        assert len(self.ledger.find_by_reference("TXN42")) == 1
        assert self.ledger.find_by_reference("TXN42-IN")[0].account_id == "ACC002"
    
    def test_debited_today_counts_withdrawals_and_transfers_out(self):
        self.record(TransactionType.WITHDRAWAL, "100")
        self.record(TransactionType.TRANSFER_OUT, "50")
        self.record(TransactionType.DEPOSIT, "1000")
        self.record(TransactionType.TRANSFER_IN, "70")
        self.record(TransactionType.WITHDRAWAL, "25", created_at=self.now - timedelta(days=1))
        self.record(TransactionType.WITHDRAWAL, "5", account_id="ACC999")
        
        with self.storage.atomic() as uow:
            assert self.ledger.debited_today(uow, "ACC001", self.now) == Decimal('150.00')
    
    def test_reference_number_format(self):
        reference = self.ledger.generate_reference_number(self.now)
        assert re.match(r"^TXN\d+$", reference)
        assert reference.startswith(f"TXN{int(self.now.timestamp() * 1000)}")
    
    def test_default_reference_assigned(self):
        transaction = self.record(TransactionType.DEPOSIT, "1")
        assert transaction.reference_number.startswith("TXN")


class TestDayBounds:
    
    def test_utc_day_bounds(self):
        start, end = utc_day_bounds(datetime(2024, 5, 15, 23, 30, tzinfo=timezone.utc))
        assert start == datetime(2024, 5, 15, tzinfo=timezone.utc)
        assert end == datetime(2024, 5, 16, tzinfo=timezone.utc)
    
    def test_non_utc_input_converted(self):
        eastern = timezone(timedelta(hours=-5))
        start, _ = utc_day_bounds(datetime(2024, 5, 15, 22, 0, tzinfo=eastern))
        assert start == datetime(2024, 5, 16, tzinfo=timezone.utc)

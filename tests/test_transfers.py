"""
Tests for transfers between accounts
"""

import pytest
from decimal import Decimal

from retail_ledger.accounts import AccountManager, AccountType
from retail_ledger.errors import (
    AccountStateError, DailyLimitExceededError, InsufficientFundsError,
    NotFoundError, StateConflictError, ValidationError
)
from retail_ledger.ledger import TransactionLedger, TransactionType
from retail_ledger.money import Currency
from retail_ledger.storage import InMemoryStorage
from retail_ledger.transfers import TransferOrchestrator, calculate_transfer_fee


class TestTransfers:
    """Test TransferOrchestrator"""
    
    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(self.storage, self.ledger)
        self.orchestrator = TransferOrchestrator(self.storage, self.account_manager, self.ledger)
        
        self.source = self.account_manager.create_account(
            "USER001", AccountType.CHECKING, Currency.USD,
            transfer_fee_percent="0.5", transfer_fee_fixed="1.50"
        )
        self.destination = self.account_manager.create_account("USER002", AccountType.SAVINGS, Currency.USD)
        self.account_manager.deposit(self.source.id, "1000.00")
    
    def balance(self, account_id):
        return self.account_manager.get_account(account_id).balance
    
    def test_fee_calculation(self):
        assert calculate_transfer_fee(self.source, Decimal('200.00')) == Decimal('2.50')
        assert calculate_transfer_fee(self.destination, Decimal('200.00')) == Decimal('0.00')
    
    def test_transfer_with_fee(self):
        result = self.orchestrator.transfer(
            self.source.id, self.destination.account_number, "200.00", "Rent"
        )
        assert result["fee"] == Decimal('2.50')
        assert result["from_account_id"] == self.source.id
        assert result["to_account_id"] == self.destination.id
        assert self.balance(self.source.id) == Decimal('797.50')
        assert self.balance(self.destination.id) == Decimal('200.00')
        
        outgoing = self.ledger.find_by_reference(result["reference_number"])[0]
        incoming = self.ledger.find_by_reference(result["reference_number"] + "-IN")[0]
        assert outgoing.transaction_type == TransactionType.TRANSFER_OUT
        assert outgoing.amount == Decimal('202.50')
        assert outgoing.balance_after == Decimal('797.50')
        assert outgoing.metadata == {"fee": "2.50"}
        assert outgoing.related_account_id == self.destination.id
        assert outgoing.description == f"Transfer to {self.destination.account_number}. Rent"
        
        assert incoming.transaction_type == TransactionType.TRANSFER_IN
        assert incoming.amount == Decimal('200.00')
        assert incoming.related_transaction_id == outgoing.id
        assert incoming.related_account_id == self.source.id
        assert incoming.description == f"Transfer from {self.source.account_number}. Rent"
    
    def test_transfer_without_fee_has_no_fee_metadata(self):
        self.account_manager.deposit(self.destination.id, "50.00")
        result = self.orchestrator.transfer(self.destination.id, f"  {self.source.account_number.lower()} ", "50.00")
        assert result["fee"] == Decimal('0.00')
        outgoing = self.ledger.find_by_reference(result["reference_number"])[0]
        assert outgoing.metadata == {}
        assert outgoing.description == f"Transfer to {self.source.account_number}"
    
    def test_fee_counts_toward_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "1000.00")
        assert self.balance(self.source.id) == Decimal('1000.00')
        assert self.balance(self.destination.id) == Decimal('0.00')
        assert self.ledger.get_account_transactions(self.destination.id) == []
    
    def test_fee_counts_toward_daily_limit(self):
        self.account_manager.update_account(self.source.id, daily_withdrawal_limit="200.00")
        with pytest.raises(DailyLimitExceededError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "199.00")
        self.orchestrator.transfer(self.source.id, self.destination.account_number, "196.00")
    
    def test_same_account(self):
        with pytest.raises(ValidationError, match="same account"):
            self.orchestrator.transfer(self.source.id, self.source.account_number, "10.00")
    
    def test_currency_mismatch(self):
        euro = self.account_manager.create_account("USER002", AccountType.CHECKING, Currency.EUR)
        with pytest.raises(StateConflictError, match="Currency mismatch"):
            self.orchestrator.transfer(self.source.id, euro.account_number, "10.00")
    
    def test_unknown_destination(self):
        with pytest.raises(NotFoundError):
            self.orchestrator.transfer(self.source.id, "ACCT0000000000", "10.00")
        with pytest.raises(ValidationError, match="required"):
            self.orchestrator.transfer(self.source.id, "   ", "10.00")
    
    def test_deleted_destination(self):
        self.account_manager.delete_account(self.destination.id)
        with pytest.raises(NotFoundError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "10.00")
    
    def test_frozen_source(self):
        self.account_manager.freeze_account(self.source.id)
        with pytest.raises(AccountStateError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "10.00")
    
    def test_closed_destination_rolls_back_debit(self):
        self.account_manager.close_account(self.destination.id)
        with pytest.raises(AccountStateError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "10.00")
        assert self.balance(self.source.id) == Decimal('1000.00')
        assert len(self.ledger.get_account_transactions(self.source.id)) == 1
    
    def test_non_positive_amount(self):
        with pytest.raises(ValidationError):
            self.orchestrator.transfer(self.source.id, self.destination.account_number, "0")

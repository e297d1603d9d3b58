"""
Test suite for transactions module

Tests deposits, withdrawals, transfers and account closure. Every movement
must be recorded in the ledger and leave balances consistent with it.
"""

import random
from unittest.mock import patch

import pytest
from decimal import Decimal

from avenir_banking.accounts import AccountManager, AccountType
from avenir_banking.audit import AuditTrail, AuditEventType
from avenir_banking.config import AvenirConfig
from avenir_banking.currency import Money
from avenir_banking.errors import (
    InsufficientFundsError, NotFoundError, UnauthorizedError, ValidationError,
    handle_account_operation_error
)
from avenir_banking.events import DomainEvent, EventDispatcher
from avenir_banking.ledger import TransactionLedger, TransactionType
from avenir_banking.storage import InMemoryStorage
from avenir_banking.transactions import TransactionProcessor
from avenir_banking.users import UserManager


class TestTransactionProcessor:
    """Test transaction processing functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = AvenirConfig(use_sqlite=False)
        self.dispatcher = EventDispatcher()
        self.user_manager = UserManager(self.storage, self.audit_trail, config=self.config)
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(
            self.storage, self.user_manager, self.audit_trail, self.ledger,
            config=self.config, rng=random.Random(7)
        )
        self.processor = TransactionProcessor(
            self.storage, self.account_manager, self.user_manager, self.audit_trail,
            self.ledger, config=self.config, event_dispatcher=self.dispatcher
        )

        self.client = self.user_manager.create_client("Jane", "Doe", "jane@example.com", "password123")
        self.other = self.user_manager.create_client("John", "Smith", "john@example.com", "password123")

        self.checking = self.account_manager.create_account(
            self.client.id, "Main", AccountType.CHECKING, Decimal('1000.00')
        )
        self.savings = self.account_manager.create_account(
            self.client.id, "Livret", AccountType.SAVINGS
        )
        self.other_account = self.account_manager.create_account(
            self.other.id, "Main", AccountType.CHECKING
        )

    def balance(self, account_id):
        return self.account_manager.get_account(account_id).balance

    def assert_ledger_matches(self, *account_ids):
        for account_id in account_ids:
            assert self.ledger.calculate_account_balance(account_id) == self.balance(account_id)

    def test_deposit(self):
        """Test a deposit credits the account and is recorded"""
        result = self.processor.deposit_money(self.checking.id, "250.50", self.client.id)

        assert result.account.balance == Money(Decimal('1250.50'))
        assert result.transaction.transaction_type == TransactionType.DEPOSIT
        assert result.transaction.to_account_id == self.checking.id
        assert self.audit_trail.get_events_by_type(AuditEventType.DEPOSIT)
        self.assert_ledger_matches(self.checking.id)

    def test_deposit_limits(self):
        """Test deposit amount rules"""
        with pytest.raises(ValidationError, match="Deposit amount must be positive"):
            self.processor.deposit_money(self.checking.id, 0, self.client.id)
        with pytest.raises(ValidationError, match="Deposit amount cannot exceed 1,000,000 EUR"):
            self.processor.deposit_money(self.checking.id, "1000000.01", self.client.id)

        self.processor.deposit_money(self.checking.id, "1000000", self.client.id)

    def test_deposit_ownership_and_state(self):
        """Test deposits need an owned, active account"""
        with pytest.raises(NotFoundError, match="Account not found"):
            self.processor.deposit_money("missing", 10, self.client.id)
        with pytest.raises(UnauthorizedError):
            self.processor.deposit_money(self.other_account.id, 10, self.client.id)

        self.account_manager.suspend_account(self.savings.id)
        with pytest.raises(ValidationError, match="Cannot deposit to inactive account"):
            self.processor.deposit_money(self.savings.id, 10, self.client.id)

    def test_withdraw(self):
        """Test withdrawals and overdraft refusal"""
        result = self.processor.withdraw_money(self.checking.id, 200, self.client.id)
        assert result.account.balance == Money(Decimal('800.00'))

        with pytest.raises(InsufficientFundsError):
            self.processor.withdraw_money(self.checking.id, "800.01", self.client.id)
        assert self.balance(self.checking.id) == Money(Decimal('800.00'))
        self.assert_ledger_matches(self.checking.id)

    def test_transfer(self):
        """Test a transfer moves exactly the amount between accounts"""
        events = []
        self.dispatcher.subscribe(DomainEvent.TRANSFER_COMPLETED, events.append)

        result = self.processor.transfer_money(
            self.checking.id, self.other_account.id, "123.45", self.client.id
        )

        assert result.from_account.balance == Money(Decimal('876.55'))
        assert result.to_account.balance == Money(Decimal('123.45'))
        assert result.reference == (
            f"Transfer from {self.checking.iban} to {self.other_account.iban}"
        )
        assert result.transaction.from_account_id == self.checking.id
        assert len(events) == 1
        self.assert_ledger_matches(self.checking.id, self.other_account.id)

    def test_transfer_custom_reference(self):
        """Test a caller-provided reference is kept"""
        result = self.processor.transfer_money(
            self.checking.id, self.savings.id, 10, self.client.id, reference="Rent"
        )
        assert result.reference == "Rent"

    def test_transfer_rules(self):
        """Test transfer validation messages"""
        with pytest.raises(ValidationError, match="Transfer amount must be positive"):
            self.processor.transfer_money(self.checking.id, self.savings.id, -1, self.client.id)
        with pytest.raises(ValidationError, match="cannot exceed 100,000 EUR per transaction"):
            self.processor.transfer_money(self.checking.id, self.savings.id, 100001, self.client.id)
        with pytest.raises(ValidationError, match="Cannot transfer to the same account"):
            self.processor.transfer_money(self.checking.id, self.checking.id, 1, self.client.id)
        with pytest.raises(NotFoundError, match="Destination account not found"):
            self.processor.transfer_money(self.checking.id, "missing", 1, self.client.id)
        with pytest.raises(UnauthorizedError, match="Source account does not belong to user"):
            self.processor.transfer_money(self.other_account.id, self.checking.id, 1, self.client.id)
        with pytest.raises(InsufficientFundsError, match="Insufficient funds in source account"):
            self.processor.transfer_money(self.checking.id, self.savings.id, 5000, self.client.id)

    def test_transfer_to_inactive_account(self):
        """Test transfers to suspended accounts fail without moving money"""
        self.account_manager.suspend_account(self.other_account.id)

        with pytest.raises(ValidationError, match="Destination account is not active"):
            self.processor.transfer_money(self.checking.id, self.other_account.id, 10, self.client.id)

        assert self.balance(self.checking.id) == Money(Decimal('1000.00'))
        assert len(self.ledger.get_entries_for_account(self.checking.id)) == 1

    def test_transfer_to_client_main(self):
        """Test transfers addressed by the recipient's email"""
        result = self.processor.transfer_to_client_main(
            self.checking.id, " JOHN@example.com ", 75, self.client.id
        )
        assert result.to_account.id == self.other_account.id
        assert self.balance(self.other_account.id) == Money(Decimal('75.00'))

        with pytest.raises(NotFoundError, match="Recipient not found"):
            self.processor.transfer_to_client_main(self.checking.id, "ghost@example.com", 1, self.client.id)
        with pytest.raises(ValidationError, match="Cannot transfer to yourself"):
            self.processor.transfer_to_client_main(self.checking.id, "jane@example.com", 1, self.client.id)

        self.account_manager.suspend_account(self.other_account.id)
        with pytest.raises(ValidationError, match="Recipient has no active account"):
            self.processor.transfer_to_client_main(self.checking.id, "john@example.com", 1, self.client.id)

    def test_close_account_with_sweep(self):
        """Test closing sweeps the balance to another owned account"""
        with pytest.raises(ValidationError, match="Account has balance"):
            self.processor.close_account(self.checking.id, self.client.id)

        result = self.processor.close_account(self.checking.id, self.client.id, self.savings.id)

        assert result.status == "closed"
        assert result.balance_transferred == Decimal('1000.00')
        assert result.transferred_to_account_id == self.savings.id
        assert not self.account_manager.get_account(self.checking.id).is_active
        assert self.balance(self.savings.id) == Money(Decimal('1000.00'))
        sweep = self.ledger.get_entries_for_account(self.savings.id)[0]
        assert sweep.transaction_type == TransactionType.CLOSING_SWEEP

        with pytest.raises(ValidationError, match="Account is already closed"):
            self.processor.close_account(self.checking.id, self.client.id)

    def test_close_account_target_rules(self):
        """Test the sweep target must be another owned account"""
        with pytest.raises(UnauthorizedError, match="Target account does not belong to user"):
            self.processor.close_account(self.checking.id, self.client.id, self.other_account.id)
        with pytest.raises(ValidationError, match="Cannot transfer to the same account"):
            self.processor.close_account(self.checking.id, self.client.id, self.checking.id)

    def test_close_empty_account(self):
        """Test empty accounts close without a target"""
        result = self.processor.close_account(self.savings.id, self.client.id)
        assert result.balance_transferred == Decimal('0.00')
        assert result.transferred_to_account_id is None

    def test_get_account_transactions(self):
        """Test history is newest first and owner-only"""
        self.processor.deposit_money(self.checking.id, 5, self.client.id)
        self.processor.withdraw_money(self.checking.id, 3, self.client.id)

        history = self.processor.get_account_transactions(self.checking.id, self.client.id)
        assert [t.transaction_type for t in history] == [
            TransactionType.WITHDRAWAL, TransactionType.DEPOSIT, TransactionType.DEPOSIT
        ]
        assert history[0].signed_amount(self.checking.id) == Money(Decimal('-3.00'))

        with pytest.raises(UnauthorizedError):
            self.processor.get_account_transactions(self.checking.id, self.other.id)

    def test_errors_map_to_status_codes(self):
        """Test raised errors classify through the account error handler"""
        with pytest.raises(InsufficientFundsError) as excinfo:
            self.processor.transfer_money(self.checking.id, self.savings.id, 5000, self.client.id)
        assert handle_account_operation_error(excinfo.value).status_code == 400

        with pytest.raises(NotFoundError) as excinfo:
            self.processor.transfer_money("missing", self.savings.id, 1, self.client.id)
        assert handle_account_operation_error(excinfo.value).status_code == 404

    def test_unparseable_amounts(self):
        """Test huge, NaN and non-numeric amounts are client errors"""
        for amount in ("1e30", "NaN", "Infinity", "douze"):
            with pytest.raises(ValidationError, match="Invalid amount") as excinfo:
                self.processor.deposit_money(self.checking.id, amount, self.client.id)
            assert handle_account_operation_error(excinfo.value).status_code == 400

            with pytest.raises(ValidationError, match="Invalid amount"):
                self.processor.transfer_money(self.checking.id, self.savings.id, amount, self.client.id)

        with pytest.raises(ValidationError, match="cannot exceed 100,000 EUR"):
            self.processor.transfer_money(self.checking.id, self.savings.id, "1e20", self.client.id)
        assert self.balance(self.checking.id) == Money(Decimal('1000.00'))

    def test_transfer_is_all_or_nothing(self):
        """Test a failure after the debit leaves balances and ledger untouched"""
        with patch.object(self.audit_trail, "log_event", side_effect=RuntimeError("audit store down")):
            with pytest.raises(RuntimeError):
                self.processor.transfer_money(
                    self.checking.id, self.other_account.id, 300, self.client.id
                )

        assert self.balance(self.checking.id) == Money(Decimal('1000.00'))
        assert self.balance(self.other_account.id) == Money.zero()
        assert len(self.ledger.get_entries_for_account(self.checking.id)) == 1
        assert self.ledger.get_entries_for_account(self.other_account.id) == []
        self.assert_ledger_matches(self.checking.id, self.other_account.id)

    def test_close_account_is_all_or_nothing(self):
        """Test a failed closure keeps the account open and the balance in place"""
        with patch.object(self.audit_trail, "log_event", side_effect=RuntimeError("audit store down")):
            with pytest.raises(RuntimeError):
                self.processor.close_account(self.checking.id, self.client.id, self.savings.id)

        account = self.account_manager.get_account(self.checking.id)
        assert account.is_active
        assert account.balance == Money(Decimal('1000.00'))
        assert self.balance(self.savings.id) == Money.zero()
        self.assert_ledger_matches(self.checking.id, self.savings.id)

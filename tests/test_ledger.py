"""
Test suite for the transaction ledger
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from avenir_banking.currency import Money
from avenir_banking.ledger import Transaction, TransactionLedger, TransactionType
from avenir_banking.storage import InMemoryStorage


class TestTransaction:
    """Test the Transaction record"""

    def make(self, **kwargs):
        now = datetime.now(timezone.utc)
        fields = dict(id="t1", created_at=now, updated_at=now,
                      transaction_type=TransactionType.TRANSFER, amount=Money(Decimal('25.00')),
                      from_account_id="a", to_account_id="b")
        fields.update(kwargs)
        return Transaction(**fields)

    def test_signed_amount(self):
        """Test each side sees its own sign"""
        transaction = self.make()
        assert transaction.signed_amount("a") == Money(Decimal('-25.00'))
        assert transaction.signed_amount("b") == Money(Decimal('25.00'))
        assert transaction.signed_amount("c").is_zero()
        assert transaction.involves("a") and not transaction.involves("c")

    def test_invariants(self):
        """Test amounts are positive and at least one account is named"""
        with pytest.raises(ValueError, match="must be positive"):
            self.make(amount=Money.zero())
        with pytest.raises(ValueError, match="at least one account"):
            self.make(from_account_id=None, to_account_id=None)


class TestTransactionLedger:
    """Test recording and reconciliation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)

    def test_record_and_load(self):
        """Test a recorded transaction round-trips through storage"""
        recorded = self.ledger.record(
            TransactionType.DEPOSIT, Money(Decimal('10.00')), to_account_id="a",
            description="Deposit", initiated_by="u1"
        )
        loaded = self.ledger.get_transaction(recorded.id)

        assert loaded.transaction_type == TransactionType.DEPOSIT
        assert loaded.amount == Money(Decimal('10.00'))
        assert loaded.initiated_by == "u1"
        assert self.ledger.get_transaction("missing") is None

    def test_balance_from_entries(self):
        """Test the derived balance sums signed movements"""
        self.ledger.record(TransactionType.DEPOSIT, Money(Decimal('100.00')), to_account_id="a")
        self.ledger.record(TransactionType.TRANSFER, Money(Decimal('30.00')),
                           from_account_id="a", to_account_id="b")
        self.ledger.record(TransactionType.WITHDRAWAL, Money(Decimal('5.50')), from_account_id="a")

        assert self.ledger.calculate_account_balance("a") == Money(Decimal('64.50'))
        assert self.ledger.calculate_account_balance("b") == Money(Decimal('30.00'))
        assert self.ledger.calculate_account_balance("c") == Money.zero()

    def test_entries_newest_first(self):
        """Test account history order, including same-instant postings"""
        ids = [
            self.ledger.record(TransactionType.DEPOSIT, Money(Decimal(i + 1)), to_account_id="a").id
            for i in range(4)
        ]
        assert [t.id for t in self.ledger.get_entries_for_account("a")] == list(reversed(ids))
        assert self.ledger.get_entries_for_account("z") == []

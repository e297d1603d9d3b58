"""
Test suite for accounts module

Tests account opening, renaming, balances and director administration.
"""

import random
from datetime import datetime, timezone

import pytest
from decimal import Decimal

from avenir_banking.accounts import (
    Account, AccountManager, AccountStatus, AccountType, DEFAULT_ACCOUNT_NAMES
)
from avenir_banking.audit import AuditTrail, AuditEventType
from avenir_banking.config import AvenirConfig
from avenir_banking.currency import Money
from avenir_banking.errors import (
    ConflictError, InsufficientFundsError, NotFoundError, UnauthorizedError, ValidationError
)
from avenir_banking.iban import IBAN
from avenir_banking.ledger import TransactionLedger, TransactionType
from avenir_banking.storage import InMemoryStorage
from avenir_banking.users import UserManager, UserRole


class AccountTestCase:
    """Shared fixtures"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = AvenirConfig(use_sqlite=False)
        self.user_manager = UserManager(self.storage, self.audit_trail, config=self.config)
        self.ledger = TransactionLedger(self.storage)
        self.account_manager = AccountManager(
            self.storage, self.user_manager, self.audit_trail, self.ledger,
            config=self.config, rng=random.Random(1234)
        )
        self.client = self.user_manager.create_client(
            "Jane", "Doe", "jane@example.com", "password123"
        )
        self.other_client = self.user_manager.create_client(
            "John", "Smith", "john@example.com", "password123"
        )
        self.director = self.user_manager.create_user(
            "Dina", "Director", "dina@avenir.fr", "password123", UserRole.DIRECTOR
        )


class TestAccount:
    """Test the Account record"""

    def setup_method(self):
        now = datetime.now(timezone.utc)
        self.account = Account(
            id="acc-1", created_at=now, updated_at=now, user_id="u1",
            iban="FR1420041010050500013M02606", name="Main",
            account_type=AccountType.CHECKING, balance=Money(Decimal('100.00'))
        )

    def test_credit_and_debit(self):
        """Test balance changes"""
        self.account.credit(Money(Decimal('50.00')))
        self.account.debit(Money(Decimal('30.00')))
        assert self.account.balance == Money(Decimal('120.00'))

    def test_balance_never_negative(self):
        """Test debits larger than the balance are refused"""
        with pytest.raises(InsufficientFundsError, match="Insufficient funds"):
            self.account.debit(Money(Decimal('100.01')))
        assert self.account.balance == Money(Decimal('100.00'))

    def test_inactive_account_rejects_movements(self):
        """Test a deactivated account cannot move money"""
        self.account.deactivate()
        with pytest.raises(ValidationError, match="Account is not active"):
            self.account.credit(Money(Decimal('1')))
        with pytest.raises(ConflictError, match="already inactive"):
            self.account.deactivate()

    def test_non_positive_amounts(self):
        """Test zero credits and debits are refused"""
        with pytest.raises(ValidationError):
            self.account.credit(Money.zero())
        with pytest.raises(ValidationError):
            self.account.debit(Money(Decimal('-1')))


class TestAccountManager(AccountTestCase):
    """Test client account use-cases"""

    def test_create_account(self):
        """Test opening an account with an initial deposit"""
        account = self.account_manager.create_account(
            self.client.id, "  Main account  ", AccountType.CHECKING, Decimal('250.00')
        )

        assert account.name == "Main account"
        assert account.balance == Money(Decimal('250.00'))
        assert IBAN.is_valid(account.iban)
        assert account.iban[4:9] == self.config.bank_code
        assert account.last_capitalization is None

        entries = self.ledger.get_entries_for_account(account.id)
        assert entries[0].transaction_type == TransactionType.DEPOSIT
        assert self.ledger.calculate_account_balance(account.id) == account.balance
        assert self.audit_trail.get_events_for_entity("account", account.id)[0].event_type == \
            AuditEventType.ACCOUNT_CREATED

    def test_savings_account_tracks_capitalization(self):
        """Test savings accounts start their interest clock at opening"""
        account = self.account_manager.create_account(
            self.client.id, "Livret", AccountType.SAVINGS
        )
        assert account.is_savings_account()
        assert account.last_capitalization == account.created_at

    def test_create_account_validation(self):
        """Test name, owner and deposit rules"""
        with pytest.raises(NotFoundError, match="User not found"):
            self.account_manager.create_account("ghost", "Main", AccountType.CHECKING)
        with pytest.raises(ValidationError, match="Account name is required"):
            self.account_manager.create_account(self.client.id, "  ", AccountType.CHECKING)
        with pytest.raises(ValidationError, match="cannot exceed 100 characters"):
            self.account_manager.create_account(self.client.id, "x" * 101, AccountType.CHECKING)
        with pytest.raises(ValidationError, match="Initial deposit cannot be negative"):
            self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING, -5)

    def test_ibans_are_unique(self):
        """Test every account gets its own IBAN"""
        ibans = {
            self.account_manager.create_account(self.client.id, f"A{i}", AccountType.CHECKING).iban
            for i in range(20)
        }
        assert len(ibans) == 20

    def test_iban_generation_gives_up(self):
        """Test a colliding generator ends with a conflict"""
        def manager(attempts):
            return AccountManager(
                self.storage, self.user_manager, self.audit_trail, self.ledger,
                config=AvenirConfig(iban_generation_attempts=attempts), rng=random.Random(99)
            )

        first = manager(1).create_account(self.client.id, "A", AccountType.CHECKING)
        assert self.account_manager.find_by_iban(first.iban).id == first.id

        # Same seed: the first candidate collides, the second one is free
        second = manager(3).create_account(self.client.id, "B", AccountType.CHECKING)
        assert second.iban != first.iban

        with pytest.raises(ConflictError, match="Failed to generate unique IBAN"):
            manager(1).create_account(self.client.id, "C", AccountType.CHECKING)

    def test_get_user_accounts(self):
        """Test totals only count active accounts"""
        main = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING, 100)
        savings = self.account_manager.create_account(self.client.id, "Livret", AccountType.SAVINGS, 50)
        self.account_manager.suspend_account(savings.id)

        result = self.account_manager.get_user_accounts(self.client.id)
        assert result['total_accounts'] == 2
        assert result['total_balance'] == Decimal('100.00')
        assert result['accounts'][0]['id'] == main.id

    def test_rename_account(self):
        """Test renaming with ownership checks"""
        account = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING)

        renamed = self.account_manager.rename_account(account.id, " Daily ", self.client.id)
        assert renamed.name == "Daily"

        with pytest.raises(UnauthorizedError, match="does not belong to user"):
            self.account_manager.rename_account(account.id, "Mine", self.other_client.id)
        with pytest.raises(ValidationError, match="cannot be empty"):
            self.account_manager.rename_account(account.id, "", self.client.id)
        with pytest.raises(NotFoundError):
            self.account_manager.rename_account("missing", "X", self.client.id)

    def test_get_main_account(self):
        """Test the oldest active checking account is the main one"""
        savings = self.account_manager.create_account(self.client.id, "Livret", AccountType.SAVINGS)
        checking = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING)

        assert self.account_manager.get_main_account(self.client.id).id == checking.id
        self.account_manager.suspend_account(checking.id)
        assert self.account_manager.get_main_account(self.client.id).id == savings.id
        assert self.account_manager.get_main_account(self.other_client.id) is None


class TestDirectorAccounts(AccountTestCase):
    """Test director administration of accounts"""

    def test_create_director_account_by_name(self):
        """Test the client can be given by full name"""
        view = self.account_manager.create_director_account(
            AccountType.SAVINGS, client_name="jane doe", balance="1500",
            director_id=self.director.id
        )

        assert view['client_id'] == self.client.id
        assert view['client_name'] == "Jane Doe"
        assert view['account_type'] == "savings"
        assert view['balance'] == Decimal('1500.00')
        assert view['status'] == AccountStatus.ACTIVE.value
        account = self.account_manager.get_account(view['id'])
        assert account.name == DEFAULT_ACCOUNT_NAMES[AccountType.SAVINGS]

    def test_create_director_account_statuses(self):
        """Test suspended and banned statuses"""
        suspended = self.account_manager.create_director_account(
            AccountType.CHECKING, client_id=self.client.id, status=AccountStatus.SUSPENDED
        )
        assert suspended['status'] == "suspended"

        banned = self.account_manager.create_director_account(
            AccountType.CHECKING, client_id=self.other_client.id, status=AccountStatus.BANNED
        )
        assert banned['status'] == "banned"
        assert self.user_manager.get_user(self.other_client.id).is_banned

    def test_create_director_account_client_resolution(self):
        """Test the French client resolution messages"""
        with pytest.raises(ValidationError, match="clientId requis"):
            self.account_manager.create_director_account(AccountType.CHECKING)
        with pytest.raises(ValidationError, match="prénom et nom"):
            self.account_manager.create_director_account(AccountType.CHECKING, client_name="Jane")
        with pytest.raises(NotFoundError, match="Aucun client ne correspond"):
            self.account_manager.create_director_account(AccountType.CHECKING, client_name="No Body")
        with pytest.raises(NotFoundError, match="Client introuvable"):
            self.account_manager.create_director_account(AccountType.CHECKING, client_id=self.director.id)

        self.user_manager.create_client("Jane", "Doe", "jane2@example.com", "password123")
        with pytest.raises(ValidationError, match="Nom ambigu"):
            self.account_manager.create_director_account(AccountType.CHECKING, client_name="Jane Doe")

    def test_suspend_and_reactivate(self):
        """Test reactivation also lifts the owner's ban"""
        account = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING)

        banned = self.account_manager.ban_account_owner(account.id, self.director.id)
        assert banned['status'] == "banned"
        assert not self.account_manager.get_account(account.id).is_active

        view = self.account_manager.reactivate_account(account.id, self.director.id)
        assert view['status'] == "active"
        assert not self.user_manager.get_user(self.client.id).is_banned

        assert self.account_manager.suspend_account(account.id)['status'] == "suspended"

    def test_unknown_account(self):
        """Test director operations on a missing account"""
        with pytest.raises(NotFoundError, match="Compte introuvable"):
            self.account_manager.suspend_account("missing")

    def test_delete_account(self):
        """Test only empty accounts can be deleted"""
        funded = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING, 10)
        empty = self.account_manager.create_account(self.client.id, "Spare", AccountType.CHECKING)

        with pytest.raises(ValidationError, match="solde non nul"):
            self.account_manager.delete_account(funded.id)

        self.account_manager.delete_account(empty.id, self.director.id)
        assert self.account_manager.get_account(empty.id) is None
        assert self.audit_trail.get_events_by_type(AuditEventType.ACCOUNT_DELETED)

    def test_list_all_accounts(self):
        """Test the director listing, newest first"""
        first = self.account_manager.create_account(self.client.id, "Main", AccountType.CHECKING)
        second = self.account_manager.create_account(self.other_client.id, "Main", AccountType.CHECKING)

        views = self.account_manager.list_all_accounts()
        assert [v['id'] for v in views] == [second.id, first.id]
        assert views[0]['client_name'] == "John Smith"

"""
Account Management Module

Checking and savings accounts held by clients, identified by a French IBAN.
Covers the client use-cases (open, list, rename) and the director
administration of accounts (suspend, reactivate, ban owner, delete).
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import random
import uuid

from .currency import Money, Currency, NumberLike, as_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .config import AvenirConfig, get_config
from .errors import (
    ConflictError, InsufficientFundsError, NotFoundError,
    UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .iban import IBAN
from .ledger import TransactionLedger, TransactionType
from .users import User, UserManager, UserRole


class AccountType(Enum):
    """Banking products offered to clients"""
    CHECKING = "CHECKING"
    SAVINGS = "SAVINGS"


class AccountStatus(Enum):
    """Account status as shown to directors"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


DEFAULT_ACCOUNT_NAMES = {
    AccountType.CHECKING: "Compte courant",
    AccountType.SAVINGS: "Compte épargne",
}


@dataclass
class Account(StorageRecord):
    """
    Client bank account

    Balance never goes negative: every debit is checked against it.
    """
    user_id: str
    iban: str
    name: str
    account_type: AccountType
    balance: Money
    is_active: bool = True
    last_capitalization: Optional[datetime] = None

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    def credit(self, amount: Money) -> None:
        """Add funds to account"""
        if not amount.is_positive():
            raise ValidationError("Credit amount must be positive")
        if not self.is_active:
            raise ValidationError("Account is not active")
        self.balance = self.balance + amount
        self.touch()

    def debit(self, amount: Money) -> None:
        """Remove funds from account"""
        if not amount.is_positive():
            raise ValidationError("Debit amount must be positive")
        if not self.is_active:
            raise ValidationError("Account is not active")
        if self.balance < amount:
            raise InsufficientFundsError("Insufficient funds")
        self.balance = self.balance - amount
        self.touch()

    def rename(self, new_name: str) -> None:
        if not new_name or not new_name.strip():
            raise ValidationError("Account name cannot be empty")
        self.name = new_name.strip()
        self.touch()

    def deactivate(self) -> None:
        if not self.is_active:
            raise ConflictError("Account is already inactive")
        self.is_active = False
        self.touch()

    def reactivate(self) -> None:
        self.is_active = True
        self.touch()

    def is_savings_account(self) -> bool:
        return self.account_type == AccountType.SAVINGS

    def is_checking_account(self) -> bool:
        return self.account_type == AccountType.CHECKING

    def summary(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'iban': self.iban,
            'name': self.name,
            'type': self.account_type.value,
            'balance': self.balance.amount,
            'currency': self.currency.code,
            'is_active': self.is_active,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }


class AccountManager(EventPublisherMixin):
    """
    Manages account lifecycle for clients and directors
    """

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        audit_trail: AuditTrail,
        ledger: Optional[TransactionLedger] = None,
        config: Optional[AvenirConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        rng: Optional[random.Random] = None
    ):
        self.storage = storage
        self.users = users
        self.audit_trail = audit_trail
        self.ledger = ledger or TransactionLedger(storage)
        self.config = config or get_config()
        self.event_dispatcher = event_dispatcher
        self.rng = rng
        self.accounts_table = "accounts"

    # Persistence helpers

    def save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    def get_account(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            return None
        return Account.from_dict(data)

    def find_by_iban(self, iban: str) -> Optional[Account]:
        compact = ''.join(iban.split()).upper()
        matches = self.storage.find(self.accounts_table, {'iban': compact})
        if not matches:
            return None
        return Account.from_dict(matches[0])

    def iban_exists(self, iban: str) -> bool:
        return self.find_by_iban(iban) is not None

    def _all_accounts(self) -> List[Account]:
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def find_by_user(self, user_id: str) -> List[Account]:
        """Accounts of one user, oldest first"""
        accounts = [
            Account.from_dict(data)
            for data in self.storage.find(self.accounts_table, {'user_id': user_id})
        ]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def list_accounts(self, skip: int = 0, take: int = 10) -> List[Account]:
        """Page over all accounts, newest first"""
        accounts = self._all_accounts()
        accounts.reverse()
        return accounts[skip:skip + take]

    def _generate_unique_iban(self) -> str:
        for _ in range(self.config.iban_generation_attempts):
            candidate = IBAN.generate(self.config.bank_code, self.config.branch_code, self.rng)
            if not self.iban_exists(candidate.value):
                return candidate.value
        raise ConflictError("Failed to generate unique IBAN after multiple attempts")

    def _new_account(self, user_id: str, name: str, account_type: AccountType,
                     is_active: bool = True) -> Account:
        now = datetime.now(timezone.utc)
        return Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            iban=self._generate_unique_iban(),
            name=name,
            account_type=account_type,
            balance=Money.zero(Currency.from_code(self.config.default_currency)),
            is_active=is_active,
            last_capitalization=now if account_type == AccountType.SAVINGS else None
        )

    def _validate_name(self, name: str, empty_message: str) -> str:
        if not name or not name.strip():
            raise ValidationError(empty_message)
        if len(name.strip()) > self.config.account_name_max_length:
            raise ValidationError(
                f"Account name cannot exceed {self.config.account_name_max_length} characters"
            )
        return name.strip()

    # Client use-cases

    def create_account(
        self,
        user_id: str,
        name: str,
        account_type: AccountType,
        initial_deposit: Optional[NumberLike] = None
    ) -> Account:
        """
        Open a new account for a user

        Args:
            user_id: Owner of the account
            name: Display name (trimmed, at most 100 characters)
            account_type: CHECKING or SAVINGS
            initial_deposit: Optional opening balance, recorded as a deposit

        Returns:
            Created Account
        """
        user = self.users.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")

        name = self._validate_name(name, "Account name is required")

        deposit = None
        if initial_deposit is not None:
            deposit = as_money(initial_deposit)
            if deposit.is_negative():
                raise ValidationError("Initial deposit cannot be negative")

        with self.storage.atomic():
            account = self._new_account(user_id, name, account_type)
            if deposit is not None and deposit.is_positive():
                account.credit(deposit)
                self.ledger.record(
                    TransactionType.DEPOSIT, deposit, to_account_id=account.id,
                    description="Initial deposit", initiated_by=user_id
                )
            self.save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "iban": account.iban,
                    "user_id": user_id,
                    "account_type": account_type.value,
                    "name": name,
                    "initial_deposit": account.balance.amount
                },
                user_id=user_id
            )

        self.publish_event(DomainEvent.ACCOUNT_CREATED, "account", account.id,
                           {"user_id": user_id, "iban": account.iban})
        return account

    def get_user_accounts(self, user_id: str) -> Dict[str, Any]:
        """Account summaries with the total balance of active accounts"""
        accounts = self.find_by_user(user_id)
        total = Money.zero(Currency.from_code(self.config.default_currency))
        for account in accounts:
            if account.is_active:
                total = total + account.balance

        return {
            'accounts': [account.summary() for account in accounts],
            'total_accounts': len(accounts),
            'total_balance': total.amount,
        }

    def get_owned_account(self, account_id: str, user_id: str,
                          not_found: str = "Account not found",
                          unauthorized: str = "Unauthorized: Account does not belong to user") -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError(not_found)
        if account.user_id != user_id:
            raise UnauthorizedError(unauthorized)
        return account

    def rename_account(self, account_id: str, new_name: str, user_id: str) -> Account:
        if not new_name or not new_name.strip():
            raise ValidationError("Account name cannot be empty")
        if len(new_name) > self.config.account_name_max_length:
            raise ValidationError(
                f"Account name cannot exceed {self.config.account_name_max_length} characters"
            )

        with self.storage.atomic():
            account = self.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Cannot rename inactive account")

            old_name = account.name
            account.rename(new_name)
            self.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_RENAMED, "account", account.id,
                {"old_name": old_name, "new_name": account.name}, user_id
            )

        return account

    def get_main_account(self, user_id: str) -> Optional[Account]:
        """Oldest active checking account, else oldest active account"""
        active = [a for a in self.find_by_user(user_id) if a.is_active]
        for account in active:
            if account.is_checking_account():
                return account
        return active[0] if active else None

    # Director administration

    def account_status(self, account: Account, owner: Optional[User]) -> AccountStatus:
        if owner and owner.is_banned:
            return AccountStatus.BANNED
        return AccountStatus.ACTIVE if account.is_active else AccountStatus.SUSPENDED

    def director_view(self, account: Account, owner: Optional[User] = None) -> Dict[str, Any]:
        owner = owner or self.users.get_user(account.user_id)
        return {
            'id': account.id,
            'client_id': account.user_id,
            'client_name': owner.full_name if owner else "Client inconnu",
            'account_number': account.iban,
            'account_type': account.account_type.value.lower(),
            'balance': account.balance.amount,
            'status': self.account_status(account, owner).value,
            'created_at': account.created_at,
        }

    def list_all_accounts(self) -> List[Dict[str, Any]]:
        """Every account with its owner's name and status, newest first"""
        owners: Dict[str, Optional[User]] = {}
        views = []
        for account in reversed(self._all_accounts()):
            if account.user_id not in owners:
                owners[account.user_id] = self.users.get_user(account.user_id)
            views.append(self.director_view(account, owners[account.user_id]))
        return views

    def _resolve_client(self, client_id: Optional[str], client_name: Optional[str]) -> User:
        if not client_id:
            if not client_name:
                raise ValidationError("clientId requis (ou clientName)")
            if len(client_name.split()) < 2:
                raise ValidationError("clientName doit contenir prénom et nom")

            matches = self.users.find_clients_by_name(client_name)
            if not matches:
                raise NotFoundError("Aucun client ne correspond à ce nom")
            if len(matches) > 1:
                raise ValidationError("Nom ambigu: plusieurs clients correspondent, utilisez clientId")
            client_id = matches[0].id

        user = self.users.get_user(client_id)
        if not user or user.role != UserRole.CLIENT:
            raise NotFoundError("Client introuvable")
        return user

    def create_director_account(
        self,
        account_type: AccountType,
        client_id: Optional[str] = None,
        client_name: Optional[str] = None,
        balance: NumberLike = Decimal('0'),
        status: AccountStatus = AccountStatus.ACTIVE,
        name: Optional[str] = None,
        director_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Open an account on behalf of a client

        The client is given by id or by "first last" name. A BANNED status
        bans the owner, SUSPENDED opens the account inactive.
        """
        opening_balance = as_money(balance)
        if opening_balance.is_negative():
            raise ValidationError("Initial deposit cannot be negative")

        with self.storage.atomic():
            user = self._resolve_client(client_id, client_name)

            if status == AccountStatus.BANNED and not user.is_banned:
                user.ban()
                self.users.save_user(user)

            account = self._new_account(
                user.id,
                (name or '').strip() or DEFAULT_ACCOUNT_NAMES[account_type],
                account_type
            )
            if opening_balance.is_positive():
                account.credit(opening_balance)
                self.ledger.record(
                    TransactionType.DEPOSIT, opening_balance, to_account_id=account.id,
                    description="Initial deposit", initiated_by=director_id
                )
            if status == AccountStatus.SUSPENDED:
                account.deactivate()
            self.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CREATED, "account", account.id,
                {
                    "iban": account.iban,
                    "user_id": user.id,
                    "account_type": account_type.value,
                    "balance": opening_balance.amount,
                    "status": status.value
                },
                director_id
            )

        return self.director_view(account, user)

    def _require_account(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError("Compte introuvable")
        return account

    def suspend_account(self, account_id: str, director_id: Optional[str] = None) -> Dict[str, Any]:
        with self.storage.atomic():
            account = self._require_account(account_id)
            account.is_active = False
            account.touch()
            self.save_account(account)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_SUSPENDED, "account", account.id, {}, director_id
            )
        return self.director_view(account)

    def reactivate_account(self, account_id: str, director_id: Optional[str] = None) -> Dict[str, Any]:
        """Reactivate the account and lift the owner's ban"""
        with self.storage.atomic():
            account = self._require_account(account_id)
            account.reactivate()

            owner = self.users.get_user(account.user_id)
            if owner and owner.is_banned:
                owner.unban()
                self.users.save_user(owner)

            self.save_account(account)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_REACTIVATED, "account", account.id, {}, director_id
            )
        return self.director_view(account, owner)

    def ban_account_owner(self, account_id: str, director_id: Optional[str] = None) -> Dict[str, Any]:
        """Ban the owner and suspend the account"""
        with self.storage.atomic():
            account = self._require_account(account_id)
            owner = self.users.get_user(account.user_id)
            if not owner:
                raise NotFoundError("Client introuvable")

            if not owner.is_banned:
                owner.ban()
                self.users.save_user(owner)
                self.audit_trail.log_event(
                    AuditEventType.USER_BANNED, "user", owner.id,
                    {"account_id": account.id}, director_id
                )

            account.is_active = False
            account.touch()
            self.save_account(account)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_SUSPENDED, "account", account.id, {}, director_id
            )
        return self.director_view(account, owner)

    def delete_account(self, account_id: str, director_id: Optional[str] = None) -> None:
        with self.storage.atomic():
            account = self._require_account(account_id)
            if not account.balance.is_zero():
                raise ValidationError("Impossible de supprimer un compte avec un solde non nul")

            self.storage.delete(self.accounts_table, account.id)
            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_DELETED, "account", account.id,
                {"iban": account.iban, "user_id": account.user_id}, director_id
            )

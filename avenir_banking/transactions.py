"""
Transaction Processing Module

Deposits, withdrawals, transfers and account closure. Each use-case runs
inside one storage atomic block: the touched accounts and the ledger
record are persisted together or not at all, so a transfer debits the
source by exactly the amount credited to the destination.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
import logging

from .accounts import Account, AccountManager
from .audit import AuditTrail, AuditEventType
from .config import AvenirConfig, get_config
from .currency import Money, Currency, NumberLike, as_money
from .errors import (
    InsufficientFundsError, NotFoundError, UnauthorizedError, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import Transaction, TransactionLedger, TransactionType
from .logging_config import log_action
from .storage import StorageInterface
from .users import UserManager


@dataclass
class MovementResult:
    """Outcome of a single-account movement (deposit, withdrawal)"""
    account: Account
    transaction: Transaction


@dataclass
class TransferResult:
    """Outcome of a transfer between two accounts"""
    from_account: Account
    to_account: Account
    transaction: Transaction

    @property
    def reference(self) -> str:
        return self.transaction.reference or ""


@dataclass
class CloseAccountResult:
    account_id: str
    status: str
    balance_transferred: Decimal
    transferred_to_account_id: Optional[str] = None


class TransactionProcessor(EventPublisherMixin):
    """
    Runs money movement use-cases against accounts and the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        users: UserManager,
        audit_trail: AuditTrail,
        ledger: Optional[TransactionLedger] = None,
        config: Optional[AvenirConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.users = users
        self.audit_trail = audit_trail
        self.ledger = ledger or accounts.ledger
        self.config = config or get_config()
        self.event_dispatcher = event_dispatcher
        self.logger = logging.getLogger("avenir.transactions")

    @property
    def currency(self) -> Currency:
        return Currency.from_code(self.config.default_currency)

    @property
    def max_deposit(self) -> Money:
        return Money(Decimal(self.config.max_deposit_amount), self.currency)

    @property
    def max_transfer(self) -> Money:
        return Money(Decimal(self.config.max_transfer_amount), self.currency)

    def _check_transfer_amount(self, amount: Money) -> None:
        if not amount.is_positive():
            raise ValidationError("Transfer amount must be positive")
        if amount > self.max_transfer:
            raise ValidationError(
                f"Transfer amount cannot exceed {self.max_transfer.amount:,.0f} "
                f"{self.currency.code} per transaction"
            )

    def _log(self, message: str, user_id: Optional[str], action: str,
             transaction: Transaction) -> None:
        log_action(
            self.logger, "info", message, user_id=user_id, action=action,
            resource=f"transaction:{transaction.id}",
            extra={
                "amount": transaction.amount.to_string(),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id
            }
        )

    def deposit_money(self, account_id: str, amount: NumberLike, user_id: str) -> MovementResult:
        """
        Deposit money on one of the user's accounts

        Raises:
            ValidationError: non-positive or too large amount, inactive account
            NotFoundError: unknown account
            UnauthorizedError: account owned by someone else
        """
        amount = as_money(amount, self.currency)
        if not amount.is_positive():
            raise ValidationError("Deposit amount must be positive")
        if amount > self.max_deposit:
            raise ValidationError(
                f"Deposit amount cannot exceed {self.max_deposit.amount:,.0f} {self.currency.code}"
            )

        with self.storage.atomic():
            account = self.accounts.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Cannot deposit to inactive account")

            account.credit(amount)
            transaction = self.ledger.record(
                TransactionType.DEPOSIT, amount, to_account_id=account.id,
                description="Deposit", initiated_by=user_id
            )
            self.accounts.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.DEPOSIT, "account", account.id,
                {"amount": amount.amount, "transaction_id": transaction.id}, user_id
            )

        self._log("Deposit completed", user_id, "deposit", transaction)
        self.publish_event(DomainEvent.DEPOSIT_COMPLETED, "transaction", transaction.id,
                           {"account_id": account.id, "amount": str(amount.amount)})
        return MovementResult(account, transaction)

    def withdraw_money(self, account_id: str, amount: NumberLike, user_id: str) -> MovementResult:
        amount = as_money(amount, self.currency)
        if not amount.is_positive():
            raise ValidationError("Withdrawal amount must be positive")

        with self.storage.atomic():
            account = self.accounts.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Cannot withdraw from inactive account")

            account.debit(amount)
            transaction = self.ledger.record(
                TransactionType.WITHDRAWAL, amount, from_account_id=account.id,
                description="Withdrawal", initiated_by=user_id
            )
            self.accounts.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.WITHDRAWAL, "account", account.id,
                {"amount": amount.amount, "transaction_id": transaction.id}, user_id
            )

        self._log("Withdrawal completed", user_id, "withdraw", transaction)
        self.publish_event(DomainEvent.WITHDRAWAL_COMPLETED, "transaction", transaction.id,
                           {"account_id": account.id, "amount": str(amount.amount)})
        return MovementResult(account, transaction)

    def _move(self, from_account: Account, to_account: Account, amount: Money,
              transaction_type: TransactionType, reference: str,
              user_id: str) -> Transaction:
        """Debit, credit and record in one go. Caller holds the atomic block."""
        from_account.debit(amount)
        to_account.credit(amount)
        transaction = self.ledger.record(
            transaction_type, amount,
            from_account_id=from_account.id,
            to_account_id=to_account.id,
            description=reference,
            reference=reference,
            initiated_by=user_id
        )
        self.accounts.save_account(from_account)
        self.accounts.save_account(to_account)
        return transaction

    def _check_pair(self, from_account: Account, to_account: Account, amount: Money) -> None:
        if not from_account.is_active:
            raise ValidationError("Source account is not active")
        if not to_account.is_active:
            raise ValidationError("Destination account is not active")
        if from_account.balance < amount:
            raise InsufficientFundsError("Insufficient funds in source account")
        if from_account.currency != to_account.currency:
            raise ValidationError("Currency mismatch between accounts")

    def transfer_money(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: NumberLike,
        user_id: str,
        reference: Optional[str] = None
    ) -> TransferResult:
        """
        Transfer money from one of the user's accounts to any account

        Args:
            from_account_id: Source account, must belong to user_id
            to_account_id: Destination account
            amount: Amount to move (at most the configured transfer limit)
            user_id: Caller
            reference: Free text, defaults to "Transfer from <iban> to <iban>"

        Returns:
            TransferResult with both updated accounts and the ledger record
        """
        amount = as_money(amount, self.currency)
        self._check_transfer_amount(amount)
        if from_account_id == to_account_id:
            raise ValidationError("Cannot transfer to the same account")

        with self.storage.atomic():
            from_account = self.accounts.get_account(from_account_id)
            to_account = self.accounts.get_account(to_account_id)
            if not from_account:
                raise NotFoundError("Source account not found")
            if not to_account:
                raise NotFoundError("Destination account not found")
            if from_account.user_id != user_id:
                raise UnauthorizedError("Unauthorized: Source account does not belong to user")
            self._check_pair(from_account, to_account, amount)

            reference = reference or f"Transfer from {from_account.iban} to {to_account.iban}"
            transaction = self._move(from_account, to_account, amount,
                                     TransactionType.TRANSFER, reference, user_id)

            self.audit_trail.log_event(
                AuditEventType.TRANSFER, "transaction", transaction.id,
                {
                    "from_account": from_account.id,
                    "to_account": to_account.id,
                    "amount": amount.amount,
                    "reference": reference
                },
                user_id
            )

        self._log("Transfer completed", user_id, "transfer", transaction)
        self.publish_event(DomainEvent.TRANSFER_COMPLETED, "transaction", transaction.id, {
            "from_account_id": from_account.id,
            "to_account_id": to_account.id,
            "amount": str(amount.amount)
        })
        return TransferResult(from_account, to_account, transaction)

    def transfer_to_client_main(
        self,
        from_account_id: str,
        recipient_email: str,
        amount: NumberLike,
        user_id: str,
        reference: Optional[str] = None
    ) -> TransferResult:
        """Transfer to another client's main account, found by email"""
        recipient_email = (recipient_email or '').strip().lower()
        if not recipient_email:
            raise ValidationError("Recipient email is required")

        amount = as_money(amount, self.currency)
        self._check_transfer_amount(amount)

        with self.storage.atomic():
            from_account = self.accounts.get_owned_account(
                from_account_id, user_id,
                not_found="Source account not found",
                unauthorized="Unauthorized: Source account does not belong to user"
            )
            if not from_account.is_active:
                raise ValidationError("Source account is not active")

            recipient = self.users.get_user_by_email(recipient_email)
            if not recipient:
                raise NotFoundError("Recipient not found")
            if recipient.id == user_id:
                raise ValidationError("Cannot transfer to yourself")

            to_account = self.accounts.get_main_account(recipient.id)
            if not to_account:
                raise ValidationError("Recipient has no active account")
            if to_account.id == from_account.id:
                raise ValidationError("Cannot transfer to the same account")
            self._check_pair(from_account, to_account, amount)

            reference = reference or (
                f"Transfer from {from_account.iban} to main account of {recipient_email}"
            )
            transaction = self._move(from_account, to_account, amount,
                                     TransactionType.TRANSFER, reference, user_id)

            self.audit_trail.log_event(
                AuditEventType.TRANSFER, "transaction", transaction.id,
                {
                    "from_account": from_account.id,
                    "to_account": to_account.id,
                    "recipient": recipient.id,
                    "amount": amount.amount,
                    "reference": reference
                },
                user_id
            )

        self._log("Transfer to client completed", user_id, "transfer", transaction)
        self.publish_event(DomainEvent.TRANSFER_COMPLETED, "transaction", transaction.id, {
            "from_account_id": from_account.id,
            "to_account_id": to_account.id,
            "recipient_id": recipient.id,
            "amount": str(amount.amount)
        })
        return TransferResult(from_account, to_account, transaction)

    def close_account(self, account_id: str, user_id: str,
                      transfer_to_account_id: Optional[str] = None) -> CloseAccountResult:
        """
        Close an account, sweeping any positive balance to another of the
        user's active accounts first
        """
        with self.storage.atomic():
            account = self.accounts.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Account is already closed")

            balance_transferred = Money.zero(account.currency)
            target_id = None

            if account.balance.is_positive():
                if not transfer_to_account_id:
                    raise ValidationError(
                        "Account has balance. Please specify a target account for transfer."
                    )
                if transfer_to_account_id == account.id:
                    raise ValidationError("Cannot transfer to the same account")

                target = self.accounts.get_owned_account(
                    transfer_to_account_id, user_id,
                    not_found="Target account not found",
                    unauthorized="Unauthorized: Target account does not belong to user"
                )
                if not target.is_active:
                    raise ValidationError("Target account is not active")
                if target.currency != account.currency:
                    raise ValidationError("Currency mismatch between accounts")

                balance_transferred = account.balance
                self._move(account, target, balance_transferred,
                           TransactionType.CLOSING_SWEEP,
                           f"Closing sweep from {account.iban} to {target.iban}", user_id)
                target_id = target.id

            account.deactivate()
            self.accounts.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.ACCOUNT_CLOSED, "account", account.id,
                {"balance_transferred": balance_transferred.amount, "target_account": target_id},
                user_id
            )

        self.publish_event(DomainEvent.ACCOUNT_CLOSED, "account", account.id,
                           {"balance_transferred": str(balance_transferred.amount)})
        return CloseAccountResult(
            account_id=account.id,
            status="closed",
            balance_transferred=balance_transferred.amount,
            transferred_to_account_id=target_id
        )

    def get_account_transactions(self, account_id: str, user_id: str) -> List[Transaction]:
        """Transactions of one of the user's accounts, newest first"""
        self.accounts.get_owned_account(account_id, user_id)
        return self.ledger.get_entries_for_account(account_id)

"""
Transaction Ledger

Immutable record of every movement of money. A transfer is one record
naming both accounts, so the debit on the source and the credit on the
destination are the same amount by construction. Deposits have no source
account and withdrawals no destination.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Kinds of money movement"""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"
    INTEREST = "INTEREST"
    CLOSING_SWEEP = "CLOSING_SWEEP"
    CREDIT_DISBURSEMENT = "CREDIT_DISBURSEMENT"
    WALLET_FUNDING = "WALLET_FUNDING"
    WALLET_WITHDRAWAL = "WALLET_WITHDRAWAL"


@dataclass
class Transaction(StorageRecord):
    """A single posted movement of money"""
    transaction_type: TransactionType
    amount: Money
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    description: str = ""
    reference: Optional[str] = None
    initiated_by: Optional[str] = None

    def __post_init__(self):
        if not self.amount.is_positive():
            raise ValueError("Transaction amount must be positive")
        if not self.from_account_id and not self.to_account_id:
            raise ValueError("Transaction must reference at least one account")

    def involves(self, account_id: str) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)

    def signed_amount(self, account_id: str) -> Money:
        """Amount as seen from one account: negative when it left the account"""
        if self.from_account_id == account_id and self.to_account_id != account_id:
            return -self.amount
        if self.to_account_id == account_id:
            return self.amount
        return Money.zero(self.amount.currency)


class TransactionLedger:
    """Append-only store of transactions"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "transactions"

    def record(
        self,
        transaction_type: TransactionType,
        amount: Money,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        description: str = "",
        reference: Optional[str] = None,
        initiated_by: Optional[str] = None
    ) -> Transaction:
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            amount=amount,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            description=description,
            reference=reference,
            initiated_by=initiated_by
        )
        self.storage.save(self.table, transaction.id, transaction.to_dict())
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table, transaction_id)
        if not data:
            return None
        return Transaction.from_dict(data)

    def get_entries_for_account(self, account_id: str) -> List[Transaction]:
        """All transactions touching an account, newest first"""
        transactions = [
            Transaction.from_dict(data) for data in self.storage.load_all(self.table)
            if account_id in (data.get('from_account_id'), data.get('to_account_id'))
        ]
        # sorted() is stable, so equal timestamps keep posting order before reversal
        return list(reversed(sorted(transactions, key=lambda t: t.created_at)))

    def calculate_account_balance(self, account_id: str,
                                  currency: Currency = Currency.EUR) -> Money:
        """Balance derived from the ledger alone, for reconciliation"""
        total = Money(Decimal('0'), currency)
        for transaction in self.get_entries_for_account(account_id):
            total = total + transaction.signed_amount(account_id)
        return total

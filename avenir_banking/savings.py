"""
Savings Module

Bank-wide savings rate set by directors, daily compound interest
projection and capitalization on savings accounts.
"""

from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional
import uuid

from .accounts import AccountManager, AccountType
from .audit import AuditTrail, AuditEventType
from .currency import Money, NumberLike, parse_amount, to_decimal
from .errors import NotFoundError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import TransactionLedger, TransactionType
from .notifications import NotificationService
from .storage import StorageInterface, StorageRecord
from .users import UserManager, UserRole

DAYS_PER_YEAR = Decimal('365')


@dataclass
class SavingsRate(StorageRecord):
    """Annual savings rate in percent, effective from a date"""
    rate: Decimal
    effective_date: datetime
    set_by: str

    def __post_init__(self):
        self.rate = parse_amount(self.rate, "Invalid savings rate")
        if self.rate < 0:
            raise ValidationError("Savings rate cannot be negative")
        if self.rate > 100:
            raise ValidationError("Savings rate cannot exceed 100%")

    @property
    def daily_rate(self) -> Decimal:
        return self.rate / Decimal('100') / DAYS_PER_YEAR

    def calculate_daily_interest(self, balance: NumberLike) -> Decimal:
        return to_decimal(balance) * self.rate / DAYS_PER_YEAR / Decimal('100')

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.effective_date <= (now or datetime.now(timezone.utc))


@dataclass
class SavingsProjection:
    projected_balance: Decimal
    accrued_interest: Decimal
    days: int


@dataclass
class SavingsAccrual:
    balance: Decimal
    interest_earned: Decimal
    days_accrued: int
    new_capitalization_date: datetime


def project_savings_balance(balance: NumberLike, daily_rate: NumberLike, days: int) -> SavingsProjection:
    """
    Compound a balance daily over a number of days

    No growth when the balance, the rate or the number of days is not positive.
    """
    balance = to_decimal(balance)
    daily_rate = to_decimal(daily_rate)
    if days <= 0 or balance <= 0 or daily_rate <= 0:
        return SavingsProjection(balance, Decimal('0'), days)

    projected = balance * (Decimal('1') + daily_rate) ** days
    return SavingsProjection(projected, projected - balance, days)


def accrue_savings_balance(balance: NumberLike, daily_rate: NumberLike,
                           last_capitalization: datetime,
                           now: Optional[datetime] = None) -> SavingsAccrual:
    """Accrue interest for the whole days elapsed since the last capitalization"""
    now = now or datetime.now(timezone.utc)
    days = (now - last_capitalization) // timedelta(days=1)
    projection = project_savings_balance(balance, daily_rate, days)
    return SavingsAccrual(
        balance=projection.projected_balance,
        interest_earned=projection.accrued_interest,
        days_accrued=days,
        new_capitalization_date=now
    )


class SavingsRateManager(EventPublisherMixin):
    """Savings rate history and interest capitalization"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        accounts: AccountManager,
        notifications: NotificationService,
        audit_trail: AuditTrail,
        ledger: Optional[TransactionLedger] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.users = users
        self.accounts = accounts
        self.notifications = notifications
        self.audit_trail = audit_trail
        self.ledger = ledger or accounts.ledger
        self.event_dispatcher = event_dispatcher
        self.table = "savings_rates"

    def list_rates(self) -> List[SavingsRate]:
        """Rate history, latest effective date first"""
        rates = [SavingsRate.from_dict(data) for data in self.storage.load_all(self.table)]
        rates.sort(key=lambda r: r.effective_date, reverse=True)
        return rates

    def get_current_rate(self) -> Optional[SavingsRate]:
        rates = self.list_rates()
        return rates[0] if rates else None

    def get_rate_at(self, when: datetime) -> Optional[SavingsRate]:
        """Latest rate already in effect at a given time"""
        for rate in self.list_rates():
            if rate.is_active(when):
                return rate
        return None

    def set_rate(self, rate: NumberLike, set_by: str,
                 effective_date: Optional[datetime] = None) -> SavingsRate:
        """
        Record a new savings rate and notify every client holding an
        active savings account

        Raises:
            NotFoundError: set_by is not a director
            ValidationError: rate outside 0..100
        """
        director = self.users.get_user(set_by)
        if not director or director.role != UserRole.DIRECTOR:
            raise NotFoundError("Director not found")

        now = datetime.now(timezone.utc)
        savings_rate = SavingsRate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            rate=rate,
            effective_date=effective_date or now,
            set_by=set_by
        )

        with self.storage.atomic():
            self.storage.save(self.table, savings_rate.id, savings_rate.to_dict())
            self.audit_trail.log_event(
                AuditEventType.SAVINGS_RATE_SET, 'savings_rate', savings_rate.id,
                {'rate': savings_rate.rate, 'effective_date': savings_rate.effective_date},
                set_by
            )

        self._notify_savers(savings_rate.rate)
        self.publish_event(DomainEvent.SAVINGS_RATE_CHANGED, 'savings_rate', savings_rate.id,
                           {'rate': str(savings_rate.rate)})
        return savings_rate

    def _notify_savers(self, rate: Decimal) -> None:
        savings_accounts = self.storage.find(
            self.accounts.accounts_table,
            {'account_type': AccountType.SAVINGS.value, 'is_active': True}
        )
        user_ids = list(dict.fromkeys(data['user_id'] for data in savings_accounts))
        message = f"Le taux d'épargne a été modifié. Nouveau taux : {rate:.2f}% par an."
        for user_id in user_ids:
            self.notifications.create_notification(user_id, message)

    def capitalize_interest(self, account_id: str,
                            now: Optional[datetime] = None) -> SavingsAccrual:
        """
        Credit the interest accrued since the last capitalization

        Interest below one cent is left to accrue; the capitalization date
        only moves forward by whole days when something was credited.
        """
        now = now or datetime.now(timezone.utc)

        with self.storage.atomic():
            account = self.accounts.get_account(account_id)
            if not account:
                raise NotFoundError("Account not found")
            if not account.is_savings_account():
                raise ValidationError("Interest is only paid on savings accounts")
            if not account.is_active:
                raise ValidationError("Account is not active")

            last = account.last_capitalization or account.created_at
            current = self.get_rate_at(now)
            if not current:
                return SavingsAccrual(account.balance.amount, Decimal('0'), 0, last)

            accrual = accrue_savings_balance(account.balance.amount, current.daily_rate, last, now)
            interest = Money(accrual.interest_earned, account.currency)
            if not interest.is_positive():
                return SavingsAccrual(account.balance.amount, Decimal('0'), 0, last)

            account.credit(interest)
            account.last_capitalization = last + timedelta(days=accrual.days_accrued)
            transaction = self.ledger.record(
                TransactionType.INTEREST, interest, to_account_id=account.id,
                description=f"Interest at {current.rate}% over {accrual.days_accrued} days"
            )
            self.accounts.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.INTEREST_CAPITALIZED, 'account', account.id,
                {'amount': interest.amount, 'days': accrual.days_accrued,
                 'transaction_id': transaction.id}
            )

        self.publish_event(DomainEvent.INTEREST_CAPITALIZED, 'account', account.id,
                           {'amount': str(interest.amount)})
        return SavingsAccrual(
            balance=account.balance.amount,
            interest_earned=interest.amount,
            days_accrued=accrual.days_accrued,
            new_capitalization_date=account.last_capitalization
        )

"""
Credit Module

Constant-payment loan math and the credits advisors grant to clients.
Interest is amortized monthly; insurance is a fixed share of the borrowed
amount spread evenly over the duration.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .currency import Money, NumberLike, as_money, parse_amount, to_decimal
from .errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import TransactionLedger, TransactionType
from .storage import StorageInterface, StorageRecord
from .users import UserManager, UserRole

MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')

MAX_INTEREST_RATE = Decimal('20')
MAX_INSURANCE_RATE = Decimal('5')
MIN_DURATION_MONTHS = 12
MAX_DURATION_MONTHS = 360


@dataclass
class MonthlyPayment:
    monthly_payment: Decimal
    principal_and_interest: Decimal
    insurance_monthly: Decimal


def calculate_loan_monthly_payment(principal: NumberLike, annual_rate: NumberLike,
                                   term_months: int,
                                   insurance_annual_rate: NumberLike) -> MonthlyPayment:
    """
    Monthly installment for a constant-payment loan

    Rates are fractions (0.05 for 5%). Formula: P * r(1+r)^n / ((1+r)^n - 1)
    with r the monthly rate; a zero rate repays P / n each month.
    """
    principal = to_decimal(principal)
    monthly_rate = to_decimal(annual_rate) / MONTHS_PER_YEAR
    insurance_monthly = principal * to_decimal(insurance_annual_rate) / MONTHS_PER_YEAR

    if term_months <= 0:
        base = Decimal('0')
    elif monthly_rate == 0:
        base = principal / term_months
    else:
        factor = (Decimal('1') + monthly_rate) ** term_months
        base = principal * (monthly_rate * factor) / (factor - Decimal('1'))

    return MonthlyPayment(base + insurance_monthly, base, insurance_monthly)


@dataclass
class AmortizationEntry:
    """Single month of an amortization schedule"""
    month: int
    principal: Decimal
    interest: Decimal
    insurance: Decimal
    remaining_balance: Decimal


@dataclass
class CreditCalculation:
    monthly_payment: Decimal
    monthly_insurance: Decimal
    total_amount: Decimal
    total_interest: Decimal
    total_insurance: Decimal
    amortization_schedule: List[AmortizationEntry] = field(default_factory=list)

    @property
    def total_monthly(self) -> Decimal:
        return self.monthly_payment + self.monthly_insurance


def calculate_credit(amount: NumberLike, annual_interest_rate_pct: NumberLike,
                     insurance_rate_pct: NumberLike,
                     duration_months: int) -> Optional[CreditCalculation]:
    """
    Full cost and schedule of a credit, rates given in percent

    Returns None when the amount or the duration is not positive.
    """
    amount = to_decimal(amount)
    if amount <= 0 or duration_months <= 0:
        return None

    monthly_rate = to_decimal(annual_interest_rate_pct) / HUNDRED / MONTHS_PER_YEAR
    if monthly_rate == 0:
        monthly_payment = amount / duration_months
    else:
        monthly_payment = (amount * monthly_rate) / (
            Decimal('1') - (Decimal('1') + monthly_rate) ** -duration_months
        )

    total_insurance = amount * to_decimal(insurance_rate_pct) / HUNDRED
    monthly_insurance = total_insurance / duration_months

    schedule = []
    remaining = amount
    for month in range(1, duration_months + 1):
        interest = remaining * monthly_rate
        principal = monthly_payment - interest
        remaining -= principal
        if remaining < CENT:
            remaining = Decimal('0')
        schedule.append(AmortizationEntry(month, principal, interest, monthly_insurance, remaining))

    total_interest = monthly_payment * duration_months - amount
    return CreditCalculation(
        monthly_payment=monthly_payment,
        monthly_insurance=monthly_insurance,
        total_amount=amount + total_interest + total_insurance,
        total_interest=total_interest,
        total_insurance=total_insurance,
        amortization_schedule=schedule
    )


class CreditStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass
class Credit(StorageRecord):
    """Credit granted by an advisor to a client"""
    client_id: str
    advisor_id: str
    amount: Money
    annual_interest_rate: Decimal
    insurance_rate: Decimal
    duration_months: int
    monthly_payment: Money
    monthly_insurance: Money
    total_interest: Money
    total_insurance: Money
    total_amount: Money
    remaining_amount: Money
    status: CreditStatus = CreditStatus.PENDING
    account_id: Optional[str] = None
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def total_monthly(self) -> Money:
        return self.monthly_payment + self.monthly_insurance

    def schedule(self) -> List[AmortizationEntry]:
        calculation = calculate_credit(self.amount.amount, self.annual_interest_rate,
                                       self.insurance_rate, self.duration_months)
        return calculation.amortization_schedule if calculation else []


def validate_credit_terms(amount: Money, annual_interest_rate: Decimal,
                          insurance_rate: Decimal, duration_months: int) -> None:
    if not amount.is_positive():
        raise ValidationError("Credit amount must be positive")
    if not 0 <= annual_interest_rate <= MAX_INTEREST_RATE:
        raise ValidationError(f"Interest rate must be between 0 and {MAX_INTEREST_RATE}%")
    if not 0 <= insurance_rate <= MAX_INSURANCE_RATE:
        raise ValidationError(f"Insurance rate must be between 0 and {MAX_INSURANCE_RATE}%")
    if not MIN_DURATION_MONTHS <= duration_months <= MAX_DURATION_MONTHS:
        raise ValidationError(
            f"Duration must be between {MIN_DURATION_MONTHS} and {MAX_DURATION_MONTHS} months"
        )


class CreditManager(EventPublisherMixin):
    """Grants, disburses and tracks repayment of credits"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserManager,
        accounts: AccountManager,
        audit_trail: AuditTrail,
        ledger: Optional[TransactionLedger] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.users = users
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.ledger = ledger or accounts.ledger
        self.event_dispatcher = event_dispatcher
        self.table = "credits"

    def _save_credit(self, credit: Credit) -> None:
        self.storage.save(self.table, credit.id, credit.to_dict())

    def get_credit(self, credit_id: str) -> Optional[Credit]:
        data = self.storage.load(self.table, credit_id)
        if not data:
            return None
        return Credit.from_dict(data)

    def _require_credit(self, credit_id: str) -> Credit:
        credit = self.get_credit(credit_id)
        if not credit:
            raise NotFoundError("Credit not found")
        return credit

    def create_credit(
        self,
        advisor_id: str,
        client_id: str,
        amount: NumberLike,
        annual_interest_rate: NumberLike,
        insurance_rate: NumberLike,
        duration_months: int
    ) -> Credit:
        """
        Grant a credit to a client

        Args:
            advisor_id: Advisor or director granting the credit
            client_id: Borrowing client
            amount: Borrowed amount
            annual_interest_rate: Percent, 0..20
            insurance_rate: Percent of the amount, 0..5
            duration_months: 12..360

        Returns:
            Credit in PENDING status with its computed costs
        """
        advisor = self.users.get_user(advisor_id)
        if not advisor:
            raise NotFoundError("Advisor not found")
        if advisor.role not in (UserRole.ADVISOR, UserRole.DIRECTOR):
            raise ForbiddenError("Only advisors and directors can grant credits")

        client = self.users.get_user(client_id)
        if not client or not client.is_client():
            raise NotFoundError("Client not found")

        principal = as_money(amount)
        rate = parse_amount(annual_interest_rate, "Invalid interest rate")
        insurance = parse_amount(insurance_rate, "Invalid insurance rate")
        validate_credit_terms(principal, rate, insurance, duration_months)

        calculation = calculate_credit(principal.amount, rate, insurance, duration_months)
        currency = principal.currency
        now = datetime.now(timezone.utc)
        credit = Credit(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client.id,
            advisor_id=advisor.id,
            amount=principal,
            annual_interest_rate=rate,
            insurance_rate=insurance,
            duration_months=duration_months,
            monthly_payment=Money(calculation.monthly_payment, currency),
            monthly_insurance=Money(calculation.monthly_insurance, currency),
            total_interest=Money(calculation.total_interest, currency),
            total_insurance=Money(calculation.total_insurance, currency),
            total_amount=Money(calculation.total_amount, currency),
            remaining_amount=Money(calculation.total_amount, currency)
        )

        with self.storage.atomic():
            self._save_credit(credit)
            self.audit_trail.log_event(
                AuditEventType.CREDIT_CREATED, 'credit', credit.id,
                {
                    'client_id': client.id,
                    'amount': principal.amount,
                    'annual_interest_rate': rate,
                    'insurance_rate': insurance,
                    'duration_months': duration_months
                },
                advisor.id
            )

        self.publish_event(DomainEvent.CREDIT_CREATED, 'credit', credit.id,
                           {'client_id': client.id, 'amount': str(principal.amount)})
        return credit

    def list_credits(self, advisor_id: Optional[str] = None, client_id: Optional[str] = None,
                     status: Optional[CreditStatus] = None) -> List[Credit]:
        """Credits matching the filters, newest first"""
        filters = {}
        if advisor_id:
            filters['advisor_id'] = advisor_id
        if client_id:
            filters['client_id'] = client_id
        if status:
            filters['status'] = status.value

        if filters:
            data = self.storage.find(self.table, filters)
        else:
            data = self.storage.load_all(self.table)
        credits = [Credit.from_dict(item) for item in data]
        credits.sort(key=lambda c: c.created_at)
        credits.reverse()
        return credits

    def activate_credit(self, credit_id: str, account_id: Optional[str] = None,
                        acting_user_id: Optional[str] = None) -> Credit:
        """Activate a pending credit, disbursing the principal when an account is given"""
        with self.storage.atomic():
            credit = self._require_credit(credit_id)
            if credit.status != CreditStatus.PENDING:
                raise ValidationError("Credit is not pending")

            if account_id:
                account = self.accounts.get_account(account_id)
                if not account:
                    raise NotFoundError("Account not found")
                if account.user_id != credit.client_id:
                    raise UnauthorizedError("Unauthorized: Account does not belong to client")
                if not account.is_active:
                    raise ValidationError("Account is not active")

                account.credit(credit.amount)
                self.ledger.record(
                    TransactionType.CREDIT_DISBURSEMENT, credit.amount,
                    to_account_id=account.id,
                    description=f"Credit disbursement {credit.id}",
                    reference=credit.id,
                    initiated_by=acting_user_id
                )
                self.accounts.save_account(account)
                credit.account_id = account.id

            credit.status = CreditStatus.ACTIVE
            credit.activated_at = datetime.now(timezone.utc)
            credit.touch()
            self._save_credit(credit)

            self.audit_trail.log_event(
                AuditEventType.CREDIT_ACTIVATED, 'credit', credit.id,
                {'account_id': credit.account_id}, acting_user_id
            )

        return credit

    def record_repayment(self, credit_id: str, amount: NumberLike,
                         acting_user_id: Optional[str] = None) -> Credit:
        """Reduce the amount left to repay; the credit completes at zero"""
        payment = as_money(amount)
        if not payment.is_positive():
            raise ValidationError("Repayment amount must be positive")

        with self.storage.atomic():
            credit = self._require_credit(credit_id)
            if credit.status != CreditStatus.ACTIVE:
                raise ValidationError("Credit is not active")
            if payment > credit.remaining_amount:
                raise ValidationError("Repayment exceeds remaining amount")

            credit.remaining_amount = credit.remaining_amount - payment
            self.audit_trail.log_event(
                AuditEventType.CREDIT_REPAYMENT, 'credit', credit.id,
                {'amount': payment.amount, 'remaining': credit.remaining_amount.amount},
                acting_user_id
            )

            if credit.remaining_amount.is_zero():
                credit.status = CreditStatus.COMPLETED
                credit.completed_at = datetime.now(timezone.utc)
                self.audit_trail.log_event(
                    AuditEventType.CREDIT_COMPLETED, 'credit', credit.id, {}, acting_user_id
                )

            credit.touch()
            self._save_credit(credit)

        if credit.status == CreditStatus.COMPLETED:
            self.publish_event(DomainEvent.CREDIT_COMPLETED, 'credit', credit.id,
                               {'client_id': credit.client_id})
        return credit

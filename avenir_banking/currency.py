"""
Money Module

ISO 4217 currency codes and an immutable Money value object with proper
Decimal precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum
import re

from .errors import ValidationError

getcontext().prec = 28

NumberLike = Union[Decimal, int, float, str]


class Currency(Enum):
    """ISO 4217 code and number of minor-unit digits"""
    EUR = ("EUR", 2)  # Euro, operating currency of the bank
    USD = ("USD", 2)
    GBP = ("GBP", 2)
    CHF = ("CHF", 2)
    CAD = ("CAD", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unsupported currency: {code}")


def to_decimal(value: NumberLike) -> Decimal:
    """Convert a number to Decimal going through str() so floats keep their printed value"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a valid amount")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


@dataclass(frozen=True)
class Money:
    """Amount quantized to its currency's minor unit, half up"""
    amount: Decimal
    currency: Currency = Currency.EUR

    def __post_init__(self):
        amount = to_decimal(self.amount)
        if not amount.is_finite():
            raise ValueError("Invalid money amount")

        # Round to currency precision
        try:
            rounded = amount.quantize(
                Decimal('0.1') ** self.currency.precision,
                rounding=ROUND_HALF_UP
            )
        except InvalidOperation:
            raise ValueError(f"Money amount out of range: {amount}")
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = Currency.EUR) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_cents(cls, cents: int, currency: Currency = Currency.EUR) -> 'Money':
        """Build from an integer count of minor units"""
        return cls(Decimal(int(cents)).scaleb(-currency.precision), currency)

    def to_cents(self) -> int:
        """Integer count of minor units"""
        return int(self.amount.scaleb(self.currency.precision))

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: NumberLike) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    __rmul__ = __mul__

    def __truediv__(self, divisor: NumberLike) -> 'Money':
        return Money(self.amount / to_decimal(divisor), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def _comparable(self, other: 'Money') -> Decimal:
        self._check_currency(other, "compare")
        return other.amount

    def __lt__(self, other: 'Money') -> bool:
        return self.amount < self._comparable(other)

    def __le__(self, other: 'Money') -> bool:
        return self.amount <= self._comparable(other)

    def __gt__(self, other: 'Money') -> bool:
        return self.amount > self._comparable(other)

    def __ge__(self, other: 'Money') -> bool:
        return self.amount >= self._comparable(other)

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()


def decimal_from_string(value: str) -> Decimal:
    """
    Parse an amount typed by a user

    Currency symbols and spaces are ignored. The separator appearing last
    is the decimal one ("1.234,56" and "1,234.56" are both 1234.56), except
    a lone comma followed by three digits, which groups thousands ("1,234").

    Raises:
        ValueError: empty or unparseable input
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Value must be a non-empty string")

    digits = re.sub(r'[^\d.,+-]', '', value)
    last_comma, last_dot = digits.rfind(','), digits.rfind('.')

    if last_comma > last_dot:
        grouping_only = last_dot < 0 and (
            digits.count(',') > 1 or len(digits) - last_comma - 1 > 2
        )
        if grouping_only:
            digits = digits.replace(',', '')
        else:
            digits = digits.replace('.', '').replace(',', '.')
    else:
        digits = digits.replace(',', '')

    try:
        return Decimal(digits)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def validate_decimal_precision(value: Decimal, currency: Currency) -> Decimal:
    """Round a decimal to the currency precision"""
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )


def parse_amount(value: NumberLike, message: str = "Invalid amount") -> Decimal:
    """Finite Decimal from caller input; anything else is a ValidationError"""
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError(message)
    if not amount.is_finite():
        raise ValidationError(message)
    return amount


def as_money(value: Union['Money', NumberLike], currency: Currency = Currency.EUR) -> 'Money':
    """
    Accept Money or a plain number and return Money

    Raises:
        ValidationError: not a number, NaN/infinite, or too large to hold in cents
    """
    if isinstance(value, Money):
        return value
    amount = parse_amount(value)
    try:
        return Money(amount, currency)
    except ValueError:
        raise ValidationError("Invalid amount")

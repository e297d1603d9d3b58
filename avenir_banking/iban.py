"""
IBAN Module

French IBAN value object: FR + 2 check digits + 23 character BBAN made of
a 5 digit bank code, 5 digit branch code, 11 character account number and
a 2 digit RIB key. Validation follows ISO 13616 (mod-97 == 1).
"""

import random
import re
import secrets
from typing import Optional

from .errors import ValidationError


COUNTRY_CODE = "FR"
BBAN_LENGTH = 23
IBAN_PATTERN = re.compile(r'^FR\d{2}[0-9A-Z]{23}$')


class InvalidIBANError(ValidationError):
    """IBAN failed format or checksum validation"""


def mod97(numeric: str) -> int:
    """Streaming remainder of a (possibly very long) decimal string by 97"""
    remainder = 0
    for digit in numeric:
        remainder = (remainder * 10 + int(digit)) % 97
    return remainder


def _letters_to_digits(value: str) -> str:
    # A=10 ... Z=35
    return ''.join(str(ord(c) - 55) if c.isalpha() else c for c in value)


def compute_check_digits(country: str, bban: str) -> str:
    """Check digits for a country code and BBAN"""
    numeric = _letters_to_digits(bban.upper() + country.upper() + "00")
    return f"{98 - mod97(numeric):02d}"


def rib_key(account_number: str) -> str:
    """Two digit key derived from the account number"""
    return f"{(int(_letters_to_digits(account_number)) % 97) + 1:02d}"


class IBAN:
    """Immutable IBAN, equal and hashed by its compact value"""

    __slots__ = ('_value',)

    def __init__(self, value: str):
        self._value = value

    @classmethod
    def generate(cls, bank_code: str, branch_code: str,
                 rng: Optional[random.Random] = None) -> 'IBAN':
        """Generate a new valid IBAN with a random 11 digit account number"""
        if not (len(bank_code) == 5 and bank_code.isdigit()):
            raise ValidationError("Bank code must be 5 digits")
        if not (len(branch_code) == 5 and branch_code.isdigit()):
            raise ValidationError("Branch code must be 5 digits")

        rng = rng or secrets.SystemRandom()
        account_number = f"{rng.randint(0, 10 ** 11 - 1):011d}"
        bban = bank_code + branch_code + account_number + rib_key(account_number)
        return cls(COUNTRY_CODE + compute_check_digits(COUNTRY_CODE, bban) + bban)

    @classmethod
    def from_string(cls, value: str) -> 'IBAN':
        """Parse user input, raising InvalidIBANError when it is not a valid IBAN"""
        sanitized = re.sub(r'\s', '', value or '').upper()
        if not cls.is_valid(sanitized):
            raise InvalidIBANError(f"Invalid IBAN: {value}")
        return cls(sanitized)

    @staticmethod
    def is_valid(value: str) -> bool:
        if not IBAN_PATTERN.match(value or ''):
            return False
        rearranged = value[4:] + value[:4]
        return mod97(_letters_to_digits(rearranged)) == 1

    @property
    def value(self) -> str:
        return self._value

    @property
    def country_code(self) -> str:
        return self._value[:2]

    @property
    def check_digits(self) -> str:
        return self._value[2:4]

    @property
    def bban(self) -> str:
        return self._value[4:]

    @property
    def bank_code(self) -> str:
        return self._value[4:9]

    @property
    def branch_code(self) -> str:
        return self._value[9:14]

    @property
    def account_number(self) -> str:
        return self._value[14:25]

    def format(self) -> str:
        """Display form grouped by four characters"""
        return ' '.join(self._value[i:i + 4] for i in range(0, len(self._value), 4))

    def __eq__(self, other) -> bool:
        if not isinstance(other, IBAN):
            return False
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"IBAN('{self._value}')"

"""
Test suite for IBAN module

Tests generation, parsing and mod-97 validation of French IBANs.
"""

import random

import pytest

from avenir_banking.errors import ValidationError
from avenir_banking.iban import (
    IBAN, InvalidIBANError, compute_check_digits, mod97, rib_key
)

KNOWN_VALID = "FR1420041010050500013M02606"


class TestChecksum:
    """Test checksum helpers"""

    def test_mod97(self):
        """Test streaming remainder"""
        assert mod97("97") == 0
        assert mod97("98") == 1
        assert mod97("123456789012345678901234567890") == 123456789012345678901234567890 % 97

    def test_rib_key(self):
        """Test RIB key is (n mod 97) + 1 on two digits"""
        assert rib_key("00000000000") == "01"
        assert rib_key("00000000096") == "97"
        assert rib_key("00000000097") == "01"

    def test_check_digits_of_known_iban(self):
        """Test check digits match a published IBAN"""
        assert compute_check_digits("FR", KNOWN_VALID[4:]) == "14"


class TestIBAN:
    """Test the IBAN value object"""

    def test_is_valid(self):
        """Test validation of well-formed and tampered IBANs"""
        assert IBAN.is_valid(KNOWN_VALID)
        assert not IBAN.is_valid("FR1520041010050500013M02606")
        assert not IBAN.is_valid("DE89370400440532013000")
        assert not IBAN.is_valid("")

    def test_from_string_sanitizes(self):
        """Test spaces are removed and letters upper-cased"""
        iban = IBAN.from_string("fr14 2004 1010 0505 0001 3m02 606")
        assert iban.value == KNOWN_VALID

    def test_from_string_rejects_invalid(self):
        """Test parsing errors are validation errors"""
        with pytest.raises(InvalidIBANError, match="Invalid IBAN: FR00"):
            IBAN.from_string("FR00")
        assert issubclass(InvalidIBANError, ValidationError)

    def test_parts(self):
        """Test structural accessors"""
        iban = IBAN.from_string(KNOWN_VALID)
        assert iban.country_code == "FR"
        assert iban.check_digits == "14"
        assert iban.bank_code == "20041"
        assert iban.branch_code == "01005"
        assert iban.account_number == "0500013M026"
        assert len(iban.bban) == 23

    def test_format(self):
        """Test grouping by four characters"""
        assert IBAN.from_string(KNOWN_VALID).format() == "FR14 2004 1010 0505 0001 3M02 606"

    def test_generate_is_valid(self):
        """Test generated IBANs always pass validation"""
        rng = random.Random(42)
        for _ in range(50):
            iban = IBAN.generate("30004", "01005", rng)
            assert IBAN.is_valid(iban.value)
            assert iban.bank_code == "30004"
            assert iban.branch_code == "01005"
            assert iban.bban[-2:] == rib_key(iban.account_number)

    def test_generate_rejects_bad_codes(self):
        """Test bank and branch codes must be five digits"""
        with pytest.raises(ValidationError, match="Bank code"):
            IBAN.generate("3000", "01005")
        with pytest.raises(ValidationError, match="Branch code"):
            IBAN.generate("30004", "0100A")

    def test_equality_and_hash(self):
        """Test IBANs compare by value"""
        a = IBAN.from_string(KNOWN_VALID)
        b = IBAN.from_string(KNOWN_VALID.lower())
        assert a == b
        assert len({a, b}) == 1
        assert str(a) == KNOWN_VALID
        assert repr(a) == f"IBAN('{KNOWN_VALID}')"

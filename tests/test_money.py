"""
Tests for Decimal money helpers
"""

import pytest
from decimal import Decimal

from lending_core.exceptions import ValidationError
from lending_core.money import (
    MAX_AMOUNT, ZERO, format_amount, quantize, to_decimal, to_non_negative_decimal,
    to_positive_decimal, total
)


class TestMoneyParsing:
    """Test conversion of raw values to rounded Decimals"""

    def test_rounds_half_up_to_cents(self):
        """Test values are rounded to two places with ROUND_HALF_UP"""
        assert to_decimal("10.005") == Decimal("10.01")
        assert to_decimal("10.004") == Decimal("10.00")
        assert quantize(Decimal("2.675")) == Decimal("2.68")

    def test_float_goes_through_string(self):
        """Test floats keep their printed value"""
        assert to_decimal(0.1) == Decimal("0.10")
        assert to_decimal(250) == Decimal("250.00")

    def test_rejects_missing_and_malformed(self):
        """Test None, booleans and non-numeric strings are rejected"""
        for value in [None, True, "abc", "", "1.2.3"]:
            with pytest.raises(ValidationError):
                to_decimal(value)

    def test_rejects_non_finite(self):
        """Test NaN and infinity are rejected"""
        for value in ["NaN", "Infinity", "-Infinity"]:
            with pytest.raises(ValidationError):
                to_decimal(value)

    def test_positive_and_non_negative(self):
        """Test sign checks"""
        assert to_positive_decimal("0.01") == Decimal("0.01")
        assert to_non_negative_decimal("0") == ZERO

        with pytest.raises(ValidationError):
            to_positive_decimal("0")
        with pytest.raises(ValidationError):
            to_positive_decimal("0.001")  # Rounds to zero
        with pytest.raises(ValidationError):
            to_non_negative_decimal("-1")

    def test_error_names_the_field(self):
        """Test validation messages carry the field name"""
        with pytest.raises(ValidationError, match="loan_amount"):
            to_positive_decimal("-5", "loan_amount")


class TestMoneyHelpers:
    """Test totals and formatting"""

    def test_total(self):
        """Test totals are exact and rounded"""
        assert total([Decimal("0.10")] * 3) == Decimal("0.30")
        assert total([]) == ZERO

    def test_format_amount(self):
        """Test display formatting"""
        assert format_amount(Decimal("1234.5")) == "PHP 1,234.50"
        assert format_amount(Decimal("10"), "USD") == "USD 10.00"


class TestMoneyLimits:
    """Test amounts too large for the ledger's precision"""

    def test_huge_amounts_rejected(self):
        """Test amounts beyond MAX_AMOUNT fail validation instead of overflowing"""
        for value in ["1e30", "-1e30", "1000000000000.01", Decimal("9" * 40)]:
            with pytest.raises(ValidationError):
                to_decimal(value)

    def test_ceiling_is_inclusive(self):
        """Test MAX_AMOUNT itself is accepted"""
        assert to_decimal(MAX_AMOUNT) == Decimal("1000000000000.00")

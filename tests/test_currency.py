"""
Test suite for currency module

Tests Money arithmetic, half-up rounding to currency precision and Decimal
coercion. No monetary value may pass through float arithmetic.
"""

import pytest
from decimal import Decimal

from ledger_engine.currency import (
    Money, Currency, round_money, to_decimal, validate_decimal_precision
)


class TestRounding:
    """Test rounding helpers"""

    def test_round_money_half_up(self):
        """Halves round away from zero at 2 places"""
        assert round_money(Decimal('10.005')) == Decimal('10.01')
        assert round_money(Decimal('10.004')) == Decimal('10.00')
        assert round_money(Decimal('-10.005')) == Decimal('-10.01')

    def test_round_money_zero_places(self):
        assert round_money(Decimal('100.5'), 0) == Decimal('101')

    def test_to_decimal_avoids_binary_float(self):
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal("12.30") == Decimal('12.30')
        assert to_decimal(7) == Decimal('7')

    def test_validate_precision_for_currency(self):
        assert validate_decimal_precision(Decimal('99.999'), Currency.INR) == Decimal('100.00')
        assert validate_decimal_precision(Decimal('99.4'), Currency.JPY) == Decimal('99')


class TestMoney:
    """Test Money value object"""

    def test_money_creation_rounds(self):
        money = Money(Decimal('100.555'), Currency.USD)
        assert money.amount == Decimal('100.56')
        assert money.currency == Currency.USD

    def test_money_arithmetic(self):
        a = Money(Decimal('100.50'), Currency.INR)
        b = Money(Decimal('50.25'), Currency.INR)

        assert (a + b).amount == Decimal('150.75')
        assert (a - b).amount == Decimal('50.25')
        assert (a * Decimal('2')).amount == Decimal('201.00')
        assert (a / Decimal('3')).amount == Decimal('33.50')
        assert (-a).amount == Decimal('-100.50')
        assert abs(-a) == a

    def test_money_comparisons(self):
        small = Money(Decimal('10'), Currency.INR)
        large = Money(Decimal('20'), Currency.INR)
        assert small < large
        assert large >= small
        assert Money(Decimal('0'), Currency.INR).is_zero()
        assert large.is_positive()
        assert (-large).is_negative()

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError, match="Cannot add"):
            Money(Decimal('1'), Currency.INR) + Money(Decimal('1'), Currency.USD)

    def test_money_is_immutable(self):
        money = Money(Decimal('5'), Currency.INR)
        with pytest.raises(AttributeError):
            money.amount = Decimal('6')

    def test_to_string(self):
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"


class TestCurrency:
    """Test Currency enum"""

    def test_from_code(self):
        assert Currency.from_code("inr") == Currency.INR
        assert Currency.JPY.precision == 0

    def test_unknown_code(self):
        with pytest.raises(ValueError, match="Unsupported currency"):
            Currency.from_code("XYZ")

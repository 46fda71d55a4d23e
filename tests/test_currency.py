"""
Test suite for money handling

All amounts are Decimal with two-place ROUND_HALF_UP rounding.
"""

import pytest
from decimal import Decimal

from pawn_core.currency import (
    Money, Currency, sum_money, currency_from_code, decimal_from_string
)
from pawn_core.exceptions import ValidationError


class TestMoney:
    """Test Money arithmetic and rounding"""
    
    def test_rounds_half_up(self):
        assert Money(Decimal('10.005'), Currency.USD).amount == Decimal('10.01')
        assert Money(Decimal('10.004'), Currency.USD).amount == Decimal('10.00')
    
    def test_string_amount_coerced(self):
        assert Money('12.5', Currency.USD).amount == Decimal('12.50')
    
    def test_arithmetic(self):
        a = Money(Decimal('100.00'), Currency.USD)
        b = Money(Decimal('25.50'), Currency.USD)
        
        assert (a + b).amount == Decimal('125.50')
        assert (a - b).amount == Decimal('74.50')
        assert (a * Decimal('0.15')).amount == Decimal('15.00')
        assert (a / 3).amount == Decimal('33.33')
        assert (-b).amount == Decimal('-25.50')
    
    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError):
            Money(Decimal('1'), Currency.USD) + Money(Decimal('1'), Currency.EUR)
    
    def test_comparisons(self):
        small = Money(Decimal('10'), Currency.USD)
        large = Money(Decimal('20'), Currency.USD)
        
        assert small < large
        assert large >= small
        assert small == Money(Decimal('10.00'), Currency.USD)
        assert small != Money(Decimal('10'), Currency.EUR)
    
    def test_floor_zero(self):
        assert Money(Decimal('-5'), Currency.USD).floor_zero().is_zero()
        assert Money(Decimal('5'), Currency.USD).floor_zero().amount == Decimal('5.00')
    
    def test_to_string(self):
        assert Money(Decimal('1234.5'), Currency.USD).to_string() == "USD 1,234.50"
    
    def test_sum_money(self):
        values = [Money(Decimal('1.10'), Currency.USD), Money(Decimal('2.20'), Currency.USD)]
        assert sum_money(values, Currency.USD).amount == Decimal('3.30')
        assert sum_money([], Currency.USD).is_zero()


class TestConversions:
    """Test parsing of user-supplied amounts"""
    
    def test_decimal_from_string(self):
        assert decimal_from_string("1,234.56") == Decimal('1234.56')
        assert decimal_from_string("$100") == Decimal('100')
        assert decimal_from_string(7) == Decimal('7')
        assert decimal_from_string(Decimal('2.5')) == Decimal('2.5')
    
    @pytest.mark.parametrize("value", [1.5, True, "", "abc", None, "NaN"])
    def test_decimal_from_string_rejects(self, value):
        with pytest.raises(ValidationError):
            decimal_from_string(value)
    
    def test_currency_from_code(self):
        assert currency_from_code("usd") == Currency.USD
        with pytest.raises(ValidationError):
            currency_from_code("XYZ")

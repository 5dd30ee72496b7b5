"""
Tests for money and date primitives

Every amount must stay exact to the minor unit; splitting never loses or
invents a cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from lending_core.currency import (
    Money, Currency, money_min, money_sum, split_evenly,
    exact_money, validate_decimal_precision
)
from lending_core.dates import add_weeks, days_between, fixed_today, parse_date, format_date


class TestMoney:
    """Test Money value semantics"""

    def test_quantizes_to_currency_precision(self):
        """Amounts are rounded half-up to the currency's minor unit"""
        assert Money(Decimal('10.005'), Currency.KES).amount == Decimal('10.01')
        assert Money(Decimal('10.004'), Currency.KES).amount == Decimal('10.00')
        assert Money(Decimal('1500.5'), Currency.UGX).amount == Decimal('1501')

    def test_float_input_goes_through_str(self):
        """Floats are converted via their repr, so 0.1 stays 0.10"""
        assert Money(0.1, Currency.KES).amount == Decimal('0.10')

    def test_arithmetic(self):
        """Addition, subtraction and multiplication by a rate"""
        a = Money(Decimal('1250.00'), Currency.KES)
        b = Money(Decimal('125.00'), Currency.KES)

        assert a + b == Money(Decimal('1375.00'), Currency.KES)
        assert a - b == Money(Decimal('1125.00'), Currency.KES)
        assert a * Decimal('0.10') == Money(Decimal('125.00'), Currency.KES)
        assert -b == Money(Decimal('-125.00'), Currency.KES)
        assert abs(-b) == b

    def test_mixed_currencies_rejected(self):
        """Adding or comparing different currencies raises"""
        kes = Money(Decimal('1'), Currency.KES)
        usd = Money(Decimal('1'), Currency.USD)

        with pytest.raises(ValueError):
            kes + usd
        with pytest.raises(ValueError):
            kes < usd
        with pytest.raises(TypeError):
            kes + Decimal('1')

    def test_predicates_and_ordering(self):
        """Zero/positive/negative checks and comparisons"""
        zero = Money.zero(Currency.KES)
        one = Money(Decimal('1'), Currency.KES)

        assert zero.is_zero()
        assert one.is_positive()
        assert (-one).is_negative()
        assert zero < one <= one
        assert money_min(one, zero) == zero

    def test_to_string(self):
        assert Money(Decimal('9625'), Currency.KES).to_string() == "KES 9,625.00"
        assert Money(Decimal('5000'), Currency.UGX).to_string() == "UGX 5,000"

    def test_money_sum(self):
        amounts = [Money(Decimal('0.10'), Currency.KES) for _ in range(10)]
        assert money_sum(amounts, Currency.KES) == Money(Decimal('1.00'), Currency.KES)
        assert money_sum([], Currency.KES) == Money.zero(Currency.KES)


class TestSplitEvenly:
    """Test equal splitting with remainder on the final part"""

    def test_even_split(self):
        parts = split_evenly(Money(Decimal('10000'), Currency.KES), 8)
        assert all(p == Money(Decimal('1250.00'), Currency.KES) for p in parts)

    def test_remainder_goes_to_last_part(self):
        """100 / 3 gives 33.33, 33.33, 33.34"""
        parts = split_evenly(Money(Decimal('100'), Currency.KES), 3)
        assert [p.amount for p in parts] == [Decimal('33.33'), Decimal('33.33'), Decimal('33.34')]

    @pytest.mark.parametrize("total,parts", [
        ("0.01", 8), ("999.99", 7), ("5000", 12), ("1", 1), ("123456.78", 11), ("0", 4)
    ])
    def test_parts_always_reconcile(self, total, parts):
        """Sum of parts equals the total exactly"""
        money = Money(Decimal(total), Currency.KES)
        split = split_evenly(money, parts)
        assert len(split) == parts
        assert money_sum(split, Currency.KES) == money
        assert all(not p.is_negative() for p in split)

    def test_invalid_split(self):
        with pytest.raises(ValueError):
            split_evenly(Money(Decimal('100'), Currency.KES), 0)
        with pytest.raises(ValueError):
            split_evenly(Money(Decimal('-100'), Currency.KES), 2)


class TestDecimalHelpers:
    """Test conversion of user input into exact amounts"""

    def test_validate_decimal_precision(self):
        assert validate_decimal_precision(Decimal('1375'), Currency.KES) == Decimal('1375.00')
        assert validate_decimal_precision(Decimal('12.500'), Currency.KES) == Decimal('12.50')
        assert validate_decimal_precision(Decimal('2000'), Currency.UGX) == Decimal('2000')

    @pytest.mark.parametrize("value,currency", [
        (Decimal('1.235'), Currency.KES),
        (Decimal('0.001'), Currency.USD),
        (Decimal('2000.5'), Currency.UGX),
        (Decimal('NaN'), Currency.KES),
        (Decimal('Infinity'), Currency.KES),
    ])
    def test_validate_decimal_precision_rejects(self, value, currency):
        with pytest.raises(ValueError):
            validate_decimal_precision(value, currency)

    def test_exact_money(self):
        assert exact_money("1375.5", Currency.KES) == Money(Decimal('1375.50'), Currency.KES)
        assert exact_money(500, Currency.KES).amount == Decimal('500.00')

    def test_exact_money_never_rounds(self):
        """Sub-cent input is refused instead of being rounded half-up"""
        with pytest.raises(ValueError):
            exact_money("1375.005", Currency.KES)
        with pytest.raises(ValueError):
            exact_money("abc", Currency.KES)


class TestDates:
    """Test calendar-week arithmetic"""

    def test_add_weeks_is_seven_calendar_days(self):
        assert add_weeks(date(2024, 1, 1), 1) == date(2024, 1, 8)
        assert add_weeks(date(2024, 2, 26), 1) == date(2024, 3, 4)  # leap year
        assert add_weeks(date(2024, 1, 1), 8) == date(2024, 2, 26)

    def test_days_between(self):
        assert days_between(date(2024, 1, 1), date(2024, 1, 31)) == 30
        assert days_between(date(2024, 1, 31), date(2024, 1, 1)) == -30

    def test_fixed_today(self):
        provider = fixed_today(date(2024, 6, 1))
        assert provider() == date(2024, 6, 1)

    def test_parse_and_format(self):
        assert parse_date("2024-01-01") == date(2024, 1, 1)
        assert parse_date(None) is None
        assert format_date(date(2024, 1, 1)) == "2024-01-01"
        assert format_date(None) is None

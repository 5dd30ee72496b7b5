"""
Tests for installment schedule generation
"""

import pytest
from decimal import Decimal
from datetime import date, datetime, timezone

from lending_core.currency import Money, Currency
from lending_core.errors import ValidationError
from lending_core.schedule import (
    InstallmentType, Installment, generate_schedule, schedule_totals
)


def kes(amount):
    return Money(Decimal(str(amount)), Currency.KES)


class TestGenerateSchedule:
    """Test weekly and end-of-term schedules"""

    def setup_method(self):
        self.issue_date = date(2024, 1, 1)

    def test_weekly_schedule_even_split(self):
        """10,000 at 10% over 8 weeks is 8 x 1,375 due every Monday"""
        schedule = generate_schedule(kes(10000), kes(1000), self.issue_date, 8)

        assert len(schedule) == 8
        for k, installment in enumerate(schedule, start=1):
            assert installment.number == k
            assert installment.principal == kes('1250.00')
            assert installment.interest == kes('125.00')
            assert installment.total == kes('1375.00')
            assert (installment.due_date - self.issue_date).days == 7 * k

        principal, interest, total = schedule_totals(schedule)
        assert principal == kes(10000)
        assert interest == kes(1000)
        assert total == kes(11000)

    def test_remainder_on_last_installment(self):
        """Uneven amounts put the leftover cents on the final installment"""
        schedule = generate_schedule(kes(5000), kes(750), self.issue_date, 12)

        assert [i.principal for i in schedule[:-1]] == [kes('416.66')] * 11
        assert schedule[-1].principal == kes('416.74')
        assert [i.interest for i in schedule[:-1]] == [kes('62.50')] * 11
        assert schedule[-1].interest == kes('62.50')

        principal, interest, total = schedule_totals(schedule)
        assert principal == kes(5000)
        assert interest == kes(750)
        assert total == kes(5750)

    def test_end_of_term_single_installment(self):
        schedule = generate_schedule(
            kes(20000), kes(4000), self.issue_date, 12, InstallmentType.END_OF_TERM
        )

        assert len(schedule) == 1
        assert schedule[0].due_date == date(2024, 3, 25)
        assert schedule[0].total == kes(24000)

    def test_generation_is_deterministic(self):
        """Same inputs always give the same schedule"""
        first = generate_schedule(kes('9999.99'), kes('1499.99'), self.issue_date, 7)
        second = generate_schedule(kes('9999.99'), kes('1499.99'), self.issue_date, 7)
        assert first == second

    def test_zero_interest(self):
        schedule = generate_schedule(kes(800), kes(0), self.issue_date, 8)
        assert all(i.interest.is_zero() for i in schedule)
        assert schedule_totals(schedule)[2] == kes(800)

    @pytest.mark.parametrize("weeks", [0, -1, True, 2.5])
    def test_invalid_term_rejected(self, weeks):
        with pytest.raises(ValidationError):
            generate_schedule(kes(1000), kes(100), self.issue_date, weeks)

    def test_invalid_amounts_rejected(self):
        with pytest.raises(ValidationError):
            generate_schedule(kes(0), kes(100), self.issue_date, 8)
        with pytest.raises(ValidationError):
            generate_schedule(kes(1000), kes(-1), self.issue_date, 8)
        with pytest.raises(ValidationError):
            generate_schedule(kes(1000), Money(Decimal('100'), Currency.USD), self.issue_date, 8)

    def test_totals_of_empty_schedule(self):
        with pytest.raises(ValidationError):
            schedule_totals([])


class TestInstallment:
    """Test the persisted installment record"""

    def setup_method(self):
        scheduled = generate_schedule(kes(10000), kes(1000), date(2024, 1, 1), 8)[0]
        now = datetime.now(timezone.utc)
        self.installment = Installment.from_scheduled("loan_1", scheduled, "inst_1", now)

    def test_starts_unpaid(self):
        assert self.installment.amount_paid == kes(0)
        assert not self.installment.is_paid
        assert self.installment.outstanding == kes(1375)

    def test_is_overdue_strictly_after_due_date(self):
        assert not self.installment.is_overdue(date(2024, 1, 8))
        assert self.installment.is_overdue(date(2024, 1, 9))

    def test_paid_installment_never_overdue(self):
        self.installment.is_paid = True
        self.installment.amount_paid = kes(1375)
        assert not self.installment.is_overdue(date(2025, 1, 1))

    def test_round_trip(self):
        restored = Installment.from_dict(self.installment.to_dict())
        assert restored == self.installment


class TestScheduleSums:
    """Installments always add back to principal plus interest"""

    @pytest.mark.parametrize("principal,interest,weeks,currency", [
        ("5000", "750", 1, Currency.KES),
        ("9000", "1350", 13, Currency.KES),
        ("0.05", "0", 12, Currency.KES),
        ("0.05", "0.07", 12, Currency.KES),
        ("1234.57", "185.19", 7, Currency.KES),
        ("50000", "10000.01", 12, Currency.KES),
        ("100001", "15001", 13, Currency.UGX),
        ("7", "1", 12, Currency.UGX),
        ("333.33", "33.33", 3, Currency.USD),
    ])
    def test_weekly_sums_and_count(self, principal, interest, weeks, currency):
        principal = Money(Decimal(principal), currency)
        interest = Money(Decimal(interest), currency)

        schedule = generate_schedule(principal, interest, date(2024, 1, 1), weeks)

        assert len(schedule) == weeks
        assert [i.number for i in schedule] == list(range(1, weeks + 1))
        total_principal, total_interest, total = schedule_totals(schedule)
        assert total_principal == principal
        assert total_interest == interest
        assert total == principal + interest
        for installment in schedule:
            assert not installment.principal.is_negative()
            assert not installment.interest.is_negative()
            assert installment.total == installment.principal + installment.interest
            assert installment.total.amount == installment.total.amount.quantize(currency.quantum)

    @pytest.mark.parametrize("weeks", [1, 8, 13])
    def test_end_of_term_single_installment(self, weeks):
        principal, interest = kes("0.05"), kes("0.01")

        schedule = generate_schedule(
            principal, interest, date(2024, 1, 1), weeks, InstallmentType.END_OF_TERM
        )

        assert len(schedule) == 1
        assert schedule[0].total == principal + interest
        assert (schedule[0].due_date - date(2024, 1, 1)).days == 7 * weeks

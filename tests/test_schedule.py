"""
Test suite for the schedule builder

Cash loans amortize monthly on a reducing balance; bike loans are flat
weekly hire-purchase. The principal column must always sum exactly to the
financed amount.
"""

import pytest
from datetime import date, timedelta
from decimal import Decimal

from bingo_ledger.errors import InvalidTerms
from bingo_ledger.models import InstallmentStatus, LoanProduct
from bingo_ledger.schedule import (
    add_months, bike_admin_summary, build_bike_schedule, build_cash_schedule, build_schedule, emi
)


class TestCashSchedule:
    """Test monthly reducing-balance amortization"""

    def test_twelve_month_schedule(self):
        """1,000,000 at 12% over 12 months: EMI 88,849, last installment absorbs the residue"""
        schedule = build_cash_schedule(1_000_000, 12, 12, date(2026, 1, 15))
        installments = schedule.installments

        assert len(installments) == 12
        assert schedule.periodic_installment == 88_849
        assert all(i.total_amount == 88_849 for i in installments[:11])
        assert sum(i.principal_amount for i in installments) == 1_000_000
        assert sum(i.total_amount for i in installments) == 1_000_000 + schedule.total_interest
        assert installments[-1].balance_after == 0

    def test_first_installment_split(self):
        """Interest is charged on the opening balance"""
        schedule = build_cash_schedule(1_000_000, 12, 12, date(2026, 1, 15))
        first = schedule.installments[0]

        assert first.interest_amount == 10_000
        assert first.principal_amount == 78_849
        assert first.balance_after == 921_151
        assert first.due_date == date(2026, 2, 15)

    def test_due_dates_are_monthly(self):
        schedule = build_cash_schedule(500_000, 24, 6, date(2026, 1, 31))
        assert [i.due_date for i in schedule.installments] == [
            date(2026, 2, 28), date(2026, 3, 31), date(2026, 4, 30),
            date(2026, 5, 31), date(2026, 6, 30), date(2026, 7, 31),
        ]

    def test_zero_rate(self):
        """A zero rate splits the principal evenly"""
        schedule = build_cash_schedule(1_000_000, 0, 3, date(2026, 1, 1))
        assert [i.total_amount for i in schedule.installments] == [333_333, 333_333, 333_334]
        assert schedule.total_interest == 0

    def test_rate_as_string_and_float(self):
        """JSON floats are read through their decimal text"""
        from_string = build_cash_schedule(1_000_000, "12.5", 12, date(2026, 1, 1))
        from_float = build_cash_schedule(1_000_000, 12.5, 12, date(2026, 1, 1))
        assert from_string.periodic_installment == from_float.periodic_installment
        assert from_string.annual_interest_rate_pct == Decimal('12.5')

    def test_emi_formula(self):
        assert emi(1_000_000, Decimal('12'), 12).quantize(Decimal('0.01')) == Decimal('88848.79')

    @pytest.mark.parametrize("principal,rate,months", [
        (0, 12, 12),
        (-5, 12, 12),
        (1000.5, 12, 12),
        (1_000_000, -1, 12),
        (1_000_000, "abc", 12),
        (1_000_000, None, 12),
        (1_000_000, 12, 0),
        (1_000_000, 12, 601),
    ])
    def test_invalid_terms(self, principal, rate, months):
        with pytest.raises(InvalidTerms):
            build_cash_schedule(principal, rate, months, date(2026, 1, 1))


class TestBikeSchedule:
    """Test flat weekly hire-purchase schedules"""

    def test_weekly_installment_given(self):
        """2,600,000 with 600,000 down at 50,000 a week: 40 weeks"""
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1), weekly_installment=50_000)

        assert schedule.principal == 2_000_000
        assert schedule.weeks_to_pay == 40
        assert len(schedule.installments) == 40
        assert all(i.total_amount == 50_000 and i.interest_amount == 0 for i in schedule.installments)
        for k, installment in enumerate(schedule.installments, start=1):
            assert installment.due_date == date(2026, 2, 1) + timedelta(days=7 * k)

    def test_default_term(self):
        """Without installment or target the term defaults to 52 weeks"""
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1))

        assert schedule.weekly_installment == 38_462
        assert schedule.weeks_to_pay == 52
        assert schedule.installments[-1].total_amount == 2_000_000 - 38_462 * 51
        assert sum(i.principal_amount for i in schedule.installments) == 2_000_000

    def test_target_weeks(self):
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1), target_weeks=40)
        assert schedule.weekly_installment == 50_000
        assert schedule.weeks_to_pay == 40

    def test_weekly_installment_wins_over_target(self):
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1),
                                       weekly_installment=100_000, target_weeks=40)
        assert schedule.weeks_to_pay == 20

    def test_final_week_absorbs_residue(self):
        schedule = build_bike_schedule(1_000_000, 0, date(2026, 2, 1), weekly_installment=300_000)
        assert [i.total_amount for i in schedule.installments] == [300_000, 300_000, 300_000, 100_000]

    @pytest.mark.parametrize("sale_price,deposit,weekly", [
        (0, 0, None),
        (1_000_000, 1_000_000, None),
        (1_000_000, 1_200_000, None),
        (1_000_000, -1, None),
        (1_000_000, 0, 0),
        (1_000_000, 0, 500),
    ])
    def test_invalid_terms(self, sale_price, deposit, weekly):
        with pytest.raises(InvalidTerms):
            build_bike_schedule(sale_price, deposit, date(2026, 2, 1), weekly_installment=weekly)


class TestAdminSummary:
    """Test profit figures for administrators"""

    def test_profit_figures(self):
        summary = bike_admin_summary(2_600_000, 600_000, 2_000_000, 40)

        assert summary['total_profit'] == 600_000
        assert summary['profit_pct'] == "30.00"
        assert summary['admin_outlay'] == 1_400_000
        assert summary['implied_weekly_rate_pct'] == "1.07"
        assert summary['implied_annual_rate_pct'] == "55.71"

    def test_summary_attached_when_cost_known(self):
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1),
                                       weekly_installment=50_000, cost_price=2_000_000)
        assert schedule.summary()['admin']['total_profit'] == 600_000

    def test_no_summary_without_cost(self):
        schedule = build_bike_schedule(2_600_000, 600_000, date(2026, 2, 1), weekly_installment=50_000)
        assert 'admin' not in schedule.summary()


class TestBuildSchedule:
    """Test product dispatch"""

    def test_dispatch(self):
        cash = build_schedule(LoanProduct.CASH, {'principal': 100_000, 'annual_interest_rate_pct': 10,
                                                 'term_months': 2}, date(2026, 1, 1))
        bike = build_schedule(LoanProduct.BIKE, {'sale_price': 100_000, 'deposit': 0,
                                                 'weekly_installment': 50_000}, date(2026, 1, 1))
        assert cash.product == LoanProduct.CASH and len(cash.installments) == 2
        assert bike.product == LoanProduct.BIKE and len(bike.installments) == 2

    def test_fresh_installments_are_pending(self):
        schedule = build_schedule(LoanProduct.BIKE, {'sale_price': 100_000, 'weekly_installment': 50_000},
                                  date(2026, 1, 1))
        assert all(i.status == InstallmentStatus.PENDING for i in schedule.installments)

    def test_add_months_end_of_month(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)
        assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)

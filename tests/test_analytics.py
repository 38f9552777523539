"""Tests for spending analytics."""
from datetime import date

import pytest

from personal_cfo.intelligence.analytics import (
    calculate_percentage_change,
    convert_cents,
    generate_period_bins,
    income_vs_expenses,
    net_cashflow,
    period_start,
    previous_period,
    round_to_two_decimals,
    spend_by_category,
    spend_over_time,
)


def _row(id, day, cents, category_id=None, name=None, currency="USD", type=None):
    return {
        "id": id,
        "date": day,
        "amount_cents": cents,
        "currency": currency,
        "type": type or ("income" if cents > 0 else "expense"),
        "category_id": category_id,
        "category_name": name,
        "category_color": "#111111" if category_id else None,
    }


class TestHelpers:

    def test_round_half_up(self):
        assert round_to_two_decimals(33.333333) == 33.33
        assert round_to_two_decimals(16.666666) == 16.67
        assert round_to_two_decimals(0.125) == 0.13

    @pytest.mark.parametrize("current, previous, expected", [
        (50, 100, -50.0),
        (5, 0, 100.0),
        (0, 0, 0.0),
        (-5, 0, 0.0),
        (-50, -100, 50.0),
    ])
    def test_percentage_change(self, current, previous, expected):
        assert calculate_percentage_change(current, previous) == expected

    def test_convert_cents(self):
        assert convert_cents(37500, "PEN", "USD") == 10000
        assert convert_cents(1000, "EUR", "PEN") == 4076
        assert convert_cents(1234, "USD", "USD") == 1234

    def test_convert_unknown_currency(self):
        with pytest.raises(ValueError):
            convert_cents(100, "GBP", "USD")

    def test_previous_period_has_same_length(self):
        assert previous_period(date(2025, 1, 1), date(2025, 1, 31)) == (date(2024, 12, 1), date(2024, 12, 31))
        assert previous_period(date(2025, 3, 10), date(2025, 3, 10)) == (date(2025, 3, 9), date(2025, 3, 9))

    def test_period_start(self):
        # 2025-01-01 is a Wednesday; weeks start on Sunday
        assert period_start(date(2025, 1, 1), "week") == date(2024, 12, 29)
        assert period_start(date(2025, 1, 5), "week") == date(2025, 1, 5)
        assert period_start(date(2025, 8, 15), "month") == date(2025, 8, 1)
        assert period_start(date(2025, 8, 15), "quarter") == date(2025, 7, 1)
        with pytest.raises(ValueError):
            period_start(date(2025, 1, 1), "year")

    def test_period_bins_cross_year(self):
        assert generate_period_bins(date(2024, 11, 15), date(2025, 2, 10), "month") == [
            "2024-11-01", "2024-12-01", "2025-01-01", "2025-02-01",
        ]


class TestSpendByCategory:

    def test_groups_sorts_and_shares(self, sample_rows):
        result = spend_by_category(sample_rows, [])

        assert [r["name"] for r in result] == ["Transportation", "Food & Dining", "Uncategorized"]
        transport, food, uncategorized = result
        assert transport == {
            "category_id": 2, "name": "Transportation", "color": "#F97316",
            "amount": 30.0, "pct": 50.0, "delta_pct_prev": 100.0, "tx_count": 1,
        }
        assert food["amount"] == 20.0
        assert food["tx_count"] == 2
        assert food["pct"] == 33.33
        assert uncategorized["category_id"] is None
        assert uncategorized["color"] == "#6B7280"
        assert uncategorized["pct"] == 16.67

    def test_income_is_ignored(self, sample_rows):
        result = spend_by_category(sample_rows, [])
        assert sum(r["amount"] for r in result) == 60.0

    def test_delta_against_previous_period(self, sample_rows):
        previous = [_row(10, "2024-12-10", -2500, 1, "Food & Dining")]
        food = next(r for r in spend_by_category(sample_rows, previous) if r["category_id"] == 1)
        assert food["delta_pct_prev"] == -20.0

    def test_converts_each_transaction_before_summing(self):
        rows = [
            _row(1, "2025-01-01", -1000, 1, "Food"),
            _row(2, "2025-01-02", -3750, 1, "Food", currency="PEN"),
        ]
        assert spend_by_category(rows, [], currency="USD")[0]["amount"] == 20.0

    def test_empty(self):
        assert spend_by_category([], []) == []


class TestSpendOverTime:

    def test_monthly_with_top_category(self, sample_rows):
        series = spend_over_time(sample_rows, date(2025, 1, 1), date(2025, 2, 28), "month")
        assert series == [
            {"period": "2025-01-01", "amount": 50.0, "tx_count": 3,
             "top_category": {"id": 2, "name": "Transportation", "amount": 30.0}},
            {"period": "2025-02-01", "amount": 10.0, "tx_count": 1, "top_category": None},
        ]

    def test_weekly_bins_are_zero_filled(self, sample_rows):
        january = [r for r in sample_rows if r["date"].startswith("2025-01")]
        series = spend_over_time(january, date(2025, 1, 1), date(2025, 1, 31), "week")
        assert [s["period"] for s in series] == [
            "2024-12-29", "2025-01-05", "2025-01-12", "2025-01-19", "2025-01-26",
        ]
        assert [s["amount"] for s in series] == [0, 12.5, 30.0, 7.5, 0]
        assert series[0]["top_category"] is None

    def test_top_category_tie_goes_to_first_seen(self):
        rows = [
            _row(1, "2025-01-02", -1000, 7, "Seven"),
            _row(2, "2025-01-03", -1000, 3, "Three"),
        ]
        series = spend_over_time(rows, date(2025, 1, 1), date(2025, 1, 31), "month")
        assert series[0]["top_category"]["id"] == 7

    def test_empty_range_still_has_bins(self):
        series = spend_over_time([], date(2025, 1, 1), date(2025, 3, 31), "quarter")
        assert series == [{"period": "2025-01-01", "amount": 0, "tx_count": 0, "top_category": None}]


class TestIncomeVsExpenses:

    def test_monthly(self, sample_rows):
        series = income_vs_expenses(sample_rows, date(2025, 1, 1), date(2025, 2, 28), "month")
        assert series == [
            {"period": "2025-01-01", "income": 0.0, "expenses": 50.0, "net": -50.0},
            {"period": "2025-02-01", "income": 500.0, "expenses": 10.0, "net": 490.0},
        ]

    def test_each_row_is_rounded_after_conversion(self):
        rows = [_row(i, "2025-01-10", -200, 1, "Food", currency="PEN") for i in range(3)]
        series = income_vs_expenses(rows, date(2025, 1, 1), date(2025, 1, 31), "month", "USD")
        # 2.00 PEN is 0.53 USD per row; converting the 6.00 PEN sum would give 1.60
        assert series[0]["expenses"] == 1.59

    def test_quarterly_zero_fill(self, sample_rows):
        series = income_vs_expenses(sample_rows, date(2025, 1, 1), date(2025, 6, 30), "quarter")
        assert series[0] == {"period": "2025-01-01", "income": 500.0, "expenses": 60.0, "net": 440.0}
        assert series[1] == {"period": "2025-04-01", "income": 0.0, "expenses": 0.0, "net": 0.0}


class TestNetCashflow:

    def test_totals_delta_and_weekly_sparkline(self, sample_rows):
        previous = [_row(9, "2024-12-01", -4000, 1, "Food & Dining")]
        result = net_cashflow(sample_rows, previous, date(2025, 1, 1), date(2025, 2, 28))

        assert result["income"] == 500.0
        assert result["expenses"] == 60.0
        assert result["net"] == 440.0
        assert result["delta_pct_prev"] == 1200.0
        assert result["sparkline"] == [
            {"date": "2025-01-05", "net": -12.5},
            {"date": "2025-01-12", "net": -30.0},
            {"date": "2025-01-19", "net": -7.5},
            {"date": "2025-02-02", "net": -10.0},
            {"date": "2025-02-09", "net": 500.0},
        ]

    def test_short_range_uses_daily_sparkline(self):
        rows = [
            _row(1, "2025-01-05", -1000, 1, "Food"),
            _row(2, "2025-01-05", -500, 1, "Food"),
            _row(3, "2025-01-07", 2000),
        ]
        result = net_cashflow(rows, [], date(2025, 1, 5), date(2025, 1, 10))
        assert result["sparkline"] == [
            {"date": "2025-01-05", "net": -15.0},
            {"date": "2025-01-07", "net": 20.0},
        ]
        assert result["delta_pct_prev"] == 100.0

    def test_empty(self):
        result = net_cashflow([], [], date(2025, 1, 1), date(2025, 1, 31))
        assert result == {"net": 0.0, "income": 0.0, "expenses": 0.0, "delta_pct_prev": 0.0, "sparkline": []}

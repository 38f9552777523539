"""Spending analytics over a user's transactions.

Functions here are pure: they take transaction rows (as returned by
`SQLiteStore.get_transactions_in_range`) and aggregate them with pandas.
Amounts are converted to the target currency per transaction, in minor
units, before any summing.
"""
import math
from datetime import date, timedelta
from typing import List, Dict, Any, Iterable, Optional, Tuple

import pandas as pd

from personal_cfo.config import DEFAULT_CURRENCY, EXCHANGE_RATES


GRANULARITIES = ["week", "month", "quarter"]
SPARKLINE_DAY_THRESHOLD = 7

UNCATEGORIZED_KEY = "uncategorized"
UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#6B7280"

TRANSACTION_COLUMNS = [
    "id", "date", "amount_cents", "currency", "type",
    "category_id", "category_name", "category_color",
]


def round_to_two_decimals(value: float) -> float:
    """Round half up to two decimals."""
    return math.floor(value * 100 + 0.5) / 100


def calculate_percentage_change(current: float, previous: float) -> float:
    """Percent change; a zero previous value yields 100 on growth, else 0."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return (current - previous) / abs(previous) * 100


def _rate_factor(source: str, target: str, rates: Dict[str, Any]) -> float:
    if source == target:
        return 1.0
    table = rates["rates"]
    if source not in table or target not in table:
        raise ValueError(f"No exchange rate found for {source} -> {target}")
    # Through the base currency
    return table[target] / table[source]


def convert_cents(
    amount_cents: int,
    source: str,
    target: str,
    rates: Dict[str, Any] = EXCHANGE_RATES
) -> int:
    """Convert an amount in minor units between currencies."""
    converted = amount_cents / 100 * _rate_factor(source, target, rates)
    return int(math.floor(converted * 100 + 0.5))


def previous_period(date_from: date, date_to: date) -> Tuple[date, date]:
    """The period of equal length ending the day before `date_from`."""
    duration = date_to - date_from
    prev_to = date_from - timedelta(days=1)
    return prev_to - duration, prev_to


def period_start(day: date, granularity: str) -> date:
    """Start of the week (Sunday), month or quarter containing `day`."""
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=(day.weekday() + 1) % 7)
    if granularity == "month":
        return day.replace(day=1)
    if granularity == "quarter":
        return date(day.year, (day.month - 1) // 3 * 3 + 1, 1)
    raise ValueError(f"Unknown granularity: {granularity}")


def _next_period(start: date, granularity: str) -> date:
    if granularity == "day":
        return start + timedelta(days=1)
    if granularity == "week":
        return start + timedelta(days=7)
    months = 1 if granularity == "month" else 3
    month_index = start.month - 1 + months
    return date(start.year + month_index // 12, month_index % 12 + 1, 1)


def generate_period_bins(date_from: date, date_to: date, granularity: str) -> List[str]:
    """ISO start dates of every period overlapping [date_from, date_to]."""
    bins = []
    current = period_start(date_from, granularity)
    while current <= date_to:
        bins.append(current.isoformat())
        current = _next_period(current, granularity)
    return bins


def _frame(
    transactions: Iterable[Dict[str, Any]],
    currency: str,
    rates: Dict[str, Any],
    granularity: Optional[str] = None
) -> pd.DataFrame:
    """Build a frame with converted amounts, category keys and period keys."""
    df = pd.DataFrame(list(transactions), columns=TRANSACTION_COLUMNS)
    if df.empty:
        df["converted_cents"] = pd.Series(dtype="int64")
        df["category_key"] = pd.Series(dtype="object")
        df["period"] = pd.Series(dtype="object")
        return df

    df["converted_cents"] = pd.Series(
        [
            convert_cents(abs(int(cents)), source, currency, rates)
            for cents, source in zip(df["amount_cents"], df["currency"])
        ],
        index=df.index,
        dtype="int64"
    )
    df["category_key"] = df["category_id"].map(
        lambda v: UNCATEGORIZED_KEY if pd.isna(v) else str(int(v))
    )
    if granularity:
        df["period"] = df["date"].map(
            lambda d: period_start(date.fromisoformat(str(d)[:10]), granularity).isoformat()
        )
    return df


def _is_income(df: pd.DataFrame) -> pd.Series:
    return df["type"] == "income"


def spend_by_category(
    transactions: Iterable[Dict[str, Any]],
    previous_transactions: Iterable[Dict[str, Any]],
    currency: str = DEFAULT_CURRENCY,
    rates: Dict[str, Any] = EXCHANGE_RATES
) -> List[Dict[str, Any]]:
    """Expense totals per category with share of total and change vs the previous period.

    Returns:
        List sorted by amount descending, each with category_id (None for
        uncategorized), name, color, amount, pct, delta_pct_prev, tx_count
    """
    df = _frame(transactions, currency, rates)
    df = df[~_is_income(df)]
    if df.empty:
        return []

    grouped = df.groupby("category_key", sort=False).agg(
        name=("category_name", "first"),
        color=("category_color", "first"),
        amount_cents=("converted_cents", "sum"),
        tx_count=("converted_cents", "count"),
    )

    prev = _frame(previous_transactions, currency, rates)
    prev = prev[~_is_income(prev)]
    prev_totals = prev.groupby("category_key")["converted_cents"].sum().to_dict()

    total_cents = int(grouped["amount_cents"].sum())
    result = []
    for key, row in grouped.iterrows():
        amount = int(row["amount_cents"]) / 100
        prev_amount = int(prev_totals.get(key, 0)) / 100
        pct = int(row["amount_cents"]) / total_cents * 100 if total_cents > 0 else 0.0
        uncategorized = key == UNCATEGORIZED_KEY
        result.append({
            "category_id": None if uncategorized else int(key),
            "name": UNCATEGORIZED_NAME if uncategorized or pd.isna(row["name"]) else row["name"],
            "color": UNCATEGORIZED_COLOR if uncategorized or pd.isna(row["color"]) else row["color"],
            "amount": round_to_two_decimals(amount),
            "pct": round_to_two_decimals(pct),
            "delta_pct_prev": round_to_two_decimals(calculate_percentage_change(amount, prev_amount)),
            "tx_count": int(row["tx_count"]),
        })

    result.sort(key=lambda r: r["amount"], reverse=True)
    return result


def spend_over_time(
    transactions: Iterable[Dict[str, Any]],
    date_from: date,
    date_to: date,
    granularity: str = "month",
    currency: str = DEFAULT_CURRENCY,
    rates: Dict[str, Any] = EXCHANGE_RATES
) -> List[Dict[str, Any]]:
    """Expenses per period, zero-filled, with the top category of each period."""
    bins = generate_period_bins(date_from, date_to, granularity)
    df = _frame(transactions, currency, rates, granularity)
    df = df[~_is_income(df)]

    totals: Dict[str, Dict[str, Any]] = {}
    top_categories: Dict[str, Dict[str, Any]] = {}
    if not df.empty:
        totals = df.groupby("period").agg(
            amount_cents=("converted_cents", "sum"),
            tx_count=("converted_cents", "count"),
        ).to_dict("index")

        categorized = df[df["category_id"].notna()]
        if not categorized.empty:
            by_category = categorized.groupby(
                ["period", "category_key"], sort=False
            ).agg(
                name=("category_name", "first"),
                amount_cents=("converted_cents", "sum"),
            ).reset_index()
            # Ties go to the category seen first in the period
            top = by_category.sort_values(
                "amount_cents", ascending=False, kind="stable"
            ).drop_duplicates("period")
            for _, row in top.iterrows():
                top_categories[row["period"]] = {
                    "id": int(row["category_key"]),
                    "name": row["name"],
                    "amount": round_to_two_decimals(int(row["amount_cents"]) / 100),
                }

    series = []
    for period in bins:
        entry = totals.get(period)
        series.append({
            "period": period,
            "amount": round_to_two_decimals(int(entry["amount_cents"]) / 100) if entry else 0,
            "tx_count": int(entry["tx_count"]) if entry else 0,
            "top_category": top_categories.get(period),
        })
    return series


def income_vs_expenses(
    transactions: Iterable[Dict[str, Any]],
    date_from: date,
    date_to: date,
    granularity: str = "month",
    currency: str = DEFAULT_CURRENCY,
    rates: Dict[str, Any] = EXCHANGE_RATES
) -> List[Dict[str, Any]]:
    """Income, expenses and net per period, zero-filled."""
    bins = generate_period_bins(date_from, date_to, granularity)
    df = _frame(transactions, currency, rates, granularity)

    table: Dict[str, Dict[str, int]] = {}
    if not df.empty:
        df["kind"] = _is_income(df).map({True: "income", False: "expense"})
        table = (
            df.groupby(["period", "kind"])["converted_cents"].sum()
            .unstack(fill_value=0)
            .reindex(columns=["income", "expense"], fill_value=0)
            .to_dict("index")
        )

    series = []
    for period in bins:
        row = table.get(period, {"income": 0, "expense": 0})
        income = int(row["income"]) / 100
        expenses = int(row["expense"]) / 100
        series.append({
            "period": period,
            "income": round_to_two_decimals(income),
            "expenses": round_to_two_decimals(expenses),
            "net": round_to_two_decimals(income - expenses),
        })
    return series


def _income_and_expense_cents(df: pd.DataFrame) -> Tuple[int, int]:
    income_mask = _is_income(df)
    return (
        int(df.loc[income_mask, "converted_cents"].sum()),
        int(df.loc[~income_mask, "converted_cents"].sum()),
    )


def net_cashflow(
    transactions: Iterable[Dict[str, Any]],
    previous_transactions: Iterable[Dict[str, Any]],
    date_from: date,
    date_to: date,
    currency: str = DEFAULT_CURRENCY,
    rates: Dict[str, Any] = EXCHANGE_RATES
) -> Dict[str, Any]:
    """Totals for the period, change vs the previous period and a sparkline.

    The sparkline is daily for ranges under a week, weekly otherwise, and
    only holds buckets that have transactions.
    """
    spark_granularity = "day" if (date_to - date_from).days < SPARKLINE_DAY_THRESHOLD else "week"
    df = _frame(transactions, currency, rates, spark_granularity)
    income_cents, expense_cents = _income_and_expense_cents(df)

    prev = _frame(previous_transactions, currency, rates)
    prev_income_cents, prev_expense_cents = _income_and_expense_cents(prev)

    income = income_cents / 100
    expenses = expense_cents / 100
    net = income - expenses
    prev_net = (prev_income_cents - prev_expense_cents) / 100

    sparkline = []
    if not df.empty:
        signed = df["converted_cents"].where(_is_income(df), -df["converted_cents"])
        by_bucket = signed.groupby(df["period"]).sum().sort_index()
        sparkline = [
            {"date": bucket, "net": round_to_two_decimals(int(cents) / 100)}
            for bucket, cents in by_bucket.items()
        ]

    return {
        "net": round_to_two_decimals(net),
        "income": round_to_two_decimals(income),
        "expenses": round_to_two_decimals(expenses),
        "delta_pct_prev": round_to_two_decimals(calculate_percentage_change(net, prev_net)),
        "sparkline": sparkline,
    }

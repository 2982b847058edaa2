from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from gastosmart.currency_conversion import RateSource, to_base
from gastosmart.ledger_engine import Account, Transaction

ZERO = Decimal("0")
HUNDRED = Decimal("100")

UNKNOWN_ACCOUNT_LABEL = "Cuenta desconocida"


class TimeWindow:
    CURRENT_MONTH = "current-month"
    LAST_MONTH = "last-month"
    LAST_3_MONTHS = "last-3-months"
    ALL = "all"

    values = {CURRENT_MONTH, LAST_MONTH, LAST_3_MONTHS, ALL}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid time window.")
        return normalized


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    total: Decimal


@dataclass(frozen=True)
class MonthlyCashFlow:
    year: int
    month: int
    income: Decimal
    expense: Decimal

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class ReportSummary:
    total_income: Decimal
    total_expense: Decimal
    net_flow: Decimal
    savings_rate: Decimal


@dataclass(frozen=True)
class Report:
    window: str
    summary: ReportSummary
    cash_flow: tuple[MonthlyCashFlow, ...]
    expenses_by_category: tuple[CategoryTotal, ...]
    income_by_category: tuple[CategoryTotal, ...]


@dataclass(frozen=True)
class ActivityEntry:
    transaction: Transaction
    account_name: str
    currency: Optional[str]
    to_account_name: Optional[str] = None


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def in_window(txn_date: date, window: str, today: date) -> bool:
    if window == TimeWindow.CURRENT_MONTH:
        return (txn_date.year, txn_date.month) == (today.year, today.month)
    if window == TimeWindow.LAST_MONTH:
        previous = shift_month(today, -1)
        return (txn_date.year, txn_date.month) == (previous.year, previous.month)
    if window == TimeWindow.LAST_3_MONTHS:
        return shift_month(today, -2) <= txn_date < shift_month(today, 1)
    return True


def filter_window(
    transactions: Iterable[Transaction],
    window: str,
    today: date | None = None,
) -> list[Transaction]:
    """Income and expense transactions inside a named calendar window.

    ``last-3-months`` starts on the first day of the month two months back
    and runs through the end of the current month, matching ``current-month``.
    Transfers are never part of a report.
    """
    normalized = TimeWindow.validate(window)
    today = today or date.today()
    return [
        txn
        for txn in transactions
        if txn.type != "transfer" and in_window(txn.date, normalized, today)
    ]


def normalize_to_base(
    transactions: Iterable[Transaction],
    accounts: Iterable[Account],
    rates: RateSource,
) -> list[Transaction]:
    """Copies of ``transactions`` with amounts valued in UYU.

    The currency comes from each transaction's source account; transactions
    whose source account is unknown are dropped.
    """
    currency_by_account = {account.id: account.currency for account in accounts}
    normalized = []
    for txn in transactions:
        currency = currency_by_account.get(txn.account_id)
        if currency is None:
            continue
        normalized.append(replace(txn, amount=to_base(txn.amount, currency, rates)))
    return normalized


def category_totals(
    transactions: Iterable[Transaction], txn_type: str = "expense"
) -> list[CategoryTotal]:
    """Sum amounts per category for one transaction type, largest first.

    Amounts must already share a currency; see ``normalize_to_base``.
    """
    totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for txn in transactions:
        if txn.type != txn_type:
            continue
        totals[txn.category] += txn.amount
    return [
        CategoryTotal(category=category, total=total)
        for category, total in sorted(totals.items(), key=lambda item: item[1], reverse=True)
    ]


def cash_flow_by_month(transactions: Iterable[Transaction]) -> list[MonthlyCashFlow]:
    buckets: dict[tuple[int, int], list[Decimal]] = {}
    for txn in transactions:
        if txn.type == "transfer":
            continue
        key = (txn.date.year, txn.date.month)
        bucket = buckets.setdefault(key, [ZERO, ZERO])
        if txn.type == "income":
            bucket[0] += txn.amount
        else:
            bucket[1] += txn.amount
    return [
        MonthlyCashFlow(year=year, month=month, income=income, expense=expense)
        for (year, month), (income, expense) in sorted(buckets.items())
    ]


def summarize(transactions: Iterable[Transaction]) -> ReportSummary:
    transactions = list(transactions)
    total_income = _sum_by_type(transactions, "income")
    total_expense = _sum_by_type(transactions, "expense")
    net_flow = total_income - total_expense
    savings_rate = ZERO
    if total_income > ZERO:
        savings_rate = net_flow / total_income * HUNDRED
    return ReportSummary(
        total_income=total_income,
        total_expense=total_expense,
        net_flow=net_flow,
        savings_rate=savings_rate,
    )


def build_report(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    rates: RateSource,
    window: str = TimeWindow.CURRENT_MONTH,
    today: date | None = None,
) -> Report:
    normalized_window = TimeWindow.validate(window)
    selected = filter_window(transactions, normalized_window, today)
    in_base = normalize_to_base(selected, accounts, rates)
    return Report(
        window=normalized_window,
        summary=summarize(in_base),
        cash_flow=tuple(cash_flow_by_month(in_base)),
        expenses_by_category=tuple(category_totals(in_base, "expense")),
        income_by_category=tuple(category_totals(in_base, "income")),
    )


def recent_activity(
    transactions: Iterable[Transaction],
    accounts: Iterable[Account],
    limit: int = 5,
) -> list[ActivityEntry]:
    accounts_by_id = {account.id: account for account in accounts}
    ordered = sorted(transactions, key=lambda txn: txn.date, reverse=True)
    entries = []
    for txn in ordered[: max(0, limit)]:
        source = accounts_by_id.get(txn.account_id)
        to_account_name = None
        if txn.to_account_id:
            destination = accounts_by_id.get(txn.to_account_id)
            to_account_name = destination.name if destination else UNKNOWN_ACCOUNT_LABEL
        entries.append(
            ActivityEntry(
                transaction=txn,
                account_name=source.name if source else UNKNOWN_ACCOUNT_LABEL,
                currency=source.currency if source else None,
                to_account_name=to_account_name,
            )
        )
    return entries


def _sum_by_type(transactions: Iterable[Transaction], txn_type: str) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type == txn_type:
            total += txn.amount
    return total

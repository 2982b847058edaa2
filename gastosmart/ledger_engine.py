from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Iterable, Mapping, Optional

import structlog

from gastosmart.currency_conversion import (
    RateSource,
    RateTable,
    from_base,
    to_base,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")

DEBIT_TYPES = {"expense", "transfer"}


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    type: str
    currency: str
    initial_balance: Decimal = ZERO


@dataclass(frozen=True)
class Transaction:
    id: str
    date: date
    amount: Decimal
    type: str
    category: str
    description: str
    account_id: str
    to_account_id: Optional[str] = None
    payment_method: Optional[str] = None
    merchant: Optional[str] = None


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    name: str
    currency: str
    balance: Decimal
    balance_in_base: Decimal


@dataclass(frozen=True)
class LedgerSnapshot:
    balances: tuple[AccountBalance, ...]
    total_in_base: Decimal
    orphaned_transaction_ids: tuple[str, ...]

    def balance_of(self, account_id: str) -> Decimal:
        for entry in self.balances:
            if entry.account_id == account_id:
                return entry.balance
        raise KeyError(account_id)


@dataclass(frozen=True)
class MonthlyFlow:
    income: Decimal
    expense: Decimal

    @property
    def net(self) -> Decimal:
        return self.income - self.expense


def account_balance(
    account: Account,
    transactions: Iterable[Transaction],
    accounts_by_id: Mapping[str, Account],
    rates: RateSource,
) -> Decimal:
    """Current balance of ``account`` in its own currency.

    Outgoing legs (expenses and transfers) are debited at face value. An
    incoming transfer from an account in the same currency is credited at
    face value; from another currency it is valued through UYU at the rates
    given here, so it moves whenever the rate table is edited. A transfer
    whose source account is unknown credits nothing.
    """
    balance = account.initial_balance
    for txn in transactions:
        if txn.account_id == account.id:
            if txn.type in DEBIT_TYPES:
                balance -= txn.amount
            elif txn.type == "income":
                balance += txn.amount
        elif txn.to_account_id == account.id and txn.type == "transfer":
            source = accounts_by_id.get(txn.account_id)
            if source is None:
                continue
            balance += _transfer_credit(txn.amount, source.currency, account.currency, rates)
    return balance


def compute_ledger(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    rates: RateSource,
) -> LedgerSnapshot:
    """Balances of every account and the portfolio total in UYU.

    Results are memoized on the (accounts, transactions, rates) triple, so
    recomputing an unchanged snapshot returns the same object.
    """
    rate_key = rates.snapshot() if isinstance(rates, RateTable) else tuple(sorted(rates.items()))
    return _compute_ledger_cached(tuple(accounts), tuple(transactions), rate_key)


@lru_cache(maxsize=32)
def _compute_ledger_cached(
    accounts: tuple[Account, ...],
    transactions: tuple[Transaction, ...],
    rates: tuple[tuple[str, Decimal], ...],
) -> LedgerSnapshot:
    rate_map = dict(rates)
    accounts_by_id = {account.id: account for account in accounts}

    balances = []
    total = ZERO
    for account in accounts:
        balance = account_balance(account, transactions, accounts_by_id, rate_map)
        balance_in_base = to_base(balance, account.currency, rate_map)
        balances.append(
            AccountBalance(
                account_id=account.id,
                name=account.name,
                currency=account.currency,
                balance=balance,
                balance_in_base=balance_in_base,
            )
        )
        total += balance_in_base

    orphaned = find_orphans(transactions, accounts_by_id)
    if orphaned:
        logger.debug("orphan_transactions_ignored", count=len(orphaned))

    return LedgerSnapshot(
        balances=tuple(balances),
        total_in_base=total,
        orphaned_transaction_ids=orphaned,
    )


def monthly_flow(
    accounts: Iterable[Account],
    transactions: Iterable[Transaction],
    rates: RateSource,
    today: date | None = None,
) -> MonthlyFlow:
    """Income and expense of the current calendar month, in UYU.

    Transfers are left out. Each amount is valued with the currency of its
    source account; transactions whose source account is unknown are skipped.
    """
    today = today or date.today()
    accounts_by_id = {account.id: account for account in accounts}

    income = ZERO
    expense = ZERO
    for txn in transactions:
        if txn.type == "transfer":
            continue
        if txn.date.year != today.year or txn.date.month != today.month:
            continue
        source = accounts_by_id.get(txn.account_id)
        if source is None:
            continue
        amount_in_base = to_base(txn.amount, source.currency, rates)
        if txn.type == "income":
            income += amount_in_base
        elif txn.type == "expense":
            expense += amount_in_base
    return MonthlyFlow(income=income, expense=expense)


def find_orphans(
    transactions: Iterable[Transaction], accounts_by_id: Mapping[str, Account]
) -> tuple[str, ...]:
    return tuple(txn.id for txn in transactions if txn.account_id not in accounts_by_id)


def _transfer_credit(
    amount: Decimal, source_currency: str, target_currency: str, rates: RateSource
) -> Decimal:
    if source_currency == target_currency:
        return amount
    amount_in_base = to_base(amount, source_currency, rates)
    return from_base(amount_in_base, target_currency, rates)

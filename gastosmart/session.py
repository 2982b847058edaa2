from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

import structlog

from gastosmart.currency_conversion import RateTable
from gastosmart.ledger_engine import (
    Account,
    LedgerSnapshot,
    MonthlyFlow,
    Transaction,
    compute_ledger,
    monthly_flow,
)
from gastosmart.store import ACCOUNTS, TRANSACTIONS, DocumentStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DerivedState:
    accounts: tuple[Account, ...]
    transactions: tuple[Transaction, ...]
    ledger: LedgerSnapshot
    flow: MonthlyFlow


class LedgerSession:
    """Live view of one user's ledger.

    Subscribes to the accounts and transactions feeds, keeps the latest
    snapshot of each and recomputes derived state from scratch whenever
    either one changes. The rate table is held by reference, so edits made
    elsewhere are picked up by ``refresh`` or the next snapshot.
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str,
        rates: RateTable,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.rates = rates
        self._clock = clock
        self._logger = logger.bind(component="ledger_session", user_id=user_id)
        self._lock = threading.Lock()
        self._accounts: tuple[Account, ...] = ()
        self._transactions: tuple[Transaction, ...] = ()
        self._state: Optional[DerivedState] = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._closed = False

    def open(self) -> "LedgerSession":
        """Subscribe to both feeds. If either subscription fails, neither stays registered."""
        try:
            self._unsubscribers.append(self.store.subscribe(self.user_id, ACCOUNTS, self._on_accounts))
            self._unsubscribers.append(
                self.store.subscribe(self.user_id, TRANSACTIONS, self._on_transactions)
            )
        except Exception:
            self._logger.warning("session_open_failed")
            self.close()
            raise
        return self

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        self._logger.info("session_closed")

    def __enter__(self) -> "LedgerSession":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def accounts(self) -> tuple[Account, ...]:
        return self._accounts

    @property
    def transactions(self) -> tuple[Transaction, ...]:
        return self._transactions

    @property
    def state(self) -> DerivedState:
        if self._state is None:
            self.refresh()
        return self._state

    def refresh(self) -> DerivedState:
        with self._lock:
            accounts, transactions = self._accounts, self._transactions
        state = DerivedState(
            accounts=accounts,
            transactions=transactions,
            ledger=compute_ledger(accounts, transactions, self.rates),
            flow=monthly_flow(accounts, transactions, self.rates, today=self._clock()),
        )
        self._state = state
        return state

    def _on_accounts(self, snapshot: tuple[Account, ...]) -> None:
        if self._accept(snapshot, ACCOUNTS):
            with self._lock:
                self._accounts = tuple(snapshot)
            self.refresh()

    def _on_transactions(self, snapshot: tuple[Transaction, ...]) -> None:
        if self._accept(snapshot, TRANSACTIONS):
            with self._lock:
                self._transactions = tuple(snapshot)
            self.refresh()

    def _accept(self, snapshot: tuple, collection: str) -> bool:
        if self._closed:
            self._logger.debug("late_snapshot_ignored", collection=collection, size=len(snapshot))
            return False
        return True

import os
import tempfile
import unittest
from dataclasses import asdict
from datetime import date
from decimal import Decimal

from gastosmart.currency_conversion import RateTable
from gastosmart.lifecycle import (
    AccountPayload,
    AccountUpdatePayload,
    TransactionPayload,
    cascade_delete_account,
    create_account,
    create_transaction,
    update_account,
)
from gastosmart.session import LedgerSession
from gastosmart.store import (
    ACCOUNTS,
    TRANSACTIONS,
    DocumentStore,
    PermissionDenied,
    RecordNotFound,
    StoreFailure,
)


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = DocumentStore.from_url(f"sqlite:///{os.path.join(self._tmpdir.name, 'test.db')}")
        self.store.init_schema()

    def tearDown(self) -> None:
        self.store.engine.dispose()
        self._tmpdir.cleanup()


class DocumentStoreTests(StoreTestCase):
    def test_create_and_list_accounts_in_creation_order(self) -> None:
        first = create_account(self.store, "u1", AccountPayload(name="BROU", initial_balance="1000"))
        second = create_account(self.store, "u1", AccountPayload(name="Itaú", currency="USD"))

        listed = self.store.list("u1", ACCOUNTS)

        self.assertEqual([account.id for account in listed], [first.id, second.id])
        self.assertEqual(listed[0].initial_balance, Decimal("1000"))
        self.assertEqual(self.store.list("u2", ACCOUNTS), ())

    def test_transactions_are_listed_by_date_descending(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))
        for day in (3, 1, 7):
            create_transaction(
                self.store,
                "u1",
                TransactionPayload(
                    amount="10",
                    description=f"dia {day}",
                    account_id=account.id,
                    date=date(2024, 5, day),
                ),
                [account],
            )

        listed = self.store.list("u1", TRANSACTIONS)

        self.assertEqual([txn.date.day for txn in listed], [7, 3, 1])

    def test_update_and_delete_check_ownership(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))

        with self.assertRaises(PermissionDenied):
            self.store.update("u2", ACCOUNTS, account.id, {"name": "Robada"})
        with self.assertRaises(PermissionDenied):
            self.store.delete("u2", ACCOUNTS, account.id)
        with self.assertRaises(RecordNotFound):
            self.store.delete("u1", ACCOUNTS, "missing")

    def test_update_changes_fields(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))

        self.store.update("u1", ACCOUNTS, account.id, {"initial_balance": Decimal("250")})

        self.assertEqual(self.store.list("u1", ACCOUNTS)[0].initial_balance, Decimal("250"))

    def test_unknown_fields_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.store.create("u1", ACCOUNTS, {"name": "X", "color": "red"})
        with self.assertRaises(ValueError):
            self.store.list("u1", "budgets")

    def test_subscribe_pushes_initial_and_updated_snapshots(self) -> None:
        received = []
        unsubscribe = self.store.subscribe("u1", ACCOUNTS, received.append)

        create_account(self.store, "u1", AccountPayload(name="BROU"))
        create_account(self.store, "u2", AccountPayload(name="Otro usuario"))
        unsubscribe()
        create_account(self.store, "u1", AccountPayload(name="Caja"))

        self.assertEqual([len(snapshot) for snapshot in received], [0, 1])

    def test_delete_many_removes_only_listed_ids(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))
        ids = [
            create_transaction(
                self.store,
                "u1",
                TransactionPayload(amount="5", description=str(index), account_id=account.id),
                [account],
            ).id
            for index in range(3)
        ]

        removed = self.store.delete_many("u1", TRANSACTIONS, ids[:2])

        self.assertEqual(removed, 2)
        self.assertEqual([txn.id for txn in self.store.list("u1", TRANSACTIONS)], ids[2:])


class LedgerSessionTests(StoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.rates = RateTable({"USD": Decimal("40"), "UI": Decimal("6")})

    def test_recomputes_on_every_snapshot(self) -> None:
        with LedgerSession(self.store, "u1", self.rates, clock=lambda: date(2024, 5, 20)) as session:
            self.assertEqual(session.state.ledger.total_in_base, Decimal("0"))

            pesos = create_account(self.store, "u1", AccountPayload(name="BROU", initial_balance="1000"))
            dollars = create_account(self.store, "u1", AccountPayload(name="Itaú", currency="USD"))
            create_transaction(
                self.store,
                "u1",
                TransactionPayload(
                    amount="400",
                    type="transfer",
                    account_id=pesos.id,
                    to_account_id=dollars.id,
                    date=date(2024, 5, 2),
                ),
                session.accounts,
            )
            create_transaction(
                self.store,
                "u1",
                TransactionPayload(
                    amount="200",
                    description="Supermercado",
                    account_id=pesos.id,
                    date=date(2024, 5, 3),
                ),
                session.accounts,
            )

            state = session.state
            self.assertEqual(state.ledger.balance_of(pesos.id), Decimal("400"))
            self.assertEqual(state.ledger.balance_of(dollars.id), Decimal("10"))
            self.assertEqual(state.ledger.total_in_base, Decimal("800"))
            self.assertEqual(state.flow.expense, Decimal("200"))

    def test_rate_edits_are_seen_through_shared_table(self) -> None:
        create_account(self.store, "u1", AccountPayload(name="Itaú", currency="USD", initial_balance="10"))
        with LedgerSession(self.store, "u1", self.rates) as session:
            self.rates.set_rate("USD", "41")
            self.assertEqual(session.refresh().ledger.total_in_base, Decimal("410"))

    def test_close_stops_late_snapshots(self) -> None:
        session = LedgerSession(self.store, "u1", self.rates).open()
        session.close()

        create_account(self.store, "u1", AccountPayload(name="BROU"))

        self.assertTrue(session.closed)
        self.assertEqual(session.accounts, ())

    def test_cascade_delete_against_store(self) -> None:
        pesos = create_account(self.store, "u1", AccountPayload(name="BROU", initial_balance="1000"))
        wallet = create_account(self.store, "u1", AccountPayload(name="Caja", type="cash"))
        accounts = [pesos, wallet]
        kept = create_transaction(
            self.store,
            "u1",
            TransactionPayload(amount="30", description="Taxi", account_id=wallet.id),
            accounts,
        )
        create_transaction(
            self.store,
            "u1",
            TransactionPayload(amount="100", type="transfer", account_id=wallet.id, to_account_id=pesos.id),
            accounts,
        )
        create_transaction(
            self.store,
            "u1",
            TransactionPayload(amount="50", description="Luz", account_id=pesos.id),
            accounts,
        )

        with LedgerSession(self.store, "u1", self.rates) as session:
            result = cascade_delete_account(self.store, "u1", pesos.id, session.transactions)

            self.assertTrue(result.complete)
            self.assertEqual(len(result.deleted), 2)
            self.assertEqual([txn.id for txn in session.transactions], [kept.id])
            self.assertEqual([account.id for account in session.accounts], [wallet.id])
            self.assertEqual(session.state.ledger.total_in_base, Decimal("-30"))

    def test_failed_open_leaves_no_listeners(self) -> None:
        original_list = self.store.list

        def failing_list(user_id, collection):
            if collection == TRANSACTIONS:
                raise StoreFailure("database unavailable")
            return original_list(user_id, collection)

        self.store.list = failing_list
        for _ in range(3):
            with self.assertRaises(StoreFailure):
                with LedgerSession(self.store, "u1", self.rates):
                    pass

        self.assertEqual(self.store._listeners[("u1", ACCOUNTS)], [])
        self.assertEqual(self.store._listeners[("u1", TRANSACTIONS)], [])

    def test_failing_first_delivery_unregisters_listener(self) -> None:
        def broken_listener(snapshot):
            raise RuntimeError("cannot render")

        with self.assertRaises(RuntimeError):
            self.store.subscribe("u1", ACCOUNTS, broken_listener)

        self.assertEqual(self.store._listeners[("u1", ACCOUNTS)], [])

    def test_cascade_for_missing_account_keeps_transactions(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))
        create_transaction(
            self.store,
            "u1",
            TransactionPayload(amount="10", description="Café", account_id=account.id),
            [account],
        )
        self.store.delete("u1", ACCOUNTS, account.id)

        with self.assertRaises(RecordNotFound):
            cascade_delete_account(self.store, "u1", account.id, self.store.list("u1", TRANSACTIONS))
        with self.assertRaises(RecordNotFound):
            cascade_delete_account(self.store, "u1", "ghost", self.store.list("u1", TRANSACTIONS))

        self.assertEqual(len(self.store.list("u1", TRANSACTIONS)), 1)

    def test_cascade_for_other_users_account_is_denied(self) -> None:
        account = create_account(self.store, "u1", AccountPayload(name="BROU"))
        create_transaction(
            self.store,
            "u1",
            TransactionPayload(amount="10", description="Café", account_id=account.id),
            [account],
        )

        with self.assertRaises(PermissionDenied):
            cascade_delete_account(self.store, "u2", account.id, self.store.list("u1", TRANSACTIONS))

        self.assertEqual(len(self.store.list("u1", TRANSACTIONS)), 1)

    def test_update_account_keeps_omitted_fields(self) -> None:
        account = create_account(
            self.store, "u1", AccountPayload(name="Itaú", type="savings", currency="USD", initial_balance="75")
        )

        updated = update_account(self.store, "u1", account.id, AccountUpdatePayload(name="Itaú dólares"))

        stored = self.store.get("u1", ACCOUNTS, account.id)
        self.assertEqual(updated.name, "Itaú dólares")
        self.assertEqual(stored.type, "savings")
        self.assertEqual(stored.currency, "USD")
        self.assertEqual(stored.initial_balance, Decimal("75"))

    def test_records_round_trip_as_domain_objects(self) -> None:
        pesos = create_account(self.store, "u1", AccountPayload(name="BROU", initial_balance="12.5"))

        stored = self.store.list("u1", ACCOUNTS)[0]

        self.assertEqual(asdict(stored), asdict(pesos))


if __name__ == "__main__":
    unittest.main()

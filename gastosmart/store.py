from __future__ import annotations

import threading
from collections import defaultdict
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping
from uuid import uuid4

import structlog
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from gastosmart.ledger_engine import Account, Transaction

logger = structlog.get_logger(__name__)

ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"

metadata = MetaData()

accounts = Table(
    ACCOUNTS,
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), unique=True, nullable=False),
    Column("user_id", String(128), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("initial_balance", Numeric(18, 4), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    TRANSACTIONS,
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), unique=True, nullable=False),
    Column("user_id", String(128), nullable=False, index=True),
    Column("account_id", String(64), nullable=False),
    Column("to_account_id", String(64)),
    Column("date", Date, nullable=False),
    Column("amount", Numeric(18, 4), nullable=False),
    Column("type", String(20), nullable=False),
    Column("category", String(255), nullable=False),
    Column("description", String(500), nullable=False),
    Column("payment_method", String(20)),
    Column("merchant", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

TABLES: dict[str, Table] = {ACCOUNTS: accounts, TRANSACTIONS: transactions}
PROTECTED_COLUMNS = {"seq", "id", "user_id", "created_at"}

Snapshot = tuple
Listener = Callable[[Snapshot], None]


class StoreError(Exception):
    """Base class for document store failures."""


class PermissionDenied(StoreError):
    """Raised when a record belongs to a different user."""


class StoreFailure(StoreError):
    """Raised when the underlying database cannot complete a request."""


class RecordNotFound(StoreError):
    """Raised when an update or delete targets a missing record."""


class DocumentStore:
    """Per-user account and transaction collections with live snapshot feeds.

    Every committed write pushes the full, freshly read collection to the
    subscribers of that user and collection. Transactions are delivered
    sorted by date descending, accounts in creation order.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._listeners: dict[tuple[str, str], list[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, database_url: str) -> "DocumentStore":
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        return cls(create_engine(database_url, connect_args=connect_args))

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    def create(self, user_id: str, collection: str, record: Mapping[str, Any]) -> str:
        table = _table_for(collection)
        values = _clean_values(table, record, allow_id=True)
        record_id = str(values.pop("id", None) or uuid4().hex)
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(table).values(id=record_id, user_id=user_id, **values))
        except SQLAlchemyError as exc:
            logger.error("record_create_failed", collection=collection, error=str(exc))
            raise StoreFailure(f"Failed to create {collection} record.") from exc
        logger.info("record_created", collection=collection, record_id=record_id, user_id=user_id)
        self._publish(user_id, collection)
        return record_id

    def update(self, user_id: str, collection: str, record_id: str, partial: Mapping[str, Any]) -> None:
        table = _table_for(collection)
        values = _clean_values(table, partial, allow_id=False)
        if not values:
            return
        try:
            with self.engine.begin() as conn:
                self._check_owner(conn, table, user_id, record_id)
                conn.execute(
                    update(table)
                    .where(table.c.id == record_id, table.c.user_id == user_id)
                    .values(**values)
                )
        except SQLAlchemyError as exc:
            logger.error("record_update_failed", collection=collection, record_id=record_id, error=str(exc))
            raise StoreFailure(f"Failed to update {collection} record.") from exc
        logger.info("record_updated", collection=collection, record_id=record_id, user_id=user_id)
        self._publish(user_id, collection)

    def delete(self, user_id: str, collection: str, record_id: str) -> None:
        table = _table_for(collection)
        try:
            with self.engine.begin() as conn:
                self._check_owner(conn, table, user_id, record_id)
                conn.execute(delete(table).where(table.c.id == record_id, table.c.user_id == user_id))
        except SQLAlchemyError as exc:
            logger.error("record_delete_failed", collection=collection, record_id=record_id, error=str(exc))
            raise StoreFailure(f"Failed to delete {collection} record.") from exc
        logger.info("record_deleted", collection=collection, record_id=record_id, user_id=user_id)
        self._publish(user_id, collection)

    def delete_many(self, user_id: str, collection: str, record_ids: Iterable[str]) -> int:
        """Delete several records of one user in a single database transaction."""
        table = _table_for(collection)
        ids = list(record_ids)
        if not ids:
            return 0
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(table).where(table.c.user_id == user_id, table.c.id.in_(ids))
                )
        except SQLAlchemyError as exc:
            logger.error("record_batch_delete_failed", collection=collection, error=str(exc))
            raise StoreFailure(f"Failed to delete {collection} records.") from exc
        logger.info("records_deleted", collection=collection, count=result.rowcount, user_id=user_id)
        self._publish(user_id, collection)
        return result.rowcount

    def list(self, user_id: str, collection: str) -> Snapshot:
        table = _table_for(collection)
        if collection == TRANSACTIONS:
            order = (table.c.date.desc(), table.c.seq.desc())
        else:
            order = (table.c.seq.asc(),)
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(table).where(table.c.user_id == user_id).order_by(*order)
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"Failed to read {collection}.") from exc
        decode = account_from_row if collection == ACCOUNTS else transaction_from_row
        return tuple(decode(row) for row in rows)

    def get(self, user_id: str, collection: str, record_id: str) -> Account | Transaction:
        """Fetch one record, raising RecordNotFound or PermissionDenied like a write would."""
        table = _table_for(collection)
        try:
            with self.engine.begin() as conn:
                self._check_owner(conn, table, user_id, record_id)
                row = conn.execute(
                    select(table).where(table.c.id == record_id, table.c.user_id == user_id)
                ).mappings().one()
        except SQLAlchemyError as exc:
            raise StoreFailure(f"Failed to read {collection} record.") from exc
        decode = account_from_row if collection == ACCOUNTS else transaction_from_row
        return decode(row)

    def subscribe(self, user_id: str, collection: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and deliver the current snapshot right away.

        Returns a callable that removes the listener; calling it twice is a no-op.
        """
        _table_for(collection)
        key = (user_id, collection)
        with self._lock:
            self._listeners[key].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners.get(key, []):
                    self._listeners[key].remove(listener)

        try:
            listener(self.list(user_id, collection))
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def _publish(self, user_id: str, collection: str) -> None:
        with self._lock:
            listeners = list(self._listeners.get((user_id, collection), []))
        if not listeners:
            return
        snapshot = self.list(user_id, collection)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("snapshot_listener_failed", collection=collection, user_id=user_id)

    def _check_owner(self, conn, table: Table, user_id: str, record_id: str) -> None:
        owner = conn.execute(select(table.c.user_id).where(table.c.id == record_id)).scalar_one_or_none()
        if owner is None:
            raise RecordNotFound(f"{table.name} record {record_id} not found.")
        if owner != user_id:
            raise PermissionDenied(f"{table.name} record {record_id} belongs to another user.")


def account_from_row(row: Mapping[str, Any]) -> Account:
    return Account(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        currency=row["currency"],
        initial_balance=_coerce_decimal(row["initial_balance"]),
    )


def transaction_from_row(row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        date=row["date"],
        amount=_coerce_decimal(row["amount"]),
        type=row["type"],
        category=row["category"],
        description=row["description"],
        account_id=row["account_id"],
        to_account_id=row["to_account_id"],
        payment_method=row["payment_method"],
        merchant=row["merchant"],
    )


def _table_for(collection: str) -> Table:
    try:
        return TABLES[collection]
    except KeyError as exc:
        raise ValueError(f"Unknown collection: {collection}") from exc


def _clean_values(table: Table, record: Mapping[str, Any], *, allow_id: bool) -> dict[str, Any]:
    allowed = set(table.c.keys()) - PROTECTED_COLUMNS
    if allow_id:
        allowed.add("id")
    unknown = set(record) - allowed
    if unknown:
        raise ValueError(f"Unknown fields for {table.name}: {', '.join(sorted(unknown))}")
    return dict(record)


def _coerce_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))

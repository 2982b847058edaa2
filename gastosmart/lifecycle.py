from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional
from uuid import uuid4

import structlog
from pydantic import BaseModel

from gastosmart.currency_conversion import UnsupportedCurrency, normalize_currency
from gastosmart.ledger_engine import Account, Transaction
from gastosmart.store import ACCOUNTS, TRANSACTIONS, DocumentStore, StoreError

logger = structlog.get_logger(__name__)

TRANSFER_DESCRIPTION = "Transferencia entre cuentas"
TRANSFER_CATEGORY = "Transferencia"
DEFAULT_CATEGORY = "Otros"
DEFAULT_PAYMENT_METHOD = "debit"

CATEGORIES = (
    "Alimentación",
    "Transporte",
    "Vivienda",
    "Servicios",
    "Entretenimiento",
    "Salud",
    "Compras",
    "Salario",
    "Inversiones",
    TRANSFER_CATEGORY,
    DEFAULT_CATEGORY,
)


class ValidationError(ValueError):
    """Raised when a create or update request cannot reach the store."""


class AccountType:
    values = {"checking", "savings", "investment", "cash"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid account type.")
        return normalized


class TransactionType:
    values = {"expense", "income", "transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type.")
        return normalized


class PaymentMethod:
    values = {"cash", "debit", "credit"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid payment method.")
        return normalized


class AccountPayload(BaseModel):
    name: str = ""
    type: str = "checking"
    currency: str = "UYU"
    initial_balance: Decimal | str | None = None


class AccountUpdatePayload(BaseModel):
    name: str | None = None
    type: str | None = None
    currency: str | None = None
    initial_balance: Decimal | str | None = None


class TransactionPayload(BaseModel):
    amount: Decimal | str | None = None
    type: str = "expense"
    category: str | None = None
    description: str | None = None
    date: Optional[datetime.date] = None
    account_id: str | None = None
    to_account_id: str | None = None
    payment_method: str | None = None
    merchant: str | None = None


@dataclass
class CascadeResult:
    account_id: str
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


def build_account(payload: AccountPayload, account_id: str | None = None) -> Account:
    """Validate an account form and shape it into an ``Account``.

    The name is required. An initial balance that does not parse as a number
    becomes 0. A new id is assigned unless ``account_id`` is given.
    """
    name = payload.name.strip()
    if not name:
        raise ValidationError("Account name required.")
    account_type = AccountType.validate(payload.type)
    try:
        currency = normalize_currency(payload.currency)
    except UnsupportedCurrency as exc:
        raise ValidationError(str(exc)) from exc
    return Account(
        id=account_id or uuid4().hex,
        name=name,
        type=account_type,
        currency=currency,
        initial_balance=parse_initial_balance(payload.initial_balance),
    )


def build_transaction(
    payload: TransactionPayload,
    accounts: Iterable[Account],
    transaction_id: str | None = None,
    today: date | None = None,
) -> Transaction:
    """Validate an add-transaction form against the current accounts snapshot.

    Transfers get a fixed description and category, and need a destination
    that exists and differs from the source. The payment method is kept for
    expenses only.
    """
    txn_type = TransactionType.validate(payload.type)
    amount = parse_amount(payload.amount)

    description = (payload.description or "").strip()
    if txn_type != "transfer" and not description:
        raise ValidationError("Description required.")

    account_ids = {account.id for account in accounts}
    account_id = (payload.account_id or "").strip()
    if not account_id:
        raise ValidationError("Source account required.")
    if account_id not in account_ids:
        raise ValidationError(f"Account {account_id} does not exist.")

    to_account_id = None
    if txn_type == "transfer":
        to_account_id = (payload.to_account_id or "").strip()
        if not to_account_id or to_account_id == account_id:
            raise ValidationError("Select a valid destination account.")
        if to_account_id not in account_ids:
            raise ValidationError(f"Account {to_account_id} does not exist.")
        description = TRANSFER_DESCRIPTION
        category = TRANSFER_CATEGORY
    else:
        category = (payload.category or "").strip() or DEFAULT_CATEGORY

    payment_method = None
    if txn_type == "expense":
        payment_method = PaymentMethod.validate(payload.payment_method or DEFAULT_PAYMENT_METHOD)

    merchant = payload.merchant.strip() if payload.merchant else None

    return Transaction(
        id=transaction_id or uuid4().hex,
        date=payload.date or today or date.today(),
        amount=amount,
        type=txn_type,
        category=category,
        description=description,
        account_id=account_id,
        to_account_id=to_account_id,
        payment_method=payment_method,
        merchant=merchant or None,
    )


def parse_amount(value: Decimal | str | None) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Amount required.")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValidationError("Amount must be a number.") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero.")
    return amount


def parse_initial_balance(value: Decimal | str | None) -> Decimal:
    if isinstance(value, Decimal):
        return value if value.is_finite() else Decimal("0")
    if value is None:
        return Decimal("0")
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation:
        return Decimal("0")
    return parsed if parsed.is_finite() else Decimal("0")


def create_account(store: DocumentStore, user_id: str, payload: AccountPayload) -> Account:
    account = build_account(payload)
    store.create(user_id, ACCOUNTS, asdict(account))
    return account


def update_account(
    store: DocumentStore, user_id: str, account_id: str, payload: AccountUpdatePayload
) -> Account:
    """Apply the fields set on ``payload`` over the stored account.

    Omitted fields keep their stored value. An explicit null initial balance
    resets it to 0; null text fields are ignored.
    """
    current = store.get(user_id, ACCOUNTS, account_id)
    changes = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or key == "initial_balance"
    }
    merged = AccountPayload(
        name=current.name,
        type=current.type,
        currency=current.currency,
        initial_balance=current.initial_balance,
    ).model_copy(update=changes)
    account = build_account(merged, account_id=account_id)
    values = asdict(account)
    values.pop("id")
    store.update(user_id, ACCOUNTS, account_id, values)
    return account


def create_transaction(
    store: DocumentStore,
    user_id: str,
    payload: TransactionPayload,
    accounts: Iterable[Account],
    today: date | None = None,
) -> Transaction:
    txn = build_transaction(payload, accounts, today=today)
    store.create(user_id, TRANSACTIONS, asdict(txn))
    return txn


def delete_transaction(store: DocumentStore, user_id: str, transaction_id: str) -> None:
    store.delete(user_id, TRANSACTIONS, transaction_id)


def plan_cascade(account_id: str, transactions: Iterable[Transaction]) -> list[str]:
    """Ids of the transactions that use ``account_id`` as source or destination."""
    return [
        txn.id
        for txn in transactions
        if txn.account_id == account_id or txn.to_account_id == account_id
    ]


def cascade_delete_account(
    store: DocumentStore,
    user_id: str,
    account_id: str,
    transactions: Iterable[Transaction],
) -> CascadeResult:
    """Delete an account and every transaction referencing it.

    The account must exist and belong to ``user_id`` before anything is
    removed. Each transaction delete is attempted on its own; a failure is
    recorded and the cascade continues, so some transactions may outlive the
    account. Failing to delete the account itself raises.
    """
    store.get(user_id, ACCOUNTS, account_id)
    result = CascadeResult(account_id=account_id)
    for txn_id in plan_cascade(account_id, transactions):
        try:
            store.delete(user_id, TRANSACTIONS, txn_id)
        except StoreError as exc:
            result.failed.append(txn_id)
            logger.warning(
                "cascade_transaction_delete_failed",
                account_id=account_id,
                transaction_id=txn_id,
                error=str(exc),
            )
        else:
            result.deleted.append(txn_id)

    store.delete(user_id, ACCOUNTS, account_id)

    if result.failed:
        logger.warning(
            "cascade_delete_partial_failure",
            account_id=account_id,
            deleted=len(result.deleted),
            failed=len(result.failed),
        )
    else:
        logger.info("cascade_delete_completed", account_id=account_id, deleted=len(result.deleted))
    return result

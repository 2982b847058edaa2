import datetime
import os
from dataclasses import asdict
from datetime import date
from decimal import Decimal

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from gastosmart.currency_conversion import (
    BASE_CURRENCY,
    DEFAULT_RATES,
    InvalidRate,
    RateTable,
    UnsupportedCurrency,
    validate_rate,
)
from gastosmart.ledger_engine import Account, AccountBalance, Transaction
from gastosmart.lifecycle import (
    AccountPayload,
    AccountUpdatePayload,
    TransactionPayload,
    ValidationError,
    cascade_delete_account,
    create_account as create_account_record,
    create_transaction as create_transaction_record,
    delete_transaction as delete_transaction_record,
    update_account as update_account_record,
)
from gastosmart.logging_config import configure_logging
from gastosmart.receipts import ReceiptData, TransactionDraft, merge_receipt
from gastosmart.reports import (
    TimeWindow,
    build_report,
    category_totals,
    in_window,
    normalize_to_base,
    recent_activity,
)
from gastosmart.session import DerivedState, LedgerSession
from gastosmart.store import (
    ACCOUNTS,
    TRANSACTIONS,
    DocumentStore,
    PermissionDenied,
    RecordNotFound,
    StoreError,
)

logger = structlog.get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./gastosmart.db")


def get_default_rate(currency: str) -> Decimal:
    raw = os.getenv(f"DEFAULT_{currency}_RATE")
    if not raw:
        return DEFAULT_RATES[currency]
    try:
        return validate_rate(raw)
    except InvalidRate:
        logger.warning("default_rate_ignored", currency=currency, value=raw)
        return DEFAULT_RATES[currency]


STORE = DocumentStore.from_url(database_url)
RATES = RateTable({currency: get_default_rate(currency) for currency in DEFAULT_RATES})


def get_store() -> DocumentStore:
    return STORE


def get_rates() -> RateTable:
    return RATES


@app.on_event("startup")
def init_db() -> None:
    configure_logging()
    STORE.init_schema()


class RatesPayload(BaseModel):
    USD: Decimal | None = None
    UI: Decimal | None = None


class RatesResponse(BaseModel):
    base: str
    rates: dict[str, Decimal]


class AccountResponse(BaseModel):
    id: str
    name: str
    type: str
    currency: str
    initial_balance: Decimal
    balance: Decimal | None = None
    balance_in_base: Decimal | None = None


class TransactionResponse(BaseModel):
    id: str
    date: date
    amount: Decimal
    type: str
    category: str
    description: str
    account_id: str
    to_account_id: str | None = None
    payment_method: str | None = None
    merchant: str | None = None


class CascadeResponse(BaseModel):
    status: str
    account_id: str
    deleted_transactions: list[str]
    failed_transactions: list[str]


class LedgerResponse(BaseModel):
    base_currency: str
    accounts: list[AccountResponse]
    total_in_base: Decimal
    orphaned_transactions: list[str]


class MonthlyFlowResponse(BaseModel):
    income: Decimal
    expense: Decimal
    net: Decimal


class CategoryTotalResponse(BaseModel):
    category: str
    total: Decimal


class ActivityResponse(BaseModel):
    transaction: TransactionResponse
    account_name: str
    currency: str | None = None
    to_account_name: str | None = None


class DashboardResponse(BaseModel):
    ledger: LedgerResponse
    monthly_flow: MonthlyFlowResponse
    expenses_by_category: list[CategoryTotalResponse]
    recent_activity: list[ActivityResponse]


class ReportSummaryResponse(BaseModel):
    total_income: Decimal
    total_expense: Decimal
    net_flow: Decimal
    savings_rate: Decimal


class CashFlowResponse(BaseModel):
    month: str
    year: int
    income: Decimal
    expense: Decimal


class ReportResponse(BaseModel):
    window: str
    summary: ReportSummaryResponse
    cash_flow: list[CashFlowResponse]
    expenses_by_category: list[CategoryTotalResponse]
    income_by_category: list[CategoryTotalResponse]


class DraftPayload(BaseModel):
    amount: str = ""
    description: str = ""
    category: str = "Alimentación"
    type: str = "expense"
    date: datetime.date | None = None
    account_id: str = ""
    to_account_id: str = ""
    payment_method: str = "debit"
    merchant: str = ""


class ReceiptMergePayload(BaseModel):
    draft: DraftPayload = DraftPayload()
    receipt: ReceiptData


def get_user_id(x_user_id: str | None) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing user identity.")
    return x_user_id.strip()


def store_error_to_http(exc: StoreError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PermissionDenied):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def load_state(store: DocumentStore, user_id: str, rates: RateTable) -> DerivedState:
    try:
        with LedgerSession(store, user_id, rates) as session:
            return session.state
    except StoreError as exc:
        raise store_error_to_http(exc) from exc


def account_response(account: Account, balance: AccountBalance | None = None) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        name=account.name,
        type=account.type,
        currency=account.currency,
        initial_balance=account.initial_balance,
        balance=balance.balance if balance else None,
        balance_in_base=balance.balance_in_base if balance else None,
    )


def transaction_response(txn: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=txn.id,
        date=txn.date,
        amount=txn.amount,
        type=txn.type,
        category=txn.category,
        description=txn.description,
        account_id=txn.account_id,
        to_account_id=txn.to_account_id,
        payment_method=txn.payment_method,
        merchant=txn.merchant,
    )


def ledger_response(state: DerivedState) -> LedgerResponse:
    balances = {entry.account_id: entry for entry in state.ledger.balances}
    return LedgerResponse(
        base_currency=BASE_CURRENCY,
        accounts=[account_response(account, balances.get(account.id)) for account in state.accounts],
        total_in_base=state.ledger.total_in_base,
        orphaned_transactions=list(state.ledger.orphaned_transaction_ids),
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/rates", response_model=RatesResponse)
def read_rates(rates: RateTable = Depends(get_rates)) -> RatesResponse:
    return RatesResponse(base=BASE_CURRENCY, rates=rates.as_dict())


@app.put("/rates", response_model=RatesResponse)
def update_rates(payload: RatesPayload, rates: RateTable = Depends(get_rates)) -> RatesResponse:
    changes = payload.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="At least one rate required.")
    try:
        rates.update(changes)
    except (InvalidRate, UnsupportedCurrency) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return RatesResponse(base=BASE_CURRENCY, rates=rates.as_dict())


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
    rates: RateTable = Depends(get_rates),
) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    return ledger_response(load_state(store, user_id, rates)).accounts


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        account = create_account_record(store, user_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    return account_response(account)


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: AccountUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        account = update_account_record(store, user_id, account_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    return account_response(account)


@app.delete("/accounts/{account_id}", response_model=CascadeResponse)
def delete_account(
    account_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> CascadeResponse:
    user_id = get_user_id(x_user_id)
    try:
        current = store.list(user_id, TRANSACTIONS)
        result = cascade_delete_account(store, user_id, account_id, current)
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    return CascadeResponse(
        status="deleted" if result.complete else "partial",
        account_id=account_id,
        deleted_transactions=result.deleted,
        failed_transactions=result.failed,
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    window: str = Query(TimeWindow.ALL),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        normalized_window = TimeWindow.validate(window)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        rows = store.list(user_id, TRANSACTIONS)
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    if normalized_window != TimeWindow.ALL:
        today = date.today()
        rows = [txn for txn in rows if in_window(txn.date, normalized_window, today)]
    return [transaction_response(txn) for txn in rows]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        current_accounts = store.list(user_id, ACCOUNTS)
        txn = create_transaction_record(store, user_id, payload, current_accounts)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    return transaction_response(txn)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        delete_transaction_record(store, user_id, transaction_id)
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    return {"status": "deleted"}


@app.get("/ledger", response_model=LedgerResponse)
def read_ledger(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
    rates: RateTable = Depends(get_rates),
) -> LedgerResponse:
    user_id = get_user_id(x_user_id)
    return ledger_response(load_state(store, user_id, rates))


@app.get("/dashboard", response_model=DashboardResponse)
def read_dashboard(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
    rates: RateTable = Depends(get_rates),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    state = load_state(store, user_id, rates)
    in_base = normalize_to_base(state.transactions, state.accounts, rates)
    return DashboardResponse(
        ledger=ledger_response(state),
        monthly_flow=MonthlyFlowResponse(
            income=state.flow.income,
            expense=state.flow.expense,
            net=state.flow.net,
        ),
        expenses_by_category=[
            CategoryTotalResponse(category=entry.category, total=entry.total)
            for entry in category_totals(in_base, "expense")
        ],
        recent_activity=[
            ActivityResponse(
                transaction=transaction_response(entry.transaction),
                account_name=entry.account_name,
                currency=entry.currency,
                to_account_name=entry.to_account_name,
            )
            for entry in recent_activity(state.transactions, state.accounts)
        ],
    )


@app.get("/reports", response_model=ReportResponse)
def read_report(
    window: str = Query(TimeWindow.CURRENT_MONTH),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
    rates: RateTable = Depends(get_rates),
) -> ReportResponse:
    user_id = get_user_id(x_user_id)
    state = load_state(store, user_id, rates)
    try:
        report = build_report(state.accounts, state.transactions, rates, window=window)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReportResponse(
        window=report.window,
        summary=ReportSummaryResponse(
            total_income=report.summary.total_income,
            total_expense=report.summary.total_expense,
            net_flow=report.summary.net_flow,
            savings_rate=report.summary.savings_rate,
        ),
        cash_flow=[
            CashFlowResponse(month=row.label, year=row.year, income=row.income, expense=row.expense)
            for row in report.cash_flow
        ],
        expenses_by_category=[
            CategoryTotalResponse(category=entry.category, total=entry.total)
            for entry in report.expenses_by_category
        ],
        income_by_category=[
            CategoryTotalResponse(category=entry.category, total=entry.total)
            for entry in report.income_by_category
        ],
    )


@app.post("/receipts/merge", response_model=DraftPayload)
def merge_receipt_into_draft(
    payload: ReceiptMergePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: DocumentStore = Depends(get_store),
) -> DraftPayload:
    user_id = get_user_id(x_user_id)
    try:
        current_accounts = store.list(user_id, ACCOUNTS)
    except StoreError as exc:
        raise store_error_to_http(exc) from exc
    draft = TransactionDraft(**payload.draft.model_dump())
    merged = merge_receipt(draft, payload.receipt, current_accounts)
    return DraftPayload(**asdict(merged))

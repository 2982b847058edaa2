from __future__ import annotations

import datetime
import json
import re
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

from gastosmart.ledger_engine import Account
from gastosmart.lifecycle import CATEGORIES, DEFAULT_CATEGORY

CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


class ReceiptData(BaseModel):
    """Best-effort fields extracted from a receipt image. Every field may be missing."""

    date: Optional[datetime.date] = None
    total: Optional[Decimal] = None
    merchant: Optional[str] = None
    items: Optional[list[str]] = None
    category: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None


class Source(BaseModel):
    title: str
    uri: str


class AdvisorReply(BaseModel):
    text: str
    sources: list[Source] = []


@dataclass(frozen=True)
class TransactionDraft:
    """State of the add-transaction form before it is submitted."""

    amount: str = ""
    description: str = ""
    category: str = "Alimentación"
    type: str = "expense"
    date: Optional[datetime.date] = None
    account_id: str = ""
    to_account_id: str = ""
    payment_method: str = "debit"
    merchant: str = ""


def parse_receipt_text(text: str) -> ReceiptData:
    """Read the JSON object a vision model returned for a receipt.

    Markdown code fences around the object are tolerated.
    """
    cleaned = CODE_FENCE_RE.sub("", text or "").strip() or "{}"
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError("Receipt response is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise ValueError("Receipt response must be a JSON object.")
    try:
        return ReceiptData.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValueError(f"Receipt response has invalid fields: {exc.error_count()} error(s).") from exc


def merge_receipt(
    draft: TransactionDraft,
    receipt: ReceiptData,
    accounts: Iterable[Account] = (),
) -> TransactionDraft:
    """Fill a draft from a scanned receipt without erasing what the user typed.

    Only fields present on the receipt are copied. The draft always becomes an
    expense; categories outside the known list map to ``Otros``; a receipt
    currency selects the first account held in that currency, if any.
    """
    changes: dict[str, Any] = {"type": "expense"}
    if receipt.total is not None:
        changes["amount"] = str(receipt.total)
    if receipt.description:
        changes["description"] = receipt.description
    if receipt.date is not None:
        changes["date"] = receipt.date
    if receipt.merchant:
        changes["merchant"] = receipt.merchant
    if receipt.category:
        changes["category"] = receipt.category if receipt.category in CATEGORIES else DEFAULT_CATEGORY
    if receipt.currency:
        currency = receipt.currency.strip().upper()
        match = next((account for account in accounts if account.currency == currency), None)
        if match is not None:
            changes["account_id"] = match.id
    return replace(draft, **changes)


def extract_sources(grounding_chunks: Iterable[Mapping[str, Any]] | None) -> list[Source]:
    """Web citations from a search-grounded answer; chunks without a web entry are skipped."""
    sources = []
    for chunk in grounding_chunks or ():
        web = chunk.get("web") if isinstance(chunk, Mapping) else None
        if not web:
            continue
        sources.append(Source(title=web.get("title") or "", uri=web.get("uri") or ""))
    return sources


def advisor_reply(text: str | None, grounding_chunks: Iterable[Mapping[str, Any]] | None = None) -> AdvisorReply:
    return AdvisorReply(
        text=text or "No se encontraron resultados.",
        sources=extract_sources(grounding_chunks),
    )

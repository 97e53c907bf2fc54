"""
Structured Extraction — Pydantic Record Schemas

The canonical shape of everything the AI extraction service is asked to
return. Every parsed payload is validated through StructuredRecord, which:

  - drops keys it does not know (extra="ignore")
  - maps common aliases ("vendor_name", "total_amount", …) onto canonical keys
  - routes every numeric field through normalize_number()
  - canonicalises document_type to a fixed vocabulary
  - normalises dates to ISO-8601 (YYYY-MM-DD) or None

Validators are deliberately lenient: bad values become None / defaults so a
malformed model response never raises past the parser.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.processing.numeric import normalize_number


# ---------------------------------------------------------------------------
# Document type vocabulary
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    INVOICE        = "invoice"
    RECEIPT        = "receipt"
    BANK_STATEMENT = "bank_statement"
    CONTRACT       = "contract"
    OTHER          = "other"


# Order matters: "bank statement" must win over a generic "statement" match
# and "invoice receipt" is treated as an invoice.
_DOCUMENT_TYPE_KEYWORDS: tuple[tuple[DocumentType, tuple[str, ...]], ...] = (
    (DocumentType.BANK_STATEMENT, ("bank_statement", "bank statement", "rekening koran", "mutasi")),
    (DocumentType.INVOICE,        ("invoice", "faktur", "tagihan", "bill")),
    (DocumentType.RECEIPT,        ("receipt", "kwitansi", "struk", "nota")),
    (DocumentType.CONTRACT,       ("contract", "agreement", "perjanjian", "kontrak")),
)


def canonical_document_type(value: Any) -> str:
    """Case-insensitive substring match onto the fixed vocabulary."""
    if not isinstance(value, str):
        return DocumentType.OTHER.value
    lowered = value.strip().lower()
    for doc_type, keywords in _DOCUMENT_TYPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return doc_type.value
    return DocumentType.OTHER.value


# ---------------------------------------------------------------------------
# Scalar cleaners
# ---------------------------------------------------------------------------

_CURRENCY_SYMBOLS = {"": "IDR", "RP": "IDR", "$": "USD", "US$": "USD", "S$": "SGD", "€": "EUR", "£": "GBP", "¥": "JPY"}

_NULL_STRINGS = frozenset({"", "null", "none", "n/a", "na", "-", "unknown"})

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
)


def clean_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return None if text.lower() in _NULL_STRINGS else text


def normalize_date(value: Any) -> str | None:
    """Return YYYY-MM-DD, or None when the value is not a recognisable date."""
    text = clean_str(value)
    if text is None:
        return None
    head = text[:10] if len(text) >= 10 and text[4:5] == "-" else text
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(head, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def _apply_aliases(data: Any, aliases: dict[str, tuple[str, ...]]) -> Any:
    if not isinstance(data, dict):
        return data
    merged = dict(data)
    for canonical, alternatives in aliases.items():
        if merged.get(canonical) not in (None, ""):
            continue
        for alt in alternatives:
            if data.get(alt) not in (None, ""):
                merged[canonical] = data[alt]
                break
    return merged


# ---------------------------------------------------------------------------
# Child records
# ---------------------------------------------------------------------------

class LineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str          = ""
    quantity:    float        = 1.0
    unit_price:  float | None = None
    line_total:  float | None = None
    tax_rate:    float        = 0.0
    category:    str          = "uncategorized"

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        return _apply_aliases(data, {
            "line_total":  ("line_total_amount", "total", "amount"),
            "unit_price":  ("price", "unit_cost"),
            "quantity":    ("qty",),
            "description": ("item", "name"),
        })

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v: Any) -> str:
        return clean_str(v) or ""

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, v: Any) -> float:
        return normalize_number(v) or 1.0

    @field_validator("tax_rate", mode="before")
    @classmethod
    def _tax_rate(cls, v: Any) -> float:
        return normalize_number(v) or 0.0

    @field_validator("unit_price", "line_total", mode="before")
    @classmethod
    def _money(cls, v: Any) -> float | None:
        return normalize_number(v)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, v: Any) -> str:
        return clean_str(v) or "uncategorized"


class BankTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date:             str | None   = None
    description:      str          = ""
    amount:           float | None = None
    balance:          float | None = None
    transaction_type: str | None   = None   # debit | credit

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        return _apply_aliases(data, {
            "date":             ("transaction_date", "posting_date"),
            "transaction_type": ("type", "direction"),
        })

    @field_validator("date", mode="before")
    @classmethod
    def _date(cls, v: Any) -> str | None:
        return normalize_date(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v: Any) -> str:
        return clean_str(v) or ""

    @field_validator("amount", "balance", mode="before")
    @classmethod
    def _money(cls, v: Any) -> float | None:
        return normalize_number(v)

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _direction(cls, v: Any) -> str | None:
        text = (clean_str(v) or "").lower()
        if text.startswith(("cr", "kredit")) or text == "k":
            return "credit"
        if text.startswith(("db", "de")) or text == "d":
            return "debit"
        return None


# ---------------------------------------------------------------------------
# Top-level record
# ---------------------------------------------------------------------------

class StructuredRecord(BaseModel):
    """
    Structured fields extracted from one document.

    StructuredRecord() with no arguments is the canonical empty record used
    whenever extraction fails or yields nothing.
    """
    model_config = ConfigDict(extra="ignore")

    vendor:          str | None   = None
    document_type:   str          = DocumentType.OTHER.value
    date:            str | None   = None
    due_date:        str | None   = None
    amount:          float | None = None
    tax_amount:      float | None = None
    currency:        str          = "IDR"
    document_number: str | None   = None
    ap_ar_status:    str | None   = None
    description:     str | None   = None
    line_items:        list[LineItem]        = Field(default_factory=list)
    bank_transactions: list[BankTransaction] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _aliases(cls, data: Any) -> Any:
        return _apply_aliases(data, {
            "vendor":          ("vendor_name", "supplier", "merchant", "seller", "party_name"),
            "amount":          ("total_amount", "total", "grand_total", "amount_due"),
            "tax_amount":      ("tax", "vat", "ppn"),
            "date":            ("document_date", "invoice_date", "transaction_date", "effective_date"),
            "document_number": ("invoice_number", "document_no", "receipt_number", "reference"),
            "ap_ar_status":    ("ap_ar", "payable_receivable"),
            "description":     ("summary",),
        })

    @field_validator("vendor", "document_number", "description", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str | None:
        return clean_str(v)

    @field_validator("document_type", mode="before")
    @classmethod
    def _doc_type(cls, v: Any) -> str:
        return canonical_document_type(v)

    @field_validator("date", "due_date", mode="before")
    @classmethod
    def _dates(cls, v: Any) -> str | None:
        return normalize_date(v)

    @field_validator("amount", "tax_amount", mode="before")
    @classmethod
    def _money(cls, v: Any) -> float | None:
        return normalize_number(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v: Any) -> str:
        text = (clean_str(v) or "").upper().rstrip(".")
        if text in _CURRENCY_SYMBOLS:
            return _CURRENCY_SYMBOLS[text]
        return text[:3] if text.isalpha() else "IDR"

    @field_validator("ap_ar_status", mode="before")
    @classmethod
    def _ap_ar(cls, v: Any) -> str | None:
        text = (clean_str(v) or "").lower()
        if "receiv" in text or text == "ar":
            return "receivable"
        if "payab" in text or text == "ap":
            return "payable"
        return None

    @field_validator("line_items", "bank_transactions", mode="before")
    @classmethod
    def _children(cls, v: Any) -> list:
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    def filled_fields(self) -> set[str]:
        """Names of scalar fields that carry a non-default value."""
        empty = StructuredRecord()
        return {
            name for name in RECORD_SCALAR_FIELDS
            if getattr(self, name) is not None and getattr(self, name) != getattr(empty, name)
        }


RECORD_SCALAR_FIELDS: tuple[str, ...] = (
    "vendor",
    "document_type",
    "date",
    "due_date",
    "amount",
    "tax_amount",
    "currency",
    "document_number",
    "ap_ar_status",
    "description",
)

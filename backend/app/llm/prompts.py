"""
Extraction prompts, one set per vertical.

Three shapes are used by the strategy router:

  full text     "transcribe everything"                (standard / comprehensive)
  structured    "return ONLY this JSON object"         (standard / comprehensive)
  combined      both, in two marked sections           (small files)

Spreadsheet text, when present, is appended as extra context; the caller
truncates it before it gets here.
"""

from __future__ import annotations

from typing import Final

from app.schemas.documents import Vertical

FULL_TEXT_MARKER:  Final[str] = "=== FULL TEXT ==="
STRUCTURED_MARKER: Final[str] = "=== STRUCTURED DATA ==="

_ACCOUNTING_SCHEMA: Final[str] = """\
{
  "vendor_name": "string",
  "document_type": "invoice|receipt|bank_statement|contract|other",
  "document_number": "string or null",
  "document_date": "YYYY-MM-DD or null",
  "due_date": "YYYY-MM-DD or null",
  "total_amount": number,
  "tax_amount": number,
  "currency": "ISO 4217 code, e.g. IDR",
  "ap_ar_status": "payable|receivable or null",
  "description": "one-sentence summary",
  "line_items": [
    {
      "description": "string",
      "quantity": number,
      "unit_price": number,
      "line_total_amount": number,
      "tax_rate": number
    }
  ],
  "bank_transactions": [
    {
      "date": "YYYY-MM-DD",
      "description": "string",
      "amount": number,
      "balance": number,
      "transaction_type": "debit|credit"
    }
  ]
}"""

_LEGAL_SCHEMA: Final[str] = """\
{
  "vendor_name": "counterparty name",
  "document_type": "contract|other",
  "document_number": "agreement reference or null",
  "document_date": "effective date, YYYY-MM-DD or null",
  "due_date": "expiry or termination date, YYYY-MM-DD or null",
  "total_amount": number or null,
  "currency": "ISO 4217 code, e.g. IDR",
  "description": "two-sentence summary of the parties' obligations"
}"""

_SUBJECT: Final[dict[Vertical, str]] = {
    Vertical.ACCOUNTING: "accounting",
    Vertical.LEGAL:      "legal",
}

_SCHEMAS: Final[dict[Vertical, str]] = {
    Vertical.ACCOUNTING: _ACCOUNTING_SCHEMA,
    Vertical.LEGAL:      _LEGAL_SCHEMA,
}

_FULL_TEXT_INSTRUCTION: Final[str] = (
    "Extract all text content from the provided document, preserving structure "
    "and reading order where possible. Return only the text."
)

_NUMBER_RULES: Final[str] = (
    "Write amounts exactly as printed on the document, including thousands "
    "separators. Use null for anything that is not present."
)


def _with_context(prompt: str, context: str | None, label: str) -> str:
    if not context:
        return prompt
    return f"{prompt}\n\n{label}:\n{context}"


def full_text_prompt(context: str | None = None, part: tuple[int, int] | None = None) -> str:
    prompt = _FULL_TEXT_INSTRUCTION
    if part is not None:
        prompt += f" This is part {part[0]} of {part[1]} of a larger document."
    return _with_context(prompt, context, "The document also contains spreadsheet data")


def structured_prompt(vertical: Vertical, context: str | None = None) -> str:
    prompt = (
        f"Analyze this document and extract structured {_SUBJECT[vertical]} data. "
        f"Return ONLY valid JSON with the following structure:\n{_SCHEMAS[vertical]}\n\n"
        f"{_NUMBER_RULES}"
    )
    return _with_context(prompt, context, "Additional spreadsheet data")


def combined_prompt(vertical: Vertical, context: str | None = None) -> str:
    prompt = (
        "Analyze this document and provide both full text extraction and "
        f"structured {_SUBJECT[vertical]} data extraction.\n\n"
        "RESPOND WITH THIS EXACT FORMAT:\n"
        f"{FULL_TEXT_MARKER}\n"
        "[all text content of the document]\n\n"
        f"{STRUCTURED_MARKER}\n"
        f"{_SCHEMAS[vertical]}\n\n"
        f"{_NUMBER_RULES}"
    )
    return _with_context(prompt, context, "Additional spreadsheet data to consider")

"""
Response Parser  —  Structured Records from Free-Form Model Output
══════════════════════════════════════════════════════════════════

Generative models are asked for JSON but answer with whatever they like:
prose preambles, markdown fences, trailing commas, or no JSON at all.
parse_response() never raises; it walks an ordered chain of strategies
and the first one that yields a payload wins:

  1. direct          json.loads() of the whole trimmed string
  2. fenced_block    contents of a ```json … ``` block
  3. brace_scan      first balanced {…} object (string-aware)
  4. reconstruction  labelled regex extractors over the raw text
  5. failure         canonical empty record, flagged for manual review

Every payload is validated through StructuredRecord (aliases, unknown-key
removal, numeric normalisation, document-type canonicalisation).

Result variants
───────────────
  ParsedSuccess(record, strategy)          JSON found and validated
  ParsedPartial(record, missing_fields)    regex reconstruction only
  ParsedFailure(reason)                    nothing usable — .record is the default
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from pydantic import ValidationError

from app.schemas.extraction import StructuredRecord, canonical_document_type

logger = logging.getLogger(__name__)

# Upper bound on "{" start positions tried by the brace scanner
MAX_BRACE_CANDIDATES = 50


# ---------------------------------------------------------------------------
# Result variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedSuccess:
    record:   StructuredRecord
    strategy: str

    @property
    def needs_review(self) -> bool:
        return False


@dataclass(frozen=True)
class ParsedPartial:
    record:         StructuredRecord
    missing_fields: tuple[str, ...]
    strategy:       str = "reconstruction"

    @property
    def needs_review(self) -> bool:
        return False


@dataclass(frozen=True)
class ParsedFailure:
    reason:   str
    strategy: str = "default"
    record:   StructuredRecord = field(default_factory=StructuredRecord)

    @property
    def needs_review(self) -> bool:
        return True


ParseResult = Union[ParsedSuccess, ParsedPartial, ParsedFailure]


# ---------------------------------------------------------------------------
# JSON strategies — each returns a dict payload or None
# ---------------------------------------------------------------------------

_FENCE_RE          = re.compile(r"```[ \t]*(?:json|JSON|javascript)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

# Wrapper keys some models nest the payload under
_WRAPPER_KEYS = ("structured_data", "data", "result", "document")


def _loads_object(candidate: str) -> dict | None:
    for attempt in (candidate, _TRAILING_COMMA_RE.sub(r"\1", candidate)):
        try:
            payload = json.loads(attempt)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(payload, dict):
            return _unwrap(payload)
        return None
    return None


def _unwrap(payload: dict) -> dict:
    known = set(StructuredRecord.model_fields)
    if known & payload.keys():
        return payload
    for key in _WRAPPER_KEYS:
        inner = payload.get(key)
        if isinstance(inner, dict):
            return inner
    return payload


def _balanced_object(text: str, start: int) -> str | None:
    """Return text[start:end] for the "{" at start and its matching "}"."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_direct(text: str) -> dict | None:
    return _loads_object(text) if text.startswith("{") else None


def parse_fenced_block(text: str) -> dict | None:
    for match in _FENCE_RE.finditer(text):
        block = match.group(1).strip()
        payload = _loads_object(block) or parse_brace_scan(block)
        if payload is not None:
            return payload
    return None


def parse_brace_scan(text: str) -> dict | None:
    start = text.find("{")
    tried = 0
    while start != -1 and tried < MAX_BRACE_CANDIDATES:
        candidate = _balanced_object(text, start)
        if candidate is not None:
            payload = _loads_object(candidate)
            if payload is not None:
                return payload
        tried += 1
        start = text.find("{", start + 1)
    return None


JSON_STRATEGIES: tuple[tuple[str, Callable[[str], dict | None]], ...] = (
    ("direct",       parse_direct),
    ("fenced_block", parse_fenced_block),
    ("brace_scan",   parse_brace_scan),
)


# ---------------------------------------------------------------------------
# Field reconstruction — labelled regex extractors
# ---------------------------------------------------------------------------

_CURRENCY_TOKEN = r"(?P<currency>Rp\.?|IDR|USD|SGD|EUR|US\$|S\$|\$)"
_NUMBER_TOKEN   = r"(?P<number>-?\d[\d.,]*\d|\d)"
_DATE_TOKEN     = r"(?P<date>\d{4}-\d{2}-\d{2}|\d{1,2}[/.-]\d{1,2}[/.-]\d{4})"
_SEP            = r"[\"']?\s*[:=]?\s*[\"']?"

_VENDOR_RE = re.compile(
    r"(?im)^[\s\"'*-]*(?:vendor(?:[ _]name)?|supplier|merchant|seller|billed?\s+from|from|company)"
    r"[\"'*]*\s*[:=]\s*[\"']?(?P<vendor>[^\n\"',]{2,100})",
)
_AMOUNT_LABELLED_RE = re.compile(
    r"(?i)(?<!tax )(?<!tax_)(?<!sub)(?:grand\s+total|total(?:[ _]amount)?|amount(?:[ _]due)?|jumlah)" + _SEP
    + _CURRENCY_TOKEN + r"?\s*" + _NUMBER_TOKEN,
)
_AMOUNT_WITH_CURRENCY_RE = re.compile(r"(?i)" + _CURRENCY_TOKEN + r"\s*" + _NUMBER_TOKEN)
_TAX_RE = re.compile(
    r"(?i)(?:tax(?:[ _]amount)?|vat|ppn)" + _SEP + _CURRENCY_TOKEN + r"?\s*" + _NUMBER_TOKEN,
)
_DUE_DATE_RE = re.compile(r"(?i)due[ _]?date" + _SEP + _DATE_TOKEN)
_DATE_LABELLED_RE = re.compile(
    r"(?i)(?<!due )(?<!due_)(?:document[ _]|invoice[ _]|transaction[ _])?(?:date|tanggal)" + _SEP + _DATE_TOKEN,
)
_DATE_ANY_RE = re.compile(_DATE_TOKEN)
_DOC_NUMBER_RE = re.compile(
    r"(?i)(?:invoice|document|receipt|faktur)[ _]*(?:no\.?|number|num|#)" + _SEP
    + r"(?P<number>[A-Z0-9][\w/\-.]{2,40})",
)

_CURRENCY_CODES = {"RP": "IDR", "RP.": "IDR", "$": "USD", "US$": "USD", "S$": "SGD"}

RECONSTRUCTABLE_FIELDS: tuple[str, ...] = (
    "vendor", "amount", "currency", "tax_amount", "date", "due_date", "document_number",
)


def _currency_code(token: str | None) -> str | None:
    if not token:
        return None
    upper = token.upper()
    return _CURRENCY_CODES.get(upper, upper)


def reconstruct_fields(text: str) -> dict[str, Any]:
    """Best-effort field extraction from text that contains no JSON."""
    fields: dict[str, Any] = {}

    vendor_match = _VENDOR_RE.search(text)
    if vendor_match:
        fields["vendor"] = vendor_match.group("vendor").strip()

    amount_match = _AMOUNT_LABELLED_RE.search(text) or _AMOUNT_WITH_CURRENCY_RE.search(text)
    if amount_match:
        currency = amount_match.group("currency")
        # keep the currency token so rupiah thousands grouping is recognised
        fields["amount"] = f"{currency or ''} {amount_match.group('number')}".strip()
        code = _currency_code(currency)
        if code:
            fields["currency"] = code

    tax_match = _TAX_RE.search(text)
    if tax_match:
        fields["tax_amount"] = f"{tax_match.group('currency') or ''} {tax_match.group('number')}".strip()

    due_match = _DUE_DATE_RE.search(text)
    if due_match:
        fields["due_date"] = due_match.group("date")

    date_match = _DATE_LABELLED_RE.search(text)
    if date_match is None:
        date_match = next(
            (d for d in _DATE_ANY_RE.finditer(text) if d.group("date") != fields.get("due_date")),
            None,
        )
    if date_match:
        fields["date"] = date_match.group("date")

    number_match = _DOC_NUMBER_RE.search(text)
    if number_match:
        fields["document_number"] = number_match.group("number")

    doc_type = canonical_document_type(text)
    if fields and doc_type != "other":
        fields["document_type"] = doc_type

    return fields


# ---------------------------------------------------------------------------
# Validation + public entry point
# ---------------------------------------------------------------------------

def validate_record(payload: dict[str, Any]) -> StructuredRecord:
    """Run a raw payload through StructuredRecord; never raises."""
    try:
        return StructuredRecord.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Structured record failed validation, using defaults: %s", exc)
        return StructuredRecord()


def parse_response(text: str | None) -> ParseResult:
    """
    Turn a model response into a structured record.

    The chain is tried in order; the first strategy that produces a payload
    wins. An empty or JSON-free response still yields a usable record.
    """
    if not text or not text.strip():
        return ParsedFailure(reason="empty response")

    trimmed = text.strip()

    for name, strategy in JSON_STRATEGIES:
        payload = strategy(trimmed)
        if payload is not None:
            logger.debug("Response parsed | strategy=%s keys=%d", name, len(payload))
            return ParsedSuccess(record=validate_record(payload), strategy=name)

    fields = reconstruct_fields(trimmed)
    if fields:
        record = validate_record(fields)
        filled = record.filled_fields()
        if filled:
            missing = tuple(f for f in RECONSTRUCTABLE_FIELDS if f not in filled)
            logger.info(
                "Response had no JSON, reconstructed fields=%s missing=%s",
                sorted(filled), list(missing),
            )
            return ParsedPartial(record=record, missing_fields=missing)

    logger.warning("Response had no parseable structure (len=%d)", len(trimmed))
    return ParsedFailure(reason="no structured data found")


# ---------------------------------------------------------------------------
# Combined small-file responses
# ---------------------------------------------------------------------------

_FULL_TEXT_MARKER = re.compile(r"={2,}\s*FULL\s+TEXT\s*={2,}", re.IGNORECASE)
_STRUCTURED_MARKER = re.compile(r"={2,}\s*STRUCTURED\s+DATA\s*={2,}", re.IGNORECASE)


def split_combined_response(text: str | None) -> tuple[str, str]:
    """
    Split "=== FULL TEXT === … === STRUCTURED DATA === …" into
    (full_text, structured_section). Without markers the whole response is
    treated as the structured section and full text is empty.
    """
    if not text:
        return "", ""

    structured_match = _STRUCTURED_MARKER.search(text)
    full_match = _FULL_TEXT_MARKER.search(text)

    if structured_match is None:
        if full_match is None:
            return "", text
        return text[full_match.end():].strip(), ""

    structured = text[structured_match.end():].strip()
    start = full_match.end() if full_match and full_match.start() < structured_match.start() else 0
    full_text = text[start:structured_match.start()].strip() if full_match else ""
    return full_text, structured

"""
Locale-aware numeric normalizer.

Documents arrive in two conventions:
  Indonesian     8.319.886,52   ("." thousands, "," decimal)
  International  8,319,886.52   ("," thousands, "." decimal)

normalize_number() decides which one a string uses from the separator
counts and returns a float, or None when nothing numeric is left. It never
raises and depends only on its input.
"""

from __future__ import annotations

import math
import re
from typing import Any

_NON_NUMERIC_RE = re.compile(r"[^\d.,\-]")
_IDR_MARKER_RE  = re.compile(r"\b(?:rp|idr)\b|rp\.?\s*\d", re.IGNORECASE)
_THOUSANDS_GROUP_RE = re.compile(r"^-?[1-9]\d{0,2}\.\d{3}$")
_EXPONENT_LITERAL_RE = re.compile(r"^-?\d+(?:\.\d+)?[eE][+-]?\d+$")


def _resolve_last_separator(value: str) -> str:
    """Whichever separator occurs last is the decimal point; drop the other one."""
    decimal_sep = "," if value.rfind(",") > value.rfind(".") else "."
    thousands_sep = "." if decimal_sep == "," else ","
    value = value.replace(thousands_sep, "")
    head, _, tail = value.rpartition(decimal_sep)
    return f"{head.replace(decimal_sep, '')}.{tail}"


def _to_canonical(raw: str) -> str:
    value = _NON_NUMERIC_RE.sub("", raw)
    periods = value.count(".")
    commas  = value.count(",")

    if periods > 1 and commas == 1:
        return value.replace(".", "").replace(",", ".")
    if commas > 1 and periods <= 1:
        return value.replace(",", "")
    if commas == 1 and periods == 0:
        return value.replace(",", ".")
    if periods == 1 and commas == 0:
        # "25.000" / "Rp 1.500": a single dot before a 3-digit group is a
        # thousands separator in rupiah amounts
        if _THOUSANDS_GROUP_RE.match(value) and (
            value.endswith(".000") or _IDR_MARKER_RE.search(raw)
        ):
            return value.replace(".", "")
        return value
    if periods == 0 and commas == 0:
        return value
    if commas == 0:
        # 1.234.567: repeated dots can only be grouping
        return value.replace(".", "")
    return _resolve_last_separator(value)


def _strip_to_number(value: str) -> str:
    negative = value.startswith("-")
    digits_and_dot = value.replace("-", "")
    head, dot, tail = digits_and_dot.partition(".")
    cleaned = head + dot + tail.replace(".", "")
    return f"-{cleaned}" if negative else cleaned


def normalize_number(value: Any) -> float | None:
    """
    Convert a locale-ambiguous numeric value into a float.

    >>> normalize_number("8.319.886,52")
    8319886.52
    >>> normalize_number("8,319,886.52")
    8319886.52
    >>> normalize_number("Rp 25.000")
    25000.0
    >>> normalize_number("abc") is None
    True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        value = str(value)

    value = value.strip()
    if _EXPONENT_LITERAL_RE.match(value):
        # "1e-05", "1.2345678901234567e+19": the repr of small and large floats
        number = float(value)
        return number if math.isfinite(number) else None

    candidate = _strip_to_number(_to_canonical(value))
    if candidate in ("", "-", ".", "-."):
        return None
    try:
        number = float(candidate)
    except ValueError:
        return None
    return number if math.isfinite(number) else None

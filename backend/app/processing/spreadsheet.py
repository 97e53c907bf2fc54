"""
Spreadsheet-to-text converter (openpyxl).

Output shape, one block per worksheet:

    === Sheet: Invoices ===
    No\tDate\tAmount
    1\t2024-05-01\t1500000

Cells render as their cached values (data_only=True), so formulas appear as
the last computed result. Empty rows are skipped.
"""

from __future__ import annotations

import io
import logging
from datetime import date, datetime

import openpyxl

logger = logging.getLogger(__name__)


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def workbook_to_text(data: bytes) -> str | None:
    """Convert an .xlsx workbook into text; None when it cannot be read."""
    parts: list[str] = []
    sheets = 0
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(data), data_only=True, read_only=True)
        try:
            for sheet in workbook.worksheets:
                sheets += 1
                parts.append(f"=== Sheet: {sheet.title} ===")
                for row in sheet.iter_rows(values_only=True):
                    cells = [_cell_text(v) for v in row]
                    if any(cells):
                        parts.append("\t".join(cells).rstrip("\t"))
        finally:
            workbook.close()
    except Exception as exc:
        logger.error("Spreadsheet could not be read: %s", exc)
        return None

    text = "\n".join(parts).strip()
    logger.info("Spreadsheet converted | sheets=%d chars=%d", sheets, len(text))
    return text

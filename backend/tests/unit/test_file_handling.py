"""
Unit Tests — file kind detection, local conversion, previews
════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import io

import docx
import openpyxl
import pytest
from PIL import Image

from app.processing.file_types import (
    MIME_DOCX,
    MIME_PDF,
    MIME_XLSX,
    FileInfo,
    FileKind,
    decode_text,
    detect_file_kind,
)
from app.processing.images import make_webp_preview
from app.processing.spreadsheet import workbook_to_text
from app.processing.strategy import to_ai_input


def _png(width: int, height: int) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(out, format="PNG")
    return out.getvalue()


def _docx(*paragraphs: str) -> bytes:
    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    out = io.BytesIO()
    document.save(out)
    return out.getvalue()


def _xlsx() -> bytes:
    workbook = openpyxl.Workbook()
    workbook.active.title = "Ledger"
    workbook.active.append(["Date", "Amount"])
    workbook.active.append([None, None])
    workbook.active.append(["2024-01-31", 2500.0])
    out = io.BytesIO()
    workbook.save(out)
    return out.getvalue()


@pytest.mark.unit
class TestDetectFileKind:

    def test_pdf_magic_beats_extension(self):
        assert detect_file_kind(b"%PDF-1.7 ...", "scan.jpg") == FileInfo(FileKind.PDF, MIME_PDF)

    def test_png_magic(self):
        assert detect_file_kind(_png(2, 2)).kind is FileKind.IMAGE

    def test_heic_brand(self):
        data = b"\x00\x00\x00\x18ftypheic" + b"\x00" * 16
        assert detect_file_kind(data) == FileInfo(FileKind.IMAGE, "image/heic")

    def test_office_zip_sniffed(self):
        assert detect_file_kind(_xlsx(), "upload.bin").kind is FileKind.SPREADSHEET
        assert detect_file_kind(_docx("hi"), None) == FileInfo(FileKind.DOCX, MIME_DOCX)

    def test_extension_fallback(self):
        assert detect_file_kind(b"plain words", "notes.txt").kind is FileKind.TEXT
        assert detect_file_kind(b"PK-ish", "book.xlsx") == FileInfo(FileKind.SPREADSHEET, MIME_XLSX)

    def test_declared_mime_fallback(self):
        assert detect_file_kind(b"????", "blob", "image/tiff") == FileInfo(FileKind.IMAGE, "image/tiff")

    def test_unknown(self):
        assert detect_file_kind(b"????", "blob").kind is FileKind.OTHER


@pytest.mark.unit
class TestLocalConversion:

    def test_decode_text_falls_back_to_latin1(self):
        assert decode_text("café".encode("latin-1")) == "café"

    def test_docx_sent_as_text(self):
        data = _docx("Invoice 001", "Total Rp 25.000")
        source = to_ai_input(data, FileInfo(FileKind.DOCX, MIME_DOCX), "inv.docx")

        assert source.data == b""
        assert "Invoice 001" in source.text
        assert "Total Rp 25.000" in source.text

    def test_pdf_sent_as_bytes(self):
        source = to_ai_input(b"%PDF-1.4", FileInfo(FileKind.PDF, MIME_PDF))

        assert source.text is None
        assert source.data == b"%PDF-1.4"

    def test_workbook_to_text(self):
        text = workbook_to_text(_xlsx())

        assert text.splitlines() == ["=== Sheet: Ledger ===", "Date\tAmount", "2024-01-31\t2500"]

    def test_unreadable_workbook(self):
        assert workbook_to_text(b"not a workbook") is None


@pytest.mark.unit
class TestWebpPreview:

    def test_downscaled_keeping_aspect(self):
        preview = make_webp_preview(_png(400, 200), max_width=100, max_height=100)

        with Image.open(io.BytesIO(preview)) as image:
            assert image.format == "WEBP"
            assert image.size == (100, 50)

    def test_never_enlarged(self):
        preview = make_webp_preview(_png(40, 20), max_width=100, max_height=100)

        with Image.open(io.BytesIO(preview)) as image:
            assert image.size == (40, 20)

    def test_undecodable_returns_none(self):
        assert make_webp_preview(b"\x00\x00\x00\x18ftypheic" + b"\x00" * 64) is None

"""
File kind detection and local text conversion.

Kind is decided from magic bytes first; the filename extension and the
declared MIME type are only consulted when the bytes are inconclusive.
Office formats are ZIP containers, so PK\\x03\\x04 is resolved by looking
at the archive members.

    kind          sent to the AI call as
    ──────────    ──────────────────────────────
    pdf           file part (application/pdf)
    image         image part
    docx          text (python-docx, converted here)
    text          text (decoded here)
    spreadsheet   never sent; converted by spreadsheet.py
    other         file part with the declared MIME type
"""

from __future__ import annotations

import io
import logging
import mimetypes
import zipfile
from dataclasses import dataclass
from enum import Enum

import docx

logger = logging.getLogger(__name__)


class FileKind(str, Enum):
    PDF         = "pdf"
    IMAGE       = "image"
    SPREADSHEET = "spreadsheet"
    DOCX        = "docx"
    TEXT        = "text"
    OTHER       = "other"


@dataclass(frozen=True)
class FileInfo:
    kind:      FileKind
    mime_type: str


MIME_PDF  = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Magic byte signatures checked against the start of the file
_MAGIC_BYTES: tuple[tuple[bytes, FileInfo], ...] = (
    (b"%PDF",              FileInfo(FileKind.PDF,   MIME_PDF)),
    (b"\x89PNG\r\n\x1a\n", FileInfo(FileKind.IMAGE, "image/png")),
    (b"\xff\xd8\xff",      FileInfo(FileKind.IMAGE, "image/jpeg")),
    (b"GIF87a",            FileInfo(FileKind.IMAGE, "image/gif")),
    (b"GIF89a",            FileInfo(FileKind.IMAGE, "image/gif")),
)

# ISO-BMFF brands (bytes 8..12 after "ftyp") used by HEIC/HEIF
_HEIF_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1")

_EXTENSIONS: dict[str, FileInfo] = {
    ".pdf":  FileInfo(FileKind.PDF,         MIME_PDF),
    ".jpg":  FileInfo(FileKind.IMAGE,       "image/jpeg"),
    ".jpeg": FileInfo(FileKind.IMAGE,       "image/jpeg"),
    ".png":  FileInfo(FileKind.IMAGE,       "image/png"),
    ".gif":  FileInfo(FileKind.IMAGE,       "image/gif"),
    ".webp": FileInfo(FileKind.IMAGE,       "image/webp"),
    ".heic": FileInfo(FileKind.IMAGE,       "image/heic"),
    ".heif": FileInfo(FileKind.IMAGE,       "image/heif"),
    ".xlsx": FileInfo(FileKind.SPREADSHEET, MIME_XLSX),
    ".docx": FileInfo(FileKind.DOCX,        MIME_DOCX),
    ".txt":  FileInfo(FileKind.TEXT,        "text/plain"),
    ".md":   FileInfo(FileKind.TEXT,        "text/plain"),
    ".csv":  FileInfo(FileKind.TEXT,        "text/csv"),
}


def get_extension(filename: str | None) -> str:
    """Return lowercased file extension including the dot."""
    parts = (filename or "").rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _sniff(data: bytes) -> FileInfo | None:
    head = data[:16]
    for magic, info in _MAGIC_BYTES:
        if head.startswith(magic):
            return info
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return FileInfo(FileKind.IMAGE, "image/webp")
    if head[4:8] == b"ftyp" and head[8:12] in _HEIF_BRANDS:
        return FileInfo(FileKind.IMAGE, "image/heic")
    if head.startswith(b"PK\x03\x04"):
        return _sniff_office(data)
    return None


def _sniff_office(data: bytes) -> FileInfo | None:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = set(archive.namelist())
    except zipfile.BadZipFile:
        return None
    if "xl/workbook.xml" in names:
        return FileInfo(FileKind.SPREADSHEET, MIME_XLSX)
    if "word/document.xml" in names:
        return FileInfo(FileKind.DOCX, MIME_DOCX)
    return None


def detect_file_kind(
    data:          bytes,
    filename:      str | None = None,
    declared_mime: str | None = None,
) -> FileInfo:
    """Magic bytes, then extension, then declared / guessed MIME type."""
    sniffed = _sniff(data)
    if sniffed is not None:
        return sniffed

    by_extension = _EXTENSIONS.get(get_extension(filename))
    if by_extension is not None:
        return by_extension

    mime = (declared_mime or mimetypes.guess_type(filename or "")[0] or "application/octet-stream").lower()
    if mime.startswith("image/"):
        return FileInfo(FileKind.IMAGE, mime)
    if mime.startswith("text/"):
        return FileInfo(FileKind.TEXT, mime)
    if mime == MIME_PDF:
        return FileInfo(FileKind.PDF, mime)
    if "spreadsheet" in mime:
        return FileInfo(FileKind.SPREADSHEET, mime)
    if "wordprocessing" in mime:
        return FileInfo(FileKind.DOCX, mime)
    return FileInfo(FileKind.OTHER, mime)


# ---------------------------------------------------------------------------
# Local text conversion
# ---------------------------------------------------------------------------

def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def docx_to_text(data: bytes) -> str:
    """Paragraphs, then table rows (tab-joined cells)."""
    document = docx.Document(io.BytesIO(data))
    lines = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells]
            if any(cells):
                lines.append("\t".join(cells))
    return "\n".join(lines)

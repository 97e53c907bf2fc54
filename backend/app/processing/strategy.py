"""
Extraction Strategy Router
══════════════════════════

Decides, from byte size and file kind, which AI calls to make and in what
shape, then runs the Response Parser over whatever comes back.

    size < small_threshold (500 KiB)        SMALL          1 combined call
    size < medium_threshold (2 MiB)         STANDARD       text ∥ structured
    otherwise                               COMPREHENSIVE  N text calls + structured
    spreadsheet (any size)                  SPREADSHEET    local text + structured

SMALL
  One call returns "=== FULL TEXT ===" and "=== STRUCTURED DATA ===".
  If the structured part fails the quality predicate it is discarded and a
  separate structured call is made; the combined full text is kept. If the
  combined call fails or carries no text, the whole STANDARD path runs.

STANDARD
  Full text and structured fields are requested concurrently and settle
  independently: a structured failure yields the default record, a text
  failure is fatal.

COMPREHENSIVE
  PDFs are cut into page-range sub-documents of about segment_bytes each
  (pypdf); unparseable PDFs and other binaries are cut into raw byte
  ranges, converted text into character ranges. One text call per segment,
  at most segment_concurrency in flight, joined in segment order, then one
  structured call on the original input. A single-page PDF stays one
  segment however large it is.

Full text is mandatory, but that rule is enforced by the caller:
extract() returns whatever text it obtained, possibly empty.
on_text, when given, is awaited as soon as non-empty full text exists, so
the caller can record the text milestone while the structured call runs.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from pypdf import PdfReader, PdfWriter

from app.core.config import settings
from app.core.exceptions import AIServiceError
from app.llm.gateway import AIInput
from app.processing.file_types import FileInfo, FileKind, decode_text, docx_to_text
from app.processing.parser import ParsedFailure, ParseResult, parse_response, split_combined_response
from app.processing.spreadsheet import workbook_to_text
from app.schemas.documents import Vertical
from app.schemas.extraction import StructuredRecord

logger = logging.getLogger(__name__)

# Separator placed between the text of consecutive comprehensive segments
SEGMENT_SEPARATOR = "\n\n"


class Strategy(str, Enum):
    SMALL         = "small"
    STANDARD      = "standard"
    COMPREHENSIVE = "comprehensive"
    SPREADSHEET   = "spreadsheet"


class ExtractionClient(Protocol):
    async def extract_text(self, source: AIInput | None, context: str | None = None,
                           part: tuple[int, int] | None = None) -> str: ...

    async def extract_structured(self, source: AIInput | None, vertical: Vertical,
                                 context: str | None = None) -> str: ...

    async def extract_combined(self, source: AIInput | None, vertical: Vertical,
                               context: str | None = None) -> str: ...


QualityCheck = Callable[[StructuredRecord], bool]
# Awaited once, as soon as non-empty full text is available
TextReady = Callable[[], Awaitable[None]]


def default_quality_check(record: StructuredRecord) -> bool:
    """A record is usable when it names a vendor or an amount, lists items, or has a summary."""
    return (
        bool(record.vendor)
        or record.amount is not None
        or bool(record.line_items)
        or bool(record.description)
    )


async def _text_ready(callback: TextReady | None, text: str) -> None:
    if callback is not None and text.strip():
        await callback()


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionOutcome:
    """
    full_text : extracted text (may be empty; caller decides whether to fail)
    parse     : parser result for the structured fields
    strategy  : Strategy value that produced the result
    ai_calls  : number of AI requests issued
    """
    full_text: str
    parse:     ParseResult
    strategy:  Strategy
    ai_calls:  int

    @property
    def record(self) -> StructuredRecord:
        return self.parse.record

    @property
    def needs_review(self) -> bool:
        return self.parse.needs_review


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class ExtractionStrategyRouter:
    """
    Usage:
        router  = ExtractionStrategyRouter(gateway)
        outcome = await router.extract(data, info, Vertical.ACCOUNTING, "inv.pdf")
    """

    def __init__(
        self,
        client:              ExtractionClient,
        small_threshold:     int | None = None,
        medium_threshold:    int | None = None,
        segment_bytes:       int | None = None,
        segment_concurrency: int | None = None,
        context_chars:       int | None = None,
        quality_check:       QualityCheck = default_quality_check,
    ) -> None:
        self._client              = client
        self._small_threshold     = small_threshold or settings.small_document_threshold
        self._medium_threshold    = medium_threshold or settings.medium_document_threshold
        self._segment_bytes       = segment_bytes or settings.comprehensive_segment_bytes
        self._segment_concurrency = max(1, segment_concurrency or settings.comprehensive_segment_concurrency)
        self._context_chars       = context_chars or settings.spreadsheet_context_chars
        self._quality_check       = quality_check

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def select_strategy(self, size: int, kind: FileKind) -> Strategy:
        if kind is FileKind.SPREADSHEET:
            return Strategy.SPREADSHEET
        if size < self._small_threshold:
            return Strategy.SMALL
        if size < self._medium_threshold:
            return Strategy.STANDARD
        return Strategy.COMPREHENSIVE

    async def extract(
        self,
        data:     bytes,
        info:     FileInfo,
        vertical: Vertical,
        filename: str = "document",
        on_text:  TextReady | None = None,
    ) -> ExtractionOutcome:
        strategy = self.select_strategy(len(data), info.kind)
        logger.info(
            "Extraction strategy | strategy=%s kind=%s size=%d vertical=%s",
            strategy.value, info.kind.value, len(data), vertical.value,
        )

        if strategy is Strategy.SPREADSHEET:
            return await self._spreadsheet(data, vertical, on_text)

        source = to_ai_input(data, info, filename)
        if strategy is Strategy.SMALL:
            return await self._small(source, vertical, on_text)
        if strategy is Strategy.STANDARD:
            return await self._standard(source, vertical, on_text)
        return await self._comprehensive(source, vertical, on_text)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _small(self, source: AIInput, vertical: Vertical, on_text: TextReady | None = None) -> ExtractionOutcome:
        try:
            raw = await self._client.extract_combined(source, vertical)
        except AIServiceError as exc:
            logger.warning("Combined extraction failed, running standard path: %s", exc)
            outcome = await self._standard(source, vertical, on_text)
            outcome.ai_calls += 1
            return outcome

        full_text, structured = split_combined_response(raw)
        if not full_text.strip():
            logger.warning("Combined response had no text section, running standard path")
            outcome = await self._standard(source, vertical, on_text)
            outcome.ai_calls += 1
            return outcome

        await _text_ready(on_text, full_text)
        parsed = parse_response(structured)
        if self._quality_check(parsed.record):
            return ExtractionOutcome(full_text=full_text, parse=parsed, strategy=Strategy.SMALL, ai_calls=1)

        logger.info(
            "Combined structured data too sparse, re-extracting | strategy=%s filled=%s",
            parsed.strategy, sorted(parsed.record.filled_fields()),
        )
        parsed = await self._structured(source, vertical)
        return ExtractionOutcome(full_text=full_text, parse=parsed, strategy=Strategy.SMALL, ai_calls=2)

    async def _standard(self, source: AIInput, vertical: Vertical, on_text: TextReady | None = None) -> ExtractionOutcome:
        async def text_call() -> str:
            text = await self._client.extract_text(source)
            await _text_ready(on_text, text)
            return text

        text_result, structured_result = await asyncio.gather(
            text_call(),
            self._client.extract_structured(source, vertical),
            return_exceptions=True,
        )

        if isinstance(text_result, BaseException):
            raise text_result

        if isinstance(structured_result, AIServiceError):
            logger.warning("Structured extraction failed, using defaults: %s", structured_result)
            parsed: ParseResult = ParsedFailure(reason=f"structured extraction failed: {structured_result}")
        elif isinstance(structured_result, BaseException):
            raise structured_result
        else:
            parsed = parse_response(structured_result)

        return ExtractionOutcome(full_text=text_result, parse=parsed, strategy=Strategy.STANDARD, ai_calls=2)

    async def _comprehensive(
        self, source: AIInput, vertical: Vertical, on_text: TextReady | None = None,
    ) -> ExtractionOutcome:
        segments = await self._segments(source)
        total = len(segments)
        logger.info(
            "Comprehensive extraction | segments=%d segment_bytes=%d concurrency=%d",
            total, self._segment_bytes, self._segment_concurrency,
        )

        results: list[str | BaseException] = []
        for offset in range(0, total, self._segment_concurrency):
            batch = segments[offset : offset + self._segment_concurrency]
            results.extend(await asyncio.gather(
                *(
                    self._client.extract_text(segment, part=(offset + i, total))
                    for i, segment in enumerate(batch, start=1)
                ),
                return_exceptions=True,
            ))

        texts: list[str] = []
        errors: list[BaseException] = []
        for i, result in enumerate(results, start=1):
            if isinstance(result, AIServiceError):
                logger.error("Segment text extraction failed | part=%d/%d error=%s", i, total, result)
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            elif result.strip():
                texts.append(result.strip())
        if errors and len(errors) == total:
            raise errors[-1]

        full_text = SEGMENT_SEPARATOR.join(texts)
        await _text_ready(on_text, full_text)
        parsed = await self._structured(source, vertical)
        return ExtractionOutcome(
            full_text=full_text,
            parse=parsed,
            strategy=Strategy.COMPREHENSIVE,
            ai_calls=total + 1,
        )

    async def _spreadsheet(self, data: bytes, vertical: Vertical, on_text: TextReady | None = None) -> ExtractionOutcome:
        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, workbook_to_text, data) or ""
        await _text_ready(on_text, text)
        context = text[: self._context_chars] if text else None
        parsed = await self._structured(None, vertical, context=context)
        return ExtractionOutcome(full_text=text, parse=parsed, strategy=Strategy.SPREADSHEET, ai_calls=1)

    async def _structured(
        self,
        source:   AIInput | None,
        vertical: Vertical,
        context:  str | None = None,
    ) -> ParseResult:
        try:
            raw = await self._client.extract_structured(source, vertical, context=context)
        except AIServiceError as exc:
            logger.warning("Structured extraction failed, using defaults: %s", exc)
            return ParsedFailure(reason=f"structured extraction failed: {exc}")
        return parse_response(raw)

    # ------------------------------------------------------------------
    # Segmenting
    # ------------------------------------------------------------------

    async def _segments(self, source: AIInput) -> list[AIInput]:
        if source.text is not None:
            return split_text_input(source, self._segment_bytes)
        if source.kind is FileKind.PDF:
            loop = asyncio.get_running_loop()
            pages = await loop.run_in_executor(None, split_pdf_pages, source.data, self._segment_bytes)
            if pages:
                return [
                    AIInput(kind=FileKind.PDF, mime_type=source.mime_type, data=chunk, filename=source.filename)
                    for chunk in pages
                ]
        if source.kind is FileKind.IMAGE:
            # a slice of an encoded image is not an image
            return [source]
        return split_byte_ranges(source, self._segment_bytes)


# ---------------------------------------------------------------------------
# Input conversion & splitting helpers
# ---------------------------------------------------------------------------

def to_ai_input(data: bytes, info: FileInfo, filename: str = "document") -> AIInput:
    """DOCX and text are converted locally; everything else travels as bytes."""
    if info.kind is FileKind.DOCX:
        return AIInput(kind=info.kind, mime_type=info.mime_type, text=docx_to_text(data), filename=filename)
    if info.kind is FileKind.TEXT:
        return AIInput(kind=info.kind, mime_type=info.mime_type, text=decode_text(data), filename=filename)
    return AIInput(kind=info.kind, mime_type=info.mime_type, data=data, filename=filename)


def split_byte_ranges(source: AIInput, segment_bytes: int) -> list[AIInput]:
    data = source.data
    return [
        AIInput(kind=source.kind, mime_type=source.mime_type, data=data[i : i + segment_bytes],
                filename=source.filename)
        for i in range(0, len(data), segment_bytes)
    ] or [source]


def split_text_input(source: AIInput, segment_chars: int) -> list[AIInput]:
    text = source.text or ""
    return [
        AIInput(kind=source.kind, mime_type=source.mime_type, text=text[i : i + segment_chars],
                filename=source.filename)
        for i in range(0, len(text), segment_chars)
    ] or [source]


def split_pdf_pages(data: bytes, segment_bytes: int) -> list[bytes]:
    """
    Cut a PDF into page-range sub-documents of roughly segment_bytes each.
    Returns [] when the PDF cannot be parsed.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
        if page_count == 0:
            return []
        pages_per_segment = max(1, int(segment_bytes // max(1, len(data) // page_count)))

        segments: list[bytes] = []
        for start in range(0, page_count, pages_per_segment):
            writer = PdfWriter()
            for index in range(start, min(start + pages_per_segment, page_count)):
                writer.add_page(reader.pages[index])
            out = io.BytesIO()
            writer.write(out)
            segments.append(out.getvalue())
    except Exception as exc:
        logger.warning("PDF page split failed, using byte ranges: %s: %s", type(exc).__name__, exc)
        return []

    logger.debug("PDF split | pages=%d segments=%d", page_count, len(segments))
    return segments

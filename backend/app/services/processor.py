"""
Document Processing Engine

Orchestrates one processing pass for one job:
  1. Fetch (or create) the document record             → processing, 10%
  2. Download the original bytes from object storage   → 25%
  3. Detect file kind and run the strategy router      → 50% when text is ready, 75% fields
  4. Generate a WebP preview for image uploads         (best-effort)
  5. Embed the full text in overlapping windows        → 90%
  6. Persist fields, child rows and chunks atomically  → complete, 100%

Failure semantics:
  - Any exception at any step marks the document failed with the error
    message and elapsed time, then propagates. The engine never retries;
    the queue's redelivery does.
  - Empty full text after every fallback raises NoTextExtractedError.
  - Structured-field and embedding failures are absorbed upstream
    (default record / dropped windows) and never reach this level.

Idempotence: save_results() replaces child rows, so a redelivered job that
runs a second pass converges on the same final state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from app.core.config import settings
from app.core.exceptions import DocumentNotFoundError, NoTextExtractedError
from app.db.repository import DocumentRef, DocumentRepository
from app.processing.embeddings import EmbeddingGenerator
from app.processing.file_types import FileInfo, FileKind, detect_file_kind
from app.processing.images import PREVIEW_MIME_TYPE, make_webp_preview
from app.processing.strategy import ExtractionStrategyRouter
from app.schemas.documents import ProcessingJob, ProcessingStatus, Progress
from app.storage.s3 import ObjectStorage, bucket_for, preview_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingReport:
    document_id:  str
    strategy:     str
    ai_calls:     int
    chunk_count:  int
    needs_review: bool
    elapsed_ms:   int
    preview_path: str | None = None


class DocumentProcessingEngine:
    """
    Stateless across jobs; one instance is shared by every worker.
    All collaborators are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        repository:      DocumentRepository,
        storage:         ObjectStorage,
        router:          ExtractionStrategyRouter,
        embeddings:      EmbeddingGenerator,
        enable_previews: bool = True,
    ) -> None:
        self._repo            = repository
        self._storage         = storage
        self._router          = router
        self._embeddings      = embeddings
        self._enable_previews = enable_previews

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def process(self, job: ProcessingJob) -> ProcessingReport:
        t0  = time.monotonic()
        ref = DocumentRef.from_job(job)

        logger.info(
            "Processing | doc=%s tenant=%s vertical=%s job=%s attempt=%d",
            job.document_id, job.tenant_id, job.vertical.value, job.job_id, job.delivery_attempt,
        )

        try:
            return await self._run(job, ref, t0)
        except Exception as exc:
            elapsed_ms = _elapsed_ms(t0)
            message = str(exc) or type(exc).__name__
            logger.error(
                "Processing failed | doc=%s elapsed_ms=%d error=%s: %s",
                job.document_id, elapsed_ms, type(exc).__name__, message,
            )
            try:
                await self._repo.mark_failed(ref, message, elapsed_ms)
            except Exception as mark_exc:
                logger.error("Could not mark document failed | doc=%s error=%s", job.document_id, mark_exc)
            raise

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, job: ProcessingJob, ref: DocumentRef, t0: float) -> ProcessingReport:
        document = await self._repo.get_or_create_document(job)
        await self._repo.update_status(ref, ProcessingStatus.PROCESSING, Progress.CLAIMED)

        storage_key = document.storage_key or job.storage_key
        if not storage_key:
            raise DocumentNotFoundError(f"Document {job.document_id} has no storage key")

        data = await self._storage.download(bucket_for(job.vertical), storage_key)
        await self._repo.update_status(ref, ProcessingStatus.PROCESSING, Progress.DOWNLOADED)

        filename = document.original_filename or job.original_filename or storage_key.rsplit("/", 1)[-1]
        info = detect_file_kind(data, filename, document.mime_type or job.mime_type)

        text_reported = False

        async def report_text() -> None:
            nonlocal text_reported
            text_reported = True
            await self._repo.update_status(ref, ProcessingStatus.PROCESSING, Progress.TEXT)

        outcome = await self._router.extract(data, info, job.vertical, filename, on_text=report_text)
        full_text = outcome.full_text.strip()
        if not full_text:
            raise NoTextExtractedError()
        if not text_reported:
            await report_text()
        await self._repo.update_status(ref, ProcessingStatus.PROCESSING, Progress.STRUCTURED)

        preview_path = None
        if self._enable_previews and info.kind is FileKind.IMAGE:
            preview_path = await self._store_preview(job, data, info)

        embedded = await self._embeddings.generate(full_text)
        await self._repo.update_status(ref, ProcessingStatus.PROCESSING, Progress.EMBEDDED)

        elapsed_ms = _elapsed_ms(t0)
        await self._repo.save_results(
            ref,
            record=outcome.record,
            full_text=full_text,
            chunks=embedded.chunks,
            strategy=outcome.strategy.value,
            needs_review=outcome.needs_review,
            elapsed_ms=elapsed_ms,
            preview_path=preview_path,
        )

        logger.info(
            "Processing complete | doc=%s strategy=%s ai_calls=%d chunks=%d review=%s elapsed_ms=%d",
            job.document_id, outcome.strategy.value, outcome.ai_calls,
            len(embedded.chunks), outcome.needs_review, elapsed_ms,
        )
        return ProcessingReport(
            document_id=str(job.document_id),
            strategy=outcome.strategy.value,
            ai_calls=outcome.ai_calls,
            chunk_count=len(embedded.chunks),
            needs_review=outcome.needs_review,
            elapsed_ms=elapsed_ms,
            preview_path=preview_path,
        )

    async def _store_preview(self, job: ProcessingJob, data: bytes, info: FileInfo) -> str | None:
        loop = asyncio.get_running_loop()
        preview = await loop.run_in_executor(
            None,
            make_webp_preview,
            data,
            settings.image_resize_width,
            settings.image_resize_height,
            settings.image_preview_quality,
        )
        if preview is None:
            return None

        key = preview_key(job.vertical, job.tenant_id, job.document_id)
        try:
            return await self._storage.upload(bucket_for(job.vertical), key, preview, PREVIEW_MIME_TYPE)
        except Exception as exc:
            logger.warning(
                "Preview upload failed | doc=%s mime=%s error=%s", job.document_id, info.mime_type, exc,
            )
            return None


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)

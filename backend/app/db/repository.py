"""
Document Repository — all relational reads and writes of the pipeline

Every public method is one unit of work (one transaction). Nothing spans a
whole processing pass; idempotence under redelivery comes from
save_results(), which replaces child rows instead of merging them:

    BEGIN
      UPDATE <documents> SET …extracted fields…, status='complete'
      DELETE FROM document_line_items  WHERE document_id = :id
      DELETE FROM bank_transactions    WHERE document_id = :id
      DELETE FROM <chunks>             WHERE document_id = :id
      INSERT … new line items / transactions / chunks
    COMMIT

Two passes over the same document therefore converge on one child set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, AsyncContextManager, Callable, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import session_scope
from app.models.documents import (
    BankTransaction,
    LineItem,
    Tenant,
    chunk_model_for,
    document_model_for,
)
from app.processing.embeddings import EmbeddedChunk
from app.schemas.documents import ProcessingJob, ProcessingStatus, Progress, Vertical
from app.schemas.extraction import StructuredRecord

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

# error_message is user-visible; keep it readable
MAX_ERROR_MESSAGE_CHARS = 2000


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DocumentRef:
    """Identifies one document row: table (vertical), id and owning tenant."""
    vertical:    Vertical
    document_id: UUID
    tenant_id:   UUID

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "DocumentRef":
        return cls(vertical=job.vertical, document_id=job.document_id, tenant_id=job.tenant_id)


@dataclass(frozen=True)
class DocumentSnapshot:
    """Detached view of a document row, enough to run a processing pass."""
    ref:               DocumentRef
    storage_key:       str | None
    original_filename: str | None
    mime_type:         str | None
    file_size_bytes:   int | None
    processing_status: str


def _iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class DocumentRepository:
    """
    Stateless; safe to share across workers. session_factory is injectable
    so tests can hand in a mock session.
    """

    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def tenant_exists(self, tenant_id: UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(Tenant.id).where(Tenant.id == tenant_id))
            return result.scalar_one_or_none() is not None

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    async def get_or_create_document(self, job: ProcessingJob) -> DocumentSnapshot:
        """
        Fetch the document row for this job, creating a pending one when the
        upload path has not written it yet. Missing upload metadata on an
        existing row is filled in from the job.
        """
        ref   = DocumentRef.from_job(job)
        model = document_model_for(job.vertical)

        async with self._session_factory() as session:
            result = await session.execute(
                select(model).where(model.id == ref.document_id, model.tenant_id == ref.tenant_id)
            )
            doc = result.scalar_one_or_none()

            if doc is None:
                doc = model(
                    id=ref.document_id,
                    tenant_id=ref.tenant_id,
                    storage_key=job.storage_key,
                    original_filename=job.original_filename,
                    mime_type=job.mime_type,
                    file_size_bytes=job.size_bytes,
                    processing_status=ProcessingStatus.PENDING.value,
                    progress_percent=0,
                    extracted_data={},
                )
                session.add(doc)
                logger.info(
                    "Document record created | doc=%s tenant=%s vertical=%s",
                    ref.document_id, ref.tenant_id, ref.vertical.value,
                )
            else:
                doc.storage_key       = doc.storage_key or job.storage_key
                doc.original_filename = doc.original_filename or job.original_filename
                doc.mime_type         = doc.mime_type or job.mime_type
                doc.file_size_bytes   = doc.file_size_bytes or job.size_bytes

            return DocumentSnapshot(
                ref=ref,
                storage_key=doc.storage_key,
                original_filename=doc.original_filename,
                mime_type=doc.mime_type,
                file_size_bytes=doc.file_size_bytes,
                processing_status=doc.processing_status,
            )

    async def update_status(
        self,
        ref:      DocumentRef,
        status:   ProcessingStatus,
        progress: int | None = None,
        **fields: Any,
    ) -> None:
        model  = document_model_for(ref.vertical)
        values = {"processing_status": status.value, **fields}
        if progress is not None:
            values["progress_percent"] = progress
        if status is ProcessingStatus.PROCESSING:
            values["error_message"] = None

        async with self._session_factory() as session:
            await session.execute(
                update(model)
                .where(model.id == ref.document_id, model.tenant_id == ref.tenant_id)
                .values(**values)
            )
        logger.debug(
            "Status updated | doc=%s status=%s progress=%s",
            ref.document_id, status.value, progress,
        )

    async def mark_failed(self, ref: DocumentRef, error: str, elapsed_ms: int) -> None:
        await self.update_status(
            ref,
            ProcessingStatus.FAILED,
            error_message=(error or "Unknown error")[:MAX_ERROR_MESSAGE_CHARS],
            processing_time_ms=elapsed_ms,
        )
        logger.warning(
            "Document marked failed | doc=%s elapsed_ms=%d error=%s",
            ref.document_id, elapsed_ms, error,
        )

    # ------------------------------------------------------------------
    # Final write — one transaction
    # ------------------------------------------------------------------

    async def save_results(
        self,
        ref:          DocumentRef,
        *,
        record:       StructuredRecord,
        full_text:    str,
        chunks:       Sequence[EmbeddedChunk],
        strategy:     str,
        needs_review: bool,
        elapsed_ms:   int,
        preview_path: str | None = None,
    ) -> None:
        """
        Persist extracted fields and replace every child row, then flip the
        document to complete. Line items and bank transactions are stored
        for the accounting vertical only.
        """
        model       = document_model_for(ref.vertical)
        chunk_model = chunk_model_for(ref.vertical)
        accounting  = ref.vertical is Vertical.ACCOUNTING

        values: dict[str, Any] = {
            "vendor":              record.vendor,
            "document_type":       record.document_type,
            "document_date":       _iso_date(record.date),
            "due_date":            _iso_date(record.due_date),
            "amount":              record.amount,
            "tax_amount":          record.tax_amount,
            "currency":            record.currency,
            "document_number":     record.document_number,
            "ap_ar_status":        record.ap_ar_status,
            "description":         record.description,
            "extracted_data":      record.model_dump(mode="json"),
            "full_text":           full_text,
            "needs_review":        needs_review,
            "processing_strategy": strategy,
            "processing_status":   ProcessingStatus.COMPLETE.value,
            "progress_percent":    Progress.COMPLETE,
            "processing_time_ms":  elapsed_ms,
            "processed_at":        datetime.now(timezone.utc),
            "error_message":       None,
        }
        if preview_path:
            values["preview_path"] = preview_path

        async with self._session_factory() as session:
            await session.execute(
                update(model)
                .where(model.id == ref.document_id, model.tenant_id == ref.tenant_id)
                .values(**values)
            )

            # Replace, never merge
            if accounting:
                await session.execute(delete(LineItem).where(LineItem.document_id == ref.document_id))
                await session.execute(
                    delete(BankTransaction).where(BankTransaction.document_id == ref.document_id)
                )
            await session.execute(delete(chunk_model).where(chunk_model.document_id == ref.document_id))

            rows: list[Any] = []
            if accounting:
                rows.extend(
                    LineItem(
                        document_id=ref.document_id,
                        tenant_id=ref.tenant_id,
                        sort_order=position,
                        description=item.description,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        line_total=item.line_total,
                        tax_rate=item.tax_rate,
                        category=item.category,
                    )
                    for position, item in enumerate(record.line_items)
                )
                rows.extend(
                    BankTransaction(
                        document_id=ref.document_id,
                        tenant_id=ref.tenant_id,
                        sort_order=position,
                        transaction_date=_iso_date(tx.date),
                        description=tx.description,
                        amount=tx.amount,
                        balance=tx.balance,
                        transaction_type=tx.transaction_type,
                    )
                    for position, tx in enumerate(record.bank_transactions)
                )
            rows.extend(
                chunk_model(
                    document_id=ref.document_id,
                    tenant_id=ref.tenant_id,
                    chunk_index=chunk.chunk_index,
                    start_offset=chunk.start_offset,
                    content=chunk.content,
                    embedding=chunk.embedding,
                )
                for chunk in chunks
            )
            session.add_all(rows)

        logger.info(
            "Results saved | doc=%s line_items=%d transactions=%d chunks=%d strategy=%s",
            ref.document_id,
            len(record.line_items) if accounting else 0,
            len(record.bank_transactions) if accounting else 0,
            len(chunks),
            strategy,
        )

"""
SQLAlchemy ORM Models — Documents, Child Records & Embedding Chunks

One table per vertical holds the document records (documents for
accounting, legal_documents for legal); both share a single column set via
_DocumentColumns. Child rows are owned by the processing engine and are
replaced wholesale (delete-then-insert) on every successful pass:

    documents ──┬── document_line_items
                ├── bank_transactions
                └── document_chunks            (pgvector embeddings)

    legal_documents ── legal_document_chunks

Downstream consumers observe processing_status through the database's
change-notification mechanism; nothing here publishes events itself.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.core.config import settings
from app.schemas.documents import Vertical


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Tenant — tenants
# ---------------------------------------------------------------------------

class Tenant(Base):
    """Organisational owner of documents. Read-only for this service."""

    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Shared document columns
# ---------------------------------------------------------------------------

class _DocumentColumns:
    """
    Columns common to every vertical's document table.

    State machine (processing_status column):
        pending    — record exists, no worker has claimed it yet
        processing — worker running; progress_percent moves 10 → 90
        complete   — extracted fields, children and chunks persisted
        failed     — see error_message / processing_time_ms
    """

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Upload reference
    original_filename: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    storage_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Object key: <vertical-folder>/<tenant_id>/.../<document_id>.<ext>",
    )
    file_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[Optional[str]]       = mapped_column(Text, nullable=True)
    preview_path: Mapped[Optional[str]]    = mapped_column(Text, nullable=True)

    # Processing state machine
    processing_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when processing_status='failed'",
    )
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Extracted fields
    vendor: Mapped[Optional[str]]          = mapped_column(Text, nullable=True)
    document_type: Mapped[Optional[str]]   = mapped_column(String(32), nullable=True)
    document_date: Mapped[Optional[date]]  = mapped_column(Date, nullable=True)
    due_date: Mapped[Optional[date]]       = mapped_column(Date, nullable=True)
    amount: Mapped[Optional[float]]        = mapped_column(Numeric(18, 2), nullable=True)
    tax_amount: Mapped[Optional[float]]    = mapped_column(Numeric(18, 2), nullable=True)
    currency: Mapped[Optional[str]]        = mapped_column(String(3), nullable=True)
    document_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ap_ar_status: Mapped[Optional[str]]    = mapped_column(String(16), nullable=True)
    description: Mapped[Optional[str]]     = mapped_column(Text, nullable=True)
    extracted_data: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Full validated structured record as returned by the parser",
    )
    full_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} id={self.id} tenant={self.tenant_id} "
            f"status={self.processing_status} progress={self.progress_percent}>"
        )


_STATUS_CHECK = "processing_status IN ('pending', 'processing', 'complete', 'failed')"


class Document(_DocumentColumns, Base):
    """Accounting vertical: invoices, receipts, bank statements."""

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="documents_status_check"),
        Index("idx_documents_tenant_status", "tenant_id", "processing_status"),
    )

    vertical = Vertical.ACCOUNTING


class LegalDocument(_DocumentColumns, Base):
    """Legal vertical: contracts and agreements."""

    __tablename__ = "legal_documents"
    __table_args__ = (
        CheckConstraint(_STATUS_CHECK, name="legal_documents_status_check"),
        Index("idx_legal_documents_tenant_status", "tenant_id", "processing_status"),
    )

    vertical = Vertical.LEGAL


# ---------------------------------------------------------------------------
# Child records — accounting only
# ---------------------------------------------------------------------------

class LineItem(Base):
    __tablename__ = "document_line_items"
    __table_args__ = (
        Index("idx_line_items_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sort_order: Mapped[int]             = mapped_column(Integer, nullable=False)
    description: Mapped[str]            = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[float]             = mapped_column(Float, nullable=False, default=1.0)
    unit_price: Mapped[Optional[float]] = mapped_column(Numeric(18, 2), nullable=True)
    line_total: Mapped[Optional[float]] = mapped_column(Numeric(18, 2), nullable=True)
    tax_rate: Mapped[float]             = mapped_column(Float, nullable=False, default=0.0)
    category: Mapped[str]               = mapped_column(Text, nullable=False, default="uncategorized")


class BankTransaction(Base):
    __tablename__ = "bank_transactions"
    __table_args__ = (
        Index("idx_bank_transactions_document_id", "document_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    sort_order: Mapped[int]                     = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    description: Mapped[str]                    = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Optional[float]]             = mapped_column(Numeric(18, 2), nullable=True)
    balance: Mapped[Optional[float]]            = mapped_column(Numeric(18, 2), nullable=True)
    transaction_type: Mapped[Optional[str]]     = mapped_column(String(8), nullable=True)


# ---------------------------------------------------------------------------
# Embedding chunks — one table per vertical
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """chunk_index is contiguous from 0 within a document."""

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    chunk_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content: Mapped[str]      = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class LegalDocumentChunk(Base):
    __tablename__ = "legal_document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_legal_document_chunks_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("legal_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    chunk_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    start_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    content: Mapped[str]      = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Vertical → table lookup
# ---------------------------------------------------------------------------

_DOCUMENT_MODELS = {
    Vertical.ACCOUNTING: (Document, DocumentChunk),
    Vertical.LEGAL:      (LegalDocument, LegalDocumentChunk),
}


def document_model_for(vertical: Vertical) -> type[Document] | type[LegalDocument]:
    return _DOCUMENT_MODELS[Vertical.parse(vertical)][0]


def chunk_model_for(vertical: Vertical) -> type[DocumentChunk] | type[LegalDocumentChunk]:
    return _DOCUMENT_MODELS[Vertical.parse(vertical)][1]

"""
Document Processing — Pydantic Schemas

Covers:
  - The processing job decoded from a queue message (or a manual request)
  - The document status state machine
  - POST /api/v1/process request / response bodies
  - /health and /metrics response bodies

Design decisions:
  - vertical selects both the document table and the extraction prompt.
  - document_id and tenant_id are UUIDs; anything else is an invalid job.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Vertical — document domain
# ---------------------------------------------------------------------------

class Vertical(str, Enum):
    ACCOUNTING = "accounting"
    LEGAL      = "legal"

    @classmethod
    def parse(cls, value: Any) -> "Vertical":
        """Lenient lookup: "Legal", " accounting " and enum members all work."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown vertical: {value!r}") from None


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to the processing_status column.
    Transitions: pending → processing → complete | failed
    """
    PENDING    = "pending"      # record exists, no worker has claimed it
    PROCESSING = "processing"   # worker actively extracting
    COMPLETE   = "complete"     # all results persisted
    FAILED     = "failed"       # see error_message


# Progress checkpoints reported while status == processing
class Progress:
    CLAIMED    = 10
    DOWNLOADED = 25
    TEXT       = 50
    STRUCTURED = 75
    EMBEDDED   = 90
    COMPLETE   = 100


# ---------------------------------------------------------------------------
# Processing job — one unit of queue work
# ---------------------------------------------------------------------------

class ProcessingJob(BaseModel):
    """
    A claimed unit of work. receipt_token is the queue receipt handle used to
    acknowledge the message; it is None for manual /process requests.
    """
    model_config = ConfigDict(frozen=True)

    job_id:            str
    tenant_id:         UUID
    document_id:       UUID
    vertical:          Vertical
    storage_key:       str | None = None
    size_bytes:        int | None = None
    original_filename: str | None = None
    mime_type:         str | None = None
    receipt_token:     str | None = None
    delivery_attempt:  int        = 1

    @field_validator("vertical", mode="before")
    @classmethod
    def _vertical(cls, v: Any) -> Vertical:
        return Vertical.parse(v)


# ---------------------------------------------------------------------------
# POST /api/v1/process
# ---------------------------------------------------------------------------

class ProcessRequest(BaseModel):
    """Manual processing trigger. Field names follow the queue message casing."""
    model_config = ConfigDict(populate_by_name=True)

    document_id: str | None = Field(None, alias="documentId")
    vertical:    str | None = None
    tenant_id:   str | None = Field(None, alias="tenantId")
    storage_key: str | None = Field(None, alias="storageKey")


class ProcessResponse(BaseModel):
    success:     bool
    message:     str
    document_id: str = Field(..., serialization_alias="documentId")


# ---------------------------------------------------------------------------
# Operational surface
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status:         str              # healthy | unhealthy
    timestamp:      str
    uptime_seconds: float
    database:       bool
    ai_service:     bool
    environment:    str
    error:          str | None = None


class QueueDepth(BaseModel):
    available: int = 0
    in_flight: int = 0
    delayed:   int = 0


class MetricsResponse(BaseModel):
    timestamp:      str
    in_flight_jobs: int
    active_workers: int
    total_workers:  int
    is_running:     bool
    queue:          QueueDepth | None = None
    queue_error:    str | None = None


class ErrorResponse(BaseModel):
    error:   str
    message: str
    detail:  Any | None = None
